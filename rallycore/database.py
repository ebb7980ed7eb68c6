"""
database.py — SQLite schema init, migration, and CRUD operations.

Single-file database with WAL mode for concurrent reads. Stores the inputs
of every rally (stages, competitors, entries, penalties) so the engine can be
rebuilt on startup, plus the last published standings and an audit trail.
"""

from __future__ import annotations

import json
import logging
import os
import sqlite3
from pathlib import Path
from typing import Iterable, Optional

from rallycore.errors import MalformedTime, RallyTimingError
from rallycore.models import (
    Competitor,
    Penalty,
    Stage,
    StageEntry,
    StandingsSnapshot,
    normalize_entry_status,
    normalize_stage_status,
)
from rallycore.timevalue import Duration, parse_time

logger = logging.getLogger("rallytiming")

DB_DIR = Path(os.environ.get("RALLYTIMING_DATA_DIR", Path(__file__).parent.parent / "data"))
DB_NAME = "rallytiming.db"


def get_db_path() -> Path:
    DB_DIR.mkdir(parents=True, exist_ok=True)
    return DB_DIR / DB_NAME


def get_connection(db_path: Optional[Path] = None) -> sqlite3.Connection:
    """Return a new connection with WAL mode and foreign keys enabled."""
    if db_path is None:
        db_path = get_db_path()
    conn = sqlite3.connect(str(db_path), timeout=10)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS rallies (
    id          TEXT PRIMARY KEY,
    name        TEXT NOT NULL DEFAULT '',
    created_at  TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS stages (
    rally_id    TEXT NOT NULL REFERENCES rallies(id),
    stage_id    TEXT NOT NULL,
    name        TEXT NOT NULL,
    ordinal     INTEGER NOT NULL,
    status      TEXT NOT NULL DEFAULT 'upcoming',
    distance_km REAL,
    PRIMARY KEY (rally_id, stage_id)
);

CREATE TABLE IF NOT EXISTS competitors (
    rally_id      TEXT NOT NULL REFERENCES rallies(id),
    competitor_id TEXT NOT NULL,
    name          TEXT NOT NULL,
    car_number    INTEGER NOT NULL,
    co_driver     TEXT NOT NULL DEFAULT '',
    nationality   TEXT NOT NULL DEFAULT '',
    team          TEXT NOT NULL DEFAULT '',
    car           TEXT NOT NULL DEFAULT '',
    PRIMARY KEY (rally_id, competitor_id)
);

CREATE TABLE IF NOT EXISTS stage_entries (
    rally_id      TEXT NOT NULL REFERENCES rallies(id),
    competitor_id TEXT NOT NULL,
    stage_id      TEXT NOT NULL,
    revision      INTEGER NOT NULL,
    status        TEXT NOT NULL,
    time_text     TEXT,
    updated_at    TEXT DEFAULT (datetime('now')),
    PRIMARY KEY (rally_id, competitor_id, stage_id)
);

CREATE TABLE IF NOT EXISTS penalties (
    rally_id      TEXT NOT NULL REFERENCES rallies(id),
    penalty_id    TEXT NOT NULL,
    competitor_id TEXT NOT NULL,
    stage_id      TEXT,
    time_ms       INTEGER NOT NULL,
    reason        TEXT NOT NULL DEFAULT '',
    created_at    TEXT DEFAULT (datetime('now')),
    PRIMARY KEY (rally_id, penalty_id)
);

CREATE TABLE IF NOT EXISTS published_standings (
    rally_id      TEXT PRIMARY KEY REFERENCES rallies(id),
    version       INTEGER NOT NULL,
    data_json     TEXT NOT NULL,
    published_at  TEXT DEFAULT (datetime('now'))
);

CREATE INDEX IF NOT EXISTS idx_stage_entries_stage ON stage_entries(rally_id, stage_id);
CREATE INDEX IF NOT EXISTS idx_competitors_car ON competitors(rally_id, car_number);

CREATE TABLE IF NOT EXISTS settings (
    key   TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""


def init_db(conn: sqlite3.Connection) -> None:
    """Create all tables and indexes if they don't exist."""
    conn.executescript(SCHEMA_SQL)


def migrate_db(conn: sqlite3.Connection) -> None:
    """Add new columns to existing tables (idempotent for upgrades)."""
    def _has_column(table: str, column: str) -> bool:
        cols = conn.execute(f"PRAGMA table_info({table})").fetchall()
        return any(c["name"] == column for c in cols)

    # stage_entries: retirement / exclusion reason
    if not _has_column("stage_entries", "reason"):
        conn.execute("ALTER TABLE stage_entries ADD COLUMN reason TEXT")

    # audit_log table
    conn.execute("""
        CREATE TABLE IF NOT EXISTS audit_log (
            id          INTEGER PRIMARY KEY AUTOINCREMENT,
            rally_id    TEXT,
            action      TEXT NOT NULL,
            entity_type TEXT,
            entity_id   TEXT,
            details     TEXT,
            before_val  TEXT,
            after_val   TEXT,
            source      TEXT DEFAULT 'admin',
            created_at  TEXT DEFAULT (datetime('now'))
        )
    """)

    conn.commit()


# ======================================================================
# SETTINGS (key-value store, e.g. time_precision)
# ======================================================================

def get_setting(conn: sqlite3.Connection, key: str, default: str = "") -> str:
    """Read a setting value from the database."""
    row = conn.execute("SELECT value FROM settings WHERE key=?", (key,)).fetchone()
    return row["value"] if row else default


def set_setting(conn: sqlite3.Connection, key: str, value: str) -> None:
    """Write a setting value to the database."""
    conn.execute(
        "INSERT OR REPLACE INTO settings (key, value) VALUES (?, ?)",
        (key, value)
    )
    conn.commit()


# ======================================================================
# RALLIES
# ======================================================================

def ensure_rally(conn: sqlite3.Connection, rally_id: str, name: str = "") -> None:
    conn.execute(
        "INSERT OR IGNORE INTO rallies (id, name) VALUES (?, ?)",
        (rally_id, name)
    )
    if name:
        conn.execute("UPDATE rallies SET name=? WHERE id=?", (name, rally_id))
    conn.commit()


def get_rallies(conn: sqlite3.Connection) -> list[sqlite3.Row]:
    return conn.execute("SELECT * FROM rallies ORDER BY id").fetchall()


# ======================================================================
# STAGES
# ======================================================================

def replace_stages(conn: sqlite3.Connection, rally_id: str, stages: Iterable[Stage]) -> None:
    """Store the complete stage list of a rally, dropping stages not in it."""
    stages = list(stages)
    ensure_rally(conn, rally_id)
    conn.execute("DELETE FROM stages WHERE rally_id=?", (rally_id,))
    conn.executemany(
        """INSERT INTO stages (rally_id, stage_id, name, ordinal, status, distance_km)
           VALUES (?, ?, ?, ?, ?, ?)""",
        [(rally_id, s.stage_id, s.name, s.ordinal, s.status.value, s.distance_km)
         for s in stages]
    )
    conn.commit()


def get_stages(conn: sqlite3.Connection, rally_id: str) -> list[Stage]:
    rows = conn.execute(
        "SELECT * FROM stages WHERE rally_id=? ORDER BY ordinal", (rally_id,)
    ).fetchall()
    return [
        Stage(
            stage_id=r["stage_id"],
            name=r["name"],
            ordinal=r["ordinal"],
            rally_id=rally_id,
            status=normalize_stage_status(r["status"]),
            distance_km=r["distance_km"],
        )
        for r in rows
    ]


# ======================================================================
# COMPETITORS
# ======================================================================

def upsert_competitor(conn: sqlite3.Connection, rally_id: str, competitor: Competitor) -> None:
    ensure_rally(conn, rally_id)
    conn.execute(
        """INSERT INTO competitors (rally_id, competitor_id, name, car_number,
               co_driver, nationality, team, car)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?)
           ON CONFLICT(rally_id, competitor_id) DO UPDATE SET
               name=excluded.name, car_number=excluded.car_number,
               co_driver=excluded.co_driver, nationality=excluded.nationality,
               team=excluded.team, car=excluded.car""",
        (rally_id, competitor.competitor_id, competitor.name, competitor.car_number,
         competitor.co_driver, competitor.nationality, competitor.team, competitor.car)
    )
    conn.commit()


def get_competitors(conn: sqlite3.Connection, rally_id: str) -> list[Competitor]:
    rows = conn.execute(
        "SELECT * FROM competitors WHERE rally_id=? ORDER BY car_number", (rally_id,)
    ).fetchall()
    return [
        Competitor(
            competitor_id=r["competitor_id"],
            name=r["name"],
            car_number=r["car_number"],
            nationality=r["nationality"],
            team=r["team"],
            car=r["car"],
            co_driver=r["co_driver"],
        )
        for r in rows
    ]


# ======================================================================
# STAGE ENTRIES
# ======================================================================

def save_entries(conn: sqlite3.Connection, rally_id: str, entries: Iterable[StageEntry]) -> int:
    """Upsert entries, keeping the stored row when its revision is not older.

    Returns the number of rows written.
    """
    written = 0
    for entry in entries:
        cur = conn.execute(
            """INSERT INTO stage_entries (rally_id, competitor_id, stage_id, revision,
                   status, time_text, reason)
               VALUES (?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(rally_id, competitor_id, stage_id) DO UPDATE SET
                   revision=excluded.revision, status=excluded.status,
                   time_text=excluded.time_text, reason=excluded.reason,
                   updated_at=datetime('now')
               WHERE excluded.revision > stage_entries.revision""",
            (rally_id, entry.competitor_id, entry.stage_id, entry.revision,
             entry.status.value, entry.time_text, entry.reason)
        )
        written += cur.rowcount
    conn.commit()
    return written


def get_entries(conn: sqlite3.Connection, rally_id: str) -> list[StageEntry]:
    """Stored entries of a rally. Rows that no longer parse are skipped."""
    rows = conn.execute(
        "SELECT * FROM stage_entries WHERE rally_id=? ORDER BY stage_id, competitor_id",
        (rally_id,)
    ).fetchall()

    entries = []
    for r in rows:
        try:
            status = normalize_entry_status(r["status"])
        except RallyTimingError as e:
            logger.warning("Rally %s: skipping stored entry %s/%s: %s",
                           rally_id, r["competitor_id"], r["stage_id"], e)
            continue
        elapsed = None
        if r["time_text"]:
            try:
                elapsed = parse_time(r["time_text"])
            except MalformedTime:
                elapsed = None
        entries.append(StageEntry(
            competitor_id=r["competitor_id"],
            stage_id=r["stage_id"],
            revision=r["revision"],
            status=status,
            time_text=r["time_text"],
            elapsed=elapsed,
            reason=r["reason"],
        ))
    return entries


# ======================================================================
# PENALTIES
# ======================================================================

def upsert_penalty(conn: sqlite3.Connection, rally_id: str, penalty: Penalty) -> None:
    conn.execute(
        """INSERT OR REPLACE INTO penalties (rally_id, penalty_id, competitor_id,
               stage_id, time_ms, reason)
           VALUES (?, ?, ?, ?, ?, ?)""",
        (rally_id, penalty.penalty_id, penalty.competitor_id, penalty.stage_id,
         penalty.time_added.ms, penalty.reason)
    )
    conn.commit()


def get_penalties(conn: sqlite3.Connection, rally_id: str) -> list[Penalty]:
    rows = conn.execute(
        "SELECT * FROM penalties WHERE rally_id=? ORDER BY penalty_id", (rally_id,)
    ).fetchall()
    return [
        Penalty(
            penalty_id=r["penalty_id"],
            competitor_id=r["competitor_id"],
            time_added=Duration(r["time_ms"]),
            stage_id=r["stage_id"],
            reason=r["reason"],
        )
        for r in rows
    ]


# ======================================================================
# PUBLISHED STANDINGS
# ======================================================================

def save_standings(conn: sqlite3.Connection, snapshot: StandingsSnapshot,
                   precision: str = "auto") -> None:
    """Store the rendered snapshot; only ever moves the version forward."""
    conn.execute(
        """INSERT INTO published_standings (rally_id, version, data_json)
           VALUES (?, ?, ?)
           ON CONFLICT(rally_id) DO UPDATE SET
               version=excluded.version, data_json=excluded.data_json,
               published_at=datetime('now')
           WHERE excluded.version > published_standings.version""",
        (snapshot.rally_id, snapshot.version,
         json.dumps(snapshot.to_dict(precision), ensure_ascii=False))
    )
    conn.commit()


def get_published_standings(conn: sqlite3.Connection, rally_id: str) -> Optional[dict]:
    row = conn.execute(
        "SELECT data_json FROM published_standings WHERE rally_id=?", (rally_id,)
    ).fetchone()
    return json.loads(row["data_json"]) if row else None


def get_published_version(conn: sqlite3.Connection, rally_id: str) -> int:
    row = conn.execute(
        "SELECT version FROM published_standings WHERE rally_id=?", (rally_id,)
    ).fetchone()
    return row["version"] if row else 0


# ======================================================================
# AUDIT LOG
# ======================================================================

def log_audit(conn: sqlite3.Connection, rally_id: Optional[str],
              action: str, entity_type: str = "",
              entity_id: Optional[str] = None,
              details: str = "",
              before_val: str = "", after_val: str = "",
              source: str = "admin") -> int:
    """Log an admin action for audit trail."""
    cur = conn.execute(
        """INSERT INTO audit_log (rally_id, action, entity_type, entity_id,
           details, before_val, after_val, source)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
        (rally_id, action, entity_type, entity_id,
         details, before_val, after_val, source)
    )
    conn.commit()
    return cur.lastrowid


def get_audit_log(conn: sqlite3.Connection, rally_id: Optional[str] = None,
                  limit: int = 100) -> list[sqlite3.Row]:
    """Get audit log entries, newest first."""
    if rally_id:
        return conn.execute(
            "SELECT * FROM audit_log WHERE rally_id=? ORDER BY id DESC LIMIT ?",
            (rally_id, limit)
        ).fetchall()
    return conn.execute(
        "SELECT * FROM audit_log ORDER BY id DESC LIMIT ?", (limit,)
    ).fetchall()


# ======================================================================
# ENGINE RESTORE
# ======================================================================

def restore_engine(conn: sqlite3.Connection, engine) -> int:
    """Load every stored rally into the engine. Returns number of rallies."""
    count = 0
    for rally in get_rallies(conn):
        rally_id = rally["id"]
        try:
            snapshot = engine.load(
                rally_id,
                stages=get_stages(conn, rally_id),
                competitors=get_competitors(conn, rally_id),
                entries=get_entries(conn, rally_id),
                penalties=get_penalties(conn, rally_id),
                base_version=get_published_version(conn, rally_id),
            )
        except (RallyTimingError, ValueError) as e:
            logger.error("Rally %s: restore failed: %s", rally_id, e)
            continue
        logger.info("Rally %s: restored standings v%d", rally_id, snapshot.version)
        count += 1
    return count

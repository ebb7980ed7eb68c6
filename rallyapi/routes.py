"""
routes.py — REST API endpoints for RallyTiming.

All endpoints under /api/. Every write goes through the results engine
first; what the engine recorded is then persisted to SQLite, audited, and
the new standings are broadcast over the WebSocket.
"""

from __future__ import annotations

import io
import json
import logging
import uuid
from typing import Optional

import httpx
from fastapi import APIRouter, File, HTTPException, UploadFile
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from rallycore.coordinator import EntrySubmission, Outcome, RallyEngine, SubmitResult
from rallycore.database import (
    get_audit_log,
    get_connection,
    get_rallies,
    get_setting,
    log_audit,
    replace_stages,
    save_entries,
    save_standings,
    set_setting,
    upsert_competitor,
    upsert_penalty,
)
from rallycore.errors import (
    DuplicateCarNumber,
    MalformedTime,
    UnknownCompetitor,
    UnknownRally,
    UnknownStage,
    UnknownStatus,
)
from rallycore.metadata_client import fetch_competitors, fetch_stages
from rallycore.models import Competitor, Penalty, Stage, normalize_stage_status
from rallycore.timevalue import PRECISION_DIGITS, parse_penalty
from rallycore.timing_engine import (
    read_entry_list_csv,
    write_overall_csv,
    write_stage_classification_csv,
)
from rallyapi.websocket import manager as ws_manager

logger = logging.getLogger("rallytiming.api")

router = APIRouter()

# Results engine shared by every request; rebuilt from SQLite at startup.
engine = RallyEngine()

# HTTP status for a rejected submission, by error code
REJECTION_STATUS = {
    "malformed_time": 422,
    "unknown_competitor": 422,
    "unknown_status": 422,
    "cancelled_stage_write": 409,
    "unknown_rally": 404,
    "unknown_stage": 404,
}

SETTING_VALUES = {
    "time_precision": {"auto", *PRECISION_DIGITS},
}


# ─── Helper ──────────────────────────────────────────────────────────

def _rows_to_list(rows) -> list[dict]:
    """Convert list of sqlite3.Row to list of dicts."""
    return [dict(r) for r in rows]


def _get_conn():
    return get_connection()


def _precision(conn) -> str:
    return get_setting(conn, "time_precision", "auto")


def _pipeline(rally_id: str):
    try:
        return engine.pipeline(rally_id)
    except UnknownRally as e:
        raise HTTPException(404, e.to_dict())


async def _publish(conn, rally_id: str, stage_ids=()) -> None:
    """Persist the current snapshot and broadcast it."""
    snapshot = engine.snapshot(rally_id)
    precision = _precision(conn)
    save_standings(conn, snapshot, precision)
    await ws_manager.broadcast_standings(snapshot, precision)
    for stage_id in sorted(set(stage_ids)):
        classification = snapshot.classifications.get(stage_id)
        if classification is not None:
            await ws_manager.broadcast_stage_classification(
                rally_id, snapshot.version, classification, precision)


# ─── Pydantic models ─────────────────────────────────────────────────

class StageBody(BaseModel):
    stage_id: str
    name: str
    ordinal: int
    status: str = "upcoming"
    distance_km: Optional[float] = None

class CompetitorBody(BaseModel):
    competitor_id: str
    name: str
    car_number: int
    co_driver: str = ""
    nationality: str = ""
    team: str = ""
    car: str = ""

class EntrySubmit(BaseModel):
    stage_id: str
    competitor_id: str
    revision: int
    time: Optional[str] = None
    status: str = "finished"
    reason: Optional[str] = None

class EntryBatch(BaseModel):
    entries: list[EntrySubmit]

class PenaltyBody(BaseModel):
    competitor_id: str
    time: str
    stage_id: Optional[str] = None
    reason: str = ""
    penalty_id: Optional[str] = None

class SettingBody(BaseModel):
    value: str


def _submission(body: EntrySubmit) -> EntrySubmission:
    return EntrySubmission(
        stage_id=body.stage_id,
        competitor_id=body.competitor_id,
        revision=body.revision,
        time_text=body.time,
        status=body.status,
        reason=body.reason,
    )


# ═══════════════════════════════════════════════════════════════════════
# RALLIES & STAGES
# ═══════════════════════════════════════════════════════════════════════

@router.get("/rallies")
async def list_rallies():
    conn = _get_conn()
    try:
        names = {r["id"]: r["name"] for r in get_rallies(conn)}
    finally:
        conn.close()

    rallies = []
    for rally_id in engine.rally_ids():
        snapshot = engine.snapshot(rally_id)
        rallies.append({
            "rally_id": rally_id,
            "name": names.get(rally_id, ""),
            "version": snapshot.version,
            "stages": len(snapshot.stages),
            "competitors": len(engine.pipeline(rally_id).registry),
        })
    return rallies


@router.get("/rallies/{rally_id}/stages")
async def list_stages(rally_id: str):
    _pipeline(rally_id)
    return [s.to_dict() for s in engine.list_stages_in_order(rally_id)]


async def _set_stages(rally_id: str, stages: list[Stage], source: str) -> list[dict]:
    try:
        before = [s.to_dict() for s in engine.list_stages_in_order(rally_id)]
    except UnknownRally:
        before = []
    try:
        stored = engine.set_stages(rally_id, stages)
    except ValueError as e:
        raise HTTPException(422, str(e))

    conn = _get_conn()
    try:
        replace_stages(conn, rally_id, stored)
        log_audit(conn, rally_id, "set_stages", "rally", rally_id,
                  details=f"{len(stored)} stages",
                  before_val=json.dumps(before), after_val=json.dumps([s.to_dict() for s in stored]),
                  source=source)
        await _publish(conn, rally_id)
    finally:
        conn.close()
    return [s.to_dict() for s in stored]


@router.put("/rallies/{rally_id}/stages")
async def put_stages(rally_id: str, body: list[StageBody]):
    """Replace the stage list of a rally."""
    try:
        stages = [
            Stage(stage_id=s.stage_id, name=s.name, ordinal=s.ordinal, rally_id=rally_id,
                  status=normalize_stage_status(s.status), distance_km=s.distance_km)
            for s in body
        ]
    except UnknownStatus as e:
        raise HTTPException(422, e.to_dict())
    return await _set_stages(rally_id, stages, "admin")


@router.post("/rallies/{rally_id}/stages/sync")
async def sync_stages(rally_id: str):
    """Pull the stage list from the metadata store."""
    try:
        stages = await fetch_stages(rally_id)
    except httpx.HTTPError as e:
        logger.error("Stage sync for rally %s failed: %s", rally_id, e)
        raise HTTPException(502, f"Metadata store unavailable: {e}")
    return await _set_stages(rally_id, stages, "metadata")


# ═══════════════════════════════════════════════════════════════════════
# COMPETITORS
# ═══════════════════════════════════════════════════════════════════════

@router.get("/rallies/{rally_id}/competitors")
async def list_competitors(rally_id: str):
    return [c.to_dict() for c in _pipeline(rally_id).registry]


async def _register_all(rally_id: str, competitors: list[Competitor],
                        source: str) -> tuple[int, list[str]]:
    """Register competitors one by one. Returns (count, warnings)."""
    count = 0
    warnings: list[str] = []
    conn = _get_conn()
    try:
        for competitor in competitors:
            try:
                engine.register_competitor(rally_id, competitor)
            except DuplicateCarNumber as e:
                warnings.append(f"{competitor.competitor_id}: {e}")
                continue
            upsert_competitor(conn, rally_id, competitor)
            count += 1
        log_audit(conn, rally_id, "import_competitors", "rally", rally_id,
                  details=f"{count} registered, {len(warnings)} skipped", source=source)
        if count:
            await _publish(conn, rally_id)
    finally:
        conn.close()
    logger.info("Rally %s: %d competitors registered from %s", rally_id, count, source)
    return count, warnings


@router.post("/rallies/{rally_id}/competitors")
async def register_competitor_endpoint(rally_id: str, body: CompetitorBody):
    competitor = Competitor(**body.model_dump())
    try:
        engine.register_competitor(rally_id, competitor)
    except DuplicateCarNumber as e:
        raise HTTPException(409, e.to_dict())

    conn = _get_conn()
    try:
        upsert_competitor(conn, rally_id, competitor)
        log_audit(conn, rally_id, "register_competitor", "competitor",
                  competitor.competitor_id, after_val=json.dumps(competitor.to_dict()))
        await _publish(conn, rally_id)
        return competitor.to_dict()
    finally:
        conn.close()


@router.post("/rallies/{rally_id}/competitors/import")
async def import_competitors_csv(rally_id: str, file: UploadFile = File(...)):
    """Import an entry list from CSV (CarNo;CompetitorId;Driver;CoDriver;Nationality;Team;Car)."""
    content = await file.read()
    try:
        text = content.decode("utf-8-sig")
    except UnicodeDecodeError:
        text = content.decode("latin-1")
    competitors, warnings = read_entry_list_csv(text)
    count, skipped = await _register_all(rally_id, competitors, "csv")
    return {"count": count, "warnings": warnings + skipped}


@router.post("/rallies/{rally_id}/competitors/sync")
async def sync_competitors(rally_id: str):
    """Pull the entry list from the metadata store."""
    try:
        competitors = await fetch_competitors(rally_id)
    except httpx.HTTPError as e:
        logger.error("Entry list sync for rally %s failed: %s", rally_id, e)
        raise HTTPException(502, f"Metadata store unavailable: {e}")
    count, warnings = await _register_all(rally_id, competitors, "metadata")
    return {"count": count, "warnings": warnings}


# ═══════════════════════════════════════════════════════════════════════
# STAGE ENTRIES
# ═══════════════════════════════════════════════════════════════════════

@router.post("/rallies/{rally_id}/entries")
async def submit_entry(rally_id: str, body: EntrySubmit):
    """Submit one stage result. Corrections carry a higher revision."""
    result: SubmitResult = engine.submit_stage_entry(
        rally_id, body.stage_id, body.competitor_id, body.revision,
        body.time, body.status, body.reason,
    )

    if result.entry is not None:
        conn = _get_conn()
        try:
            save_entries(conn, rally_id, [result.entry])
            log_audit(conn, rally_id, "submit_entry", "stage_entry",
                      f"{body.competitor_id}/{body.stage_id}",
                      details=f"rev {body.revision} {result.outcome.value}",
                      after_val=json.dumps(result.entry.to_dict()), source="timing")
            await _publish(conn, rally_id, [body.stage_id])
        finally:
            conn.close()

    if result.outcome is Outcome.REJECTED:
        raise HTTPException(REJECTION_STATUS.get(result.error, 422), result.to_dict())
    return result.to_dict()


@router.post("/rallies/{rally_id}/entries/batch")
async def submit_entry_batch(rally_id: str, body: EntryBatch):
    """Submit many stage results with one recomputation.

    Per-entry rejections are reported in the body; a batch touching an
    unknown or cancelled stage is refused as a whole.
    """
    batch = engine.submit_batch(rally_id, [_submission(e) for e in body.entries])

    structural = {"cancelled_stage_write", "unknown_rally", "unknown_stage"}
    refused = next((r for r in batch.results if r.error in structural), None)
    if refused is not None:
        raise HTTPException(REJECTION_STATUS[refused.error], batch.to_dict())

    recorded = batch.recorded
    if recorded:
        conn = _get_conn()
        try:
            save_entries(conn, rally_id, recorded)
            log_audit(conn, rally_id, "submit_batch", "rally", rally_id,
                      details=(f"{batch.count(Outcome.ACCEPTED)} accepted, "
                               f"{batch.count(Outcome.SUPERSEDED)} superseded, "
                               f"{batch.count(Outcome.REJECTED)} rejected"),
                      source="timing")
            await _publish(conn, rally_id, [e.stage_id for e in recorded])
        finally:
            conn.close()
    return batch.to_dict()


# ═══════════════════════════════════════════════════════════════════════
# PENALTIES
# ═══════════════════════════════════════════════════════════════════════

@router.post("/rallies/{rally_id}/penalties")
async def add_penalty(rally_id: str, body: PenaltyBody):
    """Add or replace a time penalty ("+1m 30s", "10s", "0:30")."""
    try:
        time_added = parse_penalty(body.time)
    except MalformedTime as e:
        raise HTTPException(422, e.to_dict())

    penalty = Penalty(
        penalty_id=body.penalty_id or uuid.uuid4().hex[:12],
        competitor_id=body.competitor_id,
        time_added=time_added,
        stage_id=body.stage_id or None,
        reason=body.reason,
    )
    try:
        engine.apply_penalty(rally_id, penalty)
    except (UnknownRally, UnknownStage) as e:
        raise HTTPException(404, e.to_dict())
    except UnknownCompetitor as e:
        raise HTTPException(422, e.to_dict())

    conn = _get_conn()
    try:
        upsert_penalty(conn, rally_id, penalty)
        log_audit(conn, rally_id, "apply_penalty", "penalty", penalty.penalty_id,
                  details=body.reason, after_val=json.dumps(penalty.to_dict()))
        await _publish(conn, rally_id)
        return penalty.to_dict()
    finally:
        conn.close()


# ═══════════════════════════════════════════════════════════════════════
# RESULTS
# ═══════════════════════════════════════════════════════════════════════

@router.get("/rallies/{rally_id}/stages/{stage_id}/classification")
async def get_stage_classification_endpoint(rally_id: str, stage_id: str):
    try:
        classification = engine.get_stage_classification(rally_id, stage_id)
    except (UnknownRally, UnknownStage) as e:
        raise HTTPException(404, e.to_dict())
    if classification is None:
        raise HTTPException(404, "not_yet_run")

    conn = _get_conn()
    try:
        return classification.to_dict(_precision(conn))
    finally:
        conn.close()


@router.get("/rallies/{rally_id}/standings")
async def get_standings_endpoint(rally_id: str):
    snapshot = _pipeline(rally_id).snapshot
    if snapshot.overall is None:
        raise HTTPException(404, "no_competitors")

    conn = _get_conn()
    try:
        return {"version": snapshot.version, **snapshot.overall.to_dict(_precision(conn))}
    finally:
        conn.close()


@router.post("/rallies/{rally_id}/recalculate")
async def recalculate_endpoint(rally_id: str):
    _pipeline(rally_id)
    diffs = engine.recalculate(rally_id)
    conn = _get_conn()
    try:
        log_audit(conn, rally_id, "recalculate", "rally", rally_id,
                  details=f"{len(diffs)} differences")
        await _publish(conn, rally_id)
        return {"ok": True, "version": engine.snapshot(rally_id).version, "diffs": diffs}
    finally:
        conn.close()


def _csv_response(content: str, filename: str) -> StreamingResponse:
    return StreamingResponse(
        io.StringIO(content),
        media_type="text/csv",
        headers={"Content-Disposition": f"attachment; filename={filename}"},
    )


@router.get("/rallies/{rally_id}/export/csv")
async def export_overall_csv(rally_id: str):
    """Export overall standings with per-stage times as CSV download."""
    snapshot = _pipeline(rally_id).snapshot
    if snapshot.overall is None:
        raise HTTPException(404, "no_competitors")

    conn = _get_conn()
    try:
        precision = _precision(conn)
    finally:
        conn.close()

    out = io.StringIO()
    write_overall_csv(snapshot.overall, snapshot.stages, snapshot.classifications, out, precision)
    return _csv_response(out.getvalue(), f"standings_{rally_id}.csv")


@router.get("/rallies/{rally_id}/stages/{stage_id}/export/csv")
async def export_stage_csv(rally_id: str, stage_id: str):
    try:
        classification = engine.get_stage_classification(rally_id, stage_id)
    except (UnknownRally, UnknownStage) as e:
        raise HTTPException(404, e.to_dict())
    if classification is None:
        raise HTTPException(404, "not_yet_run")

    conn = _get_conn()
    try:
        precision = _precision(conn)
    finally:
        conn.close()

    out = io.StringIO()
    write_stage_classification_csv(classification, out, precision)
    return _csv_response(out.getvalue(), f"{rally_id}_{stage_id}.csv")


# ═══════════════════════════════════════════════════════════════════════
# AUDIT LOG
# ═══════════════════════════════════════════════════════════════════════

@router.get("/rallies/{rally_id}/audit")
async def get_rally_audit(rally_id: str, limit: int = 100):
    """Get audit log for a rally."""
    conn = _get_conn()
    try:
        return _rows_to_list(get_audit_log(conn, rally_id, limit))
    finally:
        conn.close()


# ═══════════════════════════════════════════════════════════════════════
# SETTINGS & STATUS
# ═══════════════════════════════════════════════════════════════════════

@router.get("/settings/{key}")
async def read_setting(key: str):
    if key not in SETTING_VALUES:
        raise HTTPException(404, f"Unknown setting {key}")
    conn = _get_conn()
    try:
        return {"key": key, "value": get_setting(conn, key, "auto")}
    finally:
        conn.close()


@router.put("/settings/{key}")
async def write_setting(key: str, body: SettingBody):
    allowed = SETTING_VALUES.get(key)
    if allowed is None:
        raise HTTPException(404, f"Unknown setting {key}")
    if body.value not in allowed:
        raise HTTPException(422, f"{key} must be one of {sorted(allowed)}")

    conn = _get_conn()
    try:
        before = get_setting(conn, key, "")
        set_setting(conn, key, body.value)
        log_audit(conn, None, "set_setting", "setting", key,
                  before_val=before, after_val=body.value)
        return {"key": key, "value": body.value}
    finally:
        conn.close()


@router.get("/status")
async def system_status():
    conn = _get_conn()
    try:
        return {
            "server": "RallyTiming",
            "version": "1.0",
            "rallies": engine.rally_ids(),
            "pipelines": {rid: engine.pipeline(rid).state.value for rid in engine.rally_ids()},
            "ws_connections": ws_manager.connection_count,
            "time_precision": _precision(conn),
        }
    finally:
        conn.close()

"""
models.py — Competitors, stages, entries and the derived classification types.

Status strings arrive in several spellings from the admin forms and the
metadata store; they are collapsed to the closed enums below through the
alias tables at the ingestion boundary.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Mapping, Optional

from rallycore.errors import UnknownStatus
from rallycore.timevalue import Duration, MS_PER_HOUR, format_gap, format_time


class EntryStatus(str, Enum):
    FINISHED = "finished"
    DNF = "dnf"
    DNS = "dns"
    EXCLUDED = "excluded"


class StandingStatus(str, Enum):
    RUNNING = "running"
    RETIRED = "retired"
    EXCLUDED = "excluded"


class StageStatus(str, Enum):
    UPCOMING = "upcoming"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


ENTRY_STATUS_ALIASES = {
    "finished": EntryStatus.FINISHED,
    "ok": EntryStatus.FINISHED,
    "completed": EntryStatus.FINISHED,
    "dnf": EntryStatus.DNF,
    "retired": EntryStatus.DNF,
    "ret": EntryStatus.DNF,
    "dns": EntryStatus.DNS,
    "excluded": EntryStatus.EXCLUDED,
    "dsq": EntryStatus.EXCLUDED,
    "disqualified": EntryStatus.EXCLUDED,
}

STAGE_STATUS_ALIASES = {
    "upcoming": StageStatus.UPCOMING,
    "in-progress": StageStatus.IN_PROGRESS,
    "in_progress": StageStatus.IN_PROGRESS,
    "ongoing": StageStatus.IN_PROGRESS,
    "completed": StageStatus.COMPLETED,
    "cancelled": StageStatus.CANCELLED,
    "canceled": StageStatus.CANCELLED,
}


def normalize_entry_status(value: str | EntryStatus) -> EntryStatus:
    if isinstance(value, EntryStatus):
        return value
    status = ENTRY_STATUS_ALIASES.get(str(value).strip().lower())
    if status is None:
        raise UnknownStatus(value)
    return status


def normalize_stage_status(value: str | StageStatus | None) -> StageStatus:
    if isinstance(value, StageStatus):
        return value
    if value is None or value == "":
        return StageStatus.UPCOMING
    status = STAGE_STATUS_ALIASES.get(str(value).strip().lower())
    if status is None:
        raise UnknownStatus(value, kind="stage")
    return status


# ---------------------------------------------------------------------------
# Inputs
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Competitor:
    competitor_id: str
    name: str
    car_number: int
    nationality: str = ""
    team: str = ""
    car: str = ""
    co_driver: str = ""

    def to_dict(self) -> dict:
        return {
            "competitor_id": self.competitor_id,
            "name": self.name,
            "car_number": self.car_number,
            "nationality": self.nationality,
            "team": self.team,
            "car": self.car,
            "co_driver": self.co_driver,
        }


@dataclass(frozen=True)
class Stage:
    stage_id: str
    name: str
    ordinal: int
    rally_id: str = ""
    status: StageStatus = StageStatus.UPCOMING
    distance_km: Optional[float] = None

    @property
    def is_cancelled(self) -> bool:
        return self.status is StageStatus.CANCELLED

    def to_dict(self) -> dict:
        return {
            "stage_id": self.stage_id,
            "name": self.name,
            "ordinal": self.ordinal,
            "rally_id": self.rally_id,
            "status": self.status.value,
            "distance_km": self.distance_km,
        }


@dataclass(frozen=True)
class StageEntry:
    """One competitor's recorded result on one stage at a given revision."""

    competitor_id: str
    stage_id: str
    revision: int
    status: EntryStatus
    time_text: Optional[str] = None
    elapsed: Optional[Duration] = None
    reason: Optional[str] = None

    @property
    def key(self) -> tuple[str, str]:
        return (self.competitor_id, self.stage_id)

    @property
    def is_timed(self) -> bool:
        return self.status is EntryStatus.FINISHED and self.elapsed is not None

    def to_dict(self) -> dict:
        return {
            "competitor_id": self.competitor_id,
            "stage_id": self.stage_id,
            "revision": self.revision,
            "status": self.status.value,
            "time": self.time_text,
            "reason": self.reason,
        }


@dataclass(frozen=True)
class Penalty:
    penalty_id: str
    competitor_id: str
    time_added: Duration
    stage_id: Optional[str] = None
    reason: str = ""

    def to_dict(self) -> dict:
        return {
            "penalty_id": self.penalty_id,
            "competitor_id": self.competitor_id,
            "stage_id": self.stage_id,
            "time_added": format_time(self.time_added),
            "time_added_seconds": self.time_added.seconds,
            "reason": self.reason,
        }


# ---------------------------------------------------------------------------
# Stage classification
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class StageLine:
    competitor_id: str
    car_number: int
    name: str
    team: str
    status: EntryStatus
    position: Optional[int] = None
    elapsed: Optional[Duration] = None
    gap: Optional[Duration] = None
    average_speed_kph: Optional[float] = None
    reason: Optional[str] = None

    def to_dict(self, precision: str = "auto") -> dict:
        return {
            "position": self.position,
            "competitor_id": self.competitor_id,
            "car_number": self.car_number,
            "driver": self.name,
            "team": self.team,
            "status": self.status.value,
            "time": format_time(self.elapsed, precision),
            "elapsed_seconds": self.elapsed.seconds if self.elapsed is not None else None,
            "gap": format_gap(self.gap, self.position == 1, precision) if self.position else "",
            "gap_seconds": self.gap.seconds if self.gap is not None else None,
            "average_speed_kph": self.average_speed_kph,
            "reason": self.reason,
        }


@dataclass(frozen=True)
class StageClassification:
    stage_id: str
    stage_name: str
    ordinal: int
    lines: tuple[StageLine, ...] = ()
    cancelled: bool = False

    @property
    def classified(self) -> tuple[StageLine, ...]:
        return tuple(line for line in self.lines if line.position is not None)

    @property
    def non_classified(self) -> tuple[StageLine, ...]:
        return tuple(line for line in self.lines if line.position is None)

    @property
    def leader(self) -> Optional[StageLine]:
        classified = self.classified
        return classified[0] if classified else None

    def line_for(self, competitor_id: str) -> Optional[StageLine]:
        for line in self.lines:
            if line.competitor_id == competitor_id:
                return line
        return None

    def to_dict(self, precision: str = "auto") -> dict:
        return {
            "stage_id": self.stage_id,
            "stage_name": self.stage_name,
            "ordinal": self.ordinal,
            "cancelled": self.cancelled,
            "results": [line.to_dict(precision) for line in self.classified],
            "non_classified": [line.to_dict(precision) for line in self.non_classified],
        }


# ---------------------------------------------------------------------------
# Cumulative and overall
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CumulativeRecord:
    competitor_id: str
    total: Duration
    status: StandingStatus = StandingStatus.RUNNING
    stages_counted: int = 0
    penalty_total: Duration = Duration(0)
    out_on_stage: Optional[str] = None
    out_reason: Optional[str] = None


@dataclass(frozen=True)
class StandingLine:
    competitor_id: str
    car_number: int
    name: str
    team: str
    status: StandingStatus
    total: Duration
    position: Optional[int] = None
    gap: Optional[Duration] = None
    stages_counted: int = 0
    penalty_total: Duration = Duration(0)
    out_on_stage: Optional[str] = None
    out_reason: Optional[str] = None

    def to_dict(self, precision: str = "auto") -> dict:
        classified = self.position is not None
        return {
            "position": self.position,
            "competitor_id": self.competitor_id,
            "car_number": self.car_number,
            "driver": self.name,
            "team": self.team,
            "status": self.status.value,
            "total_time": format_time(self.total, precision) if classified else "",
            "total_seconds": self.total.seconds if classified else None,
            "gap": format_gap(self.gap, self.position == 1, precision) if classified else "",
            "gap_seconds": self.gap.seconds if self.gap is not None else None,
            "stages_counted": self.stages_counted,
            "penalties": format_time(self.penalty_total, precision) if self.penalty_total.ms else "",
            "out_on_stage": self.out_on_stage,
            "out_reason": self.out_reason,
        }


@dataclass(frozen=True)
class OverallStandings:
    rally_id: str
    lines: tuple[StandingLine, ...] = ()
    stages_folded: int = 0

    @property
    def classified(self) -> tuple[StandingLine, ...]:
        return tuple(line for line in self.lines if line.position is not None)

    @property
    def leader(self) -> Optional[StandingLine]:
        classified = self.classified
        return classified[0] if classified else None

    def line_for(self, competitor_id: str) -> Optional[StandingLine]:
        for line in self.lines:
            if line.competitor_id == competitor_id:
                return line
        return None

    def to_dict(self, precision: str = "auto") -> dict:
        return {
            "rally_id": self.rally_id,
            "stages_folded": self.stages_folded,
            "standings": [line.to_dict(precision) for line in self.lines],
        }


@dataclass(frozen=True)
class StandingsSnapshot:
    """Complete published state of one rally; never mutated once built."""

    rally_id: str
    version: int = 0
    stages: tuple[Stage, ...] = ()
    classifications: Mapping[str, StageClassification] = field(
        default_factory=lambda: MappingProxyType({}))
    cumulative: Mapping[str, CumulativeRecord] = field(
        default_factory=lambda: MappingProxyType({}))
    overall: Optional[OverallStandings] = None

    def to_dict(self, precision: str = "auto") -> dict:
        return {
            "rally_id": self.rally_id,
            "version": self.version,
            "stages": [s.to_dict() for s in self.stages],
            "classifications": {
                sid: c.to_dict(precision) for sid, c in self.classifications.items()
            },
            "overall": self.overall.to_dict(precision) if self.overall else None,
        }


def average_speed(distance_km: Optional[float], elapsed: Optional[Duration]) -> Optional[float]:
    if not distance_km or elapsed is None or elapsed.ms <= 0:
        return None
    return round(distance_km / (elapsed.ms / MS_PER_HOUR), 2)

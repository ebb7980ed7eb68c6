"""
errors.py — Exception hierarchy for the results engine.

Every error carries a stable ``code`` that is reported back to callers in
submission results and API error bodies.
"""

from __future__ import annotations


class RallyTimingError(Exception):
    """Base exception for rallytiming."""

    code = "error"

    def to_dict(self) -> dict:
        return {"error": self.code, "detail": str(self)}


class MalformedTime(RallyTimingError, ValueError):
    """Elapsed-time text does not match the time grammar."""

    code = "malformed_time"

    def __init__(self, text: object):
        self.text = text
        super().__init__(f"Malformed time: {text!r}")


class UnknownStatus(RallyTimingError, ValueError):
    """Status string not present in the ingestion alias table."""

    code = "unknown_status"

    def __init__(self, status: object, kind: str = "entry"):
        self.status = status
        super().__init__(f"Unknown {kind} status: {status!r}")


class UnknownCompetitor(RallyTimingError):
    """Entry references a competitor not registered for the rally."""

    code = "unknown_competitor"

    def __init__(self, rally_id: str, competitor_id: str):
        self.rally_id = rally_id
        self.competitor_id = competitor_id
        super().__init__(f"Competitor {competitor_id} is not registered for rally {rally_id}")


class UnknownRally(RallyTimingError):
    code = "unknown_rally"

    def __init__(self, rally_id: str):
        self.rally_id = rally_id
        super().__init__(f"Unknown rally {rally_id}")


class UnknownStage(RallyTimingError):
    code = "unknown_stage"

    def __init__(self, rally_id: str, stage_id: str):
        self.rally_id = rally_id
        self.stage_id = stage_id
        super().__init__(f"Unknown stage {stage_id} in rally {rally_id}")


class StaleRevision(RallyTimingError):
    """Correction whose revision is not newer than the stored one."""

    code = "stale_revision"

    def __init__(self, revision: int, current: int):
        self.revision = revision
        self.current = current
        super().__init__(f"Revision {revision} is not newer than stored revision {current}")


class CancelledStageWrite(RallyTimingError):
    """Entry submitted against a cancelled stage."""

    code = "cancelled_stage_write"

    def __init__(self, rally_id: str, stage_id: str):
        self.rally_id = rally_id
        self.stage_id = stage_id
        super().__init__(f"Stage {stage_id} in rally {rally_id} is cancelled")


class DuplicateCarNumber(RallyTimingError):
    """Car number already held by another competitor in the same rally."""

    code = "duplicate_car_number"

    def __init__(self, car_number: int, holder: str):
        self.car_number = car_number
        self.holder = holder
        super().__init__(f"Car #{car_number} is already registered to {holder}")

"""
timing_engine.py — Stage classification, cumulative folding, overall
standings, and CSV entry-list import / results export.

Everything here is a pure function of its inputs: the same entries, stages
and registry always produce the same classification, which is what lets the
coordinator recompute on every update.
"""

from __future__ import annotations

import csv
import io
import logging
from collections import defaultdict
from typing import Iterable, Mapping, Optional, TextIO

from rallycore.models import (
    Competitor,
    CumulativeRecord,
    EntryStatus,
    OverallStandings,
    Penalty,
    Stage,
    StageClassification,
    StageEntry,
    StageLine,
    StandingLine,
    StandingStatus,
    average_speed,
)
from rallycore.registry import CompetitorRegistry
from rallycore.timevalue import ZERO, Duration, format_gap, format_time

logger = logging.getLogger("rallytiming.engine")

# Non-timed lines follow the classified field in this group order.
NON_TIMED_ORDER = {
    EntryStatus.FINISHED: 0,
    EntryStatus.DNF: 1,
    EntryStatus.DNS: 2,
    EntryStatus.EXCLUDED: 3,
}

# Entry status that takes a running competitor out of the overall.
LEAVES_RUNNING = {
    EntryStatus.DNF: StandingStatus.RETIRED,
    EntryStatus.DNS: StandingStatus.RETIRED,
    EntryStatus.EXCLUDED: StandingStatus.EXCLUDED,
}


# ---------------------------------------------------------------------------
# Stage classification
# ---------------------------------------------------------------------------

def rank_stage(stage: Stage, entries: Iterable[StageEntry],
               registry: CompetitorRegistry) -> StageClassification:
    """Rank one stage: timed finishers by time, then non-timed by status group.

    Ties on time go to the lower car number.
    """
    if stage.is_cancelled:
        return StageClassification(stage.stage_id, stage.name, stage.ordinal, cancelled=True)

    timed: list[tuple[StageEntry, Competitor]] = []
    untimed: list[tuple[StageEntry, Competitor]] = []

    for entry in entries:
        competitor = registry.get(entry.competitor_id)
        if competitor is None:
            logger.warning("Stage %s: skipping entry for unregistered competitor %s",
                           stage.stage_id, entry.competitor_id)
            continue
        if entry.is_timed:
            timed.append((entry, competitor))
        else:
            if entry.status is EntryStatus.FINISHED:
                logger.warning("Stage %s: car #%d finished without a usable time (%r)",
                               stage.stage_id, competitor.car_number, entry.time_text)
            untimed.append((entry, competitor))

    timed.sort(key=lambda pair: (pair[0].elapsed, pair[1].car_number, pair[1].competitor_id))
    untimed.sort(key=lambda pair: (NON_TIMED_ORDER[pair[0].status],
                                   pair[1].car_number, pair[1].competitor_id))

    lines: list[StageLine] = []
    leader_time = timed[0][0].elapsed if timed else None
    for position, (entry, competitor) in enumerate(timed, start=1):
        lines.append(StageLine(
            competitor_id=competitor.competitor_id,
            car_number=competitor.car_number,
            name=competitor.name,
            team=competitor.team,
            status=entry.status,
            position=position,
            elapsed=entry.elapsed,
            gap=entry.elapsed - leader_time,
            average_speed_kph=average_speed(stage.distance_km, entry.elapsed),
            reason=entry.reason,
        ))

    for entry, competitor in untimed:
        lines.append(StageLine(
            competitor_id=competitor.competitor_id,
            car_number=competitor.car_number,
            name=competitor.name,
            team=competitor.team,
            status=entry.status,
            elapsed=entry.elapsed,
            reason=entry.reason,
        ))

    return StageClassification(stage.stage_id, stage.name, stage.ordinal, tuple(lines))


# ---------------------------------------------------------------------------
# Cumulative folding
# ---------------------------------------------------------------------------

class _Accrual:
    __slots__ = ("total", "status", "stages_counted", "penalty_total",
                 "out_on_stage", "out_reason")

    def __init__(self):
        self.total = ZERO
        self.status = StandingStatus.RUNNING
        self.stages_counted = 0
        self.penalty_total = ZERO
        self.out_on_stage: Optional[str] = None
        self.out_reason: Optional[str] = None

    def add_penalty(self, penalty: Penalty) -> None:
        if self.status is StandingStatus.RUNNING:
            self.total = self.total + penalty.time_added
            self.penalty_total = self.penalty_total + penalty.time_added

    def freeze(self, competitor_id: str) -> CumulativeRecord:
        return CumulativeRecord(
            competitor_id=competitor_id,
            total=self.total,
            status=self.status,
            stages_counted=self.stages_counted,
            penalty_total=self.penalty_total,
            out_on_stage=self.out_on_stage,
            out_reason=self.out_reason,
        )


def counted_stages(stages: Iterable[Stage],
                   classifications: Mapping[str, StageClassification]) -> list[Stage]:
    """Stages that contribute to the overall, in ordinal order."""
    result = []
    for stage in sorted(stages, key=lambda s: s.ordinal):
        if stage.is_cancelled:
            continue
        classification = classifications.get(stage.stage_id)
        if classification is None or not classification.lines:
            continue
        result.append(stage)
    return result


def fold_cumulative(registry: CompetitorRegistry, stages: Iterable[Stage],
                    classifications: Mapping[str, StageClassification],
                    penalties: Iterable[Penalty] = ()) -> dict[str, CumulativeRecord]:
    """Fold stage classifications, in ordinal order, into running totals.

    A dnf/dns moves a running competitor to retired and an exclusion moves it
    to excluded; neither accrues time afterwards. A retired competitor can
    still be upgraded to excluded by a later stage, never back to running.
    """
    accruals = {c.competitor_id: _Accrual() for c in registry}

    by_stage: dict[str, list[Penalty]] = defaultdict(list)
    rally_level: list[Penalty] = []
    for penalty in sorted(penalties, key=lambda p: p.penalty_id):
        if penalty.competitor_id not in accruals:
            continue
        if penalty.stage_id:
            by_stage[penalty.stage_id].append(penalty)
        else:
            rally_level.append(penalty)

    for stage in sorted(stages, key=lambda s: s.ordinal):
        if stage.is_cancelled:
            continue

        classification = classifications.get(stage.stage_id)
        for line in classification.lines if classification else ():
            acc = accruals.get(line.competitor_id)
            if acc is None:
                continue

            if acc.status is StandingStatus.RUNNING:
                if line.position is not None:
                    acc.total = acc.total + line.elapsed
                    acc.stages_counted += 1
                elif line.status in LEAVES_RUNNING:
                    acc.status = LEAVES_RUNNING[line.status]
                    acc.out_on_stage = stage.stage_id
                    acc.out_reason = line.reason
            elif (acc.status is StandingStatus.RETIRED
                  and line.status is EntryStatus.EXCLUDED):
                acc.status = StandingStatus.EXCLUDED
                acc.out_on_stage = stage.stage_id
                acc.out_reason = line.reason

        for penalty in by_stage.get(stage.stage_id, ()):
            accruals[penalty.competitor_id].add_penalty(penalty)

    for penalty in rally_level:
        accruals[penalty.competitor_id].add_penalty(penalty)

    return {cid: acc.freeze(cid) for cid, acc in accruals.items()}


# ---------------------------------------------------------------------------
# Overall standings
# ---------------------------------------------------------------------------

def rank_overall(records: Mapping[str, CumulativeRecord], registry: CompetitorRegistry,
                 rally_id: str = "", stages_folded: int = 0) -> Optional[OverallStandings]:
    """Rank running competitors by cumulative time, then list retired and excluded.

    Returns None when the rally has no competitors.
    """
    if len(registry) == 0:
        return None

    running, retired, excluded = [], [], []
    for competitor in registry:
        record = records.get(competitor.competitor_id)
        if record is None:
            record = CumulativeRecord(competitor.competitor_id, ZERO)
        if record.status is StandingStatus.RUNNING:
            running.append((record, competitor))
        elif record.status is StandingStatus.RETIRED:
            retired.append((record, competitor))
        else:
            excluded.append((record, competitor))

    running.sort(key=lambda pair: (pair[0].total, pair[1].car_number, pair[1].competitor_id))

    lines: list[StandingLine] = []
    leader_total = running[0][0].total if running else None
    for position, (record, competitor) in enumerate(running, start=1):
        lines.append(_standing_line(record, competitor, position, record.total - leader_total))

    # registry iteration is already in car-number order
    for record, competitor in retired + excluded:
        lines.append(_standing_line(record, competitor))

    return OverallStandings(rally_id, tuple(lines), stages_folded)


def _standing_line(record: CumulativeRecord, competitor: Competitor,
                   position: Optional[int] = None,
                   gap: Optional[Duration] = None) -> StandingLine:
    return StandingLine(
        competitor_id=competitor.competitor_id,
        car_number=competitor.car_number,
        name=competitor.name,
        team=competitor.team,
        status=record.status,
        total=record.total,
        position=position,
        gap=gap,
        stages_counted=record.stages_counted,
        penalty_total=record.penalty_total,
        out_on_stage=record.out_on_stage,
        out_reason=record.out_reason,
    )


# ---------------------------------------------------------------------------
# CSV import
# ---------------------------------------------------------------------------

def read_entry_list_csv(text: str) -> tuple[list[Competitor], list[str]]:
    """Parse an entry list. Returns (competitors, list of warnings).

    Expected format: CarNo;CompetitorId;Driver;CoDriver;Nationality;Team;Car
    The last four columns may be omitted.
    """
    competitors: list[Competitor] = []
    warnings: list[str] = []

    reader = csv.reader(io.StringIO(text.lstrip("\ufeff")), delimiter=";")
    for i, row in enumerate(reader):
        if not row or len(row) < 3:
            continue
        if row[0].strip().lower() in ("carno", "car", "no"):
            continue

        try:
            car_number = int(row[0].strip())
        except ValueError:
            warnings.append(f"Row {i+1}: invalid car number '{row[0]}'")
            continue

        competitor_id = row[1].strip()
        name = row[2].strip()
        if not competitor_id or not name:
            warnings.append(f"Row {i+1}: missing competitor id or driver name")
            continue

        extra = [c.strip() for c in row[3:7]] + [""] * (7 - max(len(row), 3))
        competitors.append(Competitor(
            competitor_id=competitor_id,
            name=name,
            car_number=car_number,
            co_driver=extra[0],
            nationality=extra[1],
            team=extra[2],
            car=extra[3],
        ))

    return competitors, warnings


# ---------------------------------------------------------------------------
# CSV export
# ---------------------------------------------------------------------------

def write_stage_classification_csv(classification: StageClassification, out: TextIO,
                                   precision: str = "auto") -> int:
    """Write one stage classification as CSV. Returns row count."""
    writer = csv.writer(out, delimiter=";")
    writer.writerow(["Pos", "CarNo", "Driver", "Team", "Time", "Gap", "Status"])

    count = 0
    for line in classification.lines:
        if line.position is not None:
            writer.writerow([line.position, line.car_number, line.name, line.team,
                             format_time(line.elapsed, precision),
                             format_gap(line.gap, line.position == 1, precision),
                             line.status.value])
        else:
            writer.writerow(["", line.car_number, line.name, line.team,
                             "", "", line.status.value])
        count += 1
    return count


def write_overall_csv(standings: OverallStandings, stages: Iterable[Stage],
                      classifications: Mapping[str, StageClassification], out: TextIO,
                      precision: str = "auto") -> int:
    """Write overall standings with a per-stage breakdown. Returns row count."""
    shown = [s for s in sorted(stages, key=lambda s: s.ordinal) if not s.is_cancelled]

    writer = csv.writer(out, delimiter=";")
    header = ["Pos", "CarNo", "Driver", "Team", "Total", "Gap", "Status"]
    header.extend(s.name for s in shown)
    writer.writerow(header)

    count = 0
    for line in standings.lines:
        if line.position is not None:
            row = [line.position, line.car_number, line.name, line.team,
                   format_time(line.total, precision),
                   format_gap(line.gap, line.position == 1, precision),
                   line.status.value]
        else:
            row = ["", line.car_number, line.name, line.team, "", "", line.status.value]

        for stage in shown:
            classification = classifications.get(stage.stage_id)
            stage_line = classification.line_for(line.competitor_id) if classification else None
            if stage_line is None:
                row.append("")
            elif stage_line.position is not None:
                row.append(format_time(stage_line.elapsed, precision))
            else:
                row.append(stage_line.status.value)

        writer.writerow(row)
        count += 1
    return count

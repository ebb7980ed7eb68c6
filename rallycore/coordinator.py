"""
coordinator.py — Per-rally pipelines that apply entries and publish standings.

Each rally owns one RallyPipeline. Writers serialize on the pipeline lock,
build a complete new StandingsSnapshot from copies of the inputs, and only
then swap it in. Readers take the current snapshot reference without
locking, so they see either the previous or the new snapshot, never a mix.
Rallies share nothing, so different rallies recompute in parallel.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Iterable, Optional

from rallycore.errors import (
    CancelledStageWrite,
    MalformedTime,
    RallyTimingError,
    StaleRevision,
    UnknownCompetitor,
    UnknownRally,
    UnknownStage,
    UnknownStatus,
)
from rallycore.models import (
    Competitor,
    OverallStandings,
    Penalty,
    Stage,
    StageClassification,
    StageEntry,
    StandingsSnapshot,
    normalize_entry_status,
)
from rallycore.registry import CompetitorRegistry
from rallycore.timevalue import parse_time
from rallycore.timing_engine import counted_stages, fold_cumulative, rank_overall, rank_stage

logger = logging.getLogger("rallytiming.coordinator")


class Outcome(str, Enum):
    ACCEPTED = "accepted"
    SUPERSEDED = "superseded"
    REJECTED = "rejected"


class PipelineState(str, Enum):
    IDLE = "idle"
    RECOMPUTING = "recomputing"
    PUBLISHED = "published"


@dataclass(frozen=True)
class EntrySubmission:
    stage_id: str
    competitor_id: str
    revision: int
    time_text: Optional[str] = None
    status: str = "finished"
    reason: Optional[str] = None


@dataclass(frozen=True)
class SubmitResult:
    outcome: Outcome
    competitor_id: str
    stage_id: str
    revision: int
    error: Optional[str] = None
    detail: str = ""
    entry: Optional[StageEntry] = None
    """The entry as recorded, set whenever the submission changed stored state."""

    @property
    def recorded(self) -> bool:
        return self.entry is not None

    def to_dict(self) -> dict:
        return {
            "outcome": self.outcome.value,
            "competitor_id": self.competitor_id,
            "stage_id": self.stage_id,
            "revision": self.revision,
            "error": self.error,
            "detail": self.detail,
            "recorded": self.recorded,
        }


@dataclass(frozen=True)
class BatchResult:
    results: tuple[SubmitResult, ...]
    version: int

    @property
    def recorded(self) -> tuple[StageEntry, ...]:
        return tuple(r.entry for r in self.results if r.entry is not None)

    def count(self, outcome: Outcome) -> int:
        return sum(1 for r in self.results if r.outcome is outcome)

    def to_dict(self) -> dict:
        return {
            "version": self.version,
            "accepted": self.count(Outcome.ACCEPTED),
            "superseded": self.count(Outcome.SUPERSEDED),
            "rejected": self.count(Outcome.REJECTED),
            "results": [r.to_dict() for r in self.results],
        }


def ordered_stages(rally_id: str, stages: Iterable[Stage]) -> tuple[Stage, ...]:
    """Sort a stage list by ordinal; ordinals and ids must be unique."""
    ordered = tuple(sorted(stages, key=lambda s: s.ordinal))
    ordinals = [s.ordinal for s in ordered]
    if len(set(ordinals)) != len(ordinals):
        raise ValueError(f"Rally {rally_id}: stage ordinals must be unique")
    if len({s.stage_id for s in ordered}) != len(ordered):
        raise ValueError(f"Rally {rally_id}: stage ids must be unique")
    return ordered


def _rejected(sub: EntrySubmission, error: RallyTimingError,
              entry: Optional[StageEntry] = None) -> SubmitResult:
    return SubmitResult(Outcome.REJECTED, sub.competitor_id, sub.stage_id, sub.revision,
                        error=error.code, detail=str(error), entry=entry)


# ---------------------------------------------------------------------------
# Per-rally pipeline
# ---------------------------------------------------------------------------

class RallyPipeline:
    """Owns one rally's inputs and its published standings snapshot."""

    def __init__(self, rally_id: str):
        self.rally_id = rally_id
        self._lock = threading.Lock()
        self._state = PipelineState.IDLE
        self._registry = CompetitorRegistry()
        self._stages: tuple[Stage, ...] = ()
        self._entries: dict[tuple[str, str], StageEntry] = {}
        self._penalties: dict[str, Penalty] = {}
        self._snapshot = StandingsSnapshot(rally_id)

    @property
    def snapshot(self) -> StandingsSnapshot:
        return self._snapshot

    @property
    def state(self) -> PipelineState:
        """IDLE until the first publication, PUBLISHED afterwards.

        Read under the lock, so RECOMPUTING is never observed from outside.
        """
        with self._lock:
            return self._state

    @property
    def stages(self) -> tuple[Stage, ...]:
        return self._snapshot.stages

    @property
    def registry(self) -> CompetitorRegistry:
        # replaced wholesale on every change, never mutated once published
        return self._registry

    @property
    def penalties(self) -> tuple[Penalty, ...]:
        return tuple(self._penalties[k] for k in sorted(self._penalties))

    def entries(self) -> tuple[StageEntry, ...]:
        current = self._entries
        return tuple(current[k] for k in sorted(current))

    def entry(self, competitor_id: str, stage_id: str) -> Optional[StageEntry]:
        return self._entries.get((competitor_id, stage_id))

    # -- writes ------------------------------------------------------------

    def set_stages(self, stages: Iterable[Stage]) -> tuple[Stage, ...]:
        ordered = ordered_stages(self.rally_id, stages)
        with self._lock:
            if ordered == self._stages:
                return ordered
            self._publish(stages=ordered, restage=None)
            logger.info("Rally %s: %d stages loaded", self.rally_id, len(ordered))
            return ordered

    def register_competitor(self, competitor: Competitor) -> Competitor:
        with self._lock:
            registry = self._registry.copy()
            if registry.register(competitor):
                self._publish(registry=registry, restage=None)
                logger.info("Rally %s: registered car #%d %s (%s)", self.rally_id,
                            competitor.car_number, competitor.name, competitor.competitor_id)
            return competitor

    def apply_penalty(self, penalty: Penalty) -> Penalty:
        with self._lock:
            if penalty.competitor_id not in self._registry:
                raise UnknownCompetitor(self.rally_id, penalty.competitor_id)
            if penalty.stage_id and penalty.stage_id not in {s.stage_id for s in self._stages}:
                raise UnknownStage(self.rally_id, penalty.stage_id)
            if self._penalties.get(penalty.penalty_id) == penalty:
                return penalty
            penalties = dict(self._penalties)
            penalties[penalty.penalty_id] = penalty
            self._publish(penalties=penalties, restage=set())
            return penalty

    def submit(self, submissions: Iterable[EntrySubmission]) -> BatchResult:
        """Apply a batch of entries with one recomputation.

        A write against an unknown or cancelled stage rejects the whole batch
        before anything is applied.
        """
        submissions = list(submissions)
        with self._lock:
            stages_by_id = {s.stage_id: s for s in self._stages}
            for sub in submissions:
                stage = stages_by_id.get(sub.stage_id)
                if stage is None:
                    raise UnknownStage(self.rally_id, sub.stage_id)
                if stage.is_cancelled:
                    raise CancelledStageWrite(self.rally_id, sub.stage_id)

            entries = dict(self._entries)
            results: list[SubmitResult] = []
            touched: set[str] = set()
            for sub in submissions:
                result = self._apply_one(entries, sub)
                results.append(result)
                if result.entry is not None:
                    entries[result.entry.key] = result.entry
                    touched.add(sub.stage_id)

            if touched:
                self._publish(entries=entries, restage=touched)
            return BatchResult(tuple(results), self._snapshot.version)

    def _apply_one(self, entries: dict[tuple[str, str], StageEntry],
                   sub: EntrySubmission) -> SubmitResult:
        try:
            if sub.competitor_id not in self._registry:
                raise UnknownCompetitor(self.rally_id, sub.competitor_id)
            current = entries.get((sub.competitor_id, sub.stage_id))
            if current is not None and sub.revision <= current.revision:
                raise StaleRevision(sub.revision, current.revision)
            status = normalize_entry_status(sub.status)
        except StaleRevision as e:
            logger.debug("Rally %s: %s/%s superseded (%s)", self.rally_id,
                         sub.competitor_id, sub.stage_id, e)
            return SubmitResult(Outcome.SUPERSEDED, sub.competitor_id, sub.stage_id,
                                sub.revision, error=e.code, detail=str(e))
        except (UnknownCompetitor, UnknownStatus) as e:
            logger.warning("Rally %s: rejected entry for %s on %s: %s", self.rally_id,
                           sub.competitor_id, sub.stage_id, e)
            return _rejected(sub, e)

        time_text = sub.time_text if sub.time_text not in (None, "") else None
        elapsed = None
        error: Optional[MalformedTime] = None
        if time_text is not None:
            try:
                elapsed = parse_time(time_text)
            except MalformedTime as e:
                logger.warning("Rally %s: %s on %s recorded without time: %s",
                               self.rally_id, sub.competitor_id, sub.stage_id, e)
                error = e

        entry = StageEntry(
            competitor_id=sub.competitor_id,
            stage_id=sub.stage_id,
            revision=sub.revision,
            status=status,
            time_text=time_text,
            elapsed=elapsed,
            reason=sub.reason or None,
        )
        if error is not None:
            return _rejected(sub, error, entry)
        return SubmitResult(Outcome.ACCEPTED, sub.competitor_id, sub.stage_id,
                            sub.revision, entry=entry)

    def load(self, stages: Iterable[Stage], competitors: Iterable[Competitor],
             entries: Iterable[StageEntry], penalties: Iterable[Penalty] = (),
             base_version: int = 0) -> StandingsSnapshot:
        """Replace every input at once, e.g. when restoring from storage.

        ``base_version`` is the last version persisted before a restart; the
        restored snapshot is numbered after it.
        """
        ordered = ordered_stages(self.rally_id, stages)
        with self._lock:
            registry = CompetitorRegistry(list(competitors))
            restored: dict[tuple[str, str], StageEntry] = {}
            for entry in entries:
                current = restored.get(entry.key)
                if current is None or entry.revision > current.revision:
                    restored[entry.key] = entry
            return self._publish(
                stages=ordered,
                registry=registry,
                entries=restored,
                penalties={p.penalty_id: p for p in penalties},
                restage=None,
                base_version=base_version,
            )

    def recalculate(self) -> list[str]:
        """Rebuild every classification from scratch and report differences."""
        with self._lock:
            previous = self._snapshot
            rebuilt = self._publish(restage=None)
        diffs = diff_snapshots(previous, rebuilt)
        for d in diffs:
            logging.getLogger("rallytiming.recompute").warning("Recompute diff: %s", d)
        return diffs

    # -- publication -------------------------------------------------------

    def _publish(self, *, stages: Optional[tuple[Stage, ...]] = None,
                 registry: Optional[CompetitorRegistry] = None,
                 entries: Optional[dict[tuple[str, str], StageEntry]] = None,
                 penalties: Optional[dict[str, Penalty]] = None,
                 restage: Optional[set[str]] = None,
                 base_version: int = 0) -> StandingsSnapshot:
        """Recompute and swap in a new snapshot. Caller holds the lock.

        ``restage`` names the stages whose classification must be rebuilt;
        None rebuilds all of them.
        """
        stages = self._stages if stages is None else stages
        registry = self._registry if registry is None else registry
        entries = self._entries if entries is None else entries
        penalties = self._penalties if penalties is None else penalties

        previous = self._snapshot
        state_before = self._state
        self._state = PipelineState.RECOMPUTING
        try:
            by_stage: dict[str, list[StageEntry]] = {}
            for entry in entries.values():
                by_stage.setdefault(entry.stage_id, []).append(entry)

            classifications: dict[str, StageClassification] = {}
            for stage in stages:
                kept = previous.classifications.get(stage.stage_id)
                stage_entries = by_stage.get(stage.stage_id)
                if (restage is not None and stage.stage_id not in restage
                        and kept is not None):
                    classifications[stage.stage_id] = kept
                elif stage_entries or stage.is_cancelled:
                    classifications[stage.stage_id] = rank_stage(stage, stage_entries or (), registry)

            cumulative = fold_cumulative(registry, stages, classifications, penalties.values())
            overall = rank_overall(cumulative, registry, self.rally_id,
                                   len(counted_stages(stages, classifications)))
            snapshot = StandingsSnapshot(
                rally_id=self.rally_id,
                version=max(previous.version, base_version) + 1,
                stages=stages,
                classifications=MappingProxyType(classifications),
                cumulative=MappingProxyType(cumulative),
                overall=overall,
            )
        except Exception:
            self._state = state_before
            raise

        self._stages = stages
        self._registry = registry
        self._entries = entries
        self._penalties = penalties
        self._snapshot = snapshot
        self._state = PipelineState.PUBLISHED
        logger.info("Rally %s: published standings v%d (%d stages, %d classified)",
                    self.rally_id, snapshot.version, overall.stages_folded if overall else 0,
                    len(overall.classified) if overall else 0)
        return snapshot


def diff_snapshots(old: StandingsSnapshot, new: StandingsSnapshot) -> list[str]:
    """Human-readable differences between two snapshots, ignoring version."""
    diffs = []

    for stage_id in sorted(set(old.classifications) | set(new.classifications)):
        before = old.classifications.get(stage_id)
        after = new.classifications.get(stage_id)
        if before is None:
            diffs.append(f"stage {stage_id} NEW")
            continue
        if after is None:
            diffs.append(f"stage {stage_id} MISSING")
            continue
        old_lines = {l.competitor_id: l for l in before.lines}
        new_lines = {l.competitor_id: l for l in after.lines}
        for cid in sorted(set(old_lines) | set(new_lines)):
            o, n = old_lines.get(cid), new_lines.get(cid)
            if o is None or n is None:
                diffs.append(f"stage {stage_id} competitor {cid} {'NEW' if o is None else 'MISSING'}")
            elif (o.position, o.elapsed, o.status) != (n.position, n.elapsed, n.status):
                diffs.append(f"stage {stage_id} competitor {cid} "
                             f"pos {o.position} → {n.position}, time {o.elapsed} → {n.elapsed}")

    old_overall = {l.competitor_id: l for l in old.overall.lines} if old.overall else {}
    new_overall = {l.competitor_id: l for l in new.overall.lines} if new.overall else {}
    for cid in sorted(set(old_overall) | set(new_overall)):
        o, n = old_overall.get(cid), new_overall.get(cid)
        if o is None or n is None:
            diffs.append(f"overall competitor {cid} {'NEW' if o is None else 'MISSING'}")
        elif (o.position, o.total, o.status) != (n.position, n.total, n.status):
            diffs.append(f"overall competitor {cid} pos {o.position} → {n.position}, "
                         f"total {o.total} → {n.total}")
    return diffs


# ---------------------------------------------------------------------------
# Engine: all rallies
# ---------------------------------------------------------------------------

class RallyEngine:
    """Entry point used by the API: one pipeline per rally, created on demand."""

    def __init__(self):
        self._pipelines: dict[str, RallyPipeline] = {}
        self._lock = threading.Lock()

    def pipeline(self, rally_id: str, create: bool = False) -> RallyPipeline:
        pipeline = self._pipelines.get(rally_id)
        if pipeline is not None:
            return pipeline
        if not create:
            raise UnknownRally(rally_id)
        with self._lock:
            return self._pipelines.setdefault(rally_id, RallyPipeline(rally_id))

    def rally_ids(self) -> list[str]:
        return sorted(self._pipelines)

    def snapshot(self, rally_id: str) -> StandingsSnapshot:
        return self.pipeline(rally_id).snapshot

    # -- metadata ----------------------------------------------------------

    def set_stages(self, rally_id: str, stages: Iterable[Stage]) -> tuple[Stage, ...]:
        ordered = ordered_stages(rally_id, stages)
        return self.pipeline(rally_id, create=True).set_stages(ordered)

    def list_stages_in_order(self, rally_id: str) -> tuple[Stage, ...]:
        return self.pipeline(rally_id).stages

    def register_competitor(self, rally_id: str, competitor: Competitor) -> Competitor:
        return self.pipeline(rally_id, create=True).register_competitor(competitor)

    def apply_penalty(self, rally_id: str, penalty: Penalty) -> Penalty:
        return self.pipeline(rally_id).apply_penalty(penalty)

    def load(self, rally_id: str, stages: Iterable[Stage], competitors: Iterable[Competitor],
             entries: Iterable[StageEntry], penalties: Iterable[Penalty] = (),
             base_version: int = 0) -> StandingsSnapshot:
        return self.pipeline(rally_id, create=True).load(stages, competitors, entries,
                                                         penalties, base_version)

    # -- entries -----------------------------------------------------------

    def submit_stage_entry(self, rally_id: str, stage_id: str, competitor_id: str,
                           revision: int, time_text: Optional[str], status: str,
                           reason: Optional[str] = None) -> SubmitResult:
        sub = EntrySubmission(stage_id, competitor_id, revision, time_text, status, reason)
        return self.submit_batch(rally_id, [sub]).results[0]

    def submit_batch(self, rally_id: str, submissions: Iterable[EntrySubmission]) -> BatchResult:
        submissions = list(submissions)
        try:
            pipeline = self.pipeline(rally_id)
            return pipeline.submit(submissions)
        except (UnknownRally, UnknownStage, CancelledStageWrite) as e:
            logger.warning("Rally %s: rejected submission of %d entries: %s",
                           rally_id, len(submissions), e)
            version = self._pipelines[rally_id].snapshot.version if rally_id in self._pipelines else 0
            return BatchResult(tuple(_rejected(sub, e) for sub in submissions), version)

    # -- reads -------------------------------------------------------------

    def get_stage_classification(self, rally_id: str, stage_id: str) -> Optional[StageClassification]:
        """Current classification for a stage, or None if it has not been run."""
        snapshot = self.pipeline(rally_id).snapshot
        if stage_id not in {s.stage_id for s in snapshot.stages}:
            raise UnknownStage(rally_id, stage_id)
        return snapshot.classifications.get(stage_id)

    def get_overall_standings(self, rally_id: str) -> Optional[OverallStandings]:
        """Current overall standings, or None if no competitor is registered."""
        return self.pipeline(rally_id).snapshot.overall

    def recalculate(self, rally_id: str) -> list[str]:
        return self.pipeline(rally_id).recalculate()

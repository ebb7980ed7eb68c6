"""
test_coordinator.py — Revisions, batches, publication and recalculation
through the RallyEngine.
"""

import itertools
import threading

import pytest

from rallycore.coordinator import EntrySubmission, Outcome, PipelineState, RallyEngine, RallyPipeline
from rallycore.errors import DuplicateCarNumber, UnknownCompetitor, UnknownRally, UnknownStage
from rallycore.models import Competitor, Penalty, Stage, StageStatus, StandingStatus
from rallycore.timevalue import Duration, format_time, parse_time

RALLY = "monte-carlo"


def _engine(cancel_ss3=False):
    engine = RallyEngine()
    engine.set_stages(RALLY, [
        Stage("ss2", "La Bollène", 2, RALLY),
        Stage("ss1", "Col de Turini", 1, RALLY, distance_km=15.0),
        Stage("ss3", "Sisteron", 3, RALLY,
              status=StageStatus.CANCELLED if cancel_ss3 else StageStatus.UPCOMING),
    ])
    for cid, number in (("A", 1), ("B", 2), ("C", 3)):
        engine.register_competitor(RALLY, Competitor(cid, f"Driver {cid}", number))
    return engine


def _order(engine):
    return [l.competitor_id for l in engine.get_overall_standings(RALLY).lines]


# ======================================================================
# Setup and reads
# ======================================================================

def test_stages_listed_in_ordinal_order():
    engine = _engine()
    assert [s.stage_id for s in engine.list_stages_in_order(RALLY)] == ["ss1", "ss2", "ss3"]


def test_duplicate_stage_ordinal_is_refused():
    engine = _engine()
    with pytest.raises(ValueError):
        engine.set_stages(RALLY, [Stage("ss1", "A", 1), Stage("ss2", "B", 1)])
    assert len(engine.list_stages_in_order(RALLY)) == 3


def test_refused_stage_list_does_not_create_rally():
    engine = RallyEngine()
    with pytest.raises(ValueError):
        engine.set_stages("new-rally", [Stage("ss1", "A", 1), Stage("ss1", "B", 2)])
    assert engine.rally_ids() == []
    with pytest.raises(UnknownRally):
        engine.snapshot("new-rally")


def test_unknown_rally_and_stage_lookups():
    engine = _engine()
    with pytest.raises(UnknownRally):
        engine.get_overall_standings("rallye-sanremo")
    with pytest.raises(UnknownStage):
        engine.get_stage_classification(RALLY, "ss9")


def test_stage_not_yet_run_and_no_competitors():
    engine = _engine()
    assert engine.get_stage_classification(RALLY, "ss1") is None

    empty = RallyEngine()
    empty.set_stages("empty", [Stage("ss1", "Only", 1)])
    assert empty.get_overall_standings("empty") is None


def test_registered_competitors_start_running_with_zero_time():
    standings = _engine().get_overall_standings(RALLY)
    assert [l.position for l in standings.lines] == [1, 2, 3]
    assert all(l.total == Duration(0) for l in standings.lines)


def test_duplicate_car_number():
    engine = _engine()
    with pytest.raises(DuplicateCarNumber):
        engine.register_competitor(RALLY, Competitor("D", "Driver D", 2))


# ======================================================================
# Submissions and revisions
# ======================================================================

def test_accept_then_superseded_is_idempotent():
    engine = _engine()
    first = engine.submit_stage_entry(RALLY, "ss1", "A", 1, "10:00.0", "finished")
    standings = engine.get_overall_standings(RALLY)
    version = engine.snapshot(RALLY).version

    again = engine.submit_stage_entry(RALLY, "ss1", "A", 1, "10:00.0", "finished")

    assert first.outcome is Outcome.ACCEPTED
    assert again.outcome is Outcome.SUPERSEDED
    assert again.error == "stale_revision"
    assert engine.get_overall_standings(RALLY) == standings
    assert engine.snapshot(RALLY).version == version


def test_late_lower_revision_is_superseded():
    engine = _engine()
    engine.submit_stage_entry(RALLY, "ss1", "A", 2, "10:00.0", "finished")
    before = engine.get_overall_standings(RALLY)

    late = engine.submit_stage_entry(RALLY, "ss1", "A", 1, "9:00.0", "finished")

    assert late.outcome is Outcome.SUPERSEDED
    assert not late.recorded
    assert engine.get_overall_standings(RALLY) == before


def test_correction_with_higher_revision_replaces_time():
    engine = _engine()
    engine.submit_stage_entry(RALLY, "ss1", "A", 1, "10:00.0", "finished")
    engine.submit_stage_entry(RALLY, "ss1", "B", 1, "10:05.0", "finished")
    engine.submit_stage_entry(RALLY, "ss1", "A", 2, "10:09.0", "finished")

    c = engine.get_stage_classification(RALLY, "ss1")
    assert [l.competitor_id for l in c.classified] == ["B", "A"]
    assert format_time(c.line_for("A").elapsed) == "10:09.0"


def test_unknown_competitor_is_rejected():
    engine = _engine()
    result = engine.submit_stage_entry(RALLY, "ss1", "Z", 1, "10:00.0", "finished")
    assert result.outcome is Outcome.REJECTED
    assert result.error == "unknown_competitor"
    assert engine.get_stage_classification(RALLY, "ss1") is None


def test_unknown_status_is_rejected():
    engine = _engine()
    result = engine.submit_stage_entry(RALLY, "ss1", "A", 1, "10:00.0", "crashed")
    assert result.outcome is Outcome.REJECTED
    assert result.error == "unknown_status"


def test_status_aliases():
    engine = _engine()
    engine.submit_stage_entry(RALLY, "ss1", "A", 1, "10:00.0", "OK")
    engine.submit_stage_entry(RALLY, "ss1", "B", 1, None, "ret", reason="gearbox")
    engine.submit_stage_entry(RALLY, "ss1", "C", 1, None, "DSQ")

    standings = engine.get_overall_standings(RALLY)
    assert standings.line_for("B").status is StandingStatus.RETIRED
    assert standings.line_for("B").out_reason == "gearbox"
    assert standings.line_for("C").status is StandingStatus.EXCLUDED


def test_malformed_time_is_recorded_but_not_timed():
    engine = _engine()
    engine.submit_stage_entry(RALLY, "ss1", "B", 1, "10:05.0", "finished")
    result = engine.submit_stage_entry(RALLY, "ss1", "A", 1, "ten minutes", "finished")

    assert result.outcome is Outcome.REJECTED
    assert result.error == "malformed_time"
    assert result.recorded

    c = engine.get_stage_classification(RALLY, "ss1")
    assert [l.competitor_id for l in c.classified] == ["B"]
    assert c.line_for("A").position is None

    fixed = engine.submit_stage_entry(RALLY, "ss1", "A", 2, "10:00.0", "finished")
    assert fixed.outcome is Outcome.ACCEPTED
    assert engine.get_stage_classification(RALLY, "ss1").leader.competitor_id == "A"


def test_cancelled_stage_write_is_rejected():
    engine = _engine(cancel_ss3=True)
    version = engine.snapshot(RALLY).version
    result = engine.submit_stage_entry(RALLY, "ss3", "A", 1, "10:00.0", "finished")
    assert result.outcome is Outcome.REJECTED
    assert result.error == "cancelled_stage_write"
    assert engine.snapshot(RALLY).version == version


def test_submit_to_unknown_rally_is_rejected():
    result = RallyEngine().submit_stage_entry("nowhere", "ss1", "A", 1, "10:00.0", "finished")
    assert result.outcome is Outcome.REJECTED
    assert result.error == "unknown_rally"


# ======================================================================
# Batches
# ======================================================================

def test_batch_applies_with_one_publication():
    engine = _engine()
    version = engine.snapshot(RALLY).version
    batch = engine.submit_batch(RALLY, [
        EntrySubmission("ss1", "A", 1, "10:00.0"),
        EntrySubmission("ss1", "B", 1, "10:05.0"),
        EntrySubmission("ss1", "C", 1, "10:02.0"),
        EntrySubmission("ss1", "Z", 1, "10:01.0"),
    ])

    assert batch.count(Outcome.ACCEPTED) == 3
    assert batch.count(Outcome.REJECTED) == 1
    assert batch.version == version + 1
    assert len(batch.recorded) == 3
    assert _order(engine) == ["A", "C", "B"]


def test_batch_with_cancelled_stage_applies_nothing():
    engine = _engine(cancel_ss3=True)
    batch = engine.submit_batch(RALLY, [
        EntrySubmission("ss1", "A", 1, "10:00.0"),
        EntrySubmission("ss3", "B", 1, "10:05.0"),
    ])

    assert all(r.outcome is Outcome.REJECTED for r in batch.results)
    assert all(r.error == "cancelled_stage_write" for r in batch.results)
    assert engine.get_stage_classification(RALLY, "ss1") is None


def test_later_entry_in_batch_supersedes_earlier():
    engine = _engine()
    batch = engine.submit_batch(RALLY, [
        EntrySubmission("ss1", "A", 2, "10:00.0"),
        EntrySubmission("ss1", "A", 1, "9:00.0"),
    ])
    assert [r.outcome for r in batch.results] == [Outcome.ACCEPTED, Outcome.SUPERSEDED]
    assert engine.get_stage_classification(RALLY, "ss1").leader.elapsed == parse_time("10:00.0")


# ======================================================================
# Scenarios
# ======================================================================

SCENARIO = [
    EntrySubmission("ss1", "A", 1, "10:00.0"),
    EntrySubmission("ss1", "B", 1, "10:05.0"),
    EntrySubmission("ss1", "C", 1, "10:02.0"),
    EntrySubmission("ss2", "A", 1, "9:00.0"),
    EntrySubmission("ss2", "B", 1, "8:58.0"),
    EntrySubmission("ss2", "C", 1, "9:10.0"),
    EntrySubmission("ss2", "C", 2, "9:01.0"),
]


def test_two_stage_scenario_standings():
    engine = _engine()
    for sub in SCENARIO[:6]:
        engine.submit_batch(RALLY, [sub])

    standings = engine.get_overall_standings(RALLY)
    assert [(l.competitor_id, l.position, format_time(l.total)) for l in standings.lines] == [
        ("A", 1, "19:00.0"), ("B", 2, "19:03.0"), ("C", 3, "19:12.0"),
    ]
    assert standings.stages_folded == 2


def test_submission_order_does_not_change_result():
    results = set()
    for order in itertools.permutations(SCENARIO[3:]):
        engine = _engine()
        engine.submit_batch(RALLY, SCENARIO[:3])
        for sub in order:
            engine.submit_stage_entry(RALLY, sub.stage_id, sub.competitor_id, sub.revision,
                                      sub.time_text, sub.status)
        results.add(engine.get_overall_standings(RALLY))
    assert len(results) == 1
    assert [l.competitor_id for l in results.pop().classified] == ["A", "B", "C"]


def test_dnf_scenario_keeps_stage_two_time_but_not_position():
    engine = _engine()
    engine.submit_batch(RALLY, [
        EntrySubmission("ss1", "A", 1, "10:00.0"),
        EntrySubmission("ss1", "B", 1, None, "dnf"),
        EntrySubmission("ss1", "C", 1, "10:02.0"),
        EntrySubmission("ss2", "A", 1, "9:00.0"),
        EntrySubmission("ss2", "B", 1, "8:30.0"),
        EntrySubmission("ss2", "C", 1, "9:10.0"),
    ])

    assert engine.get_stage_classification(RALLY, "ss2").leader.competitor_id == "B"
    standings = engine.get_overall_standings(RALLY)
    assert [l.competitor_id for l in standings.classified] == ["A", "C"]
    assert standings.line_for("B").status is StandingStatus.RETIRED


def test_running_totals_never_decrease_as_stages_arrive():
    engine = _engine()
    previous = {}
    for stage_id in ("ss1", "ss2"):
        engine.submit_batch(RALLY, [s for s in SCENARIO[:6] if s.stage_id == stage_id])
        for line in engine.get_overall_standings(RALLY).lines:
            assert line.total >= previous.get(line.competitor_id, Duration(0))
            previous[line.competitor_id] = line.total


def test_competitor_without_entries_ranks_on_cumulative_time_alone():
    engine = _engine()
    engine.submit_batch(RALLY, [
        EntrySubmission("ss1", "A", 1, "10:00.0"),
        EntrySubmission("ss1", "B", 1, "9:00.0"),
    ])

    standings = engine.get_overall_standings(RALLY)
    assert [(l.competitor_id, l.stages_counted) for l in standings.classified] == [
        ("C", 0), ("B", 1), ("A", 1),
    ]
    assert standings.leader.total == Duration(0)


# ======================================================================
# Penalties
# ======================================================================

def test_penalty_changes_overall_not_stage():
    engine = _engine()
    engine.submit_batch(RALLY, SCENARIO[:6])
    engine.apply_penalty(RALLY, Penalty("p1", "A", Duration(10_000), stage_id="ss1",
                                        reason="jump start"))

    assert engine.get_stage_classification(RALLY, "ss1").leader.competitor_id == "A"
    standings = engine.get_overall_standings(RALLY)
    assert _order(engine) == ["B", "A", "C"]
    assert format_time(standings.line_for("A").total) == "19:10.0"
    assert standings.line_for("A").penalty_total == Duration(10_000)


def test_penalty_upsert_by_id():
    engine = _engine()
    engine.submit_batch(RALLY, SCENARIO[:3])
    engine.apply_penalty(RALLY, Penalty("p1", "A", Duration(10_000)))
    engine.apply_penalty(RALLY, Penalty("p1", "A", Duration(5_000)))
    assert engine.get_overall_standings(RALLY).line_for("A").total == parse_time("10:05.0")


def test_penalty_validation():
    engine = _engine()
    with pytest.raises(UnknownCompetitor):
        engine.apply_penalty(RALLY, Penalty("p1", "Z", Duration(10_000)))
    with pytest.raises(UnknownStage):
        engine.apply_penalty(RALLY, Penalty("p1", "A", Duration(10_000), stage_id="ss9"))


# ======================================================================
# Publication and recalculation
# ======================================================================

def test_snapshot_is_complete_and_immutable():
    engine = _engine()
    engine.submit_batch(RALLY, SCENARIO[:3])
    snapshot = engine.snapshot(RALLY)

    engine.submit_batch(RALLY, SCENARIO[3:6])

    # the earlier snapshot is untouched by later publications
    assert set(snapshot.classifications) == {"ss1"}
    assert snapshot.overall.line_for("A").total == parse_time("10:00.0")
    with pytest.raises(TypeError):
        snapshot.classifications["ss2"] = None


def test_pipeline_state_never_shows_recomputing():
    pipeline = RallyPipeline(RALLY)
    assert pipeline.state is PipelineState.IDLE

    pipeline.set_stages([Stage("ss1", "SS1", 1, RALLY)])
    for n in range(1, 21):
        pipeline.register_competitor(Competitor(f"c{n}", f"Driver {n}", n))
    assert pipeline.state is PipelineState.PUBLISHED

    seen = set()
    done = threading.Event()

    def reader():
        while True:
            seen.add(pipeline.state)
            if done.is_set():
                break

    thread = threading.Thread(target=reader)
    thread.start()
    for n in range(1, 21):
        pipeline.submit([EntrySubmission("ss1", f"c{n}", 1, f"10:{n:02d}.0")])
    done.set()
    thread.join()

    assert seen == {PipelineState.PUBLISHED}
    assert pipeline.snapshot.version == 41


def test_recalculate_on_consistent_rally_reports_nothing():
    engine = _engine()
    engine.submit_batch(RALLY, SCENARIO)
    engine.apply_penalty(RALLY, Penalty("p1", "C", Duration(30_000)))
    before = engine.get_overall_standings(RALLY)

    assert engine.recalculate(RALLY) == []
    assert engine.get_overall_standings(RALLY) == before


def test_restage_after_stage_cancellation():
    engine = _engine()
    engine.submit_batch(RALLY, SCENARIO[:6])
    engine.set_stages(RALLY, [
        Stage("ss1", "Col de Turini", 1, RALLY, distance_km=15.0),
        Stage("ss2", "La Bollène", 2, RALLY, status=StageStatus.CANCELLED),
        Stage("ss3", "Sisteron", 3, RALLY),
    ])

    standings = engine.get_overall_standings(RALLY)
    assert _order(engine) == ["A", "C", "B"]
    assert standings.stages_folded == 1
    assert engine.get_stage_classification(RALLY, "ss2").cancelled


def test_load_keeps_highest_revision():
    source = _engine()
    source.submit_batch(RALLY, SCENARIO)
    pipeline = source.pipeline(RALLY)
    entries = list(pipeline.entries())

    restored = RallyEngine()
    restored.load(RALLY, pipeline.stages, pipeline.registry, reversed(entries),
                  pipeline.penalties)
    assert restored.get_overall_standings(RALLY) == source.get_overall_standings(RALLY)


def test_rallies_are_independent_under_concurrency():
    engine = RallyEngine()
    rallies = [f"rally-{n}" for n in range(4)]
    for rally_id in rallies:
        engine.set_stages(rally_id, [Stage("ss1", "SS1", 1)])
        for n in range(1, 21):
            engine.register_competitor(rally_id, Competitor(f"c{n}", f"Driver {n}", n))

    def worker(rally_id):
        for n in range(1, 21):
            engine.submit_stage_entry(rally_id, "ss1", f"c{n}", 1, f"10:{n:02d}.0", "finished")

    threads = [threading.Thread(target=worker, args=(r,)) for r in rallies]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    for rally_id in rallies:
        c = engine.get_stage_classification(rally_id, "ss1")
        assert [l.position for l in c.classified] == list(range(1, 21))
        assert engine.get_overall_standings(rally_id).leader.competitor_id == "c1"
    assert engine.rally_ids() == rallies

import threading

from coach_core.capabilities import DEFAULT_CAPABILITY_SPECS
from coach_core.coach import CoachSession, MatchClock
from coach_core.db import SqliteStore, StoreQuery
from coach_core.events import ERROR, OUTCOME_INFERRED
from coach_core.models import TrackingState

from factories import echo_registry, make_snapshot


def feed(session, clock, snapshot):
    clock.advance(snapshot.timestamp.timestamp())
    report = session.process(snapshot)
    assert session.wait(timeout=5)
    return report


def test_full_cycle_learns_from_outcome(tmp_path):
    store = SqliteStore(tmp_path / "coach.sqlite3", session="match")
    clock = MatchClock()
    session = CoachSession(registry=echo_registry(), store=store, clock=clock, executor_options={"base_delay": 0})

    first = feed(session, clock, make_snapshot(1, health=30))
    assert [d.rule_id for d in first.decisions] == ["critical_position_analysis"]

    outputs = session.drain_outputs()
    assert len(outputs) == 1 and not outputs[0].is_error
    assert session.monitor.active_count() == 1

    second = feed(session, clock, make_snapshot(2, seconds=3, health=30, position=(600.0, 0.0), kills=1))

    assert second.decisions == []
    assert len(second.outcomes) == 1
    outcome = second.outcomes[0]
    assert outcome.state == TrackingState.CONCLUDED
    assert outcome.rule_id == "critical_position_analysis"
    assert session.engine.get_rule("critical_position_analysis").applications == 1
    assert session.monitor.active_count() == 0
    assert len(session.events.events(OUTCOME_INFERRED)) == 1

    assert len(store.query(StoreQuery(kind="execution"))) == 1
    assert len(store.query(StoreQuery(kind="outcome"))) == 1

    summary = session.summary()
    assert summary["runtime"]["snapshots_processed"] == 2
    assert summary["executor_totals"]["plans"] == 1
    session.close(persist=False)


def test_invalid_snapshot_is_rejected():
    clock = MatchClock()
    session = CoachSession(registry=echo_registry(), clock=clock)
    feed(session, clock, make_snapshot(5))

    report = session.process(make_snapshot(5, seconds=1))

    assert report.accepted is False
    assert "sequence must increase" in report.error
    assert session.state.snapshots_rejected == 1
    assert session.events.events(ERROR)[-1].payload["component"] == "history"
    session.close(persist=False)


def test_failed_plan_feeds_a_failure_back_to_its_rule():
    def broken(payload):
        raise RuntimeError("model offline")

    clock = MatchClock()
    session = CoachSession(
        registry=echo_registry(**{name: broken for name in DEFAULT_CAPABILITY_SPECS}),
        clock=clock,
        executor_options={"base_delay": 0},
    )
    feed(session, clock, make_snapshot(1, health=30))

    outputs = session.drain_outputs()
    assert len(outputs) == 1 and outputs[0].is_error
    assert session.monitor.active_count() == 0
    outcomes = session.events.events(OUTCOME_INFERRED)
    assert len(outcomes) == 1
    assert outcomes[0].payload["success"] is False
    assert outcomes[0].payload["rule_id"] == "critical_position_analysis"
    rule = session.engine.get_rule("critical_position_analysis")
    assert rule.applications == 1
    assert rule.success_rate < rule.base_confidence
    session.close(persist=False)


def test_plans_beyond_the_concurrency_limit_are_dropped():
    release = threading.Event()

    def slow(payload):
        release.wait(5)
        return {"message": "done"}

    clock = MatchClock()
    session = CoachSession(
        registry=echo_registry(get_gsi_info=slow),
        clock=clock,
        max_concurrent=1,
        executor_options={"base_delay": 0},
    )
    clock.advance(make_snapshot(1).timestamp.timestamp())
    session.process(make_snapshot(1, health=30))

    # the first plan is still blocked, so a decision from a different rule is refused
    clock.advance(make_snapshot(2, seconds=1).timestamp.timestamp())
    report = session.process(
        make_snapshot(2, seconds=1, health=30, factors=({"type": "tactical", "severity": "high"},))
    )
    release.set()
    assert session.wait(timeout=5)

    assert report.rejected == [d.decision_id for d in report.decisions]
    assert report.rejected
    assert session.state.plans_rejected == len(report.rejected)
    session.close(persist=False)

import pytest

from coach_core.db import SqliteStore, StoreQuery
from coach_core.errors import ValidationError
from coach_core.events import STATE_UPDATED, EventLog
from coach_core.history import SnapshotHistory, classify_transition, validate_snapshot
from coach_core.models import ChangeType, PatternCategory, Severity, Snapshot

from factories import BASE_TS, make_snapshot


def test_validate_rejects_missing_player_state():
    snapshot = make_snapshot()
    data = snapshot.to_dict()
    data["processed"]["player"] = None
    with pytest.raises(ValidationError):
        validate_snapshot(Snapshot.from_dict(data))


def test_validate_rejects_out_of_range_health():
    with pytest.raises(ValidationError):
        validate_snapshot(make_snapshot(health=150))


def test_update_rejects_non_increasing_sequence():
    history = SnapshotHistory()
    history.update(make_snapshot(5))
    with pytest.raises(ValidationError):
        history.update(make_snapshot(5, seconds=1))
    with pytest.raises(ValidationError):
        history.update(make_snapshot(4, seconds=2))
    assert len(history) == 1


def test_absent_money_is_not_zero():
    absent = make_snapshot(money=None)
    broke = make_snapshot(money=0)
    assert absent.player.money is None
    assert broke.player.money == 0


def test_first_snapshot_is_initialization():
    change = classify_transition(None, make_snapshot())
    assert change.change_type == ChangeType.NORMAL_UPDATE
    assert change.affected_areas == ("initialization",)


def test_round_increase_is_round_start():
    change = classify_transition(make_snapshot(1, round=3), make_snapshot(2, seconds=1, round=4))
    assert change.change_type == ChangeType.ROUND_START
    assert change.significance == Severity.HIGH
    assert "round" in change.affected_areas


def test_death_is_critical_event():
    change = classify_transition(make_snapshot(1, health=80), make_snapshot(2, seconds=1, health=0))
    assert change.change_type == ChangeType.CRITICAL_EVENT
    assert change.significance == Severity.CRITICAL
    assert change.health_delta == -80


def test_phase_over_is_round_end():
    change = classify_transition(make_snapshot(1), make_snapshot(2, seconds=1, phase="over"))
    assert change.change_type == ChangeType.ROUND_END


def test_overflow_is_archived_not_dropped():
    history = SnapshotHistory(capacity=10)
    for i in range(1, 13):
        history.update(make_snapshot(i, seconds=i))
    assert len(history) == 10
    archive = history.archive()
    assert [entry.sequence_id for entry in archive] == [1, 2]
    assert history.history(1)[0].sequence_id == 12
    assert history.compressed_state()["compression_ratio"] == pytest.approx(2 / 12, abs=1e-4)


def test_update_emits_state_event():
    events = EventLog()
    history = SnapshotHistory(events=events)
    history.update(make_snapshot())
    assert len(events.events(STATE_UPDATED)) == 1


def test_increasing_aggression_produces_behavioral_pattern():
    history = SnapshotHistory(pattern_min_history=10, pattern_window=50)
    for i in range(1, 13):
        history.update(make_snapshot(i, seconds=i, behaviors=("aggressive peek",) * i))

    patterns = history.detect_patterns()
    behavioral = [p for p in patterns if p.category == PatternCategory.BEHAVIORAL]
    assert behavioral
    assert behavioral[0].confidence >= 0.6
    assert "aggressive" in behavioral[0].description.lower()


def test_detection_without_new_snapshots_returns_the_same_patterns():
    history = SnapshotHistory(pattern_min_history=10, pattern_window=50)
    for i in range(1, 13):
        history.update(make_snapshot(i, seconds=i, behaviors=("aggressive peek",) * i))

    first = history.detect_patterns()
    second = history.detect_patterns()

    assert first
    assert [p.pattern_id for p in second] == [p.pattern_id for p in first]
    assert second == first


def test_patterns_wait_for_minimum_history():
    history = SnapshotHistory(pattern_min_history=10)
    for i in range(1, 6):
        history.update(make_snapshot(i, seconds=i, behaviors=("aggressive",) * i))
    assert history.detect_patterns() == []


def test_cleanup_uses_match_time():
    history = SnapshotHistory(cleanup_threshold_seconds=60)
    history.update(make_snapshot(1, seconds=0))
    history.update(make_snapshot(2, seconds=120))

    removed = history.cleanup()

    assert removed == {"state_changes": 1, "patterns": 0}
    assert [c.sequence_id for c in history.state_changes()] == [2]


def test_persist_and_load_restore_history(tmp_path):
    store = SqliteStore(tmp_path / "coach.sqlite3", session="test")
    history = SnapshotHistory(store=store)
    for i in range(1, 4):
        history.update(make_snapshot(i, seconds=i, money=1000 * i))
    assert history.persist()

    restored = SnapshotHistory(store=store)
    assert restored.load()
    assert len(restored) == 3
    assert restored.current.player.money == 3000
    assert restored.current.timestamp.timestamp() == pytest.approx(BASE_TS + 3)
    with pytest.raises(ValidationError):
        restored.update(make_snapshot(3, seconds=4))


def test_repeated_persist_keeps_a_single_session_state(tmp_path):
    store = SqliteStore(tmp_path / "coach.sqlite3", session="test")
    history = SnapshotHistory(store=store)
    for i in range(1, 4):
        history.update(make_snapshot(i, seconds=i))
        assert history.persist()

    assert len(store.query(StoreQuery(kind="session_state", limit=10))) == 1
    restored = SnapshotHistory(store=store)
    assert restored.load()
    assert restored.current.sequence_id == 3


def test_persist_failure_is_reported_not_raised(tmp_path):
    events = EventLog()
    store = SqliteStore(tmp_path, session="test")
    history = SnapshotHistory(store=store, events=events)
    history.update(make_snapshot())

    assert history.persist() is False
    assert events.events("error")


def test_state_summary_alert_levels():
    history = SnapshotHistory()
    assert history.state_summary()["alert_level"] == "normal"

    history.update(make_snapshot(1, factors=({"type": "tactical", "severity": "high", "description": "x"},)))
    assert history.state_summary()["alert_level"] == "warning"

    history.update(make_snapshot(2, seconds=1, factors=({"type": "positional", "severity": "critical"},)))
    summary = history.state_summary()
    assert summary["alert_level"] == "critical"
    assert "Latest transition: critical_event" in summary["insights"]

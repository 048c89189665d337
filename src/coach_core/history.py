from __future__ import annotations

import threading
from collections import deque
from datetime import datetime, timedelta, timezone

from loguru import logger

from .db import SqliteStore, StoreQuery, StoreRecord
from .errors import ValidationError
from .events import ERROR, PATTERNS_DETECTED, STATE_UPDATED, EventLog
from .models import (
    ChangeType,
    CompressedSnapshot,
    Pattern,
    PatternCategory,
    Severity,
    Snapshot,
    StateChange,
)
from .patterns import run_detectors
from .settings import settings


ROUND_OVER_PHASES = {"over", "gameover"}
SESSION_STATE_KIND = "session_state"


def validate_snapshot(snapshot: Snapshot, last_sequence_id: int | None = None) -> None:
    processed = snapshot.processed
    if processed is None:
        raise ValidationError(f"Snapshot {snapshot.sequence_id} has no processed view")
    missing = [
        name
        for name, value in (("player", processed.player), ("team", processed.team), ("map", processed.map))
        if value is None
    ]
    if missing:
        raise ValidationError(f"Snapshot {snapshot.sequence_id} is missing {', '.join(missing)} state")
    health = processed.player.health
    if health is not None and not 0 <= health <= 100:
        raise ValidationError(f"Snapshot {snapshot.sequence_id} health {health} outside [0, 100]")
    if last_sequence_id is not None and snapshot.sequence_id <= last_sequence_id:
        raise ValidationError(
            f"Snapshot {snapshot.sequence_id} arrived after {last_sequence_id}; sequence must increase"
        )


def classify_transition(previous: Snapshot | None, current: Snapshot) -> StateChange:
    if previous is None:
        return StateChange(
            sequence_id=current.sequence_id,
            timestamp=current.timestamp,
            change_type=ChangeType.NORMAL_UPDATE,
            significance=Severity.LOW,
            affected_areas=("initialization",),
        )

    prev_player, cur_player = previous.player, current.player
    health_delta = _delta(prev_player.health, cur_player.health)
    economy_delta = _delta(prev_player.money, cur_player.money)
    rating_delta = _delta(
        prev_player.statistics.rating if prev_player.statistics else None,
        cur_player.statistics.rating if cur_player.statistics else None,
    )
    position_distance = None
    if prev_player.position is not None and cur_player.position is not None:
        position_distance = cur_player.position.distance_2d(prev_player.position)

    prev_round, cur_round = previous.map.round, current.map.round
    round_delta = _delta(prev_round, cur_round) or 0
    phase_changed = previous.map.phase != current.map.phase
    prev_critical = {f.type for f in previous.processed.factors if f.severity == Severity.CRITICAL}
    new_critical = [
        f for f in current.processed.factors if f.severity == Severity.CRITICAL and f.type not in prev_critical
    ]
    died = (prev_player.health or 0) > 0 and cur_player.health == 0

    if round_delta > 0:
        change_type = ChangeType.ROUND_START
    elif phase_changed and current.map.phase.lower() in ROUND_OVER_PHASES:
        change_type = ChangeType.ROUND_END
    elif died or new_critical:
        change_type = ChangeType.CRITICAL_EVENT
    elif phase_changed:
        change_type = ChangeType.PHASE_CHANGE
    else:
        change_type = ChangeType.NORMAL_UPDATE

    abs_health = abs(health_delta or 0)
    if change_type == ChangeType.CRITICAL_EVENT:
        significance = Severity.CRITICAL
    elif round_delta > 0 or abs_health > 50:
        significance = Severity.HIGH
    elif abs_health > 20 or abs(economy_delta or 0) > 1000:
        significance = Severity.MEDIUM
    else:
        significance = Severity.LOW

    areas: list[str] = []
    if health_delta:
        areas.append("player_health")
    if economy_delta:
        areas.append("economy")
    if position_distance:
        areas.append("position")
    if round_delta:
        areas.append("round")
    if phase_changed:
        areas.append("phase")
    if {f.type for f in previous.processed.factors} != {f.type for f in current.processed.factors}:
        areas.append("factors")

    return StateChange(
        sequence_id=current.sequence_id,
        timestamp=current.timestamp,
        change_type=change_type,
        significance=significance,
        affected_areas=tuple(areas),
        health_delta=health_delta,
        economy_delta=economy_delta,
        position_distance=position_distance,
        rating_delta=rating_delta,
    )


def _delta(before: float | None, after: float | None) -> float | None:
    if before is None or after is None:
        return None
    return after - before


class SnapshotHistory:
    """Bounded, arrival-ordered snapshot history plus mined patterns.

    Only this class appends to the history buffer. Evicted snapshots are
    compressed into an archive instead of being dropped.
    """

    def __init__(
        self,
        capacity: int | None = None,
        state_change_capacity: int | None = None,
        pattern_min_history: int | None = None,
        pattern_window: int | None = None,
        cleanup_threshold_seconds: float | None = None,
        store: SqliteStore | None = None,
        events: EventLog | None = None,
    ) -> None:
        self.capacity = capacity or settings.history_capacity
        self.pattern_min_history = pattern_min_history or settings.pattern_min_history
        self.pattern_window = pattern_window or settings.pattern_window
        self.cleanup_threshold = timedelta(
            seconds=cleanup_threshold_seconds or settings.cleanup_threshold_seconds
        )
        self.store = store
        self.events = events

        self._snapshots: list[Snapshot] = []
        self._archive: list[CompressedSnapshot] = []
        self._changes: deque[StateChange] = deque(
            maxlen=state_change_capacity or settings.state_change_capacity
        )
        self._patterns: dict[PatternCategory, list[Pattern]] = {}
        self._version = 0
        self._mined_version = -1
        self._last_sequence_id: int | None = None
        self._lock = threading.RLock()

    # ── Updates ───────────────────────────────────────────────────

    @property
    def current(self) -> Snapshot | None:
        with self._lock:
            return self._snapshots[-1] if self._snapshots else None

    def __len__(self) -> int:
        with self._lock:
            return len(self._snapshots)

    def update(self, snapshot: Snapshot) -> StateChange:
        with self._lock:
            validate_snapshot(snapshot, self._last_sequence_id)
            change = classify_transition(self.current, snapshot)
            self._snapshots.append(snapshot)
            self._changes.append(change)
            self._last_sequence_id = snapshot.sequence_id
            self._version += 1

            overflow = len(self._snapshots) - self.capacity
            if overflow > 0:
                evicted = self._snapshots[:overflow]
                del self._snapshots[:overflow]
                self._archive.extend(CompressedSnapshot.from_snapshot(s) for s in evicted)
                logger.debug("Archived {} snapshot(s); archive size {}", overflow, len(self._archive))

        if self.events is not None:
            self.events.emit(
                STATE_UPDATED,
                f"Snapshot {snapshot.sequence_id} {change.change_type.value}",
                change.to_dict(),
            )
        return change

    def history(self, n: int | None = None) -> list[Snapshot]:
        with self._lock:
            if n is None:
                return list(self._snapshots)
            if n <= 0:
                return []
            return list(self._snapshots[-n:])

    def state_changes(self, n: int | None = None) -> list[StateChange]:
        with self._lock:
            changes = list(self._changes)
        return changes if n is None else changes[-n:] if n > 0 else []

    def archive(self) -> list[CompressedSnapshot]:
        with self._lock:
            return list(self._archive)

    # ── Patterns ──────────────────────────────────────────────────

    def patterns(self) -> list[Pattern]:
        with self._lock:
            return [p for category in PatternCategory for p in self._patterns.get(category, [])]

    def detect_patterns(self) -> list[Pattern]:
        with self._lock:
            if self._mined_version == self._version or len(self._snapshots) < self.pattern_min_history:
                return self.patterns()
            window = self._snapshots[-self.pattern_window:]
            version = self._version

        results, failures = run_detectors(window)
        detected = [p for found in results.values() for p in found]

        with self._lock:
            for category, found in results.items():
                if found:
                    self._patterns[category] = found
            self._mined_version = version
            current = self.patterns()

        if failures and self.events is not None:
            self.events.emit(
                ERROR,
                f"{len(failures)} pattern detector(s) failed",
                {"failures": {category.value: message for category, message in failures.items()}},
            )
        if detected:
            logger.info(
                "Detected {} pattern(s): {}",
                len(detected),
                ", ".join(p.description for p in detected),
            )
            if self.events is not None:
                self.events.emit(
                    PATTERNS_DETECTED,
                    f"{len(detected)} pattern(s) detected",
                    {"patterns": [p.to_dict() for p in detected]},
                )
            if self.store is not None:
                for pattern in detected:
                    self.store.write_best_effort(StoreRecord(kind="pattern", payload=pattern.to_dict()))
        return current

    # ── Maintenance ───────────────────────────────────────────────

    def cleanup(self, now: datetime | None = None) -> dict:
        """Purge state changes and patterns older than the cleanup threshold.

        ``now`` defaults to the current snapshot's timestamp so replayed
        sessions age by match time, not wall time.
        """
        with self._lock:
            current = self._snapshots[-1] if self._snapshots else None
            reference = now or (current.timestamp if current else datetime.now(timezone.utc))
            cutoff = reference - self.cleanup_threshold

            kept_changes = [
                c
                for c in self._changes
                if c.timestamp >= cutoff or (current is not None and c.sequence_id == current.sequence_id)
            ]
            removed_changes = len(self._changes) - len(kept_changes)
            self._changes.clear()
            self._changes.extend(kept_changes)

            removed_patterns = 0
            for category in list(self._patterns):
                fresh = [p for p in self._patterns[category] if p.detected_at >= cutoff]
                removed_patterns += len(self._patterns[category]) - len(fresh)
                if fresh:
                    self._patterns[category] = fresh
                else:
                    del self._patterns[category]

        if removed_changes or removed_patterns:
            logger.info(
                "History cleanup removed {} state change(s) and {} pattern(s)",
                removed_changes,
                removed_patterns,
            )
        return {"state_changes": removed_changes, "patterns": removed_patterns}

    def persist(self) -> bool:
        if self.store is None:
            return False
        with self._lock:
            payload = {
                "snapshots": [s.to_dict() for s in self._snapshots],
                "archive": [c.to_dict() for c in self._archive],
                "patterns": [p.to_dict() for p in self.patterns()],
                "last_sequence_id": self._last_sequence_id,
            }
        try:
            self.store.write(StoreRecord(kind=SESSION_STATE_KIND, payload=payload), replace=True)
        except Exception as exc:
            logger.warning("History persistence failed: {}", exc)
            if self.events is not None:
                self.events.error(f"History persistence failed: {exc}", component="history")
            return False
        logger.debug("Persisted {} snapshot(s)", len(payload["snapshots"]))
        return True

    def load(self) -> bool:
        if self.store is None:
            return False
        try:
            records = self.store.query(StoreQuery(kind=SESSION_STATE_KIND, limit=1))
        except Exception as exc:
            logger.warning("History load failed: {}", exc)
            if self.events is not None:
                self.events.error(f"History load failed: {exc}", component="history")
            return False
        if not records:
            return False

        payload = records[0].payload
        snapshots = [Snapshot.from_dict(item) for item in payload.get("snapshots", [])]
        archive = [CompressedSnapshot.from_dict(item) for item in payload.get("archive", [])]
        patterns: dict[PatternCategory, list[Pattern]] = {}
        for item in payload.get("patterns", []):
            pattern = Pattern.from_dict(item)
            patterns.setdefault(pattern.category, []).append(pattern)

        with self._lock:
            self._snapshots = snapshots[-self.capacity:]
            self._archive = archive
            self._patterns = patterns
            self._changes.clear()
            last = payload.get("last_sequence_id")
            self._last_sequence_id = int(last) if last is not None else None
            self._version += 1
            self._mined_version = self._version
        logger.info("Restored {} snapshot(s) and {} archived entries", len(snapshots), len(archive))
        return True

    # ── Summaries ─────────────────────────────────────────────────

    def compressed_state(self) -> dict:
        with self._lock:
            current = self._snapshots[-1] if self._snapshots else None
            live = len(self._snapshots)
            archived = len(self._archive)
        if current is None:
            return {"available": False}
        summary = CompressedSnapshot.from_snapshot(current).to_dict()
        summary["available"] = True
        summary["compression_ratio"] = round(archived / (archived + live), 4) if archived + live else 0.0
        return summary

    def state_summary(self) -> dict:
        current = self.current
        if current is None:
            return {"context": None, "alert_level": "normal", "insights": [], "recommendations": []}

        severities = {f.severity for f in current.processed.factors}
        health = current.player.health
        if Severity.CRITICAL in severities:
            alert_level = "critical"
        elif Severity.HIGH in severities:
            alert_level = "warning"
        elif Severity.MEDIUM in severities or (health is not None and 0 < health < 30):
            alert_level = "attention"
        else:
            alert_level = "normal"

        patterns = self.patterns()
        insights = [p.description for p in patterns]
        last_change = self.state_changes(1)
        if last_change and last_change[0].change_type != ChangeType.NORMAL_UPDATE:
            insights.append(f"Latest transition: {last_change[0].change_type.value}")
        recommendations = [p.implications[0] for p in patterns if p.implications]

        return {
            "context": current.processed.context.value,
            "alert_level": alert_level,
            "insights": insights,
            "recommendations": recommendations,
        }

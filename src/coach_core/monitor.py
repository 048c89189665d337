"""Outcome inference for delivered coaching decisions.

Every tracked decision moves MONITORING -> CONCLUDED | EXPIRED and yields
exactly one Outcome. "Followed" is a bag-of-words overlap between the advice
and the observed change descriptions; it is a correlation heuristic, not
proof that the player acted on the advice.
"""

from __future__ import annotations

import re
import statistics
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from loguru import logger

from .db import SqliteStore, StoreRecord
from .events import OUTCOME_INFERRED, EventLog
from .models import (
    CoachingObjective,
    CoachingOutput,
    Decision,
    InterventionPriority,
    Outcome,
    PlayerResponse,
    Position,
    Severity,
    Snapshot,
    TrackingState,
)
from .settings import settings


HEALTH_THRESHOLD = 10
POSITION_THRESHOLD = 100.0
MONEY_THRESHOLD = 1000
HIGH_SIGNIFICANCE = 0.7
SLOW_RESPONSE_SECONDS = 5.0
STOP_WORDS = frozenset(
    {"a", "an", "and", "at", "by", "for", "from", "in", "of", "on", "or", "the", "to", "with", "your", "you"}
)
ALERT_SEVERITIES = frozenset({Severity.HIGH, Severity.CRITICAL})
FAILED_DELIVERY_IMPACT = -0.3


@dataclass(frozen=True)
class Baseline:
    health: int | None
    position: Position | None
    weapons: frozenset[str]
    money: int | None
    score: int | None
    kills: int | None
    round: int | None
    risk_factors: frozenset[str] = frozenset()
    alert_factors: frozenset[str] = frozenset()

    @classmethod
    def capture(cls, snapshot: Snapshot) -> "Baseline":
        player = snapshot.player
        return cls(
            health=player.health,
            position=player.position,
            weapons=frozenset(player.weapons),
            money=player.money,
            score=snapshot.team.score,
            kills=player.statistics.kills if player.statistics else None,
            round=snapshot.map.round,
            risk_factors=frozenset(player.risk_factors),
            alert_factors=alert_factor_types(snapshot),
        )


@dataclass(frozen=True)
class StateDelta:
    dimension: str
    description: str
    significance: float


@dataclass
class Checkpoint:
    at: float
    sequence_id: int
    changes: list[StateDelta]

    @property
    def significance(self) -> float:
        return max((change.significance for change in self.changes), default=0.0)

    @property
    def descriptions(self) -> list[str]:
        return [change.description for change in self.changes]


@dataclass
class TrackedDecision:
    tracking_id: str
    decision: Decision
    action_items: list[str]
    baseline: Baseline
    started_at: float
    window: float
    state: TrackingState = TrackingState.MONITORING
    checkpoints: list[Checkpoint] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    delivery_error: str | None = None
    latest: Snapshot | None = None
    outcome: Outcome | None = None

    @property
    def deadline(self) -> float:
        return self.started_at + self.window


def detect_changes(baseline: Baseline, snapshot: Snapshot) -> list[StateDelta]:
    player = snapshot.player
    changes: list[StateDelta] = []

    if baseline.health is not None and player.health is not None:
        diff = player.health - baseline.health
        if abs(diff) > HEALTH_THRESHOLD:
            changes.append(StateDelta("health", f"Health changed by {diff:+d}", min(abs(diff) / 100, 1.0)))

    if baseline.position is not None and player.position is not None:
        distance = player.position.distance_2d(baseline.position)
        if distance > POSITION_THRESHOLD:
            changes.append(
                StateDelta(
                    "position",
                    f"Position changed significantly ({distance:.0f} units)",
                    min(distance / 1000, 1.0),
                )
            )

    new_weapons = sorted(set(player.weapons) - baseline.weapons)
    if new_weapons:
        changes.append(StateDelta("weapons", f"Weapons changed: {', '.join(new_weapons)}", 0.5))

    if baseline.money is not None and player.money is not None:
        diff = player.money - baseline.money
        if abs(diff) > MONEY_THRESHOLD:
            note = "buy budget up" if diff > 0 else "buy made"
            changes.append(
                StateDelta("money", f"Money changed by {diff:+d} ({note})", min(abs(diff) / 10000, 1.0))
            )

    score = snapshot.team.score
    if baseline.score is not None and score is not None and score != baseline.score:
        changes.append(StateDelta("score", f"Score changed by {score - baseline.score:+d}", 1.0))

    return changes


def alert_factor_types(snapshot: Snapshot) -> frozenset[str]:
    return frozenset(factor.type for factor in snapshot.processed.factors if factor.severity in ALERT_SEVERITIES)


def repeated_errors(baseline: Baseline, snapshot: Snapshot) -> list[str]:
    """Signs that the mistake the advice addressed is still being made."""
    player = snapshot.player
    errors: list[str] = []
    if (baseline.health or 0) > 0 and player.health == 0:
        errors.append("Player died")
    errors += [f"Risk persisted: {risk}" for risk in sorted(baseline.risk_factors & set(player.risk_factors))]
    errors += [f"Alert recurred: {kind}" for kind in sorted(baseline.alert_factors & alert_factor_types(snapshot))]
    return errors


def normalize_words(text: str) -> set[str]:
    cleaned = re.sub(r"[^a-z0-9\s]", "", text.lower())
    return {word for word in cleaned.split() if word not in STOP_WORDS}


def infer_followed(action_items: list[str], descriptions: list[str]) -> bool:
    actions = [(re.sub(r"[^a-z0-9\s]", "", item.lower()).strip(), normalize_words(item)) for item in action_items]
    for description in descriptions:
        normalized = re.sub(r"[^a-z0-9\s]", "", description.lower())
        words = normalize_words(description)
        for phrase, action_words in actions:
            if (phrase and phrase in normalized) or action_words & words:
                return True
    return False


def monitoring_window(
    decision: Decision,
    base_window: float,
    max_window: float,
) -> float:
    window = base_window
    if (
        decision.objective == CoachingObjective.STRATEGIC_ANALYSIS
        or decision.priority in (InterventionPriority.LOW, InterventionPriority.DEFERRED)
    ):
        window = base_window * 2
    elif (
        decision.objective == CoachingObjective.TACTICAL_GUIDANCE
        and decision.priority == InterventionPriority.IMMEDIATE
    ):
        window = base_window / 2
    return min(window, max_window)


def evaluate_success(
    objective: CoachingObjective,
    followed: bool,
    baseline: Baseline,
    current: Snapshot | None,
    checkpoints: list[Checkpoint],
    errors: list[str] | None = None,
) -> tuple[bool, float]:
    player = current.player if current is not None else None

    if objective == CoachingObjective.TACTICAL_GUIDANCE:
        survived = player is not None and player.health is not None and player.health > 0
        kills = player.statistics.kills if player is not None and player.statistics else None
        kills_up = kills is not None and baseline.kills is not None and kills > baseline.kills
        success = followed and (survived or kills_up)
        return success, 0.8 if success else (-0.2 if followed else -0.5)

    if objective == CoachingObjective.STRATEGIC_ANALYSIS:
        score = current.team.score if current is not None else None
        success = score is not None and baseline.score is not None and score - baseline.score > 0
        return success, 1.0 if success else (0.2 if followed else -0.3)

    if objective == CoachingObjective.ERROR_CORRECTION:
        success = not errors
        return success, 0.6 if success else -0.4

    success = followed and any(cp.significance > HIGH_SIGNIFICANCE for cp in checkpoints)
    return success, 0.5 if success else (0.0 if followed else -0.2)


def is_conclusive(tracker: TrackedDecision, snapshot: Snapshot) -> bool:
    baseline = tracker.baseline
    round_changed = (
        baseline.round is not None and snapshot.map.round is not None and snapshot.map.round != baseline.round
    )
    objective = tracker.decision.objective

    if objective == CoachingObjective.STRATEGIC_ANALYSIS:
        score = snapshot.team.score
        return round_changed or (baseline.score is not None and score is not None and score != baseline.score)
    if objective == CoachingObjective.TACTICAL_GUIDANCE:
        player = snapshot.player
        died = (baseline.health or 0) > 0 and player.health == 0
        kills = player.statistics.kills if player.statistics else None
        return died or (kills is not None and baseline.kills is not None and kills > baseline.kills)
    if objective == CoachingObjective.ERROR_CORRECTION:
        return round_changed
    return round_changed or any(cp.significance > HIGH_SIGNIFICANCE for cp in tracker.checkpoints)


def player_response(followed: bool, impact: float) -> PlayerResponse:
    if followed and impact > 0:
        return "positive"
    if not followed and impact < 0:
        return "negative"
    return "neutral"


def effectiveness_scores(checkpoints: list[Checkpoint], followed: bool) -> dict:
    if not checkpoints:
        return {"engagement": None, "learning": None}
    dimensions = {change.dimension for cp in checkpoints for change in cp.changes}
    engagement = (len(dimensions) / 5 + min(len(checkpoints) / 10, 1.0)) / 2
    peak = max(cp.significance for cp in checkpoints)
    learning = peak * (1.0 if followed else 0.5)
    return {"engagement": round(engagement, 4), "learning": round(learning, 4)}


def outcome_confidence(tracker: TrackedDecision, concluded_at: float) -> float:
    checkpoints = tracker.checkpoints
    duration_score = min(max(concluded_at - tracker.started_at, 0.0) / tracker.window, 1.0) if tracker.window else 1.0
    change_score = min(len(checkpoints) / 5, 1.0)
    if len(checkpoints) >= 2:
        consistency = max(0.0, 1.0 - statistics.pstdev(cp.significance for cp in checkpoints))
    else:
        consistency = 1.0 if checkpoints else 0.0
    return (duration_score + change_score + consistency) / 3


def learning_points(tracker: TrackedDecision, success: bool, followed: bool) -> list[str]:
    title = tracker.decision.rationale.split(" - ")[0]
    points: list[str] = []
    if tracker.delivery_error is not None:
        points.append(f'Plan for "{title}" failed before delivery: {tracker.delivery_error}')
        return points
    if not tracker.checkpoints:
        points.append(f'No observable change after "{title}" within the monitoring window')
        return points

    if success and followed:
        points.append(f'Suggestion "{title}" was effective when followed')
    elif followed:
        points.append(f'Suggestion "{title}" may need refinement - followed but unsuccessful')
    else:
        points.append(f'Suggestion "{title}" was not followed - may need better presentation')

    response_time = tracker.checkpoints[0].at - tracker.started_at
    if response_time > SLOW_RESPONSE_SECONDS:
        points.append("Player response time was slow - consider simplifying suggestion")

    significant = [d for cp in tracker.checkpoints if cp.significance > HIGH_SIGNIFICANCE for d in cp.descriptions]
    if significant:
        points.append(f"Significant changes observed: {', '.join(significant)}")
    return points


class OutcomeMonitor:
    """Watches the aftermath of delivered decisions and reports outcomes.

    Concurrently tracked decisions are scored independently; a change is
    credited to every decision whose window it falls in.
    """

    def __init__(
        self,
        feedback: Callable[[Outcome], object] | None = None,
        store: SqliteStore | None = None,
        events: EventLog | None = None,
        window: float | None = None,
        max_window: float | None = None,
        expired_confidence: float | None = None,
        max_tracked: int | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.feedback = feedback
        self.store = store
        self.events = events
        self.window = window or settings.monitoring_window_seconds
        self.max_window = max_window or settings.max_monitoring_window_seconds
        self.expired_confidence = (
            expired_confidence if expired_confidence is not None else settings.expired_outcome_confidence
        )
        self.max_tracked = max_tracked or settings.max_tracked_decisions
        self.clock = clock

        self._active: dict[str, TrackedDecision] = {}
        self._finished: dict[str, TrackedDecision] = {}
        self._stats: dict[CoachingObjective, dict] = {}
        self._lock = threading.RLock()

    def track(
        self,
        decision: Decision,
        baseline: Snapshot,
        output: CoachingOutput | None = None,
        now: float | None = None,
    ) -> str:
        """Start watching a delivered decision.

        An error output means nothing reached the player; it concludes at
        once as a failure so the rule still learns from it.
        """
        now = self.clock() if now is None else now
        failed = output is not None and output.is_error
        action_items = list(output.action_items) if output is not None else []
        if not failed:
            action_items += [item for item in decision.action_items if item not in action_items]
        tracker = TrackedDecision(
            tracking_id=f"trk_{decision.decision_id}",
            decision=decision,
            action_items=action_items,
            baseline=Baseline.capture(baseline),
            started_at=now,
            window=monitoring_window(decision, self.window, self.max_window),
            delivery_error=(output.details or output.message) if failed else None,
            latest=baseline,
        )
        if failed:
            logger.warning("Plan for {} failed before delivery: {}", decision.decision_id, tracker.delivery_error)
            self._finalize(tracker, TrackingState.CONCLUDED, now)
            return tracker.tracking_id

        overflow: list[TrackedDecision] = []
        with self._lock:
            self._active[tracker.tracking_id] = tracker
            while len(self._active) > self.max_tracked:
                oldest_id = min(self._active, key=lambda key: self._active[key].started_at)
                overflow.append(self._active.pop(oldest_id))

        for stale in overflow:
            self._finalize(stale, TrackingState.EXPIRED, now)

        logger.debug(
            "Tracking {} for {:.1f}s with {} action item(s)",
            tracker.tracking_id,
            tracker.window,
            len(action_items),
        )
        return tracker.tracking_id

    def observe(self, snapshot: Snapshot, now: float | None = None) -> list[Outcome]:
        now = self.clock() if now is None else now
        concluded: list[tuple[TrackedDecision, TrackingState]] = []

        with self._lock:
            for tracker in list(self._active.values()):
                if now >= tracker.deadline:
                    concluded.append((tracker, TrackingState.EXPIRED))
                    continue
                tracker.latest = snapshot
                changes = detect_changes(tracker.baseline, snapshot)
                if changes:
                    descriptions = [change.description for change in changes]
                    previous = tracker.checkpoints[-1].descriptions if tracker.checkpoints else None
                    if descriptions != previous:
                        tracker.checkpoints.append(Checkpoint(now, snapshot.sequence_id, changes))
                for error in repeated_errors(tracker.baseline, snapshot):
                    if error not in tracker.errors:
                        tracker.errors.append(error)
                if is_conclusive(tracker, snapshot):
                    concluded.append((tracker, TrackingState.CONCLUDED))

        return [self._finalize(tracker, state, now) for tracker, state in concluded]

    def sweep(self, now: float | None = None) -> list[Outcome]:
        now = self.clock() if now is None else now
        with self._lock:
            overdue = [tracker for tracker in self._active.values() if now >= tracker.deadline]
        return [self._finalize(tracker, TrackingState.EXPIRED, now) for tracker in overdue]

    def _finalize(self, tracker: TrackedDecision, state: TrackingState, now: float) -> Outcome:
        with self._lock:
            if tracker.outcome is not None:
                return tracker.outcome
            self._active.pop(tracker.tracking_id, None)

            descriptions = [d for cp in tracker.checkpoints for d in cp.descriptions]
            followed = infer_followed(tracker.action_items, descriptions)
            if tracker.delivery_error is not None:
                success, impact = False, FAILED_DELIVERY_IMPACT
            elif state == TrackingState.EXPIRED and not tracker.checkpoints:
                success, impact = False, 0.0
            else:
                success, impact = evaluate_success(
                    tracker.decision.objective,
                    followed,
                    tracker.baseline,
                    tracker.latest,
                    tracker.checkpoints,
                    tracker.errors,
                )

            confidence = outcome_confidence(tracker, now)
            if tracker.delivery_error is not None:
                confidence = self.expired_confidence
            elif state == TrackingState.EXPIRED:
                confidence = min(confidence, self.expired_confidence)

            metrics = {
                "checkpoints": len(tracker.checkpoints),
                "peak_significance": max((cp.significance for cp in tracker.checkpoints), default=0.0),
                "elapsed": round(now - tracker.started_at, 3),
                "window": tracker.window,
                "repeated_errors": list(tracker.errors),
                **effectiveness_scores(tracker.checkpoints, followed),
            }
            outcome = Outcome(
                tracking_id=tracker.tracking_id,
                decision_id=tracker.decision.decision_id,
                rule_id=tracker.decision.rule_id,
                objective=tracker.decision.objective,
                state=state,
                followed=followed,
                success=success,
                impact=impact,
                player_response=player_response(followed, impact) if tracker.checkpoints else "neutral",
                confidence=round(confidence, 4),
                learning_points=tuple(learning_points(tracker, success, followed)),
                metrics=metrics,
                concluded_at=now,
            )
            tracker.state = state
            tracker.outcome = outcome
            self._finished[tracker.tracking_id] = tracker
            if len(self._finished) > self.max_tracked:
                oldest = min(self._finished, key=lambda key: self._finished[key].started_at)
                del self._finished[oldest]
            self._update_stats(outcome)

        logger.info(
            "Outcome {} [{}]: followed={} success={} impact={:+.2f} confidence={:.2f}",
            outcome.decision_id,
            state.value,
            followed,
            success,
            impact,
            outcome.confidence,
        )
        if self.store is not None:
            self.store.write_best_effort(StoreRecord(kind="outcome", payload=outcome.to_dict()))
        if self.events is not None:
            self.events.emit(OUTCOME_INFERRED, f"Outcome for {outcome.decision_id}", outcome.to_dict())
        if self.feedback is not None:
            try:
                self.feedback(outcome)
            except Exception as exc:
                logger.exception("Feedback handler failed for {}: {}", outcome.decision_id, exc)
                if self.events is not None:
                    self.events.error(f"Feedback failed for {outcome.decision_id}: {exc}", component="monitor")
        return outcome

    def _update_stats(self, outcome: Outcome) -> None:
        stats = self._stats.setdefault(
            outcome.objective,
            {"total": 0, "successful": 0, "followed": 0, "average_impact": 0.0},
        )
        stats["total"] += 1
        stats["successful"] += 1 if outcome.success else 0
        stats["followed"] += 1 if outcome.followed else 0
        stats["average_impact"] += (outcome.impact - stats["average_impact"]) / stats["total"]

    def status(self, tracking_id: str, now: float | None = None) -> dict | None:
        now = self.clock() if now is None else now
        with self._lock:
            tracker = self._active.get(tracking_id) or self._finished.get(tracking_id)
            if tracker is None:
                return None
            return {
                "tracking_id": tracking_id,
                "decision_id": tracker.decision.decision_id,
                "state": tracker.state.value,
                "elapsed": round(now - tracker.started_at, 3),
                "remaining": round(max(0.0, tracker.deadline - now), 3) if tracker.outcome is None else 0.0,
                "checkpoints": len(tracker.checkpoints),
                "significance": max((cp.significance for cp in tracker.checkpoints), default=0.0),
                "outcome": tracker.outcome.to_dict() if tracker.outcome is not None else None,
            }

    def active_count(self) -> int:
        with self._lock:
            return len(self._active)

    def adaptation_stats(self) -> list[dict]:
        with self._lock:
            return [
                {
                    "objective": objective.value,
                    "total": stats["total"],
                    "success_rate": stats["successful"] / stats["total"],
                    "follow_rate": stats["followed"] / stats["total"],
                    "average_impact": round(stats["average_impact"], 4),
                }
                for objective, stats in self._stats.items()
            ]

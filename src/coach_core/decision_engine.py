"""Rule-based decision engine with feedback-driven rule adaptation.

Each analysis cycle:

  1. builds a ContextAnalysis (context tag, urgency, coaching needs),
  2. evaluates every rule scoped to the context, skipping rules on cooldown,
  3. filters candidates on confidence, plan duration and risk,
  4. ranks by priority tier, then confidence, then plan complexity,
  5. marks the emitted rules as fired.

Outcomes observed after delivery flow back through ``apply_feedback``, which
is the only path that mutates a rule's confidence, priority or cooldown.
"""

from __future__ import annotations

import copy
import functools
import itertools
import threading
import time
from collections.abc import Callable, Mapping

from loguru import logger

from .capabilities import DEFAULT_CAPABILITY_SPECS, CapabilitySpec, spec_for
from .db import SqliteStore, StoreRecord
from .errors import MissingSnapshotError, RuleEvaluationError
from .events import DECISION_MADE, RULE_ADAPTED, EventLog
from .history import validate_snapshot
from .models import (
    CoachingObjective,
    Decision,
    DecisionMetadata,
    InterventionPriority,
    Outcome,
    Pattern,
    PlanStep,
    RiskLevel,
    Severity,
    Snapshot,
)
from .rules import ContextAnalysis, Rule, clamp_confidence, default_rules
from .settings import settings


RULE_WEIGHT = 0.7
HISTORY_WEIGHT = 0.3
CONFIDENCE_TIE_EPSILON = 0.05
LOW_SUCCESS_RATE = 0.3
HIGH_SUCCESS_RATE = 0.8
ADAPTATION_HISTORY_LIMIT = 300
RESPONSE_ADJUSTMENT = {"positive": 0.05, "neutral": 0.0, "negative": -0.1}


def assess_urgency(snapshot: Snapshot) -> Severity:
    factors = snapshot.processed.factors
    critical = sum(1 for f in factors if f.severity == Severity.CRITICAL)
    high = sum(1 for f in factors if f.severity == Severity.HIGH)
    if critical:
        return Severity.CRITICAL
    if high > 1:
        return Severity.HIGH
    if high == 1:
        return Severity.MEDIUM
    return Severity.LOW


def identify_coaching_needs(snapshot: Snapshot) -> tuple[list[CoachingObjective], list[str]]:
    needs: list[CoachingObjective] = []
    notes: list[str] = []
    player = snapshot.player
    stats = player.statistics

    if stats is None or stats.rating is None:
        notes.append("rating: insufficient data")
    elif stats.rating < 0.6:
        needs.append(CoachingObjective.PERFORMANCE_IMPROVEMENT)

    if any(f.type in ("tactical", "positional") for f in snapshot.processed.factors):
        needs.append(CoachingObjective.TACTICAL_GUIDANCE)

    if player.risk_factors:
        needs.append(CoachingObjective.MENTAL_COACHING)

    coordination = snapshot.team.coordination
    if coordination is None:
        notes.append("team coordination: insufficient data")
    elif coordination < 0.5:
        needs.append(CoachingObjective.TEAM_COORDINATION)

    return needs, notes


def rank_decisions(decisions: list[Decision]) -> list[Decision]:
    def compare(a: Decision, b: Decision) -> int:
        priority_diff = b.priority.rank - a.priority.rank
        if priority_diff:
            return priority_diff
        confidence_diff = b.confidence - a.confidence
        if abs(confidence_diff) > CONFIDENCE_TIE_EPSILON:
            return -1 if confidence_diff < 0 else 1
        return a.metadata.complexity - b.metadata.complexity

    return sorted(decisions, key=functools.cmp_to_key(compare))


class DecisionEngine:
    def __init__(
        self,
        rules: list[Rule] | None = None,
        capability_specs: Mapping[str, CapabilitySpec] | None = None,
        store: SqliteStore | None = None,
        events: EventLog | None = None,
        clock: Callable[[], float] = time.time,
        max_decisions: int | None = None,
        min_confidence: float | None = None,
        high_risk_min_confidence: float | None = None,
        max_plan_duration: float | None = None,
        learning_rate: float | None = None,
        min_feedback_samples: int | None = None,
        max_confidence_step: float | None = None,
        adaptation_min_applications: int | None = None,
        max_adaptations: int | None = None,
        adaptation_period: float | None = None,
    ) -> None:
        self._rules: dict[str, Rule] = {rule.rule_id: rule for rule in (rules or default_rules())}
        self.capability_specs = capability_specs if capability_specs is not None else DEFAULT_CAPABILITY_SPECS
        self.store = store
        self.events = events
        self.clock = clock

        self.max_decisions = max_decisions or settings.max_decisions_per_analysis
        self.min_confidence = min_confidence if min_confidence is not None else settings.min_decision_confidence
        self.high_risk_min_confidence = (
            high_risk_min_confidence if high_risk_min_confidence is not None else settings.high_risk_min_confidence
        )
        self.max_plan_duration = max_plan_duration or settings.max_plan_duration_seconds
        self.learning_rate = learning_rate or settings.learning_rate
        self.min_feedback_samples = (
            min_feedback_samples if min_feedback_samples is not None else settings.min_feedback_samples
        )
        self.max_confidence_step = max_confidence_step or settings.max_confidence_step
        self.adaptation_min_applications = adaptation_min_applications or settings.adaptation_min_applications
        self.max_adaptations = max_adaptations or settings.max_adaptations
        self.adaptation_period = adaptation_period or settings.adaptation_period_seconds

        self.adaptation_history: list[dict] = []
        self._counter = itertools.count(1)
        self._lock = threading.RLock()

    # ── Rule table ────────────────────────────────────────────────

    def get_rules(self) -> list[Rule]:
        with self._lock:
            return [copy.copy(rule) for rule in self._rules.values()]

    def get_rule(self, rule_id: str) -> Rule | None:
        with self._lock:
            rule = self._rules.get(rule_id)
            return copy.copy(rule) if rule is not None else None

    # ── Analysis ──────────────────────────────────────────────────

    def analyze_context(self, snapshot: Snapshot, patterns: list[Pattern] | None = None) -> ContextAnalysis:
        needs, notes = identify_coaching_needs(snapshot)
        return ContextAnalysis(
            snapshot=snapshot,
            context=snapshot.processed.context,
            urgency=assess_urgency(snapshot),
            coaching_needs=needs,
            patterns=list(patterns or []),
            notes=notes,
        )

    def analyze(
        self,
        snapshot: Snapshot | None,
        patterns: list[Pattern] | None = None,
        now: float | None = None,
    ) -> list[Decision]:
        if snapshot is None:
            raise MissingSnapshotError("Cannot analyze before any snapshot has been accepted")
        validate_snapshot(snapshot)
        now = self.clock() if now is None else now
        analysis = self.analyze_context(snapshot, patterns)

        with self._lock:
            candidates: list[Decision] = []
            for rule in self._rules.values():
                if not rule.applies_to(analysis.context):
                    continue
                try:
                    matched = bool(rule.condition(analysis))
                except Exception as exc:
                    error = RuleEvaluationError(rule.rule_id, exc)
                    logger.warning("{}", error)
                    if self.events is not None:
                        self.events.error(str(error), component="decision_engine", rule_id=rule.rule_id)
                    continue
                if not matched:
                    continue
                if rule.on_cooldown(now):
                    logger.debug(
                        "Rule {} on cooldown ({:.1f}s left)",
                        rule.rule_id,
                        rule.cooldown - (now - rule.last_fired),
                    )
                    continue
                candidates.append(self._build_decision(rule, analysis, now))

            viable = [decision for decision in candidates if self._is_viable(decision)]
            selected = rank_decisions(viable)[: self.max_decisions]
            for decision in selected:
                self._rules[decision.rule_id].last_fired = now

        if selected:
            logger.info(
                "Analysis of snapshot {} ({}, urgency {}) -> {}",
                snapshot.sequence_id,
                analysis.context.value,
                analysis.urgency.value,
                ", ".join(f"{d.rule_id}@{d.confidence:.2f}" for d in selected),
            )
        if self.events is not None:
            for decision in selected:
                self.events.emit(DECISION_MADE, f"Decision {decision.decision_id}", decision.summary())
        return selected

    def _historical_success_rate(self, rule: Rule) -> float:
        if rule.applications < self.min_feedback_samples:
            return rule.base_confidence
        return rule.success_rate

    def _build_decision(self, rule: Rule, analysis: ContextAnalysis, now: float) -> Decision:
        confidence = RULE_WEIGHT * rule.confidence + HISTORY_WEIGHT * self._historical_success_rate(rule)
        plan = self.build_plan(rule, analysis)
        specs = [spec_for(self.capability_specs, name) for name in rule.plan_template]
        metadata = DecisionMetadata(
            complexity=sum(spec.complexity for spec in specs),
            estimated_duration=sum(step.timeout for step in plan),
            risk_level=self._assess_risk(rule, analysis.snapshot),
            expected_outcome=rule.description,
        )
        return Decision(
            decision_id=f"decision_{rule.rule_id}_{analysis.snapshot.sequence_id}_{next(self._counter)}",
            rule_id=rule.rule_id,
            priority=rule.priority,
            confidence=round(confidence, 6),
            rationale=f"{rule.description} based on {analysis.context.value} ({analysis.urgency.value} urgency)",
            objective=rule.objective,
            context=analysis.context,
            plan=plan,
            metadata=metadata,
            action_items=rule.action_hints,
            created_at=now,
            snapshot_sequence_id=analysis.snapshot.sequence_id,
        )

    def build_plan(self, rule: Rule, analysis: ContextAnalysis) -> tuple[PlanStep, ...]:
        shared_input = {
            "rule_id": rule.rule_id,
            "objective": rule.objective.value,
            "analysis": analysis.to_dict(),
            "state": analysis.snapshot.to_dict()["processed"],
            "action_hints": list(rule.action_hints),
        }
        steps: list[PlanStep] = []
        for index, name in enumerate(rule.plan_template):
            spec = spec_for(self.capability_specs, name)
            steps.append(
                PlanStep(
                    step_id=f"step_{index}",
                    capability=name,
                    input={**shared_input, "step": index},
                    dependencies=(steps[-1].step_id,) if steps else (),
                    timeout=spec.timeout,
                    retry_policy=spec.retry_policy,
                    fallback=spec.fallback,
                )
            )
        return tuple(steps)

    @staticmethod
    def _assess_risk(rule: Rule, snapshot: Snapshot) -> RiskLevel:
        if rule.priority == InterventionPriority.IMMEDIATE:
            return "high"
        if any(f.severity == Severity.CRITICAL for f in snapshot.processed.factors):
            return "high"
        if rule.confidence < 0.7:
            return "medium"
        return "low"

    def _is_viable(self, decision: Decision) -> bool:
        if decision.confidence < self.min_confidence:
            logger.debug("Dropping {}: confidence {:.2f} below floor", decision.rule_id, decision.confidence)
            return False
        if decision.metadata.estimated_duration > self.max_plan_duration:
            logger.debug(
                "Dropping {}: estimated {:.1f}s exceeds {:.1f}s",
                decision.rule_id,
                decision.metadata.estimated_duration,
                self.max_plan_duration,
            )
            return False
        if decision.metadata.risk_level == "high" and decision.confidence < self.high_risk_min_confidence:
            logger.debug("Dropping {}: high risk at confidence {:.2f}", decision.rule_id, decision.confidence)
            return False
        return True

    # ── Learning ──────────────────────────────────────────────────

    def confidence_adjustment(self, outcome: Outcome) -> float:
        base = 0.1 if outcome.success else -0.1
        raw = base + outcome.impact * 0.2 + RESPONSE_ADJUSTMENT.get(outcome.player_response, 0.0)
        scaled = raw * max(0.0, min(1.0, outcome.confidence))
        return max(-self.max_confidence_step, min(self.max_confidence_step, scaled))

    def apply_feedback(self, outcome: Outcome, now: float | None = None) -> Rule | None:
        now = self.clock() if now is None else now
        with self._lock:
            rule = self._rules.get(outcome.rule_id)
            if rule is None:
                logger.warning("Feedback for unknown rule {} ignored", outcome.rule_id)
                return None

            rule.applications += 1
            signal = 1.0 if outcome.success and outcome.player_response != "negative" else 0.0
            rule.success_rate = rule.success_rate * (1 - self.learning_rate) + signal * self.learning_rate
            previous_confidence = rule.confidence
            rule.confidence = clamp_confidence(rule.confidence + self.confidence_adjustment(outcome))
            adaptation = self._maybe_adapt(rule, now)
            updated = copy.copy(rule)

        logger.info(
            "Feedback for {}: success={} response={} rate={:.2f} confidence {:.2f}->{:.2f}",
            outcome.rule_id,
            outcome.success,
            outcome.player_response,
            updated.success_rate,
            previous_confidence,
            updated.confidence,
        )
        if adaptation is not None:
            if self.events is not None:
                self.events.emit(RULE_ADAPTED, f"Rule {rule.rule_id} adapted", adaptation)
            if self.store is not None:
                self.store.write_best_effort(StoreRecord(kind="rule_adaptation", payload=adaptation))
        return updated

    def _maybe_adapt(self, rule: Rule, now: float) -> dict | None:
        if rule.applications < self.adaptation_min_applications:
            return None

        recent = [t for t in rule.adaptation_times if now - t < self.adaptation_period]
        if len(recent) >= self.max_adaptations:
            logger.debug("Adaptation of {} rate-limited ({} recent)", rule.rule_id, len(recent))
            return None

        if rule.success_rate < LOW_SUCCESS_RATE:
            cooldown = rule.base_cooldown * 2
            priority = rule.base_priority.lowered()
        elif rule.success_rate > HIGH_SUCCESS_RATE:
            cooldown = rule.base_cooldown * 0.5
            priority = rule.base_priority.raised()
        else:
            cooldown = rule.base_cooldown
            priority = rule.base_priority

        if cooldown == rule.cooldown and priority == rule.priority:
            return None

        adaptation = {
            "rule_id": rule.rule_id,
            "at": now,
            "success_rate": round(rule.success_rate, 4),
            "confidence": round(rule.confidence, 4),
            "applications": rule.applications,
            "cooldown_before": rule.cooldown,
            "cooldown_after": cooldown,
            "priority_before": rule.priority.value,
            "priority_after": priority.value,
        }
        rule.cooldown = cooldown
        rule.priority = priority
        rule.adaptation_times = recent + [now]
        self.adaptation_history.append(adaptation)
        if len(self.adaptation_history) > ADAPTATION_HISTORY_LIMIT:
            self.adaptation_history = self.adaptation_history[-ADAPTATION_HISTORY_LIMIT:]

        logger.info(
            "Adapted rule {}: cooldown {:.1f}s->{:.1f}s priority {}->{} (success rate {:.2f})",
            rule.rule_id,
            adaptation["cooldown_before"],
            cooldown,
            adaptation["priority_before"],
            priority.value,
            rule.success_rate,
        )
        return adaptation

    def learning_stats(self) -> dict:
        with self._lock:
            return {
                "rules": [rule.describe() for rule in self._rules.values()],
                "adaptations": len(self.adaptation_history),
            }

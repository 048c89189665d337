from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field

from .capabilities import (
    ANALYZE_POSITIONING,
    CALL_LLM,
    GET_GSI_INFO,
    GET_TRACKER_STATS,
    PIPER_TTS,
    SUGGEST_ECONOMY_BUY,
    SUMMARIZE_CONVERSATION,
    UPDATE_PLAYER_PROFILE,
)
from .models import (
    CoachingObjective,
    GameContext,
    InterventionPriority,
    Pattern,
    Severity,
    Snapshot,
)


MIN_RULE_CONFIDENCE = 0.1
MAX_RULE_CONFIDENCE = 1.0


@dataclass
class ContextAnalysis:
    snapshot: Snapshot
    context: GameContext
    urgency: Severity
    coaching_needs: list[CoachingObjective]
    patterns: list[Pattern] = field(default_factory=list)
    notes: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "sequence_id": self.snapshot.sequence_id,
            "context": self.context.value,
            "urgency": self.urgency.value,
            "coaching_needs": [need.value for need in self.coaching_needs],
            "patterns": [p.description for p in self.patterns],
            "notes": list(self.notes),
        }


Condition = Callable[[ContextAnalysis], bool]


def clamp_confidence(value: float) -> float:
    return max(MIN_RULE_CONFIDENCE, min(MAX_RULE_CONFIDENCE, value))


@dataclass
class Rule:
    """Declarative condition -> plan mapping with adaptive confidence and cooldown."""
    rule_id: str
    name: str
    description: str
    contexts: frozenset[GameContext]
    condition: Condition
    priority: InterventionPriority
    confidence: float
    cooldown: float
    plan_template: tuple[str, ...]
    objective: CoachingObjective
    action_hints: tuple[str, ...] = ()
    enabled: bool = True

    success_rate: float = -1.0
    applications: int = 0
    last_fired: float | None = None
    base_confidence: float = -1.0
    base_priority: InterventionPriority | None = None
    base_cooldown: float = -1.0
    adaptation_times: list[float] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.confidence = clamp_confidence(self.confidence)
        if self.base_confidence < 0:
            self.base_confidence = self.confidence
        if self.success_rate < 0:
            self.success_rate = self.confidence
        if self.base_priority is None:
            self.base_priority = self.priority
        if self.base_cooldown < 0:
            self.base_cooldown = self.cooldown

    def applies_to(self, context: GameContext) -> bool:
        return self.enabled and context in self.contexts

    def on_cooldown(self, now: float) -> bool:
        return self.last_fired is not None and now - self.last_fired < self.cooldown

    def describe(self) -> dict:
        return {
            "rule_id": self.rule_id,
            "name": self.name,
            "priority": self.priority.value,
            "confidence": round(self.confidence, 4),
            "cooldown": self.cooldown,
            "success_rate": round(self.success_rate, 4),
            "applications": self.applications,
            "last_fired": self.last_fired,
            "enabled": self.enabled,
        }


# ── Conditions ────────────────────────────────────────────────────

def is_critical_positioning(analysis: ContextAnalysis) -> bool:
    player = analysis.snapshot.player
    if player.health is not None and player.health < 50:
        return True
    return any(
        f.type == "positional" and f.severity == Severity.CRITICAL
        for f in analysis.snapshot.processed.factors
    )


def needs_economy_advice(analysis: ContextAnalysis) -> bool:
    processed = analysis.snapshot.processed
    if processed.economy is not None and processed.economy.round_type in ("eco", "semi_eco"):
        return True
    team_economy = processed.team.economy
    return team_economy is not None and team_economy.buy_capability in ("eco", "semi_eco")


def has_performance_insights(analysis: ContextAnalysis) -> bool:
    player = analysis.snapshot.player
    stats = player.statistics
    if stats is not None:
        if stats.rating is not None and stats.rating < 0.5:
            return True
        if stats.deaths > stats.kills + 2:
            return True
    return bool(player.risk_factors)


def needs_tactical_guidance(analysis: ContextAnalysis) -> bool:
    return any(
        f.severity in (Severity.CRITICAL, Severity.HIGH) or f.type in ("tactical", "positional")
        for f in analysis.snapshot.processed.factors
    )


def needs_mental_support(analysis: ContextAnalysis) -> bool:
    snapshot = analysis.snapshot
    player = snapshot.player
    if player.statistics is not None and player.statistics.deaths > 5:
        return True
    score, current_round = snapshot.team.score, snapshot.map.round
    if score is not None and current_round is not None and score < current_round * 0.3:
        return True
    return "tilt" in player.risk_factors or "frustration" in player.risk_factors


def has_learning_opportunity(analysis: ContextAnalysis) -> bool:
    keywords = ("mistake", "improvement", "opportunity")
    return any(
        keyword in f.description.lower()
        for f in analysis.snapshot.processed.factors
        for keyword in keywords
    )


def default_rules() -> list[Rule]:
    return [
        Rule(
            rule_id="critical_position_analysis",
            name="Critical Position Analysis",
            description="Analyze and advise on a dangerous position - immediate repositioning",
            contexts=frozenset({GameContext.CRITICAL_SITUATION, GameContext.MID_ROUND}),
            condition=is_critical_positioning,
            priority=InterventionPriority.IMMEDIATE,
            confidence=0.9,
            cooldown=15.0,
            plan_template=(GET_GSI_INFO, ANALYZE_POSITIONING, CALL_LLM, PIPER_TTS),
            objective=CoachingObjective.TACTICAL_GUIDANCE,
            action_hints=("Fall back to a safer position", "Hold cover and wait for a trade"),
        ),
        Rule(
            rule_id="economy_buy_suggestion",
            name="Economy Buy Suggestion",
            description="Suggest the optimal buy for the current economy - round buy plan",
            contexts=frozenset({GameContext.ECONOMY_PHASE, GameContext.ROUND_START}),
            condition=needs_economy_advice,
            priority=InterventionPriority.HIGH,
            confidence=0.8,
            cooldown=25.0,
            plan_template=(GET_GSI_INFO, SUGGEST_ECONOMY_BUY, CALL_LLM, PIPER_TTS),
            objective=CoachingObjective.STRATEGIC_ANALYSIS,
            action_hints=("Buy armor and utility with the team", "Save money for a full buy"),
        ),
        Rule(
            rule_id="performance_review",
            name="Performance Review",
            description="Review recent performance and suggest improvements - performance check",
            contexts=frozenset({GameContext.ROUND_END, GameContext.LEARNING_OPPORTUNITY}),
            condition=has_performance_insights,
            priority=InterventionPriority.MEDIUM,
            confidence=0.7,
            cooldown=45.0,
            plan_template=(GET_GSI_INFO, GET_TRACKER_STATS, CALL_LLM, UPDATE_PLAYER_PROFILE),
            objective=CoachingObjective.PERFORMANCE_IMPROVEMENT,
            action_hints=("Review the last death and adjust crosshair placement",),
        ),
        Rule(
            rule_id="tactical_strategy",
            name="Tactical Strategy",
            description="Provide tactical guidance for the current situation - round strategy",
            contexts=frozenset({GameContext.ROUND_START, GameContext.MID_ROUND}),
            condition=needs_tactical_guidance,
            priority=InterventionPriority.HIGH,
            confidence=0.75,
            cooldown=20.0,
            plan_template=(GET_GSI_INFO, CALL_LLM, PIPER_TTS),
            objective=CoachingObjective.TACTICAL_GUIDANCE,
            action_hints=("Group with teammates before taking contact",),
        ),
        Rule(
            rule_id="mental_support",
            name="Mental Support",
            description="Provide mental coaching and morale support - reset focus",
            contexts=frozenset({GameContext.ROUND_END, GameContext.CRITICAL_SITUATION}),
            condition=needs_mental_support,
            priority=InterventionPriority.MEDIUM,
            confidence=0.65,
            cooldown=60.0,
            plan_template=(GET_GSI_INFO, CALL_LLM, PIPER_TTS),
            objective=CoachingObjective.MENTAL_COACHING,
            action_hints=("Take a breath and focus on the next round",),
        ),
        Rule(
            rule_id="learning_insight",
            name="Learning Insight",
            description="Identify and explain learning opportunities from recent gameplay - learning note",
            contexts=frozenset({GameContext.LEARNING_OPPORTUNITY, GameContext.ROUND_END}),
            condition=has_learning_opportunity,
            priority=InterventionPriority.LOW,
            confidence=0.6,
            cooldown=30.0,
            plan_template=(GET_GSI_INFO, CALL_LLM, SUMMARIZE_CONVERSATION),
            objective=CoachingObjective.SKILL_DEVELOPMENT,
            action_hints=("Note the mistake and try the suggested improvement",),
        ),
    ]

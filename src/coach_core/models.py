"""Core data model shared by every coaching component.

Snapshot sub-states use ``None`` for "not reported by telemetry" so that an
observed zero (dead player, empty wallet) can be told apart from a field the
upstream producer never sent.
"""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal


# ── Enums ─────────────────────────────────────────────────────────

class GameContext(str, Enum):
    ROUND_START = "round_start"
    MID_ROUND = "mid_round"
    ROUND_END = "round_end"
    ECONOMY_PHASE = "economy_phase"
    TACTICAL_TIMEOUT = "tactical_timeout"
    INTERMISSION = "intermission"
    MATCH_END = "match_end"
    CRITICAL_SITUATION = "critical_situation"
    LEARNING_OPPORTUNITY = "learning_opportunity"


class InterventionPriority(str, Enum):
    IMMEDIATE = "immediate"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    DEFERRED = "deferred"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]

    def raised(self) -> "InterventionPriority":
        return _PRIORITY_BY_RANK[min(self.rank + 1, 5)]

    def lowered(self) -> "InterventionPriority":
        return _PRIORITY_BY_RANK[max(self.rank - 1, 1)]


_PRIORITY_RANK = {
    InterventionPriority.IMMEDIATE: 5,
    InterventionPriority.HIGH: 4,
    InterventionPriority.MEDIUM: 3,
    InterventionPriority.LOW: 2,
    InterventionPriority.DEFERRED: 1,
}
_PRIORITY_BY_RANK = {rank: priority for priority, rank in _PRIORITY_RANK.items()}


class CoachingObjective(str, Enum):
    PERFORMANCE_IMPROVEMENT = "performance_improvement"
    TACTICAL_GUIDANCE = "tactical_guidance"
    MENTAL_COACHING = "mental_coaching"
    TEAM_COORDINATION = "team_coordination"
    STRATEGIC_ANALYSIS = "strategic_analysis"
    ERROR_CORRECTION = "error_correction"
    SKILL_DEVELOPMENT = "skill_development"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ChangeType(str, Enum):
    ROUND_START = "round_start"
    ROUND_END = "round_end"
    PHASE_CHANGE = "phase_change"
    CRITICAL_EVENT = "critical_event"
    NORMAL_UPDATE = "normal_update"


class PatternCategory(str, Enum):
    BEHAVIORAL = "behavioral"
    TACTICAL = "tactical"
    ECONOMIC = "economic"
    POSITIONAL = "positional"


class TrackingState(str, Enum):
    MONITORING = "monitoring"
    CONCLUDED = "concluded"
    EXPIRED = "expired"


RiskLevel = Literal["low", "medium", "high"]
PlayerResponse = Literal["positive", "neutral", "negative"]
BackoffStrategy = Literal["linear", "exponential"]


# ── Parsing helpers ───────────────────────────────────────────────

def _opt_int(value: Any) -> int | None:
    if value is None or value == "":
        return None
    return int(value)


def _opt_float(value: Any) -> float | None:
    if value is None or value == "":
        return None
    return float(value)


def _str_tuple(value: Any) -> tuple[str, ...]:
    if not value:
        return ()
    return tuple(str(item) for item in value)


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(float(value), tz=timezone.utc)
    if isinstance(value, str) and value:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return datetime.now(timezone.utc)


# ── Snapshot sub-states ───────────────────────────────────────────

@dataclass(frozen=True)
class Position:
    x: float
    y: float
    z: float = 0.0

    def distance_2d(self, other: "Position") -> float:
        return math.hypot(self.x - other.x, self.y - other.y)

    @classmethod
    def from_value(cls, value: Any) -> "Position | None":
        if value is None:
            return None
        if isinstance(value, dict):
            return cls(float(value.get("x", 0.0)), float(value.get("y", 0.0)), float(value.get("z", 0.0)))
        if isinstance(value, str):
            parts = [float(part) for part in value.replace(" ", "").split(",") if part]
            parts += [0.0] * (3 - len(parts))
            return cls(parts[0], parts[1], parts[2])
        x, y, *rest = value
        return cls(float(x), float(y), float(rest[0]) if rest else 0.0)


@dataclass(frozen=True)
class PlayerStatistics:
    kills: int = 0
    deaths: int = 0
    assists: int = 0
    adr: float | None = None
    rating: float | None = None

    @classmethod
    def from_dict(cls, data: dict | None) -> "PlayerStatistics | None":
        if data is None:
            return None
        return cls(
            kills=int(data.get("kills", 0) or 0),
            deaths=int(data.get("deaths", 0) or 0),
            assists=int(data.get("assists", 0) or 0),
            adr=_opt_float(data.get("adr")),
            rating=_opt_float(data.get("rating")),
        )


@dataclass(frozen=True)
class PlayerState:
    steam_id: str
    name: str
    health: int | None
    armor: int | None = None
    money: int | None = None
    position: Position | None = None
    weapons: tuple[str, ...] = ()
    statistics: PlayerStatistics | None = None
    observed_behaviors: tuple[str, ...] = ()
    risk_factors: tuple[str, ...] = ()
    opportunities: tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, data: dict | None) -> "PlayerState | None":
        if data is None:
            return None
        return cls(
            steam_id=str(data.get("steam_id", "")),
            name=str(data.get("name", "")),
            health=_opt_int(data.get("health")),
            armor=_opt_int(data.get("armor")),
            money=_opt_int(data.get("money")),
            position=Position.from_value(data.get("position")),
            weapons=_str_tuple(data.get("weapons")),
            statistics=PlayerStatistics.from_dict(data.get("statistics")),
            observed_behaviors=_str_tuple(data.get("observed_behaviors")),
            risk_factors=_str_tuple(data.get("risk_factors")),
            opportunities=_str_tuple(data.get("opportunities")),
        )


@dataclass(frozen=True)
class TeamEconomy:
    total_money: int | None = None
    average_money: float | None = None
    buy_capability: str | None = None

    @classmethod
    def from_dict(cls, data: dict | None) -> "TeamEconomy | None":
        if data is None:
            return None
        return cls(
            total_money=_opt_int(data.get("total_money")),
            average_money=_opt_float(data.get("average_money")),
            buy_capability=data.get("buy_capability"),
        )


@dataclass(frozen=True)
class TeamState:
    side: str
    score: int | None = None
    economy: TeamEconomy | None = None
    strategy: str | None = None
    coordination: float | None = None

    @classmethod
    def from_dict(cls, data: dict | None) -> "TeamState | None":
        if data is None:
            return None
        return cls(
            side=str(data.get("side", "")),
            score=_opt_int(data.get("score")),
            economy=TeamEconomy.from_dict(data.get("economy")),
            strategy=data.get("strategy"),
            coordination=_opt_float(data.get("coordination")),
        )


@dataclass(frozen=True)
class MapState:
    name: str
    round: int | None = None
    phase: str = ""
    bomb_state: str | None = None

    @classmethod
    def from_dict(cls, data: dict | None) -> "MapState | None":
        if data is None:
            return None
        return cls(
            name=str(data.get("name", "")),
            round=_opt_int(data.get("round")),
            phase=str(data.get("phase", "") or ""),
            bomb_state=data.get("bomb_state"),
        )


@dataclass(frozen=True)
class EconomyState:
    round_type: str
    team_advantage: float | None = None

    @classmethod
    def from_dict(cls, data: dict | None) -> "EconomyState | None":
        if data is None:
            return None
        return cls(
            round_type=str(data.get("round_type", "")),
            team_advantage=_opt_float(data.get("team_advantage")),
        )


@dataclass(frozen=True)
class SituationalFactor:
    type: str
    severity: Severity
    description: str = ""

    @classmethod
    def from_dict(cls, data: dict) -> "SituationalFactor":
        return cls(
            type=str(data.get("type", "")),
            severity=Severity(str(data.get("severity", "low")).lower()),
            description=str(data.get("description", "")),
        )


@dataclass(frozen=True)
class ProcessedState:
    context: GameContext
    phase: str = ""
    player: PlayerState | None = None
    team: TeamState | None = None
    map: MapState | None = None
    economy: EconomyState | None = None
    factors: tuple[SituationalFactor, ...] = ()

    @classmethod
    def from_dict(cls, data: dict) -> "ProcessedState":
        return cls(
            context=GameContext(str(data.get("context", GameContext.MID_ROUND.value))),
            phase=str(data.get("phase", "") or ""),
            player=PlayerState.from_dict(data.get("player")),
            team=TeamState.from_dict(data.get("team")),
            map=MapState.from_dict(data.get("map")),
            economy=EconomyState.from_dict(data.get("economy")),
            factors=tuple(SituationalFactor.from_dict(item) for item in data.get("factors") or []),
        )


@dataclass(frozen=True)
class Snapshot:
    """One immutable observation of the match."""
    sequence_id: int
    timestamp: datetime
    processed: ProcessedState | None
    raw: dict = field(default_factory=dict, compare=False)

    @property
    def player(self) -> PlayerState | None:
        return self.processed.player if self.processed else None

    @property
    def team(self) -> TeamState | None:
        return self.processed.team if self.processed else None

    @property
    def map(self) -> MapState | None:
        return self.processed.map if self.processed else None

    @classmethod
    def from_dict(cls, data: dict) -> "Snapshot":
        processed = data.get("processed")
        return cls(
            sequence_id=int(data["sequence_id"]),
            timestamp=_parse_timestamp(data.get("timestamp")),
            processed=ProcessedState.from_dict(processed) if processed is not None else None,
            raw=dict(data.get("raw") or {}),
        )

    def to_dict(self) -> dict:
        payload = asdict(self)
        payload["timestamp"] = self.timestamp.isoformat()
        return _jsonable(payload)


def _jsonable(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {key: _jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(item) for item in value]
    if isinstance(value, datetime):
        return value.isoformat()
    return value


# ── History records ───────────────────────────────────────────────

@dataclass(frozen=True)
class StateChange:
    sequence_id: int
    timestamp: datetime
    change_type: ChangeType
    significance: Severity
    affected_areas: tuple[str, ...]
    health_delta: float | None = None
    economy_delta: float | None = None
    position_distance: float | None = None
    rating_delta: float | None = None

    def to_dict(self) -> dict:
        return _jsonable(asdict(self))


@dataclass(frozen=True)
class CompressedSnapshot:
    """Lossy summary of a snapshot evicted from the live history."""
    sequence_id: int
    timestamp: datetime
    context: GameContext
    health: int | None
    money: int | None
    team_score: int | None
    round: int | None
    factor_count: int

    @classmethod
    def from_snapshot(cls, snapshot: Snapshot) -> "CompressedSnapshot":
        processed = snapshot.processed
        player = snapshot.player
        return cls(
            sequence_id=snapshot.sequence_id,
            timestamp=snapshot.timestamp,
            context=processed.context if processed else GameContext.MID_ROUND,
            health=player.health if player else None,
            money=player.money if player else None,
            team_score=snapshot.team.score if snapshot.team else None,
            round=snapshot.map.round if snapshot.map else None,
            factor_count=len(processed.factors) if processed else 0,
        )

    @classmethod
    def from_dict(cls, data: dict) -> "CompressedSnapshot":
        return cls(
            sequence_id=int(data["sequence_id"]),
            timestamp=_parse_timestamp(data.get("timestamp")),
            context=GameContext(data.get("context", GameContext.MID_ROUND.value)),
            health=_opt_int(data.get("health")),
            money=_opt_int(data.get("money")),
            team_score=_opt_int(data.get("team_score")),
            round=_opt_int(data.get("round")),
            factor_count=int(data.get("factor_count", 0)),
        )

    def to_dict(self) -> dict:
        return _jsonable(asdict(self))


@dataclass(frozen=True)
class Pattern:
    pattern_id: str
    category: PatternCategory
    description: str
    frequency: float
    confidence: float
    implications: tuple[str, ...]
    detected_at: datetime
    window_size: int = 0

    @classmethod
    def from_dict(cls, data: dict) -> "Pattern":
        return cls(
            pattern_id=str(data["pattern_id"]),
            category=PatternCategory(data["category"]),
            description=str(data.get("description", "")),
            frequency=float(data.get("frequency", 0.0)),
            confidence=float(data.get("confidence", 0.0)),
            implications=_str_tuple(data.get("implications")),
            detected_at=_parse_timestamp(data.get("detected_at")),
            window_size=int(data.get("window_size", 0)),
        )

    def to_dict(self) -> dict:
        return _jsonable(asdict(self))


# ── Plans & decisions ─────────────────────────────────────────────

@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 0
    backoff: BackoffStrategy = "linear"


@dataclass(frozen=True)
class PlanStep:
    step_id: str
    capability: str
    input: dict = field(default_factory=dict, compare=False)
    dependencies: tuple[str, ...] = ()
    timeout: float = 5.0
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)
    fallback: str | None = None


@dataclass(frozen=True)
class PlanResult:
    step_id: str
    capability: str
    success: bool
    output: dict | None = None
    error: str | None = None
    elapsed: float = 0.0
    attempt: int = 1
    used_fallback: bool = False
    original_error: str | None = None


@dataclass(frozen=True)
class DecisionMetadata:
    complexity: int
    estimated_duration: float
    risk_level: RiskLevel
    expected_outcome: str = ""


@dataclass(frozen=True)
class Decision:
    decision_id: str
    rule_id: str
    priority: InterventionPriority
    confidence: float
    rationale: str
    objective: CoachingObjective
    context: GameContext
    plan: tuple[PlanStep, ...]
    metadata: DecisionMetadata
    action_items: tuple[str, ...] = ()
    created_at: float = 0.0
    snapshot_sequence_id: int = 0

    def summary(self) -> dict:
        return {
            "decision_id": self.decision_id,
            "rule_id": self.rule_id,
            "priority": self.priority.value,
            "confidence": round(self.confidence, 4),
            "objective": self.objective.value,
            "context": self.context.value,
            "steps": [step.capability for step in self.plan],
            "complexity": self.metadata.complexity,
            "estimated_duration": self.metadata.estimated_duration,
            "risk_level": self.metadata.risk_level,
        }


@dataclass
class CoachingOutput:
    title: str
    message: str
    action_items: list[str]
    objective: CoachingObjective
    priority: InterventionPriority
    timing: Literal["immediate", "next_opportunity"] = "next_opportunity"
    is_error: bool = False
    details: str = ""

    def to_dict(self) -> dict:
        return _jsonable(asdict(self))


@dataclass
class ExecutionOutcome:
    decision_id: str
    attempts: list[PlanResult]
    results: dict[str, PlanResult]
    skipped_steps: list[str]
    total_steps: int
    total_time: float
    output: CoachingOutput

    @property
    def successful_steps(self) -> int:
        return sum(1 for result in self.results.values() if result.success)

    @property
    def success_rate(self) -> float:
        if self.total_steps <= 0:
            return 0.0
        return self.successful_steps / self.total_steps

    @property
    def success(self) -> bool:
        return self.success_rate > 0.7

    def summary(self) -> dict:
        return {
            "decision_id": self.decision_id,
            "success": self.success,
            "success_rate": round(self.success_rate, 4),
            "total_time": round(self.total_time, 4),
            "attempts": len(self.attempts),
            "skipped_steps": list(self.skipped_steps),
            "fallbacks": [result.step_id for result in self.attempts if result.used_fallback],
            "title": self.output.title,
        }


@dataclass(frozen=True)
class Outcome:
    tracking_id: str
    decision_id: str
    rule_id: str
    objective: CoachingObjective
    state: TrackingState
    followed: bool
    success: bool
    impact: float
    player_response: PlayerResponse
    confidence: float
    learning_points: tuple[str, ...] = ()
    metrics: dict = field(default_factory=dict, compare=False)
    concluded_at: float = 0.0

    def to_dict(self) -> dict:
        return _jsonable(asdict(self))

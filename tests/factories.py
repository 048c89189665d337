from coach_core.capabilities import DEFAULT_CAPABILITY_SPECS, LocalCapabilityRegistry
from coach_core.models import (
    CoachingObjective,
    Decision,
    DecisionMetadata,
    GameContext,
    InterventionPriority,
    Outcome,
    PlanStep,
    Snapshot,
    TrackingState,
)


BASE_TS = 1_700_000_000.0


def make_snapshot(sequence_id=1, seconds=0.0, **overrides):
    """Build a valid snapshot; keyword overrides replace individual fields."""
    values = dict(
        context="mid_round",
        health=100,
        armor=100,
        money=3000,
        position=(0.0, 0.0),
        weapons=("ak47",),
        kills=0,
        deaths=0,
        rating=1.0,
        behaviors=(),
        risk_factors=(),
        factors=(),
        side="T",
        score=0,
        coordination=0.8,
        map_name="de_mirage",
        round=1,
        phase="live",
        round_type="full_buy",
    )
    values.update(overrides)

    player = {
        "steam_id": "76561198000000000",
        "name": "player",
        "health": values["health"],
        "armor": values["armor"],
        "money": values["money"],
        "weapons": list(values["weapons"]),
        "statistics": {"kills": values["kills"], "deaths": values["deaths"], "rating": values["rating"]},
        "observed_behaviors": list(values["behaviors"]),
        "risk_factors": list(values["risk_factors"]),
    }
    if values["position"] is not None:
        x, y = values["position"]
        player["position"] = {"x": x, "y": y, "z": 0.0}

    data = {
        "sequence_id": sequence_id,
        "timestamp": BASE_TS + seconds,
        "processed": {
            "context": values["context"],
            "phase": values["phase"],
            "player": player,
            "team": {"side": values["side"], "score": values["score"], "coordination": values["coordination"]},
            "map": {"name": values["map_name"], "round": values["round"], "phase": values["phase"]},
            "economy": {"round_type": values["round_type"]},
            "factors": [dict(f) for f in values["factors"]],
        },
    }
    return Snapshot.from_dict(data)


def make_decision(
    plan=(),
    rule_id="test_rule",
    priority=InterventionPriority.MEDIUM,
    confidence=0.8,
    objective=CoachingObjective.SKILL_DEVELOPMENT,
    action_items=(),
    rationale="Test advice - details",
    complexity=1,
    decision_id=None,
):
    return Decision(
        decision_id=decision_id or f"decision_{rule_id}_{confidence}_{complexity}",
        rule_id=rule_id,
        priority=priority,
        confidence=confidence,
        rationale=rationale,
        objective=objective,
        context=GameContext.MID_ROUND,
        plan=tuple(plan),
        metadata=DecisionMetadata(
            complexity=complexity,
            estimated_duration=sum(step.timeout for step in plan),
            risk_level="low",
        ),
        action_items=tuple(action_items),
    )


def chain(*capabilities, timeout=1.0, **step_options):
    """Plan where every step depends on the one before it."""
    steps = []
    for index, name in enumerate(capabilities):
        steps.append(
            PlanStep(
                step_id=f"step_{index}",
                capability=name,
                dependencies=(steps[-1].step_id,) if steps else (),
                timeout=timeout,
                **step_options,
            )
        )
    return tuple(steps)


def make_outcome(rule_id, success=True, impact=0.5, response="neutral", confidence=1.0):
    return Outcome(
        tracking_id=f"trk_{rule_id}",
        decision_id=f"decision_{rule_id}",
        rule_id=rule_id,
        objective=CoachingObjective.TACTICAL_GUIDANCE,
        state=TrackingState.CONCLUDED,
        followed=success,
        success=success,
        impact=impact,
        player_response=response,
        confidence=confidence,
    )


def echo_registry(**handlers):
    """Registry where every default capability answers with a short message."""
    registry = LocalCapabilityRegistry(
        handlers={name: (lambda payload, name=name: {"message": f"{name} ok"}) for name in DEFAULT_CAPABILITY_SPECS}
    )
    for name, handler in handlers.items():
        registry.register(name, handler)
    return registry

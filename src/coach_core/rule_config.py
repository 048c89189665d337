from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import yaml
from loguru import logger

from .models import InterventionPriority
from .rules import Rule, clamp_confidence, default_rules
from .settings import settings


@dataclass
class RuleOverride:
    rule_id: str
    enabled: bool | None = None
    confidence: float | None = None
    cooldown_seconds: float | None = None
    priority: InterventionPriority | None = None


def load_rule_overrides(file_path: Path | None = None) -> dict[str, RuleOverride]:
    path = Path(file_path or settings.rules_config_path)
    if not path.exists():
        return {}

    raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    rules = raw.get("rules", {})
    if not isinstance(rules, dict):
        raise ValueError(f"{path}: 'rules' must be a mapping of rule id to overrides")

    overrides: dict[str, RuleOverride] = {}
    for rule_id, values in rules.items():
        values = values or {}
        priority = values.get("priority")
        overrides[str(rule_id)] = RuleOverride(
            rule_id=str(rule_id),
            enabled=bool(values["enabled"]) if "enabled" in values else None,
            confidence=float(values["confidence"]) if "confidence" in values else None,
            cooldown_seconds=float(values["cooldown_seconds"]) if "cooldown_seconds" in values else None,
            priority=InterventionPriority(str(priority).lower()) if priority else None,
        )
    return overrides


def load_rules(file_path: Path | None = None) -> list[Rule]:
    rules = default_rules()
    overrides = load_rule_overrides(file_path)
    known = {rule.rule_id for rule in rules}
    for rule_id in overrides.keys() - known:
        logger.warning("Ignoring override for unknown rule {}", rule_id)

    for rule in rules:
        override = overrides.get(rule.rule_id)
        if override is None:
            continue
        if override.enabled is not None:
            rule.enabled = override.enabled
        if override.confidence is not None:
            rule.confidence = clamp_confidence(override.confidence)
            rule.base_confidence = rule.confidence
            rule.success_rate = rule.confidence
        if override.cooldown_seconds is not None:
            rule.cooldown = max(0.0, override.cooldown_seconds)
            rule.base_cooldown = rule.cooldown
        if override.priority is not None:
            rule.priority = override.priority
            rule.base_priority = override.priority
    return rules

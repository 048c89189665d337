import pytest

from coach_core.models import InterventionPriority
from coach_core.rule_config import load_rule_overrides, load_rules
from coach_core.rules import default_rules


def test_missing_file_keeps_seeded_rules(tmp_path):
    rules = load_rules(tmp_path / "absent.yaml")
    assert [r.rule_id for r in rules] == [r.rule_id for r in default_rules()]


def test_overrides_are_applied(tmp_path):
    path = tmp_path / "rules.yaml"
    path.write_text(
        """
rules:
  mental_support:
    enabled: false
  economy_buy_suggestion:
    confidence: 1.7
    cooldown_seconds: 40
    priority: IMMEDIATE
  not_a_rule:
    confidence: 0.5
""",
        encoding="utf-8",
    )

    rules = {r.rule_id: r for r in load_rules(path)}

    assert rules["mental_support"].enabled is False
    economy = rules["economy_buy_suggestion"]
    assert economy.confidence == 1.0
    assert economy.success_rate == 1.0 and economy.base_confidence == 1.0
    assert economy.cooldown == 40.0 and economy.base_cooldown == 40.0
    assert economy.priority == InterventionPriority.IMMEDIATE
    assert economy.base_priority == InterventionPriority.IMMEDIATE
    assert "not_a_rule" not in rules


def test_rules_section_must_be_a_mapping(tmp_path):
    path = tmp_path / "rules.yaml"
    path.write_text("rules:\n  - mental_support\n", encoding="utf-8")
    with pytest.raises(ValueError):
        load_rule_overrides(path)


def test_bundled_config_parses():
    from pathlib import Path

    path = Path(__file__).resolve().parents[1] / "config" / "rules.yaml"
    overrides = load_rule_overrides(path)
    assert "critical_position_analysis" in overrides
    assert overrides["learning_insight"].priority == InterventionPriority.LOW

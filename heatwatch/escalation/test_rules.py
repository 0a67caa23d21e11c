"""
Escalation Rule Test Suite

Every test is labeled with the rule it enforces.
A malformed rule is disabled and reported, never evaluated.
"""

import json
import os
import tempfile

import pytest

from heatwatch.escalation.rules import (
    COND_HEAT_SCORE,
    COND_INCIDENTS_WITHIN,
    COND_REPEAT_OFFENSE,
    DEFAULT_RULE_DEFINITIONS,
    RuleDefinitionError,
    default_rules,
    load_rules,
    load_rules_file,
    parse_rule,
)


def definition(**overrides):
    base = {
        "id": "cluster",
        "name": "Incident Cluster",
        "conditions": [{"type": COND_INCIDENTS_WITHIN, "count": 3, "days": 7}],
        "actions": [
            {"type": "notify", "target": "admin", "delay_minutes": 0},
            {"type": "schedule", "target": "counseling", "delay_minutes": 60},
        ],
    }
    base.update(overrides)
    return base


# ---------------------------------------------------------------------------
# RULE: Valid definitions parse
# ---------------------------------------------------------------------------

class TestParseRule:
    def test_minimal_definition(self):
        rule = parse_rule(definition())
        assert rule.rule_id == "cluster"
        assert rule.priority == "medium"
        assert rule.is_active
        assert not rule.auto_execute
        assert rule.total_steps == 2
        assert rule.actions[1].delay_minutes == 60
        assert rule.conditions[0].params == {"count": 3.0, "days": 7.0}

    def test_trigger_description(self):
        rule = parse_rule(definition(conditions=[
            {"type": COND_HEAT_SCORE, "threshold": 8},
            {"type": COND_INCIDENTS_WITHIN, "count": 3, "days": 7},
        ]))
        assert rule.trigger == "Heat score >= 8 AND 3+ incidents in 7 days"

    def test_optional_param_default(self):
        rule = parse_rule(definition(conditions=[{"type": COND_REPEAT_OFFENSE, "ordinal": 2}]))
        assert rule.conditions[0].params["days"] == 30

    def test_equal_delays_allowed(self):
        rule = parse_rule(definition(actions=[
            {"type": "notify", "target": "admin", "delay_minutes": 30},
            {"type": "notify", "target": "parent", "delay_minutes": 30},
        ]))
        assert [a.delay_minutes for a in rule.actions] == [30, 30]

    def test_priority_normalized(self):
        assert parse_rule(definition(priority=" HIGH ")).priority == "high"


# ---------------------------------------------------------------------------
# RULE: Malformed definitions are rejected
# ---------------------------------------------------------------------------

class TestMalformedRules:
    def test_decreasing_delays(self):
        with pytest.raises(RuleDefinitionError) as exc_info:
            parse_rule(definition(actions=[
                {"type": "notify", "target": "admin", "delay_minutes": 60},
                {"type": "schedule", "target": "counseling", "delay_minutes": 0},
            ]))
        assert exc_info.value.invalid_fields == ["actions[1].delay_minutes"]

    def test_unknown_condition_type(self):
        with pytest.raises(RuleDefinitionError) as exc_info:
            parse_rule(definition(conditions=[{"type": "moon_phase"}]))
        assert "Unknown condition type" in exc_info.value.reason

    def test_missing_condition_param(self):
        with pytest.raises(RuleDefinitionError) as exc_info:
            parse_rule(definition(conditions=[{"type": COND_INCIDENTS_WITHIN, "count": 3}]))
        assert exc_info.value.invalid_fields == ["conditions[0].days"]

    @pytest.mark.parametrize("value", [-1, "three", True, None, float("inf")])
    def test_bad_condition_param(self, value):
        with pytest.raises(RuleDefinitionError):
            parse_rule(definition(conditions=[{"type": COND_HEAT_SCORE, "threshold": value}]))

    def test_unknown_action_type(self):
        with pytest.raises(RuleDefinitionError) as exc_info:
            parse_rule(definition(actions=[{"type": "teleport", "target": "moon"}]))
        assert "actions[0].type" in exc_info.value.invalid_fields

    @pytest.mark.parametrize("delay", [-5, 1.5, "soon"])
    def test_bad_delay(self, delay):
        with pytest.raises(RuleDefinitionError):
            parse_rule(definition(actions=[{"type": "notify", "target": "admin", "delay_minutes": delay}]))

    def test_missing_target(self):
        with pytest.raises(RuleDefinitionError) as exc_info:
            parse_rule(definition(actions=[{"type": "notify"}]))
        assert exc_info.value.invalid_fields == ["actions[0].target"]

    def test_empty_conditions(self):
        with pytest.raises(RuleDefinitionError):
            parse_rule(definition(conditions=[]))

    def test_empty_actions(self):
        with pytest.raises(RuleDefinitionError):
            parse_rule(definition(actions=[]))

    def test_missing_name(self):
        with pytest.raises(RuleDefinitionError) as exc_info:
            parse_rule(definition(name=""))
        assert exc_info.value.invalid_fields == ["name"]

    def test_unknown_priority(self):
        with pytest.raises(RuleDefinitionError):
            parse_rule(definition(priority="urgent"))

    def test_error_message_is_boxed(self):
        with pytest.raises(RuleDefinitionError) as exc_info:
            parse_rule(definition(priority="urgent"))
        text = str(exc_info.value)
        assert "ESCALATION RULE DISABLED" in text
        assert "Rule            : cluster" in text


# ---------------------------------------------------------------------------
# RULE: Loading disables bad rules and keeps the rest
# ---------------------------------------------------------------------------

class TestLoadRules:
    def test_bad_rule_disabled_good_rules_kept(self):
        rules, errors = load_rules([
            definition(id="a"),
            definition(id="b", priority="urgent"),
            definition(id="c"),
        ])
        assert [r.rule_id for r in rules] == ["a", "c"]
        assert [e.rule_id for e in errors] == ["b"]

    def test_duplicate_id_keeps_first(self):
        rules, errors = load_rules([definition(name="First"), definition(name="Second")])
        assert [r.name for r in rules] == ["First"]
        assert errors[0].reason == "Duplicate rule id"

    def test_default_rules_are_valid(self):
        rules, errors = load_rules(DEFAULT_RULE_DEFINITIONS)
        assert errors == []
        assert [r.rule_id for r in rules] == ["critical-behavior", "repeat-offense", "incident-cluster"]
        assert [r.rule_id for r in default_rules()] == [r.rule_id for r in rules]

    def test_default_auto_execute(self):
        by_id = {r.rule_id: r for r in default_rules()}
        assert by_id["critical-behavior"].auto_execute
        assert not by_id["repeat-offense"].auto_execute


class TestLoadRulesFile:
    def write_json(self, payload):
        tmp = tempfile.NamedTemporaryFile(mode="w", suffix=".json", delete=False)
        json.dump(payload, tmp)
        tmp.close()
        return tmp.name

    def test_list_payload(self):
        path = self.write_json([definition()])
        try:
            rules, errors = load_rules_file(path)
            assert [r.rule_id for r in rules] == ["cluster"]
            assert errors == []
        finally:
            os.unlink(path)

    def test_mapping_payload(self):
        path = self.write_json({"rules": [definition(), definition(id="x", actions=[])]})
        try:
            rules, errors = load_rules_file(path)
            assert len(rules) == 1
            assert len(errors) == 1
        finally:
            os.unlink(path)

    def test_scalar_payload_rejected(self):
        path = self.write_json("not rules")
        try:
            with pytest.raises(RuleDefinitionError):
                load_rules_file(path)
        finally:
            os.unlink(path)

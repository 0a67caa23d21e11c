"""
Heatwatch Escalation Rules

Rule definitions are plain mappings (loaded from JSON or written in Python)
and are validated once, at configuration time.

RULES (non-negotiable):
- A malformed rule is disabled and reported. It never reaches evaluation.
- A trigger is a conjunction. Every condition must hold.
- Action delays are minutes relative to the trigger time and must be
  non-decreasing in list order, so execution order is total.

Definition format:
    {
        "id": "critical-behavior",
        "name": "Critical Behavior Escalation",
        "priority": "critical",
        "active": true,
        "auto_execute": true,
        "assignee": "counselor",
        "conditions": [
            {"type": "heat_score_at_least", "threshold": 8},
            {"type": "incidents_within", "count": 3, "days": 7}
        ],
        "actions": [
            {"type": "notify", "target": "admin", "delay_minutes": 0},
            {"type": "schedule", "target": "counseling", "delay_minutes": 60}
        ]
    }
"""

from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Union

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Vocabulary
# ---------------------------------------------------------------------------

ACTION_TYPES: frozenset[str] = frozenset({"notify", "schedule", "assign", "escalate", "document"})
PRIORITIES: tuple[str, ...] = ("critical", "high", "medium", "low")

COND_HEAT_SCORE = "heat_score_at_least"
COND_INCIDENTS_WITHIN = "incidents_within"
COND_REPEAT_OFFENSE = "repeat_offense"
COND_NO_RECENT_MERITS = "no_recent_merits"
COND_INTERVENTION_UNSUCCESSFUL = "previous_intervention_unsuccessful"

# condition type -> (required numeric params, optional numeric params with defaults)
CONDITION_PARAMS: dict[str, tuple[tuple[str, ...], dict[str, float]]] = {
    COND_HEAT_SCORE: (("threshold",), {}),
    COND_INCIDENTS_WITHIN: (("count", "days"), {}),
    COND_REPEAT_OFFENSE: (("ordinal",), {"days": 30}),
    COND_NO_RECENT_MERITS: (("days",), {}),
    COND_INTERVENTION_UNSUCCESSFUL: ((), {}),
}


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


@dataclass
class RuleDefinitionError(Exception):
    """A rule definition that cannot be used. The rule is disabled."""
    rule_id: str
    reason: str
    invalid_fields: list[str]
    operator_fix_steps: list[str] = field(default_factory=list)

    def __str__(self) -> str:
        lines = [
            "═" * 60,
            "ESCALATION RULE DISABLED",
            "═" * 60,
            f"Rule            : {self.rule_id}",
            f"Reason          : {self.reason}",
        ]
        if self.invalid_fields:
            lines.append(f"Invalid Fields  : {', '.join(self.invalid_fields)}")
        if self.operator_fix_steps:
            lines.append("Fix Steps:")
            for i, step in enumerate(self.operator_fix_steps, 1):
                lines.append(f"  {i}. {step}")
        lines.append("═" * 60)
        return "\n".join(lines)


# ---------------------------------------------------------------------------
# Dataclasses
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Condition:
    type: str
    params: dict[str, float] = field(default_factory=dict)

    def param(self, name: str) -> float:
        return self.params[name]

    def describe(self) -> str:
        p = self.params
        if self.type == COND_HEAT_SCORE:
            return f"Heat score >= {p['threshold']:g}"
        if self.type == COND_INCIDENTS_WITHIN:
            return f"{int(p['count'])}+ incidents in {p['days']:g} days"
        if self.type == COND_REPEAT_OFFENSE:
            return f"Offense #{int(p['ordinal'])}+ of the same type within {p['days']:g} days"
        if self.type == COND_NO_RECENT_MERITS:
            return f"No merits in {p['days']:g} days"
        return "Previous intervention unsuccessful"


@dataclass(frozen=True)
class EscalationAction:
    type: str
    target: str
    delay_minutes: int = 0

    def describe(self) -> str:
        return f"{self.type} {self.target}"


@dataclass(frozen=True)
class EscalationRule:
    rule_id: str
    name: str
    conditions: tuple[Condition, ...]
    actions: tuple[EscalationAction, ...]
    priority: str = "medium"
    is_active: bool = True
    auto_execute: bool = False
    assignee: Optional[str] = None

    @property
    def trigger(self) -> str:
        return " AND ".join(c.describe() for c in self.conditions)

    @property
    def total_steps(self) -> int:
        return len(self.actions)


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def _number(value) -> Optional[float]:
    if isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def _parse_condition(rule_id: str, index: int, raw) -> Condition:
    label = f"conditions[{index}]"
    if not isinstance(raw, dict) or "type" not in raw:
        raise RuleDefinitionError(
            rule_id=rule_id,
            reason="Condition must be a mapping with a 'type'",
            invalid_fields=[label],
            operator_fix_steps=[f"Use one of: {', '.join(sorted(CONDITION_PARAMS))}."],
        )
    ctype = str(raw["type"]).strip()
    if ctype not in CONDITION_PARAMS:
        raise RuleDefinitionError(
            rule_id=rule_id,
            reason=f"Unknown condition type '{ctype}'",
            invalid_fields=[f"{label}.type"],
            operator_fix_steps=[f"Use one of: {', '.join(sorted(CONDITION_PARAMS))}."],
        )
    required, optional = CONDITION_PARAMS[ctype]
    params: dict[str, float] = dict(optional)
    bad: list[str] = []
    for name in required + tuple(optional):
        if name not in raw:
            if name in required:
                bad.append(f"{label}.{name}")
            continue
        value = _number(raw[name])
        if value is None or value < 0:
            bad.append(f"{label}.{name}")
            continue
        params[name] = value
    if bad:
        raise RuleDefinitionError(
            rule_id=rule_id,
            reason=f"Condition '{ctype}' has missing or invalid parameters",
            invalid_fields=bad,
            operator_fix_steps=["Provide non-negative numbers for every listed parameter."],
        )
    return Condition(type=ctype, params=params)


def _parse_action(rule_id: str, index: int, raw) -> EscalationAction:
    label = f"actions[{index}]"
    if not isinstance(raw, dict):
        raise RuleDefinitionError(
            rule_id=rule_id,
            reason="Action must be a mapping",
            invalid_fields=[label],
        )
    bad: list[str] = []
    atype = str(raw.get("type", "")).strip()
    if atype not in ACTION_TYPES:
        bad.append(f"{label}.type")
    target = str(raw.get("target", "") or "").strip()
    if not target:
        bad.append(f"{label}.target")
    delay = _number(raw.get("delay_minutes", raw.get("delay", 0)))
    if delay is None or delay < 0 or delay != int(delay):
        bad.append(f"{label}.delay_minutes")
    if bad:
        raise RuleDefinitionError(
            rule_id=rule_id,
            reason="Action has missing or invalid fields",
            invalid_fields=bad,
            operator_fix_steps=[
                f"type must be one of: {', '.join(sorted(ACTION_TYPES))}.",
                "target must be a non-empty recipient or resource identifier.",
                "delay_minutes must be a whole number >= 0.",
            ],
        )
    return EscalationAction(type=atype, target=target, delay_minutes=int(delay))


def parse_rule(raw: dict) -> EscalationRule:
    """Validate one rule definition. Raises RuleDefinitionError."""
    if not isinstance(raw, dict):
        raise RuleDefinitionError(
            rule_id="<unknown>",
            reason="Rule definition must be a mapping",
            invalid_fields=["<rule>"],
        )
    rule_id = str(raw.get("id") or "").strip()
    name = str(raw.get("name") or "").strip()
    if not rule_id or not name:
        raise RuleDefinitionError(
            rule_id=rule_id or "<unknown>",
            reason="Rule requires an id and a name",
            invalid_fields=[f for f, v in (("id", rule_id), ("name", name)) if not v],
        )

    raw_conditions = raw.get("conditions")
    if not isinstance(raw_conditions, list) or not raw_conditions:
        raise RuleDefinitionError(
            rule_id=rule_id,
            reason="Rule requires at least one trigger condition",
            invalid_fields=["conditions"],
        )
    raw_actions = raw.get("actions")
    if not isinstance(raw_actions, list) or not raw_actions:
        raise RuleDefinitionError(
            rule_id=rule_id,
            reason="Rule requires at least one action",
            invalid_fields=["actions"],
        )

    conditions = tuple(_parse_condition(rule_id, i, c) for i, c in enumerate(raw_conditions))
    actions = tuple(_parse_action(rule_id, i, a) for i, a in enumerate(raw_actions))

    for i in range(1, len(actions)):
        if actions[i].delay_minutes < actions[i - 1].delay_minutes:
            raise RuleDefinitionError(
                rule_id=rule_id,
                reason="Action delays must be non-decreasing",
                invalid_fields=[f"actions[{i}].delay_minutes"],
                operator_fix_steps=[
                    "Delays are measured from the trigger time, not from the previous action.",
                    "Order actions by delay_minutes ascending.",
                ],
            )

    priority = str(raw.get("priority", "medium")).strip().lower()
    if priority not in PRIORITIES:
        raise RuleDefinitionError(
            rule_id=rule_id,
            reason=f"Unknown priority '{priority}'",
            invalid_fields=["priority"],
            operator_fix_steps=[f"Use one of: {', '.join(PRIORITIES)}."],
        )

    return EscalationRule(
        rule_id=rule_id,
        name=name,
        conditions=conditions,
        actions=actions,
        priority=priority,
        is_active=bool(raw.get("active", True)),
        auto_execute=bool(raw.get("auto_execute", False)),
        assignee=raw.get("assignee"),
    )


def load_rules(
    definitions: list[dict],
) -> tuple[list[EscalationRule], list[RuleDefinitionError]]:
    """
    Parse every definition. Valid rules are returned; malformed ones are
    disabled and their errors returned alongside. Duplicate ids keep the
    first definition.
    """
    rules: list[EscalationRule] = []
    errors: list[RuleDefinitionError] = []
    seen: set[str] = set()
    for raw in definitions:
        try:
            rule = parse_rule(raw)
        except RuleDefinitionError as e:
            logger.warning("[rules] rule '%s' disabled: %s", e.rule_id, e.reason)
            errors.append(e)
            continue
        if rule.rule_id in seen:
            error = RuleDefinitionError(
                rule_id=rule.rule_id,
                reason="Duplicate rule id",
                invalid_fields=["id"],
                operator_fix_steps=["Give every rule a unique id."],
            )
            logger.warning("[rules] rule '%s' disabled: %s", rule.rule_id, error.reason)
            errors.append(error)
            continue
        seen.add(rule.rule_id)
        rules.append(rule)
    logger.info("[rules] %d rules loaded, %d disabled", len(rules), len(errors))
    return rules, errors


def load_rules_file(
    path: Union[str, Path],
) -> tuple[list[EscalationRule], list[RuleDefinitionError]]:
    with open(path, "r", encoding="utf-8") as f:
        payload = json.load(f)
    if isinstance(payload, dict):
        payload = payload.get("rules", [])
    if not isinstance(payload, list):
        raise RuleDefinitionError(
            rule_id="<file>",
            reason="Rules file must contain a list or a {'rules': [...]} mapping",
            invalid_fields=[str(path)],
        )
    return load_rules(payload)


# ---------------------------------------------------------------------------
# Standard rules
# ---------------------------------------------------------------------------

DEFAULT_RULE_DEFINITIONS: list[dict] = [
    {
        "id": "critical-behavior",
        "name": "Critical Behavior Escalation",
        "priority": "critical",
        "auto_execute": True,
        "assignee": "counselor",
        "conditions": [
            {"type": COND_HEAT_SCORE, "threshold": 8},
            {"type": COND_INCIDENTS_WITHIN, "count": 3, "days": 7},
            {"type": COND_INTERVENTION_UNSUCCESSFUL},
        ],
        "actions": [
            {"type": "notify", "target": "admin", "delay_minutes": 0},
            {"type": "schedule", "target": "counseling", "delay_minutes": 60},
            {"type": "notify", "target": "parent", "delay_minutes": 120},
            {"type": "escalate", "target": "director", "delay_minutes": 1440},
        ],
    },
    {
        "id": "repeat-offense",
        "name": "Repeat Offense Protocol",
        "priority": "high",
        "auto_execute": False,
        "assignee": "form_teacher",
        "conditions": [
            {"type": COND_REPEAT_OFFENSE, "ordinal": 2, "days": 30},
        ],
        "actions": [
            {"type": "notify", "target": "form_teacher", "delay_minutes": 0},
            {"type": "schedule", "target": "parent_meeting", "delay_minutes": 1440},
            {"type": "document", "target": "behavioral_plan", "delay_minutes": 2880},
        ],
    },
    {
        "id": "incident-cluster",
        "name": "Incident Cluster Alert",
        "priority": "medium",
        "auto_execute": True,
        "assignee": "counselor",
        "conditions": [
            {"type": COND_INCIDENTS_WITHIN, "count": 3, "days": 7},
        ],
        "actions": [
            {"type": "notify", "target": "admin", "delay_minutes": 0},
            {"type": "schedule", "target": "counseling", "delay_minutes": 60},
        ],
    },
]


def default_rules() -> list[EscalationRule]:
    rules, _ = load_rules(DEFAULT_RULE_DEFINITIONS)
    return rules

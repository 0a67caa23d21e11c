"""
Heatwatch Escalation Engine

Evaluates escalation rules against one student's history and manages the
lifecycle of the ActiveEscalation instances it creates.

CONTRACT ANCHORS
----------------
- A triggered rule yields one ActiveEscalation at step 0. Step i is
  scheduled at trigger time + actions[i].delay_minutes.
- Auto-execute rules start in_progress. Other rules start pending and wait
  for approve() before their first step can be dispatched.
- Re-evaluating a (student, rule) pair that already has an open escalation
  (pending, in_progress, paused) is a no-op.
- Status only moves forward, except pending <-> paused. Any open escalation
  may be cancelled.
- current_step never exceeds total_steps. A failed step leaves the
  escalation in_progress at that step; completed steps are never undone.
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Iterable, Optional

from heatwatch.escalation.rules import (
    COND_HEAT_SCORE,
    COND_INCIDENTS_WITHIN,
    COND_INTERVENTION_UNSUCCESSFUL,
    COND_NO_RECENT_MERITS,
    COND_REPEAT_OFFENSE,
    Condition,
    EscalationAction,
    EscalationRule,
)
from heatwatch.records.misdemeanors import derive_offense_numbers
from heatwatch.records.models import BehaviorRecord, Student, active_records, naive_utc, within_days
from heatwatch.scoring.heat_score import DEFAULT_POLICY, ScoringPolicy, compute_heat_score

logger = logging.getLogger(__name__)


class EscalationStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    PAUSED = "paused"
    CANCELLED = "cancelled"


class StepStatus(str, Enum):
    SCHEDULED = "scheduled"
    COMPLETED = "completed"
    FAILED = "failed"


OPEN_STATUSES: frozenset[EscalationStatus] = frozenset({
    EscalationStatus.PENDING,
    EscalationStatus.IN_PROGRESS,
    EscalationStatus.PAUSED,
})

_TRANSITIONS: dict[EscalationStatus, frozenset[EscalationStatus]] = {
    EscalationStatus.PENDING: frozenset({
        EscalationStatus.IN_PROGRESS,
        EscalationStatus.PAUSED,
        EscalationStatus.CANCELLED,
    }),
    EscalationStatus.PAUSED: frozenset({
        EscalationStatus.PENDING,
        EscalationStatus.CANCELLED,
    }),
    EscalationStatus.IN_PROGRESS: frozenset({
        EscalationStatus.COMPLETED,
        EscalationStatus.CANCELLED,
    }),
    EscalationStatus.COMPLETED: frozenset(),
    EscalationStatus.CANCELLED: frozenset(),
}


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


@dataclass
class EvaluationError(Exception):
    """Student data is missing or unusable. The student is skipped."""
    student_id: str
    reason: str
    missing_or_invalid_fields: list[str] = field(default_factory=list)

    def __str__(self) -> str:
        detail = f" ({', '.join(self.missing_or_invalid_fields)})" if self.missing_or_invalid_fields else ""
        return f"Escalation evaluation skipped for student '{self.student_id}': {self.reason}{detail}"


@dataclass
class InvalidTransitionError(Exception):
    escalation_id: str
    current: str
    requested: str

    def __str__(self) -> str:
        return (
            f"Escalation '{self.escalation_id}' cannot move from "
            f"'{self.current}' to '{self.requested}'"
        )


# ---------------------------------------------------------------------------
# Dataclasses
# ---------------------------------------------------------------------------


@dataclass
class ScheduledStep:
    index: int
    action: EscalationAction
    effective_at: datetime
    status: StepStatus = StepStatus.SCHEDULED
    attempts: int = 0
    completed_at: Optional[datetime] = None
    last_error: Optional[str] = None


@dataclass
class ActiveEscalation:
    escalation_id: str
    student_id: str
    rule_id: str
    rule_name: str
    priority: str
    triggered_at: datetime
    steps: list[ScheduledStep]
    status: EscalationStatus
    approved: bool = False
    current_step: int = 0
    assigned_to: Optional[str] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    @property
    def total_steps(self) -> int:
        return len(self.steps)

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STATUSES

    @property
    def awaiting_approval(self) -> bool:
        return self.status is EscalationStatus.PENDING and not self.approved

    @property
    def next_step(self) -> Optional[ScheduledStep]:
        if not self.is_open or self.current_step >= self.total_steps:
            return None
        return self.steps[self.current_step]

    @property
    def next_action(self) -> Optional[EscalationAction]:
        step = self.next_step
        return step.action if step else None

    @property
    def next_action_time(self) -> Optional[datetime]:
        step = self.next_step
        return step.effective_at if step else None

    @property
    def progress(self) -> int:
        if self.total_steps == 0:
            return 100
        return int(self.current_step * 100 / self.total_steps)


# ---------------------------------------------------------------------------
# Condition evaluation
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class EvaluationContext:
    student_id: str
    records: list[BehaviorRecord]
    score: float
    now: datetime
    history: list[ActiveEscalation]


def _intervention_unsuccessful(ctx: EvaluationContext) -> bool:
    """A completed escalation for this student was followed by a new incident."""
    completions = [
        naive_utc(e.completed_at) for e in ctx.history
        if e.student_id == ctx.student_id
        and e.status is EscalationStatus.COMPLETED
        and e.completed_at is not None
    ]
    if not completions:
        return False
    latest = max(completions)
    return any(
        r.is_incident and r.timestamp is not None and naive_utc(r.timestamp) > latest
        for r in ctx.records
    )


def condition_holds(condition: Condition, ctx: EvaluationContext) -> bool:
    p = condition.params
    if condition.type == COND_HEAT_SCORE:
        return ctx.score >= p["threshold"]
    if condition.type == COND_INCIDENTS_WITHIN:
        recent = sum(
            1 for r in ctx.records
            if r.is_incident and within_days(r.timestamp, ctx.now, p["days"])
        )
        return recent >= p["count"]
    if condition.type == COND_REPEAT_OFFENSE:
        ordinals = derive_offense_numbers(ctx.records)
        return any(
            r.is_incident
            and within_days(r.timestamp, ctx.now, p["days"])
            and ordinals.get(r.record_id, 1) >= p["ordinal"]
            for r in ctx.records
        )
    if condition.type == COND_NO_RECENT_MERITS:
        return not any(
            r.is_merit and within_days(r.timestamp, ctx.now, p["days"])
            for r in ctx.records
        )
    if condition.type == COND_INTERVENTION_UNSUCCESSFUL:
        return _intervention_unsuccessful(ctx)
    # parse_rule rejects unknown types; a hand-built Condition never triggers.
    return False


def rule_triggers(rule: EscalationRule, ctx: EvaluationContext) -> bool:
    return bool(rule.conditions) and all(condition_holds(c, ctx) for c in rule.conditions)


# ---------------------------------------------------------------------------
# Instantiation
# ---------------------------------------------------------------------------


def escalation_id_for(student_id: str, rule_id: str, triggered_at: datetime, sequence: int = 1) -> str:
    """`sequence` counts the escalations of this rule for the student, this one included."""
    key = f"{student_id}|{rule_id}|{triggered_at.isoformat()}|{sequence}"
    return hashlib.sha256(key.encode()).hexdigest()[:12]


def instantiate(
    rule: EscalationRule,
    student_id: str,
    now: datetime,
    sequence: int = 1,
) -> ActiveEscalation:
    steps = [
        ScheduledStep(
            index=i,
            action=action,
            effective_at=now + timedelta(minutes=action.delay_minutes),
        )
        for i, action in enumerate(rule.actions)
    ]
    return ActiveEscalation(
        escalation_id=escalation_id_for(student_id, rule.rule_id, now, sequence),
        student_id=student_id,
        rule_id=rule.rule_id,
        rule_name=rule.name,
        priority=rule.priority,
        triggered_at=now,
        steps=steps,
        status=EscalationStatus.IN_PROGRESS if rule.auto_execute else EscalationStatus.PENDING,
        approved=rule.auto_execute,
        assigned_to=rule.assignee,
    )


def evaluate(
    student: Optional[Student],
    records: Iterable[BehaviorRecord],
    rules: Iterable[EscalationRule],
    existing: Iterable[ActiveEscalation] = (),
    now: Optional[datetime] = None,
    policy: ScoringPolicy = DEFAULT_POLICY,
) -> list[ActiveEscalation]:
    """
    Return the escalations newly triggered for this student.

    `existing` is the student's escalation history. Open escalations block
    re-triggering of their rule; completed ones feed the
    previous-intervention condition.

    Raises
    ------
    EvaluationError
        If the student is missing or has no id.
    """
    if student is None:
        raise EvaluationError(student_id="<unknown>", reason="Student record not found")
    if not student.student_id:
        raise EvaluationError(
            student_id="<unknown>",
            reason="Student has no id",
            missing_or_invalid_fields=["student_id"],
        )

    now = now or datetime.now()
    sid = student.student_id
    history = active_records(r for r in records if r.student_id == sid)
    existing = [e for e in existing if e.student_id == sid]

    ctx = EvaluationContext(
        student_id=sid,
        records=history,
        score=compute_heat_score(history, now, policy),
        now=now,
        history=existing,
    )

    blocked = {e.rule_id for e in existing if e.is_open}
    created: list[ActiveEscalation] = []
    for rule in rules:
        if not rule.is_active or rule.rule_id in blocked:
            continue
        if not rule_triggers(rule, ctx):
            continue
        sequence = 1 + sum(1 for e in existing if e.rule_id == rule.rule_id)
        escalation = instantiate(rule, sid, now, sequence)
        blocked.add(rule.rule_id)
        created.append(escalation)
        logger.info(
            "[engine] rule '%s' triggered for student '%s' (score %.2f, %s)",
            rule.rule_id, sid, ctx.score, escalation.status.value,
        )
    return created


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


def _transition(escalation: ActiveEscalation, target: EscalationStatus) -> None:
    if target not in _TRANSITIONS[escalation.status]:
        raise InvalidTransitionError(
            escalation_id=escalation.escalation_id,
            current=escalation.status.value,
            requested=target.value,
        )
    escalation.status = target


def approve(escalation: ActiveEscalation) -> ActiveEscalation:
    """Release a pending escalation for dispatch."""
    _transition(escalation, EscalationStatus.IN_PROGRESS)
    escalation.approved = True
    return escalation


def pause(escalation: ActiveEscalation) -> ActiveEscalation:
    _transition(escalation, EscalationStatus.PAUSED)
    return escalation


def resume(escalation: ActiveEscalation) -> ActiveEscalation:
    _transition(escalation, EscalationStatus.PENDING)
    return escalation


def cancel(escalation: ActiveEscalation, now: Optional[datetime] = None) -> ActiveEscalation:
    _transition(escalation, EscalationStatus.CANCELLED)
    escalation.cancelled_at = now or datetime.now()
    return escalation


def _require_current_step(escalation: ActiveEscalation, requested: str) -> ScheduledStep:
    step = escalation.next_step
    if escalation.status is not EscalationStatus.IN_PROGRESS or step is None:
        raise InvalidTransitionError(
            escalation_id=escalation.escalation_id,
            current=escalation.status.value,
            requested=requested,
        )
    return step


def complete_step(escalation: ActiveEscalation, now: Optional[datetime] = None) -> ActiveEscalation:
    now = now or datetime.now()
    step = _require_current_step(escalation, "complete_step")
    step.status = StepStatus.COMPLETED
    step.completed_at = now
    step.last_error = None
    escalation.current_step += 1
    if escalation.current_step >= escalation.total_steps:
        _transition(escalation, EscalationStatus.COMPLETED)
        escalation.completed_at = now
    return escalation


def fail_step(escalation: ActiveEscalation, error: str) -> ActiveEscalation:
    step = _require_current_step(escalation, "fail_step")
    step.status = StepStatus.FAILED
    step.last_error = error
    return escalation


def retry_step(escalation: ActiveEscalation) -> ActiveEscalation:
    """Make a failed step eligible for dispatch again at its scheduled time."""
    step = _require_current_step(escalation, "retry_step")
    if step.status is StepStatus.FAILED:
        step.status = StepStatus.SCHEDULED
    return escalation


def reschedule_step(escalation: ActiveEscalation, when: datetime) -> ActiveEscalation:
    """
    Move the current step to `when`. Later steps scheduled before `when`
    move with it so effective times stay non-decreasing.
    """
    step = _require_current_step(escalation, "reschedule_step")
    step.effective_at = when
    step.status = StepStatus.SCHEDULED
    for later in escalation.steps[step.index + 1:]:
        if later.effective_at < when:
            later.effective_at = when
    return escalation

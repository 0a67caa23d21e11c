"""
Dispatch boundary between active escalations and the outside world.

Notification delivery and calendar scheduling are not done here. Each due
step is handed to an injected ActionSink as a DispatchRequest; the sink
either accepts it or raises. Transport errors from the sink are wrapped
in DispatchError and handled the same way.

RULES (non-negotiable):
- Steps of one escalation are sent strictly in order. A step is due when
  its effective time is at or before `now`.
- A failed step stays current and is marked failed. Later steps of that
  escalation wait until retry_step() or reschedule_step().
- One failing escalation never stops the rest of the batch.
- Escalations awaiting approval are never dispatched.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Optional, Protocol

from heatwatch.escalation.engine import (
    ActiveEscalation,
    EscalationStatus,
    StepStatus,
    complete_step,
    fail_step,
)
from heatwatch.records.models import naive_utc

logger = logging.getLogger(__name__)


@dataclass
class DispatchError(Exception):
    """Raised by a sink that could not deliver an action."""
    target: str
    reason: str
    retryable: bool = True

    def __str__(self) -> str:
        lines = [
            "═" * 60,
            "ESCALATION ACTION NOT DELIVERED",
            "═" * 60,
            f"Target          : {self.target}",
            f"Reason          : {self.reason}",
            f"Retryable       : {'yes' if self.retryable else 'no'}",
            "═" * 60,
        ]
        return "\n".join(lines)


@dataclass(frozen=True)
class DispatchRequest:
    escalation_id: str
    student_id: str
    step_index: int
    type: str
    target: str
    effective_at: datetime


class ActionSink(Protocol):
    def send(self, request: DispatchRequest) -> None:
        ...


class RecordingSink:
    """Sink that keeps every accepted request in memory."""

    def __init__(self) -> None:
        self.requests: list[DispatchRequest] = []

    def send(self, request: DispatchRequest) -> None:
        self.requests.append(request)


@dataclass
class DispatchReport:
    sent: list[DispatchRequest] = field(default_factory=list)
    failed: list[tuple[DispatchRequest, DispatchError]] = field(default_factory=list)
    awaiting_approval: list[str] = field(default_factory=list)

    @property
    def sent_count(self) -> int:
        return len(self.sent)

    @property
    def failed_count(self) -> int:
        return len(self.failed)


def _is_due(effective_at: datetime, now: datetime) -> bool:
    return naive_utc(effective_at) <= naive_utc(now)


def _request_for(escalation: ActiveEscalation) -> DispatchRequest:
    step = escalation.next_step
    return DispatchRequest(
        escalation_id=escalation.escalation_id,
        student_id=escalation.student_id,
        step_index=step.index,
        type=step.action.type,
        target=step.action.target,
        effective_at=step.effective_at,
    )


def _send(sink: ActionSink, request: DispatchRequest) -> None:
    """Hand one request to the sink. Any other sink failure becomes a DispatchError."""
    try:
        sink.send(request)
    except DispatchError:
        raise
    except Exception as exc:
        raise DispatchError(target=request.target, reason=f"{type(exc).__name__}: {exc}") from exc


def dispatch_escalation(
    escalation: ActiveEscalation,
    sink: ActionSink,
    now: datetime,
    report: DispatchReport,
) -> None:
    """Send every due step of one escalation, stopping at the first failure."""
    while escalation.status is EscalationStatus.IN_PROGRESS:
        step = escalation.next_step
        if step is None or step.status is StepStatus.FAILED:
            return
        if not _is_due(step.effective_at, now):
            return
        request = _request_for(escalation)
        step.attempts += 1
        try:
            _send(sink, request)
        except DispatchError as exc:
            fail_step(escalation, exc.reason)
            report.failed.append((request, exc))
            logger.warning(
                "[dispatch] %s step %d (%s %s) failed on attempt %d: %s",
                escalation.escalation_id, step.index, request.type,
                request.target, step.attempts, exc.reason,
            )
            return
        complete_step(escalation, now)
        report.sent.append(request)
        logger.info(
            "[dispatch] %s step %d: %s → %s",
            escalation.escalation_id, step.index, request.type, request.target,
        )


def dispatch_due(
    escalations: Iterable[ActiveEscalation],
    sink: ActionSink,
    now: Optional[datetime] = None,
) -> DispatchReport:
    now = now or datetime.now()
    report = DispatchReport()
    for escalation in escalations:
        if escalation.awaiting_approval:
            report.awaiting_approval.append(escalation.escalation_id)
            continue
        dispatch_escalation(escalation, sink, now, report)
    if report.failed:
        logger.warning(
            "[dispatch] %d action(s) sent, %d failed",
            report.sent_count, report.failed_count,
        )
    return report

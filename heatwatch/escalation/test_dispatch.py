"""
Dispatch Test Suite

Steps go out in order, only when due, and a failing sink never stops the batch.
"""

from datetime import datetime, timedelta

from heatwatch.escalation.dispatch import (
    DispatchError,
    RecordingSink,
    dispatch_due,
)
from heatwatch.escalation.engine import (
    EscalationStatus,
    StepStatus,
    approve,
    instantiate,
    reschedule_step,
    retry_step,
)
from heatwatch.escalation.rules import COND_INCIDENTS_WITHIN, parse_rule

NOW = datetime(2024, 10, 7, 9, 0)


def make_rule(auto_execute=True, rule_id="cluster", first_target="admin"):
    return parse_rule({
        "id": rule_id,
        "name": "Incident Cluster",
        "auto_execute": auto_execute,
        "conditions": [{"type": COND_INCIDENTS_WITHIN, "count": 3, "days": 7}],
        "actions": [
            {"type": "notify", "target": first_target, "delay_minutes": 0},
            {"type": "schedule", "target": "counseling", "delay_minutes": 60},
            {"type": "notify", "target": "parent", "delay_minutes": 60},
        ],
    })


class UnreachableSink(RecordingSink):
    """Raises a transport error for the listed students."""

    def __init__(self, *student_ids):
        super().__init__()
        self.student_ids = set(student_ids)

    def send(self, request):
        if request.student_id in self.student_ids:
            raise ConnectionError("smtp down")
        super().send(request)


class FailingSink(RecordingSink):
    """Rejects every request for the listed targets."""

    def __init__(self, *targets):
        super().__init__()
        self.targets = set(targets)

    def send(self, request):
        if request.target in self.targets:
            raise DispatchError(target=request.target, reason=f"{request.target} unreachable")
        super().send(request)


# ---------------------------------------------------------------------------
# RULE: Only due steps are sent, in order
# ---------------------------------------------------------------------------

class TestDueSteps:
    def test_immediate_step_only(self):
        esc = instantiate(make_rule(), "S1", NOW)
        sink = RecordingSink()
        report = dispatch_due([esc], sink, NOW)
        assert [r.target for r in sink.requests] == ["admin"]
        assert report.sent_count == 1
        assert esc.current_step == 1
        assert esc.status is EscalationStatus.IN_PROGRESS

    def test_later_steps_when_due(self):
        esc = instantiate(make_rule(), "S1", NOW)
        sink = RecordingSink()
        dispatch_due([esc], sink, NOW)
        dispatch_due([esc], sink, NOW + timedelta(minutes=59))
        assert len(sink.requests) == 1
        dispatch_due([esc], sink, NOW + timedelta(minutes=60))
        assert [r.step_index for r in sink.requests] == [0, 1, 2]
        assert esc.status is EscalationStatus.COMPLETED

    def test_request_fields(self):
        esc = instantiate(make_rule(), "S1", NOW)
        sink = RecordingSink()
        dispatch_due([esc], sink, NOW)
        request = sink.requests[0]
        assert request.escalation_id == esc.escalation_id
        assert request.student_id == "S1"
        assert request.type == "notify"
        assert request.effective_at == NOW

    def test_attempts_counted(self):
        esc = instantiate(make_rule(), "S1", NOW)
        dispatch_due([esc], RecordingSink(), NOW)
        assert esc.steps[0].attempts == 1
        assert esc.steps[1].attempts == 0


# ---------------------------------------------------------------------------
# RULE: Approval gate
# ---------------------------------------------------------------------------

class TestApprovalGate:
    def test_pending_not_dispatched(self):
        esc = instantiate(make_rule(auto_execute=False), "S1", NOW)
        sink = RecordingSink()
        report = dispatch_due([esc], sink, NOW)
        assert sink.requests == []
        assert report.awaiting_approval == [esc.escalation_id]

    def test_dispatched_after_approval(self):
        esc = approve(instantiate(make_rule(auto_execute=False), "S1", NOW))
        sink = RecordingSink()
        dispatch_due([esc], sink, NOW)
        assert len(sink.requests) == 1


# ---------------------------------------------------------------------------
# RULE: Failures block only their own escalation
# ---------------------------------------------------------------------------

class TestFailures:
    def test_failed_step_stays_current(self):
        esc = instantiate(make_rule(), "S1", NOW)
        report = dispatch_due([esc], FailingSink("admin"), NOW)
        assert report.failed_count == 1
        assert esc.status is EscalationStatus.IN_PROGRESS
        assert esc.current_step == 0
        assert esc.steps[0].status is StepStatus.FAILED
        assert esc.steps[0].last_error == "admin unreachable"

    def test_failed_step_blocks_later_steps(self):
        esc = instantiate(make_rule(), "S1", NOW)
        sink = FailingSink("admin")
        dispatch_due([esc], sink, NOW)
        dispatch_due([esc], sink, NOW + timedelta(hours=2))
        assert sink.requests == []
        assert esc.steps[0].attempts == 1

    def test_batch_continues_past_failure(self):
        broken = instantiate(make_rule(), "S1", NOW)
        healthy = instantiate(make_rule(rule_id="other", first_target="counselor"), "S2", NOW)
        sink = FailingSink("admin")
        report = dispatch_due([broken, healthy], sink, NOW + timedelta(minutes=60))
        assert report.failed_count == 1
        assert report.failed[0][0].student_id == "S1"
        assert [r.target for r in report.sent] == ["counselor", "counseling", "parent"]
        assert healthy.status is EscalationStatus.COMPLETED
        assert broken.current_step == 0

    def test_transport_error_marks_step_failed(self):
        esc = instantiate(make_rule(), "S1", NOW)
        report = dispatch_due([esc], UnreachableSink("S1"), NOW)
        assert report.failed_count == 1
        assert isinstance(report.failed[0][1], DispatchError)
        assert esc.steps[0].status is StepStatus.FAILED
        assert esc.steps[0].last_error == "ConnectionError: smtp down"
        assert esc.steps[0].attempts == 1

    def test_transport_error_does_not_stop_batch(self):
        first = instantiate(make_rule(), "S1", NOW)
        second = instantiate(make_rule(), "S2", NOW)
        sink = UnreachableSink("S1")
        report = dispatch_due([first, second], sink, NOW)
        assert [r.student_id for r in sink.requests] == ["S2"]
        assert report.sent_count == 1
        assert first.current_step == 0

    def test_retry_then_success(self):
        esc = instantiate(make_rule(), "S1", NOW)
        dispatch_due([esc], FailingSink("admin"), NOW)
        retry_step(esc)
        sink = RecordingSink()
        dispatch_due([esc], sink, NOW + timedelta(minutes=5))
        assert [r.target for r in sink.requests] == ["admin"]
        assert esc.steps[0].attempts == 2
        assert esc.steps[0].status is StepStatus.COMPLETED

    def test_reschedule_then_success(self):
        esc = instantiate(make_rule(), "S1", NOW)
        dispatch_due([esc], FailingSink("admin"), NOW)
        reschedule_step(esc, NOW + timedelta(minutes=90))
        sink = RecordingSink()
        dispatch_due([esc], sink, NOW + timedelta(minutes=30))
        assert sink.requests == []
        dispatch_due([esc], sink, NOW + timedelta(minutes=90))
        assert [r.target for r in sink.requests] == ["admin", "counseling", "parent"]

    def test_error_message_is_boxed(self):
        text = str(DispatchError(target="parent", reason="no phone number", retryable=False))
        assert "ESCALATION ACTION NOT DELIVERED" in text
        assert "Retryable       : no" in text

"""
Heatwatch Batch Pipeline

Campus-wide passes over the repository:

  recompute_all   refresh every student's cached score, in parallel
  run_escalations evaluate every student against the rule set, store new
                  escalations and optionally dispatch due steps

One student's failure never aborts a batch. Failures are collected in the
BatchReport and logged.
"""

from __future__ import annotations

import concurrent.futures
import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Optional

from heatwatch.escalation.dispatch import ActionSink, DispatchReport, dispatch_due
from heatwatch.escalation.engine import ActiveEscalation, EvaluationError, evaluate
from heatwatch.escalation.rules import EscalationRule
from heatwatch.records.recording import refresh_student
from heatwatch.records.repository import BehaviorRepository
from heatwatch.scoring.classifier import RiskTier, classify
from heatwatch.scoring.heat_score import DEFAULT_POLICY, ScoringPolicy

logger = logging.getLogger(__name__)

DEFAULT_MAX_WORKERS: int = 4


@dataclass
class BatchReport:
    operation: str
    started_at: datetime
    students_total: int = 0
    succeeded: int = 0
    failures: list[tuple[str, str]] = field(default_factory=list)
    tier_counts: dict[RiskTier, int] = field(default_factory=dict)
    escalations_created: list[ActiveEscalation] = field(default_factory=list)
    dispatch: Optional[DispatchReport] = None

    @property
    def failed(self) -> int:
        return len(self.failures)

    def as_text(self) -> str:
        lines = [
            "═" * 60,
            f"HEATWATCH BATCH REPORT: {self.operation.upper()}",
            "═" * 60,
            f"Started         : {self.started_at.isoformat(timespec='seconds')}",
            "",
            "STUDENTS",
            f"  Total         : {self.students_total}",
            f"  Succeeded     : {self.succeeded}",
            f"  Failed        : {self.failed}",
        ]
        if self.tier_counts:
            lines += ["", "TIER DISTRIBUTION"]
            for tier in RiskTier:
                lines.append(f"  {tier.label:<13} : {self.tier_counts.get(tier, 0)}")
        if self.operation == "escalations":
            lines += ["", "ESCALATIONS CREATED"]
            if not self.escalations_created:
                lines.append("  None")
            for esc in self.escalations_created:
                lines.append(f"  {esc.student_id}: {esc.rule_name} ({esc.status.value})")
        if self.dispatch is not None:
            lines += [
                "",
                "DISPATCH",
                f"  Sent          : {self.dispatch.sent_count}",
                f"  Failed        : {self.dispatch.failed_count}",
                f"  Awaiting OK   : {len(self.dispatch.awaiting_approval)}",
            ]
        if self.failures:
            lines += ["", "FAILURES (all surfaced)"]
            for student_id, error in self.failures:
                lines.append(f"  ⚑ {student_id}: {error}")
        lines.append("═" * 60)
        return "\n".join(lines)


def recompute_all(
    repo: BehaviorRepository,
    as_of: Optional[datetime] = None,
    max_workers: int = DEFAULT_MAX_WORKERS,
    policy: ScoringPolicy = DEFAULT_POLICY,
) -> BatchReport:
    """Refresh every student's cached score. Students run in parallel."""
    as_of = as_of or datetime.now()
    students = repo.list_students()
    report = BatchReport(operation="recompute", started_at=as_of, students_total=len(students))
    tiers: Counter = Counter()

    with concurrent.futures.ThreadPoolExecutor(max_workers=max_workers) as executor:
        future_to_student = {
            executor.submit(refresh_student, repo, s.student_id, as_of, policy): s.student_id
            for s in students
        }
        for future in concurrent.futures.as_completed(future_to_student):
            student_id = future_to_student[future]
            try:
                student = future.result()
            except (KeyError, ValueError, TypeError) as e:
                report.failures.append((student_id, str(e)))
                logger.error("[batch] recompute failed for '%s': %s", student_id, e)
                continue
            report.succeeded += 1
            tiers[classify(student.behavior_score)] += 1

    report.tier_counts = dict(tiers)
    logger.info(
        "[batch] recompute: %d/%d students refreshed, %d failed",
        report.succeeded, report.students_total, report.failed,
    )
    return report


def run_escalations(
    repo: BehaviorRepository,
    rules: Iterable[EscalationRule],
    now: Optional[datetime] = None,
    sink: Optional[ActionSink] = None,
    policy: ScoringPolicy = DEFAULT_POLICY,
) -> BatchReport:
    """
    Evaluate every student and store the escalations that trigger. When a
    sink is given, every due step of every open escalation is dispatched.
    """
    now = now or datetime.now()
    rules = list(rules)
    students = repo.list_students()
    report = BatchReport(operation="escalations", started_at=now, students_total=len(students))

    for student in students:
        try:
            created = evaluate(
                student,
                repo.records_for(student.student_id),
                rules,
                existing=repo.escalations_for(student.student_id),
                now=now,
                policy=policy,
            )
        except EvaluationError as e:
            report.failures.append((student.student_id or "<unknown>", e.reason))
            logger.warning("[batch] %s", e)
            continue
        for escalation in created:
            repo.save_escalation(escalation)
        report.escalations_created.extend(created)
        report.succeeded += 1

    if sink is not None:
        open_escalations = [e for e in repo.all_escalations() if e.is_open]
        report.dispatch = dispatch_due(open_escalations, sink, now)

    logger.info(
        "[batch] escalations: %d students evaluated, %d escalations created, %d skipped",
        report.succeeded, len(report.escalations_created), report.failed,
    )
    return report

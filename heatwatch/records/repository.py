"""
Data access layer for students, behavior records, escalations and counseling alerts.

The engine never talks to storage directly. Callers inject a
BehaviorRepository; InMemoryBehaviorRepository backs the CLI, the dashboard
and the tests.

Example:
    repo = InMemoryBehaviorRepository.from_ingestion(run_ingestion("records.csv"))
    with repo.student_lock("S001"):
        student = repo.get_student("S001")
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from typing import Iterable, Optional

from heatwatch.escalation.engine import ActiveEscalation
from heatwatch.records.misdemeanors import MisdemeanorCatalog
from heatwatch.records.models import BehaviorRecord, CounselingAlert, Misdemeanor, Student


class BehaviorRepository(ABC):
    """Storage boundary. Implementations must be safe to call from threads."""

    # ==================== STUDENTS ====================

    @abstractmethod
    def get_student(self, student_id: str) -> Optional[Student]:
        ...

    @abstractmethod
    def list_students(self) -> list[Student]:
        ...

    @abstractmethod
    def save_student(self, student: Student) -> None:
        ...

    @abstractmethod
    def student_lock(self, student_id: str) -> threading.Lock:
        """Lock serializing writes to one student's cached score."""

    # ==================== RECORDS ====================

    @abstractmethod
    def get_record(self, record_id: str) -> Optional[BehaviorRecord]:
        ...

    @abstractmethod
    def records_for(self, student_id: str, include_voided: bool = False) -> list[BehaviorRecord]:
        ...

    @abstractmethod
    def all_records(self, include_voided: bool = False) -> list[BehaviorRecord]:
        ...

    @abstractmethod
    def add_record(self, record: BehaviorRecord) -> None:
        ...

    @abstractmethod
    def replace_record(self, record: BehaviorRecord) -> None:
        """Store a new version of an existing record (status changes)."""

    # ==================== CATALOG ====================

    @abstractmethod
    def catalog(self) -> MisdemeanorCatalog:
        ...

    # ==================== ESCALATIONS ====================

    @abstractmethod
    def get_escalation(self, escalation_id: str) -> Optional[ActiveEscalation]:
        ...

    @abstractmethod
    def escalations_for(self, student_id: str) -> list[ActiveEscalation]:
        ...

    @abstractmethod
    def all_escalations(self) -> list[ActiveEscalation]:
        ...

    @abstractmethod
    def save_escalation(self, escalation: ActiveEscalation) -> None:
        ...

    # ==================== COUNSELING ALERTS ====================

    @abstractmethod
    def get_alert(self, alert_id: str) -> Optional[CounselingAlert]:
        ...

    @abstractmethod
    def alerts_for(self, student_id: str, include_resolved: bool = False) -> list[CounselingAlert]:
        ...

    @abstractmethod
    def all_alerts(self, include_resolved: bool = False) -> list[CounselingAlert]:
        ...

    @abstractmethod
    def save_alert(self, alert: CounselingAlert) -> None:
        ...


class InMemoryBehaviorRepository(BehaviorRepository):
    """Dict-backed repository. Insertion order is preserved everywhere."""

    def __init__(
        self,
        students: Iterable[Student] = (),
        records: Iterable[BehaviorRecord] = (),
        misdemeanors: Iterable[Misdemeanor] = (),
    ):
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}
        self._students: dict[str, Student] = {s.student_id: s for s in students}
        self._records: dict[str, BehaviorRecord] = {}
        for record in records:
            self.add_record(record)
        self._catalog = MisdemeanorCatalog(misdemeanors)
        self._escalations: dict[str, ActiveEscalation] = {}
        self._alerts: dict[str, CounselingAlert] = {}

    @classmethod
    def from_ingestion(cls, result) -> "InMemoryBehaviorRepository":
        """Build a repository from an IngestionResult."""
        return cls(result.students, result.records, result.misdemeanors)

    # ==================== STUDENTS ====================

    def get_student(self, student_id: str) -> Optional[Student]:
        return self._students.get(student_id)

    def list_students(self) -> list[Student]:
        with self._guard:
            return list(self._students.values())

    def save_student(self, student: Student) -> None:
        with self._guard:
            self._students[student.student_id] = student

    def student_lock(self, student_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(student_id)
            if lock is None:
                lock = self._locks[student_id] = threading.Lock()
            return lock

    # ==================== RECORDS ====================

    def get_record(self, record_id: str) -> Optional[BehaviorRecord]:
        return self._records.get(record_id)

    def records_for(self, student_id: str, include_voided: bool = False) -> list[BehaviorRecord]:
        with self._guard:
            records = [r for r in self._records.values() if r.student_id == student_id]
        return records if include_voided else [r for r in records if not r.is_voided]

    def all_records(self, include_voided: bool = False) -> list[BehaviorRecord]:
        with self._guard:
            records = list(self._records.values())
        return records if include_voided else [r for r in records if not r.is_voided]

    def add_record(self, record: BehaviorRecord) -> None:
        with self._guard:
            if record.record_id in self._records:
                raise KeyError(f"record '{record.record_id}' already exists")
            self._records[record.record_id] = record

    def replace_record(self, record: BehaviorRecord) -> None:
        with self._guard:
            if record.record_id not in self._records:
                raise KeyError(f"record '{record.record_id}' not found")
            self._records[record.record_id] = record

    # ==================== CATALOG ====================

    def catalog(self) -> MisdemeanorCatalog:
        return self._catalog

    # ==================== ESCALATIONS ====================

    def get_escalation(self, escalation_id: str) -> Optional[ActiveEscalation]:
        return self._escalations.get(escalation_id)

    def escalations_for(self, student_id: str) -> list[ActiveEscalation]:
        with self._guard:
            return [e for e in self._escalations.values() if e.student_id == student_id]

    def all_escalations(self) -> list[ActiveEscalation]:
        with self._guard:
            return list(self._escalations.values())

    def save_escalation(self, escalation: ActiveEscalation) -> None:
        with self._guard:
            self._escalations[escalation.escalation_id] = escalation

    # ==================== COUNSELING ALERTS ====================

    def get_alert(self, alert_id: str) -> Optional[CounselingAlert]:
        return self._alerts.get(alert_id)

    def alerts_for(self, student_id: str, include_resolved: bool = False) -> list[CounselingAlert]:
        return [a for a in self.all_alerts(include_resolved) if a.student_id == student_id]

    def all_alerts(self, include_resolved: bool = False) -> list[CounselingAlert]:
        with self._guard:
            alerts = list(self._alerts.values())
        return alerts if include_resolved else [a for a in alerts if not a.is_resolved]

    def save_alert(self, alert: CounselingAlert) -> None:
        with self._guard:
            self._alerts[alert.alert_id] = alert

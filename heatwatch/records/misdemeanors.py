"""
Misdemeanor catalog and offense ordinals.

An incident's offense number is the count of prior non-voided incidents of
the same misdemeanor for the same student, plus one. The sanction text is
looked up by the ordinal key ("1st", "2nd", "3rd", "4th+").
"""

from __future__ import annotations

import logging
from typing import Iterable, Optional

from heatwatch.records.models import BehaviorRecord, Misdemeanor, chronological

logger = logging.getLogger(__name__)

OFFENSE_KEYS: tuple[str, ...] = ("1st", "2nd", "3rd", "4th+")


def offense_key(offense_number: int) -> str:
    if offense_number <= 1:
        return OFFENSE_KEYS[0]
    if offense_number == 2:
        return OFFENSE_KEYS[1]
    if offense_number == 3:
        return OFFENSE_KEYS[2]
    return OFFENSE_KEYS[3]


def sanction_for(misdemeanor: Optional[Misdemeanor], offense_number: int) -> str:
    """Sanction for the ordinal; falls back to the 1st-offense sanction."""
    if misdemeanor is None or not misdemeanor.sanctions:
        return ""
    sanctions = misdemeanor.sanctions
    return sanctions.get(offense_key(offense_number)) or sanctions.get(OFFENSE_KEYS[0]) or ""


def prior_offenses(
    records: Iterable[BehaviorRecord],
    student_id: str,
    misdemeanor_id: str,
) -> list[BehaviorRecord]:
    return [
        r for r in chronological(records)
        if r.is_incident
        and not r.is_voided
        and r.student_id == student_id
        and r.misdemeanor_id == misdemeanor_id
    ]


def next_offense_number(
    records: Iterable[BehaviorRecord],
    student_id: str,
    misdemeanor_id: str,
) -> int:
    return len(prior_offenses(records, student_id, misdemeanor_id)) + 1


def derive_offense_numbers(records: Iterable[BehaviorRecord]) -> dict[str, int]:
    """
    Ordinal for every non-voided incident in a history, keyed by record id.

    Incidents are counted per (student, offense group) in chronological order.
    Incidents with no misdemeanor id and no category are always ordinal 1.
    """
    counts: dict[tuple[str, str], int] = {}
    ordinals: dict[str, int] = {}
    for record in chronological(records):
        if not record.is_incident or record.is_voided:
            continue
        group = record.offense_group
        if group is None:
            ordinals[record.record_id] = 1
            continue
        key = (record.student_id, group)
        counts[key] = counts.get(key, 0) + 1
        ordinals[record.record_id] = counts[key]
    return ordinals


class MisdemeanorCatalog:
    """Read-only lookup over catalog entries. Inactive entries are hidden."""

    def __init__(self, entries: Iterable[Misdemeanor] = ()):
        self._entries: dict[str, Misdemeanor] = {}
        for entry in entries:
            if entry.misdemeanor_id in self._entries:
                logger.warning(
                    "[misdemeanors] duplicate catalog id '%s'; keeping first entry",
                    entry.misdemeanor_id,
                )
                continue
            self._entries[entry.misdemeanor_id] = entry

    def get(self, misdemeanor_id: Optional[str]) -> Optional[Misdemeanor]:
        if misdemeanor_id is None:
            return None
        entry = self._entries.get(misdemeanor_id)
        if entry is None or not entry.active:
            return None
        return entry

    def active(self) -> list[Misdemeanor]:
        return sorted(
            (m for m in self._entries.values() if m.active),
            key=lambda m: m.name,
        )

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, misdemeanor_id: str) -> bool:
        return self.get(misdemeanor_id) is not None

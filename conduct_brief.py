#!/usr/bin/env python3
"""
Campus Conduct Brief Generator
Heat-score based behavior brief for campus leadership
Deterministic: the same records and as-of time always give the same brief
"""

import hashlib
import logging
import sys
from datetime import datetime

import pandas as pd

from heatwatch.escalation.rules import DEFAULT_RULE_DEFINITIONS, PRIORITIES, load_rules
from heatwatch.pipeline.batch import recompute_all, run_escalations
from heatwatch.records.frames import records_frame
from heatwatch.records.ingestion import IngestionError, run_ingestion
from heatwatch.records.misdemeanors import offense_key
from heatwatch.records.models import active_records
from heatwatch.records.repository import InMemoryBehaviorRepository
from heatwatch.scoring.classifier import RiskTier, classify, tier_policy
from heatwatch.scoring.heat_score import (
    COUNSELING_WINDOW_DAYS,
    DEFAULT_POLICY,
    needs_counseling,
    recent_incident_count,
    score_breakdown,
)
from heatwatch.scoring.trend import period_trends

logger = logging.getLogger(__name__)

# ============================================================================
# CONFIGURATION
# ============================================================================

WATCH_LIST_SIZE = 10
HOTSPOT_COUNT = 3
REPEAT_PATTERN_MIN = 2
TREND_PERIOD_DAYS = 30

SECTION_RULE = "═" * 75

STUDENT_TABLE_COLUMNS = [
    "student_id",
    "name",
    "grade",
    "score",
    "tier",
    "incidents",
    "merits",
    "recent_incidents",
    "needs_counseling",
    "counseling_reason",
]


def _section(title):
    return f"{SECTION_RULE}\n{title}\n{SECTION_RULE}\n\n"


# ============================================================================
# STUDENT TABLE
# ============================================================================

def build_student_table(students, records, as_of, policy=DEFAULT_POLICY):
    """One row per student with score, tier and counseling status, highest score first"""

    by_student = {}
    for record in active_records(records):
        by_student.setdefault(record.student_id, []).append(record)

    rows = []
    for student in students:
        history = by_student.get(student.student_id, [])
        breakdown = score_breakdown(history, as_of, policy)
        derived = needs_counseling(breakdown.score, history, as_of)
        rows.append({
            "student_id": student.student_id,
            "name": student.name or student.student_id,
            "grade": student.grade or "",
            "score": breakdown.score,
            "tier": classify(breakdown.score).label,
            "incidents": breakdown.incident_count,
            "merits": breakdown.merit_count,
            "recent_incidents": recent_incident_count(history, as_of, COUNSELING_WINDOW_DAYS),
            "needs_counseling": derived or student.counseling_override,
            "counseling_reason": student.counseling_reason or ("Derived from score and recent incidents" if derived else ""),
        })

    table = pd.DataFrame(rows, columns=STUDENT_TABLE_COLUMNS)
    return table.sort_values(["score", "student_id"], ascending=[False, True]).reset_index(drop=True)


# ============================================================================
# STATISTICS CALCULATION
# ============================================================================

def calculate_brief_stats(table):
    """Tier counts and percentages for the campus"""

    total = len(table)
    tier_counts = table["tier"].value_counts()

    stats = {
        "total_students": total,
        "average_score": float(table["score"].mean()) if total > 0 else 0.0,
        "counseling_count": int(table["needs_counseling"].sum()) if total > 0 else 0,
    }
    for tier in RiskTier:
        count = int(tier_counts.get(tier.label, 0))
        stats[f"{tier.value}_count"] = count
        stats[f"{tier.value}_pct"] = (count / total * 100) if total > 0 else 0

    stats["elevated_pct"] = stats["warning_pct"] + stats["critical_pct"]
    stats["counseling_pct"] = (stats["counseling_count"] / total * 100) if total > 0 else 0
    return stats


# ============================================================================
# POSTURE DETERMINATION
# ============================================================================

def determine_posture(stats):
    """Campus posture from the share of students in elevated tiers"""

    if stats["critical_pct"] >= 10 or stats["counseling_pct"] >= 20:
        return "ESCALATE", "Student behavior requires immediate leadership attention."
    elif stats["elevated_pct"] >= 25:
        return "INTERVENE", "A significant share of students is in elevated heat tiers."
    elif stats["elevated_pct"] >= 10:
        return "CALIBRATE", "Elevated heat is emerging in a minority of students. Monitor closely."
    else:
        return "STABLE", "Student behavior is within expected parameters."


# ============================================================================
# REPORT GENERATION
# ============================================================================

def data_hash(records):
    """Short md5 over the non-voided records, independent of input order"""
    frame = records_frame(records).sort_values("record_id").reset_index(drop=True)
    return hashlib.md5(frame.to_csv(index=False).encode()).hexdigest()[:8]


def _escalation_sort_key(escalation):
    priority = PRIORITIES.index(escalation.priority) if escalation.priority in PRIORITIES else len(PRIORITIES)
    next_time = escalation.next_action_time or escalation.triggered_at
    return (priority, next_time, escalation.student_id)


def generate_conduct_brief(students, records, escalations=(), as_of=None,
                           campus_name="Campus", policy=DEFAULT_POLICY):
    """Generate the campus conduct brief as plain text"""

    as_of = as_of or datetime.now()
    students = list(students)
    records = list(records)
    table = build_student_table(students, records, as_of, policy)
    stats = calculate_brief_stats(table)
    posture, interpretation = determine_posture(stats)
    frame = records_frame(records)
    incidents = frame[frame["kind"] == "incident"]
    names = dict(zip(table["student_id"], table["name"]))

    # ========== SECTION 1: HEADER ==========
    report = "\n" + _section("CAMPUS CONDUCT BRIEF")
    report += f"Campus: {campus_name}\n"
    report += f"As Of: {as_of.strftime('%Y-%m-%d %H:%M')}\n"
    report += f"Students: {stats['total_students']}\n"
    report += f"Records: {len(incidents)} incidents, {int((frame['kind'] == 'merit').sum())} merits\n"
    report += f"Data Hash: {data_hash(records)}\n\n"

    # ========== SECTION 2: STATUS ==========
    report += _section("CAMPUS CONDUCT STATUS — AT A GLANCE")
    report += f"Decision Posture: {posture}\n"
    report += f"Leadership Interpretation: {interpretation}\n\n"

    # ========== SECTION 3: TIER DISTRIBUTION ==========
    report += _section("HEAT TIER DISTRIBUTION")
    for tier in RiskTier:
        report += f"  {tier.label}: {stats[tier.value + '_count']} ({stats[tier.value + '_pct']:.1f}%)\n"
    report += f"\nAverage Heat Score: {stats['average_score']:.2f}\n\n"

    # ========== SECTION 4: WATCH LIST ==========
    report += _section("WATCH LIST")
    elevated = table[table["tier"].isin([RiskTier.WARNING.label, RiskTier.CRITICAL.label])]
    if elevated.empty:
        report += "No students above the Good tier.\n"
    for _, row in elevated.head(WATCH_LIST_SIZE).iterrows():
        grade = f" (Grade {row['grade']})" if row["grade"] else ""
        report += (
            f"• {row['name']}{grade}: {row['score']:.2f} {row['tier']}, "
            f"{row['recent_incidents']} incidents in {COUNSELING_WINDOW_DAYS} days\n"
        )
    if len(elevated) > WATCH_LIST_SIZE:
        report += f"  ... and {len(elevated) - WATCH_LIST_SIZE} more\n"
    report += "\n"

    # ========== SECTION 5: COUNSELING LIST ==========
    report += _section("COUNSELING LIST")
    counseling = table[table["needs_counseling"].astype(bool)]
    if counseling.empty:
        report += "No students currently flagged for counseling.\n"
    for _, row in counseling.iterrows():
        report += f"• {row['name']}: {row['counseling_reason'] or 'Flagged'}\n"
    report += "\n"

    # ========== SECTION 6: REPEAT OFFENSE PATTERNS ==========
    report += _section("REPEAT OFFENSE PATTERNS")
    grouped = incidents.dropna(subset=["offense_group"])
    repeats = (
        grouped.groupby(["student_id", "offense_group"]).size().reset_index(name="count")
        if not grouped.empty else pd.DataFrame(columns=["student_id", "offense_group", "count"])
    )
    repeats = repeats[repeats["count"] >= REPEAT_PATTERN_MIN].sort_values(
        ["count", "student_id", "offense_group"], ascending=[False, True, True]
    )
    if repeats.empty:
        report += "No repeat offense patterns.\n"
    for _, row in repeats.iterrows():
        name = names.get(row["student_id"], row["student_id"])
        report += f"• {name}: {row['offense_group']} x{row['count']} (now at {offense_key(int(row['count']))} offense sanctions)\n"
    report += "\n"

    # ========== SECTION 7: LOCATION HOTSPOTS ==========
    report += _section("LOCATION HOTSPOTS")
    if incidents.empty:
        report += "No incidents recorded.\n"
    else:
        locations = incidents.groupby("location").size().reset_index(name="count")
        locations = locations.sort_values(["count", "location"], ascending=[False, True])
        for _, row in locations.head(HOTSPOT_COUNT).iterrows():
            report += f"{row['location']}: {row['count']} incidents ({row['count'] / len(incidents) * 100:.1f}% of total)\n"
    report += "\n"

    # ========== SECTION 8: TRENDS ==========
    report += _section(f"TRENDS (LAST {TREND_PERIOD_DAYS} DAYS VS PRIOR {TREND_PERIOD_DAYS})")
    trends = period_trends(records, as_of, TREND_PERIOD_DAYS)
    for label, key in (("Incidents", "incidents"), ("Merits", "merits"), ("Merit Points", "merit_points")):
        trend = trends[key]
        if trend.is_stable:
            report += f"{label}: stable\n"
        else:
            report += f"{label}: {trend.direction} {trend.percentage}%\n"
    report += "\n"

    # ========== SECTION 9: ACTIVE ESCALATIONS ==========
    report += _section("ACTIVE ESCALATIONS")
    open_escalations = sorted((e for e in escalations if e.is_open), key=_escalation_sort_key)
    if not open_escalations:
        report += "No open escalations.\n"
    for esc in open_escalations:
        name = names.get(esc.student_id, esc.student_id)
        report += f"• {name}: {esc.rule_name} [{esc.status.value}] step {esc.current_step}/{esc.total_steps}"
        if esc.awaiting_approval:
            report += ", awaiting approval"
        elif esc.next_action is not None:
            report += f", next: {esc.next_action.describe()} at {esc.next_action_time.strftime('%Y-%m-%d %H:%M')}"
        report += "\n"
    report += "\n"

    # ========== SECTION 10: BOTTOM LINE ==========
    report += _section("BOTTOM LINE FOR LEADERSHIP")
    if stats["total_students"] == 0:
        report += "No students in scope. Load behavior records to produce a brief.\n"
    elif posture == "ESCALATE":
        top = table.iloc[0]
        report += f"{stats['critical_count']} student(s) at Critical heat and {stats['counseling_count']} flagged for counseling. "
        report += f"Highest heat: {top['name']} at {top['score']:.2f}. "
        report += f"{tier_policy(RiskTier.CRITICAL).advisory}\n"
    elif posture == "INTERVENE":
        report += f"{stats['elevated_pct']:.1f}% of students in Warning or Critical tiers. "
        report += "Prioritize counseling capacity and follow-through on open escalations.\n"
    elif posture == "CALIBRATE":
        report += f"{stats['elevated_pct']:.1f}% of students in elevated tiers. "
        report += "Maintain current approach with increased monitoring of the watch list.\n"
    else:
        report += f"Average heat {stats['average_score']:.2f}. "
        report += "Continue current practices and recognition programs.\n"

    report += "\n" + SECTION_RULE + "\n"
    return report


# ============================================================================
# CLI
# ============================================================================

def main(argv=None):
    argv = sys.argv[1:] if argv is None else argv
    if len(argv) not in (1, 2):
        print("Usage: python conduct_brief.py <records_csv> [students_csv]")
        return 1

    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s %(message)s")

    try:
        result = run_ingestion(*argv)
    except IngestionError as e:
        print(str(e))
        return 2

    as_of = datetime.now()
    repo = InMemoryBehaviorRepository.from_ingestion(result)
    recompute_all(repo, as_of)
    rules, rule_errors = load_rules(DEFAULT_RULE_DEFINITIONS)
    for error in rule_errors:
        print(str(error))
    escalation_report = run_escalations(repo, rules, as_of)

    print(result.report.as_text())
    print(escalation_report.as_text())
    print(generate_conduct_brief(repo.list_students(), repo.all_records(), repo.all_escalations(), as_of))
    return 0


if __name__ == "__main__":
    sys.exit(main())

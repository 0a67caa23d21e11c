import os
import tempfile
from datetime import datetime
from io import BytesIO

import pandas as pd
import streamlit as st
from reportlab.lib import colors
from reportlab.lib.enums import TA_CENTER
from reportlab.lib.pagesizes import letter
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import inch
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from conduct_brief import (
    build_student_table,
    calculate_brief_stats,
    determine_posture,
    generate_conduct_brief,
)
from heatwatch.escalation.dispatch import RecordingSink, dispatch_due
from heatwatch.escalation.engine import InvalidTransitionError, approve, cancel, pause, resume
from heatwatch.escalation.rules import DEFAULT_RULE_DEFINITIONS, load_rules
from heatwatch.pipeline.batch import recompute_all, run_escalations
from heatwatch.records.ingestion import IngestionError, run_ingestion
from heatwatch.records.recording import resolve_alert
from heatwatch.records.repository import InMemoryBehaviorRepository
from heatwatch.scoring.classifier import TIER_POLICIES, heat_bar_percentage
from heatwatch.scoring.risk_assessment import assess_risk, rank_assessments
from heatwatch.scoring.trend import monthly_activity

# Page config
st.set_page_config(
    page_title="Heatwatch Behavior Dashboard",
    page_icon="🌡️",
    layout="wide",
    initial_sidebar_state="expanded"
)

# Custom CSS
st.markdown("""
<style>
    :root {
        --primary-color: #1e3a8a;
        --text-light: #6b7280;
        --border-color: #e5e7eb;
    }
    #MainMenu {visibility: hidden;}
    footer {visibility: hidden;}
    h1 {
        color: var(--primary-color);
        font-weight: 700;
        letter-spacing: -0.02em;
    }
    .subtitle {
        color: var(--text-light);
        font-size: 1.1rem;
        margin-bottom: 2rem;
        padding-bottom: 1.5rem;
        border-bottom: 2px solid var(--border-color);
    }
    .heat-bar {
        height: 0.6rem;
        border-radius: 0.3rem;
        background-color: var(--border-color);
    }
    [data-testid="stMetricValue"] {
        font-weight: 700;
        color: var(--primary-color);
    }
</style>
""", unsafe_allow_html=True)

POSTURE_COLORS = {
    'STABLE': '#d1fae5',
    'CALIBRATE': '#fef3c7',
    'INTERVENE': '#fed7aa',
    'ESCALATE': '#fecaca',
}


# PDF Generation
def generate_conduct_brief_pdf(brief_text, posture, campus_name):
    """Render the conduct brief text as a PDF"""
    buffer = BytesIO()
    doc = SimpleDocTemplate(buffer, pagesize=letter, topMargin=0.75*inch, bottomMargin=0.75*inch)
    story = []

    styles = getSampleStyleSheet()
    title_style = ParagraphStyle(
        'BriefTitle',
        parent=styles['Heading1'],
        fontSize=22,
        textColor=colors.HexColor('#1e3a8a'),
        spaceAfter=6,
        alignment=TA_CENTER
    )
    subtitle_style = ParagraphStyle(
        'BriefSubtitle',
        parent=styles['Normal'],
        fontSize=11,
        textColor=colors.HexColor('#6b7280'),
        spaceAfter=20,
        alignment=TA_CENTER
    )
    heading_style = ParagraphStyle(
        'BriefHeading',
        parent=styles['Heading2'],
        fontSize=13,
        textColor=colors.HexColor('#1e3a8a'),
        spaceBefore=12,
        spaceAfter=8
    )
    body_style = ParagraphStyle(
        'BriefBody',
        parent=styles['Normal'],
        fontSize=10,
        textColor=colors.HexColor('#1f2937'),
        spaceAfter=4,
        leading=14
    )

    story.append(Paragraph("Campus Conduct Brief", title_style))
    story.append(Paragraph(campus_name, subtitle_style))

    # Posture callout box
    posture_table = Table([[f"Decision Posture: {posture}"]], colWidths=[6.5*inch])
    posture_table.setStyle(TableStyle([
        ('BACKGROUND', (0, 0), (-1, -1), colors.HexColor(POSTURE_COLORS.get(posture, '#f3f4f6'))),
        ('TEXTCOLOR', (0, 0), (-1, -1), colors.HexColor('#1f2937')),
        ('ALIGN', (0, 0), (-1, -1), 'CENTER'),
        ('FONTNAME', (0, 0), (-1, -1), 'Helvetica-Bold'),
        ('FONTSIZE', (0, 0), (-1, -1), 14),
        ('TOPPADDING', (0, 0), (-1, -1), 12),
        ('BOTTOMPADDING', (0, 0), (-1, -1), 12),
    ]))
    story.append(posture_table)
    story.append(Spacer(1, 0.3*inch))

    for line in brief_text.split('\n'):
        line = line.strip()
        if not line or '═' in line:
            continue
        if line.isupper() and len(line) > 10:
            story.append(Paragraph(line, heading_style))
        elif line.startswith('Decision Posture:'):
            story.append(Paragraph(f"<b>{line}</b>", body_style))
        else:
            story.append(Paragraph(line.replace('&', '&amp;').replace('<', '&lt;'), body_style))

    doc.build(story)
    buffer.seek(0)
    return buffer


def _save_upload(uploaded):
    """Write an uploaded file to a temp path for the ingestion pipeline"""
    if uploaded is None:
        return None
    handle = tempfile.NamedTemporaryFile(suffix=".csv", delete=False)
    handle.write(uploaded.getvalue())
    handle.close()
    return handle.name


def _load(records_file, students_file, misdemeanors_file):
    paths = [_save_upload(f) for f in (records_file, students_file, misdemeanors_file)]
    try:
        result = run_ingestion(paths[0], paths[1], paths[2])
    finally:
        for path in paths:
            if path:
                os.unlink(path)
    return result


def _heat_bar(score, color):
    width = heat_bar_percentage(score)
    return (
        f'<div class="heat-bar"><div style="width:{width:.0f}%;height:100%;'
        f'border-radius:0.3rem;background-color:{color};"></div></div>'
    )


# Header
st.markdown("# 🌡️ Heatwatch Behavior Dashboard")
st.markdown('<div class="subtitle">Heat scores, risk tiers and escalations from your behavior records</div>', unsafe_allow_html=True)

rules, rule_errors = load_rules(DEFAULT_RULE_DEFINITIONS)

with st.sidebar:
    st.markdown("## Data")
    campus_name = st.text_input("Campus/School Name", value="Campus")
    records_file = st.file_uploader("Behavior records (CSV)", type=['csv'])
    students_file = st.file_uploader("Students (CSV, optional)", type=['csv'])
    misdemeanors_file = st.file_uploader("Misdemeanor catalog (CSV, optional)", type=['csv'])
    st.markdown("---")
    st.markdown("**Escalation rules**")
    for rule in rules:
        st.markdown(f"- {rule.name} ({'auto' if rule.auto_execute else 'approval'})")
    for error in rule_errors:
        st.error(str(error))

if records_file is None:
    st.info("👈 Upload a behavior records CSV to get started")
    st.stop()

if st.sidebar.button("🔄 Load and Score", type="primary", use_container_width=True):
    try:
        result = _load(records_file, students_file, misdemeanors_file)
    except IngestionError as e:
        st.error(f"```\n{e}\n```")
        st.stop()
    now = datetime.now()
    repo = InMemoryBehaviorRepository.from_ingestion(result)
    recompute_all(repo, now)
    run_escalations(repo, rules, now)
    st.session_state['repo'] = repo
    st.session_state['readiness'] = result.report.as_text()
    st.session_state['sink'] = RecordingSink()

repo = st.session_state.get('repo')
if repo is None:
    st.info("Press **Load and Score** to process the uploaded files")
    st.stop()

as_of = datetime.now()
students = repo.list_students()
records = repo.all_records()
table = build_student_table(students, records, as_of)
stats = calculate_brief_stats(table)
posture, interpretation = determine_posture(stats)

col1, col2, col3, col4 = st.columns(4)
col1.metric("Students", stats['total_students'])
col2.metric("Average Heat", f"{stats['average_score']:.2f}")
col3.metric("Critical", stats['critical_count'])
col4.metric("Needs Counseling", stats['counseling_count'])
st.markdown(f"**Decision Posture: {posture}** · {interpretation}")

with st.expander("📋 Data Readiness Report", expanded=False):
    st.code(st.session_state['readiness'])

tab1, tab2, tab3, tab4, tab5 = st.tabs(["Heat Tiers", "Trends", "Risk", "Escalations", "Brief"])

with tab1:
    policies = {p.label: p for p in TIER_POLICIES.values()}
    for _, row in table.head(25).iterrows():
        policy = policies[row['tier']]
        left, right = st.columns([2, 3])
        left.markdown(f"**{row['name']}** · {row['tier']} · {row['score']:.2f}")
        right.markdown(_heat_bar(row['score'], policy.color), unsafe_allow_html=True)
    st.dataframe(table, use_container_width=True)

with tab2:
    activity = monthly_activity(records, as_of)
    st.bar_chart(activity.set_index('month')[['incidents', 'merits']])

with tab3:
    by_student = {}
    for record in records:
        by_student.setdefault(record.student_id, []).append(record)
    assessments = rank_assessments(
        assess_risk(s.student_id, by_student.get(s.student_id, []), as_of) for s in students
    )
    st.dataframe(pd.DataFrame([
        {
            'student_id': a.student_id,
            'risk_score': a.risk_score,
            'risk_level': a.risk_level.label,
            'factors': '; '.join(a.factors),
            'predicted_outcome': a.predicted_outcome,
            'suggested_intervention': a.suggested_intervention,
            'timeline': a.timeline,
            'confidence': f"{a.confidence:.0%}",
        }
        for a in assessments
    ]), use_container_width=True)

with tab4:
    open_escalations = [e for e in repo.all_escalations() if e.is_open]
    if not open_escalations:
        st.info("No open escalations")
    for esc in open_escalations:
        with st.container(border=True):
            st.markdown(
                f"**{esc.student_id}** · {esc.rule_name} · `{esc.status.value}` · "
                f"step {esc.current_step}/{esc.total_steps} ({esc.progress}%)"
            )
            if esc.next_action is not None:
                st.caption(f"Next: {esc.next_action.describe()} at {esc.next_action_time:%Y-%m-%d %H:%M}")
            b1, b2, b3 = st.columns(3)
            try:
                if esc.awaiting_approval and b1.button("Approve", key=f"approve-{esc.escalation_id}"):
                    approve(esc)
                    st.rerun()
                if esc.status.value == 'paused' and b2.button("Resume", key=f"resume-{esc.escalation_id}"):
                    resume(esc)
                    st.rerun()
                elif esc.status.value == 'pending' and b2.button("Pause", key=f"pause-{esc.escalation_id}"):
                    pause(esc)
                    st.rerun()
                if b3.button("Cancel", key=f"cancel-{esc.escalation_id}"):
                    cancel(esc)
                    st.rerun()
            except InvalidTransitionError as e:
                st.warning(str(e))
    if st.button("📤 Dispatch due actions"):
        sink = st.session_state['sink']
        report = dispatch_due(open_escalations, sink, datetime.now())
        st.success(f"{report.sent_count} action(s) sent, {report.failed_count} failed")
    sent = st.session_state['sink'].requests
    if sent:
        st.dataframe(pd.DataFrame([r.__dict__ for r in sent]), use_container_width=True)

    st.markdown("### Counseling Alerts")
    alerts = repo.all_alerts()
    if not alerts:
        st.info("No unresolved counseling alerts")
    for alert in alerts:
        left, right = st.columns([4, 1])
        left.markdown(
            f"**{alert.student_id}** · {alert.alert_type.replace('_', ' ').upper()} · "
            f"`{alert.severity_level}` · {alert.description or '-'}"
        )
        if right.button("Resolve", key=f"resolve-{alert.alert_id}"):
            resolve_alert(repo, alert.alert_id, "dashboard")
            st.rerun()

with tab5:
    brief = generate_conduct_brief(students, records, repo.all_escalations(), as_of, campus_name)
    st.code(brief)
    pdf_buffer = generate_conduct_brief_pdf(brief, posture, campus_name)
    clean_campus = campus_name.replace(' ', '_').replace(',', '').replace('/', '-')
    st.download_button(
        label="📥 Download Conduct Brief (PDF)",
        data=pdf_buffer,
        file_name=f"conduct_brief_{clean_campus}_{as_of:%Y%m%d}.pdf",
        mime="application/pdf",
        use_container_width=True
    )

"""
Ward Handover Agent - Handover Formatters

Two plain-text renderings of the roster:

- generate_handover_summary: end-of-shift summary grouped by concern
  (open tasks, new admissions, open STAT tasks, pending consults)
- build_handover_text: shareable export grouped by section, suitable for
  pasting into a messaging app

Both are pure given ``now``.
"""

from __future__ import annotations

import re
from datetime import datetime
from typing import Iterable, List, Optional, Sequence, Union

from .config import Section, TaskSource, Urgency
from .models import PatientEntry, Task, parse_iso


UNKNOWN_ROOM = "?"
UNKNOWN_NAME = "לא ידוע"
NONE_LINE = "- אין"

EXPORT_MODES = ("pending", "all")

CONSULT_PATTERN = re.compile(r"ייעוץ|שיחה|שיחת|consult", re.IGNORECASE)

# datetime.weekday(): Monday == 0
HEBREW_WEEKDAYS = ("שני", "שלישי", "רביעי", "חמישי", "שישי", "שבת", "ראשון")

URGENCY_MARKS = {
    Urgency.STAT: "🔴",
    Urgency.URGENT: "🟠",
    Urgency.MORNING: "🟡",
    Urgency.ROUTINE: "⚪",
}


def format_patient_line(patient: PatientEntry) -> str:
    room = patient.room or UNKNOWN_ROOM
    name = patient.name or UNKNOWN_NAME
    age = f" ({patient.age})" if patient.age is not None else ""
    return f"{room} {name}{age}"


def _format_timestamp(now: datetime) -> str:
    return now.strftime("%d/%m/%Y %H:%M")


def _as_datetime(value: Union[str, datetime, None]) -> Optional[datetime]:
    if isinstance(value, datetime):
        # naive values are local time
        return value if value.tzinfo else value.astimezone()
    return parse_iso(value)


def _task_line(task: Task) -> str:
    suffix = " (manual)" if task.source == TaskSource.MANUAL else ""
    return f"  • [{task.urgency.upper()}] {task.text}{suffix}"


def _bullets(patients: Iterable[PatientEntry], detail: bool = False) -> List[str]:
    lines = []
    for p in patients:
        extra = f" | {p.diagnosis}" if detail and p.diagnosis else ""
        lines.append(f"- {format_patient_line(p)}{extra}")
    return lines or [NONE_LINE]


def generate_handover_summary(
    patients: Sequence[PatientEntry],
    session_started_at: Union[str, datetime, None],
    now: Optional[datetime] = None,
) -> str:
    """
    Build the end-of-shift handover summary.

    Args:
        patients: Roster to summarize
        session_started_at: Start of the shift; patients created at or after it
            are listed as new admissions
        now: Time printed in the header (default: current time)

    Returns:
        Multi-line summary text
    """
    now = now or datetime.now()
    session_start = _as_datetime(session_started_at)

    with_open = [(p, p.open_tasks) for p in patients if p.open_tasks]

    new_admissions = []
    if session_start is not None:
        for p in patients:
            created = parse_iso(p.created_at)
            if created is not None and created >= session_start:
                new_admissions.append(p)

    stat_open = [p for p, tasks in with_open if any(t.urgency == Urgency.STAT for t in tasks)]
    consults = [p for p, tasks in with_open if any(CONSULT_PATTERN.search(t.text) for t in tasks)]

    lines: List[str] = ["סיכום העברה (Handover)", f"נוצר: {_format_timestamp(now)}", ""]

    if not with_open:
        lines.append("אין משימות פתוחות.")
    else:
        lines.append("מטופלים עם משימות פתוחות:")
        for p, tasks in with_open:
            lines.append(f"- {format_patient_line(p)}")
            lines.extend(_task_line(t) for t in tasks)

    lines += ["", "חדשים במשמרת:", *_bullets(new_admissions, detail=True)]
    lines += ["", "דחופים (STAT פתוח):", *_bullets(stat_open)]
    lines += ["", "ייעוצים/שיחות פתוחים:", *_bullets(consults)]

    return "\n".join(lines)


def _export_header(now: datetime) -> str:
    weekday = HEBREW_WEEKDAYS[now.weekday()]
    return f"🏥 *מסירת משמרת - יום {weekday}, {now.strftime('%d/%m/%Y %H:%M')}*"


def _export_patient(patient: PatientEntry) -> List[str]:
    flags = f" [{' '.join(patient.flags)}]" if patient.flags else ""
    age = f" {patient.age}ש" if patient.age is not None else ""
    lines = [
        f"🔸 *{patient.room or UNKNOWN_ROOM} {patient.name or UNKNOWN_NAME}*{age}{flags}"
    ]

    if patient.diagnosis:
        lines.append(f"   📋 {patient.diagnosis}")
    if patient.status:
        lines.append(f"   💬 {' | '.join(patient.status)}")

    # stat/urgent first, list order kept within each group
    pressing = (Urgency.STAT, Urgency.URGENT)
    pending = [t for t in patient.open_tasks if t.urgency in pressing]
    pending += [t for t in patient.open_tasks if t.urgency not in pressing]
    for task in pending:
        lines.append(f"   {URGENCY_MARKS.get(task.urgency, '⚪')} {task.text}")

    done = [t for t in patient.all_tasks if t.done]
    if done:
        lines.append(f"   ✅ {len(done)} משימות הושלמו")

    lines.append("")
    return lines


def build_handover_text(
    patients: Sequence[PatientEntry],
    sections: Optional[Sequence[str]] = None,
    mode: str = "pending",
    now: Optional[datetime] = None,
) -> str:
    """
    Build the shareable handover export.

    Args:
        patients: Roster to export
        sections: Sections to include (default: all four)
        mode: "pending" keeps only patients with an open task, "all" keeps everyone
        now: Time printed in the header (default: current time)

    Returns:
        Multi-line export text
    """
    now = now or datetime.now()
    selected = [s for s in Section.ALL if sections is None or s in sections]
    if mode == "pending":
        patients = [p for p in patients if p.open_tasks]

    lines: List[str] = [_export_header(now), ""]
    patient_count = total_tasks = done_tasks = 0

    for section in selected:
        section_patients = [p for p in patients if p.section == section]
        if not section_patients:
            continue

        lines.append(f"*── {Section.get_label(section)} ({len(section_patients)} חולים) ──*")
        for patient in section_patients:
            patient_count += 1
            total_tasks += len(patient.all_tasks)
            done_tasks += sum(1 for t in patient.all_tasks if t.done)
            lines.extend(_export_patient(patient))

    lines.append(f"*📊 סיכום: {patient_count} חולים | {done_tasks}/{total_tasks} משימות הושלמו*")
    return "\n".join(lines)

"""
Ward Handover Agent - Roster Actions

Direct user edits on the roster: import a scan, toggle / add / delete tasks,
edit patient fields, add / remove status notes, delete a patient, clear all.

Every function takes the current roster and returns a new list; the input
list and the entries in it are left untouched. Unknown patient or task ids
leave the roster as it was.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence

from .config import settings, Section, TaskSource, Urgency
from .merge import merge_scan
from .models import PatientEntry, Task, coerce_age, new_id, utc_now_iso
from .text_parser import get_parser


EDITABLE_FIELDS = ("name", "room", "age", "diagnosis", "flags", "status", "section")


def find_patient(roster: Sequence[PatientEntry], patient_id: str) -> Optional[PatientEntry]:
    for patient in roster:
        if patient.id == patient_id:
            return patient
    return None


def find_task(patient: PatientEntry, task_id: str) -> Optional[Task]:
    for task in patient.all_tasks:
        if task.id == task_id:
            return task
    return None


def filter_section(roster: Sequence[PatientEntry], section: str) -> List[PatientEntry]:
    return [p for p in roster if p.section == section]


def _update_patient(
    roster: Sequence[PatientEntry],
    patient_id: str,
    update: Callable[[PatientEntry], PatientEntry],
) -> List[PatientEntry]:
    return [update(p) if p.id == patient_id else p for p in roster]


def import_text(
    roster: Sequence[PatientEntry],
    text: str,
    now: Optional[datetime] = None,
) -> List[PatientEntry]:
    """Parse handover text and merge it into the roster."""
    parsed = get_parser().parse(text, now=now)
    return merge_scan(roster, parsed, now=now)


def toggle_task(
    roster: Sequence[PatientEntry],
    patient_id: str,
    task_id: str,
    now: Optional[datetime] = None,
) -> List[PatientEntry]:
    """Flip completion of a task in either task list of a patient."""

    def _toggle(tasks: List[Task]) -> List[Task]:
        return [
            (t.mark_open() if t.done else t.mark_done(now)) if t.id == task_id else t
            for t in tasks
        ]

    return _update_patient(
        roster,
        patient_id,
        lambda p: replace(p, tasks=_toggle(p.tasks), generated_tasks=_toggle(p.generated_tasks)),
    )


def add_task(
    roster: Sequence[PatientEntry],
    patient_id: str,
    text: str,
    urgency: str = Urgency.ROUTINE,
) -> List[PatientEntry]:
    """Append a manual task; blank text is ignored."""
    if not text or not text.strip():
        return list(roster)

    task = Task(
        id=new_id("manual-"),
        text=text.strip(),
        urgency=urgency if Urgency.is_valid(urgency) else Urgency.ROUTINE,
        source=TaskSource.MANUAL,
        done=False,
        done_time=None,
        time=None,
        confidence=settings.manual_task_confidence,
    )
    return _update_patient(roster, patient_id, lambda p: replace(p, tasks=[*p.tasks, task]))


def delete_task(roster: Sequence[PatientEntry], patient_id: str, task_id: str) -> List[PatientEntry]:
    return _update_patient(
        roster,
        patient_id,
        lambda p: replace(
            p,
            tasks=[t for t in p.tasks if t.id != task_id],
            generated_tasks=[t for t in p.generated_tasks if t.id != task_id],
        ),
    )


def _clean_patch(patch: Dict[str, Any]) -> Dict[str, Any]:
    """Normalize an edit patch to PatientEntry field values."""
    changes: Dict[str, Any] = {}
    for key in EDITABLE_FIELDS:
        if key not in patch:
            continue
        value = patch[key]

        if key in ("name", "room", "diagnosis"):
            text = value.strip() if isinstance(value, str) else ""
            changes[key] = text or None
        elif key == "age":
            changes[key] = coerce_age(value)
        elif key == "flags":
            if isinstance(value, str):
                value = value.split()
            flags = [str(f).strip().upper() for f in value or [] if str(f).strip()]
            changes[key] = list(dict.fromkeys(flags))
        elif key == "status":
            if isinstance(value, str):
                value = [value]
            changes[key] = [str(s).strip() for s in value or [] if str(s).strip()]
        elif key == "section" and Section.is_valid(value):
            changes[key] = value
    return changes


def edit_patient(
    roster: Sequence[PatientEntry],
    patient_id: str,
    patch: Dict[str, Any],
    now: Optional[datetime] = None,
) -> List[PatientEntry]:
    """
    Update editable fields of one patient.

    The id never changes. Blank strings clear a field, an implausible age
    becomes None and flags are upper-cased and de-duplicated.
    """
    changes = _clean_patch(patch)
    if not changes:
        return list(roster)
    return _update_patient(
        roster,
        patient_id,
        lambda p: replace(p, updated_at=utc_now_iso(now), **changes),
    )


def add_note(roster: Sequence[PatientEntry], patient_id: str, note: str) -> List[PatientEntry]:
    if not note or not note.strip():
        return list(roster)
    return _update_patient(
        roster, patient_id, lambda p: replace(p, status=[*p.status, note.strip()])
    )


def remove_note(roster: Sequence[PatientEntry], patient_id: str, index: int) -> List[PatientEntry]:
    return _update_patient(
        roster,
        patient_id,
        lambda p: replace(p, status=[s for i, s in enumerate(p.status) if i != index]),
    )


def delete_patient(roster: Sequence[PatientEntry], patient_id: str) -> List[PatientEntry]:
    return [p for p in roster if p.id != patient_id]


def clear_all(roster: Sequence[PatientEntry]) -> List[PatientEntry]:
    return []

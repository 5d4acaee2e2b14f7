"""
Ward Handover Agent - Scan Merger

Reconciles a freshly parsed scan with the roster accumulated so far.

================================================================================
MERGE CONTRACT
================================================================================

    existing roster ──┐
                      ├──► merge_scan ──► new roster
    incoming scan ────┘

1. No duplicate patients: an incoming row matches an existing one by strict
   key (section + room + name), falling back to the loose key (room + name),
   which means the patient moved to another section.
2. A matched patient keeps its id and createdAt; every other field comes from
   the incoming row, scanCount goes up by one.
3. Task completion survives rescans: an incoming task whose trimmed text
   equals an old task's text in the same list inherits done / doneTime.
   Equality is exact. Rephrased tasks start over as open.
4. Manual tasks are never produced by parsing and are always carried forward,
   unless an incoming task now has the same text.
5. Patients missing from the scan stay in the roster untouched.
6. Each existing patient absorbs at most one incoming row. A row whose
   strict and loose candidates are all taken joins as a new patient, and
   existing rows sharing a key are all kept.

Output order: processed incoming rows in scan order, then the untouched
existing rows in their previous order.

================================================================================
"""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Set

from .config import TaskSource
from .models import PatientEntry, Task, utc_now_iso
from .patient_key import build_patient_key, build_patient_loose_key


logger = logging.getLogger(__name__)


def same_task_text(a: Task, b: Task) -> bool:
    return a.text.strip() == b.text.strip()


def carry_completion(old_task: Task, new_task: Task) -> Task:
    """New task fields with the old task's completion state."""
    return replace(new_task, done=old_task.done, done_time=old_task.done_time)


def reconcile_tasks(old_tasks: Sequence[Task], new_tasks: Sequence[Task]) -> List[Task]:
    """
    Carry completion state from old_tasks onto new_tasks by trimmed text.

    Extracted matches are preferred over manual ones so a manual task with the
    same text as an extracted one only donates its state when nothing else does.
    """
    by_text: Dict[str, Task] = {}
    for task in old_tasks:
        key = task.text.strip()
        current = by_text.get(key)
        if current is None or (
            current.source == TaskSource.MANUAL and task.source != TaskSource.MANUAL
        ):
            by_text[key] = task

    reconciled: List[Task] = []
    for task in new_tasks:
        match = by_text.get(task.text.strip())
        reconciled.append(carry_completion(match, task) if match else task)
    return reconciled


def merge_patient(old: PatientEntry, new: PatientEntry, now: Optional[datetime] = None) -> PatientEntry:
    """Merge one incoming row into its matched existing row."""
    merged_tasks = reconcile_tasks(old.tasks, new.tasks)

    manual_keep = [
        t for t in old.tasks
        if t.source == TaskSource.MANUAL
        and not any(same_task_text(t, nt) for nt in merged_tasks)
    ]

    merged_generated = reconcile_tasks(old.generated_tasks, new.generated_tasks)

    return replace(
        new,
        id=old.id,
        tasks=[*merged_tasks, *manual_keep],
        generated_tasks=merged_generated,
        created_at=old.created_at or new.created_at,
        updated_at=utc_now_iso(now),
        scan_count=(old.scan_count or 1) + 1,
    )


def merge_scan(
    existing: Sequence[PatientEntry],
    incoming: Sequence[PatientEntry],
    now: Optional[datetime] = None,
) -> List[PatientEntry]:
    """
    Merge a newly parsed scan into the existing roster.

    Args:
        existing: Current roster
        incoming: Entries from the List Parser
        now: Merge time used for updatedAt (default: current time)

    Returns:
        The new roster; neither input is modified
    """
    by_strict: Dict[str, List[int]] = {}
    by_loose: Dict[str, List[int]] = {}
    for index, patient in enumerate(existing):
        by_strict.setdefault(build_patient_key(patient.section, patient.room, patient.name), []).append(index)
        by_loose.setdefault(build_patient_loose_key(patient.room, patient.name), []).append(index)

    consumed: Set[int] = set()

    def claim(candidates: List[int]) -> Optional[int]:
        for index in candidates:
            if index not in consumed:
                consumed.add(index)
                return index
        return None

    merged: List[PatientEntry] = []
    matched = transferred = added = 0

    for new in incoming:
        index = claim(by_strict.get(build_patient_key(new.section, new.room, new.name), []))
        if index is None:
            index = claim(by_loose.get(build_patient_loose_key(new.room, new.name), []))
            if index is not None:
                transferred += 1
        else:
            matched += 1

        if index is None:
            merged.append(new)
            added += 1
            continue

        merged.append(merge_patient(existing[index], new, now))

    retained = [p for index, p in enumerate(existing) if index not in consumed]
    merged.extend(retained)

    logger.info(
        "Merged scan into roster",
        extra={
            "matched": matched,
            "transferred": transferred,
            "added": added,
            "retained": len(retained),
        }
    )
    return merged

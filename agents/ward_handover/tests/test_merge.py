"""
Ward Handover Agent - Scan Merger Tests

Tests for reconciling rescans with the roster: no duplicates, stable ids,
manual and completed tasks carried forward, transfers and retained patients.
Run with: pytest tests/test_merge.py -v
"""

import os
import sys
from datetime import datetime, timedelta, timezone

import pytest

# Add agents directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))

from ward_handover import roster as roster_actions
from ward_handover.config import Section, TaskSource, Urgency
from ward_handover.merge import merge_scan, reconcile_tasks
from ward_handover.models import PatientEntry, Task
from ward_handover.text_parser import ListParser


SCAN_TEXT = "צד א\n101 כהן יוסף 72 דלקת ריאות | בדיקת דם בבוקר\n102 לוי שרה 65 אי ספיקת לב"

T0 = datetime(2026, 10, 19, 7, 0, tzinfo=timezone.utc)
T1 = T0 + timedelta(hours=2)
T2 = T0 + timedelta(hours=4)


@pytest.fixture
def parser():
    return ListParser()


@pytest.fixture
def roster(parser):
    return merge_scan([], parser.parse(SCAN_TEXT, now=T0), now=T0)


def by_name(patients, name):
    matches = [p for p in patients if p.name == name]
    assert len(matches) == 1
    return matches[0]


class TestIdempotentRescan:
    """Rescanning identical text never duplicates patients."""

    def test_no_duplicates(self, parser, roster):
        merged = merge_scan(roster, parser.parse(SCAN_TEXT, now=T1), now=T1)
        assert len(merged) == 2

    def test_many_rescans(self, parser, roster):
        for _ in range(5):
            roster = merge_scan(roster, parser.parse(SCAN_TEXT, now=T1), now=T1)
        assert len(roster) == 2

    def test_inputs_not_modified(self, parser, roster):
        before = [p.to_dict() for p in roster]
        merge_scan(roster, parser.parse(SCAN_TEXT, now=T1), now=T1)
        assert [p.to_dict() for p in roster] == before


class TestIdentifierStability:
    """A matched patient keeps its id."""

    def test_stable_id(self, parser, roster):
        original = by_name(roster, "כהן יוסף").id
        for now in (T1, T2):
            roster = merge_scan(roster, parser.parse(SCAN_TEXT, now=now), now=now)
        assert by_name(roster, "כהן יוסף").id == original

    def test_richer_fields(self, parser, roster):
        created = by_name(roster, "כהן יוסף").created_at
        merged = merge_scan(roster, parser.parse(SCAN_TEXT, now=T1), now=T1)
        patient = by_name(merged, "כהן יוסף")

        assert patient.created_at == created
        assert patient.updated_at == "2026-10-19T09:00:00.000Z"
        assert patient.scan_count == 2

    def test_latest_scan_fields_win(self, parser, roster):
        rescan = "צד א\n101 כהן יוסף 73 דלקת ריאות DNR | יציב"
        merged = merge_scan(roster, parser.parse(rescan, now=T1), now=T1)
        patient = by_name(merged, "כהן יוסף")

        assert patient.age == 73
        assert patient.flags == ["DNR"]
        assert patient.status == ["יציב"]


class TestManualTaskPersistence:
    """Manual tasks survive rescans that do not mention them."""

    def test_manual_task_persists(self, parser, roster):
        pid = by_name(roster, "כהן יוסף").id
        roster = roster_actions.add_task(roster, pid, "להתקשר למשפחה", Urgency.URGENT)

        merged = merge_scan(roster, parser.parse(SCAN_TEXT, now=T1), now=T1)
        manual = [t for t in by_name(merged, "כהן יוסף").tasks if t.source == TaskSource.MANUAL]

        assert len(manual) == 1
        assert manual[0].text == "להתקשר למשפחה"
        assert manual[0].urgency == Urgency.URGENT

    def test_manual_task_after_extracted(self, parser, roster):
        pid = by_name(roster, "כהן יוסף").id
        roster = roster_actions.add_task(roster, pid, "להתקשר למשפחה")

        merged = merge_scan(roster, parser.parse(SCAN_TEXT, now=T1), now=T1)
        sources = [t.source for t in by_name(merged, "כהן יוסף").tasks]

        assert sources == [TaskSource.EXTRACTED, TaskSource.MANUAL]

    def test_manual_task_not_duplicated_when_now_extracted(self, parser, roster):
        pid = by_name(roster, "לוי שרה").id
        roster = roster_actions.add_task(roster, pid, "צילום חזה")
        manual_id = roster_actions.find_patient(roster, pid).tasks[-1].id
        roster = roster_actions.toggle_task(roster, pid, manual_id, now=T1)

        rescan = "צד א\n102 לוי שרה 65 אי ספיקת לב | צילום חזה"
        merged = merge_scan(roster, parser.parse(rescan, now=T2), now=T2)
        tasks = [t for t in by_name(merged, "לוי שרה").tasks if t.text == "צילום חזה"]

        assert len(tasks) == 1
        assert tasks[0].source == TaskSource.EXTRACTED
        assert tasks[0].done is True


class TestCompletionPersistence:
    """Completion state follows the task text across rescans."""

    def test_extracted_done_persists(self, parser, roster):
        patient = by_name(roster, "כהן יוסף")
        task = patient.tasks[0]
        roster = roster_actions.toggle_task(roster, patient.id, task.id, now=T1)
        done_time = roster_actions.find_task(by_name(roster, "כהן יוסף"), task.id).done_time

        merged = merge_scan(roster, parser.parse(SCAN_TEXT, now=T2), now=T2)
        merged_task = by_name(merged, "כהן יוסף").tasks[0]

        assert merged_task.text == task.text
        assert merged_task.done is True
        assert merged_task.done_time == done_time == "2026-10-19T09:00:00.000Z"

    def test_generated_done_persists(self, parser, roster):
        patient = by_name(roster, "לוי שרה")
        task = patient.generated_tasks[0]
        roster = roster_actions.toggle_task(roster, patient.id, task.id, now=T1)

        merged = merge_scan(roster, parser.parse(SCAN_TEXT, now=T2), now=T2)
        generated = by_name(merged, "לוי שרה").generated_tasks
        match = [t for t in generated if t.text == task.text]

        assert len(match) == 1
        assert match[0].done is True
        assert match[0].done_time == "2026-10-19T09:00:00.000Z"
        assert sum(1 for t in generated if t.done) == 1

    def test_rephrased_task_starts_open(self, parser, roster):
        patient = by_name(roster, "כהן יוסף")
        roster = roster_actions.toggle_task(roster, patient.id, patient.tasks[0].id, now=T1)

        rescan = "צד א\n101 כהן יוסף 72 דלקת ריאות | בדיקות דם בבוקר"
        merged = merge_scan(roster, parser.parse(rescan, now=T2), now=T2)
        task = by_name(merged, "כהן יוסף").tasks[0]

        assert task.done is False
        assert task.done_time is None

    def test_new_task_fields_win(self):
        old = [Task(id="a", text="צילום", urgency=Urgency.ROUTINE, done=True, done_time="2026-10-19T08:00:00.000Z")]
        new = [Task(id="b", text=" צילום ", urgency=Urgency.STAT)]

        merged = reconcile_tasks(old, new)

        assert merged[0].id == "b"
        assert merged[0].urgency == Urgency.STAT
        assert merged[0].done is True
        assert merged[0].done_time == "2026-10-19T08:00:00.000Z"


class TestTransfers:
    """Same room and name in another section is the same patient."""

    def test_cross_section_transfer(self, parser, roster):
        original = by_name(roster, "כהן יוסף").id
        rescan = "צד ב\n101 כהן יוסף 72 דלקת ריאות"

        merged = merge_scan(roster, parser.parse(rescan, now=T1), now=T1)
        patient = by_name(merged, "כהן יוסף")

        assert len(merged) == 2
        assert patient.id == original
        assert patient.section == Section.SIDE_B

    def test_transfer_keeps_manual_task(self, parser, roster):
        pid = by_name(roster, "כהן יוסף").id
        roster = roster_actions.add_task(roster, pid, "להתקשר למשפחה")

        merged = merge_scan(roster, parser.parse("שיקום\n101 כהן יוסף 72", now=T1), now=T1)
        patient = by_name(merged, "כהן יוסף")

        assert patient.section == Section.REHAB
        assert [t.text for t in patient.tasks if t.source == TaskSource.MANUAL] == ["להתקשר למשפחה"]


class TestRetainedPatients:
    """Patients missing from a scan stay in the roster."""

    def test_other_sections_retained(self, parser, roster):
        merged = merge_scan(roster, parser.parse("צד ב\n201 אברהם דוד 80", now=T1), now=T1)

        assert len(merged) == 3
        assert by_name(merged, "אברהם דוד").section == Section.SIDE_B
        for name in ("כהן יוסף", "לוי שרה"):
            assert by_name(merged, name) is next(p for p in roster if p.name == name)

    def test_order_incoming_then_retained(self, parser, roster):
        merged = merge_scan(roster, parser.parse("צד א\n102 לוי שרה 65\n201 אברהם דוד 80", now=T1), now=T1)
        assert [p.name for p in merged] == ["לוי שרה", "אברהם דוד", "כהן יוסף"]

    def test_empty_scan_keeps_roster(self, roster):
        assert merge_scan(roster, []) == list(roster)

    def test_empty_roster_adopts_scan(self, parser):
        incoming = parser.parse(SCAN_TEXT, now=T0)
        merged = merge_scan([], incoming)

        assert [p.id for p in merged] == [p.id for p in incoming]
        assert all(p.scan_count == 1 for p in merged)


class TestMergeWithoutRoom:
    """Keys work with missing fields."""

    def test_name_only_patient_matches(self, parser):
        first = merge_scan([], parser.parse("לוי שרה 65", now=T0))
        second = merge_scan(first, parser.parse("לוי שרה 66", now=T1), now=T1)

        assert len(second) == 1
        assert second[0].id == first[0].id
        assert second[0].age == 66

    def test_entries_from_dicts(self):
        old = PatientEntry.from_dict({"id": "pt-1", "section": "SIDE_A", "room": "5", "name": "כהן"})
        new = PatientEntry.from_dict({"id": "pt-2", "section": "SIDE_A", "room": "5", "name": "כהן"})

        merged = merge_scan([old], [new])
        assert [p.id for p in merged] == ["pt-1"]


class TestDuplicateKeys:
    """Rows sharing a key never collapse into one patient."""

    def test_duplicate_incoming_rows_stay_distinct(self, parser, roster):
        original = by_name(roster, "כהן יוסף").id
        rescan = "צד א\n101 כהן יוסף 72\n101 כהן יוסף 72"

        merged = merge_scan(roster, parser.parse(rescan, now=T1), now=T1)
        cohens = [p for p in merged if p.name == "כהן יוסף"]

        assert len(cohens) == 2
        assert cohens[0].id == original
        assert cohens[1].id != original
        assert cohens[1].scan_count == 1

    def test_duplicate_existing_rows_both_kept(self, parser):
        roster = merge_scan([], parser.parse("101 כהן יוסף 72\n101 כהן יוסף 72", now=T0), now=T0)
        ids = [p.id for p in roster]

        merged = merge_scan(roster, parser.parse("101 כהן יוסף 72", now=T1), now=T1)

        assert len(merged) == 2
        assert [p.id for p in merged] == ids
        assert [p.scan_count for p in merged] == [2, 1]

    def test_duplicates_rescanned_keep_both_ids(self, parser):
        text = "101 כהן יוסף 72\n101 כהן יוסף 72"
        roster = merge_scan([], parser.parse(text, now=T0), now=T0)

        merged = merge_scan(roster, parser.parse(text, now=T1), now=T1)

        assert [p.id for p in merged] == [p.id for p in roster]

    def test_claimed_strict_match_falls_back_to_loose(self, parser):
        roster = merge_scan([], parser.parse("צד א\n101 כהן יוסף 72\nצד ב\n101 כהן יוסף 72", now=T0), now=T0)

        merged = merge_scan(roster, parser.parse("צד א\n101 כהן יוסף 72\n101 כהן יוסף 72", now=T1), now=T1)

        assert [p.id for p in merged] == [p.id for p in roster]
        assert all(p.section == Section.SIDE_A for p in merged)

    def test_blank_key_rows_are_not_lost(self):
        existing = [
            PatientEntry.from_dict({"id": "pt-1", "tasks": [{"text": "בדיקת דם"}]}),
            PatientEntry.from_dict({"id": "pt-2", "tasks": [{"text": "צילום חזה"}]}),
        ]
        merged = merge_scan(existing, [PatientEntry.from_dict({"id": "pt-3", "tasks": [{"text": "בדיקת דם"}]})])

        assert [p.id for p in merged] == ["pt-1", "pt-2"]

"""
Ward Handover Agent - Roster Storage Tests

Run with: pytest tests/test_storage.py -v
"""

import json
import os
import sys
from datetime import datetime, timezone

# Add agents directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))

from ward_handover import roster as actions
from ward_handover.storage import RosterStore
from ward_handover.text_parser import ListParser


NOW = datetime(2026, 10, 19, 7, 0, tzinfo=timezone.utc)
SCAN_TEXT = "צד א\n101 כהן יוסף 72 דלקת ריאות NPO | בדיקת דם בבוקר\nשיקום\n301 לוי שרה 80"


def sample_roster():
    roster = ListParser().parse(SCAN_TEXT, now=NOW)
    pid = roster[0].id
    roster = actions.add_task(roster, pid, "להתקשר למשפחה")
    return actions.toggle_task(roster, pid, roster[0].tasks[0].id, now=NOW)


class TestRoundTrip:
    """Saved rosters load back unchanged."""

    def test_save_and_load(self, tmp_path):
        store = RosterStore(tmp_path / "roster.json")
        roster = sample_roster()

        assert store.save(roster) is True
        loaded = store.load()

        assert [p.to_dict() for p in loaded] == [p.to_dict() for p in roster]

    def test_file_shape(self, tmp_path):
        path = tmp_path / "roster.json"
        RosterStore(path).save(sample_roster())

        with open(path, encoding="utf-8") as f:
            raw = f.read()
        data = json.loads(raw)

        assert "כהן יוסף" in raw
        assert set(data[0]) >= {"id", "generatedTasks", "scannedAt", "createdAt", "updatedAt", "scanCount"}
        assert data[0]["tasks"][0]["done"] is True
        assert data[0]["tasks"][0]["doneTime"] == "2026-10-19T07:00:00.000Z"

    def test_creates_parent_directory(self, tmp_path):
        store = RosterStore(tmp_path / "nested" / "dir" / "roster.json")
        assert store.save([]) is True
        assert store.load() == []

    def test_no_temp_files_left(self, tmp_path):
        RosterStore(tmp_path / "roster.json").save(sample_roster())
        assert [p.name for p in tmp_path.iterdir()] == ["roster.json"]


class TestDegradedStorage:
    """Storage problems are logged, never raised."""

    def test_missing_file(self, tmp_path):
        assert RosterStore(tmp_path / "missing.json").load() == []

    def test_corrupt_file(self, tmp_path):
        path = tmp_path / "roster.json"
        path.write_text("{not json", encoding="utf-8")
        assert RosterStore(path).load() == []

    def test_not_a_list(self, tmp_path):
        path = tmp_path / "roster.json"
        path.write_text('{"id": "pt-1"}', encoding="utf-8")
        assert RosterStore(path).load() == []

    def test_malformed_items_skipped(self, tmp_path):
        path = tmp_path / "roster.json"
        path.write_text('[{"id": "pt-1", "name": "כהן", "age": "abc"}, 5, "x"]', encoding="utf-8")

        loaded = RosterStore(path).load()

        assert len(loaded) == 1
        assert loaded[0].id == "pt-1"
        assert loaded[0].age is None

    def test_non_list_task_fields(self, tmp_path):
        path = tmp_path / "roster.json"
        path.write_text(
            json.dumps([
                {"id": "pt-1", "name": "כהן", "tasks": 5, "generatedTasks": "x"},
                {"id": "pt-2", "name": "לוי", "tasks": [{"text": "בדיקת דם"}]},
            ]),
            encoding="utf-8",
        )

        loaded = RosterStore(path).load()

        assert [p.id for p in loaded] == ["pt-1", "pt-2"]
        assert loaded[0].tasks == []
        assert loaded[0].generated_tasks == []
        assert [t.text for t in loaded[1].tasks] == ["בדיקת דם"]

    def test_completion_state_made_consistent(self, tmp_path):
        path = tmp_path / "roster.json"
        path.write_text(
            json.dumps([{"id": "pt-1", "tasks": [
                {"text": "בדיקת דם", "done": True},
                {"text": "צילום חזה", "done": "false", "doneTime": "2026-10-19T07:00:00.000Z"},
            ]}]),
            encoding="utf-8",
        )

        first, second = RosterStore(path).load()[0].tasks

        assert first.done is True
        assert first.done_time
        assert second.done is False
        assert second.done_time is None

    def test_unwritable_path(self, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_text("", encoding="utf-8")
        assert RosterStore(blocker / "roster.json").save([]) is False


class TestInMemoryStore:
    """A store without a path keeps nothing."""

    def test_disabled(self):
        store = RosterStore(None)

        assert store.enabled is False
        assert store.save(sample_roster()) is True
        assert store.load() == []

"""
Ward Handover Agent - Rule Engine Tests

Tests for generated task checklists, including the guarantee that one
rule's trigger never satisfies another rule.
Run with: pytest tests/test_rules.py -v
"""

import os
import sys

import pytest

# Add agents directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))

from ward_handover.config import TaskSource, Urgency
from ward_handover.models import PatientEntry, Task
from ward_handover.rules import RULE_TABLE, RuleEngine, apply_rules, get_engine
from ward_handover.text_parser import ListParser


def make_entry(diagnosis=None, status=None, flags=None, tasks=None):
    return PatientEntry(
        id="pt-test",
        diagnosis=diagnosis,
        status=status or [],
        flags=flags or [],
        tasks=tasks or [],
    )


@pytest.fixture
def engine():
    return RuleEngine()


class TestRuleTable:
    """Tests for the static rule table."""

    def test_table_has_all_rules(self, engine):
        assert len(engine.rules) == len(RULE_TABLE) == 30

    def test_labels_are_unique(self):
        labels = [label for label, _, _ in RULE_TABLE]
        assert len(labels) == len(set(labels))

    def test_every_template_has_valid_urgency(self):
        for _, _, templates in RULE_TABLE:
            assert templates
            for _, urgency in templates:
                assert Urgency.is_valid(urgency)


class TestApply:
    """Tests for RuleEngine.apply."""

    def test_npo_flag_generates_tasks(self, engine):
        tasks = engine.apply(make_entry(flags=["NPO"]))

        assert len(tasks) == 3
        assert all(t.source == TaskSource.GENERATED for t in tasks)
        assert all(t.generated_from == "NPO" for t in tasks)
        assert all(t.confidence == 0.9 for t in tasks)
        assert all(not t.done and t.done_time is None for t in tasks)

    def test_task_ids_are_fresh_each_call(self, engine):
        entry = make_entry(flags=["NPO"])
        first = {t.id for t in engine.apply(entry)}
        second = {t.id for t in engine.apply(entry)}

        assert first.isdisjoint(second)
        assert all(i.startswith("gen-") for i in first)

    def test_same_text_same_tasks(self, engine):
        entry = make_entry(diagnosis="דלקת ריאות", status=["משתחרר מחר"])
        first = [(t.text, t.urgency, t.generated_from) for t in engine.apply(entry)]
        second = [(t.text, t.urgency, t.generated_from) for t in engine.apply(entry)]
        assert first == second

    def test_multiple_rules_fire_in_table_order(self, engine):
        tasks = engine.apply(make_entry(flags=["NPO"], status=["משתחרר היום"]))
        labels = list(dict.fromkeys(t.generated_from for t in tasks))

        assert labels == ["משתחרר היום", "NPO"]

    def test_explicit_task_text_is_scanned(self, engine):
        entry = make_entry(tasks=[Task(id="t1", text="BS בערב")])
        labels = {t.generated_from for t in engine.apply(entry)}
        assert labels == {"BS (Bladder Scan)"}

    def test_no_trigger_no_tasks(self, engine):
        assert engine.apply(make_entry(diagnosis="שבר באצבע")) == []
        assert engine.apply(make_entry()) == []

    def test_case_insensitive(self, engine):
        assert engine.matching_labels("npo") == ["NPO"]

    def test_duplicate_template_text_per_rule(self, engine):
        tasks = engine.apply(make_entry(diagnosis="CVA דמנציה"))
        texts = [t.text for t in tasks]
        assert texts.count("מניעת נפילה - ניטור מוגבר") == 2


class TestRuleDisjointness:
    """One rule's trigger must never satisfy a different rule."""

    @pytest.mark.parametrize(
        "text,label",
        [
            ("BS", "BS (Bladder Scan)"),
            ("DM", "סוכרת"),
            ("MRSA", "בידוד"),
            ("C-DIFF", "בידוד"),
            ("C.DIFF", "בידוד"),
            ("DNR", "DNR/DNI"),
            ("INR", "וורפרין"),
            ("CVA", "שבץ"),
            ("NPO", "NPO"),
        ],
    )
    def test_abbreviation_fires_only_its_rule(self, engine, text, label):
        assert engine.matching_labels(text) == [label]

    def test_bladder_scan_is_not_diabetes(self, engine):
        tasks = engine.apply(make_entry(status=["BS בערב"]))
        labels = {t.generated_from for t in tasks}

        assert "BS (Bladder Scan)" in labels
        assert "סוכרת" not in labels

    def test_abbreviation_inside_word_does_not_fire(self, engine):
        assert engine.matching_labels("BSX DMZ") == []

    def test_contrast_is_not_fever(self, engine):
        assert engine.matching_labels("חומר ניגוד") == ["חומר ניגוד"]

    def test_polyp_is_not_catheter(self, engine):
        assert "קטטר" not in engine.matching_labels("פוליפ במעי")


class TestCustomTable:
    """Tests for engines built from a custom table."""

    def test_custom_table(self):
        engine = RuleEngine(table=[("בדיקה", r"\bXYZ\b", [("לבצע XYZ", Urgency.STAT)])])
        tasks = engine.apply(make_entry(diagnosis="xyz"))

        assert [(t.text, t.urgency, t.generated_from) for t in tasks] == [
            ("לבצע XYZ", Urgency.STAT, "בדיקה")
        ]

    def test_empty_table(self):
        assert RuleEngine(table=[]).apply(make_entry(flags=["NPO"])) == []


class TestModuleFunctions:
    """Tests for the singleton helpers."""

    def test_get_engine_is_singleton(self):
        assert get_engine() is get_engine()

    def test_apply_rules(self):
        tasks = apply_rules(make_entry(flags=["DNR"]))
        assert {t.generated_from for t in tasks} == {"DNR/DNI"}


class TestFlagDrivenRules:
    """Rules fired by parsed flags."""

    def test_hyphenated_c_diff_line_gets_isolation_tasks(self):
        entry = ListParser().parse("101 כהן יוסף 72 שלשולים C-DIFF")[0]

        assert entry.flags == ["CDIFF"]
        assert "בידוד" in {t.generated_from for t in entry.generated_tasks}

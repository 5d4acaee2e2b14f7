"""
Ward Handover Agent
===================

Shift-handover roster service for hospital wards.

This agent reads free-form handover text (typed, pasted, or OCR output from a
photographed ward sheet) and maintains a structured, task-tracked patient
roster across repeated scans.

Key Features:
- Handover list parsing (sections, rooms, names, ages, flags, notes, tasks)
- Rule-based follow-up task checklists from diagnosis/status keywords
- Scan merging that keeps patient ids, manual tasks and completed tasks
- Plain-text shift summary and shareable handover export

Components:
-----------
- config: Environment-based configuration and ward constants
- models: Task and PatientEntry records
- patient_key: Strict and loose patient identity keys
- rules: Rule engine for generated tasks
- text_parser: Handover list parser
- merge: Scan merger
- roster: Direct roster edit actions
- handover: Summary and export formatters
- storage: JSON roster persistence
- api: FastAPI application

Usage:
------
    python -m uvicorn ward_handover.api:app --host 0.0.0.0 --port 8010
"""

__version__ = "1.0.0"
__author__ = "Hospital AI Platform Team"

from .config import settings, Section, TaskSource, Urgency
from .models import PatientEntry, Task
from .patient_key import build_patient_key, build_patient_loose_key
from .rules import RuleEngine, apply_rules
from .text_parser import ListParser, parse_patient_list
from .merge import merge_scan
from .handover import build_handover_text, generate_handover_summary

__all__ = [
    "settings",
    "Section",
    "TaskSource",
    "Urgency",
    "PatientEntry",
    "Task",
    "build_patient_key",
    "build_patient_loose_key",
    "RuleEngine",
    "apply_rules",
    "ListParser",
    "parse_patient_list",
    "merge_scan",
    "build_handover_text",
    "generate_handover_summary",
    "__version__",
]

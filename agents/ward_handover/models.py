"""
Ward Handover Agent - Data Model

Task and PatientEntry are the two records the whole agent works with. They
are plain dataclasses; ``to_dict()`` produces the persisted/JSON shape (field
names are camelCase so stored rosters stay compatible across restarts) and
``from_dict()`` rebuilds a record from that shape without ever raising.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .config import Section, TaskCategory, TaskSource, Urgency


MIN_AGE = 1
MAX_AGE = 149


def new_id(prefix: str = "") -> str:
    """Collision-resistant identifier with an optional readable prefix."""
    return f"{prefix}{uuid.uuid4().hex}"


def utc_now_iso(now: Optional[datetime] = None) -> str:
    """
    ISO-8601 UTC timestamp with millisecond precision, e.g. 2024-01-01T12:00:00.000Z.

    A naive datetime is taken as local time.
    """
    now = now or datetime.now(timezone.utc)
    return now.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_iso(value: Any) -> Optional[datetime]:
    """Parse an ISO timestamp (``Z`` or offset form); None for anything unparseable."""
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def coerce_age(value: Any) -> Optional[int]:
    """Age as int within the plausible human range, otherwise None."""
    if isinstance(value, bool):
        return None
    if isinstance(value, str):
        value = value.strip()
        if not value.isdigit():
            return None
    try:
        age = int(value)
    except (TypeError, ValueError):
        return None
    return age if MIN_AGE <= age <= MAX_AGE else None


def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _str_list(value: Any) -> List[str]:
    if not isinstance(value, (list, tuple)):
        return []
    return [str(v) for v in value if v is not None and str(v).strip()]


def _task_list(value: Any) -> List["Task"]:
    if not isinstance(value, (list, tuple)):
        return []
    tasks = [Task.from_dict(item) for item in value]
    return [t for t in tasks if t is not None]


def _confidence(value: Any, default: float) -> float:
    try:
        score = float(value)
    except (TypeError, ValueError):
        return default
    return min(max(score, 0.0), 1.0)


@dataclass
class Task:
    """
    An actionable or auto-generated to-do attached to a patient.

    Attributes:
        id: Opaque unique identifier
        text: Task text, verbatim from the sheet or from a rule template
        urgency: stat / urgent / morning / routine
        source: extracted / manual / generated
        done: Completion flag
        done_time: ISO timestamp of completion, None unless done
        time: Time of day found in the text ("16:30"), if any
        confidence: 0..1
        category: Optional category tag
        generated_from: Label of the rule that produced a generated task
    """
    id: str
    text: str
    urgency: str = Urgency.ROUTINE
    source: str = TaskSource.EXTRACTED
    done: bool = False
    done_time: Optional[str] = None
    time: Optional[str] = None
    confidence: float = 0.0
    category: Optional[str] = None
    generated_from: Optional[str] = None

    def mark_done(self, now: Optional[datetime] = None) -> "Task":
        """Return a completed copy of this task."""
        return replace(self, done=True, done_time=utc_now_iso(now))

    def mark_open(self) -> "Task":
        """Return a reopened copy of this task."""
        return replace(self, done=False, done_time=None)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        data: Dict[str, Any] = {
            "id": self.id,
            "text": self.text,
            "urgency": self.urgency,
            "source": self.source,
            "done": self.done,
            "doneTime": self.done_time,
            "time": self.time,
            "confidence": self.confidence,
        }
        if self.category is not None:
            data["category"] = self.category
        if self.generated_from is not None:
            data["generatedFrom"] = self.generated_from
        return data

    @classmethod
    def from_dict(cls, data: Any) -> Optional["Task"]:
        """Build a Task from its dictionary form; None if there is no usable text."""
        if not isinstance(data, dict):
            return None
        text = data.get("text")
        if not isinstance(text, str) or not text.strip():
            return None

        urgency = data.get("urgency")
        source = data.get("source")
        category = data.get("category")
        done = data.get("done") is True
        done_time = data.get("doneTime") if done else None
        if done and parse_iso(done_time) is None:
            # completed without a usable timestamp
            done_time = utc_now_iso()

        return cls(
            id=_optional_str(data.get("id")) or new_id("task-"),
            text=text,
            urgency=urgency if Urgency.is_valid(urgency) else Urgency.ROUTINE,
            source=source if source in TaskSource.ALL else TaskSource.EXTRACTED,
            done=done,
            done_time=done_time,
            time=_optional_str(data.get("time")),
            confidence=_confidence(data.get("confidence"), 0.0),
            category=category if category in TaskCategory.ALL else None,
            generated_from=_optional_str(data.get("generatedFrom")),
        )


@dataclass
class PatientEntry:
    """
    One roster row.

    The id is assigned once, when the patient is first parsed or created, and
    never changes afterwards: it is the join key across rescans even when the
    name, room or section are later edited or merged.
    """
    id: str
    section: str = Section.SIDE_A
    date: str = ""
    room: Optional[str] = None
    name: Optional[str] = None
    age: Optional[int] = None
    diagnosis: Optional[str] = None
    flags: List[str] = field(default_factory=list)
    status: List[str] = field(default_factory=list)
    tasks: List[Task] = field(default_factory=list)
    generated_tasks: List[Task] = field(default_factory=list)
    scanned_at: str = ""
    confidence: float = 0.0
    created_at: str = ""
    updated_at: str = ""
    scan_count: int = 1

    @property
    def all_tasks(self) -> List[Task]:
        return [*self.tasks, *self.generated_tasks]

    @property
    def open_tasks(self) -> List[Task]:
        return [t for t in self.all_tasks if not t.done]

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "section": self.section,
            "date": self.date,
            "room": self.room,
            "name": self.name,
            "age": self.age,
            "diagnosis": self.diagnosis,
            "flags": list(self.flags),
            "status": list(self.status),
            "tasks": [t.to_dict() for t in self.tasks],
            "generatedTasks": [t.to_dict() for t in self.generated_tasks],
            "scannedAt": self.scanned_at,
            "confidence": self.confidence,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "scanCount": self.scan_count,
        }

    @classmethod
    def from_dict(cls, data: Any) -> Optional["PatientEntry"]:
        """Build a PatientEntry from its dictionary form; None if data is not a mapping."""
        if not isinstance(data, dict):
            return None

        section = data.get("section")
        scanned_at = data.get("scannedAt") if isinstance(data.get("scannedAt"), str) else ""
        created_at = data.get("createdAt") if isinstance(data.get("createdAt"), str) else scanned_at
        updated_at = data.get("updatedAt") if isinstance(data.get("updatedAt"), str) else created_at

        try:
            scan_count = max(int(data.get("scanCount", 1)), 1)
        except (TypeError, ValueError):
            scan_count = 1

        return cls(
            id=_optional_str(data.get("id")) or new_id("pt-"),
            section=section if Section.is_valid(section) else Section.SIDE_A,
            date=str(data.get("date") or ""),
            room=_optional_str(data.get("room")),
            name=_optional_str(data.get("name")),
            age=coerce_age(data.get("age")),
            diagnosis=_optional_str(data.get("diagnosis")),
            flags=list(dict.fromkeys(_str_list(data.get("flags")))),
            status=_str_list(data.get("status")),
            tasks=_task_list(data.get("tasks")),
            generated_tasks=_task_list(data.get("generatedTasks")),
            scanned_at=scanned_at,
            confidence=_confidence(data.get("confidence"), 0.0),
            created_at=created_at,
            updated_at=updated_at,
            scan_count=scan_count,
        )

"""
Ward Handover Agent - Text Parser (Handover List Module)

This module turns free-form handover text (typed, pasted, or returned by an
external OCR step from a photographed ward sheet) into PatientEntry records.

================================================================================
INPUT FORMAT
================================================================================

One patient per line, optional section headers between them:

    צד א
    101 כהן יוסף 72 דלקת ריאות DNR NPO | משתחרר היום | בדיקת דם בבוקר
    49-3 לוי שרה 65 אי ספיקת לב | מוניטור רציף
    צד ב
    ניטור 1 אברהם דוד 80 CVA | BS בערב

Patient line:   room  name  age  diagnosis+flags  | segment | segment ...

MAIN SEGMENT (before the first "|"):
────────────────────────────────────
    flags       DNR DNI NPO FALL ISO MRSA VRE ESBL C.DIFF, removed wherever found
    room        101, 12א, 49-3, 55/1, ניטור-1, ניטור 1      (optional)
    name        consecutive Hebrew-only tokens               (optional)
    age         integer 1-149                                (optional)
    diagnosis   everything left over                         (optional)

The fields are read left to right with a cursor and never revisited: a
missing room does not stop name detection, a missing age leaves the token for
the diagnosis.

EXTRA SEGMENTS (after "|"):
───────────────────────────
    Segments with an action word ("בדיקת", "לתת", "עירוי", "א.ק.ג", "BS", ...)
    become extracted tasks with urgency from marker words (דחוף, בוקר, ...),
    an HH:MM time when present and a category. All other segments become
    status notes, in order.

BEST EFFORT:
────────────
The text source is noisy. Lines that yield nothing usable are skipped
silently; parsing never raises.

================================================================================
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from typing import Callable, List, Optional, Sequence, Tuple

from .config import settings, Section, TaskCategory, TaskSource, Urgency
from .models import PatientEntry, Task, coerce_age, new_id, utc_now_iso
from .rules import apply_rules


logger = logging.getLogger(__name__)


SEGMENT_DELIMITER = "|"

FLAG_PATTERN = re.compile(
    r"\b(DNR|DNI|NPO|FALL|ISO|MRSA|VRE|ESBL|C[.\-]?\s?DIFF)\b",
    re.IGNORECASE,
)

# Room token formats, tried in this order
COMPOUND_ROOM_PATTERN = re.compile(r"^\d{1,4}[-/]\d{1,3}[א-ת]?$")     # 49-3, 55/1
HEBREW_HYPHEN_ROOM_PATTERN = re.compile(r"^[א-ת]+-\d{1,3}$")          # ניטור-1
SIMPLE_ROOM_PATTERN = re.compile(r"^\d{1,4}[א-ת]?$")                  # 101, 12א
ROOM_NUMBER_PATTERN = re.compile(r"^\d{1,3}$")

# Words that name a room when followed by a separate number token ("ניטור 1").
# A bare Hebrew word + number is otherwise read as name + age.
ROOM_WORDS = frozenset({"ניטור", "חדר", "מיטה", "מסדרון", "בידוד"})

NAME_TOKEN_PATTERN = re.compile(r"^(?=.*[א-ת])[א-ת'׳\-]+$")
AGE_TOKEN_PATTERN = re.compile(r"^(\d{1,3})ש?$")

TIME_PATTERN = re.compile(r"\b(\d{1,2}:\d{2})\b")

TASK_PATTERN = re.compile(
    r"בדיק|תור |לתת |להזמין|לבצע|למדוד|לשלוח|לקחת|טיפול|ניקוז|עירוי|צילום|ייעוץ"
    r"|א\.?ק\.?ג|\bBS\b|\bCT\b|\bMRI\b|\bECG\b|\bEKG\b|\bUS\b",
    re.IGNORECASE,
)

# Marker -> urgency, checked in order; first hit wins
URGENCY_MARKERS: Sequence[Tuple[re.Pattern, str]] = (
    (re.compile(r"דחוף|סטט|\bSTAT\b", re.IGNORECASE), Urgency.STAT),
    (re.compile(r"אורגנטי|\burgent\b", re.IGNORECASE), Urgency.URGENT),
    (re.compile(r"בוקר"), Urgency.MORNING),
    (re.compile(r"שגרה"), Urgency.ROUTINE),
)

# Category patterns, checked in order; first hit wins
CATEGORY_PATTERNS: Sequence[Tuple[str, re.Pattern]] = (
    (TaskCategory.DISCHARGE, re.compile(r"שחרור|משתחרר|לשחרר|מכתב", re.IGNORECASE)),
    (TaskCategory.LABS, re.compile(
        r"בדיקת דם|בדיקות דם|ספירה|כימיה|תרבית|\bCBC\b|\bCRP\b|\bINR\b|אלקטרוליט|קריאטינין|אשלגן|נתרן",
        re.IGNORECASE,
    )),
    (TaskCategory.IMAGING, re.compile(
        r"צילום|\bCT\b|\bMRI\b|\bUS\b|אולטרסאונד|דופלר|אקו\b",
        re.IGNORECASE,
    )),
    (TaskCategory.PROCEDURE, re.compile(
        r"\bBS\b|\bBladder\s*Scan\b|ניקוז|ניקור|פיוס|קטטר|זונדה|א\.?ק\.?ג|\bECG\b|\bEKG\b",
        re.IGNORECASE,
    )),
    (TaskCategory.MEDS, re.compile(
        r"לתת|מתן|עירוי|תרופ|מינון|אנטיביוטיקה|\bIV\b|\bPO\b",
        re.IGNORECASE,
    )),
    (TaskCategory.CONSULT, re.compile(r"ייעוץ|התייעצות|שיחה|שיחת|\bconsult\w*", re.IGNORECASE)),
)


# =============================================================================
# FIELD HELPERS
# =============================================================================

def normalize_flag(raw: str) -> str:
    """DNR, dnr -> DNR; C. DIFF, c.diff, C-DIFF -> CDIFF."""
    return re.sub(r"[\s.\-]", "", raw).upper()


def extract_flags(text: str) -> Tuple[List[str], str]:
    """
    Pull clinical flag tokens out of a text segment.

    Returns:
        (flags in order of appearance, text with the flags removed)
    """
    flags: List[str] = []

    def _collect(match: re.Match) -> str:
        flags.append(normalize_flag(match.group(0)))
        return " "

    cleaned = FLAG_PATTERN.sub(_collect, text)
    return flags, " ".join(cleaned.split())


def detect_section_header(line: str) -> Optional[str]:
    """
    Section for a header line, None for anything else.

    Headers are matched by containment after whitespace removal, so
    "צד  א", "=== צד א ===" and "צדא:" all work. Lines carrying a segment
    delimiter or any digit are patient lines, never headers.
    """
    if SEGMENT_DELIMITER in line or any(ch.isdigit() for ch in line):
        return None
    compact = "".join(line.split())
    for marker, section in Section.HEADER_MARKERS:
        if marker in compact:
            return section
    return None


def detect_urgency(text: str) -> str:
    for marker, urgency in URGENCY_MARKERS:
        if marker.search(text):
            return urgency
    return Urgency.ROUTINE


def detect_category(text: str) -> Optional[str]:
    for category, pattern in CATEGORY_PATTERNS:
        if pattern.search(text):
            return category
    return None


def extract_time(text: str) -> Optional[str]:
    match = TIME_PATTERN.search(text)
    return match.group(1) if match else None


def is_task_segment(text: str) -> bool:
    return TASK_PATTERN.search(text) is not None


def parse_age(token: str) -> Optional[int]:
    match = AGE_TOKEN_PATTERN.match(token)
    if not match:
        return None
    return coerce_age(match.group(1))


# =============================================================================
# TOKEN CURSOR
# =============================================================================

class TokenCursor:
    """Forward-only cursor over the whitespace tokens of a main segment."""

    def __init__(self, tokens: Sequence[str]):
        self.tokens = list(tokens)
        self.pos = 0

    def peek(self, offset: int = 0) -> Optional[str]:
        index = self.pos + offset
        return self.tokens[index] if index < len(self.tokens) else None

    def advance(self, count: int = 1) -> None:
        self.pos = min(self.pos + count, len(self.tokens))

    def take_while(self, predicate: Callable[[str], bool]) -> List[str]:
        taken: List[str] = []
        while self.peek() is not None and predicate(self.peek()):
            taken.append(self.peek())
            self.advance()
        return taken

    def rest(self) -> List[str]:
        taken = self.tokens[self.pos:]
        self.pos = len(self.tokens)
        return taken


def read_room(cursor: TokenCursor) -> Optional[str]:
    """Consume a room code at the cursor, if there is one."""
    first = cursor.peek()
    if first is None:
        return None

    if COMPOUND_ROOM_PATTERN.match(first) or HEBREW_HYPHEN_ROOM_PATTERN.match(first):
        cursor.advance()
        return first

    second = cursor.peek(1)
    if first in ROOM_WORDS and second is not None and ROOM_NUMBER_PATTERN.match(second):
        cursor.advance(2)
        return f"{first} {second}"

    if SIMPLE_ROOM_PATTERN.match(first):
        cursor.advance()
        return first

    return None


def read_name(cursor: TokenCursor) -> Optional[str]:
    """Consume consecutive Hebrew-only tokens as the patient name."""
    tokens = cursor.take_while(lambda tok: NAME_TOKEN_PATTERN.match(tok) is not None)
    return " ".join(tokens) if tokens else None


def read_age(cursor: TokenCursor) -> Optional[int]:
    """Consume the next token as age only when it is a plausible age."""
    token = cursor.peek()
    if token is None:
        return None
    age = parse_age(token)
    if age is not None:
        cursor.advance()
    return age


def read_diagnosis(cursor: TokenCursor) -> Optional[str]:
    tokens = cursor.rest()
    return " ".join(tokens) if tokens else None


def row_confidence(
    room: Optional[str],
    name: Optional[str],
    age: Optional[int],
    diagnosis: Optional[str],
) -> float:
    """How much of the row structure was recognized, 0..1."""
    score = 0.1
    if room:
        score += 0.25
    if name:
        score += 0.35
    if age is not None:
        score += 0.10
    if diagnosis:
        score += 0.20
    return round(min(score, 1.0), 2)


# =============================================================================
# LIST PARSER
# =============================================================================

class ListParser:
    """
    Parser for handover lists.

    Usage:
        parser = ListParser()
        patients = parser.parse(raw_text)
    """

    def __init__(self, default_section: Optional[str] = None, min_line_length: Optional[int] = None):
        section = default_section or settings.default_section
        self.default_section = section if Section.is_valid(section) else Section.SIDE_A
        self.min_line_length = min_line_length or settings.min_line_length

    def parse(
        self,
        raw_text: Optional[str],
        date: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> List[PatientEntry]:
        """
        Parse a block of handover text.

        Args:
            raw_text: Multi-line text, one patient per line
            date: Date string stored on every entry (default: today, DD/MM/YYYY)
            now: Scan time (default: current time)

        Returns:
            Patient entries in text order; unusable lines are skipped
        """
        if not raw_text or not raw_text.strip():
            return []

        now = now or datetime.now(timezone.utc)
        date = date or now.astimezone().strftime("%d/%m/%Y")
        scanned_at = utc_now_iso(now)

        current_section = self.default_section
        patients: List[PatientEntry] = []
        skipped = 0
        headers = 0

        for line in raw_text.splitlines():
            trimmed = line.strip()
            if not trimmed:
                continue

            section = detect_section_header(trimmed)
            if section:
                current_section = section
                headers += 1
                continue

            entry = self.parse_line(trimmed, current_section, date, scanned_at)
            if entry is None:
                skipped += 1
                continue
            patients.append(entry)

        logger.info(
            "Parsed handover text",
            extra={
                "patients": len(patients),
                "section_headers": headers,
                "skipped_lines": skipped,
            }
        )
        return patients

    def parse_line(
        self,
        line: str,
        section: str,
        date: str,
        scanned_at: str,
    ) -> Optional[PatientEntry]:
        """Parse one patient line; None when the line yields nothing usable."""
        trimmed = line.strip()
        if len(trimmed) < self.min_line_length:
            return None

        segments = [s.strip() for s in trimmed.split(SEGMENT_DELIMITER)]
        main_part, extra_parts = segments[0], [s for s in segments[1:] if s]

        flags, cleaned = extract_flags(main_part)
        cursor = TokenCursor(cleaned.split())

        room = read_room(cursor)
        name = read_name(cursor)
        age = read_age(cursor)
        diagnosis = read_diagnosis(cursor)

        status: List[str] = []
        tasks: List[Task] = []
        for part in extra_parts:
            if is_task_segment(part):
                tasks.append(self._extracted_task(part))
            else:
                status.append(part)
            flags.extend(extract_flags(part)[0])

        if room is None and name is None and age is None and diagnosis is None and not tasks:
            return None

        entry = PatientEntry(
            id=new_id("pt-"),
            section=section,
            date=date,
            room=room,
            name=name,
            age=age,
            diagnosis=diagnosis,
            flags=list(dict.fromkeys(flags)),
            status=status,
            tasks=tasks,
            generated_tasks=[],
            scanned_at=scanned_at,
            confidence=row_confidence(room, name, age, diagnosis),
            created_at=scanned_at,
            updated_at=scanned_at,
            scan_count=1,
        )
        entry.generated_tasks = apply_rules(entry)
        return entry

    @staticmethod
    def _extracted_task(text: str) -> Task:
        return Task(
            id=new_id("task-"),
            text=text,
            urgency=detect_urgency(text),
            source=TaskSource.EXTRACTED,
            done=False,
            done_time=None,
            time=extract_time(text),
            confidence=settings.extracted_task_confidence,
            category=detect_category(text),
        )


# =============================================================================
# MODULE-LEVEL SINGLETON
# =============================================================================

_parser_instance: Optional[ListParser] = None


def get_parser() -> ListParser:
    """Get or create the singleton ListParser instance."""
    global _parser_instance
    if _parser_instance is None:
        _parser_instance = ListParser()
    return _parser_instance


def parse_patient_list(raw_text: Optional[str], date: Optional[str] = None) -> List[PatientEntry]:
    """
    Convenience function to parse handover text.

    Args:
        raw_text: Handover text, one patient per line

    Returns:
        List of PatientEntry
    """
    return get_parser().parse(raw_text, date=date)

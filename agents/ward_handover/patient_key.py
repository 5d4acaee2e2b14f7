"""
Ward Handover Agent - Patient Identity Keys

Two equivalence policies decide whether a freshly parsed row is a patient we
already track:

- strict key (section + room + name): same patient, same section
- loose key (room + name): same patient, possibly moved to another section

Keys are for comparison only. Stored fields keep their original spelling.
"""

import re
from typing import Optional


_NON_ALNUM = re.compile(r"[\W_]+", re.UNICODE)


def normalize_key_part(text: Optional[str]) -> str:
    """Lowercase and keep only letters and digits (any script)."""
    if not text:
        return ""
    return _NON_ALNUM.sub("", text.lower())


def build_patient_key(section: Optional[str], room: Optional[str], name: Optional[str]) -> str:
    """Strict key: section + room + name."""
    return "|".join(
        (normalize_key_part(section), normalize_key_part(room), normalize_key_part(name))
    )


def build_patient_loose_key(room: Optional[str], name: Optional[str]) -> str:
    """Loose key: room + name only, used to detect transfers between sections."""
    return "|".join((normalize_key_part(room), normalize_key_part(name)))

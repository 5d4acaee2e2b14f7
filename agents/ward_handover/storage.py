"""
Ward Handover Agent - Roster Persistence

Stores the roster as a JSON array of PatientEntry documents so it survives
service restarts. The file format is the same shape returned by the API.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import List, Optional, Sequence, Union

from .models import PatientEntry


logger = logging.getLogger(__name__)


class RosterStore:
    """
    JSON file store for the roster.

    A store without a path keeps nothing: load() returns an empty roster and
    save() is a no-op. Read and write failures are logged, never raised.
    """

    def __init__(self, path: Optional[Union[str, Path]] = None):
        self.path: Optional[Path] = Path(path) if path else None

    @property
    def enabled(self) -> bool:
        return self.path is not None

    def load(self) -> List[PatientEntry]:
        """Load the roster from disk."""
        if self.path is None:
            return []
        if not self.path.exists():
            logger.info(f"No roster file at {self.path}, starting empty")
            return []

        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Error loading roster from {self.path}: {e}")
            return []

        if not isinstance(data, list):
            logger.error(f"Roster file {self.path} does not contain a list")
            return []

        patients = [PatientEntry.from_dict(item) for item in data]
        roster = [p for p in patients if p is not None]
        logger.info(f"Loaded {len(roster)} patients from {self.path}")
        return roster

    def save(self, patients: Sequence[PatientEntry]) -> bool:
        """Write the roster to disk, replacing the previous file atomically."""
        if self.path is None:
            return True

        payload = [p.to_dict() for p in patients]
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{self.path.name}.", suffix=".tmp", dir=str(self.path.parent)
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(payload, f, ensure_ascii=False, indent=2)
                os.replace(tmp_name, self.path)
            except BaseException:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise
        except OSError as e:
            logger.error(f"Error saving roster to {self.path}: {e}")
            return False

        logger.debug(f"Saved {len(payload)} patients to {self.path}")
        return True

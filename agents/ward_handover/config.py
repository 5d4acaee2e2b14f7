"""
Ward Handover Agent - Configuration Module

This module centralizes all environment-based configuration for the handover
service. Every setting can be overridden through environment variables (and
an optional .env file).

================================================================================
WARD SECTIONS AND TASK URGENCY
================================================================================

The ward is split into four fixed sections. Every patient row belongs to
exactly one of them; a section header line in the handover text moves the
parser's cursor to that section.

    SIDE_A  - צד א
    SIDE_B  - צד ב
    SIDE_C  - צד ג
    REHAB   - שיקום

Tasks carry an ordered urgency:

    stat     - do it now
    urgent   - this shift
    morning  - morning round
    routine  - whenever possible

================================================================================
"""

from pydantic_settings import BaseSettings
from pydantic import Field
from typing import Optional
from functools import lru_cache


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Pydantic Settings automatically reads from environment variables,
    with support for .env files and type validation.
    """

    # ==========================================================================
    # SERVICE IDENTIFICATION
    # ==========================================================================
    service_name: str = Field(
        default="ward-handover-agent",
        description="Unique identifier for this microservice"
    )
    service_version: str = Field(
        default="1.0.0",
        description="Semantic version of this agent"
    )
    environment: str = Field(
        default="development",
        description="Runtime environment (development, staging, production)"
    )

    # ==========================================================================
    # PARSER CONFIGURATION
    # ==========================================================================
    default_section: str = Field(
        default="SIDE_A",
        description="Section assigned to patient lines before any section header"
    )
    min_line_length: int = Field(
        default=3,
        ge=1,
        le=20,
        description="Lines shorter than this (after trimming) are skipped"
    )
    extracted_task_confidence: float = Field(
        default=0.8,
        ge=0.0,
        le=1.0,
        description="Confidence assigned to tasks extracted from the text"
    )

    # ==========================================================================
    # RULE ENGINE CONFIGURATION
    # ==========================================================================
    generated_task_confidence: float = Field(
        default=0.9,
        ge=0.0,
        le=1.0,
        description="Confidence assigned to rule-generated tasks"
    )
    rule_audit_logging: bool = Field(
        default=True,
        description="Log every rule that fires for a patient"
    )

    # ==========================================================================
    # ROSTER CONFIGURATION
    # ==========================================================================
    manual_task_confidence: float = Field(
        default=1.0,
        ge=0.0,
        le=1.0,
        description="Confidence assigned to tasks added by a user"
    )
    roster_path: Optional[str] = Field(
        default=None,
        description="JSON file used to persist the roster (None keeps it in memory)"
    )

    # ==========================================================================
    # API CONFIGURATION
    # ==========================================================================
    api_host: str = Field(
        default="0.0.0.0",
        description="API server host"
    )
    api_port: int = Field(
        default=8010,
        description="API server port"
    )
    api_workers: int = Field(
        default=1,
        description="Number of Uvicorn workers"
    )
    debug: bool = Field(
        default=False,
        description="Enable debug mode"
    )

    # ==========================================================================
    # LOGGING CONFIGURATION
    # ==========================================================================
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR)"
    )
    log_format: str = Field(
        default="text",
        description="Log format (json, text)"
    )

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False
        extra = "ignore"


@lru_cache()
def get_settings() -> Settings:
    """
    Returns a cached Settings instance.

    Using lru_cache ensures we only parse environment variables once,
    improving performance and consistency across the application.
    """
    return Settings()


# ==========================================================================
# CONVENIENCE EXPORTS
# ==========================================================================
settings = get_settings()


# ==========================================================================
# SECTION CONSTANTS
# ==========================================================================
class Section:
    """The four fixed ward sections, in display order."""
    SIDE_A = "SIDE_A"
    SIDE_B = "SIDE_B"
    SIDE_C = "SIDE_C"
    REHAB = "REHAB"

    ALL = (SIDE_A, SIDE_B, SIDE_C, REHAB)

    # Human-readable labels
    LABELS = {
        SIDE_A: "צד א",
        SIDE_B: "צד ב",
        SIDE_C: "צד ג",
        REHAB: "שיקום",
    }

    # Header text with all whitespace removed -> section
    HEADER_MARKERS = (
        ("צדא", SIDE_A),
        ("צדב", SIDE_B),
        ("צדג", SIDE_C),
        ("שיקום", REHAB),
    )

    @classmethod
    def get_label(cls, section: str) -> str:
        """Get human-readable label for a section."""
        return cls.LABELS.get(section, section)

    @classmethod
    def is_valid(cls, section: Optional[str]) -> bool:
        return section in cls.ALL


# ==========================================================================
# URGENCY CONSTANTS
# ==========================================================================
class Urgency:
    """Task urgency, ordered stat > urgent > morning > routine."""
    STAT = "stat"
    URGENT = "urgent"
    MORNING = "morning"
    ROUTINE = "routine"

    ORDER = (STAT, URGENT, MORNING, ROUTINE)

    # Lower rank = more urgent
    RANK = {
        STAT: 0,
        URGENT: 1,
        MORNING: 2,
        ROUTINE: 3,
    }

    LABELS = {
        STAT: "סטט",
        URGENT: "דחוף",
        MORNING: "בוקר",
        ROUTINE: "שגרה",
    }

    @classmethod
    def rank(cls, urgency: str) -> int:
        return cls.RANK.get(urgency, len(cls.ORDER))

    @classmethod
    def is_valid(cls, urgency: Optional[str]) -> bool:
        return isinstance(urgency, str) and urgency in cls.RANK


class TaskSource:
    """Where a task came from; drives merge and retention behavior."""
    EXTRACTED = "extracted"
    MANUAL = "manual"
    GENERATED = "generated"

    ALL = (EXTRACTED, MANUAL, GENERATED)


class TaskCategory:
    """Optional task category tags."""
    LABS = "labs"
    IMAGING = "imaging"
    MEDS = "meds"
    CONSULT = "consult"
    PROCEDURE = "procedure"
    DISCHARGE = "discharge"
    OTHER = "other"

    ALL = (LABS, IMAGING, MEDS, CONSULT, PROCEDURE, DISCHARGE, OTHER)

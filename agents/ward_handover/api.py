"""
Ward Handover Agent - FastAPI Application

This module provides the REST API for the shift-handover roster service.
It exposes stateless parsing / merging / rule endpoints, the stateful roster
with its edit actions, and the handover summary and export.

================================================================================
ROSTER LIFECYCLE
================================================================================

    ┌──────────────────┐
    │ Handover sheet   │  typed, pasted or OCR text
    └────────┬─────────┘
             │ POST /roster/import
             ▼
    ┌──────────────────┐     ┌──────────────────┐
    │ List Parser      │────►│ Rule Engine      │  generated checklist
    └────────┬─────────┘     └──────────────────┘
             │
             ▼
    ┌──────────────────┐
    │ Scan Merger      │  same patient keeps id, manual tasks and
    └────────┬─────────┘  completed tasks across rescans
             │
             ▼
    ┌──────────────────┐     PATCH / toggle / notes / delete
    │ Roster           │◄──────────────────────────────────
    └────────┬─────────┘
             │ POST /handover/summary, /handover/export
             ▼
    ┌──────────────────┐
    │ Handover text    │
    └──────────────────┘

All roster mutations run under one asyncio.Lock, so each request sees and
replaces a complete roster. When ROSTER_PATH is set, the roster is written to
disk after every mutation and reloaded on startup.

================================================================================
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Query, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, validator

from . import roster as roster_actions
from .config import settings, Section, TaskSource, Urgency
from .handover import EXPORT_MODES, build_handover_text, generate_handover_summary
from .merge import merge_scan
from .models import PatientEntry, utc_now_iso
from .rules import get_engine
from .storage import RosterStore
from .text_parser import get_parser


# Configure logging
LOG_FORMATS = {
    "text": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    "json": '{"time": "%(asctime)s", "logger": "%(name)s", "level": "%(levelname)s", "message": "%(message)s"}',
}

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format=LOG_FORMATS.get(settings.log_format, LOG_FORMATS["text"]),
)
logger = logging.getLogger(__name__)


# =============================================================================
# PYDANTIC MODELS (Request/Response Schemas)
# =============================================================================

SAMPLE_LIST = "צד א\n101 כהן יוסף 72 דלקת ריאות | בדיקת דם בבוקר\n102 לוי שרה 65 אי ספיקת לב NPO"


class ParseRequest(BaseModel):
    """Request schema for parsing handover text."""

    text: str = Field(
        ...,
        max_length=100_000,
        description="Handover list text, one patient per line",
    )
    date: Optional[str] = Field(
        default=None,
        description="Date label for the entries (default: today, DD/MM/YYYY)",
    )

    class Config:
        json_schema_extra = {
            "example": {
                "text": SAMPLE_LIST,
                "date": "19/10/2026",
            }
        }


class ImportRequest(BaseModel):
    """Request schema for importing a scan into the roster."""

    text: str = Field(
        ...,
        max_length=100_000,
        description="Handover list text to parse and merge into the roster",
    )

    class Config:
        json_schema_extra = {"example": {"text": SAMPLE_LIST}}


class MergeRequest(BaseModel):
    """Request schema for a stateless merge."""

    existing: List[Dict[str, Any]] = Field(
        default_factory=list,
        description="Current roster (PatientEntry documents)",
    )
    incoming: List[Dict[str, Any]] = Field(
        default_factory=list,
        description="Newly parsed entries (PatientEntry documents)",
    )


class RulesRequest(BaseModel):
    """Request schema for evaluating the rule engine on one patient."""

    patient: Dict[str, Any] = Field(
        ...,
        description="PatientEntry document; diagnosis, status, flags and tasks are scanned",
    )

    class Config:
        json_schema_extra = {
            "example": {
                "patient": {
                    "room": "101",
                    "name": "כהן יוסף",
                    "diagnosis": "סוכרת",
                    "flags": ["NPO"],
                    "status": ["לשחרור מחר"],
                }
            }
        }


class AddTaskRequest(BaseModel):
    """Request schema for adding a manual task."""

    text: str = Field(..., min_length=1, max_length=500, description="Task text")
    urgency: str = Field(default=Urgency.ROUTINE, description="stat, urgent, morning or routine")

    @validator("urgency")
    def check_urgency(cls, value):
        if not Urgency.is_valid(value):
            raise ValueError(f"urgency must be one of {', '.join(Urgency.ORDER)}")
        return value

    @validator("text")
    def check_text(cls, value):
        if not value.strip():
            raise ValueError("text must not be blank")
        return value

    class Config:
        json_schema_extra = {"example": {"text": "להתקשר למשפחה", "urgency": "urgent"}}


class NoteRequest(BaseModel):
    """Request schema for adding a status note."""

    note: str = Field(..., min_length=1, max_length=1000, description="Free-text note")

    @validator("note")
    def check_note(cls, value):
        if not value.strip():
            raise ValueError("note must not be blank")
        return value


class PatientPatch(BaseModel):
    """Editable patient fields; omitted fields are left unchanged."""

    name: Optional[str] = None
    room: Optional[str] = None
    age: Optional[int] = None
    diagnosis: Optional[str] = None
    flags: Optional[List[str]] = None
    status: Optional[List[str]] = None
    section: Optional[str] = None

    @validator("section")
    def check_section(cls, value):
        if value is not None and not Section.is_valid(value):
            raise ValueError(f"section must be one of {', '.join(Section.ALL)}")
        return value

    class Config:
        json_schema_extra = {
            "example": {"room": "105", "age": 73, "flags": ["DNR", "FALL"]}
        }


class SummaryRequest(BaseModel):
    """Request schema for the handover summary."""

    session_started_at: Optional[str] = Field(
        default=None,
        description="ISO timestamp of the shift start (default: service start time)",
    )
    patients: Optional[List[Dict[str, Any]]] = Field(
        default=None,
        description="Patients to summarize (default: the current roster)",
    )


class ExportRequest(BaseModel):
    """Request schema for the handover export."""

    sections: Optional[List[str]] = Field(
        default=None,
        description="Sections to include (default: all)",
    )
    mode: str = Field(default="pending", description="pending or all")
    patients: Optional[List[Dict[str, Any]]] = Field(
        default=None,
        description="Patients to export (default: the current roster)",
    )

    @validator("mode")
    def check_mode(cls, value):
        if value not in EXPORT_MODES:
            raise ValueError(f"mode must be one of {', '.join(EXPORT_MODES)}")
        return value

    @validator("sections")
    def check_sections(cls, value):
        if value is not None:
            unknown = [s for s in value if not Section.is_valid(s)]
            if unknown:
                raise ValueError(f"unknown sections: {', '.join(unknown)}")
        return value

    class Config:
        json_schema_extra = {"example": {"sections": ["SIDE_A", "REHAB"], "mode": "pending"}}


class PatientsResponse(BaseModel):
    """A list of patients."""

    count: int
    patients: List[Dict[str, Any]]


class TextResponse(BaseModel):
    """A rendered handover text."""

    text: str
    generated_at: str


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    service: str
    version: str
    timestamp: datetime
    checks: Dict[str, Dict[str, Any]]


# =============================================================================
# APPLICATION STATE
# =============================================================================

class AppState:
    """
    Application state management.

    Holds the roster, its backing store and the shift start time.
    """

    def __init__(self):
        self.roster: List[PatientEntry] = []
        self.store: RosterStore = RosterStore(settings.roster_path)
        self.session_started_at: str = utc_now_iso()
        self.is_ready: bool = False
        self.last_save_ok: bool = True

        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Load the persisted roster and warm up the parser and rule engine."""
        async with self._lock:
            get_parser()
            get_engine()
            self.roster = await asyncio.to_thread(self.store.load)
            self.session_started_at = utc_now_iso()
            self.is_ready = True
            logger.info(
                "Application state initialized",
                extra={"patients": len(self.roster), "persistent": self.store.enabled},
            )

    async def mutate(
        self, action: Callable[[List[PatientEntry]], List[PatientEntry]]
    ) -> List[PatientEntry]:
        """Replace the roster with action(roster) and persist it."""
        async with self._lock:
            self.roster = action(self.roster)
            # file write off the event loop
            self.last_save_ok = await asyncio.to_thread(self.store.save, list(self.roster))
            return self.roster


# Global state
app_state = AppState()


# =============================================================================
# LIFESPAN MANAGEMENT
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    # Startup
    logger.info(f"Starting {settings.service_name} v{settings.service_version}")
    await app_state.initialize()

    yield

    # Shutdown
    logger.info("Shutting down ward handover agent")


# =============================================================================
# FASTAPI APPLICATION
# =============================================================================

app = FastAPI(
    title="Ward Handover Agent",
    description="""
    Shift-handover roster service for hospital wards.

    ## Features
    - **List Parsing**: Hebrew handover sheets into structured patient entries
    - **Generated Checklists**: Follow-up tasks from diagnosis and status keywords
    - **Scan Merging**: Rescans keep patient ids, manual tasks and completed tasks
    - **Handover Text**: End-of-shift summary and shareable export

    ## Sections
    - **SIDE_A / SIDE_B / SIDE_C**: Ward sides (צד א / ב / ג)
    - **REHAB**: Rehabilitation (שיקום)
    """,
    version=settings.service_version,
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def to_entries(documents: Optional[List[Dict[str, Any]]]) -> List[PatientEntry]:
    """Convert PatientEntry documents, dropping the ones that are not objects."""
    entries = [PatientEntry.from_dict(doc) for doc in documents or []]
    return [e for e in entries if e is not None]


def patients_response(patients: List[PatientEntry]) -> PatientsResponse:
    return PatientsResponse(
        count=len(patients),
        patients=[p.to_dict() for p in patients],
    )


def not_found(kind: str, identifier: Any) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail={
            "error": f"{kind}_not_found",
            "message": f"No {kind} with id {identifier}",
        },
    )


def require_patient(patient_id: str) -> PatientEntry:
    patient = roster_actions.find_patient(app_state.roster, patient_id)
    if patient is None:
        raise not_found("patient", patient_id)
    return patient


def patient_payload(patient_id: str) -> Dict[str, Any]:
    return require_patient(patient_id).to_dict()


# =============================================================================
# ENDPOINTS
# =============================================================================

@app.get("/health", response_model=HealthResponse, tags=["Operations"])
async def health_check() -> HealthResponse:
    """
    Health check endpoint for Kubernetes probes.

    Checks:
    - Service readiness
    - Roster size
    - Storage status
    """
    overall_status = "healthy" if app_state.is_ready else "degraded"

    checks = {
        "roster": {
            "status": "ok",
            "patients": len(app_state.roster),
        },
        "storage": {
            "status": "ok" if app_state.last_save_ok else "error",
            "persistent": app_state.store.enabled,
            "path": str(app_state.store.path) if app_state.store.path else None,
        },
    }
    if not app_state.last_save_ok:
        overall_status = "degraded"

    return HealthResponse(
        status=overall_status,
        service=settings.service_name,
        version=settings.service_version,
        timestamp=datetime.utcnow(),
        checks=checks,
    )


@app.post("/parse", response_model=PatientsResponse, tags=["Parsing"])
async def parse_list(request: ParseRequest) -> PatientsResponse:
    """
    Parse handover text into patient entries without touching the roster.

    Each non-empty line becomes at most one patient. Section headers
    (צד א, צד ב, צד ג, שיקום) switch the section of the following lines.
    """
    patients = get_parser().parse(request.text, date=request.date)
    return patients_response(patients)


@app.post("/merge", response_model=PatientsResponse, tags=["Parsing"])
async def merge_lists(request: MergeRequest) -> PatientsResponse:
    """Merge an incoming scan into an existing roster without touching the stored roster."""
    merged = merge_scan(to_entries(request.existing), to_entries(request.incoming))
    return patients_response(merged)


@app.post("/rules/apply", tags=["Parsing"])
async def apply_rules_endpoint(request: RulesRequest) -> Dict[str, Any]:
    """Evaluate the rule engine against one patient."""
    entry = PatientEntry.from_dict(request.patient)
    engine = get_engine()
    tasks = engine.apply(entry)
    return {
        "matched_rules": engine.matching_labels(engine.combined_text(entry)),
        "count": len(tasks),
        "tasks": [t.to_dict() for t in tasks],
    }


@app.get("/roster", response_model=PatientsResponse, tags=["Roster"])
async def get_roster(
    section: Optional[str] = Query(default=None, description="Only this section"),
) -> PatientsResponse:
    """Get the current roster."""
    if section is not None and not Section.is_valid(section):
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={
                "error": "invalid_section",
                "message": f"section must be one of {', '.join(Section.ALL)}",
            },
        )
    patients = app_state.roster
    if section is not None:
        patients = roster_actions.filter_section(patients, section)
    return patients_response(patients)


@app.post("/roster/import", response_model=PatientsResponse, tags=["Roster"])
async def import_scan(request: ImportRequest) -> PatientsResponse:
    """
    Parse a scan and merge it into the roster.

    Patients already on the roster keep their id, manual tasks and completed
    tasks. Patients missing from the scan are kept as they are.
    """
    roster = await app_state.mutate(
        lambda current: roster_actions.import_text(current, request.text)
    )
    logger.info("Scan imported", extra={"patients": len(roster)})
    return patients_response(roster)


@app.delete("/roster", response_model=PatientsResponse, tags=["Roster"])
async def clear_roster() -> PatientsResponse:
    """Remove every patient."""
    roster = await app_state.mutate(roster_actions.clear_all)
    logger.warning("Roster cleared")
    return patients_response(roster)


@app.patch("/roster/patients/{patient_id}", tags=["Roster"])
async def edit_patient(patient_id: str, patch: PatientPatch) -> Dict[str, Any]:
    """Edit patient fields. The patient id never changes."""
    require_patient(patient_id)
    changes = patch.dict(exclude_unset=True)
    await app_state.mutate(
        lambda current: roster_actions.edit_patient(current, patient_id, changes)
    )
    return patient_payload(patient_id)


@app.delete("/roster/patients/{patient_id}", tags=["Roster"])
async def delete_patient(patient_id: str) -> Dict[str, Any]:
    """Remove one patient from the roster."""
    require_patient(patient_id)
    roster = await app_state.mutate(
        lambda current: roster_actions.delete_patient(current, patient_id)
    )
    return {"deleted": patient_id, "count": len(roster)}


@app.post("/roster/patients/{patient_id}/tasks", tags=["Tasks"])
async def add_task(patient_id: str, request: AddTaskRequest) -> Dict[str, Any]:
    """Add a manual task. Manual tasks survive every later rescan."""
    require_patient(patient_id)
    await app_state.mutate(
        lambda current: roster_actions.add_task(current, patient_id, request.text, request.urgency)
    )
    return patient_payload(patient_id)


@app.post("/roster/patients/{patient_id}/tasks/{task_id}/toggle", tags=["Tasks"])
async def toggle_task(patient_id: str, task_id: str) -> Dict[str, Any]:
    """Flip a task between open and done."""
    patient = require_patient(patient_id)
    if roster_actions.find_task(patient, task_id) is None:
        raise not_found("task", task_id)
    await app_state.mutate(
        lambda current: roster_actions.toggle_task(current, patient_id, task_id)
    )
    return patient_payload(patient_id)


@app.delete("/roster/patients/{patient_id}/tasks/{task_id}", tags=["Tasks"])
async def delete_task(patient_id: str, task_id: str) -> Dict[str, Any]:
    """Delete a task of any source."""
    patient = require_patient(patient_id)
    if roster_actions.find_task(patient, task_id) is None:
        raise not_found("task", task_id)
    await app_state.mutate(
        lambda current: roster_actions.delete_task(current, patient_id, task_id)
    )
    return patient_payload(patient_id)


@app.post("/roster/patients/{patient_id}/notes", tags=["Roster"])
async def add_note(patient_id: str, request: NoteRequest) -> Dict[str, Any]:
    """Append a status note."""
    require_patient(patient_id)
    await app_state.mutate(
        lambda current: roster_actions.add_note(current, patient_id, request.note)
    )
    return patient_payload(patient_id)


@app.delete("/roster/patients/{patient_id}/notes/{index}", tags=["Roster"])
async def remove_note(patient_id: str, index: int) -> Dict[str, Any]:
    """Remove the status note at index."""
    patient = require_patient(patient_id)
    if not 0 <= index < len(patient.status):
        raise not_found("note", index)
    await app_state.mutate(
        lambda current: roster_actions.remove_note(current, patient_id, index)
    )
    return patient_payload(patient_id)


@app.post("/handover/summary", response_model=TextResponse, tags=["Handover"])
async def handover_summary(request: Optional[SummaryRequest] = None) -> TextResponse:
    """
    Build the end-of-shift summary.

    Lists patients with open tasks, patients added since the shift started,
    patients with an open STAT task and pending consults.
    """
    request = request or SummaryRequest()
    patients = app_state.roster if request.patients is None else to_entries(request.patients)
    started = request.session_started_at or app_state.session_started_at

    text = generate_handover_summary(patients, started)
    return TextResponse(text=text, generated_at=utc_now_iso())


@app.post("/handover/export", response_model=TextResponse, tags=["Handover"])
async def handover_export(request: Optional[ExportRequest] = None) -> TextResponse:
    """Build the shareable handover text, grouped by section."""
    request = request or ExportRequest()
    patients = app_state.roster if request.patients is None else to_entries(request.patients)

    text = build_handover_text(patients, sections=request.sections, mode=request.mode)
    return TextResponse(text=text, generated_at=utc_now_iso())


@app.get("/stats", tags=["Operations"])
async def get_stats() -> Dict[str, Any]:
    """Get roster statistics."""
    roster = app_state.roster
    all_tasks = [t for p in roster for t in p.all_tasks]
    done = sum(1 for t in all_tasks if t.done)

    return {
        "total_patients": len(roster),
        "patients_by_section": {
            s: len(roster_actions.filter_section(roster, s)) for s in Section.ALL
        },
        "total_tasks": len(all_tasks),
        "done_tasks": done,
        "open_tasks": len(all_tasks) - done,
        "open_by_urgency": {
            u: sum(1 for t in all_tasks if not t.done and t.urgency == u) for u in Urgency.ORDER
        },
        "tasks_by_source": {
            s: sum(1 for t in all_tasks if t.source == s) for s in TaskSource.ALL
        },
        "session_started_at": app_state.session_started_at,
    }


# =============================================================================
# EXCEPTION HANDLERS
# =============================================================================

@app.exception_handler(Exception)
async def global_exception_handler(request, exc):
    """Handle uncaught exceptions."""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "internal_server_error",
            "message": "An unexpected error occurred",
            "detail": str(exc) if settings.debug else None,
        },
    )


# =============================================================================
# MAIN ENTRY POINT
# =============================================================================

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "ward_handover.api:app",
        host=settings.api_host,
        port=settings.api_port,
        workers=settings.api_workers,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )

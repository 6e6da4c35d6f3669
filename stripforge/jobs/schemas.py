"""Persisted job state and API payloads.

The Job record (with its phases, items, characters and panels) is the
durable shape written by the StateStore. It is the job's only source of
truth across restarts, so changes here must stay backwards compatible.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

# A comic strip always has exactly four panels.
PANEL_COUNT = 4


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_job_id() -> str:
    return f"job-{uuid.uuid4().hex[:12]}"


class JobStatus(str, Enum):
    """Job lifecycle states. Transitions only move forward."""
    INIT = "init"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = (JobStatus.COMPLETED, JobStatus.FAILED)


class PhaseName(str, Enum):
    """Pipeline phases, in execution order."""
    NLP = "nlp"
    CHARACTERS = "characters"
    BACKGROUNDS = "backgrounds"
    COMPOSITION = "composition"


PIPELINE = list(PhaseName)


class PhaseStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class ItemStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class ItemState(BaseModel):
    """One unit of parallel work within a phase."""

    id: str
    status: ItemStatus = ItemStatus.PENDING
    external_handle: Optional[str] = None
    result: Any = None
    error: Optional[str] = None
    attempts: int = Field(default=0, description="Submission attempts spent from the retry budget")
    dispatched_at: Optional[str] = Field(
        default=None,
        description="Set when a dispatch claims the item, cleared when a retry re-queues it",
    )
    updated_at: Optional[str] = None


class PhaseState(BaseModel):
    """Aggregate status of one pipeline phase and its items."""

    name: PhaseName
    status: PhaseStatus = PhaseStatus.PENDING
    items: dict[str, ItemState] = Field(default_factory=dict)
    result: Any = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None


class Character(BaseModel):
    id: str
    name: str
    image: str = Field(description="Upload reference: URL or data: URI")
    status: ItemStatus = ItemStatus.PENDING
    cartoonify_url: Optional[str] = None
    error: Optional[str] = None


class Panel(BaseModel):
    id: str
    description: str
    background_url: Optional[str] = None
    composed_url: Optional[str] = None
    status: ItemStatus = ItemStatus.PENDING
    error: Optional[str] = None


class PanelComposition(BaseModel):
    """Outcome of composing one panel (or the strip, with panel_id='strip')."""

    panel_id: str
    composed_url: Optional[str] = None
    error: Optional[str] = None


class JobOutput(BaseModel):
    output_url: Optional[str] = None
    strip_url: Optional[str] = None
    panels: list[PanelComposition] = Field(default_factory=list)
    errors: list[PanelComposition] = Field(default_factory=list)


class JobFailure(BaseModel):
    phase: Optional[PhaseName] = None
    reason: str
    failed_at: str = Field(default_factory=utc_now)


def _initial_phases() -> dict[PhaseName, PhaseState]:
    return {name: PhaseState(name=name) for name in PIPELINE}


class Job(BaseModel):
    """Full persisted state of one comic strip job."""

    id: str = Field(default_factory=new_job_id)
    status: JobStatus = JobStatus.INIT
    story: str
    options: dict[str, Any] = Field(default_factory=dict)
    characters: list[Character] = Field(default_factory=list)
    panels: list[Panel] = Field(default_factory=list)
    phases: dict[PhaseName, PhaseState] = Field(default_factory=_initial_phases)
    progress: int = 0
    output: JobOutput = Field(default_factory=JobOutput)
    failure: Optional[JobFailure] = None
    created_at: str = Field(default_factory=utc_now)
    updated_at: str = Field(default_factory=utc_now)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def phase(self, name: PhaseName) -> PhaseState:
        if name not in self.phases:
            self.phases[name] = PhaseState(name=name)
        return self.phases[name]

    def character(self, character_id: str) -> Optional[Character]:
        for character in self.characters:
            if character.id == character_id:
                return character
        return None

    def panel(self, panel_id: str) -> Optional[Panel]:
        for panel in self.panels:
            if panel.id == panel_id:
                return panel
        return None


class HandleRecord(BaseModel):
    """Pending-handle index entry: which job/phase/item owns an external handle."""

    handle: str
    job_id: str
    phase: PhaseName
    item_id: str
    created_at: str = Field(default_factory=utc_now)


class CallbackStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class CallbackOutcome(BaseModel):
    """Terminal result reported for an external handle."""

    status: CallbackStatus
    output: Any = None
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == CallbackStatus.SUCCEEDED


# --- API payloads ---


class StartJobRequest(BaseModel):
    """Request to start a comic strip job.

    Fields are loose on purpose: the orchestrator validates them and names
    the specific missing field.
    """

    story: str = ""
    characters: list[dict[str, Any]] = Field(default_factory=list)
    style: Optional[str] = None
    background: Optional[str] = None


class StartJobResponse(BaseModel):
    job_id: str
    status: JobStatus
    progress: int


class JobStatusResponse(BaseModel):
    """Response for job status polling."""

    job_id: str
    status: JobStatus
    progress: int
    output_url: Optional[str] = None
    strip_url: Optional[str] = None
    errors: list[PanelComposition] = Field(default_factory=list)
    error: Optional[str] = None
    phases: dict[str, str] = Field(
        default_factory=dict,
        description="Phase name -> phase status",
    )
    created_at: str
    updated_at: str

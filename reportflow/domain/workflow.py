"""Domain entities for the report workflow."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Literal

JobStatus = Literal["idle", "generating", "completed", "error"]
ReportStatus = Literal["draft", "processing", "published", "archived"]
FileKind = Literal["document", "image", "audio"]

TERMINAL_STATUSES = frozenset({"completed", "error"})

STEP_EXITED = 0
FIRST_STEP = 1
LAST_STEP = 6

WORKFLOW_STEPS: list[dict[str, object]] = [
    {"step": 1, "path": "start", "label": "Start Report"},
    {"step": 2, "path": "files", "label": "Upload Files"},
    {"step": 3, "path": "process", "label": "Process Files", "job_kind": "file_analysis"},
    {"step": 4, "path": "notes", "label": "Edit Notes"},
    {"step": 5, "path": "generate", "label": "Generate Report", "job_kind": "report_generation"},
    {"step": 6, "path": "review", "label": "Review Report"},
]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def step_path(step: int) -> str:
    for definition in WORKFLOW_STEPS:
        if definition["step"] == step:
            return str(definition["path"])
    return str(WORKFLOW_STEPS[0]["path"])


@dataclass(slots=True)
class WorkflowState:
    """Persisted position of a project inside the six-step workflow."""

    project_id: str
    user_id: str
    step: int = FIRST_STEP
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def in_workflow(self) -> bool:
        return self.step != STEP_EXITED


@dataclass(slots=True)
class WorkflowPosition:
    """Result of resuming: where the current user should land."""

    project_id: str | None
    step: int = FIRST_STEP

    @property
    def started(self) -> bool:
        return self.project_id is not None


@dataclass(slots=True)
class ProgressRecord:
    """One append-only progress row for a job."""

    job_id: str
    status: JobStatus = "generating"
    message: str = ""
    progress: int = 0
    created_at: datetime = field(default_factory=utcnow)
    record_id: str | None = None
    report_id: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES or (self.status == "generating" and self.progress >= 100)


@dataclass(slots=True)
class ProgressSnapshot:
    """Normalised view of a job's progress, as shown to the user."""

    job_id: str
    status: JobStatus = "idle"
    message: str = ""
    progress: int = 0
    slow: bool = False


@dataclass(slots=True)
class Project:
    project_id: str
    user_id: str
    name: str
    template_id: str | None = None


@dataclass(slots=True)
class ProjectFile:
    file_id: str
    project_id: str
    user_id: str
    name: str
    kind: FileKind = "document"
    file_path: str | None = None
    processed: bool = False


@dataclass(slots=True)
class Report:
    """Report entity; ``processing`` means a job is in flight for it."""

    report_id: str
    project_id: str
    user_id: str
    title: str
    status: ReportStatus = "draft"
    content: str | None = None
    job_id: str | None = None
    template_id: str | None = None
    image_urls: list[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

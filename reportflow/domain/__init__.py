"""Domain layer definitions."""

from .workflow import (
    FIRST_STEP,
    LAST_STEP,
    STEP_EXITED,
    TERMINAL_STATUSES,
    WORKFLOW_STEPS,
    ProgressRecord,
    ProgressSnapshot,
    Project,
    ProjectFile,
    Report,
    WorkflowPosition,
    WorkflowState,
    step_path,
    utcnow,
)

__all__ = [
    "FIRST_STEP",
    "LAST_STEP",
    "STEP_EXITED",
    "TERMINAL_STATUSES",
    "WORKFLOW_STEPS",
    "ProgressRecord",
    "ProgressSnapshot",
    "Project",
    "ProjectFile",
    "Report",
    "WorkflowPosition",
    "WorkflowState",
    "step_path",
    "utcnow",
]

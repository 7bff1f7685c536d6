"""Application services."""

from .coordinators import (
    CoordinatorState,
    FileAnalysisCoordinator,
    FilesStepCoordinator,
    JobStepCoordinator,
    NotesStepCoordinator,
    ReportGenerationCoordinator,
    ReviewStepCoordinator,
    ScreenHandlers,
    StepCoordinator,
)
from .dispatcher import DispatchTarget, JobDispatcher
from .monitor import ObservationSession, ProgressMonitor
from .navigation import ALLOW, DENY, IGNORED, NavigationGuard
from .services import (
    WorkflowService,
    configure_workflow_service,
    get_workflow_service,
    reset_workflow_state,
)
from .workflow import WorkflowController

__all__ = [
    "ALLOW",
    "DENY",
    "IGNORED",
    "CoordinatorState",
    "DispatchTarget",
    "FileAnalysisCoordinator",
    "FilesStepCoordinator",
    "JobDispatcher",
    "JobStepCoordinator",
    "NavigationGuard",
    "NotesStepCoordinator",
    "ObservationSession",
    "ProgressMonitor",
    "ReportGenerationCoordinator",
    "ReviewStepCoordinator",
    "ScreenHandlers",
    "StepCoordinator",
    "WorkflowController",
    "WorkflowService",
    "configure_workflow_service",
    "get_workflow_service",
    "reset_workflow_state",
]

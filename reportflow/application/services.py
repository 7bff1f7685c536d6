"""Process-wide wiring of stores, dispatcher, monitor and coordinators."""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable
from uuid import uuid4

from reportflow.core.config import Settings
from reportflow.core.schema import ProgressCallback
from reportflow.domain import ProgressRecord, utcnow
from reportflow.infrastructure import (
    InMemoryProgressStore,
    InMemoryProjectRepository,
    InMemoryWorkflowRepository,
    WorkerClient,
)

from .coordinators import (
    FileAnalysisCoordinator,
    FilesStepCoordinator,
    JobStepCoordinator,
    NotesStepCoordinator,
    ReportGenerationCoordinator,
    ReviewStepCoordinator,
    StepCoordinator,
)
from .dispatcher import DispatchTarget, JobDispatcher
from .monitor import ProgressMonitor
from .navigation import ConfirmPrompt, NavigationGuard
from .workflow import WorkflowController

logger = logging.getLogger(__name__)

COORDINATORS: dict[int, type[StepCoordinator]] = {
    2: FilesStepCoordinator,
    3: FileAnalysisCoordinator,
    4: NotesStepCoordinator,
    5: ReportGenerationCoordinator,
    6: ReviewStepCoordinator,
}


class WorkflowService:
    """Coordinates workflow use cases over shared stores."""

    def __init__(
        self,
        settings: Settings,
        *,
        progress_store: InMemoryProgressStore | None = None,
        workflows: InMemoryWorkflowRepository | None = None,
        projects: InMemoryProjectRepository | None = None,
        worker: WorkerClient | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings
        self.progress = progress_store or InMemoryProgressStore()
        self.workflows = workflows or InMemoryWorkflowRepository()
        self.projects = projects or InMemoryProjectRepository()
        self.worker = worker or WorkerClient(timeout=settings.dispatch_timeout)
        self._clock = clock
        self.dispatcher = JobDispatcher(self.progress, self.worker, settings, clock=clock)
        self.monitor = ProgressMonitor(self.progress, settings, clock=clock)
        # (project_id, step) -> job id of each dispatch/observe cycle in flight
        self.active_jobs: dict[tuple[str, int], str] = {}

    # ------------------------------------------------------------------
    # factories
    # ------------------------------------------------------------------
    def controller(self, user_id: str) -> WorkflowController:
        return WorkflowController(self.workflows, user_id, clock=self._clock)

    def coordinator(self, step: int, user_id: str, **kwargs: Any) -> StepCoordinator:
        try:
            coordinator_cls = COORDINATORS[step]
        except KeyError:
            raise ValueError(f"No coordinator for workflow step {step}") from None
        controller = self.controller(user_id)
        if issubclass(coordinator_cls, JobStepCoordinator):
            return coordinator_cls(
                controller,
                self.projects,
                self.dispatcher,
                self.monitor,
                settings=self.settings,
                active_jobs=self.active_jobs,
                **kwargs,
            )
        return coordinator_cls(controller, self.projects, settings=self.settings, **kwargs)

    def navigation_guard(self, user_id: str, prompt: ConfirmPrompt, **kwargs: Any) -> NavigationGuard:
        return NavigationGuard(self.controller(user_id), self.projects, prompt=prompt, **kwargs)

    # ------------------------------------------------------------------
    # jobs & progress ingestion
    # ------------------------------------------------------------------
    async def start_job(
        self,
        project_id: str,
        user_id: str,
        kind: str,
        *,
        report_id: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> str:
        """Dispatch a job outside the wizard screens.

        File analysis with nothing left to process does not reach the worker;
        a completed record is written under a fresh job id instead.
        """

        project = await self.projects.get_project(project_id)
        file_ids: list[str] = []
        if kind == "file_analysis":
            pending = await self.projects.list_unprocessed_files(project_id)
            if not pending:
                job_id = str(uuid4())
                await self.progress.append(
                    ProgressRecord(
                        job_id=job_id,
                        status="completed",
                        message="No files to process",
                        progress=100,
                        created_at=self._clock(),
                    )
                )
                logger.info(f"No unprocessed files for project {project_id}; job {job_id} completed immediately")
                return job_id
            file_ids = [item.file_id for item in pending]
        elif kind == "image_analysis":
            file_ids = [item.file_id for item in await self.projects.list_unprocessed_files(project_id) if item.kind == "image"]

        target = DispatchTarget(
            project_id=project_id,
            user_id=user_id,
            name=project.name if project else "",
            report_id=report_id,
            file_ids=file_ids,
        )
        return await self.dispatcher.dispatch(kind, target, context)

    async def record_progress(self, job_id: str, update: ProgressCallback) -> ProgressRecord:
        """Store a progress callback from the worker."""

        record = await self.progress.append(
            ProgressRecord(
                job_id=job_id,
                status=update.status,
                message=update.message,
                progress=update.progress,
                created_at=self._clock(),
                report_id=update.report_id,
            )
        )
        if update.status == "completed" and update.content and update.report_id:
            try:
                await self.projects.update_report(update.report_id, content=update.content)
            except KeyError:
                logger.warning(f"Completed job {job_id} references unknown report {update.report_id}")
        return record

    # ------------------------------------------------------------------
    # testing helpers
    # ------------------------------------------------------------------
    def reset(self) -> None:
        self.progress.reset()
        self.workflows.reset()
        self.projects.reset()
        self.active_jobs.clear()


_service: WorkflowService | None = None


def get_workflow_service() -> WorkflowService:
    """Return the singleton workflow service for the process."""

    global _service
    if _service is None:
        _service = WorkflowService(Settings.from_env())
    return _service


def configure_workflow_service(service: WorkflowService) -> None:
    """Install the service used by the API routes."""

    global _service
    _service = service


def reset_workflow_state() -> None:
    """Reset the in-memory stores (used in tests)."""

    if _service is not None:
        _service.reset()

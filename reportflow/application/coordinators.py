"""Step coordinators for workflow steps 2 to 6.

Each coordinator backs one wizard screen: it resolves the active project,
checks its step's preconditions, and for the job-launching steps drives
dispatch and progress observation until the step is satisfied.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, ClassVar

from reportflow.core.config import Settings
from reportflow.core.errors import (
    DispatchError,
    ReportflowError,
    StaleJobError,
    SubscriptionError,
    WorkerReportedError,
    WorkflowError,
)
from reportflow.domain import FIRST_STEP, LAST_STEP, ProgressSnapshot, Report
from reportflow.infrastructure import ProjectRepository

from .dispatcher import DispatchTarget, JobDispatcher
from .monitor import ObservationSession, ProgressMonitor
from .workflow import WorkflowController

logger = logging.getLogger(__name__)

TEST_TITLE_PREFIX = "##TESTING##"


@dataclass(slots=True)
class CoordinatorState:
    """What the step screen renders."""

    phase: str = "idle"
    progress: int = 0
    message: str = ""
    error: ReportflowError | None = None
    slow: bool = False
    retry_available: bool = False
    redirect_to: int | None = None
    advanced_to: int | None = None
    counters: dict[str, int] = field(default_factory=dict)


@dataclass(slots=True)
class ScreenHandlers:
    """Actions a screen's dialogs call back into, injected once per screen."""

    on_edit: Callable[..., Any] | None = None
    on_delete: Callable[..., Any] | None = None
    on_analyze: Callable[..., Any] | None = None
    on_file_added: Callable[..., Any] | None = None

    async def invoke(self, action: str, *args: Any) -> Any:
        handler = getattr(self, f"on_{action}", None)
        if handler is None:
            raise WorkflowError(f"No handler registered for {action!r}")
        result = handler(*args)
        if inspect.isawaitable(result):
            result = await result
        return result


class StepCoordinator:
    step: ClassVar[int]

    def __init__(
        self,
        controller: WorkflowController,
        projects: ProjectRepository,
        *,
        settings: Settings,
    ) -> None:
        self._controller = controller
        self._projects = projects
        self._settings = settings
        self.project_id: str | None = None
        self.state = CoordinatorState()

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------
    async def mount(self) -> str | None:
        """Resolve the active project; without one, redirect to step 1."""

        position = await self._controller.resume()
        if not position.started:
            logger.info(f"No active workflow for step {self.step}; redirecting to step {FIRST_STEP}")
            self.state.redirect_to = FIRST_STEP
            return None
        self.project_id = position.project_id
        await self._on_mount(position.project_id)
        return self.project_id

    async def _on_mount(self, project_id: str) -> None:
        return None

    def teardown(self) -> None:
        return None

    def _require_project(self) -> str:
        if self.project_id is None:
            raise WorkflowError(f"Step {self.step} has no active project")
        return self.project_id

    # ------------------------------------------------------------------
    # navigation
    # ------------------------------------------------------------------
    async def can_advance(self) -> bool:
        return True

    async def next(self) -> int:
        project_id = self._require_project()
        if not await self.can_advance():
            raise WorkflowError(f"Step {self.step} is not complete yet")
        self.teardown()
        target = self.step + 1
        await self._controller.advance(project_id, target)
        self.state.advanced_to = target
        return target

    async def back(self) -> int:
        project_id = self._require_project()
        self.teardown()
        target = max(FIRST_STEP, self.step - 1)
        await self._controller.advance(project_id, target)
        self.state.advanced_to = target
        return target


class FilesStepCoordinator(StepCoordinator):
    """Step 2: at least one uploaded file unlocks the next step."""

    step = 2

    def __init__(self, *args: Any, handlers: ScreenHandlers | None = None, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.handlers = handlers or ScreenHandlers()

    async def _on_mount(self, project_id: str) -> None:
        await self.refresh()

    async def refresh(self) -> dict[str, int]:
        self.state.counters = await self._projects.count_files(self._require_project())
        return self.state.counters

    async def file_added(self, file: Any) -> None:
        await self.refresh()
        if self.handlers.on_file_added is not None:
            await self.handlers.invoke("file_added", file)

    async def can_advance(self) -> bool:
        counters = await self.refresh()
        return counters.get("files", 0) > 0


class NotesStepCoordinator(StepCoordinator):
    """Step 4: notes editing; the notes step itself never blocks."""

    step = 4

    def __init__(self, *args: Any, handlers: ScreenHandlers | None = None, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.handlers = handlers or ScreenHandlers()

    async def edit(self, note: Any) -> Any:
        return await self.handlers.invoke("edit", note)

    async def delete(self, note: Any) -> Any:
        return await self.handlers.invoke("delete", note)

    async def analyze(self, note: Any) -> Any:
        return await self.handlers.invoke("analyze", note)


class JobStepCoordinator(StepCoordinator):
    """Template for steps that run a job on the external worker."""

    kind: ClassVar[str]
    complete_message: ClassVar[str] = "Processing complete"
    nothing_to_do_message: ClassVar[str] = "Nothing to process"
    stale_message: ClassVar[str] = "Previous attempt timed out. Start again to retry."

    def __init__(
        self,
        controller: WorkflowController,
        projects: ProjectRepository,
        dispatcher: JobDispatcher,
        monitor: ProgressMonitor,
        *,
        settings: Settings,
        active_jobs: dict[tuple[str, int], str] | None = None,
    ) -> None:
        super().__init__(controller, projects, settings=settings)
        self._dispatcher = dispatcher
        self._monitor = monitor
        # (project_id, step) -> job id, shared by every coordinator of the process
        self._active_jobs = active_jobs if active_jobs is not None else {}
        self._session: ObservationSession | None = None
        self._advance_task: asyncio.Task[None] | None = None
        self._active = False
        self.job_id: str | None = None

    @property
    def active(self) -> bool:
        return self._active

    @property
    def session(self) -> ObservationSession | None:
        return self._session

    @property
    def advance_task(self) -> asyncio.Task[None] | None:
        return self._advance_task

    # ------------------------------------------------------------------
    # hooks
    # ------------------------------------------------------------------
    async def _has_pending_work(self, project_id: str) -> bool:
        return True

    async def _build_target(self, project_id: str) -> DispatchTarget:
        raise NotImplementedError

    def _context(self) -> dict[str, Any]:
        return {}

    async def _after_dispatch(self, job_id: str) -> None:
        return None

    async def _on_dispatch_failed(self, error: DispatchError) -> None:
        return None

    async def _on_success(self, project_id: str) -> None:
        return None

    async def _on_failure(self, project_id: str, error: ReportflowError) -> None:
        return None

    # ------------------------------------------------------------------
    # dispatch / observe cycle
    # ------------------------------------------------------------------
    async def start(self) -> str | None:
        """Dispatch this step's job and observe it.

        Returns the job id, or ``None`` when nothing was dispatched: a cycle
        is already active for the project, the step is already complete,
        there was no work to do, or the dispatch failed (see ``state.error``).
        """

        project_id = self._require_project()
        key = (project_id, self.step)
        if self._active or self.state.phase == "complete":
            logger.debug(f"Step {self.step} start ignored for project {project_id}; already {self.state.phase}")
            return None
        if key in self._active_jobs:
            logger.info(
                f"Step {self.step} start ignored for project {project_id}; "
                f"job {self._active_jobs[key] or '(dispatching)'} already in flight"
            )
            return None
        # claimed before the first await so a concurrent start sees it
        self._active_jobs[key] = ""
        self._active = True
        counters = self.state.counters
        self.state = CoordinatorState(phase="running", message="Starting…", counters=counters)

        try:
            if not await self._has_pending_work(project_id):
                logger.info(f"Step {self.step} has no pending work for project {project_id}; skipping dispatch")
                self._active_jobs.pop(key, None)
                self.state.phase = "complete"
                self.state.progress = 100
                self.state.message = self.nothing_to_do_message
                self._active = False
                return None

            target = await self._build_target(project_id)
            job_id = await self._dispatcher.dispatch(self.kind, target, self._context())
        except Exception as exc:
            if isinstance(exc, DispatchError):
                error = exc
                logger.warning(f"Step {self.step} dispatch failed for project {project_id}: {exc}")
            else:
                error = DispatchError(f"Could not start {self.kind}: {exc}", kind=self.kind)
                logger.exception(f"Step {self.step} dispatch crashed for project {project_id}")
            self._active_jobs.pop(key, None)
            self._active = False
            await self._on_dispatch_failed(error)
            self.state.phase = "error"
            self.state.error = error
            self.state.message = str(error)
            self.state.retry_available = True
            return None

        self._active_jobs[key] = job_id
        self.job_id = job_id
        await self._after_dispatch(job_id)
        await self._observe(project_id, job_id)
        return job_id

    async def _resume_in_flight(self, project_id: str) -> bool:
        """Re-attach to a job another coordinator dispatched for this step."""

        key = (project_id, self.step)
        job_id = self._active_jobs.get(key)
        if not job_id:
            return False
        if await self._monitor.is_stale(job_id):
            logger.info(f"In-flight job {job_id} for step {self.step} is stale; releasing it")
            self._active_jobs.pop(key, None)
            return False
        logger.info(f"Resuming observation of job {job_id} for step {self.step} of project {project_id}")
        self._active = True
        self.job_id = job_id
        self.state.phase = "running"
        await self._observe(project_id, job_id)
        return True

    def _release(self, project_id: str, job_id: str | None) -> None:
        key = (project_id, self.step)
        if job_id is not None and self._active_jobs.get(key) == job_id:
            del self._active_jobs[key]

    async def _observe(self, project_id: str, job_id: str) -> None:
        async def on_complete(success: bool) -> None:
            await self._handle_complete(project_id, job_id, success)

        async def on_stale(error: StaleJobError) -> None:
            await self._handle_stale(project_id, error)

        self._session = await self._monitor.observe(
            job_id,
            self._handle_update,
            on_complete,
            on_stale=on_stale,
            on_slow=self._handle_slow,
            on_error=self._handle_channel_error,
        )

    def _handle_update(self, snapshot: ProgressSnapshot) -> None:
        self.state.progress = snapshot.progress
        self.state.message = snapshot.message
        if snapshot.status == "generating":
            self.state.phase = "running"

    def _handle_slow(self, snapshot: ProgressSnapshot) -> None:
        self.state.slow = True
        self.state.message = "This is taking longer than expected. You can keep waiting or come back later."

    def _handle_channel_error(self, error: SubscriptionError) -> None:
        self.state.error = error

    async def _handle_complete(self, project_id: str, job_id: str, success: bool) -> None:
        self._active = False
        self._release(project_id, job_id)
        if success:
            await self._on_success(project_id)
            self.state.phase = "complete"
            self.state.progress = 100
            self.state.message = self.complete_message
            self.state.error = None
            self._schedule_advance(project_id)
            return

        error = WorkerReportedError(job_id, self.state.message)
        logger.warning(f"Step {self.step} job {job_id} failed: {error}")
        await self._on_failure(project_id, error)
        self.state.phase = "error"
        self.state.error = error
        self.state.retry_available = True

    async def _handle_stale(self, project_id: str, error: StaleJobError) -> None:
        self._active = False
        self._release(project_id, self.job_id)
        await self._on_failure(project_id, error)
        self.state.phase = "stale"
        self.state.error = error
        self.state.message = self.stale_message
        self.state.retry_available = True

    def _schedule_advance(self, project_id: str) -> None:
        target = self.step + 1

        async def advance_later() -> None:
            await asyncio.sleep(self._settings.auto_advance_delay)
            await self._controller.advance(project_id, target)
            self.state.advanced_to = target

        self._cancel_advance()
        self._advance_task = asyncio.create_task(advance_later(), name=f"auto-advance-{project_id}-{target}")

    def _cancel_advance(self) -> None:
        if self._advance_task is not None and not self._advance_task.done():
            self._advance_task.cancel()
        self._advance_task = None

    def teardown(self) -> None:
        if self._session is not None:
            self._session.unsubscribe()
            self._session = None
        self._cancel_advance()
        self._active = False

    async def retry(self) -> str | None:
        """Start over from a clean state after an error or a stale job."""

        self.teardown()
        self.job_id = None
        self.state = CoordinatorState(counters=self.state.counters)
        return await self.start()

    async def can_advance(self) -> bool:
        return self.state.phase == "complete"


class FileAnalysisCoordinator(JobStepCoordinator):
    """Step 3: analyse uploaded files that have not been processed yet."""

    step = 3
    kind = "file_analysis"
    complete_message = "All files have been successfully processed"
    nothing_to_do_message = "No files to process"

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._pending_file_ids: list[str] = []

    async def _on_mount(self, project_id: str) -> None:
        self.state.counters = await self._projects.count_files(project_id)
        await self._resume_in_flight(project_id)

    async def _has_pending_work(self, project_id: str) -> bool:
        pending = await self._projects.list_unprocessed_files(project_id)
        self._pending_file_ids = [item.file_id for item in pending]
        return bool(pending)

    async def _build_target(self, project_id: str) -> DispatchTarget:
        project = await self._projects.get_project(project_id)
        return DispatchTarget(
            project_id=project_id,
            user_id=self._controller.user_id,
            name=project.name if project else "",
            file_ids=list(self._pending_file_ids),
        )

    def _context(self) -> dict[str, Any]:
        return {"file_count": len(self._pending_file_ids)}

    async def _on_success(self, project_id: str) -> None:
        self.state.counters = await self._projects.count_files(project_id)


class ReportGenerationCoordinator(JobStepCoordinator):
    """Step 5: generate the report for the project."""

    step = 5
    kind = "report_generation"
    complete_message = "Report generated successfully."
    stale_message = "Previous report timed out. Click Generate Report to start a new one."

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.report: Report | None = None
        self._project_name = ""

    async def _on_mount(self, project_id: str) -> None:
        report = await self._projects.latest_report(project_id)
        self.report = report
        if report is None:
            return

        if report.status == "processing":
            if report.job_id is None or await self._monitor.is_stale(report.job_id):
                logger.info(f"Report {report.report_id} is stale; archiving")
                self.report = await self._projects.update_report(report.report_id, status="archived")
                self.state.phase = "stale"
                self.state.error = StaleJobError(report.job_id or report.report_id)
                self.state.message = self.stale_message
                self.state.retry_available = True
                return
            logger.info(f"Resuming observation of report {report.report_id} (job {report.job_id})")
            self._active_jobs.setdefault((project_id, self.step), report.job_id)
            self._active = True
            self.job_id = report.job_id
            self.state.phase = "running"
            await self._observe(project_id, report.job_id)
            return

        if report.content and report.status not in ("draft", "archived"):
            self.state.phase = "complete"
            self.state.progress = 100
            self.state.message = self.complete_message

    async def _build_target(self, project_id: str) -> DispatchTarget:
        project = await self._projects.get_project(project_id)
        if project is None:
            raise DispatchError(f"Project {project_id} not found", kind=self.kind)
        self._project_name = project.name
        target = DispatchTarget(project_id=project_id, user_id=self._controller.user_id, name=project.name)
        is_test = self._dispatcher.is_test_target(target)
        title = f"{project.name} Report"
        if is_test:
            title = f"{TEST_TITLE_PREFIX} {title}"

        images = [item for item in await self._projects.list_files(project_id) if item.kind == "image"]
        self.report = await self._projects.create_report(
            Report(
                report_id="",
                project_id=project_id,
                user_id=self._controller.user_id,
                title=title,
                status="processing",
                template_id=project.template_id,
                image_urls=[item.file_path for item in images if item.file_path],
            )
        )
        target.report_id = self.report.report_id
        return target

    def _context(self) -> dict[str, Any]:
        report = self.report
        return {
            "project_name": self._project_name,
            "template_id": report.template_id if report else None,
            "image_urls": list(report.image_urls) if report else [],
        }

    async def _after_dispatch(self, job_id: str) -> None:
        if self.report is not None:
            self.report = await self._projects.update_report(self.report.report_id, job_id=job_id)

    async def _on_dispatch_failed(self, error: DispatchError) -> None:
        if self.report is not None and self.report.status == "processing":
            self.report = await self._projects.update_report(self.report.report_id, status="archived")

    async def _on_success(self, project_id: str) -> None:
        if self.report is None:
            return
        current = await self._projects.get_report(self.report.report_id)
        if current is not None and current.status == "processing":
            current = await self._projects.update_report(current.report_id, status="draft")
        self.report = current

    async def _on_failure(self, project_id: str, error: ReportflowError) -> None:
        if self.report is not None:
            self.report = await self._projects.update_report(self.report.report_id, status="archived")


class ReviewStepCoordinator(StepCoordinator):
    """Step 6: review; finishing leaves the workflow."""

    step = LAST_STEP

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.report: Report | None = None

    async def _on_mount(self, project_id: str) -> None:
        self.report = await self._projects.latest_report(project_id)

    async def finish(self, *, publish: bool = True) -> None:
        project_id = self._require_project()
        if publish and self.report is not None and self.report.status == "draft":
            self.report = await self._projects.update_report(self.report.report_id, status="published")
        await self._controller.exit(project_id)
        self.state.phase = "complete"
        self.state.advanced_to = 0

    async def next(self) -> int:
        await self.finish()
        return 0

"""Six-step workflow state machine for a user's projects."""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable

from reportflow.core.errors import WorkflowError
from reportflow.domain import (
    FIRST_STEP,
    LAST_STEP,
    STEP_EXITED,
    WorkflowPosition,
    WorkflowState,
    utcnow,
)
from reportflow.infrastructure import WorkflowRepository

logger = logging.getLogger(__name__)


class WorkflowController:
    """Owns the persisted step of each project for one user.

    Business preconditions are checked by the step coordinators before they
    call :meth:`advance`; the controller only validates the step range.
    Concurrent writers are not locked out, the last write wins.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        user_id: str,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repository = repository
        self.user_id = user_id
        self._clock = clock

    async def get_current_step(self, project_id: str) -> int:
        state = await self._repository.get(project_id)
        if state is None:
            return FIRST_STEP
        return state.step

    async def advance(self, project_id: str, next_step: int) -> WorkflowState:
        if not STEP_EXITED <= next_step <= LAST_STEP:
            raise WorkflowError(f"Workflow step must be between {STEP_EXITED} and {LAST_STEP}, got {next_step}")
        state = WorkflowState(
            project_id=project_id,
            user_id=self.user_id,
            step=next_step,
            updated_at=self._clock(),
        )
        saved = await self._repository.upsert(state)
        logger.info(f"Project {project_id} workflow step -> {next_step}")
        return saved

    async def resume(self) -> WorkflowPosition:
        """Return the user's most recently edited workflow.

        No row, or a row that has been exited, means the workflow has not
        started and the caller lands on step 1 with no project.
        """

        state = await self._repository.latest_for_user(self.user_id)
        if state is None or not state.in_workflow:
            return WorkflowPosition(project_id=None, step=FIRST_STEP)
        return WorkflowPosition(project_id=state.project_id, step=state.step)

    async def exit(self, project_id: str) -> WorkflowState:
        """Leave the workflow; the row stays for history with step 0."""

        return await self.advance(project_id, STEP_EXITED)

    async def resolve_step(self, project_id: str | None, requested: int) -> int:
        """Return the step the user may open when asking for ``requested``.

        Step 1 is always reachable. Later steps need an active workflow and
        cannot skip ahead of the persisted step.
        """

        if requested <= FIRST_STEP:
            return FIRST_STEP
        if requested > LAST_STEP:
            raise WorkflowError(f"Unknown workflow step {requested}")

        current: int | None = None
        if project_id is not None:
            state = await self._repository.get(project_id)
            if state is not None and state.in_workflow:
                current = state.step
        if current is None:
            position = await self.resume()
            if not position.started:
                return FIRST_STEP
            current = position.step
        if requested > current:
            logger.info(f"Step {requested} requested ahead of current step {current}; redirecting")
            return current
        return requested

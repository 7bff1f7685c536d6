"""Guard against leaving the workflow while a step past the first is active."""
from __future__ import annotations

import inspect
import logging
from typing import Any, Awaitable, Callable

from reportflow.domain import FIRST_STEP
from reportflow.infrastructure import ProjectRepository

from .workflow import WorkflowController

logger = logging.getLogger(__name__)

ALLOW = "allow"
DENY = "deny"
IGNORED = "ignored"

WIZARD_PREFIX = "/dashboard/report-wizard"

ConfirmPrompt = Callable[[str], "Awaitable[bool] | bool"]


class NavigationGuard:
    """Asks for confirmation before navigation leaves an active workflow.

    Only one prompt may be outstanding; attempts made while it is open are
    ignored until it resolves.
    """

    def __init__(
        self,
        controller: WorkflowController,
        projects: ProjectRepository,
        *,
        prompt: ConfirmPrompt,
        mark_report_complete: bool = False,
        wizard_prefix: str = WIZARD_PREFIX,
    ) -> None:
        self._controller = controller
        self._projects = projects
        self._prompt = prompt
        self._mark_report_complete = mark_report_complete
        self._wizard_prefix = wizard_prefix.rstrip("/")
        self._pending: str | None = None

    @property
    def pending_target(self) -> str | None:
        return self._pending

    @property
    def prompting(self) -> bool:
        return self._pending is not None

    def _inside_wizard(self, target: str) -> bool:
        return target == self._wizard_prefix or target.startswith(f"{self._wizard_prefix}/")

    async def intercept(self, target: str) -> str:
        """Decide whether navigation to ``target`` may proceed.

        Returns ``"allow"``, ``"deny"`` (prompt cancelled) or ``"ignored"``
        (another prompt is already open).
        """

        if self._pending is not None:
            logger.debug(f"Navigation to {target} ignored; confirmation for {self._pending} pending")
            return IGNORED
        if self._inside_wizard(target):
            return ALLOW

        self._pending = target
        try:
            position = await self._controller.resume()
            if not position.started or position.step <= FIRST_STEP:
                return ALLOW

            confirmed: Any = self._prompt(target)
            if inspect.isawaitable(confirmed):
                confirmed = await confirmed
            if not confirmed:
                logger.info(f"User stayed in workflow (navigation to {target} cancelled)")
                return DENY

            await self.leave(position.project_id)
            return ALLOW
        finally:
            self._pending = None

    async def leave(self, project_id: str | None) -> None:
        """Exit the workflow, optionally publishing the current draft report."""

        if project_id is None:
            return
        if self._mark_report_complete:
            report = await self._projects.latest_report(project_id)
            if report is not None and report.status == "draft":
                await self._projects.update_report(report.report_id, status="published")
        await self._controller.exit(project_id)
        logger.info(f"User exited workflow for project {project_id}")

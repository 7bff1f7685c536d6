"""Persistence for per-project workflow state."""
from __future__ import annotations

from dataclasses import replace
from typing import Protocol

from reportflow.domain import WorkflowState


class WorkflowRepository(Protocol):
    """Persistence contract for workflow rows (one per project)."""

    async def get(self, project_id: str) -> WorkflowState | None: ...

    async def upsert(self, state: WorkflowState) -> WorkflowState: ...

    async def latest_for_user(self, user_id: str) -> WorkflowState | None: ...

    def reset(self) -> None: ...


class InMemoryWorkflowRepository:
    """Simple in-memory repository; last write wins."""

    def __init__(self) -> None:
        self._rows: dict[str, WorkflowState] = {}

    async def get(self, project_id: str) -> WorkflowState | None:
        row = self._rows.get(project_id)
        return replace(row) if row else None

    async def upsert(self, state: WorkflowState) -> WorkflowState:
        self._rows[state.project_id] = replace(state)
        return replace(state)

    async def latest_for_user(self, user_id: str) -> WorkflowState | None:
        rows = [row for row in self._rows.values() if row.user_id == user_id]
        if not rows:
            return None
        return replace(max(rows, key=lambda row: row.updated_at))

    def reset(self) -> None:
        self._rows.clear()

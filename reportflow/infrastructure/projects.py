"""Projects, files and reports read and updated by the step coordinators."""
from __future__ import annotations

from collections import Counter
from dataclasses import replace
from typing import Callable, Protocol
from uuid import uuid4

from reportflow.domain import Project, ProjectFile, Report, utcnow


class ProjectRepository(Protocol):
    """Persistence contract for the entities around a workflow."""

    async def get_project(self, project_id: str) -> Project | None: ...

    async def list_files(self, project_id: str) -> list[ProjectFile]: ...

    async def list_unprocessed_files(self, project_id: str) -> list[ProjectFile]: ...

    async def count_files(self, project_id: str) -> dict[str, int]: ...

    async def latest_report(self, project_id: str) -> Report | None: ...

    async def get_report(self, report_id: str) -> Report | None: ...

    async def create_report(self, report: Report) -> Report: ...

    async def update_report(self, report_id: str, **changes: object) -> Report: ...

    def reset(self) -> None: ...


class InMemoryProjectRepository:
    """In-memory stand-in for the managed backend tables."""

    def __init__(self, id_factory: Callable[[], str] | None = None) -> None:
        self._id_factory = id_factory or (lambda: str(uuid4()))
        self._projects: dict[str, Project] = {}
        self._files: dict[str, ProjectFile] = {}
        self._reports: dict[str, Report] = {}

    # ------------------------------------------------------------------
    # seeding
    # ------------------------------------------------------------------
    def add_project(self, project: Project) -> Project:
        self._projects[project.project_id] = project
        return project

    def add_file(self, file: ProjectFile) -> ProjectFile:
        self._files[file.file_id] = file
        return file

    def mark_processed(self, file_id: str) -> None:
        current = self._files[file_id]
        self._files[file_id] = replace(current, processed=True)

    # ------------------------------------------------------------------
    # projects & files
    # ------------------------------------------------------------------
    async def get_project(self, project_id: str) -> Project | None:
        return self._projects.get(project_id)

    async def list_files(self, project_id: str) -> list[ProjectFile]:
        return [item for item in self._files.values() if item.project_id == project_id]

    async def list_unprocessed_files(self, project_id: str) -> list[ProjectFile]:
        return [item for item in await self.list_files(project_id) if not item.processed]

    async def count_files(self, project_id: str) -> dict[str, int]:
        files = await self.list_files(project_id)
        by_kind = Counter(item.kind for item in files)
        return {
            "files": len(files),
            "images": by_kind.get("image", 0),
            "processed": sum(1 for item in files if item.processed),
        }

    # ------------------------------------------------------------------
    # reports
    # ------------------------------------------------------------------
    async def latest_report(self, project_id: str) -> Report | None:
        reports = [item for item in self._reports.values() if item.project_id == project_id]
        if not reports:
            return None
        return max(reports, key=lambda item: item.created_at)

    async def get_report(self, report_id: str) -> Report | None:
        return self._reports.get(report_id)

    async def create_report(self, report: Report) -> Report:
        if not report.report_id:
            report = replace(report, report_id=self._id_factory())
        self._reports[report.report_id] = report
        return report

    async def update_report(self, report_id: str, **changes: object) -> Report:
        current = self._reports.get(report_id)
        if current is None:
            raise KeyError(report_id)
        updated = replace(current, updated_at=utcnow(), **changes)  # type: ignore[arg-type]
        self._reports[report_id] = updated
        return updated

    def reset(self) -> None:
        self._projects.clear()
        self._files.clear()
        self._reports.clear()

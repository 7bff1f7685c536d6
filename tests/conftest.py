from __future__ import annotations

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import httpx
import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from reportflow.application import WorkflowService, configure_workflow_service, reset_workflow_state
from reportflow.core.config import JOB_KINDS, Settings, WebhookTarget
from reportflow.domain import Project, ProjectFile, ProgressRecord
from reportflow.infrastructure import WorkerClient


class FakeClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class WorkerRecorder:
    """httpx mock handler standing in for the worker webhook."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.post_status = 200
        self.get_status = 200
        self.raise_error: Exception | None = None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.raise_error is not None:
            raise self.raise_error
        status = self.post_status if request.method == "POST" else self.get_status
        return httpx.Response(status, json={"received": status < 400})


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def settings() -> Settings:
    return Settings(
        environment="production",
        callback_base_url="http://api.test/api",
        webhooks={
            kind: WebhookTarget(
                url=f"http://worker.test/webhook/{kind}",
                test_url=f"http://worker.test/webhook-test/{kind}",
            )
            for kind in JOB_KINDS
        },
        poll_interval=0.01,
        poll_attempt_budget=1000,
        resubscribe_delay=0.01,
        max_resubscribe_attempts=5,
        auto_advance_delay=0.0,
    )


@pytest.fixture()
def worker() -> WorkerRecorder:
    return WorkerRecorder()


@pytest.fixture()
def service(settings, clock, worker):
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(worker))
    svc = WorkflowService(settings, worker=WorkerClient(http_client=http_client), clock=clock)
    configure_workflow_service(svc)
    yield svc
    reset_workflow_state()


@pytest.fixture()
def make_project(service):
    def _make(
        project_id: str = "p1",
        user_id: str = "u1",
        name: str = "Harbour Survey",
        files: list[tuple[str, str, bool]] | None = None,
    ) -> Project:
        project = service.projects.add_project(
            Project(project_id=project_id, user_id=user_id, name=name, template_id="tpl-1")
        )
        for file_id, kind, processed in files or []:
            service.projects.add_file(
                ProjectFile(
                    file_id=file_id,
                    project_id=project_id,
                    user_id=user_id,
                    name=f"{file_id}.bin",
                    kind=kind,
                    file_path=f"uploads/{project_id}/{file_id}",
                    processed=processed,
                )
            )
        return project

    return _make


@pytest.fixture()
def make_record(clock):
    def _make(job_id: str, status: str = "generating", progress: int = 0, message: str = "", **kwargs) -> ProgressRecord:
        kwargs.setdefault("created_at", clock())
        return ProgressRecord(job_id=job_id, status=status, message=message, progress=progress, **kwargs)

    return _make


@pytest.fixture()
def client(service):
    from fastapi.testclient import TestClient

    from reportflow.app import create_app

    app = create_app()
    with TestClient(app) as test_client:
        yield test_client

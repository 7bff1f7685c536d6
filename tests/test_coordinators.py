from __future__ import annotations

import asyncio
import json
from datetime import timedelta

import httpx
import pytest

from reportflow.application import ScreenHandlers, WorkflowService
from reportflow.core.errors import DispatchError, StaleJobError, WorkerReportedError, WorkflowError
from reportflow.core.schema import ProgressCallback
from reportflow.domain import Project, ProjectFile, Report
from reportflow.infrastructure import WorkerClient


async def _mounted(service, step, user_id="u1", project_id="p1", **kwargs):
    await service.controller(user_id).advance(project_id, step)
    coordinator = service.coordinator(step, user_id, **kwargs)
    await coordinator.mount()
    return coordinator


def test_file_analysis_without_pending_files_skips_dispatch(service, worker, make_project):
    make_project(files=[("f1", "document", True)])

    async def scenario():
        coordinator = await _mounted(service, 3)
        job_id = await coordinator.start()
        return coordinator, job_id, await coordinator.can_advance()

    coordinator, job_id, can_advance = asyncio.run(scenario())

    assert job_id is None
    assert worker.requests == []
    assert coordinator.state.phase == "complete"
    assert coordinator.state.progress == 100
    assert coordinator.state.message == "No files to process"
    assert can_advance
    assert coordinator.advance_task is None


def test_file_analysis_completes_and_advances(service, worker, make_project):
    make_project(files=[("f1", "document", False), ("f2", "image", False)])

    async def scenario():
        coordinator = await _mounted(service, 3)
        assert coordinator.state.counters == {"files": 2, "images": 1, "processed": 0}
        job_id = await coordinator.start()
        session = coordinator.session
        service.projects.mark_processed("f1")
        service.projects.mark_processed("f2")
        await service.record_progress(job_id, ProgressCallback(status="completed", progress=100, message="done"))
        await asyncio.wait_for(session.wait(), timeout=1)
        await asyncio.wait_for(coordinator.advance_task, timeout=1)
        step = await service.controller("u1").get_current_step("p1")
        return coordinator, job_id, step

    coordinator, job_id, step = asyncio.run(scenario())

    body = json.loads(worker.requests[0].content)
    assert body["job"] == job_id
    assert sorted(body["file_ids"]) == ["f1", "f2"]
    assert body["context"] == {"file_count": 2}
    assert coordinator.state.phase == "complete"
    assert coordinator.state.message == "All files have been successfully processed"
    assert coordinator.state.counters["processed"] == 2
    assert coordinator.state.advanced_to == 4
    assert step == 4
    assert not coordinator.active


def test_second_start_while_active_is_ignored(service, worker, make_project):
    make_project(files=[("f1", "document", False)])

    async def scenario():
        coordinator = await _mounted(service, 3)
        first = await coordinator.start()
        second = await coordinator.start()
        coordinator.teardown()
        return first, second

    first, second = asyncio.run(scenario())

    assert first is not None
    assert second is None
    assert len(worker.requests) == 1


def test_worker_error_then_retry(service, worker, make_project):
    make_project(files=[("f1", "document", False)])

    async def scenario():
        coordinator = await _mounted(service, 3)
        job_id = await coordinator.start()
        session = coordinator.session
        await service.record_progress(job_id, ProgressCallback(status="error", message="Parser crashed"))
        await asyncio.wait_for(session.wait(), timeout=1)
        failed_state = (coordinator.state.phase, coordinator.state.error, coordinator.state.retry_available)
        retried = await coordinator.retry()
        phase_after_retry = coordinator.state.phase
        coordinator.teardown()
        return job_id, failed_state, retried, phase_after_retry

    job_id, (phase, error, retry_available), retried, phase_after_retry = asyncio.run(scenario())

    assert phase == "error"
    assert isinstance(error, WorkerReportedError)
    assert error.job_id == job_id
    assert str(error) == "Parser crashed"
    assert retry_available
    assert retried is not None and retried != job_id
    assert phase_after_retry == "running"
    assert len(worker.requests) == 2


def test_dispatch_failure_then_retry(service, worker, make_project):
    make_project(files=[("f1", "document", False)])
    worker.post_status = 500
    worker.get_status = 500

    async def scenario():
        coordinator = await _mounted(service, 3)
        job_id = await coordinator.start()
        failed = (coordinator.state.phase, coordinator.state.error, coordinator.active)
        worker.post_status = 200
        retried = await coordinator.retry()
        coordinator.teardown()
        return job_id, failed, retried

    job_id, (phase, error, active), retried = asyncio.run(scenario())

    assert job_id is None
    assert phase == "error"
    assert isinstance(error, DispatchError)
    assert not active
    assert retried is not None


def test_back_tears_down_observation(service, make_project):
    make_project(files=[("f1", "document", False)])

    async def scenario():
        coordinator = await _mounted(service, 3)
        job_id = await coordinator.start()
        session = coordinator.session
        target = await coordinator.back()
        step = await service.controller("u1").get_current_step("p1")
        return job_id, session, target, step

    job_id, session, target, step = asyncio.run(scenario())

    assert target == 2
    assert step == 2
    assert session.outcome == "cancelled"
    assert service.progress.subscriber_count(job_id) == 0


def test_mount_without_active_workflow_redirects(service, make_project):
    make_project()

    async def scenario():
        coordinator = service.coordinator(3, "u1")
        project_id = await coordinator.mount()
        with pytest.raises(WorkflowError):
            await coordinator.next()
        return coordinator, project_id

    coordinator, project_id = asyncio.run(scenario())

    assert project_id is None
    assert coordinator.state.redirect_to == 1


def test_report_generation_produces_draft_and_advances(service, worker, make_project):
    make_project(files=[("img1", "image", True), ("doc1", "document", True)])

    async def scenario():
        coordinator = await _mounted(service, 5)
        job_id = await coordinator.start()
        report = coordinator.report
        session = coordinator.session
        await service.record_progress(
            job_id,
            ProgressCallback(status="completed", progress=100, content="# Harbour Survey", report_id=report.report_id),
        )
        await asyncio.wait_for(session.wait(), timeout=1)
        await asyncio.wait_for(coordinator.advance_task, timeout=1)
        stored = await service.projects.get_report(report.report_id)
        step = await service.controller("u1").get_current_step("p1")
        return job_id, report, stored, step, coordinator

    job_id, report, stored, step, coordinator = asyncio.run(scenario())

    assert report.title == "Harbour Survey Report"
    assert report.image_urls == ["uploads/p1/img1"]
    body = json.loads(worker.requests[0].content)
    assert body["action"] == "generate_report"
    assert body["report_id"] == report.report_id
    assert body["context"]["template_id"] == "tpl-1"
    assert stored.job_id == job_id
    assert stored.status == "draft"
    assert stored.content == "# Harbour Survey"
    assert coordinator.state.message == "Report generated successfully."
    assert step == 6


def test_report_generation_uses_test_title_in_development(service, settings, worker, make_project):
    settings.environment = "development"
    make_project(name="Test Harbour")

    async def scenario():
        coordinator = await _mounted(service, 5)
        await coordinator.start()
        coordinator.teardown()
        return coordinator.report

    report = asyncio.run(scenario())

    assert report.title == "##TESTING## Test Harbour Report"
    assert str(worker.requests[0].url) == "http://worker.test/webhook-test/report_generation"


def test_report_dispatch_failure_archives_report(service, worker, make_project):
    make_project()
    worker.post_status = 503
    worker.get_status = 503

    async def scenario():
        coordinator = await _mounted(service, 5)
        job_id = await coordinator.start()
        return job_id, coordinator

    job_id, coordinator = asyncio.run(scenario())

    assert job_id is None
    assert coordinator.report.status == "archived"
    assert coordinator.state.retry_available


def test_stale_report_on_mount_is_archived(service, clock, make_project, make_record):
    make_project()

    async def scenario():
        await service.projects.create_report(
            Report(report_id="r1", project_id="p1", user_id="u1", title="Old", status="processing", job_id="old-job")
        )
        await service.progress.append(make_record("old-job", progress=40, created_at=clock() - timedelta(minutes=30)))
        coordinator = await _mounted(service, 5)
        return coordinator, await service.projects.get_report("r1")

    coordinator, stored = asyncio.run(scenario())

    assert stored.status == "archived"
    assert coordinator.state.phase == "stale"
    assert isinstance(coordinator.state.error, StaleJobError)
    assert coordinator.state.retry_available
    assert not coordinator.active


def test_processing_report_without_job_is_archived(service, make_project):
    make_project()

    async def scenario():
        await service.projects.create_report(
            Report(report_id="r1", project_id="p1", user_id="u1", title="Orphan", status="processing")
        )
        coordinator = await _mounted(service, 5)
        return coordinator, await service.projects.get_report("r1")

    coordinator, stored = asyncio.run(scenario())

    assert stored.status == "archived"
    assert coordinator.state.phase == "stale"


def test_live_report_job_is_resumed_on_mount(service, make_project, make_record):
    make_project()

    async def scenario():
        await service.projects.create_report(
            Report(report_id="r1", project_id="p1", user_id="u1", title="Live", status="processing", job_id="live-job")
        )
        await service.progress.append(make_record("live-job", progress=40, message="Drafting"))
        coordinator = await _mounted(service, 5)
        resumed = (coordinator.active, coordinator.job_id, coordinator.state.phase, coordinator.state.progress)
        session = coordinator.session
        await service.record_progress("live-job", ProgressCallback(status="completed", progress=100))
        await asyncio.wait_for(session.wait(), timeout=1)
        await asyncio.wait_for(coordinator.advance_task, timeout=1)
        return resumed, await service.projects.get_report("r1")

    resumed, stored = asyncio.run(scenario())

    assert resumed == (True, "live-job", "running", 40)
    assert stored.status == "draft"


def test_report_job_going_stale_archives_report(service, clock, make_project):
    make_project()

    async def scenario():
        coordinator = await _mounted(service, 5)
        await coordinator.start()
        session = coordinator.session
        clock.advance(minutes=16)
        await asyncio.wait_for(session.wait(), timeout=1)
        return coordinator

    coordinator = asyncio.run(scenario())

    assert coordinator.state.phase == "stale"
    assert isinstance(coordinator.state.error, StaleJobError)
    assert coordinator.report.status == "archived"
    assert coordinator.advance_task is None


def test_review_finish_publishes_and_exits(service, make_project):
    make_project()

    async def scenario():
        await service.projects.create_report(
            Report(report_id="r1", project_id="p1", user_id="u1", title="Done", status="draft", content="text")
        )
        coordinator = await _mounted(service, 6)
        result = await coordinator.next()
        position = await service.controller("u1").resume()
        return result, position, await service.projects.get_report("r1")

    result, position, stored = asyncio.run(scenario())

    assert result == 0
    assert not position.started
    assert stored.status == "published"


def test_files_step_needs_an_upload(service, make_project):
    make_project()
    added = []

    async def scenario():
        coordinator = await _mounted(service, 2, handlers=ScreenHandlers(on_file_added=added.append))
        blocked = await coordinator.can_advance()
        with pytest.raises(WorkflowError):
            await coordinator.next()
        upload = service.projects.add_file(
            ProjectFile(file_id="f1", project_id="p1", user_id="u1", name="site.pdf")
        )
        await coordinator.file_added(upload)
        target = await coordinator.next()
        return blocked, coordinator.state.counters, target

    blocked, counters, target = asyncio.run(scenario())

    assert blocked is False
    assert counters["files"] == 1
    assert [item.file_id for item in added] == ["f1"]
    assert target == 3


def test_notes_step_routes_dialog_actions_to_handlers(service, make_project):
    make_project()

    async def on_edit(note):
        return f"edited {note}"

    async def scenario():
        coordinator = await _mounted(service, 4, handlers=ScreenHandlers(on_edit=on_edit))
        edited = await coordinator.edit("n1")
        with pytest.raises(WorkflowError):
            await coordinator.delete("n1")
        return edited, await coordinator.next()

    edited, target = asyncio.run(scenario())

    assert edited == "edited n1"
    assert target == 5


def test_unknown_step_has_no_coordinator(service):
    with pytest.raises(ValueError):
        service.coordinator(1, "u1")


def test_second_coordinator_reattaches_instead_of_dispatching(service, worker, make_project):
    make_project(files=[("f1", "document", False)])

    async def scenario():
        first = await _mounted(service, 3)
        job_id = await first.start()
        second = service.coordinator(3, "u1")
        await second.mount()
        duplicate = await second.start()
        attached = (second.active, second.job_id, second.state.phase)
        first.teardown()
        second.teardown()
        return job_id, duplicate, attached

    job_id, duplicate, attached = asyncio.run(scenario())

    assert duplicate is None
    assert attached == (True, job_id, "running")
    assert len(worker.requests) == 1


def test_concurrent_starts_dispatch_once(service, worker, make_project):
    make_project(files=[("f1", "document", False)])

    async def scenario():
        first = await _mounted(service, 3)
        second = service.coordinator(3, "u1")
        await second.mount()
        results = await asyncio.gather(first.start(), second.start())
        first.teardown()
        second.teardown()
        return results

    results = asyncio.run(scenario())

    assert sorted(result is None for result in results) == [False, True]
    assert len(worker.requests) == 1


def test_finished_job_frees_the_step_for_a_new_dispatch(service, worker, make_project):
    make_project(files=[("f1", "document", False)])

    async def scenario():
        first = await _mounted(service, 3)
        job_id = await first.start()
        session = first.session
        await service.record_progress(job_id, ProgressCallback(status="error", message="Parser crashed"))
        await asyncio.wait_for(session.wait(), timeout=1)
        second = service.coordinator(3, "u1")
        await second.mount()
        retried = await second.start()
        second.teardown()
        return job_id, retried

    job_id, retried = asyncio.run(scenario())

    assert retried is not None and retried != job_id
    assert len(worker.requests) == 2
    assert service.active_jobs[("p1", 3)] == retried


def test_closed_http_client_fails_dispatch_cleanly(settings, clock, worker):
    async def scenario():
        http_client = httpx.AsyncClient(transport=httpx.MockTransport(worker))
        await http_client.aclose()
        svc = WorkflowService(settings, worker=WorkerClient(http_client=http_client), clock=clock)
        svc.projects.add_project(Project(project_id="p1", user_id="u1", name="Harbour Survey"))
        coordinator = await _mounted(svc, 5)
        job_id = await coordinator.start()
        return svc, coordinator, job_id

    svc, coordinator, job_id = asyncio.run(scenario())

    assert job_id is None
    assert coordinator.state.phase == "error"
    assert isinstance(coordinator.state.error, DispatchError)
    assert coordinator.state.error.kind == "report_generation"
    assert not coordinator.active
    assert coordinator.report.status == "archived"
    assert svc.active_jobs == {}


def test_unexpected_error_before_dispatch_is_contained(service, worker, make_project, monkeypatch):
    make_project()

    async def broken_listing(project_id):
        raise RuntimeError("storage offline")

    monkeypatch.setattr(service.projects, "list_files", broken_listing)

    async def scenario():
        coordinator = await _mounted(service, 5)
        job_id = await coordinator.start()
        return coordinator, job_id

    coordinator, job_id = asyncio.run(scenario())

    assert job_id is None
    assert coordinator.state.phase == "error"
    assert isinstance(coordinator.state.error, DispatchError)
    assert "storage offline" in coordinator.state.message
    assert coordinator.state.retry_available
    assert not coordinator.active
    assert service.active_jobs == {}
    assert worker.requests == []


def test_back_cancels_pending_auto_advance(service, settings, make_project):
    settings.auto_advance_delay = 0.2
    make_project(files=[("f1", "document", False)])

    async def scenario():
        coordinator = await _mounted(service, 3)
        job_id = await coordinator.start()
        session = coordinator.session
        await service.record_progress(job_id, ProgressCallback(status="completed", progress=100))
        await asyncio.wait_for(session.wait(), timeout=1)
        pending = coordinator.advance_task
        target = await coordinator.back()
        await asyncio.sleep(0.3)
        step = await service.controller("u1").get_current_step("p1")
        return pending, target, step, coordinator

    pending, target, step, coordinator = asyncio.run(scenario())

    assert pending is not None and pending.cancelled()
    assert target == 2
    assert step == 2
    assert coordinator.advance_task is None
    assert coordinator.state.advanced_to == 2

"""Callback receiver for worker progress updates."""
from __future__ import annotations

from fastapi import APIRouter, HTTPException, Request

from reportflow.application import get_workflow_service
from reportflow.core.schema import ProgressCallback, ProgressRecordModel
from reportflow.domain import ProgressRecord

router = APIRouter(prefix="/progress", tags=["progress"])


def _serialise(record: ProgressRecord) -> dict:
    return ProgressRecordModel(
        record_id=record.record_id,
        job_id=record.job_id,
        status=record.status,
        message=record.message,
        progress=record.progress,
        created_at=record.created_at,
        report_id=record.report_id,
    ).model_dump(mode="json")


@router.post("/{job_id}")
async def receive_progress(job_id: str, payload: ProgressCallback) -> dict:
    service = get_workflow_service()
    record = await service.record_progress(job_id, payload)
    return {"success": True, "message": "Progress update received", "data": _serialise(record)}


@router.get("/{job_id}")
async def receive_progress_query(job_id: str, request: Request) -> dict:
    """Same as the POST receiver, for workers that can only send query strings."""

    payload = ProgressCallback.model_validate(dict(request.query_params))
    service = get_workflow_service()
    record = await service.record_progress(job_id, payload)
    return {"success": True, "message": "Progress update received", "data": _serialise(record)}


@router.get("/{job_id}/latest")
async def get_latest_progress(job_id: str) -> dict:
    service = get_workflow_service()
    record = await service.progress.latest(job_id)
    if record is None:
        raise HTTPException(status_code=404, detail="no progress for job")
    return _serialise(record)

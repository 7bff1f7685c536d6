from __future__ import annotations

from fastapi import APIRouter, Header, HTTPException

from reportflow.application import get_workflow_service
from reportflow.core.errors import DispatchError
from reportflow.core.schema import JobRequest

router = APIRouter(prefix="/projects", tags=["jobs"])


@router.post("/{project_id}/jobs")
async def start_job(project_id: str, payload: JobRequest, x_user_id: str = Header(...)) -> dict:
    service = get_workflow_service()
    try:
        job_id = await service.start_job(
            project_id,
            x_user_id,
            payload.kind,
            report_id=payload.report_id,
            context=payload.context,
        )
    except DispatchError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    latest = await service.progress.latest(job_id)
    return {
        "job_id": job_id,
        "kind": payload.kind,
        "status": latest.status if latest else "generating",
        "progress": latest.progress if latest else 0,
    }

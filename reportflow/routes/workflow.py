from __future__ import annotations

from fastapi import APIRouter, Header, HTTPException

from reportflow.application import get_workflow_service
from reportflow.core.errors import WorkflowError
from reportflow.core.schema import WorkflowStepUpdate
from reportflow.domain import step_path

router = APIRouter(tags=["workflow"])


@router.get("/workflow/current")
async def get_current_workflow(x_user_id: str = Header(...)) -> dict:
    controller = get_workflow_service().controller(x_user_id)
    position = await controller.resume()
    return {
        "project_id": position.project_id,
        "step": position.step,
        "path": step_path(position.step),
        "started": position.started,
    }


@router.get("/projects/{project_id}/workflow")
async def get_project_workflow(project_id: str, x_user_id: str = Header(...)) -> dict:
    controller = get_workflow_service().controller(x_user_id)
    step = await controller.get_current_step(project_id)
    return {"project_id": project_id, "step": step}


@router.put("/projects/{project_id}/workflow")
async def update_project_workflow(
    project_id: str,
    payload: WorkflowStepUpdate,
    x_user_id: str = Header(...),
) -> dict:
    controller = get_workflow_service().controller(x_user_id)
    try:
        state = await controller.advance(project_id, payload.step)
    except WorkflowError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"project_id": state.project_id, "step": state.step, "updated_at": state.updated_at.isoformat()}


@router.get("/projects/{project_id}/workflow/steps/{step}")
async def resolve_project_step(project_id: str, step: int, x_user_id: str = Header(...)) -> dict:
    controller = get_workflow_service().controller(x_user_id)
    try:
        allowed = await controller.resolve_step(project_id, step)
    except WorkflowError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"requested": step, "step": allowed, "path": step_path(allowed), "redirected": allowed != step}


@router.post("/projects/{project_id}/workflow/exit")
async def exit_project_workflow(project_id: str, x_user_id: str = Header(...)) -> dict:
    controller = get_workflow_service().controller(x_user_id)
    state = await controller.exit(project_id)
    return {"project_id": state.project_id, "step": state.step}

"""
Pipeline run endpoints.

Start, inspect, cancel and retry runs.
"""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Path, status
from pydantic import BaseModel, Field

from shared.errors import NotFoundError, ValidationError
from shared.logging import get_logger
from shared.models import Project
from api_gateway.context import AppContext
from api_gateway.dependencies import get_context, get_current_user

logger = get_logger(__name__)

router = APIRouter()


class StartRunRequest(BaseModel):
    """Either an existing project_id, or title and idea for a new project."""

    project_id: Optional[str] = None
    template_id: Optional[str] = None
    title: Optional[str] = Field(default=None, max_length=200)
    idea: Optional[str] = Field(default=None, max_length=5000)
    config: Dict[str, Any] = Field(default_factory=dict)


async def _get_owned_run(context: AppContext, run_id: str, user_id: str):
    async with context.store.session() as s:
        run = await s.get_run(run_id)
    if run is None or run.user_id != user_id:
        raise NotFoundError(f"Run {run_id} not found")
    return run


@router.post("/pipeline/runs", status_code=status.HTTP_201_CREATED)
async def start_run(
    body: StartRunRequest,
    current_user: dict = Depends(get_current_user),
    context: AppContext = Depends(get_context),
):
    """Start a pipeline run, creating the project first when no project_id is given."""
    user_id = current_user["user_id"]
    project_id = body.project_id
    if project_id is None:
        if not body.title or not body.idea:
            raise ValidationError("title and idea are required when project_id is not given")
        project = Project(user_id=user_id, title=body.title, idea=body.idea, config=body.config)
        async with context.store.session() as s:
            await s.insert_project(project)
        project_id = project.id

    run_id = await context.orchestrator.start_run(body.template_id, project_id, user_id)
    logger.info("Run started via API", extra={"run_id": run_id, "project_id": project_id, "user_id": user_id})
    return {"run_id": run_id, "project_id": project_id}


@router.get("/pipeline/runs/{run_id}")
async def get_run(
    run_id: str = Path(...),
    current_user: dict = Depends(get_current_user),
    context: AppContext = Depends(get_context),
):
    await _get_owned_run(context, run_id, current_user["user_id"])
    return await context.orchestrator.get_run_status(run_id)


@router.post("/pipeline/runs/{run_id}/cancel")
async def cancel_run(
    run_id: str = Path(...),
    current_user: dict = Depends(get_current_user),
    context: AppContext = Depends(get_context),
):
    await _get_owned_run(context, run_id, current_user["user_id"])
    cancelled = await context.orchestrator.cancel_run(run_id)
    return {"run_id": run_id, "cancelled": cancelled}


@router.post("/pipeline/runs/{run_id}/stages/{stage_id}/retry")
async def retry_stage(
    run_id: str = Path(...),
    stage_id: str = Path(...),
    current_user: dict = Depends(get_current_user),
    context: AppContext = Depends(get_context),
):
    await _get_owned_run(context, run_id, current_user["user_id"])
    dispatched = await context.orchestrator.retry_stage(run_id, stage_id)
    return {"run_id": run_id, "stage_id": stage_id, "dispatched": dispatched}

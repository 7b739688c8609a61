from __future__ import annotations

from dataclasses import asdict
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Request, status
from pydantic import BaseModel, Field

from genflow.apps.api.deps import get_current_user_id, get_services
from genflow.apps.api.openapi import WORKFLOW_ERROR_RESPONSES
from genflow.apps.api.response import SuccessEnvelope, success_response
from genflow.core.container import Services
from genflow.domain.workflows import WorkflowType


router = APIRouter(prefix="/workflows", tags=["workflows"], responses=WORKFLOW_ERROR_RESPONSES)


class StartWorkflowRequest(BaseModel):
    workflow_type: WorkflowType
    # Variant payload; validated against workflow_type by the state machine.
    config: dict[str, Any] = Field(default_factory=dict)
    project_id: str | None = None


class StartWorkflowResponse(BaseModel):
    workflow_id: str
    estimated_cost: int
    estimated_duration: int


class StepResponse(BaseModel):
    id: str
    name: str
    status: str
    cost: int
    error: str | None


class WorkflowStatusResponse(BaseModel):
    workflow_id: str
    workflow_type: str
    status: str
    progress: int
    current_step: str | None
    estimated_time_remaining: int | None
    total_cost: int
    estimated_cost: int
    actual_cost: int
    steps: list[StepResponse]
    result: dict[str, Any] | None
    error: str | None
    created_at: datetime
    started_at: datetime | None
    completed_at: datetime | None


class CancelWorkflowResponse(BaseModel):
    workflow_id: str
    cancel_requested: bool


@router.post(
    "",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=SuccessEnvelope[StartWorkflowResponse],
)
async def start_workflow(
    payload: StartWorkflowRequest,
    request: Request,
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),
) -> dict:
    started = await services.state_machine.start(
        user_id,
        payload.workflow_type,
        payload.config,
        project_id=payload.project_id,
    )
    return success_response(request=request, data=StartWorkflowResponse(**asdict(started)))


@router.get("/{workflow_id}", response_model=SuccessEnvelope[WorkflowStatusResponse])
async def get_workflow_status(
    workflow_id: str,
    request: Request,
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),
) -> dict:
    view = await services.status.get(user_id, workflow_id)
    return success_response(request=request, data=WorkflowStatusResponse.model_validate(asdict(view)))


@router.post(
    "/{workflow_id}/cancel",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=SuccessEnvelope[CancelWorkflowResponse],
)
async def cancel_workflow(
    workflow_id: str,
    request: Request,
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),
) -> dict:
    # Accepted, not applied: the worker stops at its next step boundary.
    await services.state_machine.cancel(user_id, workflow_id)
    return success_response(
        request=request,
        data=CancelWorkflowResponse(workflow_id=workflow_id, cancel_requested=True),
    )

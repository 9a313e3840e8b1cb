"""
Workflow API routes
"""
from fastapi import APIRouter, Depends, Query, status
from typing import List
import logging

from ..models import (
    WorkflowCreateRequest, WorkflowResponse, WorkflowDetailResponse,
    TriggerRequest, TriggerResponse, SuccessResponse
)
from ..dependencies import get_engine, verify_webhook_secret, http_error
from ...exceptions import WorkflowEngineError, NotFoundError


logger = logging.getLogger(__name__)
router = APIRouter()


def _to_response(workflow) -> WorkflowResponse:
    return WorkflowResponse(
        id=workflow.id,
        name=workflow.name,
        description=workflow.description,
        is_active=workflow.is_active,
        trigger_type=workflow.trigger_type,
        trigger_value=workflow.trigger_value,
        step_count=len(workflow.graph),
        created_at=workflow.created_at,
        updated_at=workflow.updated_at,
        metadata=workflow.metadata
    )


@router.post(
    "/trigger",
    response_model=TriggerResponse,
    dependencies=[Depends(verify_webhook_secret)]
)
async def trigger_workflow(
    request: TriggerRequest,
    engine = Depends(get_engine)
) -> TriggerResponse:
    """Enroll a subscriber in a workflow"""
    try:
        result = await engine.trigger(
            workflow_id=request.workflow_id,
            workflow_name=request.workflow_name,
            subscriber_id=request.subscriber_id,
            subscriber_email=request.subscriber_email,
            metadata=request.metadata
        )
    except WorkflowEngineError as e:
        raise http_error(e)

    return TriggerResponse(
        execution_id=result.execution_id,
        workflow_id=result.workflow_id,
        subscriber_id=result.subscriber_id,
        next_step_at=result.next_step_at
    )


@router.post("/", response_model=WorkflowDetailResponse, status_code=status.HTTP_201_CREATED)
async def create_workflow(
    workflow: WorkflowCreateRequest,
    engine = Depends(get_engine)
) -> WorkflowDetailResponse:
    """Create or replace a workflow"""
    workflow_def = workflow.model_dump(exclude_none=True, mode="json")
    workflow_def["steps"] = [
        step.model_dump(exclude_none=True, mode="json") for step in workflow.steps
    ]
    try:
        workflow_id = await engine.create_workflow(workflow_def)
        created = await engine.workflow_repository.get(workflow_id)
    except WorkflowEngineError as e:
        raise http_error(e)

    return WorkflowDetailResponse(
        **_to_response(created).model_dump(),
        steps=engine.parser.dump(created)["steps"]
    )


@router.get("/", response_model=List[WorkflowResponse])
async def list_workflows(
    offset: int = Query(0, ge=0),
    limit: int = Query(20, ge=1, le=100),
    active_only: bool = Query(False),
    engine = Depends(get_engine)
) -> List[WorkflowResponse]:
    """List workflows"""
    try:
        workflows = await engine.workflow_repository.list(
            offset=offset,
            limit=limit,
            active_only=active_only
        )
    except WorkflowEngineError as e:
        raise http_error(e)
    return [_to_response(w) for w in workflows]


@router.get("/{workflow_id}", response_model=WorkflowDetailResponse)
async def get_workflow(
    workflow_id: str,
    engine = Depends(get_engine)
) -> WorkflowDetailResponse:
    """Workflow with its steps"""
    try:
        workflow = await engine.workflow_repository.get(workflow_id)
    except WorkflowEngineError as e:
        raise http_error(e)
    if not workflow:
        raise http_error(NotFoundError("workflow", workflow_id))

    return WorkflowDetailResponse(
        **_to_response(workflow).model_dump(),
        steps=engine.parser.dump(workflow)["steps"]
    )


@router.post("/{workflow_id}/activate", response_model=SuccessResponse)
async def activate_workflow(
    workflow_id: str,
    engine = Depends(get_engine)
) -> SuccessResponse:
    return await _set_active(engine, workflow_id, True)


@router.post("/{workflow_id}/deactivate", response_model=SuccessResponse)
async def deactivate_workflow(
    workflow_id: str,
    engine = Depends(get_engine)
) -> SuccessResponse:
    return await _set_active(engine, workflow_id, False)


async def _set_active(engine, workflow_id: str, is_active: bool) -> SuccessResponse:
    try:
        found = await engine.workflow_repository.set_active(workflow_id, is_active)
    except WorkflowEngineError as e:
        raise http_error(e)
    if not found:
        raise http_error(NotFoundError("workflow", workflow_id))

    state = "activated" if is_active else "deactivated"
    logger.info(f"Workflow {workflow_id} {state}")
    return SuccessResponse(message=f"Workflow {workflow_id} {state}")

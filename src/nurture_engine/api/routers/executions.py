"""
Execution API routes
"""
from fastapi import APIRouter, Depends, Query
from typing import List, Optional
import logging

from ..models import (
    ExecutionResponse, StepLogResponse, ProcessResponse, ExecutionStatusEnum
)
from ..dependencies import get_engine, verify_webhook_secret, http_error
from ...exceptions import WorkflowEngineError
from ...models.execution import ExecutionStatus


logger = logging.getLogger(__name__)
router = APIRouter()


@router.post(
    "/process",
    response_model=ProcessResponse,
    dependencies=[Depends(verify_webhook_secret)]
)
async def process_due_executions(engine = Depends(get_engine)) -> ProcessResponse:
    """Run one poller pass over every due execution"""
    try:
        summary = await engine.run_due()
    except WorkflowEngineError as e:
        raise http_error(e)

    return ProcessResponse(
        message=f"Processed {summary.processed} executions, {summary.errors} errors",
        **summary.to_dict()
    )


@router.get("/", response_model=List[ExecutionResponse])
async def list_executions(
    workflow_id: str = Query(..., description="Workflow ID"),
    status: Optional[ExecutionStatusEnum] = Query(None, description="Status"),
    offset: int = Query(0, ge=0),
    limit: int = Query(20, ge=1, le=100),
    engine = Depends(get_engine)
) -> List[ExecutionResponse]:
    """List executions of a workflow"""
    try:
        cursors = await engine.execution_repository.list_by_workflow(
            workflow_id,
            status=ExecutionStatus(status.value) if status else None,
            offset=offset,
            limit=limit
        )
    except WorkflowEngineError as e:
        raise http_error(e)
    return [ExecutionResponse.from_cursor(c) for c in cursors]


@router.get("/{execution_id}", response_model=ExecutionResponse)
async def get_execution(execution_id: str, engine = Depends(get_engine)) -> ExecutionResponse:
    try:
        cursor = await engine.get_execution(execution_id)
    except WorkflowEngineError as e:
        raise http_error(e)
    return ExecutionResponse.from_cursor(cursor)


@router.get("/{execution_id}/logs", response_model=List[StepLogResponse])
async def get_execution_logs(execution_id: str, engine = Depends(get_engine)) -> List[StepLogResponse]:
    """Step logs, oldest first"""
    try:
        logs = await engine.get_execution_logs(execution_id)
    except WorkflowEngineError as e:
        raise http_error(e)
    return [StepLogResponse(**log.to_dict()) for log in logs]


@router.post("/{execution_id}/pause", response_model=ExecutionResponse)
async def pause_execution(execution_id: str, engine = Depends(get_engine)) -> ExecutionResponse:
    try:
        cursor = await engine.pause_execution(execution_id)
    except WorkflowEngineError as e:
        raise http_error(e)
    return ExecutionResponse.from_cursor(cursor)


@router.post("/{execution_id}/resume", response_model=ExecutionResponse)
async def resume_execution(execution_id: str, engine = Depends(get_engine)) -> ExecutionResponse:
    try:
        cursor = await engine.resume_execution(execution_id)
    except WorkflowEngineError as e:
        raise http_error(e)
    return ExecutionResponse.from_cursor(cursor)


@router.post("/{execution_id}/cancel", response_model=ExecutionResponse)
async def cancel_execution(execution_id: str, engine = Depends(get_engine)) -> ExecutionResponse:
    try:
        cursor = await engine.cancel_execution(execution_id)
    except WorkflowEngineError as e:
        raise http_error(e)
    return ExecutionResponse.from_cursor(cursor)

"""
API request and response models
"""
from pydantic import BaseModel, Field, ConfigDict
from typing import Optional, List, Dict, Any
from datetime import datetime
from enum import Enum

from ..models.execution import utcnow


class StepTypeEnum(str, Enum):
    """Step type (API)"""
    EMAIL = "email"
    CONDITION = "condition"
    ACTION = "action"
    DELAY = "delay"


class ExecutionStatusEnum(str, Enum):
    """Execution status (API)"""
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


# Workflow models

class StepDefinition(BaseModel):
    """Step definition; only the fields of its type are used"""
    step_order: int = Field(..., ge=1, description="Step order")
    step_type: StepTypeEnum = Field(..., description="Step type")
    id: Optional[str] = Field(None, description="Step ID")
    name: Optional[str] = Field(None, description="Step name")
    delay_value: Optional[float] = Field(None, ge=0, description="Delay before the step is due")
    delay_unit: Optional[str] = Field(None, description="minutes, hours, days or weeks")
    subject: Optional[str] = Field(None, description="Email subject")
    body: Optional[str] = Field(None, description="Email HTML body")
    condition_field: Optional[str] = Field(None, description="Subscriber attribute")
    condition_operator: Optional[str] = Field(None, description="Condition operator")
    condition_value: Optional[Any] = Field(None, description="Comparison value")
    true_next_step: Optional[int] = Field(None, ge=1, description="Next step when true")
    false_next_step: Optional[int] = Field(None, ge=1, description="Next step when false")
    action_type: Optional[str] = Field(None, description="Action type")
    action_params: Optional[Dict[str, Any]] = Field(None, description="Action params")


class WorkflowCreateRequest(BaseModel):
    """Create workflow request"""
    id: Optional[str] = Field(None, description="Workflow ID")
    name: str = Field(..., min_length=1, description="Workflow name")
    description: Optional[str] = Field(None, description="Description")
    is_active: bool = Field(True, description="Active")
    trigger_type: str = Field("manual", description="Trigger type")
    trigger_value: Optional[str] = Field(None, description="Trigger value")
    steps: List[StepDefinition] = Field(default_factory=list, description="Steps")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="Metadata")


class WorkflowResponse(BaseModel):
    """Workflow response"""
    id: str = Field(..., description="Workflow ID")
    name: str = Field(..., description="Workflow name")
    description: Optional[str] = Field(None, description="Description")
    is_active: bool = Field(True, description="Active")
    trigger_type: str = Field(..., description="Trigger type")
    trigger_value: Optional[str] = Field(None, description="Trigger value")
    step_count: int = Field(..., description="Number of steps")
    created_at: datetime = Field(..., description="Created at")
    updated_at: datetime = Field(..., description="Updated at")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="Metadata")

    model_config = ConfigDict(from_attributes=True)


class WorkflowDetailResponse(WorkflowResponse):
    """Workflow with its steps"""
    steps: List[Dict[str, Any]] = Field(default_factory=list, description="Steps")


# Trigger and execution models

class TriggerRequest(BaseModel):
    """Enroll a subscriber in a workflow"""
    workflow_id: Optional[str] = Field(None, description="Workflow ID")
    workflow_name: Optional[str] = Field(None, description="Workflow name")
    subscriber_email: Optional[str] = Field(None, description="Subscriber email")
    subscriber_id: Optional[str] = Field(None, description="Subscriber ID")
    metadata: Optional[Dict[str, Any]] = Field(None, description="Execution metadata")


class TriggerResponse(BaseModel):
    """Trigger response"""
    success: bool = Field(True, description="Success")
    message: str = Field("Workflow triggered successfully", description="Message")
    execution_id: str = Field(..., description="Execution ID")
    workflow_id: str = Field(..., description="Workflow ID")
    subscriber_id: str = Field(..., description="Subscriber ID")
    next_step_at: datetime = Field(..., description="When step 1 is due")


class ProcessResponse(BaseModel):
    """Poller pass summary"""
    message: str = Field(..., description="Message")
    processed: int = Field(..., description="Cursors advanced or completed")
    errors: int = Field(..., description="Cursors that failed")
    skipped: int = Field(0, description="Cursors lost to a concurrent worker")


class ExecutionResponse(BaseModel):
    """Execution cursor"""
    execution_id: str = Field(..., description="Execution ID")
    workflow_id: str = Field(..., description="Workflow ID")
    subscriber_id: str = Field(..., description="Subscriber ID")
    current_step: int = Field(..., description="Current step order")
    status: ExecutionStatusEnum = Field(..., description="Status")
    next_step_at: Optional[datetime] = Field(None, description="Next step due at")
    started_at: datetime = Field(..., description="Started at")
    completed_at: Optional[datetime] = Field(None, description="Completed at")
    attempts: int = Field(0, description="Failed attempts of the current step")
    version: int = Field(0, description="Concurrency token")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="Metadata")

    @classmethod
    def from_cursor(cls, cursor) -> "ExecutionResponse":
        return cls(
            execution_id=cursor.id,
            workflow_id=cursor.workflow_id,
            subscriber_id=cursor.subscriber_id,
            current_step=cursor.current_step,
            status=cursor.status.value,
            next_step_at=cursor.next_step_at,
            started_at=cursor.started_at,
            completed_at=cursor.completed_at,
            attempts=cursor.attempts,
            version=cursor.version,
            metadata=cursor.metadata
        )


class StepLogResponse(BaseModel):
    """Step log entry"""
    id: str = Field(..., description="Log ID")
    execution_id: str = Field(..., description="Execution ID")
    step_id: Optional[str] = Field(None, description="Step ID")
    step_order: Optional[int] = Field(None, description="Step order")
    status: str = Field(..., description="sent or failed")
    error_message: Optional[str] = Field(None, description="Error")
    created_at: datetime = Field(..., description="Created at")

    model_config = ConfigDict(from_attributes=True)


# Common models

class ErrorResponse(BaseModel):
    """Error response"""
    error: str = Field(..., description="Error type")
    message: str = Field(..., description="Error message")
    details: Optional[Dict[str, Any]] = Field(None, description="Details")


class SuccessResponse(BaseModel):
    """Success response"""
    success: bool = Field(True, description="Success")
    message: str = Field(..., description="Message")
    data: Optional[Dict[str, Any]] = Field(None, description="Extra data")


class HealthCheckResponse(BaseModel):
    """Health check response"""
    status: str = Field(..., description="Health status", examples=["healthy", "unhealthy"])
    version: str = Field(..., description="Version")
    timestamp: datetime = Field(default_factory=utcnow, description="Timestamp")
    checks: Dict[str, bool] = Field(default_factory=dict, description="Component checks")

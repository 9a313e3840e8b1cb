"""
Workflow engine exceptions
"""
from typing import Optional, Dict, Any


class WorkflowEngineError(Exception):
    """Base engine exception"""

    error_code = "workflow_engine_error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert to an API error body"""
        body = {
            "error": self.error_code,
            "message": self.message,
        }
        if self.details:
            body["details"] = self.details
        return body


class WorkflowParseError(WorkflowEngineError):
    """Workflow definition could not be parsed"""
    error_code = "parse_error"


class ValidationError(WorkflowEngineError):
    """Malformed or incomplete request"""
    error_code = "validation_error"


class NotFoundError(WorkflowEngineError):
    """Unknown workflow, subscriber or execution"""
    error_code = "not_found"

    def __init__(self, entity: str, identifier: str):
        self.entity = entity
        self.identifier = identifier
        super().__init__(
            f"{entity.capitalize()} not found: {identifier}",
            {"entity": entity, "identifier": identifier}
        )


class InactiveWorkflowError(WorkflowEngineError):
    """Workflow exists but is not active"""
    error_code = "inactive_workflow"

    def __init__(self, workflow_id: str):
        self.workflow_id = workflow_id
        super().__init__("Workflow is not active", {"workflow_id": workflow_id})


class ExternalServiceError(WorkflowEngineError):
    """Email or action dispatch failed; retryable"""
    error_code = "external_service_error"

    def __init__(self, service: str, message: str, cause: Exception = None):
        self.service = service
        self.cause = cause
        details = {"service": service}
        if cause:
            details["cause_type"] = type(cause).__name__
        super().__init__(f"{service} failed: {message}", details)


class ConcurrencyConflict(WorkflowEngineError):
    """Lost an optimistic update race; the cursor was already advanced"""
    error_code = "concurrency_conflict"

    def __init__(self, execution_id: str, expected_version: int = None):
        self.execution_id = execution_id
        self.expected_version = expected_version
        super().__init__(
            f"Execution {execution_id} was modified concurrently",
            {"execution_id": execution_id, "expected_version": expected_version}
        )


class StoreError(WorkflowEngineError):
    """Persistent store unavailable or failed"""
    error_code = "store_error"


class InvalidStatusTransition(WorkflowEngineError):
    """Status change not allowed from the current status"""
    error_code = "invalid_status_transition"

    def __init__(self, current_status: str, target_status: str):
        self.current_status = current_status
        self.target_status = target_status
        super().__init__(
            f"Invalid status transition from '{current_status}' to '{target_status}'",
            {"current_status": current_status, "target_status": target_status}
        )

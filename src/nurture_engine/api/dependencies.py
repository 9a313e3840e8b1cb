"""
FastAPI dependencies
"""
import hmac
import logging
from typing import Any, Dict, Optional

from fastapi import Depends, Header, HTTPException, status

from ..core.engine import NurtureEngine
from ..exceptions import (
    WorkflowEngineError, ValidationError, WorkflowParseError, NotFoundError,
    InactiveWorkflowError, InvalidStatusTransition, ConcurrencyConflict, StoreError
)


logger = logging.getLogger(__name__)


# process-wide state filled by the application lifespan
app_state: Dict[str, Any] = {}


ERROR_STATUS = {
    ValidationError: status.HTTP_400_BAD_REQUEST,
    WorkflowParseError: status.HTTP_400_BAD_REQUEST,
    InactiveWorkflowError: status.HTTP_400_BAD_REQUEST,
    NotFoundError: status.HTTP_404_NOT_FOUND,
    InvalidStatusTransition: status.HTTP_409_CONFLICT,
    ConcurrencyConflict: status.HTTP_409_CONFLICT,
    StoreError: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def get_app_state() -> Dict[str, Any]:
    return app_state


def get_engine() -> NurtureEngine:
    """Engine instance"""
    engine = get_app_state().get("engine")

    if not engine:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "error": "service_unavailable",
                "message": "Workflow engine not initialized"
            }
        )

    return engine


def verify_webhook_secret(
    x_webhook_secret: Optional[str] = Header(None),
    engine: NurtureEngine = Depends(get_engine)
) -> None:
    """Require the shared secret header when one is configured"""
    expected = engine.settings.webhook_secret
    if not expected:
        return
    if not x_webhook_secret or not hmac.compare_digest(
        x_webhook_secret.encode("utf-8"), expected.encode("utf-8")
    ):
        logger.warning("Rejected request with missing or invalid webhook secret")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={
                "error": "unauthorized",
                "message": "Invalid webhook secret"
            }
        )


def http_error(error: WorkflowEngineError) -> HTTPException:
    """Translate a domain error into an HTTPException"""
    for error_type, status_code in ERROR_STATUS.items():
        if isinstance(error, error_type):
            break
    else:
        status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    if status_code >= 500:
        logger.error(f"{error.error_code}: {error.message}")
    return HTTPException(status_code=status_code, detail=error.to_dict())

"""
Monitoring API routes
"""
from fastapi import APIRouter, Depends
from typing import Dict, Any
import logging

from ... import __version__
from ..models import HealthCheckResponse
from ..dependencies import get_engine
from ...models.execution import utcnow


logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/health", response_model=HealthCheckResponse)
async def health_check(engine = Depends(get_engine)) -> HealthCheckResponse:
    """Health check"""
    checks = {}

    try:
        await engine.workflow_repository.list(limit=1)
        checks["database"] = True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        checks["database"] = False

    # a disabled scheduler is healthy; an enabled one must be running
    checks["scheduler"] = engine.scheduler.running or not engine.settings.enable_scheduler

    return HealthCheckResponse(
        status="healthy" if all(checks.values()) else "unhealthy",
        version=__version__,
        timestamp=utcnow(),
        checks=checks
    )


@router.get("/scheduler")
async def scheduler_stats(engine = Depends(get_engine)) -> Dict[str, Any]:
    """In-process poller statistics"""
    return engine.scheduler.get_scheduler_stats()

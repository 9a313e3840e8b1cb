"""
FastAPI application
"""
from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from contextlib import asynccontextmanager
import logging
from typing import Optional

from .. import __version__
from .routers import workflows, executions, monitoring
from .middleware import RequestLoggingMiddleware
from .dependencies import app_state
from ..config import EngineSettings
from ..core.engine import NurtureEngine
from ..storage.sqlalchemy_repository import (
    DatabaseManager,
    SQLAlchemyWorkflowRepository,
    SQLAlchemySubscriberRepository,
    SQLAlchemyExecutionRepository
)


logger = logging.getLogger(__name__)


async def build_engine(settings: EngineSettings) -> NurtureEngine:
    """Engine backed by the configured database"""
    db_manager = DatabaseManager(settings.database_url)
    await db_manager.initialize()
    app_state["db_manager"] = db_manager

    return NurtureEngine(
        workflow_repository=SQLAlchemyWorkflowRepository(db_manager),
        subscriber_repository=SQLAlchemySubscriberRepository(db_manager),
        execution_repository=SQLAlchemyExecutionRepository(db_manager),
        settings=settings
    )


def create_app(
    engine: Optional[NurtureEngine] = None,
    settings: Optional[EngineSettings] = None
) -> FastAPI:
    """Build the application; a given engine is used as is, no database is opened"""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting Nurture Engine API...")

        if engine is not None:
            current = engine
        else:
            current = await build_engine(settings or EngineSettings.from_env())
        app_state["engine"] = current

        await current.start()
        logger.info("Nurture Engine API started successfully")

        yield

        logger.info("Shutting down Nurture Engine API...")
        await current.stop()

        db_manager = app_state.pop("db_manager", None)
        if db_manager:
            await db_manager.close()
        app_state.pop("engine", None)

        logger.info("Nurture Engine API shut down successfully")

    app = FastAPI(
        title="Nurture Engine API",
        description="Marketing automation workflow execution engine",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json"
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestLoggingMiddleware)

    app.include_router(workflows.router, prefix="/api/v1/workflows", tags=["workflows"])
    app.include_router(executions.router, prefix="/api/v1/executions", tags=["executions"])
    app.include_router(monitoring.router, prefix="/api/v1/monitoring", tags=["monitoring"])

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        """Error bodies are `{error, message}` rather than FastAPI's `{detail}`"""
        if isinstance(exc.detail, dict):
            content = exc.detail
        else:
            content = {"error": "http_error", "message": str(exc.detail)}
        return JSONResponse(status_code=exc.status_code, content=content, headers=exc.headers)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Malformed request bodies are 400 validation errors"""
        errors = exc.errors()
        first = errors[0] if errors else {}
        field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = first.get("msg", "Invalid request")
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={
                "error": "validation_error",
                "message": f"{field}: {message}" if field else message,
                "details": {"errors": jsonable_encoder(errors)}
            }
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled exception: {exc}", exc_info=True)

        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": "internal_server_error",
                "message": "An unexpected error occurred",
                "request_id": getattr(request.state, "request_id", None)
            }
        )

    @app.get("/", tags=["root"])
    async def root():
        return {
            "name": "Nurture Engine API",
            "version": __version__,
            "status": "running",
            "docs": "/docs",
            "health": "/api/v1/monitoring/health"
        }

    return app

"""FastAPI application entry-point for the ADR orchestration API."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from adr_api import __version__
from adr_api.config import APISettings
from adr_api.dependencies import (
    dispose_engine,
    get_engine_settings,
    get_session_factory,
    get_settings,
    init_engine,
    init_run_manager,
    reset_run_manager,
)
from adr_api.middleware.json_formatter import configure_logging
from adr_api.middleware.logging import RequestLoggingMiddleware
from adr_api.routers import health, jobs, orchestration
from adr_api.services.orchestration_scheduler import OrchestrationScheduler
from adr_engine.errors import InvalidTransitionError, RunConflictError
from adr_engine.orchestration.coordinator import OrchestrationCoordinator
from adr_engine.state.database import create_tables

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application startup / shutdown lifecycle.

    On startup:
    - Initialise the async database engine (and tables for local use).
    - Build the coordinator and mark orphaned runs Interrupted.
    - Start the schedule trigger when enabled.

    On shutdown:
    - Stop the trigger, let active runs wind down, dispose the engine.
    """
    settings: APISettings = get_settings()
    engine_settings = get_engine_settings()

    if settings.structured_logging or engine_settings.structured_logging:
        configure_logging(structured=True)
        logger.info("Structured JSON logging enabled")

    engine = init_engine(engine_settings)
    is_local = engine_settings.database_url.startswith("sqlite")
    logger.info("Database engine initialised (%s)", "local" if is_local else "postgres")
    if settings.auto_create_tables:
        await create_tables(engine)

    coordinator = OrchestrationCoordinator.from_settings(engine_settings, get_session_factory())
    manager = init_run_manager(coordinator)

    if settings.recover_on_startup:
        interrupted = await coordinator.recover_orphaned_runs()
        if interrupted:
            logger.warning("Recovered %d orphaned run(s) at startup", len(interrupted))

    scheduler: OrchestrationScheduler | None = None
    if settings.scheduler_enabled:
        scheduler = OrchestrationScheduler(
            manager,
            settings.scheduler_cron,
            poll_seconds=settings.scheduler_poll_seconds,
        )
        await scheduler.start()

    yield

    if scheduler is not None:
        await scheduler.stop()
    await manager.shutdown(settings.shutdown_grace_seconds)
    await coordinator.close()
    reset_run_manager()
    await dispose_engine()
    logger.info("Application shutdown complete")


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app() -> FastAPI:
    """Construct and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="ADR Orchestration API",
        description="Control surface for automated vendor-invoice retrieval runs.",
        version=__version__,
        lifespan=lifespan,
    )

    # -- Middleware (outermost first) ----------------------------------------

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=False,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "X-Correlation-ID", "Accept"],
    )
    app.add_middleware(RequestLoggingMiddleware)

    # -- Routers -------------------------------------------------------------

    app.include_router(health.router, prefix="/api/v1")
    app.include_router(orchestration.router, prefix="/api/v1")
    app.include_router(jobs.router, prefix="/api/v1")
    app.include_router(health.readiness_router)

    # -- Exception handlers --------------------------------------------------

    @app.exception_handler(RunConflictError)
    async def run_conflict_handler(request: Request, exc: RunConflictError) -> JSONResponse:
        logger.info("Run conflict on %s: %s", request.url.path, exc)
        return JSONResponse(
            status_code=409,
            content={"detail": str(exc), "active_request_id": exc.active_request_id},
        )

    @app.exception_handler(InvalidTransitionError)
    async def transition_error_handler(request: Request, exc: InvalidTransitionError) -> JSONResponse:
        logger.warning("Invalid transition on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.exception_handler(LookupError)
    async def lookup_error_handler(request: Request, exc: LookupError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
        logger.warning("ValueError on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=400, content={"detail": "Invalid request"})

    @app.exception_handler(SQLAlchemyError)
    async def sqlalchemy_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
        logger.error("Database error: %s", exc, exc_info=True)
        return JSONResponse(status_code=500, content={"detail": "Internal database error"})

    return app


# Module-level application instance used by ``uvicorn adr_api.main:app``.
app = create_app()

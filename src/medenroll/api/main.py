"""
FastAPI Main Application
Entry point for the enrollment API server
Source: https://fastapi.tiangolo.com/
Verified: 2026-10-19
"""

from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import FastAPI

from medenroll import __version__
from medenroll.api.errors import register_error_handlers
from medenroll.api.routes import enrollments, health, notifications
from medenroll.core.config import EnrollmentSettings, get_settings
from medenroll.db.connection import close_db_connection, init_db
from medenroll.services.orchestrator import EnrollmentOrchestrator, create_orchestrator
from medenroll.utils.logging import get_logger, setup_logging

logger = get_logger(__name__)


def create_app(
    settings: Optional[EnrollmentSettings] = None,
    orchestrator: Optional[EnrollmentOrchestrator] = None,
) -> FastAPI:
    """
    Build the application.

    Args:
        settings: Settings to use; defaults to the environment
        orchestrator: Pre-wired orchestrator (tests); built at startup when omitted
    """
    settings = settings or get_settings()
    setup_logging(
        level=settings.LOG_LEVEL,
        log_file=settings.LOG_FILE,
        json_logs=settings.LOG_JSON or settings.is_production,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):  # type: ignore[no-untyped-def]
        logger.info(f"Starting enrollment API in {settings.ENVIRONMENT} mode")
        logger.info(f"Debug mode: {settings.DEBUG}")

        if getattr(app.state, "orchestrator", None) is None:
            if settings.DATABASE_URL:
                await init_db()
            app.state.orchestrator = create_orchestrator(settings)

        yield

        logger.info("Shutting down application")
        await app.state.orchestrator.close()
        if settings.DATABASE_URL:
            await close_db_connection()
            logger.info("Database connections closed")

    app = FastAPI(
        title="Medical Enrollment API",
        description="Enrollment case orchestration: documents, health declaration, interview, audit",
        version=__version__,
        docs_url="/docs" if not settings.is_production else None,
        redoc_url="/redoc" if not settings.is_production else None,
        openapi_url="/openapi.json" if not settings.is_production else None,
        lifespan=lifespan,
    )
    app.state.orchestrator = orchestrator

    register_error_handlers(app)
    app.include_router(health.router)
    app.include_router(enrollments.router)
    app.include_router(notifications.router)

    @app.get("/")
    async def root() -> dict[str, Any]:
        """Root endpoint with API information."""
        return {
            "name": "Medical Enrollment API",
            "version": __version__,
            "environment": settings.ENVIRONMENT,
            "docs": "/docs" if not settings.is_production else "disabled",
        }

    return app


app = create_app()

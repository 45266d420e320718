"""
Health Check Routes
Service health monitoring endpoints
Source: https://microservices.io/patterns/observability/health-check-api.html
Verified: 2026-10-19
"""

from typing import Any

from fastapi import APIRouter, Depends

from medenroll.api.deps import get_orchestrator
from medenroll.core.config import get_settings
from medenroll.db.connection import check_db_connection
from medenroll.services.orchestrator import EnrollmentOrchestrator

router = APIRouter(tags=["Health"])

SERVICE_NAME = "medenroll-api"


@router.get("/health")
async def health_check() -> dict[str, Any]:
    """Basic health check endpoint."""
    return {
        "status": "healthy",
        "service": SERVICE_NAME,
    }


@router.get("/health/detailed")
async def detailed_health_check(
    orchestrator: EnrollmentOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    """Dependency status: database, extraction provider and audit chain."""
    settings = get_settings()
    checks: dict[str, Any] = {}

    if settings.DATABASE_URL:
        checks["database"] = "healthy" if await check_db_connection() else "unhealthy"

    extractor_health = getattr(orchestrator.pipeline.extractor, "health", None)
    if extractor_health is not None:
        checks["extraction"] = extractor_health.status.value

    chain = await orchestrator.audit_log.verify_chain()
    checks["audit_chain"] = "intact" if chain.valid else f"broken at {chain.broken_at_sequence}"

    healthy = chain.valid and checks.get("database", "healthy") == "healthy"
    return {
        "status": "healthy" if healthy else "unhealthy",
        "service": SERVICE_NAME,
        "checks": checks,
    }

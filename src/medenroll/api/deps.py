"""
FastAPI Dependencies
Caller identity and the orchestrator
Source: https://fastapi.tiangolo.com/tutorial/dependencies/
Verified: 2026-10-19

Authentication happens upstream (API gateway); this service receives the
already-validated caller as ``X-Actor-Id`` and ``X-Actor-Roles`` headers.
"""

from fastapi import Header, HTTPException, Request, status

from medenroll.core.enums import ActorRole
from medenroll.services.orchestrator import EnrollmentOrchestrator
from medenroll.services.security.authorization import Actor


async def get_actor(
    x_actor_id: str = Header(..., min_length=1),
    x_actor_roles: str = Header(default=ActorRole.ENROLLEE.value),
) -> Actor:
    """
    Build the calling actor from identity headers.

    Raises:
        HTTPException: 401 if a role is not recognized
    """
    try:
        roles = frozenset(ActorRole(r.strip()) for r in x_actor_roles.split(",") if r.strip())
    except ValueError as err:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Unknown role in X-Actor-Roles: {x_actor_roles}",
        ) from err
    return Actor(id=x_actor_id, roles=roles)


def get_orchestrator(request: Request) -> EnrollmentOrchestrator:
    """Orchestrator created by the application lifespan."""
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service not initialized",
        )
    return orchestrator

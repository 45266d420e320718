"""
Notification API Endpoints.

Webhook target management and the manual path for failed deliveries.
Signing secrets are write-only except in the rotation response.
"""

from typing import Any, Optional

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field

from medenroll.api.deps import get_actor, get_orchestrator
from medenroll.core.enums import NotificationEvent
from medenroll.schemas.notification import NotificationDelivery, NotificationTarget
from medenroll.services.orchestrator import EnrollmentOrchestrator
from medenroll.services.security.authorization import Actor

router = APIRouter(
    prefix="/api/v1/notifications",
    tags=["notifications"],
)


class RegisterTargetRequest(BaseModel):
    name: str
    url: str
    events: list[NotificationEvent] = Field(..., min_length=1)
    secret: str


class UpdateTargetRequest(BaseModel):
    name: Optional[str] = None
    url: Optional[str] = None
    events: Optional[list[NotificationEvent]] = Field(default=None, min_length=1)
    active: Optional[bool] = None


def _target(target: NotificationTarget) -> dict[str, Any]:
    return target.model_dump(mode="json", exclude={"secret"})


def _delivery(delivery: NotificationDelivery) -> dict[str, Any]:
    return delivery.model_dump(mode="json")


@router.post("/targets", status_code=status.HTTP_201_CREATED)
async def register_target(
    request: RegisterTargetRequest,
    actor: Actor = Depends(get_actor),
    orchestrator: EnrollmentOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    result = await orchestrator.register_target(actor, request.name, request.url, request.events, request.secret)
    return _target(result.unwrap())


@router.get("/targets")
async def list_targets(
    actor: Actor = Depends(get_actor),
    orchestrator: EnrollmentOrchestrator = Depends(get_orchestrator),
) -> list[dict[str, Any]]:
    result = await orchestrator.list_targets(actor)
    return [_target(t) for t in result.unwrap()]


@router.patch("/targets/{target_id}")
async def update_target(
    target_id: str,
    request: UpdateTargetRequest,
    actor: Actor = Depends(get_actor),
    orchestrator: EnrollmentOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    result = await orchestrator.update_target(
        actor,
        target_id,
        name=request.name,
        url=request.url,
        events=request.events,
        active=request.active,
    )
    return _target(result.unwrap())


@router.delete("/targets/{target_id}")
async def delete_target(
    target_id: str,
    actor: Actor = Depends(get_actor),
    orchestrator: EnrollmentOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    result = await orchestrator.delete_target(actor, target_id)
    return _target(result.unwrap())


@router.post("/targets/{target_id}/rotate-secret")
async def rotate_target_secret(
    target_id: str,
    actor: Actor = Depends(get_actor),
    orchestrator: EnrollmentOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    """Generate a new signing secret; it is returned only by this call."""
    result = await orchestrator.rotate_target_secret(actor, target_id)
    target = result.unwrap()
    return {**_target(target), "secret": target.secret}


@router.get("/targets/{target_id}/status")
async def target_status(
    target_id: str,
    actor: Actor = Depends(get_actor),
    orchestrator: EnrollmentOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    result = await orchestrator.target_status(actor, target_id)
    return result.unwrap().model_dump(mode="json")


@router.get("/failed")
async def list_failed_deliveries(
    actor: Actor = Depends(get_actor),
    orchestrator: EnrollmentOrchestrator = Depends(get_orchestrator),
) -> list[dict[str, Any]]:
    """Deliveries that exhausted their attempts and await a manual retrigger."""
    result = await orchestrator.failed_deliveries(actor)
    return [_delivery(d) for d in result.unwrap()]


@router.post("/{delivery_id}/retrigger")
async def retrigger_delivery(
    delivery_id: str,
    actor: Actor = Depends(get_actor),
    orchestrator: EnrollmentOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    result = await orchestrator.retrigger_delivery(actor, delivery_id)
    return _delivery(result.unwrap())

"""
Notification Schemas
Webhook targets and delivery records.
"""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field, HttpUrl

from medenroll.core.enums import DeliveryStatus, NotificationEvent, ProviderStatus
from medenroll.schemas.enrollment import new_id, utcnow


class NotificationTarget(BaseModel):
    """Registered webhook receiver (EMR, scheduler, ...)."""

    id: str = Field(default_factory=new_id)
    name: str = Field(..., min_length=1, max_length=100)
    url: HttpUrl
    events: list[NotificationEvent] = Field(..., min_length=1)
    secret: str = Field(..., min_length=16, repr=False)
    active: bool = True
    created_at: datetime = Field(default_factory=utcnow)

    def subscribes_to(self, event: NotificationEvent) -> bool:
        return self.active and event in self.events


class DeliveryAttempt(BaseModel):
    """One HTTP attempt of a delivery."""

    attempt: int
    at: datetime = Field(default_factory=utcnow)
    status_code: Optional[int] = None
    error: Optional[str] = None
    latency_ms: float = 0.0


class NotificationDelivery(BaseModel):
    """Delivery record for one event to one target."""

    id: str = Field(default_factory=new_id)
    target_id: str
    event_type: NotificationEvent
    payload: dict[str, Any] = Field(default_factory=dict)
    delivery_status: DeliveryStatus = DeliveryStatus.PENDING
    attempts: list[DeliveryAttempt] = Field(default_factory=list)
    last_error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    delivered_at: Optional[datetime] = None

    @property
    def attempt_count(self) -> int:
        return len(self.attempts)


class TargetStatus(BaseModel):
    """Delivery counts and circuit state of one target."""

    target_id: str
    name: str
    active: bool
    health: ProviderStatus
    circuit_open: bool
    consecutive_failures: int
    last_error: Optional[str] = None
    delivered: int = 0
    failed: int = 0
    pending: int = 0
    last_delivery_at: Optional[datetime] = None

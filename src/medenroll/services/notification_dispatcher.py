"""
Notification Dispatcher.

Delivers signed webhook notifications (EMR, schedulers) for enrollment
events, with the notification backoff policy between attempts.

Signature header::

    X-Webhook-Signature: t=<unix seconds>,v1=<base64 HMAC-SHA256("<t>.<body>")>

Receivers recompute the HMAC with their shared secret. Every delivery is
recorded with ``PENDING``/``DELIVERED``/``FAILED``; failed deliveries are
kept for manual retriggering, never dropped.

Targets and deliveries live in the ``DeliveryStore``, so a restarted
process still knows where to retrigger. Circuit-breaker health is per
process.
"""

import asyncio
import base64
import hashlib
import hmac
import json
import secrets
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Optional, Union

import httpx
from pydantic import ValidationError as PydanticValidationError

from medenroll.core.config import EnrollmentSettings, get_settings
from medenroll.core.enums import AuditAction, AuditSubjectType, DeliveryStatus, NotificationEvent
from medenroll.core.errors import InvalidTransition, NotFound, ValidationError
from medenroll.gateways.base import ProviderHealth
from medenroll.schemas.audit import AuditEntryDraft
from medenroll.schemas.notification import DeliveryAttempt, NotificationDelivery, NotificationTarget, TargetStatus
from medenroll.schemas.enrollment import utcnow
from medenroll.schemas.result import OperationResult
from medenroll.services.audit_log import AuditLog
from medenroll.services.retry import BackoffPolicy
from medenroll.utils.logging import get_logger

logger = get_logger(__name__)

USER_AGENT = "medenroll-webhook/1.0"

# Client errors that are worth repeating
RETRYABLE_CLIENT_STATUSES = frozenset({408, 429})

# Entropy of generated signing secrets
SECRET_BYTES = 32


def sign_payload(secret: str, body: bytes, timestamp: int) -> str:
    """Build the ``X-Webhook-Signature`` header value."""
    message = f"{timestamp}.".encode("utf-8") + body
    digest = hmac.new(secret.encode("utf-8"), message, hashlib.sha256).digest()
    return f"t={timestamp},v1={base64.b64encode(digest).decode('ascii')}"


def verify_signature(
    secret: str,
    body: bytes,
    header: str,
    tolerance_seconds: int = 300,
    now: Optional[int] = None,
) -> bool:
    """Receiver-side check of a signature header."""
    try:
        parts = dict(item.split("=", 1) for item in header.split(","))
        timestamp = int(parts["t"])
    except (ValueError, KeyError):
        return False
    current = int(time.time()) if now is None else now
    if abs(current - timestamp) > tolerance_seconds:
        return False
    expected = sign_payload(secret, body, timestamp)
    return hmac.compare_digest(expected, header)


# =============================================================================
# Delivery storage
# =============================================================================


class DeliveryStore(ABC):
    """Persistence for webhook targets and their delivery records."""

    @abstractmethod
    async def save(self, delivery: NotificationDelivery) -> None: ...

    @abstractmethod
    async def get(self, delivery_id: str) -> Optional[NotificationDelivery]: ...

    @abstractmethod
    async def list_by_status(self, status: DeliveryStatus) -> list[NotificationDelivery]: ...

    @abstractmethod
    async def list_by_target(self, target_id: str) -> list[NotificationDelivery]: ...

    @abstractmethod
    async def save_target(self, target: NotificationTarget) -> None: ...

    @abstractmethod
    async def get_target(self, target_id: str) -> Optional[NotificationTarget]: ...

    @abstractmethod
    async def list_targets(self) -> list[NotificationTarget]: ...

    @abstractmethod
    async def delete_target(self, target_id: str) -> bool:
        """Remove the target; its delivery records are kept."""


class InMemoryDeliveryStore(DeliveryStore):
    def __init__(self):
        self._deliveries: dict[str, NotificationDelivery] = {}
        self._targets: dict[str, NotificationTarget] = {}

    async def save(self, delivery: NotificationDelivery) -> None:
        self._deliveries[delivery.id] = delivery.model_copy(deep=True)

    async def get(self, delivery_id: str) -> Optional[NotificationDelivery]:
        delivery = self._deliveries.get(delivery_id)
        return delivery.model_copy(deep=True) if delivery else None

    async def list_by_status(self, status: DeliveryStatus) -> list[NotificationDelivery]:
        return [
            d.model_copy(deep=True)
            for d in sorted(self._deliveries.values(), key=lambda d: d.created_at)
            if d.delivery_status == status
        ]

    async def list_by_target(self, target_id: str) -> list[NotificationDelivery]:
        return [
            d.model_copy(deep=True)
            for d in sorted(self._deliveries.values(), key=lambda d: d.created_at)
            if d.target_id == target_id
        ]

    async def save_target(self, target: NotificationTarget) -> None:
        self._targets[target.id] = target.model_copy(deep=True)

    async def get_target(self, target_id: str) -> Optional[NotificationTarget]:
        target = self._targets.get(target_id)
        return target.model_copy(deep=True) if target else None

    async def list_targets(self) -> list[NotificationTarget]:
        return [t.model_copy(deep=True) for t in sorted(self._targets.values(), key=lambda t: t.created_at)]

    async def delete_target(self, target_id: str) -> bool:
        return self._targets.pop(target_id, None) is not None


# =============================================================================
# Dispatcher
# =============================================================================


class NotificationDispatcher:
    """Signed webhook delivery with retry, circuit breaking and audit."""

    def __init__(
        self,
        audit_log: AuditLog,
        settings: Optional[EnrollmentSettings] = None,
        store: Optional[DeliveryStore] = None,
        backoff: Optional[BackoffPolicy] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.audit_log = audit_log
        self.settings = settings or get_settings()
        self.store = store or InMemoryDeliveryStore()
        self.backoff = backoff or BackoffPolicy.for_notifications(self.settings)
        self._transport = transport
        self._clock = clock
        self._client: Optional[httpx.AsyncClient] = None
        self._health: dict[str, ProviderHealth] = {}

    # -------------------------------------------------------------------------
    # Targets
    # -------------------------------------------------------------------------

    def _validated_target(self, **fields: Any) -> Union[NotificationTarget, ValidationError]:
        try:
            target = NotificationTarget(**fields)
        except PydanticValidationError as e:
            first = e.errors()[0]
            return ValidationError(".".join(str(p) for p in first["loc"]), first["msg"])
        if self.settings.is_production and target.url.scheme != "https":
            return ValidationError("url", "webhook URL must use HTTPS")
        return target

    async def register_target(
        self,
        name: str,
        url: str,
        events: list[NotificationEvent],
        secret: str,
    ) -> OperationResult[NotificationTarget]:
        """Register a webhook receiver for a set of events."""
        target = self._validated_target(name=name, url=url, events=events, secret=secret)
        if isinstance(target, ValidationError):
            return OperationResult.failure(target)
        await self.store.save_target(target)
        self._health[target.id] = ProviderHealth()
        logger.info(f"Registered webhook target {target.name} for {[e.value for e in target.events]}")
        return OperationResult.success(target)

    async def update_target(
        self,
        target_id: str,
        name: Optional[str] = None,
        url: Optional[str] = None,
        events: Optional[list[NotificationEvent]] = None,
        active: Optional[bool] = None,
    ) -> OperationResult[NotificationTarget]:
        """Change the given fields of a target; omitted fields keep their value."""
        current = await self.store.get_target(target_id)
        if current is None:
            return OperationResult.failure(NotFound("notification_target", target_id))

        changes = {"name": name, "url": url, "events": events, "active": active}
        fields = {**current.model_dump(), **{k: v for k, v in changes.items() if v is not None}}
        target = self._validated_target(**fields)
        if isinstance(target, ValidationError):
            return OperationResult.failure(target)

        await self.store.save_target(target)
        if target.url != current.url:
            self._health[target.id] = ProviderHealth()
        logger.info(f"Updated webhook target {target.name}")
        return OperationResult.success(target)

    async def delete_target(self, target_id: str) -> OperationResult[NotificationTarget]:
        """Stop delivering to a target. Its delivery records stay for the audit trail."""
        target = await self.store.get_target(target_id)
        if target is None:
            return OperationResult.failure(NotFound("notification_target", target_id))
        await self.store.delete_target(target_id)
        self._health.pop(target_id, None)
        logger.info(f"Deleted webhook target {target.name}")
        return OperationResult.success(target)

    async def rotate_secret(self, target_id: str) -> OperationResult[NotificationTarget]:
        """Replace the signing secret with a generated one; the caller sees it only in this result."""
        target = await self.store.get_target(target_id)
        if target is None:
            return OperationResult.failure(NotFound("notification_target", target_id))
        target.secret = secrets.token_urlsafe(SECRET_BYTES)
        await self.store.save_target(target)
        logger.info(f"Rotated signing secret of webhook target {target.name}")
        return OperationResult.success(target)

    async def list_targets(self) -> list[NotificationTarget]:
        return await self.store.list_targets()

    async def target_status(self, target_id: str) -> OperationResult[TargetStatus]:
        """Delivery counts and circuit state of one target."""
        target = await self.store.get_target(target_id)
        if target is None:
            return OperationResult.failure(NotFound("notification_target", target_id))

        deliveries = await self.store.list_by_target(target_id)
        counts = {status: 0 for status in DeliveryStatus}
        for delivery in deliveries:
            counts[delivery.delivery_status] += 1
        health = self.health_for(target_id)
        return OperationResult.success(
            TargetStatus(
                target_id=target.id,
                name=target.name,
                active=target.active,
                health=health.status,
                circuit_open=health.is_circuit_open,
                consecutive_failures=health.consecutive_failures,
                last_error=health.last_error,
                delivered=counts[DeliveryStatus.DELIVERED],
                failed=counts[DeliveryStatus.FAILED],
                pending=counts[DeliveryStatus.PENDING],
                last_delivery_at=deliveries[-1].created_at if deliveries else None,
            )
        )

    def health_for(self, target_id: str) -> ProviderHealth:
        return self._health.setdefault(target_id, ProviderHealth())

    # -------------------------------------------------------------------------
    # Delivery
    # -------------------------------------------------------------------------

    async def dispatch_event(
        self, event_type: NotificationEvent, payload: dict[str, Any]
    ) -> list[NotificationDelivery]:
        """Fan an event out to every subscribed target."""
        targets = [t for t in await self.store.list_targets() if t.subscribes_to(event_type)]
        if not targets:
            return []
        return list(await asyncio.gather(*(self.notify(event_type, payload, t) for t in targets)))

    async def notify(
        self,
        event_type: NotificationEvent,
        payload: dict[str, Any],
        target: NotificationTarget,
    ) -> NotificationDelivery:
        """Deliver one signed payload to one target, retrying per policy."""
        delivery = NotificationDelivery(target_id=target.id, event_type=event_type, payload=payload)
        await self.store.save(delivery)
        return await self._deliver(delivery, target)

    async def retrigger(self, delivery_id: str) -> OperationResult[NotificationDelivery]:
        """Manually re-run a FAILED delivery with a fresh attempt budget."""
        delivery = await self.store.get(delivery_id)
        if delivery is None:
            return OperationResult.failure(NotFound("notification_delivery", delivery_id))
        if delivery.delivery_status != DeliveryStatus.FAILED:
            return OperationResult.failure(InvalidTransition(delivery.delivery_status.value, "retrigger"))
        target = await self.store.get_target(delivery.target_id)
        if target is None:
            return OperationResult.failure(NotFound("notification_target", delivery.target_id))

        logger.info(f"Retriggering delivery {delivery.id} ({delivery.event_type.value})")
        delivery.delivery_status = DeliveryStatus.PENDING
        delivery.last_error = None
        await self.store.save(delivery)
        return OperationResult.success(await self._deliver(delivery, target))

    async def failed_deliveries(self) -> list[NotificationDelivery]:
        return await self.store.list_by_status(DeliveryStatus.FAILED)

    async def _deliver(self, delivery: NotificationDelivery, target: NotificationTarget) -> NotificationDelivery:
        body = self._render(delivery)
        failures = 0
        while True:
            retryable = await self._attempt(delivery, target, body)
            if delivery.delivery_status == DeliveryStatus.DELIVERED:
                break
            failures += 1
            if retryable and self.backoff.should_retry(failures):
                await self.store.save(delivery)
                logger.warning(
                    f"Delivery {delivery.id} to {target.name} failed ({delivery.last_error}); "
                    f"retrying in {self.backoff.delay_for(failures):.0f}s"
                )
                await self.backoff.wait(failures)
                continue
            delivery.delivery_status = DeliveryStatus.FAILED
            break

        await self.store.save(delivery)
        await self._audit(delivery, target)
        return delivery

    async def _attempt(self, delivery: NotificationDelivery, target: NotificationTarget, body: bytes) -> bool:
        """One HTTP attempt; returns whether a failure may be retried."""
        attempt = DeliveryAttempt(attempt=delivery.attempt_count + 1)
        health = self.health_for(target.id)
        start = time.perf_counter()

        if health.is_circuit_open:
            attempt.error = "circuit_open"
            delivery.attempts.append(attempt)
            delivery.last_error = attempt.error
            return True

        timestamp = int(self._clock())
        headers = {
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
            "X-Webhook-Signature": sign_payload(target.secret, body, timestamp),
            "X-Webhook-Event": delivery.event_type.value,
            "X-Webhook-Delivery": delivery.id,
        }

        retryable = True
        try:
            response = await self._get_client().post(str(target.url), content=body, headers=headers)
        except httpx.TimeoutException:
            attempt.error = "timeout"
        except httpx.TransportError as e:
            attempt.error = f"connection_error: {type(e).__name__}"
        else:
            attempt.status_code = response.status_code
            if response.is_success:
                delivery.delivery_status = DeliveryStatus.DELIVERED
                delivery.delivered_at = utcnow()
            else:
                attempt.error = f"http_{response.status_code}"
                retryable = response.status_code >= 500 or response.status_code in RETRYABLE_CLIENT_STATUSES

        attempt.latency_ms = (time.perf_counter() - start) * 1000
        delivery.attempts.append(attempt)

        if attempt.error is None:
            health.record_success(attempt.latency_ms)
            delivery.last_error = None
        else:
            delivery.last_error = attempt.error
            health.record_failure(
                attempt.error,
                self.settings.NOTIFICATION_CIRCUIT_BREAKER_THRESHOLD,
                self.settings.NOTIFICATION_CIRCUIT_BREAKER_TIMEOUT_SECONDS,
            )
        return retryable

    async def _audit(self, delivery: NotificationDelivery, target: NotificationTarget) -> None:
        delivered = delivery.delivery_status == DeliveryStatus.DELIVERED
        if delivered:
            logger.info(f"Delivery {delivery.id} to {target.name} succeeded after {delivery.attempt_count} attempts")
        else:
            logger.error(
                f"Delivery {delivery.id} to {target.name} failed after {delivery.attempt_count} attempts: "
                f"{delivery.last_error}"
            )
        await self.audit_log.append(
            AuditEntryDraft(
                subject_type=AuditSubjectType.NOTIFICATION,
                subject_id=delivery.id,
                actor_id="system",
                action=AuditAction.NOTIFICATION_DELIVERED if delivered else AuditAction.NOTIFICATION_FAILED,
                payload={
                    "event": delivery.event_type.value,
                    "target": target.name,
                    "attempts": delivery.attempt_count,
                    "last_error": delivery.last_error,
                },
                enrollment_id=delivery.payload.get("enrollment_id"),
            )
        )

    def _render(self, delivery: NotificationDelivery) -> bytes:
        envelope = {
            "id": delivery.id,
            "event": delivery.event_type.value,
            "created_at": delivery.created_at.isoformat(),
            "data": delivery.payload,
        }
        return json.dumps(envelope, separators=(",", ":"), default=str).encode("utf-8")

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.settings.NOTIFICATION_TIMEOUT_SECONDS,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

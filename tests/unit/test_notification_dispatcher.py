"""
Notification Dispatcher Tests.

Signature format, retry schedule and the manual retrigger path. Webhook
receivers are ``httpx.MockTransport`` handlers.
"""

import base64
import hashlib
import hmac
import json

import pytest

from fakes import WEBHOOK_SECRET, RecordingSleep, WebhookReceiver
from medenroll.core.config import EnrollmentSettings
from medenroll.core.enums import AuditAction, DeliveryStatus, NotificationEvent
from medenroll.core.errors import InvalidTransition, NotFound, ValidationError
from medenroll.services.audit_log import AuditLog
from medenroll.schemas.notification import NotificationTarget
from medenroll.services.notification_dispatcher import (
    InMemoryDeliveryStore,
    NotificationDispatcher,
    sign_payload,
    verify_signature,
)
from medenroll.services.retry import BackoffPolicy

NOW = 1_760_000_000


def _dispatcher(settings, receiver: WebhookReceiver, sleeper: RecordingSleep) -> NotificationDispatcher:
    return NotificationDispatcher(
        AuditLog(),
        settings,
        backoff=BackoffPolicy.for_notifications(settings, sleep=sleeper),
        transport=receiver.transport,
        clock=lambda: NOW,
    )


async def _register(
    dispatcher: NotificationDispatcher,
    event: NotificationEvent,
    name: str = "emr",
    url: str = "https://emr.example.com/hooks",
) -> NotificationTarget:
    result = await dispatcher.register_target(name, url, [event], WEBHOOK_SECRET)
    return result.unwrap()


@pytest.mark.unit
class TestSignature:
    """``t=<unix>,v1=<base64 HMAC-SHA256("t.body")>``"""

    def test_header_format(self):
        body = b'{"event":"enrollment.completed"}'

        header = sign_payload(WEBHOOK_SECRET, body, NOW)

        expected = base64.b64encode(
            hmac.new(WEBHOOK_SECRET.encode(), f"{NOW}.".encode() + body, hashlib.sha256).digest()
        ).decode()
        assert header == f"t={NOW},v1={expected}"

    def test_verify_round_trip(self):
        body = b"{}"
        header = sign_payload(WEBHOOK_SECRET, body, NOW)

        assert verify_signature(WEBHOOK_SECRET, body, header, now=NOW + 10)

    def test_verify_rejects_other_secret(self):
        header = sign_payload(WEBHOOK_SECRET, b"{}", NOW)

        assert not verify_signature("another-secret-value", b"{}", header, now=NOW)

    def test_verify_rejects_modified_body(self):
        header = sign_payload(WEBHOOK_SECRET, b'{"a":1}', NOW)

        assert not verify_signature(WEBHOOK_SECRET, b'{"a":2}', header, now=NOW)

    def test_verify_rejects_stale_timestamp(self):
        header = sign_payload(WEBHOOK_SECRET, b"{}", NOW)

        assert not verify_signature(WEBHOOK_SECRET, b"{}", header, tolerance_seconds=300, now=NOW + 301)

    @pytest.mark.parametrize("header", ["", "v1=abc", "t=notanumber,v1=abc", "garbage"])
    def test_verify_rejects_malformed_header(self, header):
        assert not verify_signature(WEBHOOK_SECRET, b"{}", header, now=NOW)


@pytest.mark.unit
class TestTargets:
    """Target registration and management."""

    @pytest.mark.asyncio
    async def test_secret_too_short(self, settings):
        dispatcher = NotificationDispatcher(AuditLog(), settings)

        result = await dispatcher.register_target(
            "emr", "https://emr.example.com/hooks", [NotificationEvent.ENROLLMENT_COMPLETED], "short"
        )

        assert isinstance(result.error, ValidationError)
        assert result.error.field == "secret"
        assert await dispatcher.list_targets() == []

    @pytest.mark.asyncio
    async def test_production_requires_https(self):
        settings = EnrollmentSettings(_env_file=None, ENVIRONMENT="production")
        dispatcher = NotificationDispatcher(AuditLog(), settings)

        result = await dispatcher.register_target(
            "emr", "http://emr.example.com/hooks", [NotificationEvent.ENROLLMENT_COMPLETED], WEBHOOK_SECRET
        )

        assert result.error.field == "url"

    @pytest.mark.asyncio
    async def test_update_keeps_omitted_fields(self, settings):
        dispatcher = NotificationDispatcher(AuditLog(), settings)
        target = await _register(dispatcher, NotificationEvent.ENROLLMENT_COMPLETED)

        result = await dispatcher.update_target(
            target.id, events=[NotificationEvent.ENROLLMENT_COMPLETED, NotificationEvent.ENROLLMENT_CANCELLED]
        )

        updated = result.unwrap()
        assert updated.name == "emr"
        assert updated.secret == WEBHOOK_SECRET
        assert updated.subscribes_to(NotificationEvent.ENROLLMENT_CANCELLED)
        assert (await dispatcher.list_targets())[0].events == updated.events

    @pytest.mark.asyncio
    async def test_update_validates(self, settings):
        dispatcher = NotificationDispatcher(AuditLog(), settings)
        target = await _register(dispatcher, NotificationEvent.ENROLLMENT_COMPLETED)

        result = await dispatcher.update_target(target.id, url="not a url")

        assert isinstance(result.error, ValidationError)
        assert (await dispatcher.list_targets())[0].url == target.url

    @pytest.mark.asyncio
    async def test_deactivated_target_receives_nothing(self, settings, sleeper):
        receiver = WebhookReceiver()
        dispatcher = _dispatcher(settings, receiver, sleeper)
        target = await _register(dispatcher, NotificationEvent.ENROLLMENT_COMPLETED)

        await dispatcher.update_target(target.id, active=False)
        deliveries = await dispatcher.dispatch_event(NotificationEvent.ENROLLMENT_COMPLETED, {})

        assert deliveries == []
        assert receiver.requests == []

    @pytest.mark.asyncio
    async def test_delete(self, settings):
        dispatcher = NotificationDispatcher(AuditLog(), settings)
        target = await _register(dispatcher, NotificationEvent.ENROLLMENT_COMPLETED)

        deleted = await dispatcher.delete_target(target.id)

        assert deleted.unwrap().id == target.id
        assert await dispatcher.list_targets() == []
        assert isinstance((await dispatcher.delete_target(target.id)).error, NotFound)

    @pytest.mark.asyncio
    async def test_rotate_secret(self, settings, sleeper):
        receiver = WebhookReceiver()
        dispatcher = _dispatcher(settings, receiver, sleeper)
        target = await _register(dispatcher, NotificationEvent.ENROLLMENT_COMPLETED)

        rotated = (await dispatcher.rotate_secret(target.id)).unwrap()
        await dispatcher.dispatch_event(NotificationEvent.ENROLLMENT_COMPLETED, {})

        assert rotated.secret != WEBHOOK_SECRET
        request = receiver.requests[0]
        signature = request.headers["X-Webhook-Signature"]
        assert verify_signature(rotated.secret, request.content, signature, now=NOW)
        assert not verify_signature(WEBHOOK_SECRET, request.content, signature, now=NOW)
        await dispatcher.close()

    @pytest.mark.asyncio
    async def test_target_status_counts(self, settings, sleeper):
        receiver = WebhookReceiver(200, 400)
        dispatcher = _dispatcher(settings, receiver, sleeper)
        target = await _register(dispatcher, NotificationEvent.ENROLLMENT_COMPLETED)
        await dispatcher.notify(NotificationEvent.ENROLLMENT_COMPLETED, {}, target)
        failed = await dispatcher.notify(NotificationEvent.ENROLLMENT_COMPLETED, {}, target)

        status = (await dispatcher.target_status(target.id)).unwrap()

        assert status.delivered == 1
        assert status.failed == 1
        assert status.pending == 0
        assert status.consecutive_failures == 1
        assert status.last_error == "http_400"
        assert status.circuit_open is False
        assert status.last_delivery_at == failed.created_at
        assert isinstance((await dispatcher.target_status("missing")).error, NotFound)
        await dispatcher.close()


@pytest.mark.unit
class TestDelivery:
    """Delivery, retries and audit."""

    @pytest.mark.asyncio
    async def test_delivers_signed_payload(self, settings, sleeper):
        receiver = WebhookReceiver()
        dispatcher = _dispatcher(settings, receiver, sleeper)
        await _register(dispatcher, NotificationEvent.ENROLLMENT_COMPLETED)

        deliveries = await dispatcher.dispatch_event(
            NotificationEvent.ENROLLMENT_COMPLETED, {"enrollment_id": "enr-1"}
        )

        assert len(deliveries) == 1
        delivery = deliveries[0]
        assert delivery.delivery_status == DeliveryStatus.DELIVERED
        assert delivery.attempt_count == 1
        assert delivery.delivered_at is not None

        request = receiver.requests[0]
        assert request.headers["X-Webhook-Event"] == "enrollment.completed"
        assert request.headers["X-Webhook-Delivery"] == delivery.id
        assert verify_signature(WEBHOOK_SECRET, request.content, request.headers["X-Webhook-Signature"], now=NOW)
        envelope = json.loads(request.content)
        assert envelope["event"] == "enrollment.completed"
        assert envelope["data"] == {"enrollment_id": "enr-1"}

        entries = await dispatcher.audit_log.for_enrollment("enr-1")
        assert [e.action for e in entries] == [AuditAction.NOTIFICATION_DELIVERED]
        await dispatcher.close()

    @pytest.mark.asyncio
    async def test_unsubscribed_event_is_not_sent(self, settings, sleeper):
        receiver = WebhookReceiver()
        dispatcher = _dispatcher(settings, receiver, sleeper)
        await _register(dispatcher, NotificationEvent.ENROLLMENT_COMPLETED)

        deliveries = await dispatcher.dispatch_event(NotificationEvent.ENROLLMENT_UPDATED, {"enrollment_id": "enr-1"})

        assert deliveries == []
        assert receiver.requests == []

    @pytest.mark.asyncio
    async def test_server_errors_retry_then_fail(self, settings, sleeper):
        receiver = WebhookReceiver(default=503)
        dispatcher = _dispatcher(settings, receiver, sleeper)
        target = await _register(
            dispatcher, NotificationEvent.INTERVIEW_SCHEDULED, "scheduler", "https://scheduler.example.com/hooks"
        )

        delivery = await dispatcher.notify(NotificationEvent.INTERVIEW_SCHEDULED, {"enrollment_id": "enr-2"}, target)

        assert delivery.delivery_status == DeliveryStatus.FAILED
        assert delivery.attempt_count == settings.NOTIFICATION_MAX_ATTEMPTS == 3
        assert delivery.last_error == "http_503"
        assert sleeper.delays == [300.0, 600.0]
        assert [d.id for d in await dispatcher.failed_deliveries()] == [delivery.id]

        entries = await dispatcher.audit_log.for_enrollment("enr-2")
        assert entries[-1].action == AuditAction.NOTIFICATION_FAILED
        assert entries[-1].payload["attempts"] == 3
        await dispatcher.close()

    @pytest.mark.asyncio
    async def test_client_error_is_not_retried(self, settings, sleeper):
        receiver = WebhookReceiver(default=400)
        dispatcher = _dispatcher(settings, receiver, sleeper)
        target = await _register(dispatcher, NotificationEvent.ENROLLMENT_CANCELLED)

        delivery = await dispatcher.notify(NotificationEvent.ENROLLMENT_CANCELLED, {}, target)

        assert delivery.delivery_status == DeliveryStatus.FAILED
        assert delivery.attempt_count == 1
        assert sleeper.delays == []
        await dispatcher.close()

    @pytest.mark.asyncio
    async def test_recovers_within_budget(self, settings, sleeper):
        receiver = WebhookReceiver(500, 500, 200)
        dispatcher = _dispatcher(settings, receiver, sleeper)
        target = await _register(dispatcher, NotificationEvent.ENROLLMENT_COMPLETED)

        delivery = await dispatcher.notify(NotificationEvent.ENROLLMENT_COMPLETED, {}, target)

        assert delivery.delivery_status == DeliveryStatus.DELIVERED
        assert [a.status_code for a in delivery.attempts] == [500, 500, 200]
        assert delivery.last_error is None
        await dispatcher.close()

    @pytest.mark.asyncio
    async def test_retrigger_failed_delivery(self, settings, sleeper):
        receiver = WebhookReceiver(503, 503, 503)
        dispatcher = _dispatcher(settings, receiver, sleeper)
        target = await _register(dispatcher, NotificationEvent.ENROLLMENT_COMPLETED)
        failed = await dispatcher.notify(NotificationEvent.ENROLLMENT_COMPLETED, {}, target)

        result = await dispatcher.retrigger(failed.id)

        assert result.ok
        assert result.value.delivery_status == DeliveryStatus.DELIVERED
        assert result.value.attempt_count == 4
        assert await dispatcher.failed_deliveries() == []

        again = await dispatcher.retrigger(failed.id)
        assert isinstance(again.error, InvalidTransition)
        await dispatcher.close()

    @pytest.mark.asyncio
    async def test_retrigger_unknown_delivery(self, settings, sleeper):
        dispatcher = _dispatcher(settings, WebhookReceiver(), sleeper)

        result = await dispatcher.retrigger("does-not-exist")

        assert isinstance(result.error, NotFound)

    @pytest.mark.asyncio
    async def test_retrigger_from_another_dispatcher(self, settings, sleeper):
        store = InMemoryDeliveryStore()
        first = NotificationDispatcher(
            AuditLog(),
            settings,
            store=store,
            backoff=BackoffPolicy.for_notifications(settings, sleep=sleeper),
            transport=WebhookReceiver(default=503).transport,
            clock=lambda: NOW,
        )
        target = await _register(first, NotificationEvent.ENROLLMENT_COMPLETED)
        failed = await first.notify(NotificationEvent.ENROLLMENT_COMPLETED, {}, target)
        await first.close()

        receiver = WebhookReceiver()
        second = NotificationDispatcher(
            AuditLog(), settings, store=store, transport=receiver.transport, clock=lambda: NOW
        )
        result = await second.retrigger(failed.id)

        assert result.unwrap().delivery_status == DeliveryStatus.DELIVERED
        assert verify_signature(
            WEBHOOK_SECRET, receiver.requests[0].content, receiver.requests[0].headers["X-Webhook-Signature"], now=NOW
        )
        await second.close()

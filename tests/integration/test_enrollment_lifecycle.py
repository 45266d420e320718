"""
Enrollment Lifecycle Tests.

Drives the orchestrator end to end: authorization, background document
processing, interview scheduling and the signed completion webhook.
"""

import json
from datetime import timedelta

import pytest

from fakes import (
    PDF_BYTES,
    PNG_BYTES,
    WEBHOOK_SECRET,
    FakeExtractor,
    WebhookReceiver,
    build_harness,
    extraction_ok,
)
from medenroll.core.enums import (
    AuditAction,
    DeliveryStatus,
    DocumentStatus,
    DocumentType,
    EnrollmentStatus,
    NotificationEvent,
)
from medenroll.core.errors import Forbidden, NotFound
from medenroll.db.repository import InMemoryEnrollmentRepository
from medenroll.schemas.enrollment import utcnow
from medenroll.services.audit_log import replay_status
from medenroll.services.notification_dispatcher import verify_signature
from medenroll.services.orchestrator import Components, create_orchestrator

DECLARATION = {
    "has_chronic_conditions": False,
    "smoker": False,
    "alcohol_consumption": "none",
}

HOOK_URL = "https://hooks.example.com/enrollment"


async def _ready_for_interview(harness, enrollee) -> str:
    orchestrator = harness.orchestrator
    enrollment_id = (await orchestrator.create_enrollment(enrollee, {"plan": "gold"})).unwrap().id
    (await orchestrator.submit_documents(enrollee, enrollment_id)).unwrap()
    for document_type, content in ((DocumentType.ID, PDF_BYTES), (DocumentType.PROOF_OF_ADDRESS, PNG_BYTES)):
        (await orchestrator.upload_document(enrollee, enrollment_id, document_type, content)).unwrap()
        await harness.settle()
    (await orchestrator.record_health_declaration(enrollee, enrollment_id, DECLARATION)).unwrap()
    return enrollment_id


@pytest.mark.integration
class TestHappyPath:
    """Draft to completed with one signed completion webhook."""

    @pytest.mark.asyncio
    async def test_full_lifecycle(self, settings, sleeper, enrollee, interviewer, admin):
        receiver = WebhookReceiver()
        # ID verifies at once; proof of address is re-extracted after a low-confidence read
        extractor = FakeExtractor(extraction_ok(0.95), extraction_ok(0.60), extraction_ok(0.90))
        harness = build_harness(settings, extractor=extractor, sleeper=sleeper, transport=receiver.transport)
        orchestrator = harness.orchestrator
        (
            await orchestrator.register_target(
                admin, "crm", HOOK_URL, [NotificationEvent.ENROLLMENT_COMPLETED], WEBHOOK_SECRET
            )
        ).unwrap()

        enrollment_id = await _ready_for_interview(harness, enrollee)
        assert (await orchestrator.get_enrollment(enrollee, enrollment_id)).value.status == (
            EnrollmentStatus.HEALTH_DECLARATION_PENDING
        )

        documents = {d.type: d for d in (await orchestrator.list_documents(enrollee, enrollment_id)).unwrap()}
        assert len(extractor.calls) == 3
        assert documents[DocumentType.ID].status == DocumentStatus.VERIFIED
        assert documents[DocumentType.ID].attempt_count == 1
        assert documents[DocumentType.ID].extraction.confidence == 0.95
        address = documents[DocumentType.PROOF_OF_ADDRESS]
        assert address.status == DocumentStatus.VERIFIED
        assert address.attempt_count == 2
        assert address.extraction.confidence == 0.90
        assert sleeper.delays == []

        interview = (
            await orchestrator.schedule_interview(
                interviewer, enrollment_id, "dr-house", utcnow() + timedelta(days=2)
            )
        ).unwrap()
        moved_to = utcnow() + timedelta(days=3)
        rescheduled = (await orchestrator.reschedule_interview(interviewer, enrollment_id, moved_to)).unwrap()
        assert rescheduled.id == interview.id
        assert rescheduled.scheduled_at == moved_to

        (await orchestrator.start_interview(interviewer, enrollment_id)).unwrap()
        completed = (await orchestrator.complete_interview(interviewer, enrollment_id)).unwrap()
        await harness.settle()

        assert completed.status == EnrollmentStatus.COMPLETED
        assert completed.interview.id == interview.id
        assert completed.completed_at is not None

        assert len(receiver.requests) == 1
        request = receiver.requests[0]
        assert request.headers["X-Webhook-Event"] == "enrollment.completed"
        assert verify_signature(WEBHOOK_SECRET, request.content, request.headers["X-Webhook-Signature"])
        body = json.loads(request.content)
        assert body["event"] == "enrollment.completed"
        assert body["data"]["enrollment_id"] == enrollment_id

        trail = (await orchestrator.audit_trail(interviewer, enrollment_id)).unwrap()
        verified = [e.payload for e in trail if e.action == AuditAction.DOCUMENT_VERIFIED]
        assert [(p["document_type"], p["attempt_count"], p["confidence"]) for p in verified] == [
            ("id_document", 1, 0.95),
            ("proof_of_address", 2, 0.90),
        ]
        assert AuditAction.INTERVIEW_RESCHEDULED in [e.action for e in trail]
        path = [e.payload["to"] for e in trail if e.action == AuditAction.STATUS_CHANGED]
        assert path == [
            "documents_pending",
            "documents_submitted",
            "health_declaration_pending",
            "interview_scheduled",
            "interview_completed",
            "completed",
        ]
        assert trail[-1].action == AuditAction.NOTIFICATION_DELIVERED
        assert replay_status(trail) == EnrollmentStatus.COMPLETED
        assert (await harness.audit_log.verify_chain()).valid
        await orchestrator.close()


class TestAuthorization:
    """Denials are audited and leave the aggregate untouched."""

    @pytest.mark.asyncio
    async def test_other_enrollee_cannot_read_or_cancel(self, harness, enrollee, other_enrollee):
        orchestrator = harness.orchestrator
        enrollment_id = (await orchestrator.create_enrollment(enrollee)).unwrap().id
        before = await harness.repository.get(enrollment_id)

        read = await orchestrator.get_enrollment(other_enrollee, enrollment_id)
        cancel = await orchestrator.cancel(other_enrollee, enrollment_id, "not mine")

        assert isinstance(read.error, Forbidden)
        assert isinstance(cancel.error, Forbidden)
        assert await harness.repository.get(enrollment_id) == before
        denials = [
            e for e in await harness.audit_log.for_enrollment(enrollment_id)
            if e.action == AuditAction.ACCESS_DENIED
        ]
        assert [(e.actor_id, e.payload["permission"]) for e in denials] == [
            ("member-2", "enrollment:read"),
            ("member-2", "enrollment:cancel"),
        ]
        await harness.settle()

    @pytest.mark.asyncio
    async def test_enrollee_cannot_create_for_someone_else(self, harness, enrollee):
        result = await harness.orchestrator.create_enrollment(enrollee, owner_id="member-9")

        assert isinstance(result.error, Forbidden)
        entries = await harness.audit_log.entries()
        assert [e.action for e in entries] == [AuditAction.ACCESS_DENIED]

    @pytest.mark.asyncio
    async def test_enrollee_cannot_schedule_own_interview(self, harness, enrollee):
        enrollment_id = await harness.verified_enrollment()

        result = await harness.orchestrator.schedule_interview(
            enrollee, enrollment_id, "dr-house", utcnow() + timedelta(days=1)
        )

        assert isinstance(result.error, Forbidden)
        assert (await harness.repository.get(enrollment_id)).interview is None
        await harness.settle()

    @pytest.mark.asyncio
    async def test_enrollee_cannot_manage_notifications(self, harness, enrollee):
        registered = await harness.orchestrator.register_target(
            enrollee, "crm", HOOK_URL, [NotificationEvent.ENROLLMENT_COMPLETED], WEBHOOK_SECRET
        )
        listed = await harness.orchestrator.failed_deliveries(enrollee)

        assert isinstance(registered.error, Forbidden)
        assert isinstance(listed.error, Forbidden)
        assert await harness.dispatcher.list_targets() == []

    @pytest.mark.asyncio
    async def test_unknown_enrollment(self, harness, enrollee, admin):
        assert isinstance((await harness.orchestrator.get_enrollment(admin, "missing")).error, NotFound)
        assert isinstance((await harness.orchestrator.cancel(admin, "missing", "x")).error, NotFound)
        assert isinstance((await harness.orchestrator.process_document(admin, "missing")).error, NotFound)

    @pytest.mark.asyncio
    async def test_unknown_ids_answer_like_foreign_ones(self, harness, enrollee, other_enrollee):
        orchestrator = harness.orchestrator
        foreign_id = (await orchestrator.create_enrollment(other_enrollee)).unwrap().id

        foreign = await orchestrator.get_enrollment(enrollee, foreign_id)
        unknown = await orchestrator.get_enrollment(enrollee, "missing")
        unknown_document = await orchestrator.process_document(enrollee, "missing")

        assert isinstance(foreign.error, Forbidden)
        assert isinstance(unknown.error, Forbidden)
        assert isinstance(unknown_document.error, Forbidden)
        assert foreign.error.to_dict().keys() == unknown.error.to_dict().keys()
        denials = [e for e in await harness.audit_log.entries() if e.action == AuditAction.ACCESS_DENIED]
        assert [(e.subject_id, e.payload["permission"]) for e in denials] == [
            (foreign_id, "enrollment:read"),
            ("missing", "enrollment:read"),
            ("missing", "document:process"),
        ]

    @pytest.mark.asyncio
    async def test_owner_cancels_with_reason(self, harness, enrollee):
        enrollment_id = (await harness.orchestrator.create_enrollment(enrollee)).unwrap().id

        cancelled = (await harness.orchestrator.cancel(enrollee, enrollment_id, "moving abroad")).unwrap()

        assert cancelled.status == EnrollmentStatus.CANCELLED
        assert cancelled.cancellation_reason == "moving abroad"
        await harness.settle()


@pytest.mark.integration
class TestFailedNotifications:
    """Failed deliveries are kept for a manual retrigger."""

    @pytest.mark.asyncio
    async def test_failed_delivery_is_retriggered(self, settings, sleeper, enrollee, admin):
        receiver = WebhookReceiver(default=503)
        harness = build_harness(settings, sleeper=sleeper, transport=receiver.transport)
        orchestrator = harness.orchestrator
        (
            await orchestrator.register_target(
                admin, "crm", HOOK_URL, [NotificationEvent.ENROLLMENT_CANCELLED], WEBHOOK_SECRET
            )
        ).unwrap()
        enrollment_id = (await orchestrator.create_enrollment(enrollee)).unwrap().id
        (await orchestrator.cancel(enrollee, enrollment_id, "changed my mind")).unwrap()
        await harness.settle()

        failed = (await orchestrator.failed_deliveries(admin)).unwrap()
        assert len(failed) == 1
        assert failed[0].attempt_count == 3
        assert failed[0].last_error == "http_503"
        assert sleeper.delays == [300.0, 600.0]

        receiver.default = 200
        delivery = (await orchestrator.retrigger_delivery(admin, failed[0].id)).unwrap()

        assert delivery.delivery_status == DeliveryStatus.DELIVERED
        assert (await orchestrator.failed_deliveries(admin)).unwrap() == []
        actions = [e.action for e in await harness.audit_log.for_enrollment(enrollment_id)]
        assert actions[-2:] == [AuditAction.NOTIFICATION_FAILED, AuditAction.NOTIFICATION_DELIVERED]
        await orchestrator.close()


@pytest.mark.integration
class TestWiring:
    """``create_orchestrator`` builds the in-memory graph without a database URL."""

    @pytest.mark.asyncio
    async def test_default_components(self, settings, enrollee):
        extractor = FakeExtractor()
        orchestrator = create_orchestrator(settings, Components(extractor=extractor))

        assert isinstance(orchestrator.repository, InMemoryEnrollmentRepository)
        assert orchestrator.pipeline.extractor is extractor

        enrollment_id = (await orchestrator.create_enrollment(enrollee)).unwrap().id
        (await orchestrator.submit_documents(enrollee, enrollment_id)).unwrap()
        document = (await orchestrator.upload_document(enrollee, enrollment_id, DocumentType.ID, PDF_BYTES)).unwrap()
        await orchestrator.background.drain(timeout=5)

        processed = (await orchestrator.pipeline.get_document(document.id)).unwrap()
        assert processed.status == DocumentStatus.VERIFIED
        await orchestrator.close()

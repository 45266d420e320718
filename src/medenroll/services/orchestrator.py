"""
Enrollment Orchestrator.

Single entry point for callers (API routes, workers). Every operation first
asks the authorization gate; a denial is audited and returned as
``Forbidden`` without touching the aggregate. The state machine and the
document pipeline stay free of access-control branching.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional, Union

from medenroll.core.config import EnrollmentSettings, get_settings
from medenroll.core.enums import AuditAction, AuditSubjectType, DocumentType, NotificationEvent, Permission
from medenroll.core.errors import Forbidden, NotFound
from medenroll.db.connection import get_session_maker
from medenroll.db.repository import EnrollmentRepository, InMemoryEnrollmentRepository
from medenroll.db.sql_repository import SqlAlchemyEnrollmentRepository, SqlAuditStore, SqlDeliveryStore
from medenroll.gateways.extraction_gateway import ExtractionClient, ExtractionGateway
from medenroll.schemas.audit import AuditEntry, AuditEntryDraft
from medenroll.schemas.enrollment import Document, Enrollment, HealthDeclaration, Interview
from medenroll.schemas.notification import NotificationDelivery, NotificationTarget, TargetStatus
from medenroll.schemas.result import OperationResult
from medenroll.services.audit_log import AuditLog
from medenroll.services.background import BackgroundRunner
from medenroll.services.document_pipeline import DocumentPipeline
from medenroll.services.document_store import DocumentStore, create_document_store
from medenroll.services.enrollment_state_machine import EnrollmentStateMachine
from medenroll.services.notification_dispatcher import DeliveryStore, NotificationDispatcher
from medenroll.services.security.authorization import (
    Actor,
    AuthorizationDecision,
    AuthorizationGate,
    Resource,
    RoleBasedAuthorizationGate,
)
from medenroll.services.security.encryption import EncryptionService

logger = logging.getLogger(__name__)

# Owner of a resource that does not exist; matches no actor
_UNOWNED = ""


class EnrollmentOrchestrator:
    """Authorization boundary in front of the state machine, pipeline and dispatcher."""

    def __init__(
        self,
        repository: EnrollmentRepository,
        audit_log: AuditLog,
        state_machine: EnrollmentStateMachine,
        pipeline: DocumentPipeline,
        dispatcher: NotificationDispatcher,
        gate: Optional[AuthorizationGate] = None,
        background: Optional[BackgroundRunner] = None,
    ):
        self.repository = repository
        self.audit_log = audit_log
        self.state_machine = state_machine
        self.pipeline = pipeline
        self.dispatcher = dispatcher
        self.gate = gate or RoleBasedAuthorizationGate()
        self.background = background or state_machine.background

    # -------------------------------------------------------------------------
    # Authorization
    # -------------------------------------------------------------------------

    async def _authorize(self, actor: Actor, action: Permission, resource: Resource) -> Optional[Forbidden]:
        if self.gate.check(actor, action, resource) == AuthorizationDecision.ALLOW:
            return None

        logger.warning(f"Access denied: actor {actor.id} attempted {action.value} on {resource}")
        await self.audit_log.append(
            AuditEntryDraft(
                subject_type=_subject_type(resource),
                subject_id=resource.id or resource.type,
                actor_id=actor.id,
                action=AuditAction.ACCESS_DENIED,
                payload={"permission": action.value, "roles": sorted(r.value for r in actor.roles)},
                enrollment_id=resource.id if resource.type == "enrollment" else None,
            )
        )
        return Forbidden(actor.id, action.value, str(resource))

    async def _authorize_enrollment(
        self, actor: Actor, action: Permission, enrollment_id: str
    ) -> Union[Enrollment, NotFound, Forbidden]:
        try:
            enrollment = await self.repository.get(enrollment_id)
        except NotFound as e:
            # Unknown ids answer like existing ones the actor may not touch
            denied = await self._authorize(actor, action, Resource("enrollment", enrollment_id, _UNOWNED))
            return denied or e
        denied = await self._authorize(actor, action, Resource("enrollment", enrollment.id, enrollment.owner_id))
        return denied or enrollment

    # -------------------------------------------------------------------------
    # Enrollment operations
    # -------------------------------------------------------------------------

    async def create_enrollment(
        self,
        actor: Actor,
        metadata: Optional[dict[str, Any]] = None,
        owner_id: Optional[str] = None,
    ) -> OperationResult[Enrollment]:
        owner_id = owner_id or actor.id
        denied = await self._authorize(actor, Permission.ENROLLMENT_CREATE, Resource("enrollment", None, owner_id))
        if denied:
            return OperationResult.failure(denied)
        return await self.state_machine.create(owner_id, metadata, actor_id=actor.id)

    async def get_enrollment(self, actor: Actor, enrollment_id: str) -> OperationResult[Enrollment]:
        checked = await self._authorize_enrollment(actor, Permission.ENROLLMENT_READ, enrollment_id)
        if not isinstance(checked, Enrollment):
            return OperationResult.failure(checked)
        return OperationResult.success(checked)

    async def list_documents(self, actor: Actor, enrollment_id: str) -> OperationResult[list[Document]]:
        """Every document of the enrollment, replaced ones included, in upload order."""
        checked = await self._authorize_enrollment(actor, Permission.ENROLLMENT_READ, enrollment_id)
        if not isinstance(checked, Enrollment):
            return OperationResult.failure(checked)
        return OperationResult.success(checked.documents)

    async def submit_documents(self, actor: Actor, enrollment_id: str) -> OperationResult[Enrollment]:
        checked = await self._authorize_enrollment(actor, Permission.ENROLLMENT_SUBMIT_DOCUMENTS, enrollment_id)
        if not isinstance(checked, Enrollment):
            return OperationResult.failure(checked)
        return await self.state_machine.submit_documents(enrollment_id, actor.id)

    async def record_health_declaration(
        self,
        actor: Actor,
        enrollment_id: str,
        declaration: Union[HealthDeclaration, dict[str, Any]],
    ) -> OperationResult[Enrollment]:
        checked = await self._authorize_enrollment(actor, Permission.HEALTH_DECLARATION_RECORD, enrollment_id)
        if not isinstance(checked, Enrollment):
            return OperationResult.failure(checked)
        return await self.state_machine.record_health_declaration(enrollment_id, declaration, actor.id)

    async def schedule_interview(
        self,
        actor: Actor,
        enrollment_id: str,
        interviewer_id: str,
        at: datetime,
        duration_minutes: int = 30,
    ) -> OperationResult[Interview]:
        checked = await self._authorize_enrollment(actor, Permission.INTERVIEW_SCHEDULE, enrollment_id)
        if not isinstance(checked, Enrollment):
            return OperationResult.failure(checked)
        return await self.state_machine.schedule_interview(
            enrollment_id, interviewer_id, at, actor.id, duration_minutes=duration_minutes
        )

    async def reschedule_interview(
        self, actor: Actor, enrollment_id: str, at: datetime
    ) -> OperationResult[Interview]:
        checked = await self._authorize_enrollment(actor, Permission.INTERVIEW_SCHEDULE, enrollment_id)
        if not isinstance(checked, Enrollment):
            return OperationResult.failure(checked)
        return await self.state_machine.reschedule_interview(enrollment_id, at, actor.id)

    async def start_interview(self, actor: Actor, enrollment_id: str) -> OperationResult[Interview]:
        checked = await self._authorize_enrollment(actor, Permission.INTERVIEW_START, enrollment_id)
        if not isinstance(checked, Enrollment):
            return OperationResult.failure(checked)
        return await self.state_machine.start_interview(enrollment_id, actor.id)

    async def complete_interview(self, actor: Actor, enrollment_id: str) -> OperationResult[Enrollment]:
        checked = await self._authorize_enrollment(actor, Permission.INTERVIEW_COMPLETE, enrollment_id)
        if not isinstance(checked, Enrollment):
            return OperationResult.failure(checked)
        return await self.state_machine.complete_interview(enrollment_id, actor.id)

    async def cancel(self, actor: Actor, enrollment_id: str, reason: str) -> OperationResult[Enrollment]:
        checked = await self._authorize_enrollment(actor, Permission.ENROLLMENT_CANCEL, enrollment_id)
        if not isinstance(checked, Enrollment):
            return OperationResult.failure(checked)
        return await self.state_machine.cancel(enrollment_id, reason, actor.id)

    async def audit_trail(self, actor: Actor, enrollment_id: str) -> OperationResult[list[AuditEntry]]:
        checked = await self._authorize_enrollment(actor, Permission.AUDIT_READ, enrollment_id)
        if not isinstance(checked, Enrollment):
            return OperationResult.failure(checked)
        return OperationResult.success(await self.audit_log.for_enrollment(enrollment_id))

    # -------------------------------------------------------------------------
    # Document operations
    # -------------------------------------------------------------------------

    async def upload_document(
        self,
        actor: Actor,
        enrollment_id: str,
        document_type: Union[DocumentType, str],
        content: bytes,
        process: bool = True,
    ) -> OperationResult[Document]:
        """Upload and, unless ``process`` is False, schedule processing in the background."""
        checked = await self._authorize_enrollment(actor, Permission.DOCUMENT_UPLOAD, enrollment_id)
        if not isinstance(checked, Enrollment):
            return OperationResult.failure(checked)

        result = await self.pipeline.upload(enrollment_id, document_type, content, actor.id)
        if result.ok and process:
            self.process_in_background(result.value.id)
        return result

    async def process_document(self, actor: Actor, document_id: str) -> OperationResult[Document]:
        enrollment_id = await self.repository.find_enrollment_id_for_document(document_id)
        if enrollment_id is None:
            denied = await self._authorize(
                actor, Permission.DOCUMENT_PROCESS, Resource("document", document_id, _UNOWNED)
            )
            return OperationResult.failure(denied or NotFound("document", document_id))
        checked = await self._authorize_enrollment(actor, Permission.DOCUMENT_PROCESS, enrollment_id)
        if not isinstance(checked, Enrollment):
            return OperationResult.failure(checked)
        return await self.pipeline.process(document_id, actor.id)

    def process_in_background(self, document_id: str) -> None:
        self.background.spawn(self.pipeline.process(document_id), name=f"process:{document_id}")

    # -------------------------------------------------------------------------
    # Notification operations
    # -------------------------------------------------------------------------

    async def register_target(
        self,
        actor: Actor,
        name: str,
        url: str,
        events: list[NotificationEvent],
        secret: str,
    ) -> OperationResult[NotificationTarget]:
        denied = await self._authorize(actor, Permission.NOTIFICATION_MANAGE, Resource("notification_target"))
        if denied:
            return OperationResult.failure(denied)
        return await self.dispatcher.register_target(name, url, events, secret)

    async def list_targets(self, actor: Actor) -> OperationResult[list[NotificationTarget]]:
        denied = await self._authorize(actor, Permission.NOTIFICATION_MANAGE, Resource("notification_target"))
        if denied:
            return OperationResult.failure(denied)
        return OperationResult.success(await self.dispatcher.list_targets())

    async def update_target(
        self,
        actor: Actor,
        target_id: str,
        name: Optional[str] = None,
        url: Optional[str] = None,
        events: Optional[list[NotificationEvent]] = None,
        active: Optional[bool] = None,
    ) -> OperationResult[NotificationTarget]:
        denied = await self._authorize(
            actor, Permission.NOTIFICATION_MANAGE, Resource("notification_target", target_id)
        )
        if denied:
            return OperationResult.failure(denied)
        return await self.dispatcher.update_target(target_id, name=name, url=url, events=events, active=active)

    async def delete_target(self, actor: Actor, target_id: str) -> OperationResult[NotificationTarget]:
        denied = await self._authorize(
            actor, Permission.NOTIFICATION_MANAGE, Resource("notification_target", target_id)
        )
        if denied:
            return OperationResult.failure(denied)
        return await self.dispatcher.delete_target(target_id)

    async def rotate_target_secret(self, actor: Actor, target_id: str) -> OperationResult[NotificationTarget]:
        denied = await self._authorize(
            actor, Permission.NOTIFICATION_MANAGE, Resource("notification_target", target_id)
        )
        if denied:
            return OperationResult.failure(denied)
        return await self.dispatcher.rotate_secret(target_id)

    async def target_status(self, actor: Actor, target_id: str) -> OperationResult[TargetStatus]:
        denied = await self._authorize(
            actor, Permission.NOTIFICATION_MANAGE, Resource("notification_target", target_id)
        )
        if denied:
            return OperationResult.failure(denied)
        return await self.dispatcher.target_status(target_id)

    async def failed_deliveries(self, actor: Actor) -> OperationResult[list[NotificationDelivery]]:
        denied = await self._authorize(actor, Permission.NOTIFICATION_MANAGE, Resource("notification_delivery"))
        if denied:
            return OperationResult.failure(denied)
        return OperationResult.success(await self.dispatcher.failed_deliveries())

    async def retrigger_delivery(self, actor: Actor, delivery_id: str) -> OperationResult[NotificationDelivery]:
        denied = await self._authorize(
            actor, Permission.NOTIFICATION_MANAGE, Resource("notification_delivery", delivery_id)
        )
        if denied:
            return OperationResult.failure(denied)
        return await self.dispatcher.retrigger(delivery_id)

    async def close(self) -> None:
        await self.background.shutdown()
        await self.dispatcher.close()
        close = getattr(self.pipeline.extractor, "close", None)
        if close is not None:
            await close()


def _subject_type(resource: Resource) -> AuditSubjectType:
    if resource.type.startswith("notification"):
        return AuditSubjectType.NOTIFICATION
    if resource.type == "document":
        return AuditSubjectType.DOCUMENT
    return AuditSubjectType.ENROLLMENT


@dataclass
class Components:
    """Collaborators wired by ``create_orchestrator``; tests swap any of them."""

    repository: Optional[EnrollmentRepository] = None
    audit_log: Optional[AuditLog] = None
    store: Optional[DocumentStore] = None
    extractor: Optional[ExtractionClient] = None
    gate: Optional[AuthorizationGate] = None
    delivery_store: Optional[DeliveryStore] = None
    dispatcher: Optional[NotificationDispatcher] = None
    background: Optional[BackgroundRunner] = None


def create_orchestrator(
    settings: Optional[EnrollmentSettings] = None,
    components: Optional[Components] = None,
) -> EnrollmentOrchestrator:
    """Wire the default component graph, honoring any provided overrides.

    With ``DATABASE_URL`` set, the aggregate, the audit chain and delivery
    records and webhook targets are kept in the database; otherwise in process memory.
    """
    settings = settings or get_settings()
    components = components or Components()

    audit_log = components.audit_log
    repository = components.repository
    delivery_store = components.delivery_store
    if settings.DATABASE_URL:
        session_maker = get_session_maker(settings)
        audit_log = audit_log or AuditLog(SqlAuditStore(session_maker))
        repository = repository or SqlAlchemyEnrollmentRepository(session_maker, audit_log)
        delivery_store = delivery_store or SqlDeliveryStore(
            session_maker, EncryptionService.from_base64_key(settings.STORAGE_ENCRYPTION_KEY)
        )
    audit_log = audit_log or AuditLog()
    repository = repository or InMemoryEnrollmentRepository(audit_log)

    store = components.store or create_document_store(settings)
    extractor = components.extractor or ExtractionGateway(store, settings)
    background = components.background or BackgroundRunner()
    dispatcher = components.dispatcher or NotificationDispatcher(audit_log, settings, store=delivery_store)
    state_machine = EnrollmentStateMachine(
        repository,
        audit_log,
        settings,
        publisher=dispatcher.dispatch_event,
        background=background,
    )
    pipeline = DocumentPipeline(repository, store, extractor, state_machine, audit_log, settings)
    return EnrollmentOrchestrator(
        repository,
        audit_log,
        state_machine,
        pipeline,
        dispatcher,
        gate=components.gate,
        background=background,
    )

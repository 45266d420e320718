"""
Enrollment Status State Machine.

Provides:
- Valid status transitions (single source of truth)
- Guarded transitions evaluated against the aggregate
- Case-level operations executed inside a repository transaction

State Diagram:
    DRAFT -> DOCUMENTS_PENDING
    DOCUMENTS_PENDING -> DOCUMENTS_SUBMITTED | HEALTH_DECLARATION_PENDING
    DOCUMENTS_SUBMITTED -> HEALTH_DECLARATION_PENDING
    HEALTH_DECLARATION_PENDING -> INTERVIEW_SCHEDULED
    INTERVIEW_SCHEDULED -> INTERVIEW_COMPLETED
    INTERVIEW_COMPLETED -> COMPLETED
    <any non-terminal> -> CANCELLED

A transition outside the table fails with ``InvalidTransition`` and leaves
the stored aggregate untouched. Every applied transition is committed in the
same transaction as its ``status_changed`` audit entry.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from medenroll.core.config import EnrollmentSettings, get_settings
from medenroll.core.enums import (
    AuditAction,
    AuditSubjectType,
    DocumentStatus,
    DocumentType,
    EnrollmentStatus,
    InterviewStatus,
    NotificationEvent,
    TERMINAL_ENROLLMENT_STATUSES,
    TERMINAL_INTERVIEW_STATUSES,
)
from medenroll.core.errors import (
    InvalidTransition,
    NotFound,
    ValidationError,
)
from medenroll.db.repository import EnrollmentRepository, EnrollmentTransaction
from medenroll.schemas.audit import AuditEntryDraft
from medenroll.schemas.enrollment import Enrollment, HealthDeclaration, Interview, utcnow
from medenroll.schemas.result import OperationResult
from medenroll.services.audit_log import AuditLog
from medenroll.services.background import BackgroundRunner

logger = logging.getLogger(__name__)

_DOCUMENT_STAGE = frozenset(
    {
        EnrollmentStatus.DRAFT,
        EnrollmentStatus.DOCUMENTS_PENDING,
        EnrollmentStatus.DOCUMENTS_SUBMITTED,
    }
)

EventPublisher = Callable[[NotificationEvent, dict[str, Any]], Awaitable[Any]]
Guard = Callable[[Enrollment, list[DocumentType]], Optional[str]]


class TransitionEvent(str, Enum):
    """Events that trigger enrollment status transitions."""

    SUBMIT_DOCUMENTS = "submit_documents"
    DOCUMENTS_RECEIVED = "documents_received"
    DOCUMENTS_VERIFIED = "documents_verified"
    SCHEDULE_INTERVIEW = "schedule_interview"
    COMPLETE_INTERVIEW = "complete_interview"
    COMPLETE = "complete"
    CANCEL = "cancel"


# =============================================================================
# Guards
# =============================================================================


def _slots_filled(enrollment: Enrollment, required: list[DocumentType]) -> Optional[str]:
    if not enrollment.slots_filled(required):
        return "required documents missing"
    return None


def _slots_verified(enrollment: Enrollment, required: list[DocumentType]) -> Optional[str]:
    if not enrollment.slots_verified(required):
        return "required documents not verified"
    return None


def _declaration_recorded(enrollment: Enrollment, required: list[DocumentType]) -> Optional[str]:
    if enrollment.health_declaration is None:
        return "health declaration not recorded"
    return None


def _ready_to_complete(enrollment: Enrollment, required: list[DocumentType]) -> Optional[str]:
    missing = _slots_verified(enrollment, required)
    if missing:
        return missing
    if enrollment.interview is None or enrollment.interview.status != InterviewStatus.COMPLETED:
        return "interview not completed"
    return None


# =============================================================================
# Valid Transitions Definition
# =============================================================================


@dataclass
class Transition:
    """Represents a valid state transition."""

    from_status: EnrollmentStatus
    to_status: EnrollmentStatus
    event: TransitionEvent
    guard: Optional[Guard] = None
    requires_reason: bool = False
    auto_transition: bool = False  # Triggered by document events, not by a caller


VALID_TRANSITIONS: list[Transition] = [
    Transition(
        from_status=EnrollmentStatus.DRAFT,
        to_status=EnrollmentStatus.DOCUMENTS_PENDING,
        event=TransitionEvent.SUBMIT_DOCUMENTS,
    ),
    Transition(
        from_status=EnrollmentStatus.DOCUMENTS_PENDING,
        to_status=EnrollmentStatus.DOCUMENTS_SUBMITTED,
        event=TransitionEvent.DOCUMENTS_RECEIVED,
        guard=_slots_filled,
        auto_transition=True,
    ),
    Transition(
        from_status=EnrollmentStatus.DOCUMENTS_PENDING,
        to_status=EnrollmentStatus.HEALTH_DECLARATION_PENDING,
        event=TransitionEvent.DOCUMENTS_VERIFIED,
        guard=_slots_verified,
        auto_transition=True,
    ),
    Transition(
        from_status=EnrollmentStatus.DOCUMENTS_SUBMITTED,
        to_status=EnrollmentStatus.HEALTH_DECLARATION_PENDING,
        event=TransitionEvent.DOCUMENTS_VERIFIED,
        guard=_slots_verified,
        auto_transition=True,
    ),
    Transition(
        from_status=EnrollmentStatus.HEALTH_DECLARATION_PENDING,
        to_status=EnrollmentStatus.INTERVIEW_SCHEDULED,
        event=TransitionEvent.SCHEDULE_INTERVIEW,
        guard=_declaration_recorded,
    ),
    Transition(
        from_status=EnrollmentStatus.INTERVIEW_SCHEDULED,
        to_status=EnrollmentStatus.INTERVIEW_COMPLETED,
        event=TransitionEvent.COMPLETE_INTERVIEW,
    ),
    Transition(
        from_status=EnrollmentStatus.INTERVIEW_COMPLETED,
        to_status=EnrollmentStatus.COMPLETED,
        event=TransitionEvent.COMPLETE,
        guard=_ready_to_complete,
        auto_transition=True,
    ),
] + [
    Transition(
        from_status=status,
        to_status=EnrollmentStatus.CANCELLED,
        event=TransitionEvent.CANCEL,
        requires_reason=True,
    )
    for status in EnrollmentStatus
    if status not in TERMINAL_ENROLLMENT_STATUSES
]


class TransitionTable:
    """Lookup over ``VALID_TRANSITIONS``."""

    def __init__(self, transitions: Optional[list[Transition]] = None):
        self._transitions: dict[tuple[EnrollmentStatus, TransitionEvent], Transition] = {}
        self._from_status_map: dict[EnrollmentStatus, list[Transition]] = {}
        for transition in transitions or VALID_TRANSITIONS:
            self._transitions[(transition.from_status, transition.event)] = transition
            self._from_status_map.setdefault(transition.from_status, []).append(transition)

    def get_transition(self, from_status: EnrollmentStatus, event: TransitionEvent) -> Optional[Transition]:
        return self._transitions.get((from_status, event))

    def get_valid_events(self, status: EnrollmentStatus) -> list[TransitionEvent]:
        return [t.event for t in self._from_status_map.get(status, [])]

    def get_next_statuses(self, status: EnrollmentStatus) -> list[EnrollmentStatus]:
        return [t.to_status for t in self._from_status_map.get(status, [])]

    def can_transition(self, from_status: EnrollmentStatus, to_status: EnrollmentStatus) -> bool:
        return to_status in self.get_next_statuses(from_status)

    def validate(
        self,
        enrollment: Enrollment,
        event: TransitionEvent,
        required: list[DocumentType],
        reason: Optional[str] = None,
    ) -> Union[Transition, InvalidTransition]:
        """Return the applicable transition, or the error describing why none applies."""
        transition = self.get_transition(enrollment.status, event)
        if transition is None:
            return InvalidTransition(enrollment.status.value, event.value)
        if transition.requires_reason and not (reason and reason.strip()):
            return InvalidTransition(enrollment.status.value, event.value, "reason required")
        if transition.guard is not None:
            detail = transition.guard(enrollment, required)
            if detail:
                return InvalidTransition(enrollment.status.value, event.value, detail)
        return transition


TRANSITIONS = TransitionTable()


def apply_transition(
    tx: EnrollmentTransaction,
    event: TransitionEvent,
    required: list[DocumentType],
    reason: Optional[str] = None,
    table: TransitionTable = TRANSITIONS,
) -> Optional[InvalidTransition]:
    """Apply ``event`` to the working copy and stage its audit entry.

    Returns the error instead of mutating when the transition is not allowed.
    """
    enrollment = tx.enrollment
    checked = table.validate(enrollment, event, required, reason)
    if isinstance(checked, InvalidTransition):
        return checked

    from_status = enrollment.status
    enrollment.status = checked.to_status
    if checked.to_status == EnrollmentStatus.COMPLETED:
        enrollment.completed_at = utcnow()

    payload: dict[str, Any] = {"from": from_status.value, "to": checked.to_status.value, "event": event.value}
    if reason:
        payload["reason"] = reason
    tx.record(AuditAction.STATUS_CHANGED, **payload)
    tx.emit(
        NotificationEvent.ENROLLMENT_UPDATED,
        status=checked.to_status.value,
        previous_status=from_status.value,
    )
    logger.info(
        f"Enrollment {enrollment.id} transitioned: "
        f"{from_status.value} -> {checked.to_status.value} (event: {event.value})"
    )
    return None


# =============================================================================
# State Machine Service
# =============================================================================


class EnrollmentStateMachine:
    """
    Case-level operations over the enrollment aggregate.

    Every operation runs inside one repository transaction; it either
    commits the status change together with its audit entries or writes
    nothing. Operations return ``OperationResult`` values instead of raising
    domain errors.
    """

    def __init__(
        self,
        repository: EnrollmentRepository,
        audit_log: AuditLog,
        settings: Optional[EnrollmentSettings] = None,
        publisher: Optional[EventPublisher] = None,
        background: Optional[BackgroundRunner] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.repository = repository
        self.audit_log = audit_log
        self.settings = settings or get_settings()
        self.publisher = publisher
        self.background = background or BackgroundRunner()
        self.clock = clock
        self.table = TRANSITIONS

    @property
    def required_types(self) -> list[DocumentType]:
        return list(self.settings.REQUIRED_DOCUMENT_TYPES)

    # -------------------------------------------------------------------------
    # Plumbing
    # -------------------------------------------------------------------------

    async def commit(
        self,
        enrollment_id: str,
        actor_id: str,
        mutation: Callable[[EnrollmentTransaction], OperationResult],
    ) -> OperationResult:
        """Run ``mutation`` in a transaction; audit rejected transitions, publish committed events."""
        result, tx = await self.repository.run(enrollment_id, actor_id, mutation)
        if isinstance(result.error, InvalidTransition):
            await self.audit_invalid(enrollment_id, actor_id, result.error)
        if tx is not None and tx.committed:
            self.publish_events(tx.events)
        return result

    async def audit_invalid(self, enrollment_id: str, actor_id: str, error: InvalidTransition) -> None:
        logger.warning(f"Rejected transition for enrollment {enrollment_id}: {error.message}")
        await self.audit_log.append(
            AuditEntryDraft(
                subject_type=AuditSubjectType.ENROLLMENT,
                subject_id=enrollment_id,
                actor_id=actor_id,
                action=AuditAction.INVALID_TRANSITION,
                payload=error.to_dict(),
                enrollment_id=enrollment_id,
            )
        )

    def publish_events(self, events: Iterable[tuple[NotificationEvent, dict[str, Any]]]) -> None:
        if self.publisher is None:
            return
        for event, payload in events:
            self.background.spawn(self.publisher(event, payload), name=f"notify:{event.value}")

    def _advance_documents(self, tx: EnrollmentTransaction) -> None:
        """Apply whichever document-readiness transitions now hold."""
        enrollment = tx.enrollment
        required = self.required_types
        if enrollment.status == EnrollmentStatus.DOCUMENTS_PENDING and not enrollment.slots_verified(required):
            if enrollment.slots_filled(required):
                apply_transition(tx, TransitionEvent.DOCUMENTS_RECEIVED, required)
        if enrollment.status in (EnrollmentStatus.DOCUMENTS_PENDING, EnrollmentStatus.DOCUMENTS_SUBMITTED):
            if enrollment.slots_verified(required):
                apply_transition(tx, TransitionEvent.DOCUMENTS_VERIFIED, required)

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    async def create(
        self,
        owner_id: str,
        metadata: Optional[dict[str, Any]] = None,
        actor_id: Optional[str] = None,
    ) -> OperationResult[Enrollment]:
        """Create an enrollment in DRAFT."""
        if not owner_id or not owner_id.strip():
            return OperationResult.failure(ValidationError("owner_id", "required"))

        enrollment = Enrollment(owner_id=owner_id, metadata=metadata or {})
        await self.repository.add(
            enrollment,
            [
                AuditEntryDraft(
                    subject_type=AuditSubjectType.ENROLLMENT,
                    subject_id=enrollment.id,
                    actor_id=actor_id or owner_id,
                    action=AuditAction.ENROLLMENT_CREATED,
                    payload={"status": enrollment.status.value, "owner_id": owner_id},
                    enrollment_id=enrollment.id,
                )
            ],
        )
        logger.info(f"Enrollment {enrollment.id} created")
        self.publish_events(
            [(NotificationEvent.ENROLLMENT_CREATED, {"enrollment_id": enrollment.id, "status": enrollment.status.value})]
        )
        return OperationResult.success(enrollment)

    async def get(self, enrollment_id: str) -> OperationResult[Enrollment]:
        try:
            return OperationResult.success(await self.repository.get(enrollment_id))
        except NotFound as e:
            return OperationResult.failure(e)

    async def submit_documents(self, enrollment_id: str, actor_id: str) -> OperationResult[Enrollment]:
        """DRAFT -> DOCUMENTS_PENDING, then re-evaluate document readiness."""

        def mutation(tx: EnrollmentTransaction) -> OperationResult:
            error = apply_transition(tx, TransitionEvent.SUBMIT_DOCUMENTS, self.required_types)
            if error:
                return OperationResult.failure(error)
            self._advance_documents(tx)
            return OperationResult.success(tx.enrollment)

        return await self.commit(enrollment_id, actor_id, mutation)

    async def advance_on_document_event(
        self,
        enrollment_id: str,
        document_id: str,
        new_status: DocumentStatus,
        actor_id: str = "system",
    ) -> OperationResult[Enrollment]:
        """Callback from the document pipeline.

        Applies the readiness transitions exactly once: concurrent callers
        serialize on the aggregate, and whoever arrives after the advance
        observes the new status and returns success with ``conflict=True``.
        """

        def mutation(tx: EnrollmentTransaction) -> OperationResult:
            enrollment = tx.enrollment
            if enrollment.get_document(document_id) is None:
                return OperationResult.failure(NotFound("document", document_id))
            if enrollment.is_terminal:
                return OperationResult.success(enrollment, conflict=True)

            before = enrollment.status
            self._advance_documents(tx)
            # Someone else already moved the case past the document stage
            advanced_elsewhere = enrollment.status == before and before not in _DOCUMENT_STAGE
            return OperationResult.success(enrollment, conflict=advanced_elsewhere)

        logger.debug(f"Document {document_id} reached {new_status.value}; evaluating enrollment {enrollment_id}")
        return await self.commit(enrollment_id, actor_id, mutation)

    async def record_health_declaration(
        self,
        enrollment_id: str,
        declaration: Union[HealthDeclaration, dict[str, Any]],
        actor_id: str,
    ) -> OperationResult[Enrollment]:
        """Store the declaration; makes the case eligible for interview scheduling."""
        if not isinstance(declaration, HealthDeclaration):
            try:
                declaration = HealthDeclaration.model_validate(declaration)
            except PydanticValidationError as e:
                first = e.errors()[0]
                field = ".".join(str(part) for part in first["loc"]) or "declaration"
                return OperationResult.failure(ValidationError(field, first["msg"]))

        def mutation(tx: EnrollmentTransaction) -> OperationResult:
            enrollment = tx.enrollment
            if enrollment.status != EnrollmentStatus.HEALTH_DECLARATION_PENDING:
                return OperationResult.failure(
                    InvalidTransition(enrollment.status.value, "record_health_declaration")
                )
            enrollment.health_declaration = declaration
            tx.record(
                AuditAction.HEALTH_DECLARATION_RECORDED,
                has_chronic_conditions=declaration.has_chronic_conditions,
                medication_count=len(declaration.current_medications),
            )
            return OperationResult.success(enrollment)

        return await self.commit(enrollment_id, actor_id, mutation)

    async def schedule_interview(
        self,
        enrollment_id: str,
        interviewer_id: str,
        at: datetime,
        actor_id: str,
        duration_minutes: int = 30,
    ) -> OperationResult[Interview]:
        """Create the interview and move to INTERVIEW_SCHEDULED."""
        if not interviewer_id:
            return OperationResult.failure(ValidationError("interviewer_id", "required"))
        if at.tzinfo is None:
            return OperationResult.failure(ValidationError("scheduled_at", "timezone required"))
        if at <= self.clock():
            return OperationResult.failure(ValidationError("scheduled_at", "must be in the future"))
        if not 15 <= duration_minutes <= 120:
            return OperationResult.failure(ValidationError("duration_minutes", "must be between 15 and 120"))

        def mutation(tx: EnrollmentTransaction) -> OperationResult:
            error = apply_transition(tx, TransitionEvent.SCHEDULE_INTERVIEW, self.required_types)
            if error:
                return OperationResult.failure(error)
            interview = Interview(
                enrollment_id=tx.enrollment.id,
                interviewer_id=interviewer_id,
                scheduled_at=at,
                duration_minutes=duration_minutes,
            )
            tx.enrollment.interview = interview
            tx.record(
                AuditAction.INTERVIEW_SCHEDULED,
                subject_type=AuditSubjectType.INTERVIEW,
                subject_id=interview.id,
                interviewer_id=interviewer_id,
                scheduled_at=at.isoformat(),
            )
            tx.emit(
                NotificationEvent.INTERVIEW_SCHEDULED,
                interview_id=interview.id,
                scheduled_at=at.isoformat(),
                ends_at=(at + timedelta(minutes=duration_minutes)).isoformat(),
            )
            return OperationResult.success(interview)

        return await self.commit(enrollment_id, actor_id, mutation)

    async def reschedule_interview(
        self, enrollment_id: str, at: datetime, actor_id: str
    ) -> OperationResult[Interview]:
        """Move a SCHEDULED interview to a new future time; the case status does not change."""
        if at.tzinfo is None:
            return OperationResult.failure(ValidationError("scheduled_at", "timezone required"))
        if at <= self.clock():
            return OperationResult.failure(ValidationError("scheduled_at", "must be in the future"))

        def mutation(tx: EnrollmentTransaction) -> OperationResult:
            enrollment = tx.enrollment
            interview = enrollment.interview
            if (
                enrollment.status != EnrollmentStatus.INTERVIEW_SCHEDULED
                or interview is None
                or interview.status != InterviewStatus.SCHEDULED
            ):
                return OperationResult.failure(InvalidTransition(enrollment.status.value, "reschedule_interview"))

            previous = interview.scheduled_at
            interview.scheduled_at = at
            tx.record(
                AuditAction.INTERVIEW_RESCHEDULED,
                subject_type=AuditSubjectType.INTERVIEW,
                subject_id=interview.id,
                old_scheduled_at=previous.isoformat(),
                new_scheduled_at=at.isoformat(),
            )
            tx.emit(
                NotificationEvent.INTERVIEW_SCHEDULED,
                interview_id=interview.id,
                scheduled_at=at.isoformat(),
                ends_at=(at + timedelta(minutes=interview.duration_minutes)).isoformat(),
                rescheduled_from=previous.isoformat(),
            )
            logger.info(f"Interview {interview.id} rescheduled from {previous.isoformat()} to {at.isoformat()}")
            return OperationResult.success(interview)

        return await self.commit(enrollment_id, actor_id, mutation)

    async def start_interview(self, enrollment_id: str, actor_id: str) -> OperationResult[Interview]:
        """Interview SCHEDULED -> IN_PROGRESS; the case status does not change."""

        def mutation(tx: EnrollmentTransaction) -> OperationResult:
            enrollment = tx.enrollment
            interview = enrollment.interview
            if (
                enrollment.status != EnrollmentStatus.INTERVIEW_SCHEDULED
                or interview is None
                or interview.status != InterviewStatus.SCHEDULED
            ):
                return OperationResult.failure(InvalidTransition(enrollment.status.value, "start_interview"))
            interview.status = InterviewStatus.IN_PROGRESS
            interview.started_at = self.clock()
            tx.record(AuditAction.INTERVIEW_STARTED, subject_type=AuditSubjectType.INTERVIEW, subject_id=interview.id)
            return OperationResult.success(interview)

        return await self.commit(enrollment_id, actor_id, mutation)

    async def complete_interview(self, enrollment_id: str, actor_id: str) -> OperationResult[Enrollment]:
        """INTERVIEW_SCHEDULED -> INTERVIEW_COMPLETED -> COMPLETED in one transaction."""

        def mutation(tx: EnrollmentTransaction) -> OperationResult:
            enrollment = tx.enrollment
            interview = enrollment.interview
            if interview is None or interview.status in TERMINAL_INTERVIEW_STATUSES:
                return OperationResult.failure(
                    InvalidTransition(enrollment.status.value, TransitionEvent.COMPLETE_INTERVIEW.value)
                )
            checked = self.table.validate(enrollment, TransitionEvent.COMPLETE_INTERVIEW, self.required_types)
            if isinstance(checked, InvalidTransition):
                return OperationResult.failure(checked)

            now = self.clock()
            interview.status = InterviewStatus.COMPLETED
            interview.started_at = interview.started_at or now
            interview.completed_at = now
            tx.record(AuditAction.INTERVIEW_COMPLETED, subject_type=AuditSubjectType.INTERVIEW, subject_id=interview.id)
            tx.emit(NotificationEvent.INTERVIEW_COMPLETED, interview_id=interview.id)

            apply_transition(tx, TransitionEvent.COMPLETE_INTERVIEW, self.required_types)
            error = apply_transition(tx, TransitionEvent.COMPLETE, self.required_types)
            if error:
                return OperationResult.failure(error)
            tx.emit(NotificationEvent.ENROLLMENT_COMPLETED, completed_at=enrollment.completed_at.isoformat())
            return OperationResult.success(enrollment)

        return await self.commit(enrollment_id, actor_id, mutation)

    async def cancel(self, enrollment_id: str, reason: str, actor_id: str) -> OperationResult[Enrollment]:
        """Cancel from any non-terminal status; cancelling twice is a no-op success."""

        def mutation(tx: EnrollmentTransaction) -> OperationResult:
            enrollment = tx.enrollment
            if enrollment.status == EnrollmentStatus.CANCELLED:
                return OperationResult.success(enrollment, conflict=True)
            if not (reason and reason.strip()) and enrollment.status not in TERMINAL_ENROLLMENT_STATUSES:
                return OperationResult.failure(ValidationError("reason", "required"))

            error = apply_transition(tx, TransitionEvent.CANCEL, self.required_types, reason=reason)
            if error:
                return OperationResult.failure(error)
            enrollment.cancellation_reason = reason

            interview = enrollment.interview
            if interview is not None and interview.status not in TERMINAL_INTERVIEW_STATUSES:
                interview.status = InterviewStatus.CANCELLED
                tx.record(
                    AuditAction.INTERVIEW_CANCELLED,
                    subject_type=AuditSubjectType.INTERVIEW,
                    subject_id=interview.id,
                )
            tx.emit(NotificationEvent.ENROLLMENT_CANCELLED, reason=reason)
            return OperationResult.success(enrollment)

        return await self.commit(enrollment_id, actor_id, mutation)


def is_terminal_status(status: EnrollmentStatus) -> bool:
    """Check if status is terminal (no further transitions)."""
    return status in TERMINAL_ENROLLMENT_STATUSES


__all__ = [
    "EnrollmentStateMachine",
    "TRANSITIONS",
    "Transition",
    "TransitionEvent",
    "TransitionTable",
    "VALID_TRANSITIONS",
    "apply_transition",
    "is_terminal_status",
]

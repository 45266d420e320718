"""
SQLAlchemy Models
Source: https://docs.sqlalchemy.org/en/20/orm/declarative_styles.html
Verified: 2026-10-19

Tables backing the enrollment aggregate, the audit chain, webhook targets
and notification deliveries. Structured sub-records (extraction result, health declaration,
delivery attempts) are stored as JSON; JSONB on PostgreSQL.
"""

from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

from medenroll.schemas.audit import AuditEntry
from medenroll.schemas.enrollment import Document, Enrollment, ExtractionResult, HealthDeclaration, Interview
from medenroll.schemas.notification import DeliveryAttempt, NotificationDelivery, NotificationTarget

JSONType = JSON().with_variant(JSONB(), "postgresql")


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC datetimes on every backend (SQLite drops tzinfo)."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect) -> Optional[datetime]:
        if value is not None and value.tzinfo is None:
            raise ValueError("naive datetime passed to UTCDateTime column")
        return value.astimezone(timezone.utc) if value is not None else None

    def process_result_value(self, value: Optional[datetime], dialect) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


# =============================================================================
# Enrollment aggregate
# =============================================================================


class EnrollmentRow(Base):
    __tablename__ = "enrollments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    owner_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    # "metadata" is reserved on declarative classes
    metadata_: Mapped[dict[str, Any]] = mapped_column("metadata", JSONType, nullable=False, default=dict)
    health_declaration: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    cancellation_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    def __repr__(self) -> str:
        return f"<Enrollment {self.id} {self.status} v{self.version}>"


class DocumentRow(Base):
    __tablename__ = "documents"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    enrollment_id: Mapped[str] = mapped_column(
        ForeignKey("enrollments.id", ondelete="CASCADE"), nullable=False, index=True
    )
    # Upload order within the enrollment; the latest upload of a type holds the slot
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    type: Mapped[str] = mapped_column(String(50), nullable=False)
    status: Mapped[str] = mapped_column(String(50), nullable=False)
    content_type: Mapped[str] = mapped_column(String(100), nullable=False)
    size_bytes: Mapped[int] = mapped_column(Integer, nullable=False)
    storage_handle: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    extraction: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    claim_token: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    claimed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    processed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)


class InterviewRow(Base):
    __tablename__ = "interviews"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    enrollment_id: Mapped[str] = mapped_column(
        ForeignKey("enrollments.id", ondelete="CASCADE"), nullable=False, index=True
    )
    interviewer_id: Mapped[str] = mapped_column(String(255), nullable=False)
    scheduled_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    duration_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(50), nullable=False)
    started_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)


# =============================================================================
# Audit
# =============================================================================


class AuditEntryRow(Base):
    """Append-only; rows are inserted and never updated."""

    __tablename__ = "audit_entries"
    __table_args__ = (
        Index("ix_audit_entries_subject", "subject_type", "subject_id", "timestamp"),
    )

    sequence: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    id: Mapped[str] = mapped_column(String(36), nullable=False, unique=True)
    timestamp: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, index=True)
    subject_type: Mapped[str] = mapped_column(String(50), nullable=False)
    subject_id: Mapped[str] = mapped_column(String(255), nullable=False)
    actor_id: Mapped[str] = mapped_column(String(255), nullable=False)
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    enrollment_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True, index=True)
    prev_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    entry_hash: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)


# =============================================================================
# Notifications
# =============================================================================


class NotificationTargetRow(Base):
    __tablename__ = "notification_targets"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    url: Mapped[str] = mapped_column(Text, nullable=False)
    events: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)
    # EncryptedField string, never the plain secret
    secret: Mapped[str] = mapped_column(Text, nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)


class NotificationDeliveryRow(Base):
    __tablename__ = "notification_deliveries"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    target_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    delivery_status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    attempts: Mapped[list[dict[str, Any]]] = mapped_column(JSONType, nullable=False, default=list)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    delivered_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)


# =============================================================================
# Row <-> schema mapping
# =============================================================================


def enrollment_values(enrollment: Enrollment) -> dict[str, Any]:
    """Column values of the enrollment row (children excluded)."""
    return {
        "owner_id": enrollment.owner_id,
        "status": enrollment.status.value,
        "metadata_": enrollment.model_dump(mode="json", include={"metadata"})["metadata"],
        "health_declaration": (
            enrollment.health_declaration.model_dump(mode="json") if enrollment.health_declaration else None
        ),
        "cancellation_reason": enrollment.cancellation_reason,
        "created_at": enrollment.created_at,
        "updated_at": enrollment.updated_at,
        "completed_at": enrollment.completed_at,
        "version": enrollment.version,
    }


def document_row(document: Document, position: int) -> DocumentRow:
    return DocumentRow(
        id=document.id,
        enrollment_id=document.enrollment_id,
        position=position,
        type=document.type.value,
        status=document.status.value,
        content_type=document.content_type,
        size_bytes=document.size_bytes,
        storage_handle=document.storage_handle,
        extraction=document.extraction.model_dump(mode="json") if document.extraction else None,
        attempt_count=document.attempt_count,
        last_error=document.last_error,
        claim_token=document.claim_token,
        claimed_at=document.claimed_at,
        created_at=document.created_at,
        updated_at=document.updated_at,
        processed_at=document.processed_at,
    )


def interview_row(interview: Interview) -> InterviewRow:
    return InterviewRow(
        id=interview.id,
        enrollment_id=interview.enrollment_id,
        interviewer_id=interview.interviewer_id,
        scheduled_at=interview.scheduled_at,
        duration_minutes=interview.duration_minutes,
        status=interview.status.value,
        started_at=interview.started_at,
        completed_at=interview.completed_at,
        created_at=interview.created_at,
    )


def to_enrollment(
    row: EnrollmentRow,
    documents: list[DocumentRow],
    interview: Optional[InterviewRow],
) -> Enrollment:
    return Enrollment(
        id=row.id,
        owner_id=row.owner_id,
        status=row.status,
        metadata=row.metadata_ or {},
        documents=[
            Document(
                id=d.id,
                enrollment_id=d.enrollment_id,
                type=d.type,
                status=d.status,
                content_type=d.content_type,
                size_bytes=d.size_bytes,
                storage_handle=d.storage_handle,
                extraction=ExtractionResult.model_validate(d.extraction) if d.extraction else None,
                attempt_count=d.attempt_count,
                last_error=d.last_error,
                claim_token=d.claim_token,
                claimed_at=d.claimed_at,
                created_at=d.created_at,
                updated_at=d.updated_at,
                processed_at=d.processed_at,
            )
            for d in documents
        ],
        interview=(
            Interview(
                id=interview.id,
                enrollment_id=interview.enrollment_id,
                interviewer_id=interview.interviewer_id,
                scheduled_at=interview.scheduled_at,
                duration_minutes=interview.duration_minutes,
                status=interview.status,
                started_at=interview.started_at,
                completed_at=interview.completed_at,
                created_at=interview.created_at,
            )
            if interview
            else None
        ),
        health_declaration=(
            HealthDeclaration.model_validate(row.health_declaration) if row.health_declaration else None
        ),
        cancellation_reason=row.cancellation_reason,
        created_at=row.created_at,
        updated_at=row.updated_at,
        completed_at=row.completed_at,
        version=row.version,
    )


def audit_row(entry: AuditEntry) -> AuditEntryRow:
    return AuditEntryRow(
        sequence=entry.sequence,
        id=entry.id,
        timestamp=entry.timestamp,
        subject_type=entry.subject_type.value,
        subject_id=entry.subject_id,
        actor_id=entry.actor_id,
        action=entry.action.value,
        payload=entry.model_dump(mode="json", include={"payload"})["payload"],
        enrollment_id=entry.enrollment_id,
        prev_hash=entry.prev_hash,
        entry_hash=entry.entry_hash,
    )


def to_audit_entry(row: AuditEntryRow) -> AuditEntry:
    return AuditEntry(
        id=row.id,
        sequence=row.sequence,
        timestamp=row.timestamp,
        subject_type=row.subject_type,
        subject_id=row.subject_id,
        actor_id=row.actor_id,
        action=row.action,
        payload=row.payload or {},
        enrollment_id=row.enrollment_id,
        prev_hash=row.prev_hash,
        entry_hash=row.entry_hash,
    )


def delivery_row(delivery: NotificationDelivery) -> NotificationDeliveryRow:
    return NotificationDeliveryRow(
        id=delivery.id,
        target_id=delivery.target_id,
        event_type=delivery.event_type.value,
        payload=delivery.model_dump(mode="json", include={"payload"})["payload"],
        delivery_status=delivery.delivery_status.value,
        attempts=[a.model_dump(mode="json") for a in delivery.attempts],
        last_error=delivery.last_error,
        created_at=delivery.created_at,
        delivered_at=delivery.delivered_at,
    )


def to_delivery(row: NotificationDeliveryRow) -> NotificationDelivery:
    return NotificationDelivery(
        id=row.id,
        target_id=row.target_id,
        event_type=row.event_type,
        payload=row.payload or {},
        delivery_status=row.delivery_status,
        attempts=[DeliveryAttempt.model_validate(a) for a in row.attempts or []],
        last_error=row.last_error,
        created_at=row.created_at,
        delivered_at=row.delivered_at,
    )


def target_row(target: NotificationTarget, sealed_secret: str) -> NotificationTargetRow:
    return NotificationTargetRow(
        id=target.id,
        name=target.name,
        url=str(target.url),
        events=[e.value for e in target.events],
        secret=sealed_secret,
        active=target.active,
        created_at=target.created_at,
    )


def to_target(row: NotificationTargetRow, secret: str) -> NotificationTarget:
    return NotificationTarget(
        id=row.id,
        name=row.name,
        url=row.url,
        events=row.events,
        secret=secret,
        active=row.active,
        created_at=row.created_at,
    )

"""
Core Enumerations for the Enrollment Platform.

Statuses, document types, audit actions and provider identifiers shared by
every layer. Values are lowercase strings so they serialize unchanged into
JSON payloads, audit entries and database columns.
"""

from enum import Enum


# =============================================================================
# Enrollment Lifecycle Enums
# =============================================================================


class EnrollmentStatus(str, Enum):
    """Case-level status of an enrollment."""

    DRAFT = "draft"
    DOCUMENTS_PENDING = "documents_pending"
    DOCUMENTS_SUBMITTED = "documents_submitted"
    HEALTH_DECLARATION_PENDING = "health_declaration_pending"
    INTERVIEW_SCHEDULED = "interview_scheduled"
    INTERVIEW_COMPLETED = "interview_completed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class DocumentType(str, Enum):
    """Types of documents accepted for an enrollment."""

    ID = "id_document"
    PROOF_OF_ADDRESS = "proof_of_address"
    HEALTH_DECLARATION = "health_declaration"
    MEDICAL_RECORD = "medical_record"


class DocumentStatus(str, Enum):
    """Per-document verification status."""

    UPLOADED = "uploaded"
    PROCESSING = "processing"
    VERIFIED = "verified"
    REJECTED = "rejected"


class InterviewStatus(str, Enum):
    """Medical interview status."""

    SCHEDULED = "scheduled"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class AlcoholConsumption(str, Enum):
    """Answer set for the alcohol question of the health declaration."""

    NONE = "none"
    OCCASIONAL = "occasional"
    REGULAR = "regular"


# =============================================================================
# Audit Enums
# =============================================================================


class AuditSubjectType(str, Enum):
    """Kind of record an audit entry is about."""

    ENROLLMENT = "enrollment"
    DOCUMENT = "document"
    INTERVIEW = "interview"
    NOTIFICATION = "notification"


class AuditAction(str, Enum):
    """Actions recorded in the audit log."""

    ENROLLMENT_CREATED = "enrollment_created"
    STATUS_CHANGED = "status_changed"
    DOCUMENT_UPLOADED = "document_uploaded"
    DOCUMENT_PROCESSING_STARTED = "document_processing_started"
    DOCUMENT_VERIFIED = "document_verified"
    DOCUMENT_REJECTED = "document_rejected"
    SENSITIVE_DATA_ACCESS = "sensitive_data_access"
    DISCARDED_POST_CANCEL = "discarded_post_cancel"
    STORAGE_FAILED = "storage_failed"
    HEALTH_DECLARATION_RECORDED = "health_declaration_recorded"
    INTERVIEW_SCHEDULED = "interview_scheduled"
    INTERVIEW_RESCHEDULED = "interview_rescheduled"
    INTERVIEW_STARTED = "interview_started"
    INTERVIEW_COMPLETED = "interview_completed"
    INTERVIEW_CANCELLED = "interview_cancelled"
    INVALID_TRANSITION = "invalid_transition"
    ACCESS_DENIED = "access_denied"
    NOTIFICATION_DELIVERED = "notification_delivered"
    NOTIFICATION_FAILED = "notification_failed"


# =============================================================================
# Notification Enums
# =============================================================================


class DeliveryStatus(str, Enum):
    """Webhook delivery status."""

    PENDING = "pending"
    DELIVERED = "delivered"
    FAILED = "failed"


class NotificationEvent(str, Enum):
    """Event types that can be delivered to registered targets."""

    ENROLLMENT_CREATED = "enrollment.created"
    ENROLLMENT_UPDATED = "enrollment.updated"
    ENROLLMENT_COMPLETED = "enrollment.completed"
    ENROLLMENT_CANCELLED = "enrollment.cancelled"
    DOCUMENT_UPLOADED = "document.uploaded"
    DOCUMENT_PROCESSED = "document.processed"
    INTERVIEW_SCHEDULED = "interview.scheduled"
    INTERVIEW_COMPLETED = "interview.completed"


# =============================================================================
# Provider / Infrastructure Enums
# =============================================================================


class ProviderStatus(str, Enum):
    """Health status of an external provider."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class ExtractionProvider(str, Enum):
    """Available document extraction providers."""

    HTTP = "http"  # Generic OCR/extraction service over HTTP


class StorageBackend(str, Enum):
    """Document store backends."""

    MEMORY = "memory"
    MINIO = "minio"


class ActorRole(str, Enum):
    """Roles understood by the default authorization gate."""

    ENROLLEE = "enrollee"
    INTERVIEWER = "interviewer"
    ADMIN = "admin"
    SYSTEM = "system"


class Permission(str, Enum):
    """Actions checked by the authorization gate."""

    ENROLLMENT_CREATE = "enrollment:create"
    ENROLLMENT_READ = "enrollment:read"
    ENROLLMENT_SUBMIT_DOCUMENTS = "enrollment:submit_documents"
    ENROLLMENT_CANCEL = "enrollment:cancel"
    DOCUMENT_UPLOAD = "document:upload"
    DOCUMENT_PROCESS = "document:process"
    HEALTH_DECLARATION_RECORD = "health_declaration:record"
    INTERVIEW_SCHEDULE = "interview:schedule"
    INTERVIEW_START = "interview:start"
    INTERVIEW_COMPLETE = "interview:complete"
    AUDIT_READ = "audit:read"
    NOTIFICATION_MANAGE = "notification:manage"


TERMINAL_ENROLLMENT_STATUSES = frozenset(
    {EnrollmentStatus.COMPLETED, EnrollmentStatus.CANCELLED}
)

TERMINAL_DOCUMENT_STATUSES = frozenset(
    {DocumentStatus.VERIFIED, DocumentStatus.REJECTED}
)

TERMINAL_INTERVIEW_STATUSES = frozenset(
    {InterviewStatus.COMPLETED, InterviewStatus.CANCELLED}
)

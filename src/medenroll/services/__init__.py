"""
Services Layer for the Enrollment Platform.

Exports the audit log, document store, notification dispatcher and retry
helpers. The workflow services (state machine, document pipeline,
orchestrator) depend on the repository layer and are imported from their
modules directly.
"""

from medenroll.services.audit_log import (
    AuditLog,
    AuditStore,
    ChainVerification,
    InMemoryAuditStore,
    replay_status,
)
from medenroll.services.background import BackgroundRunner
from medenroll.services.document_store import (
    BlobBackend,
    DocumentStore,
    InMemoryBlobBackend,
    MinioBlobBackend,
    create_document_store,
)
from medenroll.services.notification_dispatcher import (
    DeliveryStore,
    InMemoryDeliveryStore,
    NotificationDispatcher,
    sign_payload,
    verify_signature,
)
from medenroll.services.retry import BackoffPolicy, with_retry

__all__ = [
    # Audit
    "AuditLog",
    "AuditStore",
    "ChainVerification",
    "InMemoryAuditStore",
    "replay_status",
    # Documents
    "BlobBackend",
    "DocumentStore",
    "InMemoryBlobBackend",
    "MinioBlobBackend",
    "create_document_store",
    # Notifications
    "DeliveryStore",
    "InMemoryDeliveryStore",
    "NotificationDispatcher",
    "sign_payload",
    "verify_signature",
    # Plumbing
    "BackgroundRunner",
    "BackoffPolicy",
    "with_retry",
]

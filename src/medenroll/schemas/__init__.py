"""
Pydantic Schemas for the Enrollment Platform.

This module exports the aggregate, audit and notification models.
"""

from medenroll.schemas.audit import GENESIS_HASH, AuditEntry, AuditEntryDraft
from medenroll.schemas.enrollment import (
    Document,
    Enrollment,
    ExtractionResult,
    HealthDeclaration,
    Interview,
    Medication,
)
from medenroll.schemas.notification import (
    DeliveryAttempt,
    NotificationDelivery,
    NotificationTarget,
)
from medenroll.schemas.result import OperationResult

__all__ = [
    "GENESIS_HASH",
    "AuditEntry",
    "AuditEntryDraft",
    "DeliveryAttempt",
    "Document",
    "Enrollment",
    "ExtractionResult",
    "HealthDeclaration",
    "Interview",
    "Medication",
    "NotificationDelivery",
    "NotificationTarget",
    "OperationResult",
]

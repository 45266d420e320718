"""
Audit Entry Schemas.

Entries are sealed by the audit log: it assigns ``sequence``, ``timestamp``,
``prev_hash`` and ``entry_hash``. A sealed entry is never modified.
"""

import hashlib
import json
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from medenroll.core.enums import AuditAction, AuditSubjectType
from medenroll.schemas.enrollment import new_id, utcnow


GENESIS_HASH = "0" * 64


class AuditEntryDraft(BaseModel):
    """Unsealed audit entry staged by a service."""

    subject_type: AuditSubjectType
    subject_id: str
    actor_id: str
    action: AuditAction
    payload: dict[str, Any] = Field(default_factory=dict)
    enrollment_id: Optional[str] = None


class AuditEntry(BaseModel):
    """Sealed, append-only audit entry."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    sequence: int
    timestamp: datetime = Field(default_factory=utcnow)
    subject_type: AuditSubjectType
    subject_id: str
    actor_id: str
    action: AuditAction
    payload: dict[str, Any] = Field(default_factory=dict)
    enrollment_id: Optional[str] = None
    prev_hash: str = GENESIS_HASH
    entry_hash: str = ""

    def compute_hash(self) -> str:
        """SHA-256 over the canonical JSON form of every field but the hash itself."""
        body = self.model_dump(mode="json", exclude={"entry_hash"})
        canonical = json.dumps(body, sort_keys=True, separators=(",", ":"), default=str)
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()

    @property
    def sort_key(self) -> tuple[datetime, int]:
        return (self.timestamp, self.sequence)

"""
Audit Log Service.

Append-only, ordered, tamper-evident record of every state-changing action.

- ``append`` / ``append_many`` are the only mutating operations; there is no
  update or delete.
- Every entry is sealed into a SHA-256 hash chain (``prev_hash`` →
  ``entry_hash``) so any later modification is detectable by
  ``verify_chain``.
- Payloads are masked for PHI before sealing.
- Entries are durable once ``append`` returns; repositories write entries
  inside the same transaction as the aggregate they describe through
  ``batch``.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, AsyncIterator, Iterable, Optional

from medenroll.core.enums import AuditAction, AuditSubjectType, EnrollmentStatus
from medenroll.schemas.audit import GENESIS_HASH, AuditEntry, AuditEntryDraft
from medenroll.schemas.enrollment import utcnow
from medenroll.services.security.phi_protection import PHIProtectionService

logger = logging.getLogger(__name__)


# =============================================================================
# Storage
# =============================================================================


class AuditStore(ABC):
    """Durable storage for sealed audit entries."""

    @abstractmethod
    async def head(self) -> Optional[AuditEntry]:
        """Entry with the highest sequence, if any."""

    @abstractmethod
    async def write(self, entries: list[AuditEntry], session: Any = None) -> None:
        """Persist sealed entries; all or nothing."""

    @abstractmethod
    async def all_entries(self) -> list[AuditEntry]:
        """Every entry in sequence order."""

    async def by_subject(self, subject_type: AuditSubjectType, subject_id: str) -> list[AuditEntry]:
        return [
            e for e in await self.all_entries()
            if e.subject_type == subject_type and e.subject_id == subject_id
        ]

    async def by_enrollment(self, enrollment_id: str) -> list[AuditEntry]:
        return [e for e in await self.all_entries() if e.enrollment_id == enrollment_id]

    async def in_range(self, start: Optional[datetime], end: Optional[datetime]) -> list[AuditEntry]:
        return [
            e for e in await self.all_entries()
            if (start is None or e.timestamp >= start) and (end is None or e.timestamp <= end)
        ]


class InMemoryAuditStore(AuditStore):
    """Process-local audit store."""

    def __init__(self):
        self._entries: list[AuditEntry] = []

    async def head(self) -> Optional[AuditEntry]:
        return self._entries[-1] if self._entries else None

    async def write(self, entries: list[AuditEntry], session: Any = None) -> None:
        self._entries.extend(entries)

    async def all_entries(self) -> list[AuditEntry]:
        return list(self._entries)


# =============================================================================
# Audit Log
# =============================================================================


@dataclass
class ChainVerification:
    """Outcome of a hash chain verification."""

    valid: bool
    checked: int
    broken_at_sequence: Optional[int] = None
    reason: Optional[str] = None


class AuditBatch:
    """Writer handed out by ``AuditLog.batch`` while the chain lock is held."""

    def __init__(self, log: "AuditLog", session: Any = None):
        self._log = log
        self._session = session
        self.written: list[AuditEntry] = []

    async def write(self, drafts: Iterable[AuditEntryDraft]) -> list[AuditEntry]:
        sealed = await self._log._seal(list(drafts))
        if sealed:
            await self._log._store.write(sealed, session=self._session)
            self._log._advance_head(sealed[-1])
            self.written.extend(sealed)
        return sealed


class AuditLog:
    """Append-only, hash-chained audit log."""

    def __init__(
        self,
        store: Optional[AuditStore] = None,
        redactor: Optional[PHIProtectionService] = None,
    ):
        self._store = store or InMemoryAuditStore()
        self._redactor = redactor or PHIProtectionService()
        self._lock = asyncio.Lock()
        self._head: Optional[AuditEntry] = None
        self._head_loaded = False

    @property
    def store(self) -> AuditStore:
        return self._store

    # -------------------------------------------------------------------------
    # Mutating operations
    # -------------------------------------------------------------------------

    async def append(self, entry: AuditEntryDraft) -> AuditEntry:
        """Append one entry; durable when this returns."""
        return (await self.append_many([entry]))[0]

    async def append_many(self, entries: Iterable[AuditEntryDraft]) -> list[AuditEntry]:
        """Append several entries atomically, in order."""
        async with self.batch() as batch:
            return await batch.write(entries)

    @asynccontextmanager
    async def batch(self, session: Any = None) -> AsyncIterator[AuditBatch]:
        """Hold the chain lock for the duration of an enclosing transaction.

        If the block raises (including a failed commit of the enclosing
        transaction) the cached chain head is dropped and re-read from the
        store on next use, so rolled-back entries never become a parent.
        """
        async with self._lock:
            batch = AuditBatch(self, session)
            try:
                yield batch
            except BaseException:
                if batch.written:
                    logger.warning(
                        f"Audit batch of {len(batch.written)} entries rolled back; "
                        "reloading chain head"
                    )
                self._head = None
                self._head_loaded = False
                raise

    async def _current_head(self) -> Optional[AuditEntry]:
        if not self._head_loaded:
            self._head = await self._store.head()
            self._head_loaded = True
        return self._head

    def _advance_head(self, entry: AuditEntry) -> None:
        self._head = entry
        self._head_loaded = True

    async def _seal(self, drafts: list[AuditEntryDraft]) -> list[AuditEntry]:
        head = await self._current_head()
        sequence = head.sequence if head else 0
        prev_hash = head.entry_hash if head else GENESIS_HASH
        last_timestamp = head.timestamp if head else None

        sealed: list[AuditEntry] = []
        for draft in drafts:
            sequence += 1
            timestamp = utcnow()
            # Timestamps never go backwards; ties are ordered by sequence
            if last_timestamp is not None and timestamp < last_timestamp:
                timestamp = last_timestamp
            entry = AuditEntry(
                sequence=sequence,
                timestamp=timestamp,
                subject_type=draft.subject_type,
                subject_id=draft.subject_id,
                actor_id=draft.actor_id,
                action=draft.action,
                payload=self._redactor.mask_dict(draft.payload),
                enrollment_id=draft.enrollment_id,
                prev_hash=prev_hash,
            )
            entry = entry.model_copy(update={"entry_hash": entry.compute_hash()})
            sealed.append(entry)
            prev_hash = entry.entry_hash
            last_timestamp = timestamp
        return sealed

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def for_subject(self, subject_type: AuditSubjectType, subject_id: str) -> list[AuditEntry]:
        return _ordered(await self._store.by_subject(subject_type, subject_id))

    async def for_enrollment(self, enrollment_id: str) -> list[AuditEntry]:
        """Every entry tied to an enrollment, including its documents and interview."""
        return _ordered(await self._store.by_enrollment(enrollment_id))

    async def in_range(
        self, start: Optional[datetime] = None, end: Optional[datetime] = None
    ) -> list[AuditEntry]:
        return _ordered(await self._store.in_range(start, end))

    async def entries(self) -> list[AuditEntry]:
        return _ordered(await self._store.all_entries())

    async def verify_chain(self) -> ChainVerification:
        """Recompute every hash and check each entry links to its predecessor."""
        entries = sorted(await self._store.all_entries(), key=lambda e: e.sequence)
        prev_hash = GENESIS_HASH
        expected_sequence = entries[0].sequence if entries else 1
        for entry in entries:
            if entry.sequence != expected_sequence:
                return ChainVerification(False, expected_sequence - 1, entry.sequence, "sequence gap")
            if entry.prev_hash != prev_hash:
                return ChainVerification(False, expected_sequence - 1, entry.sequence, "broken link")
            if entry.compute_hash() != entry.entry_hash:
                return ChainVerification(False, expected_sequence - 1, entry.sequence, "hash mismatch")
            prev_hash = entry.entry_hash
            expected_sequence += 1
        return ChainVerification(True, len(entries))


def _ordered(entries: Iterable[AuditEntry]) -> list[AuditEntry]:
    return sorted(entries, key=lambda e: e.sort_key)


def replay_status(entries: Iterable[AuditEntry]) -> Optional[EnrollmentStatus]:
    """Rebuild an enrollment's status by folding its entries in timestamp order."""
    status: Optional[EnrollmentStatus] = None
    for entry in _ordered(entries):
        if entry.subject_type != AuditSubjectType.ENROLLMENT:
            continue
        if entry.action == AuditAction.ENROLLMENT_CREATED:
            status = EnrollmentStatus(entry.payload.get("status", EnrollmentStatus.DRAFT.value))
        elif entry.action == AuditAction.STATUS_CHANGED:
            status = EnrollmentStatus(entry.payload["to"])
    return status


def draft(
    action: AuditAction,
    subject_type: AuditSubjectType,
    subject_id: str,
    actor_id: str,
    enrollment_id: Optional[str] = None,
    **payload: Any,
) -> AuditEntryDraft:
    """Shorthand for building an ``AuditEntryDraft``."""
    return AuditEntryDraft(
        action=action,
        subject_type=subject_type,
        subject_id=subject_id,
        actor_id=actor_id,
        enrollment_id=enrollment_id,
        payload=payload,
    )

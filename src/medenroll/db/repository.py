"""
Enrollment Repository.

Loads and persists the enrollment aggregate (documents, interview and health
declaration included). All mutations go through ``transaction``, which:

1. takes the aggregate's lock,
2. hands out a working copy plus an audit staging list,
3. on clean exit commits the copy with a version compare-and-swap and
   writes the staged audit entries in the same unit of work.

If the block raises, nothing is written. A transaction whose working copy
is unchanged and that staged no audit entries commits nothing.
"""

import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Optional

from medenroll.core.enums import AuditAction, AuditSubjectType, NotificationEvent
from medenroll.core.errors import ConcurrentModification, NotFound
from medenroll.schemas.audit import AuditEntry, AuditEntryDraft
from medenroll.schemas.enrollment import Enrollment, utcnow
from medenroll.schemas.result import OperationResult
from medenroll.services.audit_log import AuditLog
from medenroll.utils.locks import KeyedLocks

logger = logging.getLogger(__name__)

# Re-read attempts when another process committed the aggregate first
_CAS_ATTEMPTS = 3


@dataclass
class EnrollmentTransaction:
    """Working copy of one aggregate plus everything staged against it."""

    enrollment: Enrollment
    actor_id: str
    audit: list[AuditEntryDraft] = field(default_factory=list)
    events: list[tuple[NotificationEvent, dict[str, Any]]] = field(default_factory=list)
    sealed: list[AuditEntry] = field(default_factory=list)
    committed: bool = False
    rolled_back: bool = False

    def record(
        self,
        action: AuditAction,
        subject_type: AuditSubjectType = AuditSubjectType.ENROLLMENT,
        subject_id: Optional[str] = None,
        actor_id: Optional[str] = None,
        **payload: Any,
    ) -> None:
        """Stage an audit entry to be written with the aggregate."""
        self.audit.append(
            AuditEntryDraft(
                subject_type=subject_type,
                subject_id=subject_id or self.enrollment.id,
                actor_id=actor_id or self.actor_id,
                action=action,
                payload=payload,
                enrollment_id=self.enrollment.id,
            )
        )

    def emit(self, event: NotificationEvent, **payload: Any) -> None:
        """Stage a notification event to dispatch after commit."""
        self.events.append((event, {"enrollment_id": self.enrollment.id, **payload}))

    def rollback(self) -> None:
        """Discard everything staged; the transaction will not commit."""
        self.rolled_back = True
        self.audit.clear()
        self.events.clear()


class EnrollmentRepository(ABC):
    """Base repository: locking and transaction protocol, storage left abstract."""

    def __init__(self, audit_log: AuditLog):
        self.audit_log = audit_log
        self._locks = KeyedLocks()

    # -------------------------------------------------------------------------
    # Storage primitives
    # -------------------------------------------------------------------------

    @abstractmethod
    async def _load(self, enrollment_id: str) -> Optional[Enrollment]: ...

    @abstractmethod
    async def _insert(self, enrollment: Enrollment, audit: list[AuditEntryDraft]) -> list[AuditEntry]: ...

    @abstractmethod
    async def _save(
        self, enrollment: Enrollment, expected_version: int, audit: list[AuditEntryDraft]
    ) -> list[AuditEntry]:
        """Persist if the stored version still equals ``expected_version``.

        Raises:
            ConcurrentModification: If the stored version moved on
        """

    @abstractmethod
    async def find_enrollment_id_for_document(self, document_id: str) -> Optional[str]: ...

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    async def add(self, enrollment: Enrollment, audit: Optional[list[AuditEntryDraft]] = None) -> list[AuditEntry]:
        """Insert a new aggregate together with its creation audit entries."""
        async with self._locks.get(enrollment.id):
            return await self._insert(enrollment.model_copy(deep=True), audit or [])

    async def get(self, enrollment_id: str) -> Enrollment:
        """Snapshot of the aggregate; callers may not mutate stored state through it.

        Raises:
            NotFound: If the enrollment does not exist
        """
        enrollment = await self._load(enrollment_id)
        if enrollment is None:
            raise NotFound("enrollment", enrollment_id)
        return enrollment.model_copy(deep=True)

    async def get_by_document(self, document_id: str) -> Enrollment:
        enrollment_id = await self.find_enrollment_id_for_document(document_id)
        if enrollment_id is None:
            raise NotFound("document", document_id)
        return await self.get(enrollment_id)

    @asynccontextmanager
    async def transaction(self, enrollment_id: str, actor_id: str) -> AsyncIterator[EnrollmentTransaction]:
        """Serialize a read-modify-write of one aggregate.

        Raises:
            NotFound: If the enrollment does not exist
            ConcurrentModification: If the version check fails on commit
        """
        async with self._locks.get(enrollment_id):
            current = await self._load(enrollment_id)
            if current is None:
                raise NotFound("enrollment", enrollment_id)

            tx = EnrollmentTransaction(enrollment=current.model_copy(deep=True), actor_id=actor_id)
            yield tx

            if tx.rolled_back:
                return
            changed = tx.enrollment != current
            if not changed and not tx.audit:
                return

            if changed:
                tx.enrollment.version = current.version + 1
                tx.enrollment.updated_at = utcnow()
            tx.sealed = await self._save(tx.enrollment, current.version, tx.audit)
            tx.committed = True

    async def run(
        self,
        enrollment_id: str,
        actor_id: str,
        mutation: Callable[[EnrollmentTransaction], OperationResult],
        attempts: int = _CAS_ATTEMPTS,
    ) -> tuple[OperationResult, Optional[EnrollmentTransaction]]:
        """Apply a synchronous mutation in a transaction.

        A failed result rolls the transaction back. A version conflict (another
        process committed first) re-reads the aggregate and re-applies the
        mutation.
        """
        for attempt in range(1, attempts + 1):
            try:
                async with self.transaction(enrollment_id, actor_id) as tx:
                    result = mutation(tx)
                    if not result.ok:
                        tx.rollback()
            except NotFound as e:
                return OperationResult.failure(e), None
            except ConcurrentModification as e:
                logger.warning(f"Enrollment {enrollment_id} changed concurrently (attempt {attempt}/{attempts})")
                if attempt == attempts:
                    return OperationResult.failure(e), None
                continue
            return result, tx
        raise ValueError("attempts must be at least 1")


class InMemoryEnrollmentRepository(EnrollmentRepository):
    """Dictionary-backed repository for development and tests."""

    def __init__(self, audit_log: AuditLog):
        super().__init__(audit_log)
        self._rows: dict[str, Enrollment] = {}
        self._document_index: dict[str, str] = {}

    async def _load(self, enrollment_id: str) -> Optional[Enrollment]:
        return self._rows.get(enrollment_id)

    async def _insert(self, enrollment: Enrollment, audit: list[AuditEntryDraft]) -> list[AuditEntry]:
        async with self.audit_log.batch() as batch:
            if enrollment.id in self._rows:
                raise ConcurrentModification(enrollment.id, enrollment.version)
            sealed = await batch.write(audit)
            self._store(enrollment)
        return sealed

    async def _save(
        self, enrollment: Enrollment, expected_version: int, audit: list[AuditEntryDraft]
    ) -> list[AuditEntry]:
        async with self.audit_log.batch() as batch:
            stored = self._rows.get(enrollment.id)
            if stored is None or stored.version != expected_version:
                raise ConcurrentModification(enrollment.id, expected_version)
            sealed = await batch.write(audit)
            self._store(enrollment)
        return sealed

    def _store(self, enrollment: Enrollment) -> None:
        self._rows[enrollment.id] = enrollment.model_copy(deep=True)
        for document in enrollment.documents:
            self._document_index[document.id] = enrollment.id

    async def find_enrollment_id_for_document(self, document_id: str) -> Optional[str]:
        return self._document_index.get(document_id)

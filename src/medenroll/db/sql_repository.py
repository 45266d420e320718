"""
SQLAlchemy-backed persistence.

``SqlAlchemyEnrollmentRepository`` commits the aggregate rows and the sealed
audit entries in one database transaction, while ``AuditLog.batch`` holds
the chain lock until that transaction has committed. The version column is
checked in the UPDATE itself, so a concurrent writer in another process
surfaces as ``ConcurrentModification``.
"""

from typing import Any, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from medenroll.core.enums import AuditSubjectType, DeliveryStatus
from medenroll.core.errors import ConcurrentModification
from medenroll.db.models import (
    AuditEntryRow,
    DocumentRow,
    EnrollmentRow,
    InterviewRow,
    NotificationDeliveryRow,
    NotificationTargetRow,
    audit_row,
    delivery_row,
    document_row,
    enrollment_values,
    interview_row,
    target_row,
    to_audit_entry,
    to_delivery,
    to_enrollment,
    to_target,
)
from medenroll.db.repository import EnrollmentRepository
from medenroll.schemas.audit import AuditEntry, AuditEntryDraft
from medenroll.schemas.enrollment import Enrollment
from medenroll.schemas.notification import NotificationDelivery, NotificationTarget
from medenroll.services.audit_log import AuditLog, AuditStore
from medenroll.services.notification_dispatcher import DeliveryStore
from medenroll.services.security.encryption import EncryptedField, EncryptionService
from medenroll.utils.logging import get_logger

logger = get_logger(__name__)


class SqlAlchemyEnrollmentRepository(EnrollmentRepository):
    """Enrollment repository on an async SQLAlchemy engine."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession], audit_log: AuditLog):
        super().__init__(audit_log)
        self._session_maker = session_maker

    async def _load(self, enrollment_id: str) -> Optional[Enrollment]:
        async with self._session_maker() as session:
            row = await session.get(EnrollmentRow, enrollment_id)
            if row is None:
                return None
            documents = (
                await session.scalars(
                    select(DocumentRow)
                    .where(DocumentRow.enrollment_id == enrollment_id)
                    .order_by(DocumentRow.position)
                )
            ).all()
            interview = await session.scalar(
                select(InterviewRow).where(InterviewRow.enrollment_id == enrollment_id)
            )
            return to_enrollment(row, list(documents), interview)

    async def _insert(self, enrollment: Enrollment, audit: list[AuditEntryDraft]) -> list[AuditEntry]:
        try:
            async with self._session_maker() as session:
                async with self.audit_log.batch(session) as batch:
                    async with session.begin():
                        session.add(EnrollmentRow(id=enrollment.id, **enrollment_values(enrollment)))
                        await session.flush()
                        await self._sync_children(session, enrollment)
                        sealed = await batch.write(audit)
        except IntegrityError as e:
            raise ConcurrentModification(enrollment.id, enrollment.version) from e
        return sealed

    async def _save(
        self, enrollment: Enrollment, expected_version: int, audit: list[AuditEntryDraft]
    ) -> list[AuditEntry]:
        async with self._session_maker() as session:
            async with self.audit_log.batch(session) as batch:
                async with session.begin():
                    result = await session.execute(
                        update(EnrollmentRow)
                        .where(
                            EnrollmentRow.id == enrollment.id,
                            EnrollmentRow.version == expected_version,
                        )
                        .values(**enrollment_values(enrollment))
                    )
                    if result.rowcount != 1:
                        logger.debug(f"Version check failed for enrollment {enrollment.id} at v{expected_version}")
                        raise ConcurrentModification(enrollment.id, expected_version)
                    await self._sync_children(session, enrollment)
                    sealed = await batch.write(audit)
        return sealed

    async def _sync_children(self, session: AsyncSession, enrollment: Enrollment) -> None:
        for position, document in enumerate(enrollment.documents):
            await session.merge(document_row(document, position))

        stale = delete(InterviewRow).where(InterviewRow.enrollment_id == enrollment.id)
        if enrollment.interview is not None:
            stale = stale.where(InterviewRow.id != enrollment.interview.id)
        await session.execute(stale)
        if enrollment.interview is not None:
            await session.merge(interview_row(enrollment.interview))

    async def find_enrollment_id_for_document(self, document_id: str) -> Optional[str]:
        async with self._session_maker() as session:
            return await session.scalar(
                select(DocumentRow.enrollment_id).where(DocumentRow.id == document_id)
            )


class SqlAuditStore(AuditStore):
    """Audit entries in the ``audit_entries`` table."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self._session_maker = session_maker

    async def head(self) -> Optional[AuditEntry]:
        async with self._session_maker() as session:
            row = await session.scalar(
                select(AuditEntryRow).order_by(AuditEntryRow.sequence.desc()).limit(1)
            )
            return to_audit_entry(row) if row else None

    async def write(self, entries: list[AuditEntry], session: Any = None) -> None:
        """Insert entries in the caller's transaction, or in a new one."""
        rows = [audit_row(e) for e in entries]
        if session is not None:
            session.add_all(rows)
            await session.flush()
            return
        async with self._session_maker() as own:
            async with own.begin():
                own.add_all(rows)

    async def all_entries(self) -> list[AuditEntry]:
        return await self._select(select(AuditEntryRow).order_by(AuditEntryRow.sequence))

    async def by_subject(self, subject_type: AuditSubjectType, subject_id: str) -> list[AuditEntry]:
        return await self._select(
            select(AuditEntryRow)
            .where(
                AuditEntryRow.subject_type == subject_type.value,
                AuditEntryRow.subject_id == subject_id,
            )
            .order_by(AuditEntryRow.timestamp, AuditEntryRow.sequence)
        )

    async def by_enrollment(self, enrollment_id: str) -> list[AuditEntry]:
        return await self._select(
            select(AuditEntryRow)
            .where(AuditEntryRow.enrollment_id == enrollment_id)
            .order_by(AuditEntryRow.timestamp, AuditEntryRow.sequence)
        )

    async def in_range(self, start, end) -> list[AuditEntry]:
        query = select(AuditEntryRow)
        if start is not None:
            query = query.where(AuditEntryRow.timestamp >= start)
        if end is not None:
            query = query.where(AuditEntryRow.timestamp <= end)
        return await self._select(query.order_by(AuditEntryRow.timestamp, AuditEntryRow.sequence))

    async def _select(self, query) -> list[AuditEntry]:
        async with self._session_maker() as session:
            return [to_audit_entry(row) for row in (await session.scalars(query)).all()]


class SqlDeliveryStore(DeliveryStore):
    """Webhook targets and delivery records in ``notification_targets`` and ``notification_deliveries``.

    Target signing secrets are encrypted with ``encryption`` before they are
    written; use the same key across restarts.
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        encryption: Optional[EncryptionService] = None,
    ):
        self._session_maker = session_maker
        self._encryption = encryption or EncryptionService()

    async def save(self, delivery: NotificationDelivery) -> None:
        async with self._session_maker() as session:
            async with session.begin():
                await session.merge(delivery_row(delivery))

    async def get(self, delivery_id: str) -> Optional[NotificationDelivery]:
        async with self._session_maker() as session:
            row = await session.get(NotificationDeliveryRow, delivery_id)
            return to_delivery(row) if row else None

    async def list_by_status(self, status: DeliveryStatus) -> list[NotificationDelivery]:
        return await self._deliveries(NotificationDeliveryRow.delivery_status == status.value)

    async def list_by_target(self, target_id: str) -> list[NotificationDelivery]:
        return await self._deliveries(NotificationDeliveryRow.target_id == target_id)

    async def _deliveries(self, condition) -> list[NotificationDelivery]:
        async with self._session_maker() as session:
            rows = await session.scalars(
                select(NotificationDeliveryRow).where(condition).order_by(NotificationDeliveryRow.created_at)
            )
            return [to_delivery(row) for row in rows.all()]

    async def save_target(self, target: NotificationTarget) -> None:
        sealed = self._encryption.encrypt(target.secret).to_string()
        async with self._session_maker() as session:
            async with session.begin():
                await session.merge(target_row(target, sealed))

    async def get_target(self, target_id: str) -> Optional[NotificationTarget]:
        async with self._session_maker() as session:
            row = await session.get(NotificationTargetRow, target_id)
            return self._to_target(row) if row else None

    async def list_targets(self) -> list[NotificationTarget]:
        async with self._session_maker() as session:
            rows = await session.scalars(select(NotificationTargetRow).order_by(NotificationTargetRow.created_at))
            return [self._to_target(row) for row in rows.all()]

    async def delete_target(self, target_id: str) -> bool:
        async with self._session_maker() as session:
            async with session.begin():
                result = await session.execute(
                    delete(NotificationTargetRow).where(NotificationTargetRow.id == target_id)
                )
        return result.rowcount > 0

    def _to_target(self, row: NotificationTargetRow) -> NotificationTarget:
        secret = self._encryption.decrypt(EncryptedField.from_string(row.secret)).decode("utf-8")
        return to_target(row, secret)

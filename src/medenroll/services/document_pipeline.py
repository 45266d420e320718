"""
Document Verification Pipeline.

Upload → store (encrypted) → extract → confidence check → audit → case
callback.

- ``upload`` validates before anything is written, stores the encrypted
  blob, then creates the document in UPLOADED with its storage handle.
- ``process`` is serialized per document by a processing lease recorded on
  the document (``claim_token``/``claimed_at``), so workers in other
  processes back off too. It is idempotent on VERIFIED/REJECTED.
- A document whose stored content has gone missing is REJECTED with
  ``content_missing`` so its slot can be re-uploaded.
- Extraction transport failures are retried with the extraction backoff
  policy; a below-threshold result gets exactly one re-extraction.
- Storage failures are not retried here; the caller re-invokes ``process``
  or, for an upload, uploads again.
- A result that completes after the enrollment was cancelled is discarded.
"""

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Optional, Union

from medenroll.core.config import EnrollmentSettings, get_settings
from medenroll.core.enums import (
    AuditAction,
    AuditSubjectType,
    DocumentStatus,
    DocumentType,
    EnrollmentStatus,
    NotificationEvent,
    TERMINAL_DOCUMENT_STATUSES,
)
from medenroll.core.errors import (
    EnrollmentError,
    InvalidTransition,
    NotFound,
    PayloadTooLarge,
    StorageError,
    UnsupportedType,
    ValidationError,
)
from medenroll.db.repository import EnrollmentRepository, EnrollmentTransaction
from medenroll.gateways.extraction_gateway import ExtractionClient
from medenroll.schemas.audit import AuditEntryDraft
from medenroll.schemas.enrollment import Document, Enrollment, ExtractionResult, new_id, utcnow
from medenroll.schemas.result import OperationResult
from medenroll.services.audit_log import AuditLog
from medenroll.services.document_store import DocumentStore
from medenroll.services.enrollment_state_machine import EnrollmentStateMachine
from medenroll.services.retry import BackoffPolicy
from medenroll.utils.locks import KeyedLocks

logger = logging.getLogger(__name__)

UPLOAD_ALLOWED_STATUSES = frozenset(
    {
        EnrollmentStatus.DRAFT,
        EnrollmentStatus.DOCUMENTS_PENDING,
        EnrollmentStatus.DOCUMENTS_SUBMITTED,
    }
)

# Leading bytes → content type
_MAGIC_NUMBERS: list[tuple[bytes, str]] = [
    (b"%PDF-", "application/pdf"),
    (b"\xff\xd8\xff", "image/jpeg"),
    (b"\x89PNG\r\n\x1a\n", "image/png"),
]

LAST_ERROR_STORAGE = "storage_unavailable"
LAST_ERROR_CONTENT_MISSING = "content_missing"
LAST_ERROR_UNAVAILABLE = "extraction_unavailable"
LAST_ERROR_LOW_CONFIDENCE = "low_confidence"


def detect_content_type(content: bytes) -> Optional[str]:
    """Identify the content type from its magic number."""
    for magic, content_type in _MAGIC_NUMBERS:
        if content.startswith(magic):
            return content_type
    return None


@dataclass
class ExtractionOutcome:
    """Terminal result of the extraction loop for one document."""

    status: DocumentStatus
    attempts: int
    extraction: Optional[ExtractionResult] = None
    last_error: Optional[str] = None
    error_codes: list[str] = field(default_factory=list)


class DocumentPipeline:
    """Drives per-document status from upload to VERIFIED/REJECTED."""

    def __init__(
        self,
        repository: EnrollmentRepository,
        store: DocumentStore,
        extractor: ExtractionClient,
        state_machine: EnrollmentStateMachine,
        audit_log: AuditLog,
        settings: Optional[EnrollmentSettings] = None,
        backoff: Optional[BackoffPolicy] = None,
    ):
        self.repository = repository
        self.store = store
        self.extractor = extractor
        self.state_machine = state_machine
        self.audit_log = audit_log
        self.settings = settings or get_settings()
        self.backoff = backoff or BackoffPolicy.for_extraction(self.settings)
        self._in_flight = KeyedLocks()

    # -------------------------------------------------------------------------
    # Upload
    # -------------------------------------------------------------------------

    def validate_upload(
        self, document_type: Union[DocumentType, str], content: bytes
    ) -> Union[tuple[DocumentType, str], ValidationError]:
        """Pre-validation; nothing is stored when this fails."""
        try:
            document_type = DocumentType(document_type)
        except ValueError:
            return UnsupportedType("type", f"unknown document type {document_type!r}")

        if not content:
            return ValidationError("content", "empty")
        if len(content) > self.settings.MAX_DOCUMENT_BYTES:
            return PayloadTooLarge(len(content), self.settings.MAX_DOCUMENT_BYTES)

        content_type = detect_content_type(content)
        if content_type is None or content_type not in self.settings.ALLOWED_CONTENT_TYPES:
            return UnsupportedType("content_type", "only PDF, JPEG and PNG documents are accepted")
        return document_type, content_type

    def _upload_blocker(self, enrollment: Enrollment, document_type: DocumentType) -> Optional[EnrollmentError]:
        """Why the enrollment cannot take a new document of this type, if it cannot."""
        if enrollment.status not in UPLOAD_ALLOWED_STATUSES:
            return InvalidTransition(enrollment.status.value, "upload_document")
        current = enrollment.current_document(document_type)
        if current is not None and current.status == DocumentStatus.VERIFIED:
            return ValidationError("type", "already_verified")
        if current is not None and current.status not in TERMINAL_DOCUMENT_STATUSES:
            return ValidationError("type", "in_progress")
        return None

    async def upload(
        self,
        enrollment_id: str,
        document_type: Union[DocumentType, str],
        content: bytes,
        actor_id: str,
    ) -> OperationResult[Document]:
        """Store the content and create a document in UPLOADED for the enrollment's slot.

        The encrypted blob is written before the document exists, so any
        worker can process the document later. A storage failure creates
        nothing and the caller may upload again.
        """
        checked = self.validate_upload(document_type, content)
        if isinstance(checked, ValidationError):
            return OperationResult.failure(checked)
        document_type, content_type = checked

        try:
            enrollment = await self.repository.get(enrollment_id)
        except NotFound as e:
            return OperationResult.failure(e)
        blocker = self._upload_blocker(enrollment, document_type)
        if blocker is not None:
            if isinstance(blocker, InvalidTransition):
                await self.state_machine.audit_invalid(enrollment_id, actor_id, blocker)
            return OperationResult.failure(blocker)

        try:
            handle = await self.store.put(content)
        except StorageError as e:
            logger.warning(f"Storage failed for {document_type.value} upload to enrollment {enrollment_id}: {e.error_code}")
            await self._audit_upload_storage_failure(enrollment_id, document_type, actor_id, e)
            return OperationResult.failure(e)

        result = await self.state_machine.commit(
            enrollment_id, actor_id, self._add_document(document_type, content_type, len(content), handle)
        )
        if not result.ok:
            return result

        document = result.value
        logger.info(f"Document {document.id} ({document_type.value}) uploaded for enrollment {enrollment_id}")
        await self.state_machine.advance_on_document_event(
            enrollment_id, document.id, DocumentStatus.UPLOADED, actor_id
        )
        return result

    def _add_document(self, document_type: DocumentType, content_type: str, size_bytes: int, handle: str):
        def mutation(tx: EnrollmentTransaction) -> OperationResult:
            enrollment = tx.enrollment
            blocker = self._upload_blocker(enrollment, document_type)
            if blocker is not None:
                return OperationResult.failure(blocker)

            current = enrollment.current_document(document_type)
            document = Document(
                enrollment_id=enrollment.id,
                type=document_type,
                content_type=content_type,
                size_bytes=size_bytes,
                storage_handle=handle,
            )
            enrollment.documents.append(document)
            tx.record(
                AuditAction.DOCUMENT_UPLOADED,
                subject_type=AuditSubjectType.DOCUMENT,
                subject_id=document.id,
                document_type=document_type.value,
                content_type=content_type,
                size_bytes=size_bytes,
                replaces=current.id if current else None,
            )
            tx.emit(NotificationEvent.DOCUMENT_UPLOADED, document_id=document.id, document_type=document_type.value)
            return OperationResult.success(document)

        return mutation

    # -------------------------------------------------------------------------
    # Processing
    # -------------------------------------------------------------------------

    async def get_document(self, document_id: str) -> OperationResult[Document]:
        try:
            enrollment = await self.repository.get_by_document(document_id)
        except NotFound as e:
            return OperationResult.failure(e)
        return OperationResult.success(enrollment.get_document(document_id))

    async def process(self, document_id: str, actor_id: str = "system") -> OperationResult[Document]:
        """UPLOADED → PROCESSING → VERIFIED | REJECTED.

        Re-invoking on a VERIFIED/REJECTED document returns it unchanged
        without calling the extraction service. Invoking while another
        worker holds the processing lease returns the current document with
        ``conflict=True``.
        """
        enrollment_id = await self.repository.find_enrollment_id_for_document(document_id)
        if enrollment_id is None:
            return OperationResult.failure(NotFound("document", document_id))

        lock = self._in_flight.get(document_id)
        if lock.locked():
            logger.info(f"Document {document_id} is already being processed")
            current = await self.get_document(document_id)
            return OperationResult.success(current.value, conflict=True)

        async with lock:
            return await self._process_locked(enrollment_id, document_id, actor_id)

    async def _process_locked(self, enrollment_id: str, document_id: str, actor_id: str) -> OperationResult[Document]:
        enrollment = await self.repository.get(enrollment_id)
        document = enrollment.get_document(document_id)

        if document.status in TERMINAL_DOCUMENT_STATUSES:
            return OperationResult.success(document)
        if enrollment.status == EnrollmentStatus.CANCELLED:
            logger.info(f"Enrollment {enrollment_id} is cancelled; document {document_id} not processed")
            return OperationResult.success(document, conflict=True)
        if self.lease_held(document):
            logger.info(f"Document {document_id} is claimed by another worker")
            return OperationResult.success(document, conflict=True)

        # 1. Stored content
        try:
            available = document.storage_handle is not None and await self.store.contains(document.storage_handle)
        except StorageError as e:
            logger.warning(f"Storage failed for document {document_id}: {e.error_code}")
            await self._record_storage_failure(enrollment_id, document_id, actor_id, e)
            return OperationResult.failure(e)
        if not available:
            logger.error(f"Stored content for document {document_id} is missing; rejecting")
            outcome = ExtractionOutcome(
                status=DocumentStatus.REJECTED,
                attempts=document.attempt_count,
                last_error=LAST_ERROR_CONTENT_MISSING,
            )
            return await self._complete(enrollment_id, document_id, actor_id, outcome, claim_token=None)

        # 2. Claim
        claim_token = new_id()
        claimed = await self.state_machine.commit(enrollment_id, actor_id, self._claim(document_id, claim_token))
        if not claimed.ok or claimed.conflict:
            return claimed
        document = claimed.value

        # 3. Extract (no aggregate lock held while waiting on the service)
        outcome = await self._run_extraction(enrollment_id, document, actor_id)

        # 4. Finalize, 5. case callback
        return await self._complete(enrollment_id, document_id, actor_id, outcome, claim_token)

    async def _complete(
        self,
        enrollment_id: str,
        document_id: str,
        actor_id: str,
        outcome: ExtractionOutcome,
        claim_token: Optional[str],
    ) -> OperationResult[Document]:
        finalized = await self.state_machine.commit(
            enrollment_id, actor_id, self._finalize(document_id, outcome, claim_token)
        )
        if not finalized.ok or finalized.conflict:
            return finalized
        await self.state_machine.advance_on_document_event(
            enrollment_id, document_id, outcome.status, actor_id
        )
        return finalized

    def lease_held(self, document: Document) -> bool:
        """True while a PROCESSING claim is younger than the lease."""
        if document.status != DocumentStatus.PROCESSING or document.claimed_at is None:
            return False
        return utcnow() - document.claimed_at < timedelta(seconds=self.settings.PROCESSING_LEASE_SECONDS)

    def _claim(self, document_id: str, claim_token: str):
        def mutation(tx: EnrollmentTransaction) -> OperationResult:
            enrollment = tx.enrollment
            document = enrollment.get_document(document_id)
            if enrollment.status == EnrollmentStatus.CANCELLED or document.status in TERMINAL_DOCUMENT_STATUSES:
                return OperationResult.success(document, conflict=True)
            if self.lease_held(document):
                logger.info(f"Document {document_id} is claimed by another worker")
                return OperationResult.success(document, conflict=True)

            now = utcnow()
            if document.status == DocumentStatus.UPLOADED:
                document.status = DocumentStatus.PROCESSING
                tx.record(
                    AuditAction.DOCUMENT_PROCESSING_STARTED,
                    subject_type=AuditSubjectType.DOCUMENT,
                    subject_id=document.id,
                    document_type=document.type.value,
                )
            else:
                logger.warning(f"Taking over expired processing lease of document {document_id}")
            document.claim_token = claim_token
            document.claimed_at = now
            document.last_error = None
            document.updated_at = now
            return OperationResult.success(document)

        return mutation

    def _finalize(self, document_id: str, outcome: ExtractionOutcome, claim_token: Optional[str]):
        def mutation(tx: EnrollmentTransaction) -> OperationResult:
            enrollment = tx.enrollment
            document = enrollment.get_document(document_id)
            if enrollment.status == EnrollmentStatus.CANCELLED:
                logger.info(
                    f"Discarding {outcome.status.value} result for document {document_id}: "
                    f"enrollment {enrollment.id} was cancelled"
                )
                tx.record(
                    AuditAction.DISCARDED_POST_CANCEL,
                    subject_type=AuditSubjectType.DOCUMENT,
                    subject_id=document_id,
                    discarded_status=outcome.status.value,
                )
                return OperationResult.success(document, conflict=True)
            if claim_token is None:
                lease_lost = self.lease_held(document)
            else:
                lease_lost = document.claim_token != claim_token
            if document.status in TERMINAL_DOCUMENT_STATUSES or lease_lost:
                logger.warning(
                    f"Discarding {outcome.status.value} result for document {document_id}: "
                    "processing lease was taken over"
                )
                return OperationResult.success(document, conflict=True)

            now = utcnow()
            document.status = outcome.status
            document.extraction = outcome.extraction
            document.attempt_count = outcome.attempts
            document.last_error = outcome.last_error
            document.claim_token = None
            document.claimed_at = None
            document.processed_at = now
            document.updated_at = now

            verified = outcome.status == DocumentStatus.VERIFIED
            tx.record(
                AuditAction.DOCUMENT_VERIFIED if verified else AuditAction.DOCUMENT_REJECTED,
                subject_type=AuditSubjectType.DOCUMENT,
                subject_id=document_id,
                document_type=document.type.value,
                confidence=outcome.extraction.confidence if outcome.extraction else None,
                attempt_count=outcome.attempts,
                last_error=outcome.last_error,
                extracted_field_count=len(outcome.extraction.fields) if outcome.extraction else 0,
            )
            tx.emit(
                NotificationEvent.DOCUMENT_PROCESSED,
                document_id=document_id,
                document_type=document.type.value,
                status=outcome.status.value,
            )
            logger.info(
                f"Document {document_id} {outcome.status.value} after {outcome.attempts} attempts"
                + (f" ({outcome.last_error})" if outcome.last_error else "")
            )
            return OperationResult.success(document)

        return mutation

    async def _run_extraction(self, enrollment_id: str, document: Document, actor_id: str) -> ExtractionOutcome:
        """Call the extraction service until a terminal outcome is reached."""
        threshold = self.settings.CONFIDENCE_THRESHOLD
        attempts = document.attempt_count
        failures = 0
        recheck_used = False
        error_codes: list[str] = []

        while True:
            result = await self.extractor.extract(document.storage_handle, document.type)
            attempts += 1

            if not result.success:
                failures += 1
                error_codes.append(result.error_code or "unknown")
                if self.backoff.should_retry(failures):
                    delay = self.backoff.delay_for(failures)
                    logger.warning(
                        f"Extraction failed for document {document.id} ({result.error_code}); "
                        f"retry {failures}/{self.backoff.max_attempts - 1} in {delay:.1f}s"
                    )
                    await self.backoff.wait(failures)
                    continue
                return ExtractionOutcome(
                    status=DocumentStatus.REJECTED,
                    attempts=attempts,
                    last_error=LAST_ERROR_UNAVAILABLE,
                    error_codes=error_codes,
                )

            extraction = result.data
            if extraction.flagged_sensitive:
                await self._record_sensitive(enrollment_id, document, actor_id, extraction)

            if extraction.confidence >= threshold:
                return ExtractionOutcome(DocumentStatus.VERIFIED, attempts, extraction, error_codes=error_codes)
            if not recheck_used:
                recheck_used = True
                logger.info(
                    f"Document {document.id} confidence {extraction.confidence:.3f} below "
                    f"{threshold:.2f}; re-extracting once"
                )
                continue
            return ExtractionOutcome(
                status=DocumentStatus.REJECTED,
                attempts=attempts,
                extraction=extraction,
                last_error=LAST_ERROR_LOW_CONFIDENCE,
                error_codes=error_codes,
            )

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    async def _record_storage_failure(
        self, enrollment_id: str, document_id: str, actor_id: str, error: StorageError
    ) -> None:
        def mutation(tx: EnrollmentTransaction) -> OperationResult:
            document = tx.enrollment.get_document(document_id)
            document.last_error = LAST_ERROR_STORAGE
            tx.record(
                AuditAction.STORAGE_FAILED,
                subject_type=AuditSubjectType.DOCUMENT,
                subject_id=document_id,
                error_code=error.error_code,
            )
            return OperationResult.success(document)

        await self.state_machine.commit(enrollment_id, actor_id, mutation)

    async def _audit_upload_storage_failure(
        self, enrollment_id: str, document_type: DocumentType, actor_id: str, error: StorageError
    ) -> None:
        await self.audit_log.append(
            AuditEntryDraft(
                subject_type=AuditSubjectType.ENROLLMENT,
                subject_id=enrollment_id,
                actor_id=actor_id,
                action=AuditAction.STORAGE_FAILED,
                payload={"document_type": document_type.value, "error_code": error.error_code},
                enrollment_id=enrollment_id,
            )
        )

    async def _record_sensitive(
        self, enrollment_id: str, document: Document, actor_id: str, extraction: ExtractionResult
    ) -> None:
        logger.warning(f"Extraction flagged sensitive identifiers in document {document.id}")
        await self.audit_log.append(
            AuditEntryDraft(
                subject_type=AuditSubjectType.DOCUMENT,
                subject_id=document.id,
                actor_id=actor_id,
                action=AuditAction.SENSITIVE_DATA_ACCESS,
                payload={
                    "document_type": document.type.value,
                    "confidence": extraction.confidence,
                    "provider": extraction.provider,
                },
                enrollment_id=enrollment_id,
            )
        )

"""
Enrollment API Endpoints.

Provides:
- Enrollment creation, status view and cancellation
- Document upload (processing scheduled in the background), listing and processing
- Health declaration and interview lifecycle
- Audit trail of an enrollment
"""

from datetime import datetime
from typing import Any, Optional

from fastapi import (
    APIRouter,
    BackgroundTasks,
    Body,
    Depends,
    File,
    Form,
    UploadFile,
    status,
)
from pydantic import BaseModel, Field

from medenroll.api.deps import get_actor, get_orchestrator
from medenroll.schemas.enrollment import Document, Interview
from medenroll.services.orchestrator import EnrollmentOrchestrator
from medenroll.services.security.authorization import Actor
from medenroll.utils.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(
    prefix="/api/v1",
    tags=["enrollments"],
)


# =============================================================================
# Schemas
# =============================================================================


class CreateEnrollmentRequest(BaseModel):
    """Request to open an enrollment case."""

    owner_id: Optional[str] = Field(default=None, description="Defaults to the calling actor")
    metadata: dict[str, Any] = Field(default_factory=dict)


class ScheduleInterviewRequest(BaseModel):
    """Request to schedule the medical interview."""

    interviewer_id: str = Field(..., min_length=1)
    scheduled_at: datetime
    duration_minutes: int = 30


class RescheduleInterviewRequest(BaseModel):
    """Request to move a scheduled interview."""

    scheduled_at: datetime


class CancelRequest(BaseModel):
    """Request to cancel an enrollment."""

    reason: str


class DocumentResponse(BaseModel):
    """Document view without extracted field values."""

    id: str
    enrollment_id: str
    type: str
    status: str
    content_type: str
    size_bytes: int
    attempt_count: int
    last_error: Optional[str] = None
    confidence: Optional[float] = None
    created_at: datetime
    processed_at: Optional[datetime] = None

    @classmethod
    def from_document(cls, document: Document) -> "DocumentResponse":
        return cls(
            id=document.id,
            enrollment_id=document.enrollment_id,
            type=document.type.value,
            status=document.status.value,
            content_type=document.content_type,
            size_bytes=document.size_bytes,
            attempt_count=document.attempt_count,
            last_error=document.last_error,
            confidence=document.extraction.confidence if document.extraction else None,
            created_at=document.created_at,
            processed_at=document.processed_at,
        )


def _interview(interview: Interview) -> dict[str, Any]:
    return interview.model_dump(mode="json")


# =============================================================================
# Enrollment
# =============================================================================


@router.post("/enrollments", status_code=status.HTTP_201_CREATED)
async def create_enrollment(
    request: CreateEnrollmentRequest,
    actor: Actor = Depends(get_actor),
    orchestrator: EnrollmentOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    """Open a new enrollment in DRAFT."""
    result = await orchestrator.create_enrollment(actor, request.metadata, owner_id=request.owner_id)
    return result.unwrap().summary()


@router.get("/enrollments/{enrollment_id}")
async def get_enrollment(
    enrollment_id: str,
    actor: Actor = Depends(get_actor),
    orchestrator: EnrollmentOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    """Case status, document statuses and interview reference."""
    result = await orchestrator.get_enrollment(actor, enrollment_id)
    return result.unwrap().summary()


@router.post("/enrollments/{enrollment_id}/submit-documents")
async def submit_documents(
    enrollment_id: str,
    actor: Actor = Depends(get_actor),
    orchestrator: EnrollmentOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    result = await orchestrator.submit_documents(actor, enrollment_id)
    return result.unwrap().summary()


@router.post("/enrollments/{enrollment_id}/cancel")
async def cancel_enrollment(
    enrollment_id: str,
    request: CancelRequest,
    actor: Actor = Depends(get_actor),
    orchestrator: EnrollmentOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    result = await orchestrator.cancel(actor, enrollment_id, request.reason)
    return result.unwrap().summary()


@router.get("/enrollments/{enrollment_id}/audit")
async def get_audit_trail(
    enrollment_id: str,
    actor: Actor = Depends(get_actor),
    orchestrator: EnrollmentOrchestrator = Depends(get_orchestrator),
) -> list[dict[str, Any]]:
    """Audit entries of the enrollment in timestamp order."""
    result = await orchestrator.audit_trail(actor, enrollment_id)
    return [entry.model_dump(mode="json") for entry in result.unwrap()]


# =============================================================================
# Documents
# =============================================================================


@router.post(
    "/enrollments/{enrollment_id}/documents",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=DocumentResponse,
)
async def upload_document(
    enrollment_id: str,
    background_tasks: BackgroundTasks,
    document_type: str = Form(...),
    file: UploadFile = File(...),
    actor: Actor = Depends(get_actor),
    orchestrator: EnrollmentOrchestrator = Depends(get_orchestrator),
) -> DocumentResponse:
    """
    Upload a document; extraction runs after the response is sent.

    The content type is detected from the file bytes, not from the
    multipart header.
    """
    content = await file.read()
    result = await orchestrator.upload_document(actor, enrollment_id, document_type, content, process=False)
    document = result.unwrap()
    background_tasks.add_task(orchestrator.pipeline.process, document.id)
    logger.info(f"Document {document.id} accepted for enrollment {enrollment_id}")
    return DocumentResponse.from_document(document)


@router.get("/enrollments/{enrollment_id}/documents", response_model=list[DocumentResponse])
async def list_documents(
    enrollment_id: str,
    actor: Actor = Depends(get_actor),
    orchestrator: EnrollmentOrchestrator = Depends(get_orchestrator),
) -> list[DocumentResponse]:
    """All documents of the enrollment, replaced ones included."""
    result = await orchestrator.list_documents(actor, enrollment_id)
    return [DocumentResponse.from_document(d) for d in result.unwrap()]


@router.post("/documents/{document_id}/process", response_model=DocumentResponse)
async def process_document(
    document_id: str,
    actor: Actor = Depends(get_actor),
    orchestrator: EnrollmentOrchestrator = Depends(get_orchestrator),
) -> DocumentResponse:
    """Run (or resume) extraction and verification; idempotent."""
    result = await orchestrator.process_document(actor, document_id)
    return DocumentResponse.from_document(result.unwrap())


# =============================================================================
# Health declaration & interview
# =============================================================================


@router.post("/enrollments/{enrollment_id}/health-declaration")
async def record_health_declaration(
    enrollment_id: str,
    declaration: dict[str, Any] = Body(...),
    actor: Actor = Depends(get_actor),
    orchestrator: EnrollmentOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    result = await orchestrator.record_health_declaration(actor, enrollment_id, declaration)
    return result.unwrap().summary()


@router.post("/enrollments/{enrollment_id}/interview", status_code=status.HTTP_201_CREATED)
async def schedule_interview(
    enrollment_id: str,
    request: ScheduleInterviewRequest,
    actor: Actor = Depends(get_actor),
    orchestrator: EnrollmentOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    result = await orchestrator.schedule_interview(
        actor,
        enrollment_id,
        request.interviewer_id,
        request.scheduled_at,
        duration_minutes=request.duration_minutes,
    )
    return _interview(result.unwrap())


@router.post("/enrollments/{enrollment_id}/interview/reschedule")
async def reschedule_interview(
    enrollment_id: str,
    request: RescheduleInterviewRequest,
    actor: Actor = Depends(get_actor),
    orchestrator: EnrollmentOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    result = await orchestrator.reschedule_interview(actor, enrollment_id, request.scheduled_at)
    return _interview(result.unwrap())


@router.post("/enrollments/{enrollment_id}/interview/start")
async def start_interview(
    enrollment_id: str,
    actor: Actor = Depends(get_actor),
    orchestrator: EnrollmentOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    result = await orchestrator.start_interview(actor, enrollment_id)
    return _interview(result.unwrap())


@router.post("/enrollments/{enrollment_id}/interview/complete")
async def complete_interview(
    enrollment_id: str,
    actor: Actor = Depends(get_actor),
    orchestrator: EnrollmentOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    result = await orchestrator.complete_interview(actor, enrollment_id)
    return result.unwrap().summary()

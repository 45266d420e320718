"""
Enrollment Aggregate Schemas
Pydantic models for the enrollment aggregate and its owned records.
Source: https://docs.pydantic.dev/latest/
Verified: 2026-10-19

The enrollment is the unit of locking: its documents, interview and health
declaration are owned by it and only ever mutated through a repository
transaction scoped to the enrollment id. Relations are one-directional;
documents and interviews know their enrollment id, nothing points back.
"""

from datetime import datetime, timezone
from typing import Any, Iterable, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, model_validator

from medenroll.core.enums import (
    AlcoholConsumption,
    DocumentStatus,
    DocumentType,
    EnrollmentStatus,
    InterviewStatus,
    TERMINAL_ENROLLMENT_STATUSES,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid4())


class ExtractionResult(BaseModel):
    """Structured output of the extraction service for one document."""

    confidence: float = Field(..., ge=0.0, le=1.0)
    fields: dict[str, str] = Field(default_factory=dict)
    flagged_sensitive: bool = False
    provider: Optional[str] = None


class Document(BaseModel):
    """Uploaded document owned by one enrollment."""

    id: str = Field(default_factory=new_id)
    enrollment_id: str
    type: DocumentType
    status: DocumentStatus = DocumentStatus.UPLOADED
    content_type: str
    size_bytes: int = Field(..., ge=0)
    storage_handle: Optional[str] = None
    extraction: Optional[ExtractionResult] = None
    attempt_count: int = 0
    last_error: Optional[str] = None
    # Processing lease: set when a worker claims the document
    claim_token: Optional[str] = None
    claimed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    processed_at: Optional[datetime] = None


class Medication(BaseModel):
    """Current medication entry of the health declaration."""

    name: str = Field(..., min_length=1, max_length=255)
    dosage: str = Field(..., min_length=1, max_length=100)
    frequency: str = Field(..., min_length=1, max_length=100)


class HealthDeclaration(BaseModel):
    """Self-reported health declaration answers."""

    has_chronic_conditions: bool
    chronic_conditions: list[str] = Field(default_factory=list)
    current_medications: list[Medication] = Field(default_factory=list)
    allergies: list[str] = Field(default_factory=list)
    family_history: list[str] = Field(default_factory=list)
    smoker: bool
    alcohol_consumption: AlcoholConsumption
    recorded_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def check_chronic_conditions(self) -> "HealthDeclaration":
        if self.has_chronic_conditions and not self.chronic_conditions:
            raise ValueError("chronic_conditions required when has_chronic_conditions is true")
        return self


class Interview(BaseModel):
    """Recorded medical interview for an enrollment."""

    id: str = Field(default_factory=new_id)
    enrollment_id: str
    interviewer_id: str
    scheduled_at: datetime
    duration_minutes: int = Field(default=30, ge=15, le=120)
    status: InterviewStatus = InterviewStatus.SCHEDULED
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)


class Enrollment(BaseModel):
    """Enrollment aggregate root."""

    id: str = Field(default_factory=new_id)
    owner_id: str
    status: EnrollmentStatus = EnrollmentStatus.DRAFT
    metadata: dict[str, Any] = Field(default_factory=dict)
    documents: list[Document] = Field(default_factory=list)
    interview: Optional[Interview] = None
    health_declaration: Optional[HealthDeclaration] = None
    cancellation_reason: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    version: int = 0

    @property
    def interview_ref(self) -> Optional[str]:
        return self.interview.id if self.interview else None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_ENROLLMENT_STATUSES

    def get_document(self, document_id: str) -> Optional[Document]:
        for document in self.documents:
            if document.id == document_id:
                return document
        return None

    def current_document(self, document_type: DocumentType) -> Optional[Document]:
        """Latest document uploaded for a type (the one occupying the slot)."""
        current = None
        for document in self.documents:
            if document.type == document_type:
                current = document
        return current

    def slots_filled(self, required: Iterable[DocumentType]) -> bool:
        """Every required type holds a document that is not REJECTED."""
        for document_type in required:
            current = self.current_document(document_type)
            if current is None or current.status == DocumentStatus.REJECTED:
                return False
        return True

    def slots_verified(self, required: Iterable[DocumentType]) -> bool:
        """Every required type holds a VERIFIED document."""
        for document_type in required:
            current = self.current_document(document_type)
            if current is None or current.status != DocumentStatus.VERIFIED:
                return False
        return True

    def summary(self) -> dict[str, Any]:
        """Status view: case status, document statuses, interview reference."""
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "status": self.status.value,
            "documents": [
                {
                    "id": d.id,
                    "type": d.type.value,
                    "status": d.status.value,
                    "attempt_count": d.attempt_count,
                    "last_error": d.last_error,
                }
                for d in self.documents
            ],
            "interview_ref": self.interview_ref,
            "interview_status": self.interview.status.value if self.interview else None,
            "health_declaration_recorded": self.health_declaration is not None,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }

"""
Unit Tests for Pydantic Schemas
Tests aggregate validation, slot helpers and the operation result wrapper
"""

from datetime import timedelta

import pytest
from pydantic import ValidationError

from medenroll.core.enums import DocumentStatus, DocumentType
from medenroll.core.errors import InvalidTransition, NotFound, PayloadTooLarge
from medenroll.schemas.enrollment import (
    Document,
    Enrollment,
    ExtractionResult,
    HealthDeclaration,
    Interview,
    utcnow,
)
from medenroll.schemas.result import OperationResult

REQUIRED = [DocumentType.ID, DocumentType.PROOF_OF_ADDRESS]


def _document(enrollment: Enrollment, document_type: DocumentType, status: DocumentStatus) -> Document:
    document = Document(
        enrollment_id=enrollment.id,
        type=document_type,
        status=status,
        content_type="application/pdf",
        size_bytes=128,
    )
    enrollment.documents.append(document)
    return document


@pytest.mark.unit
class TestHealthDeclarationSchema:
    """Test HealthDeclaration validation"""

    def test_chronic_conditions_required_when_declared(self):
        with pytest.raises(ValidationError) as exc_info:
            HealthDeclaration(has_chronic_conditions=True, smoker=False, alcohol_consumption="none")

        assert any("chronic_conditions required" in str(error) for error in exc_info.value.errors())

    def test_valid_declaration(self):
        declaration = HealthDeclaration(
            has_chronic_conditions=True,
            chronic_conditions=["asthma"],
            current_medications=[{"name": "salbutamol", "dosage": "100mcg", "frequency": "as needed"}],
            smoker=False,
            alcohol_consumption="regular",
        )

        assert declaration.current_medications[0].name == "salbutamol"
        assert declaration.recorded_at.tzinfo is not None

    def test_unknown_alcohol_answer(self):
        with pytest.raises(ValidationError):
            HealthDeclaration(has_chronic_conditions=False, smoker=False, alcohol_consumption="daily")


@pytest.mark.unit
class TestAggregateSchemas:
    """Test extraction bounds, interview duration and slot helpers"""

    @pytest.mark.parametrize("confidence", [-0.01, 1.5])
    def test_confidence_bounds(self, confidence):
        with pytest.raises(ValidationError):
            ExtractionResult(confidence=confidence)

    @pytest.mark.parametrize("minutes", [10, 121])
    def test_interview_duration_bounds(self, minutes):
        with pytest.raises(ValidationError):
            Interview(
                enrollment_id="enr-1",
                interviewer_id="dr-house",
                scheduled_at=utcnow() + timedelta(days=1),
                duration_minutes=minutes,
            )

    def test_latest_document_occupies_slot(self):
        enrollment = Enrollment(owner_id="member-1")
        _document(enrollment, DocumentType.ID, DocumentStatus.REJECTED)
        replacement = _document(enrollment, DocumentType.ID, DocumentStatus.UPLOADED)

        assert enrollment.current_document(DocumentType.ID) is replacement
        assert enrollment.get_document(replacement.id) is replacement
        assert enrollment.get_document("missing") is None

    def test_slots_filled_and_verified(self):
        enrollment = Enrollment(owner_id="member-1")
        _document(enrollment, DocumentType.ID, DocumentStatus.VERIFIED)
        address = _document(enrollment, DocumentType.PROOF_OF_ADDRESS, DocumentStatus.REJECTED)

        assert not enrollment.slots_filled(REQUIRED)

        address.status = DocumentStatus.PROCESSING
        assert enrollment.slots_filled(REQUIRED)
        assert not enrollment.slots_verified(REQUIRED)

        address.status = DocumentStatus.VERIFIED
        assert enrollment.slots_verified(REQUIRED)

    def test_summary(self):
        enrollment = Enrollment(owner_id="member-1")
        _document(enrollment, DocumentType.ID, DocumentStatus.UPLOADED)

        summary = enrollment.summary()

        assert summary["status"] == "draft"
        assert summary["documents"][0]["type"] == "id_document"
        assert summary["interview_ref"] is None
        assert summary["health_declaration_recorded"] is False


@pytest.mark.unit
class TestOperationResult:
    """Test the result wrapper and error serialization"""

    def test_success(self):
        result = OperationResult.success("value", conflict=True)

        assert result.ok
        assert result.conflict
        assert result.unwrap() == "value"

    def test_failure_unwrap_raises(self):
        result = OperationResult.failure(NotFound("enrollment", "enr-9"))

        assert not result.ok
        with pytest.raises(NotFound):
            result.unwrap()

    def test_error_payloads(self):
        assert InvalidTransition("draft", "complete").to_dict() == {
            "error": "invalid_transition",
            "from": "draft",
            "attempted": "complete",
        }
        too_large = PayloadTooLarge(2048, 1024)
        assert too_large.to_dict()["field"] == "content"
        assert too_large.to_dict()["error"] == "payload_too_large"

"""
Domain Error Taxonomy.

Workflow outcomes such as a bad input or an illegal transition are returned
inside an ``OperationResult`` rather than raised; the classes below still
derive from ``Exception`` so ``OperationResult.unwrap()`` and the API layer
can raise them where that is the natural control flow.
"""

from typing import Any, Optional


class EnrollmentError(Exception):
    """Base class for all enrollment domain errors."""

    code: str = "enrollment_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, Any]:
        """Serialize for API responses and audit payloads."""
        return {"error": self.code, "message": self.message}


class ValidationError(EnrollmentError):
    """Bad input; user-correctable and never audited as a security event."""

    code = "validation_error"

    def __init__(self, field: str, reason: str):
        super().__init__(f"Invalid {field}: {reason}")
        self.field = field
        self.reason = reason

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.code, "field": self.field, "reason": self.reason}


class UnsupportedType(ValidationError):
    """Document type or content type is not accepted."""

    code = "unsupported_type"


class PayloadTooLarge(ValidationError):
    """Upload exceeds the configured size limit."""

    code = "payload_too_large"

    def __init__(self, size: int, limit: int):
        super().__init__("content", f"{size} bytes exceeds limit of {limit} bytes")
        self.size = size
        self.limit = limit


class InvalidTransition(EnrollmentError):
    """Transition not present in the transition table (workflow misuse)."""

    code = "invalid_transition"

    def __init__(self, from_status: str, attempted: str, detail: Optional[str] = None):
        message = f"Invalid transition: {from_status} + {attempted}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)
        self.from_status = from_status
        self.attempted = attempted
        self.detail = detail

    def to_dict(self) -> dict[str, Any]:
        data = {"error": self.code, "from": self.from_status, "attempted": self.attempted}
        if self.detail:
            data["detail"] = self.detail
        return data


class Forbidden(EnrollmentError):
    """Authorization gate denied the action."""

    code = "forbidden"

    def __init__(self, actor_id: str, action: str, resource: Optional[str] = None):
        super().__init__(f"Actor {actor_id} may not perform {action}")
        self.actor_id = actor_id
        self.action = action
        self.resource = resource

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.code, "action": self.action}


class NotFound(EnrollmentError):
    """Referenced record does not exist."""

    code = "not_found"

    def __init__(self, resource_type: str, resource_id: Any):
        super().__init__(f"{resource_type} {resource_id} not found")
        self.resource_type = resource_type
        self.resource_id = str(resource_id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": self.code,
            "resource_type": self.resource_type,
            "resource_id": self.resource_id,
        }


class ExternalServiceError(EnrollmentError):
    """Transient failure of an external collaborator (extraction, webhook, storage)."""

    code = "external_service_error"

    def __init__(self, message: str, service: str = "external", error_code: Optional[str] = None):
        super().__init__(message)
        self.service = service
        self.error_code = error_code

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.code, "service": self.service, "message": self.message}


class StorageError(ExternalServiceError):
    """Document store read or write failed."""

    code = "storage_error"

    def __init__(self, message: str, error_code: str = "storage_unavailable"):
        super().__init__(message, service="document_store", error_code=error_code)


class ConcurrentModification(EnrollmentError):
    """Optimistic version check failed while committing an aggregate."""

    code = "concurrent_modification"

    def __init__(self, enrollment_id: Any, expected_version: int):
        super().__init__(
            f"Enrollment {enrollment_id} changed since version {expected_version}"
        )
        self.enrollment_id = str(enrollment_id)
        self.expected_version = expected_version

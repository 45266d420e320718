"""
Domain error → HTTP mapping.

Routes call ``OperationResult.unwrap()``; the carried domain error is raised
and translated here into a JSON response. A benign conflict is a success and
never reaches this handler.
"""

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from medenroll.core.errors import (
    ConcurrentModification,
    EnrollmentError,
    ExternalServiceError,
    Forbidden,
    InvalidTransition,
    NotFound,
    ValidationError,
)
from medenroll.utils.logging import get_logger

logger = get_logger(__name__)

STATUS_CODES: list[tuple[type[EnrollmentError], int]] = [
    (ValidationError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (InvalidTransition, status.HTTP_409_CONFLICT),
    (ConcurrentModification, status.HTTP_409_CONFLICT),
    (Forbidden, status.HTTP_403_FORBIDDEN),
    (NotFound, status.HTTP_404_NOT_FOUND),
    (ExternalServiceError, status.HTTP_503_SERVICE_UNAVAILABLE),
]


def status_code_for(error: EnrollmentError) -> int:
    for error_type, code in STATUS_CODES:
        if isinstance(error, error_type):
            return code
    return status.HTTP_400_BAD_REQUEST


async def enrollment_error_handler(request: Request, exc: EnrollmentError) -> JSONResponse:
    code = status_code_for(exc)
    if code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.code}")
    else:
        logger.info(f"{request.method} {request.url.path} rejected with {code}: {exc.code}")
    return JSONResponse(status_code=code, content=exc.to_dict())


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(EnrollmentError, enrollment_error_handler)  # type: ignore[arg-type]

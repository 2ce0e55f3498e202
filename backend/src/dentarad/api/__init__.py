"""FastAPI routes and API modules for DentaRad.

Provides common response models, error handlers, and utilities.
"""

from typing import Any
from uuid import UUID

from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel


# =========================
# Response Models
# =========================


class ErrorDetail(BaseModel):
    """Detailed error information."""

    code: str
    message: str
    field: str | None = None
    details: dict[str, Any] | None = None


class ErrorResponse(BaseModel):
    """Standard error response."""

    success: bool = False
    error: str
    error_code: str
    details: list[ErrorDetail] | None = None
    request_id: str | None = None


# =========================
# Exception Classes
# =========================


class APIError(HTTPException):
    """Base API error with structured response."""

    def __init__(
        self,
        status_code: int,
        error_code: str,
        message: str,
        details: list[ErrorDetail] | None = None,
        headers: dict[str, str] | None = None,
    ):
        self.error_code = error_code
        self.message = message
        self.details = details
        super().__init__(status_code=status_code, detail=message, headers=headers)


class NotFoundError(APIError):
    """Resource not found error."""

    def __init__(self, resource: str, identifier: str | UUID):
        super().__init__(
            status_code=404,
            error_code="NOT_FOUND",
            message=f"{resource} not found: {identifier}",
        )


class ValidationError(APIError):
    """Request validation error."""

    def __init__(self, message: str, details: list[ErrorDetail] | None = None):
        super().__init__(
            status_code=400,
            error_code="VALIDATION_ERROR",
            message=message,
            details=details,
        )


class AuthenticationError(APIError):
    """Authentication required error."""

    def __init__(self, message: str = "Authentication required"):
        super().__init__(
            status_code=401,
            error_code="UNAUTHORIZED",
            message=message,
        )


class AuthorizationError(APIError):
    """Authorization denied error."""

    def __init__(self, message: str = "Forbidden"):
        super().__init__(
            status_code=403,
            error_code="FORBIDDEN",
            message=message,
        )


class ConflictError(APIError):
    """Request conflicts with the current state of a resource."""

    def __init__(self, message: str):
        super().__init__(status_code=409, error_code="CONFLICT", message=message)


class RateLimitError(APIError):
    """Rate limit exceeded error."""

    def __init__(self, retry_after: int = 60, message: str | None = None):
        super().__init__(
            status_code=429,
            error_code="RATE_LIMIT_EXCEEDED",
            message=message or f"Rate limit exceeded. Retry after {retry_after} seconds.",
            headers={"Retry-After": str(retry_after)},
        )
        self.retry_after = retry_after


class ExternalServiceError(APIError):
    """A third-party service (Dropbox, Orthanc, OpenAI, Resend) failed."""

    def __init__(self, service: str, message: str, error_code: str = "EXTERNAL_SERVICE_ERROR", status_code: int = 502):
        super().__init__(
            status_code=status_code,
            error_code=error_code,
            message=f"{service}: {message}",
        )
        self.service = service


# =========================
# Exception Handlers
# =========================


def _request_id(request: Request) -> str | None:
    return getattr(request.state, "request_id", None)


async def api_error_handler(request: Request, exc: APIError) -> JSONResponse:
    """Handle APIError exceptions."""
    headers = {"X-Error-Code": exc.error_code}
    if exc.headers:
        headers.update(exc.headers)
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=exc.message,
            error_code=exc.error_code,
            details=exc.details,
            request_id=_request_id(request),
        ).model_dump(),
        headers=headers,
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handle generic HTTPException."""
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=str(exc.detail),
            error_code="HTTP_ERROR",
            request_id=_request_id(request),
        ).model_dump(),
        headers=getattr(exc, "headers", None),
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unexpected exceptions."""
    from dentarad.logging import get_logger

    logger = get_logger(__name__)
    logger.exception(f"Unhandled exception: {exc}")

    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error="An unexpected error occurred",
            error_code="INTERNAL_ERROR",
            request_id=_request_id(request),
        ).model_dump(),
    )


def register_exception_handlers(app):
    """Register exception handlers with the FastAPI app."""
    app.add_exception_handler(APIError, api_error_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)

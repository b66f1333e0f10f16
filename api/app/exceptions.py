"""
Custom Exceptions and Error Handling

Provides structured error responses for the API. Every failure a caller can
observe maps to one class here and one status code.
"""

import logging
from typing import Any, Dict, Optional

from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.status import (
    HTTP_400_BAD_REQUEST,
    HTTP_401_UNAUTHORIZED,
    HTTP_403_FORBIDDEN,
    HTTP_404_NOT_FOUND,
    HTTP_409_CONFLICT,
    HTTP_429_TOO_MANY_REQUESTS,
    HTTP_500_INTERNAL_SERVER_ERROR,
)

from app.middleware.correlation_id import get_correlation_id

logger = logging.getLogger(__name__)


class ErrorResponse(BaseModel):
    """Standardized error response model."""
    error: str
    message: str
    details: Optional[Any] = None
    correlation_id: Optional[str] = None


class AppException(HTTPException):
    """Base application exception with structured response."""

    def __init__(
        self,
        status_code: int,
        error: str,
        message: str,
        details: Optional[Any] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        self.error = error
        self.message = message
        self.details = details
        super().__init__(status_code=status_code, detail=message, headers=headers)


# Specific exception types
class ValidationError(AppException):
    """400 Bad Request - Rejected target URL or malformed input."""

    def __init__(self, message: str = "Validation failed", details: Optional[Any] = None):
        super().__init__(HTTP_400_BAD_REQUEST, "validation_error", message, details)


class UnauthorizedError(AppException):
    """401 Unauthorized - Authentication required."""

    def __init__(self, message: str = "Authentication required", details: Optional[Any] = None):
        super().__init__(
            HTTP_401_UNAUTHORIZED,
            "unauthorized",
            message,
            details,
            headers={"WWW-Authenticate": "Bearer"},
        )


AuthError = UnauthorizedError


class EntitlementError(AppException):
    """403 Forbidden - The account lacks the entitlement for this action."""

    def __init__(self, reason: str, message: str = "Access denied", details: Optional[Any] = None):
        self.reason = reason
        payload = {"reason": reason}
        if details:
            payload.update(details)
        super().__init__(HTTP_403_FORBIDDEN, "entitlement_error", message, payload)


class NotFoundError(AppException):
    """404 Not Found - Resource not found."""

    def __init__(self, message: str = "Resource not found", details: Optional[Any] = None):
        super().__init__(HTTP_404_NOT_FOUND, "not_found", message, details)


class ConflictError(AppException):
    """409 Conflict - Resource conflict."""

    def __init__(self, message: str = "Resource conflict", details: Optional[Any] = None):
        super().__init__(HTTP_409_CONFLICT, "conflict", message, details)


class RateLimitError(AppException):
    """429 Too Many Requests - Rate limit exceeded."""

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        retry_after_seconds: Optional[int] = None,
        details: Optional[Any] = None,
    ):
        self.retry_after_seconds = retry_after_seconds
        headers = None
        if retry_after_seconds is not None:
            headers = {"Retry-After": str(retry_after_seconds)}
        super().__init__(HTTP_429_TOO_MANY_REQUESTS, "rate_limit_exceeded", message, details, headers)


class ExecutionError(AppException):
    """500 - The scan could not be executed (browser, navigation or evaluation)."""

    def __init__(self, kind: str, message: str = "Scan execution failed"):
        self.kind = kind
        super().__init__(HTTP_500_INTERNAL_SERVER_ERROR, "execution_error", message, {"kind": kind})


class PersistenceError(AppException):
    """500 - Scan results could not be stored; partial writes were rolled back."""

    def __init__(self, message: str = "Failed to store scan results", details: Optional[Any] = None):
        super().__init__(HTTP_500_INTERNAL_SERVER_ERROR, "persistence_error", message, details)


class InternalError(AppException):
    """500 Internal Server Error - Unexpected error."""

    def __init__(self, message: str = "Internal server error", details: Optional[Any] = None):
        super().__init__(HTTP_500_INTERNAL_SERVER_ERROR, "internal_error", message, details)


# Exception handlers
async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    """Handler for application exceptions."""
    correlation_id = get_correlation_id()

    log = logger.error if exc.status_code >= 500 else logger.warning
    log(
        f"Application error: {exc.error} - {exc.message}",
        extra={"details": exc.details, "status_code": exc.status_code}
    )

    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=exc.error,
            message=exc.message,
            details=exc.details,
            correlation_id=correlation_id,
        ).model_dump(),
        headers=exc.headers,
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handler for generic HTTP exceptions."""
    correlation_id = get_correlation_id()

    logger.warning(f"HTTP error: {exc.status_code} - {exc.detail}")

    # Map status codes to error types
    error_map = {
        400: "validation_error",
        401: "unauthorized",
        403: "forbidden",
        404: "not_found",
        405: "method_not_allowed",
        409: "conflict",
        429: "rate_limit_exceeded",
        500: "internal_error",
    }

    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=error_map.get(exc.status_code, "error"),
            message=str(exc.detail),
            correlation_id=correlation_id,
        ).model_dump(),
        headers=getattr(exc, "headers", None),
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handler for unhandled exceptions."""
    correlation_id = get_correlation_id()

    logger.exception(f"Unhandled exception: {exc}")

    return JSONResponse(
        status_code=HTTP_500_INTERNAL_SERVER_ERROR,
        content=ErrorResponse(
            error="internal_error",
            message="An unexpected error occurred. Please try again later.",
            correlation_id=correlation_id,
        ).model_dump(),
    )


async def validation_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handler for malformed request bodies; reported as 400 like rejected URLs."""
    from fastapi.encoders import jsonable_encoder

    correlation_id = get_correlation_id()

    errors = exc.errors() if hasattr(exc, "errors") else str(exc)

    logger.warning(f"Validation error: {errors}")

    return JSONResponse(
        status_code=HTTP_400_BAD_REQUEST,
        content=ErrorResponse(
            error="validation_error",
            message="Request validation failed",
            details=jsonable_encoder(errors),
            correlation_id=correlation_id,
        ).model_dump(),
    )

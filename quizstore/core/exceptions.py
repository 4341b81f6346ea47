"""
Custom exceptions and error handlers for quizstore
Every store operation fails with one of these typed exceptions
"""

import logging
from typing import Any, Dict, Optional

import sentry_sdk
from fastapi import Request, status
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from quizstore.core.config import settings

logger = logging.getLogger(__name__)


class QuizStoreException(Exception):
    """Base exception for quizstore"""

    def __init__(
        self,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.status_code = status_code
        self.error_code = error_code or "INTERNAL_ERROR"
        self.details = details or {}
        super().__init__(self.message)


class NotFoundException(QuizStoreException):
    """Resource not found exception"""

    def __init__(self, resource: str = "Resource", details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=f"{resource} not found",
            status_code=status.HTTP_404_NOT_FOUND,
            error_code="NOT_FOUND",
            details=details,
        )


class DuplicateException(QuizStoreException):
    """Duplicate resource exception"""

    def __init__(self, resource: str = "Resource", details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=f"{resource} already exists",
            status_code=status.HTTP_409_CONFLICT,
            error_code="DUPLICATE_ERROR",
            details=details,
        )


class ConflictException(QuizStoreException):
    """Atomic commit precondition failed; the caller may re-read and retry"""

    def __init__(
        self, message: str = "Concurrent modification detected", details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(
            message=message,
            status_code=status.HTTP_409_CONFLICT,
            error_code="CONFLICT",
            details=details,
        )


class ValidationException(QuizStoreException):
    """Validation exception"""

    def __init__(
        self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(
            message=message,
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            error_code="VALIDATION_ERROR",
            details=details,
        )

    @classmethod
    def from_pydantic(cls, exc: ValidationError, message: str = "Validation failed"):
        """Build from a pydantic ValidationError, keeping per-field messages"""
        errors = [
            {
                "field": ".".join(str(loc) for loc in error["loc"]),
                "message": error["msg"],
                "type": error["type"],
            }
            for error in exc.errors()
        ]
        return cls(message=message, details={"errors": errors})


class UnavailableException(QuizStoreException):
    """Storage engine I/O failure"""

    def __init__(
        self, message: str = "Storage engine unavailable", details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(
            message=message,
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            error_code="STORE_UNAVAILABLE",
            details=details,
        )


def create_error_response(
    request: Request,
    status_code: int,
    error_code: str,
    message: str,
    details: Optional[Dict[str, Any]] = None,
) -> JSONResponse:
    """
    Create standardized error response

    Args:
        request: FastAPI request object
        status_code: HTTP status code
        error_code: Application error code
        message: Error message
        details: Additional error details

    Returns:
        JSON response with error information
    """
    error_response = {
        "error": {
            "code": error_code,
            "message": message,
            "details": details or {},
            "path": str(request.url),
            "method": request.method,
        }
    }

    if hasattr(request.state, "request_id"):
        error_response["error"]["request_id"] = request.state.request_id

    return JSONResponse(status_code=status_code, content=error_response)


async def quizstore_exception_handler(request: Request, exc: QuizStoreException) -> JSONResponse:
    """
    Handle quizstore exceptions raised inside route handlers

    Args:
        request: FastAPI request object
        exc: quizstore exception

    Returns:
        JSON error response
    """
    log = logger.error if exc.status_code >= 500 else logger.warning
    log(
        f"Store exception: {exc.message}",
        extra={
            "error_code": exc.error_code,
            "status_code": exc.status_code,
            "details": exc.details,
            "path": str(request.url),
        },
    )

    if settings.SENTRY_DSN and exc.status_code >= 500:
        sentry_sdk.capture_exception(exc)

    message = exc.message
    if exc.status_code >= 500 and settings.is_production():
        message = "An unexpected error occurred"

    return create_error_response(
        request=request,
        status_code=exc.status_code,
        error_code=exc.error_code,
        message=message,
        details=exc.details,
    )


def register_exception_handlers(app):
    """
    Register the store exception handler with a FastAPI app

    Args:
        app: FastAPI application instance
    """
    app.add_exception_handler(QuizStoreException, quizstore_exception_handler)
    logger.info("Exception handlers registered")

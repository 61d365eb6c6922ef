import uuid
from datetime import UTC, datetime
from typing import Any

from fastapi import HTTPException, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from api.config.logging import add_request_context, get_logger

logger = get_logger(__name__)


class SyncQueueException(Exception):
    """Base exception for the sync queue service."""

    def __init__(
        self,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(SyncQueueException):
    """Raised when input validation fails."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message, status.HTTP_422_UNPROCESSABLE_ENTITY, details)


class NotFoundError(SyncQueueException):
    """Raised when a resource is not found."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message, status.HTTP_404_NOT_FOUND, details)


class ConflictError(SyncQueueException):
    """Raised when a job is not in the state the caller expects."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message, status.HTTP_409_CONFLICT, details)


class UnauthorizedError(SyncQueueException):
    """Raised when authentication fails."""

    def __init__(
        self, message: str = "Unauthorized", details: dict[str, Any] | None = None
    ):
        super().__init__(message, status.HTTP_401_UNAUTHORIZED, details)


class ForbiddenError(SyncQueueException):
    """Raised when access is forbidden."""

    def __init__(
        self, message: str = "Forbidden", details: dict[str, Any] | None = None
    ):
        super().__init__(message, status.HTTP_403_FORBIDDEN, details)


def create_error_response(
    status_code: int,
    message: str,
    details: dict[str, Any] | None = None,
    request_id: str | None = None,
) -> dict[str, Any]:
    """Create standardized error response envelope."""
    return {
        "ok": False,
        "error": {
            "message": message,
            "code": status_code,
            "details": details or {},
        },
        "request_id": request_id,
        "timestamp": datetime.now(UTC).isoformat(),
    }


def create_success_response(
    data: Any, message: str | None = None, request_id: str | None = None
) -> dict[str, Any]:
    """Create standardized success response envelope."""
    return {
        "ok": True,
        "data": data,
        "message": message,
        "request_id": request_id,
        "timestamp": datetime.now(UTC).isoformat(),
    }


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or str(uuid.uuid4())


def _error_json(
    request: Request,
    status_code: int,
    message: str,
    details: dict[str, Any] | None = None,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=create_error_response(
            status_code=status_code,
            message=message,
            details=details,
            request_id=_request_id(request),
        ),
    )


async def sync_queue_exception_handler(
    request: Request, exc: SyncQueueException
) -> JSONResponse:
    """Handle application exceptions."""
    log = logger.error if exc.status_code >= 500 else logger.warning
    log(
        "Application exception",
        exception=exc.__class__.__name__,
        message=exc.message,
        status_code=exc.status_code,
        details=exc.details,
        request_id=_request_id(request),
    )
    return _error_json(request, exc.status_code, exc.message, exc.details)


async def request_validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Wrap FastAPI's request validation failures in the error envelope."""
    errors = jsonable_encoder(exc.errors())
    fields = [".".join(str(part) for part in error["loc"]) for error in errors]

    logger.warning(
        "Request validation failed",
        fields=fields,
        request_id=_request_id(request),
    )
    return _error_json(
        request,
        status.HTTP_422_UNPROCESSABLE_ENTITY,
        "Request validation failed: " + ", ".join(fields),
        {"errors": errors},
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handle FastAPI HTTP exceptions."""
    logger.warning(
        "HTTP exception",
        status_code=exc.status_code,
        detail=exc.detail,
        request_id=_request_id(request),
    )
    return _error_json(request, exc.status_code, str(exc.detail))


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unexpected exceptions."""
    logger.error(
        "Unhandled exception",
        exception=exc.__class__.__name__,
        message=str(exc),
        request_id=_request_id(request),
        exc_info=True,
    )
    return _error_json(
        request, status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error"
    )


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Middleware to add request context and correlation IDs."""

    async def dispatch(self, request: Request, call_next):
        # Honour an upstream correlation ID when the caller provides one
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id

        add_request_context(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )

        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id

        return response

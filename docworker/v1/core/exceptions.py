import uuid
from datetime import UTC, datetime
from typing import Any

import structlog
from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

logger = structlog.get_logger(__name__)


class DocWorkerError(Exception):
    """Base exception for the document worker service."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class ConfigurationError(DocWorkerError):
    """Raised when a worker configuration is out of bounds."""

    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY

    def __init__(self, message: str, errors: list[str] | None = None):
        self.errors = errors or []
        super().__init__(message, {"errors": self.errors})


class StoreUnavailableError(DocWorkerError):
    """Raised when the job store cannot be reached."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE


class HandlerError(DocWorkerError):
    """Business failure inside a job handler; routed to retry-or-fail."""

    def __init__(
        self,
        message: str,
        error_code: str = "handler_error",
        details: dict[str, Any] | None = None,
    ):
        self.error_code = error_code
        super().__init__(message, details)


class JobFatalError(HandlerError):
    """Non-retryable job failure (e.g., missing source file)."""

    def __init__(self, message: str, error_code: str = "fatal", details: dict[str, Any] | None = None):
        super().__init__(message, error_code, details)


class JobTimeoutError(HandlerError):
    """Handler exceeded its deadline; bookkept exactly like a handler error."""

    def __init__(self, timeout_ms: int):
        self.timeout_ms = timeout_ms
        super().__init__(
            f"Job processing timed out after {timeout_ms}ms",
            error_code="timeout",
            details={"timeout_ms": timeout_ms},
        )


class JobCancelledError(HandlerError):
    """Raised by handlers that observe the cancellation flag."""

    def __init__(self, message: str = "Job was cancelled"):
        super().__init__(message, error_code="cancelled")


class WorkerStateError(DocWorkerError):
    """Raised when a worker lifecycle call is invalid for its current state."""

    status_code = status.HTTP_409_CONFLICT


class WorkerNotFoundError(DocWorkerError):
    """Raised when a worker name is not registered with the manager."""

    status_code = status.HTTP_404_NOT_FOUND


class DuplicateWorkerError(DocWorkerError):
    """Raised when registering a worker name twice."""

    status_code = status.HTTP_409_CONFLICT


class JobNotFoundError(DocWorkerError):
    """Raised when a job id does not exist."""

    status_code = status.HTTP_404_NOT_FOUND


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


async def docworker_exception_handler(
    request: Request, exc: DocWorkerError
) -> JSONResponse:
    """Handle service specific exceptions."""
    request_id = getattr(request.state, "request_id", str(uuid.uuid4()))

    logger.error(
        "Application exception",
        exception=exc.__class__.__name__,
        message=exc.message,
        status_code=exc.status_code,
        details=exc.details,
        request_id=request_id,
    )

    return JSONResponse(
        status_code=exc.status_code,
        content=create_error_response(
            status_code=exc.status_code,
            message=exc.message,
            details=exc.details,
            request_id=request_id,
        ),
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handle FastAPI HTTP exceptions."""
    request_id = getattr(request.state, "request_id", str(uuid.uuid4()))

    logger.warning(
        "HTTP exception",
        status_code=exc.status_code,
        detail=exc.detail,
        request_id=request_id,
    )

    return JSONResponse(
        status_code=exc.status_code,
        content=create_error_response(
            status_code=exc.status_code,
            message=str(exc.detail),
            request_id=request_id,
        ),
    )


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unexpected exceptions."""
    request_id = getattr(request.state, "request_id", str(uuid.uuid4()))

    logger.error(
        "Unhandled exception",
        exception=exc.__class__.__name__,
        message=str(exc),
        request_id=request_id,
        exc_info=True,
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=create_error_response(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            message="Internal server error",
            request_id=request_id,
        ),
    )


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Middleware to add request context and correlation IDs."""

    async def dispatch(self, request: Request, call_next):
        request_id = str(uuid.uuid4())
        request.state.request_id = request_id

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )

        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id

        return response

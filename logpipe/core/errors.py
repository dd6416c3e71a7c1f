"""
Logpipe - Error Taxonomy and API Error Handling

Pipeline errors:
    TransportError (BodyReadError)  request body could not be read
    EmptyBodyError                  request body was empty
    BrokerUnavailable               queue cannot be reached / hand-off failed
      PublishTimeout                publish confirm did not arrive in time
    QueueConflict                   queue exists with incompatible settings
    SinkUnavailable                 relational sink cannot be reached
    ConstraintViolation             sink rejected the payload (poison message)
    IngestFailed                    ingress could not guarantee delivery

Every error carries a machine-readable error_code and the HTTP status it
maps to when it reaches the API surface.
"""

import logging

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.exceptions import HTTPException as StarletteHTTPException

from .middleware import get_request_id

logger = logging.getLogger(__name__)


# =============================================================================
# Error Codes
# =============================================================================

ERROR_BODY_READ = "body_read_error"
ERROR_EMPTY_BODY = "empty_body"
ERROR_BROKER_UNAVAILABLE = "broker_unavailable"
ERROR_PUBLISH_TIMEOUT = "publish_timeout"
ERROR_QUEUE_CONFLICT = "queue_conflict"
ERROR_SINK_UNAVAILABLE = "sink_unavailable"
ERROR_CONSTRAINT_VIOLATION = "constraint_violation"
ERROR_INGEST_FAILED = "ingest_failed"
ERROR_METHOD_NOT_ALLOWED = "method_not_allowed"
ERROR_NOT_FOUND = "not_found"
ERROR_INTERNAL = "internal_error"


# =============================================================================
# Exceptions
# =============================================================================


class PipelineError(Exception):
    """Base exception for ingestion pipeline failures."""

    error_code: str = ERROR_INTERNAL
    status_code: int = 500

    def __init__(self, message: str, *, error_code: str | None = None):
        super().__init__(message)
        self.message = message
        if error_code is not None:
            self.error_code = error_code


class TransportError(PipelineError):
    """The inbound request body could not be read."""

    error_code = ERROR_BODY_READ
    status_code = 500


BodyReadError = TransportError


class EmptyBodyError(PipelineError):
    """The inbound request carried no bytes."""

    error_code = ERROR_EMPTY_BODY
    status_code = 400

    def __init__(self, message: str = "Request body is empty"):
        super().__init__(message)


class BrokerUnavailable(PipelineError):
    """The queue could not be reached; delivery is not guaranteed."""

    error_code = ERROR_BROKER_UNAVAILABLE
    status_code = 503


class PublishTimeout(BrokerUnavailable):
    """The broker did not confirm a publish within the timeout."""

    error_code = ERROR_PUBLISH_TIMEOUT

    def __init__(self, timeout: float, queue: str | None = None):
        self.timeout = timeout
        self.queue = queue
        super().__init__(f"Publish to {queue or 'queue'} not confirmed within {timeout:.1f}s")


class QueueConflict(PipelineError):
    """A queue already exists with settings that differ from the requested ones."""

    error_code = ERROR_QUEUE_CONFLICT
    status_code = 500

    def __init__(self, queue: str, *, expected_durable: bool, actual_durable: bool):
        self.queue = queue
        self.expected_durable = expected_durable
        self.actual_durable = actual_durable
        super().__init__(
            f"Queue '{queue}' exists with durable={actual_durable}, "
            f"requested durable={expected_durable}"
        )


class SinkUnavailable(PipelineError):
    """The sink could not be reached; the message must not be acknowledged."""

    error_code = ERROR_SINK_UNAVAILABLE
    status_code = 503


class ConstraintViolation(PipelineError):
    """The sink rejected the payload itself; retrying cannot help."""

    error_code = ERROR_CONSTRAINT_VIOLATION
    status_code = 422


class IngestFailed(PipelineError):
    """Ingress could not hand the record to the queue; the caller should retry."""

    error_code = ERROR_INGEST_FAILED
    status_code = 500

    def __init__(self, message: str = "Failed to process log"):
        super().__init__(message)


# =============================================================================
# Error Response Model
# =============================================================================


class ErrorResponse(BaseModel):
    """Standardized error response body."""

    error: str  # Machine-readable error code
    message: str  # Human-readable error message
    status_code: int
    request_id: str | None = None


def create_error_response(status_code: int, error: str, message: str) -> JSONResponse:
    """Create a standardized error response."""
    request_id = get_request_id()
    response = ErrorResponse(
        error=error,
        message=message,
        status_code=status_code,
        request_id=request_id or None,
    )
    return JSONResponse(status_code=status_code, content=response.model_dump(exclude_none=True))


# =============================================================================
# Exception Handlers
# =============================================================================


async def pipeline_exception_handler(request: Request, exc: PipelineError) -> JSONResponse:
    """Render a PipelineError using its own status and code."""
    log_level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
    logger.log(
        log_level,
        f"{type(exc).__name__} on {request.method} {request.url.path}: {exc.message}",
        extra={
            "request_id": get_request_id(),
            "path": request.url.path,
            "status_code": exc.status_code,
            "error_type": type(exc).__name__,
        },
    )
    return create_error_response(exc.status_code, exc.error_code, exc.message)


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Map framework HTTP errors (404, 405, ...) to the standard body."""
    error_map = {
        404: ERROR_NOT_FOUND,
        405: ERROR_METHOD_NOT_ALLOWED,
    }
    response = create_error_response(
        exc.status_code,
        error_map.get(exc.status_code, ERROR_INTERNAL),
        str(exc.detail),
    )
    if exc.headers:
        response.headers.update(exc.headers)
    return response


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all: log the traceback, never expose internals to the caller."""
    logger.error(
        f"Unhandled exception: {type(exc).__name__}: {exc}",
        extra={
            "request_id": get_request_id(),
            "path": request.url.path,
            "method": request.method,
            "error_type": type(exc).__name__,
        },
        exc_info=True,
    )
    return create_error_response(
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        ERROR_INTERNAL,
        "An unexpected error occurred. Please try again later.",
    )


def setup_error_handlers(app: FastAPI) -> None:
    """Register all error handlers with the FastAPI app."""
    app.add_exception_handler(PipelineError, pipeline_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)

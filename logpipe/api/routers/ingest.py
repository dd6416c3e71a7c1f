"""
Logpipe - Ingest Router

POST /log

The request body is forwarded to the queue byte-for-byte. The caller gets
202 only after the broker confirmed the publish; any failure to hand the
record over is reported as 500 so the caller can retry. Nothing is buffered
or retried server-side.
"""

import logging

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import PlainTextResponse
from starlette.requests import ClientDisconnect

from logpipe.broker import LogRecord, QueueClient, QueueHandle
from logpipe.core.errors import BrokerUnavailable, EmptyBodyError, IngestFailed, TransportError
from logpipe.core.logging import Timer

from ..deps import get_queue_client, get_queue_handle

logger = logging.getLogger(__name__)

router = APIRouter(tags=["ingest"])

ACCEPTED_MESSAGE = "Log accepted"


async def read_body(request: Request) -> bytes:
    """
    Read the full request body.

    Raises:
        TransportError: If the stream fails before the body is complete.
    """
    try:
        return await request.body()
    except (ClientDisconnect, RuntimeError, OSError) as e:
        raise TransportError(f"Failed to read request body: {type(e).__name__}") from e


@router.post(
    "/log",
    status_code=status.HTTP_202_ACCEPTED,
    response_class=PlainTextResponse,
    summary="Submit one log record",
)
async def ingest_log(
    request: Request,
    queue: QueueClient = Depends(get_queue_client),
    handle: QueueHandle = Depends(get_queue_handle),
) -> PlainTextResponse:
    body = await read_body(request)
    if not body:
        raise EmptyBodyError()

    record = LogRecord(body=body)
    with Timer() as timer:
        try:
            msg_id = await queue.publish(handle, record)
        except BrokerUnavailable as e:
            logger.error(
                "Publish to %s failed: %s",
                handle.name,
                e,
                extra={"queue": handle.name, "error_type": type(e).__name__},
            )
            raise IngestFailed() from e

    logger.info(
        "Accepted log record msg_id=%s (%d bytes)",
        msg_id,
        len(record),
        extra={"msg_id": msg_id, "queue": handle.name, "duration_ms": round(timer.elapsed_ms, 2)},
    )
    return PlainTextResponse(ACCEPTED_MESSAGE, status_code=status.HTTP_202_ACCEPTED)

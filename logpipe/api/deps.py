"""
Logpipe - API Dependencies

Request-scoped access to the objects the lifespan placed on app.state.
"""

from fastapi import Request

from logpipe.broker import QueueClient, QueueHandle
from logpipe.core.errors import IngestFailed
from logpipe.core.health import HealthProbe


def get_queue_client(request: Request) -> QueueClient:
    queue_client = getattr(request.app.state, "queue_client", None)
    if queue_client is None:
        raise IngestFailed("Queue client is not initialized")
    return queue_client


def get_queue_handle(request: Request) -> QueueHandle:
    handle = getattr(request.app.state, "queue_handle", None)
    if handle is None:
        raise IngestFailed("Queue is not declared")
    return handle


def get_health_probe(request: Request) -> HealthProbe | None:
    return getattr(request.app.state, "health_probe", None)

"""
Logpipe - Broker

Durable queue access on top of pgmq.
"""

from .client import QueueClient
from .models import (
    AckMode,
    InvalidEnvelopeError,
    LogEnvelope,
    LogRecord,
    QueueHandle,
    QueueMessage,
)

__all__ = [
    "QueueClient",
    "AckMode",
    "InvalidEnvelopeError",
    "LogEnvelope",
    "LogRecord",
    "QueueHandle",
    "QueueMessage",
]

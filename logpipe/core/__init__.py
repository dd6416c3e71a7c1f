"""
Logpipe - Core Module

Error taxonomy, logging, connection pools and health probing shared by the
ingress API and the persistence worker.
"""

from .errors import (
    BodyReadError,
    BrokerUnavailable,
    ConstraintViolation,
    EmptyBodyError,
    IngestFailed,
    PipelineError,
    PublishTimeout,
    QueueConflict,
    SinkUnavailable,
    TransportError,
)

__all__ = [
    "PipelineError",
    "TransportError",
    "BodyReadError",
    "EmptyBodyError",
    "BrokerUnavailable",
    "PublishTimeout",
    "QueueConflict",
    "SinkUnavailable",
    "ConstraintViolation",
    "IngestFailed",
]

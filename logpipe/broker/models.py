"""
Logpipe - Queue Data Model

LogRecord      the opaque bytes accepted at ingress (never mutated)
LogEnvelope    the JSON wire form of a LogRecord on a pgmq queue; the body is
               base64 so any byte sequence survives the jsonb round-trip
QueueMessage   one delivery from pgmq: envelope + delivery tag (msg_id) +
               delivery count (read_ct)
QueueHandle    a declared queue and its dead-letter companion
"""

from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Sequence

from pydantic import BaseModel, Field, ValidationError, field_validator

CONTENT_TYPE_JSON = "application/json"
DEAD_LETTER_SUFFIX = "_dlq"


class AckMode(str, Enum):
    """How deliveries are acknowledged."""

    MANUAL = "manual"  # consumer must ack / nack every message
    AUTO = "auto"  # removed from the queue on delivery (lost if the consumer crashes)


class InvalidEnvelopeError(Exception):
    """Raised when a queue message does not decode to a LogEnvelope."""

    def __init__(self, message: str, raw_payload: Any = None):
        super().__init__(message)
        self.raw_payload = raw_payload


@dataclass(frozen=True)
class LogRecord:
    """An accepted log submission. The body is stored verbatim."""

    body: bytes
    content_type: str = CONTENT_TYPE_JSON
    received_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __len__(self) -> int:
        return len(self.body)


class LogEnvelope(BaseModel):
    """Wire form of a LogRecord inside a pgmq message."""

    body_b64: str = Field(..., description="Base64 of the exact request body")
    content_type: str = Field(default=CONTENT_TYPE_JSON)
    received_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = {"extra": "forbid", "frozen": True}

    @field_validator("body_b64")
    @classmethod
    def _must_be_base64(cls, v: str) -> str:
        try:
            base64.b64decode(v, validate=True)
        except (binascii.Error, ValueError) as e:
            raise ValueError(f"body_b64 is not valid base64: {e}") from e
        return v

    @classmethod
    def from_record(cls, record: LogRecord) -> "LogEnvelope":
        return cls(
            body_b64=base64.b64encode(record.body).decode("ascii"),
            content_type=record.content_type,
            received_at=record.received_at,
        )

    @classmethod
    def parse(cls, raw: Any) -> "LogEnvelope":
        """
        Validate a raw pgmq message.

        Raises:
            InvalidEnvelopeError: If the message is not a valid envelope.
        """
        if not isinstance(raw, dict):
            raise InvalidEnvelopeError(
                f"Expected a JSON object, got {type(raw).__name__}", raw_payload=raw
            )
        try:
            return cls.model_validate(raw)
        except ValidationError as e:
            raise InvalidEnvelopeError(str(e), raw_payload=raw) from e

    def to_record(self) -> LogRecord:
        return LogRecord(
            body=base64.b64decode(self.body_b64),
            content_type=self.content_type,
            received_at=self.received_at,
        )


@dataclass(frozen=True)
class QueueHandle:
    """A declared queue."""

    name: str
    durable: bool = True

    @property
    def dead_letter_name(self) -> str:
        return f"{self.name}{DEAD_LETTER_SUFFIX}"


@dataclass
class QueueMessage:
    """One delivery read from pgmq."""

    msg_id: int
    read_ct: int
    enqueued_at: datetime
    vt: datetime | None  # visibility timeout expiry
    message: Any

    @property
    def delivery_tag(self) -> int:
        """Broker-assigned id used to acknowledge this delivery."""
        return self.msg_id

    @property
    def attempt(self) -> int:
        """1 on first delivery, incremented by every redelivery."""
        return max(self.read_ct, 1)

    @property
    def redelivered(self) -> bool:
        """True if an earlier delivery was not acknowledged."""
        return self.read_ct > 1

    def envelope(self) -> LogEnvelope:
        return LogEnvelope.parse(self.message)

    def record(self) -> LogRecord:
        """Decode the LogRecord carried by this message."""
        return self.envelope().to_record()

    @classmethod
    def from_row(cls, row: Sequence[Any]) -> "QueueMessage":
        """Build from a (msg_id, read_ct, enqueued_at, vt, message) row."""
        msg_id, read_ct, enqueued_at, vt, message = row
        return cls(
            msg_id=int(msg_id),
            read_ct=int(read_ct or 0),
            enqueued_at=enqueued_at,
            vt=vt,
            message=message,
        )

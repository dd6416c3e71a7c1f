"""
Logpipe - Queue Client (pgmq)

Durable, acknowledging FIFO on top of the pgmq Postgres extension.

    declare_queue  pgmq.create / pgmq.create_unlogged (idempotent, checks pgmq.meta)
    publish        pgmq.send inside a committed transaction; the commit is the confirm
    subscribe      pgmq.read_with_poll (manual ack) or pgmq.pop (auto ack)
    ack            pgmq.delete
    nack           pgmq.set_vt: the message becomes visible again after `delay`
    dead_letter    pgmq.send to <queue>_dlq + pgmq.delete, in one transaction

Delivery tags are pgmq msg_ids: a bigserial per queue, never reused.
A message read in manual mode stays invisible for `visibility_timeout`
seconds; if it is neither acked nor nacked in that window (consumer crash),
pgmq redelivers it with read_ct incremented.

Every broker failure surfaces as BrokerUnavailable (or PublishTimeout), so
callers can treat both as "delivery not guaranteed".

Usage:
    queue = QueueClient(Database(url=broker_url, name="broker"))
    await queue.start()
    handle = await queue.declare_queue("logs")
    msg_id = await queue.publish(handle, b'{"level":"info"}')
"""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Optional

import psycopg
from psycopg_pool import PoolTimeout

from logpipe.core.backoff import BackoffState
from logpipe.core.db import Database, DatabaseNotStartedError
from logpipe.core.errors import BrokerUnavailable, PublishTimeout, QueueConflict

from .models import AckMode, LogEnvelope, LogRecord, QueueHandle, QueueMessage

logger = logging.getLogger(__name__)

DEFAULT_PUBLISH_TIMEOUT = 5.0
DEFAULT_BATCH_SIZE = 10
DEFAULT_VISIBILITY_TIMEOUT = 30  # seconds
DEFAULT_POLL_SECONDS = 5  # bound on one long-poll read
DEFAULT_POLL_INTERVAL_MS = 100
AUTO_ACK_IDLE_SLEEP = 1.0  # pgmq.pop does not long-poll

_MESSAGE_COLUMNS = "msg_id, read_ct, enqueued_at, vt, message"


async def _sleep_unless_set(event: asyncio.Event, seconds: float) -> None:
    """Sleep for `seconds`, returning early if `event` gets set."""
    try:
        await asyncio.wait_for(event.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        pass


class QueueClient:
    """
    pgmq-backed queue client.

    Owns nothing global: the Database (and its pool) is injected, so each
    concurrent publish / ack runs on its own pooled connection.
    """

    def __init__(self, db: Database, *, publish_timeout: float = DEFAULT_PUBLISH_TIMEOUT):
        self._db = db
        self.publish_timeout = publish_timeout

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self, *, max_retries: int | None = None) -> None:
        """Open the broker pool. Raises BrokerUnavailable if it cannot be reached."""
        try:
            await self._db.start(max_retries=max_retries)
        except Exception as e:
            raise BrokerUnavailable(f"Cannot connect to broker: {e}") from e

    async def close(self) -> None:
        await self._db.stop()

    async def ping(self) -> bool:
        return await self._db.ping()

    @asynccontextmanager
    async def _broker_errors(self, operation: str) -> AsyncIterator[None]:
        """Translate driver / pool failures into BrokerUnavailable."""
        try:
            yield
        except (psycopg.Error, PoolTimeout, DatabaseNotStartedError) as e:
            raise BrokerUnavailable(f"Broker {operation} failed: {type(e).__name__}: {e}") from e

    # -------------------------------------------------------------------------
    # Declaration
    # -------------------------------------------------------------------------

    async def _declare_one(self, conn: Any, name: str, durable: bool) -> None:
        cur = await conn.execute(
            "SELECT is_unlogged FROM pgmq.meta WHERE queue_name = %s", (name,)
        )
        row = await cur.fetchone()
        if row is not None:
            existing_durable = not bool(row[0])
            if existing_durable != durable:
                raise QueueConflict(name, expected_durable=durable, actual_durable=existing_durable)
            logger.debug("Queue %s already exists (durable=%s)", name, durable)
            return

        create_fn = "pgmq.create" if durable else "pgmq.create_unlogged"
        await conn.execute(f"SELECT {create_fn}(%s)", (name,))
        logger.info("Created queue %s (durable=%s)", name, durable)

    async def declare_queue(self, name: str, *, durable: bool = True) -> QueueHandle:
        """
        Declare `name` and its dead-letter queue. Safe to call repeatedly.

        Raises:
            QueueConflict: If either queue exists with different durability.
            BrokerUnavailable: If the broker cannot be reached.
        """
        handle = QueueHandle(name=name, durable=durable)
        async with self._broker_errors("declare"):
            async with self._db.connection() as conn:
                await self._declare_one(conn, handle.name, durable)
                await self._declare_one(conn, handle.dead_letter_name, durable)
        return handle

    # -------------------------------------------------------------------------
    # Publish
    # -------------------------------------------------------------------------

    async def _send(self, queue_name: str, message: str) -> int:
        async with self._db.connection() as conn:
            cur = await conn.execute("SELECT * FROM pgmq.send(%s, %s::jsonb)", (queue_name, message))
            row = await cur.fetchone()
        # Leaving the connection block committed the transaction
        if row is None:
            raise BrokerUnavailable(f"pgmq.send on {queue_name} returned no msg_id")
        return int(row[0])

    async def publish(
        self,
        handle: QueueHandle,
        payload: bytes | LogRecord,
        *,
        timeout: float | None = None,
    ) -> int:
        """
        Publish one record and wait for the broker to confirm it.

        Returns:
            The msg_id assigned by the broker.

        Raises:
            PublishTimeout: If the confirm does not arrive within `timeout`.
            BrokerUnavailable: If the broker cannot be reached.
        """
        record = payload if isinstance(payload, LogRecord) else LogRecord(body=payload)
        message = LogEnvelope.from_record(record).model_dump_json()
        effective_timeout = timeout if timeout is not None else self.publish_timeout

        try:
            async with self._broker_errors("publish"):
                msg_id = await asyncio.wait_for(
                    self._send(handle.name, message), timeout=effective_timeout
                )
        except asyncio.TimeoutError as e:
            raise PublishTimeout(effective_timeout, handle.name) from e

        logger.debug("Published msg_id=%s to %s (%d bytes)", msg_id, handle.name, len(record))
        return msg_id

    # -------------------------------------------------------------------------
    # Consume
    # -------------------------------------------------------------------------

    async def read_batch(
        self,
        handle: QueueHandle,
        ack_mode: AckMode = AckMode.MANUAL,
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        visibility_timeout: int = DEFAULT_VISIBILITY_TIMEOUT,
        poll_seconds: int = DEFAULT_POLL_SECONDS,
        poll_interval_ms: int = DEFAULT_POLL_INTERVAL_MS,
    ) -> list[QueueMessage]:
        """
        One bounded read.

        MANUAL: up to batch_size messages, hidden for visibility_timeout seconds.
        AUTO: at most one message, deleted from the queue as it is returned.
        """
        async with self._broker_errors("read"):
            async with self._db.connection() as conn:
                if ack_mode is AckMode.AUTO:
                    cur = await conn.execute(
                        f"SELECT {_MESSAGE_COLUMNS} FROM pgmq.pop(%s)", (handle.name,)
                    )
                else:
                    cur = await conn.execute(
                        f"SELECT {_MESSAGE_COLUMNS} FROM pgmq.read_with_poll(%s, %s, %s, %s, %s)",
                        (
                            handle.name,
                            visibility_timeout,
                            batch_size,
                            poll_seconds,
                            poll_interval_ms,
                        ),
                    )
                rows = await cur.fetchall()
        return [QueueMessage.from_row(row) for row in rows]

    async def subscribe(
        self,
        handle: QueueHandle,
        ack_mode: AckMode = AckMode.MANUAL,
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        visibility_timeout: int = DEFAULT_VISIBILITY_TIMEOUT,
        poll_seconds: int = DEFAULT_POLL_SECONDS,
        stop_event: Optional[asyncio.Event] = None,
        backoff: Optional[BackoffState] = None,
    ) -> AsyncIterator[QueueMessage]:
        """
        Yield deliveries until `stop_event` is set.

        Broker outages do not end the sequence: reads are retried with
        exponential backoff and the subscription resumes once the broker is back.
        In MANUAL mode, messages fetched but not yet yielded when the stop
        event fires are released back to the queue.
        """
        stop_event = stop_event or asyncio.Event()
        backoff = backoff or BackoffState()

        if ack_mode is AckMode.AUTO:
            logger.warning(
                "Subscribing to %s with auto ack: messages in flight are lost if the consumer dies",
                handle.name,
            )

        while not stop_event.is_set():
            try:
                messages = await self.read_batch(
                    handle,
                    ack_mode,
                    batch_size=batch_size,
                    visibility_timeout=visibility_timeout,
                    poll_seconds=poll_seconds,
                )
            except BrokerUnavailable as e:
                delay = backoff.record_failure()
                if backoff.is_in_crash_loop():
                    logger.critical(
                        "Broker unreachable for %s: %d consecutive read failures "
                        "(%d total), retrying in %.1fs: %s",
                        handle.name,
                        backoff.consecutive_failures,
                        backoff.total_failures,
                        delay,
                        e,
                    )
                else:
                    logger.warning(
                        "Read from %s failed (%d in a row), retrying in %.1fs: %s",
                        handle.name,
                        backoff.consecutive_failures,
                        delay,
                        e,
                    )
                await _sleep_unless_set(stop_event, delay)
                continue

            if backoff.consecutive_failures:
                logger.info("Reconnected to %s after %d failures", handle.name, backoff.consecutive_failures)
            backoff.record_success()

            if not messages:
                if ack_mode is AckMode.AUTO:
                    await _sleep_unless_set(stop_event, AUTO_ACK_IDLE_SLEEP)
                continue

            for index, message in enumerate(messages):
                if stop_event.is_set() and ack_mode is AckMode.MANUAL:
                    await self._release(handle, messages[index:])
                    return
                yield message

    async def _release(self, handle: QueueHandle, messages: list[QueueMessage]) -> None:
        for message in messages:
            try:
                await self.nack(handle, message)
            except BrokerUnavailable as e:
                # Visibility timeout will expire and the broker redelivers it
                logger.warning("Could not release msg_id=%s: %s", message.msg_id, e)

    # -------------------------------------------------------------------------
    # Acknowledgment
    # -------------------------------------------------------------------------

    async def ack(self, handle: QueueHandle, message: QueueMessage) -> bool:
        """Remove a processed message. False if it was already gone."""
        async with self._broker_errors("ack"):
            async with self._db.connection() as conn:
                cur = await conn.execute(
                    "SELECT pgmq.delete(%s, %s::bigint)", (handle.name, message.msg_id)
                )
                row = await cur.fetchone()
        return bool(row and row[0])

    async def nack(self, handle: QueueHandle, message: QueueMessage, *, delay: int = 0) -> bool:
        """Requeue: make the message visible again after `delay` seconds."""
        async with self._broker_errors("nack"):
            async with self._db.connection() as conn:
                cur = await conn.execute(
                    "SELECT msg_id FROM pgmq.set_vt(%s, %s::bigint, %s)",
                    (handle.name, message.msg_id, max(int(delay), 0)),
                )
                row = await cur.fetchone()
        return row is not None

    async def dead_letter(
        self,
        handle: QueueHandle,
        message: QueueMessage,
        reason: str,
        error: BaseException | None = None,
    ) -> Optional[int]:
        """
        Move a message to the dead-letter queue.

        The DLQ send and the delete from the source queue commit together,
        so the message is never in both queues and never in neither. If the
        delete finds nothing (the visibility timeout lapsed and another
        consumer settled the message), the DLQ send is rolled back.

        Returns:
            The msg_id of the dead-letter copy, or None if the source message
            was no longer there.
        """
        payload = {
            "original_queue": handle.name,
            "original_msg_id": message.msg_id,
            "message": message.message,
            "reason": reason,
            "error_type": type(error).__name__ if error else None,
            "error_message": str(error) if error else None,
            "attempts": message.read_ct,
            "enqueued_at": message.enqueued_at.isoformat() if message.enqueued_at else None,
            "dead_lettered_at": datetime.now(timezone.utc).isoformat(),
        }

        dlq_id: Optional[int] = None
        async with self._broker_errors("dead-letter"):
            async with self._db.connection() as conn:
                async with conn.transaction():
                    cur = await conn.execute(
                        "SELECT * FROM pgmq.send(%s, %s::jsonb)",
                        (handle.dead_letter_name, json.dumps(payload, default=str)),
                    )
                    row = await cur.fetchone()
                    cur = await conn.execute(
                        "SELECT pgmq.delete(%s, %s::bigint)", (handle.name, message.msg_id)
                    )
                    deleted = await cur.fetchone()
                    if not (deleted and deleted[0]):
                        raise psycopg.Rollback()
                    dlq_id = int(row[0]) if row else -1

        if dlq_id is None:
            logger.info(
                "msg_id=%s no longer in %s; dead-letter copy rolled back",
                message.msg_id,
                handle.name,
            )
            return None
        logger.warning(
            "Dead-lettered msg_id=%s from %s as dlq_id=%s: %s",
            message.msg_id,
            handle.name,
            dlq_id,
            reason,
        )
        return dlq_id

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------

    async def queue_depth(self, handle: QueueHandle, *, dead_letter: bool = False) -> int:
        """Number of messages currently in the queue (or its DLQ)."""
        name = handle.dead_letter_name if dead_letter else handle.name
        async with self._broker_errors("metrics"):
            async with self._db.connection() as conn:
                cur = await conn.execute("SELECT queue_length FROM pgmq.metrics(%s)", (name,))
                row = await cur.fetchone()
        return int(row[0]) if row else 0

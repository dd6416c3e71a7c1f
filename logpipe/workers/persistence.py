"""
Logpipe - Persistence Worker

Consumes the log queue with manual acknowledgment and writes every record
to the relational sink. A message is acknowledged only after the sink
committed it, so a crash anywhere before the ack leads to redelivery,
never to loss.

Per delivery:

    Received -> Inserting -> Acknowledged
                          -> Requeued       sink unavailable, attempts left
                          -> DeadLettered   poison message or attempts exhausted

Poison messages (undecodable envelope, payload the sink rejects) go to the
dead-letter queue on first sight. Transient failures are requeued with
exponential backoff until WORKER_MAX_ATTEMPTS deliveries have been made,
then dead-lettered. Anything unexpected is treated as transient.

If the broker call that settles a message (ack / nack / dead-letter) fails,
the message is left alone: its visibility timeout lapses and pgmq
redelivers it. The record may then be inserted twice; duplicates are
accepted in exchange for never dropping a record.

Concurrency: one subscription, up to `prefetch` messages in flight as
asyncio tasks. Shutdown (SIGTERM / SIGINT) stops pulling, lets in-flight
messages finish for up to `shutdown_timeout` seconds, then cancels the rest
and releases them back to the queue before the pools close.

While consuming, the sink is pinged every `sink_check_interval` seconds and
changes in its reachability are logged (`sink_reachable` in get_stats()).

Usage:
    logpipe-worker            # run until SIGTERM
    logpipe-worker --once     # drain visible messages and exit
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import signal
import socket
import sys
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from uuid import UUID

from logpipe import __version__
from logpipe.broker import AckMode, InvalidEnvelopeError, QueueClient, QueueHandle, QueueMessage
from logpipe.config import (
    EXIT_CODE_STARTUP,
    EXIT_CODE_UNAVAILABLE,
    Settings,
    configure_logging,
    load_settings,
    validate_required_env,
)
from logpipe.core.backoff import retry_delay
from logpipe.core.db import Database
from logpipe.core.errors import BrokerUnavailable, ConstraintViolation, PipelineError
from logpipe.core.logging import LogContext, Timer
from logpipe.sink import SinkClient

logger = logging.getLogger(__name__)

DEFAULT_PREFETCH = 10
DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_SHUTDOWN_TIMEOUT = 30.0
DEFAULT_SINK_CHECK_INTERVAL = 30.0
ONCE_POLL_SECONDS = 1

REASON_INVALID_ENVELOPE = "invalid envelope"
REASON_CONSTRAINT_VIOLATION = "constraint violation"
REASON_RETRIES_EXHAUSTED = "retry budget exhausted"


class MessageOutcome(str, Enum):
    """Terminal state of one delivery as seen by the worker."""

    ACKNOWLEDGED = "acknowledged"
    REQUEUED = "requeued"
    DEAD_LETTERED = "dead_lettered"
    # Settling failed or the message was already settled elsewhere; left to the broker
    UNRESOLVED = "unresolved"


class PersistenceWorker:
    """
    Queue -> sink consumer.

    The queue and sink clients are injected and must already be started.
    """

    def __init__(
        self,
        queue: QueueClient,
        sink: SinkClient,
        handle: QueueHandle,
        *,
        prefetch: int = DEFAULT_PREFETCH,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        visibility_timeout: int = 30,
        poll_seconds: int = 5,
        insert_timeout: float = 10.0,
        retry_base_delay: float = 1.0,
        retry_max_delay: float = 60.0,
        shutdown_timeout: float = DEFAULT_SHUTDOWN_TIMEOUT,
        sink_check_interval: float = DEFAULT_SINK_CHECK_INTERVAL,
    ) -> None:
        if prefetch < 1:
            raise ValueError("prefetch must be >= 1")
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

        self.queue = queue
        self.sink = sink
        self.handle = handle
        self.prefetch = prefetch
        self.max_attempts = max_attempts
        self.visibility_timeout = visibility_timeout
        self.poll_seconds = poll_seconds
        self.insert_timeout = insert_timeout
        self.retry_base_delay = retry_base_delay
        self.retry_max_delay = retry_max_delay
        self.shutdown_timeout = shutdown_timeout
        self.sink_check_interval = sink_check_interval

        self._stop_event = asyncio.Event()
        self._semaphore = asyncio.Semaphore(prefetch)
        self._in_flight: dict[asyncio.Task[MessageOutcome], QueueMessage] = {}
        self._shutdown_reason: Optional[str] = None
        self._start_time: Optional[float] = None
        self._hostname = socket.gethostname()
        self._pid = os.getpid()
        self._sink_reachable: Optional[bool] = None

        self._processed = 0
        self._acknowledged = 0
        self._requeued = 0
        self._dead_lettered = 0
        self._ack_failures = 0
        self._released = 0

    @classmethod
    def from_settings(
        cls, queue: QueueClient, sink: SinkClient, handle: QueueHandle, settings: Settings
    ) -> "PersistenceWorker":
        return cls(
            queue,
            sink,
            handle,
            prefetch=settings.WORKER_PREFETCH,
            max_attempts=settings.WORKER_MAX_ATTEMPTS,
            visibility_timeout=settings.WORKER_VISIBILITY_TIMEOUT,
            poll_seconds=settings.WORKER_POLL_SECONDS,
            insert_timeout=settings.WORKER_INSERT_TIMEOUT_SECONDS,
            retry_base_delay=settings.WORKER_RETRY_BASE_DELAY,
            retry_max_delay=settings.WORKER_RETRY_MAX_DELAY,
            shutdown_timeout=settings.WORKER_SHUTDOWN_TIMEOUT,
            sink_check_interval=settings.WORKER_SINK_CHECK_INTERVAL_SECONDS,
        )

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    @property
    def shutdown_requested(self) -> bool:
        return self._stop_event.is_set()

    # -------------------------------------------------------------------------
    # Per-message state machine
    # -------------------------------------------------------------------------

    async def handle_message(self, message: QueueMessage) -> MessageOutcome:
        """Insert one delivery into the sink and settle it with the broker."""
        try:
            record = message.record()
        except InvalidEnvelopeError as e:
            return await self._dead_letter(message, REASON_INVALID_ENVELOPE, e)

        try:
            with Timer() as timer:
                record_id = await self.sink.insert(record.body, timeout=self.insert_timeout)
        except ConstraintViolation as e:
            return await self._dead_letter(message, REASON_CONSTRAINT_VIOLATION, e)
        except Exception as e:
            # SinkUnavailable, timeouts and anything unexpected: never ack, never drop
            return await self._retry_or_dead_letter(message, e)

        return await self._ack(message, record_id, timer.elapsed_ms)

    async def _ack(self, message: QueueMessage, record_id: UUID, duration_ms: float) -> MessageOutcome:
        try:
            await self.queue.ack(self.handle, message)
        except BrokerUnavailable as e:
            self._ack_failures += 1
            logger.error(
                "Ack failed for msg_id=%s after insert (record_id=%s); awaiting redelivery: %s",
                message.msg_id,
                record_id,
                e,
                extra={"record_id": str(record_id), "error_type": type(e).__name__},
            )
            return MessageOutcome.UNRESOLVED

        self._acknowledged += 1
        logger.info(
            "Persisted msg_id=%s as record_id=%s",
            message.msg_id,
            record_id,
            extra={
                "record_id": str(record_id),
                "outcome": MessageOutcome.ACKNOWLEDGED.value,
                "duration_ms": duration_ms,
            },
        )
        return MessageOutcome.ACKNOWLEDGED

    async def _retry_or_dead_letter(self, message: QueueMessage, error: Exception) -> MessageOutcome:
        if message.attempt >= self.max_attempts:
            return await self._dead_letter(message, REASON_RETRIES_EXHAUSTED, error)

        delay = int(
            retry_delay(message.attempt, base=self.retry_base_delay, maximum=self.retry_max_delay)
        )
        try:
            await self.queue.nack(self.handle, message, delay=delay)
        except BrokerUnavailable as e:
            self._ack_failures += 1
            logger.error(
                "Nack failed for msg_id=%s; awaiting redelivery: %s",
                message.msg_id,
                e,
                extra={"error_type": type(e).__name__},
            )
            return MessageOutcome.UNRESOLVED

        self._requeued += 1
        log_level = logging.WARNING if isinstance(error, PipelineError) else logging.ERROR
        logger.log(
            log_level,
            "Insert failed for msg_id=%s (attempt %d/%d), requeued with %ds delay: %s: %s",
            message.msg_id,
            message.attempt,
            self.max_attempts,
            delay,
            type(error).__name__,
            error,
            extra={"outcome": MessageOutcome.REQUEUED.value, "error_type": type(error).__name__},
        )
        return MessageOutcome.REQUEUED

    async def _dead_letter(
        self, message: QueueMessage, reason: str, error: Exception
    ) -> MessageOutcome:
        try:
            dlq_id = await self.queue.dead_letter(self.handle, message, reason, error)
        except BrokerUnavailable as e:
            self._ack_failures += 1
            logger.error(
                "Dead-letter failed for msg_id=%s (%s); awaiting redelivery: %s",
                message.msg_id,
                reason,
                e,
                extra={"error_type": type(e).__name__},
            )
            return MessageOutcome.UNRESOLVED

        if dlq_id is None:
            logger.info(
                "msg_id=%s was already settled by another delivery; not dead-lettered (%s)",
                message.msg_id,
                reason,
                extra={"outcome": MessageOutcome.UNRESOLVED.value},
            )
            return MessageOutcome.UNRESOLVED

        self._dead_lettered += 1
        logger.warning(
            "Dead-lettered msg_id=%s after %d attempt(s): %s (%s: %s)",
            message.msg_id,
            message.attempt,
            reason,
            type(error).__name__,
            error,
            extra={"outcome": MessageOutcome.DEAD_LETTERED.value, "error_type": type(error).__name__},
        )
        return MessageOutcome.DEAD_LETTERED

    async def _process(self, message: QueueMessage) -> MessageOutcome:
        with LogContext(msg_id=message.msg_id, queue=self.handle.name, attempt=message.attempt):
            if message.redelivered:
                logger.debug("Redelivered msg_id=%s (read_ct=%d)", message.msg_id, message.read_ct)
            outcome = await self.handle_message(message)
        self._processed += 1
        return outcome

    # -------------------------------------------------------------------------
    # Consumption
    # -------------------------------------------------------------------------

    def _task_done(self, task: asyncio.Task[MessageOutcome]) -> None:
        message = self._in_flight.pop(task, None)
        self._semaphore.release()
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(
                "Processing task for msg_id=%s crashed: %s: %s",
                message.msg_id if message else None,
                type(error).__name__,
                error,
            )

    def _spawn(self, message: QueueMessage) -> asyncio.Task[MessageOutcome]:
        task = asyncio.create_task(self._process(message), name=f"logpipe-msg-{message.msg_id}")
        self._in_flight[task] = message
        task.add_done_callback(self._task_done)
        return task

    async def _release(self, message: QueueMessage) -> None:
        """Hand a message we will not finish back to the queue immediately."""
        try:
            await self.queue.nack(self.handle, message, delay=0)
            self._released += 1
        except BrokerUnavailable as e:
            logger.warning("Could not release msg_id=%s: %s", message.msg_id, e)

    async def _acquire_slot(self) -> bool:
        """Wait for a free prefetch slot. False if shutdown came first."""
        if self._stop_event.is_set():
            return False
        acquire = asyncio.ensure_future(self._semaphore.acquire())
        stop = asyncio.ensure_future(self._stop_event.wait())
        done, pending = await asyncio.wait({acquire, stop}, return_when=asyncio.FIRST_COMPLETED)
        for future in pending:
            future.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        acquired = acquire.done() and not acquire.cancelled()
        if acquired and not self._stop_event.is_set():
            return True
        if acquired:
            self._semaphore.release()
        return False

    async def consume(self) -> None:
        """Pull deliveries until shutdown is requested."""
        async for message in self.queue.subscribe(
            self.handle,
            AckMode.MANUAL,
            batch_size=self.prefetch,
            visibility_timeout=self.visibility_timeout,
            poll_seconds=self.poll_seconds,
            stop_event=self._stop_event,
        ):
            if not await self._acquire_slot():
                await self._release(message)
                continue
            self._spawn(message)

    async def run_once(self) -> int:
        """
        Process every currently visible message, then return.

        Returns:
            Number of deliveries handled.
        """
        handled = 0
        while not self._stop_event.is_set():
            messages = await self.queue.read_batch(
                self.handle,
                AckMode.MANUAL,
                batch_size=self.prefetch,
                visibility_timeout=self.visibility_timeout,
                poll_seconds=ONCE_POLL_SECONDS,
            )
            if not messages:
                break
            for message in messages:
                await self._semaphore.acquire()
                self._spawn(message)
            await asyncio.gather(*list(self._in_flight), return_exceptions=True)
            handled += len(messages)
        return handled

    async def drain(self) -> None:
        """
        Wait for in-flight messages, then cancel and release stragglers.

        Safe to call when nothing is in flight.
        """
        if not self._in_flight:
            return

        tasks = list(self._in_flight)
        logger.info(
            "Draining %d in-flight message(s) (timeout=%.1fs)", len(tasks), self.shutdown_timeout
        )
        _, pending = await asyncio.wait(tasks, timeout=self.shutdown_timeout)
        if not pending:
            return

        stranded = [self._in_flight[task] for task in pending if task in self._in_flight]
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

        logger.warning("Releasing %d unfinished message(s) back to the queue", len(stranded))
        for message in stranded:
            await self._release(message)

    # -------------------------------------------------------------------------
    # Sink reachability
    # -------------------------------------------------------------------------

    async def check_sink(self) -> bool:
        """Ping the sink and log when its reachability changes."""
        try:
            reachable = await asyncio.wait_for(self.sink.ping(), timeout=self.insert_timeout)
        except asyncio.TimeoutError:
            reachable = False

        if reachable != self._sink_reachable:
            if reachable:
                logger.info("Sink reachable", extra={"sink_reachable": True})
            else:
                logger.warning(
                    "Sink unreachable; inserts will be requeued until it returns",
                    extra={"sink_reachable": False},
                )
        self._sink_reachable = reachable
        return reachable

    async def _watch_sink(self) -> None:
        while not self._stop_event.is_set():
            await self.check_sink()
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.sink_check_interval)
            except asyncio.TimeoutError:
                pass

    def request_shutdown(self, reason: str = "requested") -> None:
        if self._stop_event.is_set():
            return
        self._shutdown_reason = reason
        logger.info("Shutdown requested (%s); no new messages will be pulled", reason)
        self._stop_event.set()

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self.request_shutdown, sig.name)
            except (NotImplementedError, RuntimeError):
                # Windows event loops and non-main threads
                logger.debug("Signal handler for %s not installed", sig.name)

    def _emit_boot_report(self) -> None:
        logger.info(
            json.dumps(
                {
                    "event": "WORKER_BOOT",
                    "data": {
                        "worker_name": self.__class__.__name__,
                        "queue": self.handle.name,
                        "dead_letter_queue": self.handle.dead_letter_name,
                        "prefetch": self.prefetch,
                        "max_attempts": self.max_attempts,
                        "visibility_timeout": self.visibility_timeout,
                        "hostname": self._hostname,
                        "pid": self._pid,
                        "version": __version__,
                        "timestamp": datetime.now(timezone.utc).isoformat(),
                    },
                }
            )
        )

    def _emit_shutdown_report(self) -> None:
        uptime_seconds = 0.0
        if self._start_time:
            uptime_seconds = round(time.monotonic() - self._start_time, 2)
        logger.info(
            json.dumps(
                {
                    "event": "WORKER_SHUTDOWN",
                    "data": {
                        "worker_name": self.__class__.__name__,
                        "queue": self.handle.name,
                        "uptime_seconds": uptime_seconds,
                        "reason": self._shutdown_reason or "normal exit",
                        **self.get_stats(),
                        "timestamp": datetime.now(timezone.utc).isoformat(),
                    },
                }
            )
        )

    async def run(self, *, once: bool = False) -> int:
        """
        Main loop.

        Returns:
            Exit code (0 for clean shutdown).
        """
        self._install_signal_handlers()
        self._start_time = time.monotonic()
        self._emit_boot_report()
        watcher: Optional[asyncio.Task[None]] = None
        try:
            if once:
                handled = await self.run_once()
                logger.info("Processed %d message(s)", handled)
            else:
                watcher = asyncio.create_task(self._watch_sink(), name="logpipe-sink-watch")
                await self.consume()
        finally:
            if watcher is not None:
                watcher.cancel()
                await asyncio.gather(watcher, return_exceptions=True)
            await self.drain()
            self._emit_shutdown_report()
        return 0

    def get_stats(self) -> dict[str, Any]:
        return {
            "processed": self._processed,
            "acknowledged": self._acknowledged,
            "requeued": self._requeued,
            "dead_lettered": self._dead_lettered,
            "ack_failures": self._ack_failures,
            "released": self._released,
            "in_flight": self.in_flight,
            "sink_reachable": self._sink_reachable,
            "shutdown_requested": self.shutdown_requested,
        }

    def __repr__(self) -> str:
        return (
            f"<{self.__class__.__name__} queue={self.handle.name} "
            f"prefetch={self.prefetch} in_flight={self.in_flight}>"
        )


# =============================================================================
# Entry point
# =============================================================================


async def run_worker(settings: Settings, *, once: bool = False) -> int:
    """Connect to broker and sink, run the worker, close both pools."""
    queue = QueueClient(
        Database(
            settings.broker_url,
            name="broker",
            min_size=settings.DB_POOL_MIN_SIZE,
            max_size=settings.DB_POOL_MAX_SIZE,
        ),
        publish_timeout=settings.PUBLISH_TIMEOUT_SECONDS,
    )
    sink = SinkClient(
        Database(
            settings.sink_url,
            name="sink",
            min_size=settings.DB_POOL_MIN_SIZE,
            max_size=max(settings.DB_POOL_MAX_SIZE, settings.WORKER_PREFETCH),
        ),
        insert_timeout=settings.WORKER_INSERT_TIMEOUT_SECONDS,
    )

    try:
        await queue.start(max_retries=settings.DB_CONNECT_RETRIES)
        await sink.start(max_retries=settings.DB_CONNECT_RETRIES)
        handle = await queue.declare_queue(settings.queue_name)
        await sink.ensure_schema()
    except PipelineError as e:
        logger.critical("Worker startup failed: %s", e)
        await queue.close()
        await sink.close()
        return EXIT_CODE_STARTUP

    worker = PersistenceWorker.from_settings(queue, sink, handle, settings)
    try:
        return await worker.run(once=once)
    except PipelineError as e:
        logger.critical("Worker stopped: %s", e)
        return EXIT_CODE_UNAVAILABLE
    finally:
        await queue.close()
        await sink.close()


def main() -> None:
    """Entry point for the logpipe-worker console script."""
    parser = argparse.ArgumentParser(description="Persist queued log records into the sink")
    parser.add_argument("--once", action="store_true", help="Drain visible messages and exit")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")
    args = parser.parse_args()

    settings = load_settings()
    if args.verbose:
        settings = settings.model_copy(update={"LOG_LEVEL": "DEBUG"})
    configure_logging(settings, service_name="logpipe-worker")
    validate_required_env("worker", settings)

    sys.exit(asyncio.run(run_worker(settings, once=args.once)))


if __name__ == "__main__":
    main()

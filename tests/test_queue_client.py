"""
Tests for logpipe.broker.client.QueueClient.

The pgmq SQL layer is replaced by FakeDatabase; these tests pin down which
pgmq functions are called, with what arguments, and how failures surface.
"""

from __future__ import annotations

import asyncio
import base64
import json
import logging
from datetime import datetime, timezone

import psycopg
import pytest

from logpipe.broker import AckMode, LogEnvelope, QueueClient, QueueHandle
from logpipe.core.backoff import CRASH_LOOP_THRESHOLD, BackoffState
from logpipe.core.db import DatabaseConnectionError
from logpipe.core.errors import BrokerUnavailable, PublishTimeout, QueueConflict
from tests.helpers import FakeConnection, FakeDatabase, make_message


def make_client(responses=None, **kwargs) -> tuple[QueueClient, FakeConnection]:
    conn = FakeConnection(responses)
    return QueueClient(FakeDatabase(conn), **kwargs), conn


class TestDeclareQueue:
    @pytest.mark.asyncio
    async def test_creates_queue_and_dead_letter_queue(self):
        client, conn = make_client({"pgmq.meta": []})

        handle = await client.declare_queue("logs")

        assert handle == QueueHandle("logs", durable=True)
        created = [params[0] for _, params in conn.statements("pgmq.create(")]
        assert created == ["logs", "logs_dlq"]
        assert not conn.statements("pgmq.create_unlogged")

    @pytest.mark.asyncio
    async def test_non_durable_uses_unlogged_queue(self):
        client, conn = make_client({"pgmq.meta": []})

        await client.declare_queue("scratch", durable=False)

        assert len(conn.statements("pgmq.create_unlogged")) == 2

    @pytest.mark.asyncio
    async def test_existing_queue_is_reused(self):
        # is_unlogged = False -> durable, matching the request
        client, conn = make_client({"pgmq.meta": [(False,)]})

        await client.declare_queue("logs")
        await client.declare_queue("logs")

        assert not conn.statements("pgmq.create")

    @pytest.mark.asyncio
    async def test_durability_mismatch_raises_conflict(self):
        client, _ = make_client({"pgmq.meta": [(True,)]})

        with pytest.raises(QueueConflict) as exc_info:
            await client.declare_queue("logs", durable=True)

        assert exc_info.value.queue == "logs"
        assert exc_info.value.actual_durable is False

    @pytest.mark.asyncio
    async def test_connection_failure_is_broker_unavailable(self):
        client, conn = make_client()
        conn.error = psycopg.OperationalError("connection refused")

        with pytest.raises(BrokerUnavailable):
            await client.declare_queue("logs")


class TestPublish:
    @pytest.mark.asyncio
    async def test_sends_envelope_and_returns_msg_id(self, handle):
        client, conn = make_client({"pgmq.send": [(42,)]})
        body = b'{"level":"error","msg":"disk full"}'

        msg_id = await client.publish(handle, body)

        assert msg_id == 42
        (sql, params), = conn.statements("pgmq.send")
        assert params[0] == "logs_test"
        envelope = json.loads(params[1])
        assert base64.b64decode(envelope["body_b64"]) == body
        assert envelope["content_type"] == "application/json"

    @pytest.mark.asyncio
    async def test_timeout_raises_publish_timeout(self, handle):
        client, conn = make_client({"pgmq.send": [(1,)]})
        conn.delay = 1.0

        with pytest.raises(PublishTimeout) as exc_info:
            await client.publish(handle, b"{}", timeout=0.01)

        assert exc_info.value.queue == "logs_test"
        assert isinstance(exc_info.value, BrokerUnavailable)

    @pytest.mark.asyncio
    async def test_default_timeout_comes_from_client(self, handle):
        client, conn = make_client({"pgmq.send": [(1,)]}, publish_timeout=0.01)
        conn.delay = 1.0

        with pytest.raises(PublishTimeout):
            await client.publish(handle, b"{}")

    @pytest.mark.asyncio
    async def test_driver_error_is_broker_unavailable(self, handle):
        client, conn = make_client()
        conn.error = psycopg.OperationalError("server closed the connection")

        with pytest.raises(BrokerUnavailable) as exc_info:
            await client.publish(handle, b"{}")

        assert not isinstance(exc_info.value, PublishTimeout)

    @pytest.mark.asyncio
    async def test_publish_before_start_is_broker_unavailable(self, handle):
        from logpipe.core.db import Database

        client = QueueClient(Database("postgresql://localhost/broker", name="broker"))

        with pytest.raises(BrokerUnavailable):
            await client.publish(handle, b"{}")


class TestConsume:
    @pytest.mark.asyncio
    async def test_manual_read_uses_read_with_poll(self, handle):
        now = datetime.now(timezone.utc)
        row = (3, 1, now, now, {"body_b64": "e30="})
        client, conn = make_client({"pgmq.read_with_poll": [row]})

        messages = await client.read_batch(
            handle, AckMode.MANUAL, batch_size=5, visibility_timeout=45, poll_seconds=2
        )

        assert [m.msg_id for m in messages] == [3]
        (_, params), = conn.statements("read_with_poll")
        assert params == ("logs_test", 45, 5, 2, 100)

    @pytest.mark.asyncio
    async def test_auto_read_uses_pop(self, handle):
        client, conn = make_client({"pgmq.pop": []})

        assert await client.read_batch(handle, AckMode.AUTO) == []
        assert conn.statements("pgmq.pop")

    @pytest.mark.asyncio
    async def test_subscribe_retries_after_broker_failure(self, handle, monkeypatch):
        client, _ = make_client()
        stop = asyncio.Event()
        calls = {"n": 0}

        async def flaky_read(*args, **kwargs):
            calls["n"] += 1
            if calls["n"] == 1:
                raise BrokerUnavailable("down")
            return [make_message(msg_id=calls["n"])]

        monkeypatch.setattr(client, "read_batch", flaky_read)
        backoff = BackoffState(initial_delay=0.0, max_delay=0.0)

        received = []
        async for message in client.subscribe(handle, stop_event=stop, backoff=backoff):
            received.append(message.msg_id)
            if len(received) == 2:
                stop.set()

        assert received == [2, 3]
        assert backoff.total_failures == 1
        assert backoff.consecutive_failures == 0

    @pytest.mark.asyncio
    async def test_subscribe_escalates_sustained_outage(self, handle, monkeypatch, caplog):
        client, _ = make_client()
        stop = asyncio.Event()
        calls = {"n": 0}

        async def failing_read(*args, **kwargs):
            calls["n"] += 1
            if calls["n"] <= CRASH_LOOP_THRESHOLD:
                raise BrokerUnavailable("down")
            return [make_message(msg_id=calls["n"])]

        monkeypatch.setattr(client, "read_batch", failing_read)
        backoff = BackoffState(initial_delay=0.0, max_delay=0.0)

        with caplog.at_level(logging.WARNING, logger="logpipe.broker.client"):
            async for _ in client.subscribe(handle, stop_event=stop, backoff=backoff):
                stop.set()

        levels = [record.levelno for record in caplog.records if "logs_test" in record.getMessage()]
        assert levels.count(logging.CRITICAL) == 1
        assert levels.count(logging.WARNING) == CRASH_LOOP_THRESHOLD - 1
        assert backoff.total_failures == CRASH_LOOP_THRESHOLD

    @pytest.mark.asyncio
    async def test_subscribe_releases_unyielded_messages_on_stop(self, handle, monkeypatch):
        client, conn = make_client({"pgmq.set_vt": [(1,)]})
        stop = asyncio.Event()
        batch = [make_message(msg_id=i) for i in (1, 2, 3)]

        async def read(*args, **kwargs):
            return batch

        monkeypatch.setattr(client, "read_batch", read)

        received = []
        async for message in client.subscribe(handle, stop_event=stop):
            received.append(message.msg_id)
            stop.set()

        assert received == [1]
        released = [params[1] for _, params in conn.statements("pgmq.set_vt")]
        assert released == [2, 3]


class TestAcknowledgment:
    @pytest.mark.asyncio
    async def test_ack_deletes_message(self, handle):
        client, conn = make_client({"pgmq.delete": [(True,)]})

        assert await client.ack(handle, make_message(msg_id=9)) is True
        (_, params), = conn.statements("pgmq.delete")
        assert params == ("logs_test", 9)

    @pytest.mark.asyncio
    async def test_nack_sets_visibility_delay(self, handle):
        client, conn = make_client({"pgmq.set_vt": [(9,)]})

        assert await client.nack(handle, make_message(msg_id=9), delay=8) is True
        (_, params), = conn.statements("pgmq.set_vt")
        assert params == ("logs_test", 9, 8)

    @pytest.mark.asyncio
    async def test_ack_failure_is_broker_unavailable(self, handle):
        client, conn = make_client()
        conn.error = psycopg.OperationalError("gone")

        with pytest.raises(BrokerUnavailable):
            await client.ack(handle, make_message())

    @pytest.mark.asyncio
    async def test_dead_letter_moves_message_in_one_transaction(self, handle):
        client, conn = make_client({"pgmq.send": [(77,)], "pgmq.delete": [(True,)]})
        message = make_message(b'{"bad":', msg_id=5, read_ct=3)

        dlq_id = await client.dead_letter(handle, message, "constraint violation", ValueError("x"))

        assert dlq_id == 77
        assert conn.transactions == 1
        assert conn.rollbacks == 0
        (_, send_params), = conn.statements("pgmq.send")
        assert send_params[0] == "logs_test_dlq"
        payload = json.loads(send_params[1])
        assert payload["original_msg_id"] == 5
        assert payload["reason"] == "constraint violation"
        assert payload["error_type"] == "ValueError"
        assert payload["attempts"] == 3
        assert LogEnvelope.parse(payload["message"]).to_record().body == b'{"bad":'
        (_, delete_params), = conn.statements("pgmq.delete")
        assert delete_params == ("logs_test", 5)

    @pytest.mark.asyncio
    async def test_dead_letter_rolls_back_when_source_already_gone(self, handle):
        client, conn = make_client({"pgmq.send": [(77,)], "pgmq.delete": [(False,)]})

        dlq_id = await client.dead_letter(handle, make_message(msg_id=5), "constraint violation")

        assert dlq_id is None
        assert conn.transactions == 1
        assert conn.rollbacks == 1
        assert len(conn.statements("pgmq.send")) == 1


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_failure_is_broker_unavailable(self):
        db = FakeDatabase()
        db.start_error = DatabaseConnectionError("broker", 1, OSError("refused"))

        with pytest.raises(BrokerUnavailable):
            await QueueClient(db).start()

    @pytest.mark.asyncio
    async def test_queue_depth_reads_metrics(self, handle):
        client, conn = make_client({"pgmq.metrics": [(12,)]})

        assert await client.queue_depth(handle) == 12
        assert await client.queue_depth(handle, dead_letter=True) == 12
        names = [params[0] for _, params in conn.statements("pgmq.metrics")]
        assert names == ["logs_test", "logs_test_dlq"]

    @pytest.mark.asyncio
    async def test_ping_and_close_delegate_to_database(self):
        db = FakeDatabase()
        client = QueueClient(db)

        assert await client.ping() is True
        await client.close()
        assert db.stopped

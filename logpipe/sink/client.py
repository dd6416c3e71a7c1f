"""
Logpipe - Relational Sink Client

Writes accepted log records into the `logs` table:

    logs(id UUID PK, data JSONB NOT NULL, inserted_at TIMESTAMPTZ NOT NULL)

There is deliberately no uniqueness constraint on `data`; a record
redelivered after a lost ack is inserted again.

Failure classes:
    ConstraintViolation  the payload itself is unacceptable (bad UTF-8, not
                         JSON, SQLSTATE class 22 / 23); retrying cannot help
    SinkUnavailable      connection, pool, timeout or any other database
                         error; the record should be retried later
"""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, AsyncIterator
from uuid import UUID

import psycopg
from psycopg_pool import PoolTimeout

from logpipe.core.db import Database, DatabaseNotStartedError
from logpipe.core.errors import ConstraintViolation, SinkUnavailable

logger = logging.getLogger(__name__)

DEFAULT_INSERT_TIMEOUT = 10.0
TABLE_NAME = "logs"

SCHEMA_SQL = f"""
CREATE TABLE IF NOT EXISTS {TABLE_NAME} (
    id          UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    data        JSONB NOT NULL,
    inserted_at TIMESTAMPTZ NOT NULL DEFAULT now()
)
"""

INSERT_SQL = f"INSERT INTO {TABLE_NAME} (data) VALUES (%s::jsonb) RETURNING id"


@dataclass(frozen=True)
class PersistedRecord:
    """One row of the logs table."""

    id: UUID
    data: Any
    inserted_at: datetime


def decode_payload(payload: bytes) -> str:
    """
    Validate a raw record body as UTF-8 JSON and return its text unchanged.

    Raises:
        ConstraintViolation: If the bytes are not UTF-8 or not JSON.
    """
    try:
        text = payload.decode("utf-8")
    except UnicodeDecodeError as e:
        raise ConstraintViolation(f"Payload is not valid UTF-8: {e}") from e
    try:
        json.loads(text)
    except ValueError as e:
        raise ConstraintViolation(f"Payload is not valid JSON: {e}") from e
    return text


class SinkClient:
    """Pooled, concurrency-safe writer for the logs table."""

    def __init__(self, db: Database, *, insert_timeout: float = DEFAULT_INSERT_TIMEOUT):
        self._db = db
        self.insert_timeout = insert_timeout

    async def start(self, *, max_retries: int | None = None) -> None:
        try:
            await self._db.start(max_retries=max_retries)
        except Exception as e:
            raise SinkUnavailable(f"Cannot connect to sink: {e}") from e

    async def close(self) -> None:
        await self._db.stop()

    async def ping(self) -> bool:
        return await self._db.ping()

    @asynccontextmanager
    async def _sink_errors(self, operation: str) -> AsyncIterator[None]:
        try:
            yield
        except (psycopg.DataError, psycopg.IntegrityError) as e:
            sqlstate = getattr(e, "sqlstate", None)
            raise ConstraintViolation(
                f"Sink rejected {operation} (sqlstate={sqlstate}): {e}"
            ) from e
        except (psycopg.Error, PoolTimeout, DatabaseNotStartedError) as e:
            raise SinkUnavailable(f"Sink {operation} failed: {type(e).__name__}: {e}") from e

    async def ensure_schema(self) -> None:
        """Create the logs table if it does not exist."""
        async with self._sink_errors("schema setup"):
            async with self._db.connection() as conn:
                await conn.execute(SCHEMA_SQL)
        logger.info("Sink schema ready (table=%s)", TABLE_NAME)

    async def _insert(self, text: str) -> UUID:
        async with self._db.connection() as conn:
            cur = await conn.execute(INSERT_SQL, (text,))
            row = await cur.fetchone()
        if row is None:
            raise SinkUnavailable("INSERT ... RETURNING id returned no row")
        return row[0] if isinstance(row[0], UUID) else UUID(str(row[0]))

    async def insert(self, payload: bytes, *, timeout: float | None = None) -> UUID:
        """
        Insert one record and return its id once the transaction commits.

        Raises:
            ConstraintViolation: The payload can never be stored.
            SinkUnavailable: The sink could not confirm the write in time.
        """
        text = decode_payload(payload)
        effective_timeout = timeout if timeout is not None else self.insert_timeout

        try:
            async with self._sink_errors("insert"):
                return await asyncio.wait_for(self._insert(text), timeout=effective_timeout)
        except asyncio.TimeoutError as e:
            raise SinkUnavailable(f"Insert not confirmed within {effective_timeout:.1f}s") from e

    async def count(self) -> int:
        async with self._sink_errors("count"):
            async with self._db.connection() as conn:
                cur = await conn.execute(f"SELECT count(*) FROM {TABLE_NAME}")
                row = await cur.fetchone()
        return int(row[0]) if row else 0

    async def fetch_recent(self, limit: int = 10) -> list[PersistedRecord]:
        """Most recently inserted rows, newest first."""
        async with self._sink_errors("fetch"):
            async with self._db.connection() as conn:
                cur = await conn.execute(
                    f"SELECT id, data, inserted_at FROM {TABLE_NAME} "
                    "ORDER BY inserted_at DESC LIMIT %s",
                    (max(int(limit), 0),),
                )
                rows = await cur.fetchall()
        return [PersistedRecord(id=row[0], data=row[1], inserted_at=row[2]) for row in rows]

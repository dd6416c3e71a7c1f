"""
Logpipe - Async Database Pool

One Database instance owns one psycopg_pool.AsyncConnectionPool for one DSN.
The broker (pgmq) and the sink each get their own instance; nothing in the
pipeline shares a single global connection. Every operation checks out its
own connection, so concurrent publishes / inserts never share a session.

DESIGN GOALS:
1. LAZY: the pool is created and opened in start(), never in __init__.
2. BACKOFF: network failures at startup are retried with exponential
   backoff and jitter (1s -> 2s -> 4s ... capped).
3. NO RETRY ON BAD CREDENTIALS: authentication / missing-database errors
   raise immediately.
4. SAFE LOGS: DSN passwords never reach the logs.

Usage:
    db = Database(url=dsn, name="sink")
    await db.start()

    async with db.connection() as conn:
        await conn.execute("SELECT 1")

    await db.stop()
"""

from __future__ import annotations

import asyncio
import random
import re
import time
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, AsyncIterator, Optional
from urllib.parse import urlparse

from loguru import logger
from psycopg_pool import AsyncConnectionPool

if TYPE_CHECKING:
    from psycopg import AsyncConnection


# =============================================================================
# Configuration Constants
# =============================================================================

INITIAL_RETRY_DELAY = 1.0
MAX_RETRY_DELAY = 30.0
MAX_RETRY_ATTEMPTS = 5
JITTER_FACTOR = 0.3

DEFAULT_POOL_TIMEOUT = 10.0  # seconds to wait for a free connection
DEFAULT_CONNECT_TIMEOUT = 5  # libpq connect_timeout

# Failures that retrying cannot fix
AUTH_FAILURE_PATTERNS = (
    "password authentication failed",
    "authentication failed",
    "no pg_hba.conf entry",
)
CONFIG_FAILURE_PATTERNS = (
    r"role .* does not exist",
    r"database .* does not exist",
)


def _parse_dsn_info(dsn: str) -> dict[str, Optional[str]]:
    """Extract loggable DSN components (never the password)."""
    try:
        parsed = urlparse(dsn)
        return {
            "host": parsed.hostname,
            "port": str(parsed.port) if parsed.port else "5432",
            "dbname": parsed.path.lstrip("/") if parsed.path else None,
            "user": parsed.username,
        }
    except ValueError as e:
        return {"host": None, "port": None, "dbname": None, "user": None, "error": str(e)}


def is_fatal_connect_error(error: Exception) -> bool:
    """True for connection errors that must not be retried."""
    error_str = str(error).lower()
    if any(pattern in error_str for pattern in AUTH_FAILURE_PATTERNS):
        return True
    return any(re.search(pattern, error_str) for pattern in CONFIG_FAILURE_PATTERNS)


# =============================================================================
# Exceptions
# =============================================================================


class DatabaseNotStartedError(RuntimeError):
    """Raised when attempting to use the database before calling start()."""

    def __init__(self, name: str = "database") -> None:
        super().__init__(f"{name} pool not started. Did you forget to await start()?")


class DatabaseConnectionError(RuntimeError):
    """Raised when the pool cannot be opened."""

    def __init__(self, name: str, attempts: int, last_error: Exception) -> None:
        self.name = name
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"Failed to connect to {name} after {attempts} attempts. Last error: {last_error}"
        )


# =============================================================================
# Database Class
# =============================================================================


class Database:
    """
    Lazy async connection pool for one Postgres DSN.

    Attributes:
        url: PostgreSQL connection string
        name: Label used in logs and application_name ("broker", "sink")
        min_size / max_size: pool bounds
        timeout: seconds to wait for a pooled connection
        pool: the AsyncConnectionPool (None until start())
    """

    __slots__ = ("url", "name", "min_size", "max_size", "timeout", "max_lifetime", "pool")

    def __init__(
        self,
        url: str,
        *,
        name: str = "database",
        min_size: int = 1,
        max_size: int = 10,
        timeout: float = DEFAULT_POOL_TIMEOUT,
        max_lifetime: float = 1800.0,
    ) -> None:
        if not url:
            raise ValueError(f"{name} URL cannot be empty")

        self.url = url
        self.name = name
        self.min_size = min_size
        self.max_size = max(max_size, min_size, 1)
        self.timeout = timeout
        self.max_lifetime = max_lifetime
        self.pool: Optional[AsyncConnectionPool] = None

    @property
    def is_open(self) -> bool:
        return self.pool is not None

    async def start(self, *, max_retries: int | None = None) -> None:
        """
        Open the pool, retrying network failures with backoff and jitter.

        Args:
            max_retries: Connection attempts (default MAX_RETRY_ATTEMPTS).
                         Use 1 in tests for fast failure.

        Raises:
            DatabaseConnectionError: If the pool cannot be opened.
        """
        if self.pool is not None:
            logger.warning(f"{self.name} pool already started, skipping")
            return

        dsn_info = _parse_dsn_info(self.url)
        effective_max_retries = max_retries if max_retries is not None else MAX_RETRY_ATTEMPTS
        start_time = time.monotonic()
        delay = INITIAL_RETRY_DELAY
        last_error: Optional[Exception] = None

        for attempt in range(1, effective_max_retries + 1):
            pool: Optional[AsyncConnectionPool] = None
            try:
                if attempt == 1:
                    logger.info(
                        f"Connecting to {self.name} "
                        f"(host={dsn_info.get('host')}, port={dsn_info.get('port')})"
                    )

                pool = AsyncConnectionPool(
                    conninfo=self.url,
                    min_size=self.min_size,
                    max_size=self.max_size,
                    timeout=self.timeout,
                    max_lifetime=self.max_lifetime,
                    open=False,
                    kwargs={
                        "application_name": f"logpipe_{self.name}",
                        "connect_timeout": DEFAULT_CONNECT_TIMEOUT,
                    },
                )
                await pool.open(wait=True, timeout=self.timeout)

                async with pool.connection() as conn:
                    cur = await conn.execute("SELECT 1")
                    row = await cur.fetchone()
                    if row is None or row[0] != 1:
                        raise RuntimeError(f"{self.name} ping failed: SELECT 1 did not return 1")

                self.pool = pool
                elapsed_ms = (time.monotonic() - start_time) * 1000
                logger.info(
                    f"{self.name} connected | attempts={attempt} elapsed_ms={elapsed_ms:.0f} "
                    f"pool_size={self.max_size} host={dsn_info.get('host')}"
                )
                return

            except Exception as e:
                last_error = e
                if pool is not None:
                    try:
                        await pool.close()
                    except Exception as close_error:
                        logger.debug(f"Ignoring close error on failed pool: {close_error}")

                if is_fatal_connect_error(e):
                    logger.critical(
                        f"{self.name} rejected credentials or database; not retrying "
                        f"(host={dsn_info.get('host')} user={dsn_info.get('user')}): "
                        f"{type(e).__name__}: {e}"
                    )
                    raise DatabaseConnectionError(self.name, attempt, e) from e

                if attempt < effective_max_retries:
                    actual_delay = delay + random.uniform(0, delay * JITTER_FACTOR)
                    logger.warning(
                        f"{self.name} connection failed (attempt {attempt}/{effective_max_retries}). "
                        f"Retrying in {actual_delay:.1f}s... ({type(e).__name__}: {e})"
                    )
                    await asyncio.sleep(actual_delay)
                    delay = min(delay * 2, MAX_RETRY_DELAY)

        logger.error(
            f"{self.name} connection FAILED | attempts={effective_max_retries} "
            f"host={dsn_info.get('host')} port={dsn_info.get('port')} error={last_error}"
        )
        raise DatabaseConnectionError(
            self.name, effective_max_retries, last_error or RuntimeError("Unknown error")
        )

    async def stop(self) -> None:
        """Close the pool. Safe to call more than once."""
        if self.pool is None:
            return
        logger.info(f"Closing {self.name} pool...")
        pool, self.pool = self.pool, None
        await pool.close()
        logger.info(f"{self.name} pool closed")

    @asynccontextmanager
    async def connection(self) -> AsyncIterator["AsyncConnection"]:
        """
        Check a connection out of the pool.

        The pool commits on clean exit and rolls back on exception.

        Raises:
            DatabaseNotStartedError: If start() was not called
            PoolTimeout: If no connection is available within the timeout
        """
        if self.pool is None:
            raise DatabaseNotStartedError(self.name)

        async with self.pool.connection() as conn:
            yield conn

    async def ping(self) -> bool:
        """Return True if SELECT 1 succeeds."""
        if self.pool is None:
            return False
        try:
            async with self.pool.connection(timeout=self.timeout) as conn:
                cur = await conn.execute("SELECT 1")
                row = await cur.fetchone()
                return row is not None and row[0] == 1
        except Exception as e:
            logger.warning(f"{self.name} ping failed: {type(e).__name__}: {e}")
            return False

    def __repr__(self) -> str:
        status = "open" if self.is_open else "closed"
        return f"<Database {self.name} pool={status} min={self.min_size} max={self.max_size}>"

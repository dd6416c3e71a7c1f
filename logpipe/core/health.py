"""
Logpipe - Capability Health Probe

Health reflects whether the process can actually do its job: each named
check (e.g. "broker", "sink") is an async callable returning True when the
dependency is reachable. Results are cached for a short TTL so that a load
balancer polling /health does not hammer the database.

Usage:
    probe = HealthProbe({"broker": queue_client.ping}, ttl_seconds=5.0)
    report = await probe.check()
    if report.healthy:
        ...
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Mapping

logger = logging.getLogger(__name__)

HealthCheck = Callable[[], Awaitable[bool]]

DEFAULT_TTL_SECONDS = 5.0
DEFAULT_CHECK_TIMEOUT = 2.0


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    UNAVAILABLE = "unavailable"


@dataclass
class HealthReport:
    """Outcome of one probe run."""

    status: HealthStatus
    checks: dict[str, bool] = field(default_factory=dict)
    checked_at: float = field(default_factory=time.monotonic)

    @property
    def healthy(self) -> bool:
        return self.status == HealthStatus.HEALTHY

    def to_dict(self) -> dict[str, object]:
        return {
            "status": self.status.value,
            "checks": {name: ("ok" if ok else "unavailable") for name, ok in self.checks.items()},
        }


class HealthProbe:
    """Runs dependency checks concurrently and caches the report."""

    def __init__(
        self,
        checks: Mapping[str, HealthCheck],
        *,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        check_timeout: float = DEFAULT_CHECK_TIMEOUT,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._checks = dict(checks)
        self.ttl_seconds = ttl_seconds
        self.check_timeout = check_timeout
        self._clock = clock
        self._cached: HealthReport | None = None
        self._lock = asyncio.Lock()

    async def _run_one(self, name: str, check: HealthCheck) -> bool:
        try:
            return bool(await asyncio.wait_for(check(), timeout=self.check_timeout))
        except asyncio.TimeoutError:
            logger.warning("Health check %s timed out after %.1fs", name, self.check_timeout)
            return False
        except Exception as e:
            logger.warning("Health check %s failed: %s: %s", name, type(e).__name__, e)
            return False

    def _is_fresh(self, report: HealthReport | None) -> bool:
        return report is not None and (self._clock() - report.checked_at) < self.ttl_seconds

    async def check(self, *, force: bool = False) -> HealthReport:
        """Return the cached report, refreshing it when stale."""
        if not force and self._is_fresh(self._cached):
            return self._cached  # type: ignore[return-value]

        async with self._lock:
            # Another waiter may have refreshed while we queued on the lock
            if not force and self._is_fresh(self._cached):
                return self._cached  # type: ignore[return-value]

            names = list(self._checks)
            results = await asyncio.gather(
                *(self._run_one(name, self._checks[name]) for name in names)
            )
            checks = dict(zip(names, results))
            status = HealthStatus.HEALTHY if all(results) else HealthStatus.UNAVAILABLE
            if status is HealthStatus.UNAVAILABLE:
                logger.warning("Health degraded: %s", checks)

            self._cached = HealthReport(status=status, checks=checks, checked_at=self._clock())
            return self._cached

    def invalidate(self) -> None:
        """Drop the cached report."""
        self._cached = None

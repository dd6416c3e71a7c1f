"""
Logpipe - Backoff

Exponential backoff with jitter, used by:
- the queue subscription when the broker drops (reconnect loop)
- the persistence worker when it requeues a message after a sink failure

Usage:
    from logpipe.core.backoff import BackoffState

    backoff = BackoffState()
    try:
        await read()
        backoff.record_success()
    except BrokerUnavailable:
        await asyncio.sleep(backoff.record_failure())
"""

from __future__ import annotations

import random
from dataclasses import dataclass

INITIAL_BACKOFF_SECONDS = 1.0
MAX_BACKOFF_SECONDS = 60.0
BACKOFF_MULTIPLIER = 2.0
BACKOFF_JITTER = 0.1  # +/- 10%
CRASH_LOOP_THRESHOLD = 10  # consecutive failures


def retry_delay(
    attempt: int,
    *,
    base: float = INITIAL_BACKOFF_SECONDS,
    maximum: float = MAX_BACKOFF_SECONDS,
    multiplier: float = BACKOFF_MULTIPLIER,
) -> float:
    """
    Deterministic delay before retry number `attempt` (1-based).

    retry_delay(1) == base, retry_delay(2) == base * multiplier, ... capped at maximum.
    """
    if attempt < 1:
        attempt = 1
    return min(base * (multiplier ** (attempt - 1)), maximum)


@dataclass
class BackoffState:
    """
    Tracks consecutive failures and hands out growing, jittered delays.

    Attributes:
        initial_delay: Delay after the first failure
        max_delay: Upper bound for any delay
        consecutive_failures: Failures since the last success
        total_failures: Failures since creation
    """

    initial_delay: float = INITIAL_BACKOFF_SECONDS
    max_delay: float = MAX_BACKOFF_SECONDS
    jitter: float = BACKOFF_JITTER
    consecutive_failures: int = 0
    total_failures: int = 0

    def record_failure(self) -> float:
        """Record a failure and return the delay to wait before retrying."""
        self.consecutive_failures += 1
        self.total_failures += 1

        delay = retry_delay(
            self.consecutive_failures, base=self.initial_delay, maximum=self.max_delay
        )
        delay += delay * self.jitter * random.uniform(-1.0, 1.0)
        return max(0.0, min(delay, self.max_delay))

    def record_success(self) -> None:
        """Reset consecutive failures; total_failures is kept for diagnostics."""
        self.consecutive_failures = 0

    def is_in_crash_loop(self, threshold: int = CRASH_LOOP_THRESHOLD) -> bool:
        return self.consecutive_failures >= threshold

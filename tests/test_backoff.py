"""Tests for logpipe.core.backoff."""

from __future__ import annotations

from logpipe.core.backoff import BackoffState, retry_delay


class TestRetryDelay:
    def test_doubles_per_attempt(self):
        assert retry_delay(1, base=1.0) == 1.0
        assert retry_delay(2, base=1.0) == 2.0
        assert retry_delay(3, base=1.0) == 4.0

    def test_capped_at_maximum(self):
        assert retry_delay(20, base=1.0, maximum=60.0) == 60.0

    def test_attempt_below_one_treated_as_first(self):
        assert retry_delay(0, base=3.0) == 3.0


class TestBackoffState:
    def test_failures_grow_delay_within_jitter(self):
        state = BackoffState(initial_delay=1.0, max_delay=100.0, jitter=0.1)

        first = state.record_failure()
        second = state.record_failure()
        third = state.record_failure()

        assert 0.9 <= first <= 1.1
        assert 1.8 <= second <= 2.2
        assert 3.6 <= third <= 4.4
        assert state.consecutive_failures == 3

    def test_delay_never_exceeds_max(self):
        state = BackoffState(initial_delay=10.0, max_delay=15.0)
        for _ in range(10):
            assert state.record_failure() <= 15.0

    def test_success_resets_consecutive_only(self):
        state = BackoffState()
        state.record_failure()
        state.record_failure()
        state.record_success()

        assert state.consecutive_failures == 0
        assert state.total_failures == 2

    def test_crash_loop_detection(self):
        state = BackoffState(initial_delay=0.0)
        for _ in range(3):
            state.record_failure()

        assert state.is_in_crash_loop(threshold=3)
        state.record_success()
        assert not state.is_in_crash_loop(threshold=3)

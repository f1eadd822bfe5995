"""Tests for the backoff retrier.

Tests cover:
- k transient failures then success -> k+1 invocations
- PermanentError -> exactly one invocation regardless of max_attempts
- Exhaustion -> last error, classified transient_exhausted
- Backoff delays follow min(initial * multiplier**(n-1), max_delay)
- Cancellation during a wait
"""

import logging
import threading

import pytest

from envorchestra.errors import OrchestrationCancelled, PermanentError, TransientError
from envorchestra.retry import retry, wait_or_cancel
from envorchestra.schemas import Classification, RetryPolicy


def flaky(failures: int, error=TransientError, value="ok"):
    """Operation that raises `failures` times, then returns `value`."""
    calls = {"n": 0}

    def operation():
        calls["n"] += 1
        if calls["n"] <= failures:
            raise error(f"failure {calls['n']}")
        return value

    return operation, calls


class TestRetrySuccess:
    """Tests for operations that eventually succeed."""

    def test_succeeds_first_time(self):
        operation, calls = flaky(0)
        sleeps = []
        result = retry(operation, RetryPolicy(max_attempts=3), sleep=sleeps.append)

        assert result.ok
        assert result.value == "ok"
        assert result.attempts == 1
        assert calls["n"] == 1
        assert sleeps == []

    @pytest.mark.parametrize("k", [1, 2, 4])
    def test_k_transient_failures_then_success(self, k):
        """Invoked exactly k+1 times when k < max_attempts."""
        operation, calls = flaky(k)
        result = retry(operation, RetryPolicy(max_attempts=5, initial_delay=1), sleep=lambda s: None)

        assert result.ok
        assert calls["n"] == k + 1
        assert result.attempts == k + 1
        assert result.classification is None
        assert result.error is None


class TestRetryFailure:
    """Tests for operations that never succeed."""

    @pytest.mark.parametrize("max_attempts", [1, 3, 10])
    def test_permanent_error_stops_after_one_invocation(self, max_attempts):
        operation, calls = flaky(100, error=PermanentError)
        sleeps = []
        result = retry(operation, RetryPolicy(max_attempts=max_attempts), sleep=sleeps.append)

        assert not result.ok
        assert calls["n"] == 1
        assert result.attempts == 1
        assert result.classification == Classification.PERMANENT
        assert isinstance(result.error, PermanentError)
        assert sleeps == []

    def test_unclassified_exception_treated_as_permanent(self):
        operation, calls = flaky(100, error=RuntimeError)
        result = retry(operation, RetryPolicy(max_attempts=3), sleep=lambda s: None)

        assert calls["n"] == 1
        assert result.classification == Classification.PERMANENT
        assert "RuntimeError" in result.reason

    def test_exhaustion_returns_last_error(self):
        operation, calls = flaky(100)
        result = retry(operation, RetryPolicy(max_attempts=3, initial_delay=1), sleep=lambda s: None)

        assert not result.ok
        assert calls["n"] == 3
        assert result.classification == Classification.TRANSIENT_EXHAUSTED
        assert str(result.error) == "failure 3"


class TestBackoff:
    """Tests for delay computation and accounting."""

    def test_delays_grow_and_cap(self):
        operation, _ = flaky(100)
        sleeps = []
        policy = RetryPolicy(max_attempts=5, initial_delay=10, backoff_multiplier=2, max_delay=30)
        result = retry(operation, policy, sleep=sleeps.append)

        # No sleep after the final attempt
        assert sleeps == [10, 20, 30, 30]
        assert result.waited == 90

    def test_delay_for(self):
        policy = RetryPolicy(initial_delay=10, backoff_multiplier=2, max_delay=120)
        assert [policy.delay_for(n) for n in range(1, 6)] == [10, 20, 40, 80, 120]

    def test_policy_rejects_zero_attempts(self):
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)

    def test_each_attempt_is_logged(self, caplog):
        operation, _ = flaky(1)
        with caplog.at_level(logging.INFO, logger="envorchestra.retry"):
            retry(operation, RetryPolicy(max_attempts=3, initial_delay=1),
                  description="create cluster", sleep=lambda s: None)

        messages = [r.getMessage() for r in caplog.records]
        assert any("attempt 1/3" in m for m in messages)
        assert any("attempt 2/3" in m for m in messages)
        assert any("Retrying in 1.0s" in m for m in messages)


class TestCancellation:
    """Tests for cancel events."""

    def test_cancel_before_first_attempt(self):
        event = threading.Event()
        event.set()
        operation, calls = flaky(0)

        with pytest.raises(OrchestrationCancelled):
            retry(operation, RetryPolicy(), cancel_event=event)
        assert calls["n"] == 0

    def test_cancel_during_backoff(self):
        event = threading.Event()
        operation, calls = flaky(100)

        def sleep(seconds):
            event.set()

        with pytest.raises(OrchestrationCancelled):
            retry(operation, RetryPolicy(max_attempts=5), cancel_event=event, sleep=sleep)
        assert calls["n"] == 1

    def test_wait_or_cancel_returns_early_when_event_set(self):
        event = threading.Event()
        threading.Timer(0.05, event.set).start()

        with pytest.raises(OrchestrationCancelled):
            wait_or_cancel(30, event)

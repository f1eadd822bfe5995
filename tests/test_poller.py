"""Tests for the readiness poller."""

import threading

import pytest

from conftest import FakeClock
from envorchestra.errors import OrchestrationCancelled, PermanentError, ResourceTimeout, TransientError
from envorchestra.poller import PollOutcome, await_state
from envorchestra.schemas import ResourceStatus

READY = ResourceStatus.READY
PENDING = ResourceStatus.PENDING
FAILED = ResourceStatus.FAILED


def scripted(*results):
    """Probe returning (or raising) each result in turn; the last one repeats."""
    results = list(results)
    calls = {"n": 0}

    def probe():
        calls["n"] += 1
        item = results.pop(0) if len(results) > 1 else results[0]
        if isinstance(item, Exception):
            raise item
        return item

    return probe, calls


def wait(probe, clock, timeout=60, interval=10, **kwargs):
    return await_state(
        "cluster", probe, READY, {FAILED}, timeout, interval,
        clock=clock, sleep=clock.sleep, **kwargs,
    )


class TestAwaitState:
    """Tests for reaching the target, failing and timing out."""

    def test_ready_immediately(self):
        clock = FakeClock()
        probe, calls = scripted(READY)
        result = wait(probe, clock)

        assert result.outcome == PollOutcome.READY
        assert result.reached
        assert calls["n"] == 1
        assert clock.sleeps == []

    def test_ready_after_pending(self):
        clock = FakeClock()
        probe, calls = scripted(PENDING, PENDING, READY)
        result = wait(probe, clock)

        assert result.outcome == PollOutcome.READY
        assert calls["n"] == 3
        assert clock.sleeps == [10, 10]
        assert result.elapsed == 20

    def test_failure_state_returns_immediately(self):
        """A terminal failure state does not wait out the timeout."""
        clock = FakeClock()
        probe, calls = scripted(PENDING, FAILED)
        result = wait(probe, clock, timeout=3600)

        assert result.outcome == PollOutcome.FAILED
        assert result.last_state == FAILED
        assert calls["n"] == 2
        assert clock.now == 10

    def test_times_out(self):
        clock = FakeClock()
        probe, _ = scripted(PENDING)
        result = wait(probe, clock, timeout=25, interval=10)

        assert result.outcome == PollOutcome.TIMED_OUT
        assert result.last_state == PENDING
        # Last sleep is clipped to the remaining budget
        assert clock.sleeps == [10, 10, 5]
        assert result.elapsed == 25
        assert isinstance(result.error, ResourceTimeout)

    def test_absent_target_for_deletion(self):
        clock = FakeClock()
        probe, _ = scripted(READY, ResourceStatus.ABSENT)
        result = await_state(
            "db", probe, ResourceStatus.ABSENT, {FAILED}, 60, 10,
            clock=clock, sleep=clock.sleep,
        )
        assert result.outcome == PollOutcome.READY


class TestProbeErrors:
    """A flaky status call is not a failed resource."""

    def test_transient_probe_errors_tolerated(self):
        clock = FakeClock()
        probe, calls = scripted(TransientError("blip"), TransientError("blip"), READY)
        result = wait(probe, clock, max_probe_errors=3)

        assert result.outcome == PollOutcome.READY
        assert calls["n"] == 3

    def test_too_many_consecutive_probe_errors(self):
        clock = FakeClock()
        probe, calls = scripted(TransientError("blip"))
        result = wait(probe, clock, timeout=3600, max_probe_errors=2)

        assert result.outcome == PollOutcome.PROBE_FAILED
        assert result.outcome != PollOutcome.FAILED
        assert calls["n"] == 3
        assert isinstance(result.error, TransientError)

    def test_consecutive_counter_resets_on_success(self):
        clock = FakeClock()
        probe, _ = scripted(
            TransientError("1"), TransientError("2"), PENDING,
            TransientError("3"), TransientError("4"), READY,
        )
        result = wait(probe, clock, timeout=3600, max_probe_errors=2)

        assert result.outcome == PollOutcome.READY

    def test_permanent_probe_error(self):
        clock = FakeClock()
        probe, calls = scripted(PermanentError("access denied"))
        result = wait(probe, clock)

        assert result.outcome == PollOutcome.PROBE_FAILED
        assert calls["n"] == 1


class TestCancellation:

    def test_cancel_during_interval(self):
        event = threading.Event()
        clock = FakeClock()
        probe, _ = scripted(PENDING)

        def sleep(seconds):
            clock.sleep(seconds)
            event.set()

        with pytest.raises(OrchestrationCancelled):
            await_state(
                "cluster", probe, READY, {FAILED}, 60, 10,
                cancel_event=event, clock=clock, sleep=sleep,
            )

"""
Readiness poller.

await_state() probes a resource at a fixed interval until it reports the
target state, reports a terminal failure state, or the timeout elapses.

A probe that raises TransientError (network blip, throttled describe call)
is tolerated up to `max_probe_errors` consecutive times; past that, or on a
PermanentError from the probe, the result is PROBE_FAILED. This keeps "the
status call is flaky" separate from "the resource itself failed".
"""

import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterable, Optional

from envorchestra.errors import OrchestrationCancelled, ResourceTimeout, TransientError
from envorchestra.retry import SleepFn, wait_or_cancel
from envorchestra.schemas import ResourceStatus

logger = logging.getLogger(__name__)

DEFAULT_MAX_PROBE_ERRORS = 3


class PollOutcome(str, Enum):
    """Result of waiting for a state."""
    READY = "ready"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    PROBE_FAILED = "probe_failed"


@dataclass
class PollResult:
    """
    Result of await_state().

    Attributes:
        outcome: READY (target reached), FAILED, TIMED_OUT or PROBE_FAILED
        last_state: Last state reported by the probe (None if it never answered)
        elapsed: Seconds spent waiting
        polls: Number of probe invocations
        error: Last probe error, or a ResourceTimeout when TIMED_OUT
    """
    outcome: PollOutcome
    last_state: Optional[ResourceStatus] = None
    elapsed: float = 0.0
    polls: int = 0
    error: Optional[BaseException] = None

    @property
    def reached(self) -> bool:
        return self.outcome == PollOutcome.READY


def await_state(
    resource_id: str,
    probe: Callable[[], ResourceStatus],
    target_state: ResourceStatus,
    failure_states: Iterable[ResourceStatus],
    timeout: float,
    interval: float,
    *,
    max_probe_errors: int = DEFAULT_MAX_PROBE_ERRORS,
    cancel_event: Optional[threading.Event] = None,
    clock: Callable[[], float] = time.monotonic,
    sleep: Optional[SleepFn] = None,
) -> PollResult:
    """
    Wait for a resource to reach `target_state`.

    Args:
        resource_id: Resource id (for logging)
        probe: Zero-argument status call
        target_state: State that ends the wait successfully
        failure_states: Terminal states that end the wait as FAILED
        timeout: Budget in seconds for this resource
        interval: Seconds between probes
        max_probe_errors: Consecutive transient probe errors tolerated
        cancel_event: Interrupts the wait when set
        clock: Monotonic clock (injectable for tests)
        sleep: Injected sleep function (tests)

    Returns:
        PollResult

    Raises:
        OrchestrationCancelled: If cancel_event fires during the wait
    """
    failure_states = frozenset(failure_states)
    extra = {"resource": resource_id, "event": "poll"}
    started = clock()
    polls = 0
    consecutive_errors = 0
    last_state: Optional[ResourceStatus] = None
    last_error: Optional[BaseException] = None

    logger.info(
        f"Waiting for '{resource_id}' to be {target_state.value} "
        f"(timeout: {timeout:.0f}s, interval: {interval:.0f}s)",
        extra=extra,
    )

    while True:
        polls += 1
        try:
            state = probe()
        except OrchestrationCancelled:
            raise
        except TransientError as e:
            consecutive_errors += 1
            last_error = e
            logger.warning(
                f"Status probe for '{resource_id}' failed "
                f"({consecutive_errors}/{max_probe_errors}): {e}",
                extra=extra,
            )
            if consecutive_errors > max_probe_errors:
                return PollResult(
                    outcome=PollOutcome.PROBE_FAILED,
                    last_state=last_state,
                    elapsed=clock() - started,
                    polls=polls,
                    error=e,
                )
        except Exception as e:
            logger.error(
                f"Status probe for '{resource_id}' failed permanently: {type(e).__name__}: {e}",
                extra=extra,
            )
            return PollResult(
                outcome=PollOutcome.PROBE_FAILED,
                last_state=last_state,
                elapsed=clock() - started,
                polls=polls,
                error=e,
            )
        else:
            consecutive_errors = 0
            last_state = state
            if state == target_state:
                elapsed = clock() - started
                logger.info(
                    f"'{resource_id}' is {target_state.value} after {elapsed:.1f}s",
                    extra=extra,
                )
                return PollResult(
                    outcome=PollOutcome.READY,
                    last_state=state,
                    elapsed=elapsed,
                    polls=polls,
                    error=last_error,
                )
            if state in failure_states:
                elapsed = clock() - started
                logger.error(
                    f"'{resource_id}' reported terminal state {state.value}",
                    extra=extra,
                )
                return PollResult(
                    outcome=PollOutcome.FAILED,
                    last_state=state,
                    elapsed=elapsed,
                    polls=polls,
                    error=last_error,
                )

        elapsed = clock() - started
        remaining = timeout - elapsed
        if remaining <= 0:
            logger.error(
                f"'{resource_id}' did not become {target_state.value} within {timeout:.0f}s "
                f"(last state: {last_state.value if last_state else 'unknown'})",
                extra=extra,
            )
            return PollResult(
                outcome=PollOutcome.TIMED_OUT,
                last_state=last_state,
                elapsed=elapsed,
                polls=polls,
                error=ResourceTimeout(resource_id, target_state.value, elapsed),
            )

        logger.debug(
            f"'{resource_id}' is {last_state.value if last_state else 'unknown'}; "
            f"next probe in {min(interval, remaining):.1f}s",
            extra=extra,
        )
        wait_or_cancel(min(interval, remaining), cancel_event, sleep)

"""
Backoff retrier for controller calls.

retry() invokes a zero-argument operation up to policy.max_attempts times:
- TransientError: sleep min(initial_delay * multiplier**(attempt-1), max_delay), then retry
- PermanentError (or any unclassified exception): stop after that attempt
- Exhausted attempts: return the last error, classified TRANSIENT_EXHAUSTED

Errors are returned in a RetryResult rather than raised, so the orchestrators
can record attempts and wait time per resource. The only exception that
escapes is OrchestrationCancelled, raised when the run's cancel event fires
during a wait.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

from envorchestra.errors import OrchestrationCancelled, TransientError
from envorchestra.schemas import Classification, RetryPolicy

logger = logging.getLogger(__name__)

SleepFn = Callable[[float], None]


@dataclass
class RetryResult:
    """
    Result of a retried operation.

    Attributes:
        ok: True if the operation eventually succeeded
        value: Return value of the successful invocation
        error: Last error raised (None on success)
        attempts: Number of invocations made
        waited: Total seconds spent sleeping between attempts
        classification: Failure classification (None on success)
    """
    ok: bool
    value: Any = None
    error: Optional[BaseException] = None
    attempts: int = 0
    waited: float = 0.0
    classification: Optional[Classification] = None

    @property
    def reason(self) -> Optional[str]:
        if self.error is None:
            return None
        return f"{type(self.error).__name__}: {self.error}"


def wait_or_cancel(
    seconds: float,
    cancel_event: Optional[threading.Event] = None,
    sleep: Optional[SleepFn] = None,
) -> None:
    """
    Block for `seconds`, returning early with OrchestrationCancelled if cancelled.

    Args:
        seconds: How long to wait
        cancel_event: Event that interrupts the wait when set
        sleep: Injected sleep function (tests); bypasses the event wait

    Raises:
        OrchestrationCancelled: If cancel_event is set before or during the wait
    """
    if cancel_event is not None and cancel_event.is_set():
        raise OrchestrationCancelled("Run cancelled")

    if sleep is not None:
        sleep(seconds)
    elif cancel_event is not None:
        if cancel_event.wait(seconds):
            raise OrchestrationCancelled("Run cancelled")
        return
    elif seconds > 0:
        time.sleep(seconds)

    if cancel_event is not None and cancel_event.is_set():
        raise OrchestrationCancelled("Run cancelled")


def retry(
    operation: Callable[[], Any],
    policy: RetryPolicy,
    *,
    description: str = "operation",
    resource_id: Optional[str] = None,
    cancel_event: Optional[threading.Event] = None,
    sleep: Optional[SleepFn] = None,
) -> RetryResult:
    """
    Retry an operation with exponential backoff.

    Args:
        operation: Zero-argument callable
        policy: RetryPolicy controlling attempts and delays
        description: Label for log messages (e.g. "create cluster")
        resource_id: Resource id attached to log records
        cancel_event: Interrupts backoff sleeps when set
        sleep: Injected sleep function (tests)

    Returns:
        RetryResult describing success or the final failure

    Raises:
        OrchestrationCancelled: If cancelled before an attempt or during a backoff sleep
    """
    waited = 0.0
    extra = {"resource": resource_id, "event": "retry"}

    for attempt in range(1, policy.max_attempts + 1):
        if cancel_event is not None and cancel_event.is_set():
            raise OrchestrationCancelled("Run cancelled")

        logger.info(
            f"{description}: attempt {attempt}/{policy.max_attempts}", extra=extra
        )
        try:
            value = operation()
        except OrchestrationCancelled:
            raise
        except TransientError as e:
            if attempt == policy.max_attempts:
                logger.error(
                    f"{description}: all {policy.max_attempts} attempts failed: {e}",
                    extra=extra,
                )
                return RetryResult(
                    ok=False,
                    error=e,
                    attempts=attempt,
                    waited=waited,
                    classification=Classification.TRANSIENT_EXHAUSTED,
                )

            delay = policy.delay_for(attempt)
            logger.warning(
                f"{description}: attempt {attempt} failed: {e}. Retrying in {delay:.1f}s...",
                extra={**extra, "metadata": {"attempt": attempt, "delay": delay}},
            )
            wait_or_cancel(delay, cancel_event, sleep)
            waited += delay
        except Exception as e:
            # PermanentError and anything the controller did not classify
            logger.error(
                f"{description}: permanent failure on attempt {attempt}: "
                f"{type(e).__name__}: {e}",
                extra=extra,
            )
            return RetryResult(
                ok=False,
                error=e,
                attempts=attempt,
                waited=waited,
                classification=Classification.PERMANENT,
            )
        else:
            if attempt > 1:
                logger.info(f"{description}: succeeded on attempt {attempt}", extra=extra)
            return RetryResult(ok=True, value=value, attempts=attempt, waited=waited)

    # max_attempts >= 1 is enforced by RetryPolicy, so the loop always returns
    raise AssertionError("unreachable")

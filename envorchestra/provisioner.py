"""
Provisioner - create resources in dependency order.

For each resource, in topological order:
1. Every dependency must be Ready in the RunState; otherwise the resource is
   recorded Skipped (no partial creation against a missing dependency).
2. The create call runs through the backoff retrier. A permanent failure or
   exhausted retries records Failed and aborts the run.
3. After a successful create call the resource is Created and the readiness
   poller waits for Ready. TimedOut or Failed readiness also aborts the run,
   since the resource cannot serve as a dependency.

Once the run is aborted (or cancelled) no further resource is started;
resources already in flight finish, and those never started are recorded
Skipped. The descriptor set is validated first, so a cycle raises
CycleDetected before any controller call.

The provisioner never remediates: the create call is retried verbatim.
"""

import logging
import threading
import time
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional

from envorchestra.controllers import ControllerRegistry
from envorchestra.errors import EnvorchestraError, OrchestrationCancelled
from envorchestra.poller import DEFAULT_MAX_PROBE_ERRORS, PollOutcome, await_state
from envorchestra.registry import validate
from envorchestra.retry import SleepFn, retry
from envorchestra.scheduler import DependencyScheduler
from envorchestra.schemas import (
    Classification,
    OutcomeStatus,
    Phase,
    ResourceDescriptor,
    ResourceOutcome,
    ResourceStatus,
    RetryPolicy,
    RunState,
)

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Provisioner:
    """
    Provisioning orchestrator.

    Usage:
        provisioner = Provisioner(ControllerRegistry.create_default(), RetryPolicy())
        state = RunState(run_id=generate_ulid(), environment="test", phase=Phase.PROVISIONING)
        provisioner.provision(descriptor_set, state)
        if state.aborted:
            recover(state, descriptor_set, decommissioner)
    """

    def __init__(
        self,
        controllers: ControllerRegistry,
        policy: Optional[RetryPolicy] = None,
        *,
        max_workers: int = 1,
        max_probe_errors: int = DEFAULT_MAX_PROBE_ERRORS,
        cancel_event: Optional[threading.Event] = None,
        sleep: Optional[SleepFn] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            controllers: Registry resolving each descriptor's controller
            policy: Default retry policy (descriptors may override)
            max_workers: Sibling resources processed concurrently (1 = sequential)
            max_probe_errors: Consecutive transient probe errors tolerated
            cancel_event: When set, provisioning aborts at the next wait or start
            sleep: Injected sleep function (tests)
            clock: Monotonic clock for readiness timeouts (tests)
        """
        self._controllers = controllers
        self._policy = policy or RetryPolicy()
        self._max_workers = max_workers
        self._max_probe_errors = max_probe_errors
        self._cancel_event = cancel_event
        self._sleep = sleep
        self._clock = clock

    def _cancelled(self) -> bool:
        return self._cancel_event is not None and self._cancel_event.is_set()

    def provision(self, descriptors: Iterable[ResourceDescriptor], run_state: RunState) -> RunState:
        """
        Create every resource in dependency order.

        Args:
            descriptors: The full descriptor set
            run_state: RunState for this run (mutated in place)

        Returns:
            The populated RunState; phase is COMPLETED or ABORTED

        Raises:
            CycleDetected: If the dependency graph has a cycle (nothing is touched)
            DescriptorValidationError: If the set is otherwise invalid
        """
        order = validate(descriptors)
        by_id = {d.id: d for d in order}

        run_state.begin(Phase.PROVISIONING)
        logger.info(
            f"Provisioning '{run_state.environment}' ({len(order)} resources): "
            f"{' -> '.join(by_id)}",
            extra={"event": "provision_start", "metadata": {"run_id": run_state.run_id}},
        )

        scheduler = DependencyScheduler(
            order=[d.id for d in order],
            predecessors={d.id: d.depends_on for d in order},
            max_workers=self._max_workers,
        )
        unstarted = scheduler.run(
            lambda rid: self._provision_one(by_id[rid], run_state),
            should_stop=lambda: run_state.aborted or self._cancelled(),
        )

        if self._cancelled():
            run_state.abort("Provisioning cancelled")

        skip_classification = (
            Classification.CANCELLED if self._cancelled() else Classification.RUN_ABORTED
        )
        for rid in unstarted:
            run_state.record(ResourceOutcome(
                resource_id=rid,
                status=OutcomeStatus.SKIPPED,
                classification=skip_classification,
                reason=f"Not started: {run_state.abort_reason}",
            ))

        run_state.finish()
        if run_state.aborted:
            logger.error(
                f"Provisioning aborted: {run_state.abort_reason}",
                extra={"event": "provision_aborted", "metadata": {"run_id": run_state.run_id}},
            )
        else:
            logger.info(
                f"Provisioning of '{run_state.environment}' completed",
                extra={"event": "provision_completed", "metadata": {"run_id": run_state.run_id}},
            )
        return run_state

    def _provision_one(self, descriptor: ResourceDescriptor, run_state: RunState) -> None:
        rid = descriptor.id
        extra = {"resource": rid}

        not_ready = sorted(
            dep for dep in descriptor.depends_on
            if run_state.status_of(dep) != OutcomeStatus.READY
        )
        if not_ready:
            logger.warning(f"Skipping '{rid}': dependency not ready: {', '.join(not_ready)}", extra=extra)
            run_state.record(ResourceOutcome(
                resource_id=rid,
                status=OutcomeStatus.SKIPPED,
                classification=Classification.DEPENDENCY_NOT_READY,
                reason=f"Dependency not ready: {', '.join(not_ready)}",
            ))
            return

        started_at = run_state.mark_started(rid)

        try:
            controller = self._controllers.for_descriptor(descriptor)
        except EnvorchestraError as e:
            self._fail(run_state, ResourceOutcome(
                resource_id=rid,
                status=OutcomeStatus.FAILED,
                classification=Classification.PERMANENT,
                reason=str(e),
                started_at=started_at,
                completed_at=_utcnow(),
            ))
            return

        policy = descriptor.retry or self._policy
        create_called_at = _utcnow()
        logger.info(f"Creating {descriptor.kind.value} '{rid}'", extra={**extra, "event": "create"})
        try:
            result = retry(
                lambda: controller.create(descriptor),
                policy,
                description=f"create {descriptor.kind.value} '{rid}'",
                resource_id=rid,
                cancel_event=self._cancel_event,
                sleep=self._sleep,
            )
        except OrchestrationCancelled:
            self._fail(run_state, ResourceOutcome(
                resource_id=rid,
                status=OutcomeStatus.FAILED,
                classification=Classification.CANCELLED,
                reason="Cancelled before the create call succeeded",
                started_at=started_at,
                create_called_at=create_called_at,
                completed_at=_utcnow(),
            ), abort_reason="Provisioning cancelled")
            return

        if not result.ok:
            self._fail(run_state, ResourceOutcome(
                resource_id=rid,
                status=OutcomeStatus.FAILED,
                classification=result.classification,
                reason=result.reason,
                attempts=result.attempts,
                wait_seconds=result.waited,
                started_at=started_at,
                create_called_at=create_called_at,
                completed_at=_utcnow(),
            ))
            return

        handle = result.value
        run_state.set_handle(rid, handle)
        run_state.record(ResourceOutcome(
            resource_id=rid,
            status=OutcomeStatus.CREATED,
            attempts=result.attempts,
            wait_seconds=result.waited,
            created=True,
            started_at=started_at,
            create_called_at=create_called_at,
        ))

        try:
            poll = await_state(
                rid,
                lambda: controller.describe(descriptor, handle),
                ResourceStatus.READY,
                {ResourceStatus.FAILED},
                descriptor.creation_timeout,
                descriptor.poll_interval,
                max_probe_errors=self._max_probe_errors,
                cancel_event=self._cancel_event,
                clock=self._clock,
                sleep=self._sleep,
            )
        except OrchestrationCancelled:
            outcome = run_state.update(
                rid,
                classification=Classification.CANCELLED,
                reason="Cancelled while waiting for readiness",
                completed_at=_utcnow(),
            )
            self._fail(run_state, outcome, abort_reason="Provisioning cancelled")
            return

        wait_seconds = result.waited + poll.elapsed
        if poll.outcome == PollOutcome.READY:
            run_state.update(
                rid,
                status=OutcomeStatus.READY,
                wait_seconds=wait_seconds,
                ready_at=_utcnow(),
                completed_at=_utcnow(),
            )
            logger.info(f"'{rid}' is ready", extra={**extra, "event": "ready"})
            return

        if poll.outcome == PollOutcome.TIMED_OUT:
            status = OutcomeStatus.TIMED_OUT
            classification = Classification.TIMED_OUT
            reason = f"{poll.error} (last state: {_state(poll.last_state)})"
        elif poll.outcome == PollOutcome.FAILED:
            status = OutcomeStatus.FAILED
            classification = Classification.RESOURCE_FAILED
            reason = f"Resource reported {_state(poll.last_state)} while becoming ready"
        else:
            status = OutcomeStatus.FAILED
            classification = Classification.PROBE_FAILED
            reason = f"Status probe failed: {poll.error}"

        outcome = run_state.update(
            rid,
            status=status,
            classification=classification,
            reason=reason,
            wait_seconds=wait_seconds,
            completed_at=_utcnow(),
        )
        self._fail(run_state, outcome)

    def _fail(self, run_state: RunState, outcome: ResourceOutcome, abort_reason: Optional[str] = None) -> None:
        """Record a failed outcome and abort the run."""
        run_state.record(outcome)
        reason = abort_reason or f"'{outcome.resource_id}' {outcome.status.value}: {outcome.reason}"
        if run_state.abort(reason):
            logger.error(
                f"Aborting provisioning: {reason}",
                extra={"resource": outcome.resource_id, "event": "abort"},
            )


def _state(status: Optional[ResourceStatus]) -> str:
    return status.value if status is not None else "unknown"

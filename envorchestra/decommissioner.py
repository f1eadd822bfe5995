"""
Decommissioner - delete resources in reverse dependency order.

Teardown is maximally resilient to earlier partial failure:
- Every resource is processed; a failed delete is recorded and the loop
  continues, so one stuck resource never blocks cleanup of the others.
- A resource waits only for its dependents to finish (whatever their
  outcome) before its own delete call starts.
- Resources a prior provisioning run never created are recorded Skipped
  with still_present=False and never touched.
- Each resource is probed first; one that is already absent is recorded
  Deleted without a delete call, so a second pass over the same set is a
  no-op success.

After the delete call the poller waits for Absent. A resource still there
when its deletion timeout runs out is recorded StillPresent with the
elapsed wait, for "manual cleanup required" reporting.
"""

import logging
import threading
import time
from dataclasses import replace
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional

from envorchestra.controllers import ControllerRegistry, ResourceController
from envorchestra.errors import EnvorchestraError, OrchestrationCancelled
from envorchestra.poller import DEFAULT_MAX_PROBE_ERRORS, PollOutcome, await_state
from envorchestra.registry import dependents_map, reverse_order
from envorchestra.retry import SleepFn, retry
from envorchestra.run_store import generate_ulid
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


class Decommissioner:
    """
    Decommission orchestrator.

    Usage:
        decommissioner = Decommissioner(ControllerRegistry.create_default(), RetryPolicy())

        # Full teardown of an environment
        state = decommissioner.decommission(descriptor_set.resources, environment="test")

        # Teardown limited to what a provisioning run created
        state = decommissioner.decommission(descriptor_set.resources, prior=provision_state)
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
        self._controllers = controllers
        self._policy = policy or RetryPolicy()
        self._max_workers = max_workers
        self._max_probe_errors = max_probe_errors
        self._cancel_event = cancel_event
        self._sleep = sleep
        self._clock = clock

    def _cancelled(self) -> bool:
        return self._cancel_event is not None and self._cancel_event.is_set()

    def decommission(
        self,
        descriptors: Iterable[ResourceDescriptor],
        prior: Optional[RunState] = None,
        *,
        environment: Optional[str] = None,
        run_state: Optional[RunState] = None,
    ) -> RunState:
        """
        Delete every resource in reverse dependency order.

        Args:
            descriptors: Resources to tear down (a full set or a subset)
            prior: Provisioning RunState; when given, resources it never
                   created are skipped and its handles are passed to delete()
            environment: Environment name for the new RunState
            run_state: RunState to populate (a new one is created if omitted)

        Returns:
            RunState with phase COMPLETED (ABORTED only when cancelled)

        Raises:
            CycleDetected: If the dependency graph contains a cycle
        """
        descriptors = list(descriptors)
        order = reverse_order(descriptors)
        by_id = {d.id: d for d in order}

        if run_state is None:
            run_state = RunState(
                run_id=generate_ulid(),
                environment=environment or (prior.environment if prior else ""),
                phase=Phase.DECOMMISSIONING,
            )
        run_state.begin(Phase.DECOMMISSIONING)

        logger.info(
            f"Decommissioning '{run_state.environment}' ({len(order)} resources): "
            f"{' -> '.join(by_id)}",
            extra={"event": "decommission_start", "metadata": {"run_id": run_state.run_id}},
        )

        # A resource is deleted only after everything depending on it
        dependents = dependents_map(descriptors)
        scheduler = DependencyScheduler(
            order=list(by_id),
            predecessors=dependents,
            max_workers=self._max_workers,
        )
        unstarted = scheduler.run(
            lambda rid: self._decommission_one(by_id[rid], run_state, prior),
            should_stop=self._cancelled,
        )

        if unstarted:
            run_state.abort("Decommission cancelled")
            for rid in unstarted:
                run_state.record(ResourceOutcome(
                    resource_id=rid,
                    status=OutcomeStatus.SKIPPED,
                    classification=Classification.CANCELLED,
                    reason="Not started: decommission cancelled",
                ))

        run_state.finish()
        leftover = [o.resource_id for o in run_state.failed_outcomes()]
        if leftover:
            logger.warning(
                f"Decommission of '{run_state.environment}' finished with resources "
                f"needing attention: {', '.join(leftover)}",
                extra={"event": "decommission_incomplete", "metadata": {"run_id": run_state.run_id}},
            )
        else:
            logger.info(
                f"Decommission of '{run_state.environment}' completed",
                extra={"event": "decommission_completed", "metadata": {"run_id": run_state.run_id}},
            )
        return run_state

    def _decommission_one(
        self,
        descriptor: ResourceDescriptor,
        run_state: RunState,
        prior: Optional[RunState],
    ) -> None:
        rid = descriptor.id
        extra = {"resource": rid}
        handle = None

        if prior is not None:
            prior_outcome = prior.get_outcome(rid)
            if prior_outcome is None or prior_outcome.status == OutcomeStatus.SKIPPED:
                logger.info(f"'{rid}' was never created; nothing to delete", extra=extra)
                run_state.record(ResourceOutcome(
                    resource_id=rid,
                    status=OutcomeStatus.SKIPPED,
                    classification=Classification.NOT_CREATED,
                    still_present=False,
                    reason="Never created",
                ))
                return
            handle = prior.get_handle(rid)

        started_at = run_state.mark_started(rid)

        try:
            controller = self._controllers.for_descriptor(descriptor)
        except EnvorchestraError as e:
            run_state.record(ResourceOutcome(
                resource_id=rid,
                status=OutcomeStatus.FAILED,
                classification=Classification.PERMANENT,
                reason=str(e),
                still_present=True,
                started_at=started_at,
                completed_at=_utcnow(),
            ))
            return

        if self._already_absent(descriptor, controller, handle):
            logger.info(f"'{rid}' is already absent", extra={**extra, "event": "deleted"})
            run_state.record(ResourceOutcome(
                resource_id=rid,
                status=OutcomeStatus.DELETED,
                still_present=False,
                reason="Already absent",
                started_at=started_at,
                completed_at=_utcnow(),
            ))
            return

        policy = descriptor.retry or self._policy
        logger.info(f"Deleting {descriptor.kind.value} '{rid}'", extra={**extra, "event": "delete"})
        try:
            result = retry(
                lambda: controller.delete(descriptor, handle),
                policy,
                description=f"delete {descriptor.kind.value} '{rid}'",
                resource_id=rid,
                cancel_event=self._cancel_event,
                sleep=self._sleep,
            )
        except OrchestrationCancelled:
            run_state.record(ResourceOutcome(
                resource_id=rid,
                status=OutcomeStatus.FAILED,
                classification=Classification.CANCELLED,
                reason="Cancelled before the delete call succeeded",
                still_present=True,
                started_at=started_at,
                completed_at=_utcnow(),
            ))
            return

        if not result.ok:
            logger.error(
                f"Delete of '{rid}' failed; continuing with remaining resources",
                extra={**extra, "event": "delete_failed"},
            )
            run_state.record(ResourceOutcome(
                resource_id=rid,
                status=OutcomeStatus.FAILED,
                classification=result.classification,
                reason=result.reason,
                attempts=result.attempts,
                wait_seconds=result.waited,
                still_present=True,
                started_at=started_at,
                completed_at=_utcnow(),
            ))
            return

        try:
            poll = await_state(
                rid,
                lambda: controller.describe(descriptor, handle),
                ResourceStatus.ABSENT,
                {ResourceStatus.FAILED},
                descriptor.deletion_timeout,
                descriptor.poll_interval,
                max_probe_errors=self._max_probe_errors,
                cancel_event=self._cancel_event,
                clock=self._clock,
                sleep=self._sleep,
            )
        except OrchestrationCancelled:
            run_state.record(ResourceOutcome(
                resource_id=rid,
                status=OutcomeStatus.FAILED,
                classification=Classification.CANCELLED,
                reason="Cancelled while waiting for deletion",
                attempts=result.attempts,
                wait_seconds=result.waited,
                still_present=True,
                started_at=started_at,
                completed_at=_utcnow(),
            ))
            return

        outcome = ResourceOutcome(
            resource_id=rid,
            status=OutcomeStatus.DELETED,
            attempts=result.attempts,
            wait_seconds=result.waited + poll.elapsed,
            still_present=False,
            started_at=started_at,
            completed_at=_utcnow(),
        )
        if poll.outcome == PollOutcome.TIMED_OUT:
            outcome = replace(
                outcome,
                status=OutcomeStatus.STILL_PRESENT,
                classification=Classification.TIMED_OUT,
                still_present=True,
                reason=f"Still present after {poll.elapsed:.0f}s; manual cleanup required",
            )
        elif poll.outcome == PollOutcome.FAILED:
            outcome = replace(
                outcome,
                status=OutcomeStatus.FAILED,
                classification=Classification.RESOURCE_FAILED,
                still_present=True,
                reason="Resource reported failed while deleting; manual cleanup required",
            )
        elif poll.outcome == PollOutcome.PROBE_FAILED:
            outcome = replace(
                outcome,
                status=OutcomeStatus.FAILED,
                classification=Classification.PROBE_FAILED,
                still_present=True,
                reason=f"Status probe failed: {poll.error}",
            )
        else:
            logger.info(f"'{rid}' deleted", extra={**extra, "event": "deleted"})

        run_state.record(outcome)

    def _already_absent(self, descriptor: ResourceDescriptor, controller: ResourceController, handle) -> bool:
        """Probe once before deleting; probe errors fall through to the delete call."""
        try:
            return controller.describe(descriptor, handle) == ResourceStatus.ABSENT
        except Exception as e:
            logger.warning(
                f"Could not probe '{descriptor.id}' before delete: {type(e).__name__}: {e}",
                extra={"resource": descriptor.id},
            )
            return False

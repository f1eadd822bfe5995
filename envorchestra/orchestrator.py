"""
Orchestrator - entry point tying provisioning, recovery and decommission together.

    orchestrator = Orchestrator(ControllerRegistry.create_default(), RetryPolicy())
    report = orchestrator.provision(descriptor_set)
    # provisioning aborted -> recovery already ran, report.recovery holds it

    report = orchestrator.decommission(descriptor_set, prior=report.provisioning)

The cancel event interrupts provisioning and explicit decommission runs.
Rollback after an aborted (or cancelled) provisioning run deliberately does
not observe it, so an interrupted run is never left half-applied.
"""

import logging
import threading
import time
from typing import Callable, Optional

from envorchestra.controllers import ControllerRegistry
from envorchestra.decommissioner import Decommissioner
from envorchestra.poller import DEFAULT_MAX_PROBE_ERRORS
from envorchestra.provisioner import Provisioner
from envorchestra.recovery import recover
from envorchestra.report import OPERATION_DECOMMISSION, OPERATION_PROVISION, RunReport
from envorchestra.retry import SleepFn
from envorchestra.run_store import generate_ulid
from envorchestra.schemas import DescriptorSet, Phase, RetryPolicy, RunState

logger = logging.getLogger(__name__)


class Orchestrator:
    """Provision and decommission descriptor sets, producing RunReports."""

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
        dry_run: bool = False,
    ):
        self.controllers = controllers
        self.policy = policy or RetryPolicy()
        self.cancel_event = cancel_event or threading.Event()
        self.dry_run = dry_run
        self._options = {
            "max_workers": max_workers,
            "max_probe_errors": max_probe_errors,
            "sleep": sleep,
            "clock": clock,
        }

    def _provisioner(self) -> Provisioner:
        return Provisioner(self.controllers, self.policy, cancel_event=self.cancel_event, **self._options)

    def _decommissioner(self, cancellable: bool = True) -> Decommissioner:
        return Decommissioner(
            self.controllers,
            self.policy,
            cancel_event=self.cancel_event if cancellable else None,
            **self._options,
        )

    @staticmethod
    def _kinds(descriptor_set: DescriptorSet) -> dict[str, str]:
        return {d.id: d.kind.value for d in descriptor_set}

    def provision(self, descriptor_set: DescriptorSet) -> RunReport:
        """
        Provision a descriptor set; roll back automatically if the run aborts.

        Raises:
            CycleDetected: If the dependency graph has a cycle (nothing is touched)
            DescriptorValidationError: If the set is otherwise invalid
        """
        state = RunState(
            run_id=generate_ulid(),
            environment=descriptor_set.name,
            phase=Phase.PROVISIONING,
        )
        self._provisioner().provision(descriptor_set.resources, state)

        recovery = None
        if state.aborted:
            recovery = recover(state, descriptor_set.resources, self._decommissioner(cancellable=False))

        return RunReport(
            operation=OPERATION_PROVISION,
            environment=descriptor_set.name,
            kinds=self._kinds(descriptor_set),
            provisioning=state,
            recovery=recovery,
            dry_run=self.dry_run,
        )

    def decommission(self, descriptor_set: DescriptorSet, prior: Optional[RunState] = None) -> RunReport:
        """
        Tear down a descriptor set.

        Args:
            descriptor_set: The environment to tear down
            prior: Provisioning RunState limiting teardown to what it created

        Raises:
            CycleDetected: If the dependency graph has a cycle
        """
        state = self._decommissioner().decommission(
            descriptor_set.resources,
            prior=prior,
            environment=descriptor_set.name,
        )
        return RunReport(
            operation=OPERATION_DECOMMISSION,
            environment=descriptor_set.name,
            kinds=self._kinds(descriptor_set),
            decommission=state,
            dry_run=self.dry_run,
        )

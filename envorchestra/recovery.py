"""
Failure recovery - roll back what an aborted provisioning run created.

recover() narrows the descriptor set to the resources the run actually
created (attempted, with a successful create call) and hands that subset to
the Decommissioner, which deletes it in reverse dependency order. Resources
that were never created, including the one whose create call failed, are
never touched.

The provisioning RunState is left as-is, so its abort reason is still
reported alongside the recovery outcome.
"""

import logging
from typing import Iterable

from envorchestra.decommissioner import Decommissioner
from envorchestra.schemas import ResourceDescriptor, RunState

logger = logging.getLogger(__name__)


def recover(
    run_state: RunState,
    descriptors: Iterable[ResourceDescriptor],
    decommissioner: Decommissioner,
) -> RunState:
    """
    Decommission the resources an aborted provisioning run created.

    Args:
        run_state: The aborted provisioning RunState
        descriptors: The full descriptor set of that run
        decommissioner: Decommissioner used for the rollback

    Returns:
        The recovery (decommission) RunState

    Raises:
        ValueError: If run_state is not aborted
    """
    if not run_state.aborted:
        raise ValueError(
            f"Run {run_state.run_id} is {run_state.phase.value}; only aborted runs are recovered"
        )

    existing = set(run_state.existing_ids())
    subset = [d for d in descriptors if d.id in existing]

    logger.warning(
        f"Rolling back {len(subset)} created resource(s) of '{run_state.environment}' "
        f"after abort: {run_state.abort_reason}",
        extra={
            "event": "recovery_start",
            "metadata": {"run_id": run_state.run_id, "resources": sorted(existing)},
        },
    )

    return decommissioner.decommission(
        subset,
        prior=run_state,
        environment=run_state.environment,
    )

"""
envorchestra.schemas - Schema definitions for the orchestration layer.

This module defines the core data structures for envorchestra:

DescriptorSet -> ResourceDescriptor -> RunState -> ResourceOutcome

Lifecycle:
1. DescriptorSet: Static, version-controlled declaration of an environment
2. ResourceDescriptor: One managed resource with its dependencies and timing budget
3. RunState: Runtime record of one provision or decommission run
4. ResourceOutcome: Result of processing one resource within a run

Boundaries:
- envorchestra: Orchestration (dependency order, retry/backoff, readiness, rollback)
- controllers: Cloud provider / cluster / chart calls (create, delete, describe)
"""

from .descriptor import (
    ResourceKind,
    ResourceStatus,
    RetryPolicy,
    ResourceDescriptor,
    DescriptorSet,
    DEFAULT_TIMEOUTS,
    DEFAULT_POLL_INTERVAL,
)
from .run_state import (
    Phase,
    OutcomeStatus,
    Classification,
    ResourceOutcome,
    RunState,
    EXISTING_STATUSES,
    ULID,
)

__all__ = [
    # Descriptors
    "ResourceKind",
    "ResourceStatus",
    "RetryPolicy",
    "ResourceDescriptor",
    "DescriptorSet",
    "DEFAULT_TIMEOUTS",
    "DEFAULT_POLL_INTERVAL",
    # Run state
    "Phase",
    "OutcomeStatus",
    "Classification",
    "ResourceOutcome",
    "RunState",
    "EXISTING_STATUSES",
    "ULID",
]

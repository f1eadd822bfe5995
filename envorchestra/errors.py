"""
Error classes for envorchestra.

These error types enable retry classification at controller boundaries:
- TransientError: Safe to retry (rate limits, network blips, dependency not ready yet)
- PermanentError: Do not retry (invalid configuration, quota exhausted, access denied)

Controllers raise these errors to signal retry behavior.
The retrier catches them at the boundary for backoff, and the orchestrators
record the final classification per resource in the RunState.

Error handling contract:
- Controller calls return values on success only
- Errors are exceptions, not values
- Descriptor-set validation errors (CycleDetected, DescriptorValidationError)
  are raised before any controller is touched
"""

from typing import Optional, Sequence


class EnvorchestraError(Exception):
    """Base exception for envorchestra."""
    pass


class TransientError(EnvorchestraError):
    """
    Transient error - safe to retry.

    Examples:
    - API rate limiting / throttling
    - Network timeout or connection reset
    - Dependency not ready yet
    - Service temporarily unavailable

    The retrier will retry operations that raise TransientError
    according to the configured RetryPolicy.
    """
    pass


class PermanentError(EnvorchestraError):
    """
    Permanent error - do not retry.

    Examples:
    - Invalid configuration or parameters
    - Quota exhausted
    - Authorization denied
    - Resource name already taken by a foreign owner

    The retrier stops after the first PermanentError regardless of
    how many attempts remain.
    """
    pass


class DescriptorValidationError(EnvorchestraError):
    """Raised when a descriptor set is structurally invalid."""
    pass


class CycleDetected(DescriptorValidationError):
    """Raised when the dependency graph of a descriptor set is not acyclic."""

    def __init__(self, cycle: Sequence[str]):
        self.cycle = list(cycle)
        super().__init__(f"Dependency cycle detected: {' -> '.join(self.cycle)}")


class ResourceTimeout(EnvorchestraError):
    """Raised when a resource never reaches its target state within budget."""

    def __init__(self, resource_id: str, target: str, elapsed: float):
        self.resource_id = resource_id
        self.target = target
        self.elapsed = elapsed
        super().__init__(
            f"Resource '{resource_id}' did not reach '{target}' within {elapsed:.1f}s"
        )


class OrchestrationCancelled(EnvorchestraError):
    """Raised inside a wait when the run's cancel event has been set."""
    pass


class ControllerNotFoundError(EnvorchestraError):
    """Raised when no controller is registered for a descriptor."""

    def __init__(self, name: str, registered: Optional[Sequence[str]] = None):
        self.name = name
        self.registered = list(registered or [])
        super().__init__(
            f"No controller registered for: {name}. Registered: {self.registered}"
        )

"""
ResourceDescriptor schema - the static declaration of one managed resource.

A descriptor names a resource, its kind, the resources it depends on, the
controller that creates/deletes/describes it, and the timing budget for
reaching readiness or absence. Descriptors are immutable; a descriptor set
is loaded once per run and never mutated by the orchestrators.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from envorchestra.utils import parse_duration


class ResourceKind(str, Enum):
    """Kinds of externally managed entities."""
    CLUSTER = "cluster"
    MANAGED_DATABASE = "managed_database"
    SUBNET_GROUP = "subnet_group"
    SECURITY_RULE = "security_rule"
    CHART_RELEASE = "chart_release"


class ResourceStatus(str, Enum):
    """Status reported by a controller's describe() probe."""
    PENDING = "pending"
    READY = "ready"
    FAILED = "failed"
    ABSENT = "absent"


# (creation_timeout, deletion_timeout) in seconds, per kind.
DEFAULT_TIMEOUTS: dict[ResourceKind, tuple[float, float]] = {
    ResourceKind.CLUSTER: (20 * 60, 20 * 60),
    ResourceKind.MANAGED_DATABASE: (15 * 60, 15 * 60),
    ResourceKind.SUBNET_GROUP: (5 * 60, 5 * 60),
    ResourceKind.SECURITY_RULE: (2 * 60, 2 * 60),
    ResourceKind.CHART_RELEASE: (15 * 60, 5 * 60),
}

DEFAULT_POLL_INTERVAL = 10.0


@dataclass(frozen=True)
class RetryPolicy:
    """
    Backoff configuration for controller calls.

    Attributes:
        max_attempts: Total number of invocations allowed (>= 1)
        initial_delay: Delay in seconds before the second attempt
        backoff_multiplier: Factor applied to the delay after each attempt
        max_delay: Upper bound for any single delay
    """
    max_attempts: int = 3
    initial_delay: float = 10.0
    backoff_multiplier: float = 2.0
    max_delay: float = 120.0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.initial_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be non-negative")
        if self.backoff_multiplier < 1:
            raise ValueError("backoff_multiplier must be >= 1")

    def delay_for(self, attempt: int) -> float:
        """Delay to wait after failed attempt number `attempt` (1-indexed)."""
        return min(
            self.initial_delay * self.backoff_multiplier ** (attempt - 1),
            self.max_delay,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "max_attempts": self.max_attempts,
            "initial_delay": self.initial_delay,
            "backoff_multiplier": self.backoff_multiplier,
            "max_delay": self.max_delay,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], base: Optional["RetryPolicy"] = None) -> "RetryPolicy":
        """Build a policy from a dict, filling missing keys from `base`."""
        base = base or cls()
        return cls(
            max_attempts=int(data.get("max_attempts", base.max_attempts)),
            initial_delay=parse_duration(data.get("initial_delay", base.initial_delay)),
            backoff_multiplier=float(data.get("backoff_multiplier", base.backoff_multiplier)),
            max_delay=parse_duration(data.get("max_delay", base.max_delay)),
        )


@dataclass(frozen=True)
class ResourceDescriptor:
    """
    Declaration of one managed resource.

    Attributes:
        id: Stable logical name (e.g. "cluster", "database", "subnet-group")
        kind: Resource kind
        depends_on: Ids that must be Ready before this resource's creation starts
        params: Controller-specific parameters (commands, names, chart values)
        controller: Controller name override (defaults to the kind's controller)
        creation_timeout: Seconds to wait for Ready after a successful create call
        deletion_timeout: Seconds to wait for Absent after a successful delete call
        poll_interval: Seconds between status probes
        retry: Per-resource retry override (None uses the run's default policy)
    """
    id: str
    kind: ResourceKind
    depends_on: frozenset[str] = field(default_factory=frozenset)
    params: dict[str, Any] = field(default_factory=dict, hash=False, compare=False)
    controller: Optional[str] = None
    creation_timeout: Optional[float] = None
    deletion_timeout: Optional[float] = None
    poll_interval: float = DEFAULT_POLL_INTERVAL
    retry: Optional[RetryPolicy] = None

    def __post_init__(self):
        if not self.id:
            raise ValueError("Resource id is required")
        if not isinstance(self.kind, ResourceKind):
            object.__setattr__(self, "kind", ResourceKind(self.kind))
        if not isinstance(self.depends_on, frozenset):
            object.__setattr__(self, "depends_on", frozenset(self.depends_on))

        default_create, default_delete = DEFAULT_TIMEOUTS[self.kind]
        if self.creation_timeout is None:
            object.__setattr__(self, "creation_timeout", float(default_create))
        if self.deletion_timeout is None:
            object.__setattr__(self, "deletion_timeout", float(default_delete))

        if self.poll_interval < 0:
            raise ValueError(f"Resource '{self.id}': poll_interval must be non-negative")

    @property
    def controller_name(self) -> str:
        """Name used to look up the controller in the ControllerRegistry."""
        return self.controller or self.kind.value

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        result: dict[str, Any] = {
            "id": self.id,
            "kind": self.kind.value,
            "depends_on": sorted(self.depends_on),
            "creation_timeout": self.creation_timeout,
            "deletion_timeout": self.deletion_timeout,
            "poll_interval": self.poll_interval,
        }
        if self.params:
            result["params"] = self.params
        if self.controller is not None:
            result["controller"] = self.controller
        if self.retry is not None:
            result["retry"] = self.retry.to_dict()
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any], defaults: Optional[dict[str, Any]] = None) -> "ResourceDescriptor":
        """
        Deserialize from dictionary.

        Args:
            data: Resource entry from a descriptor file
            defaults: Set-level defaults (poll_interval, retry, timeouts)
        """
        defaults = defaults or {}
        if "id" not in data:
            raise ValueError(f"Resource entry missing 'id': {data}")
        if "kind" not in data:
            raise ValueError(f"Resource '{data['id']}' missing 'kind'")

        def _duration(key: str) -> Optional[float]:
            value = data.get(key, defaults.get(key))
            return parse_duration(value) if value is not None else None

        poll_interval = _duration("poll_interval")

        retry = None
        default_retry = defaults.get("retry")
        if "retry" in data or default_retry:
            base = RetryPolicy.from_dict(default_retry) if default_retry else None
            retry = RetryPolicy.from_dict(data.get("retry", {}), base=base)

        depends_on = data.get("depends_on", [])
        if isinstance(depends_on, str):
            depends_on = [depends_on]

        return cls(
            id=str(data["id"]),
            kind=ResourceKind(data["kind"]),
            depends_on=frozenset(depends_on),
            params=dict(data.get("params", {})),
            controller=data.get("controller", defaults.get("controller")),
            creation_timeout=_duration("creation_timeout"),
            deletion_timeout=_duration("deletion_timeout"),
            poll_interval=DEFAULT_POLL_INTERVAL if poll_interval is None else poll_interval,
            retry=retry,
        )


@dataclass(frozen=True)
class DescriptorSet:
    """
    A named, ordered collection of resource descriptors.

    Attributes:
        name: Environment name (e.g. "reports-server-test")
        resources: Descriptors in declaration order
        required_env: Environment variables that must be set before any call
        description: Free-form description
    """
    name: str
    resources: tuple[ResourceDescriptor, ...]
    required_env: tuple[str, ...] = ()
    description: str = ""

    def __iter__(self):
        return iter(self.resources)

    def __len__(self) -> int:
        return len(self.resources)

    @property
    def ids(self) -> list[str]:
        return [r.id for r in self.resources]

    def get(self, resource_id: str) -> Optional[ResourceDescriptor]:
        for resource in self.resources:
            if resource.id == resource_id:
                return resource
        return None

    def subset(self, ids: set[str]) -> "DescriptorSet":
        """Return a DescriptorSet restricted to `ids`, preserving declaration order."""
        return DescriptorSet(
            name=self.name,
            resources=tuple(r for r in self.resources if r.id in ids),
            required_env=self.required_env,
            description=self.description,
        )

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "environment": self.name,
            "resources": [r.to_dict() for r in self.resources],
        }
        if self.required_env:
            result["required_env"] = list(self.required_env)
        if self.description:
            result["description"] = self.description
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DescriptorSet":
        """Deserialize from a descriptor file's parsed content."""
        if not isinstance(data, dict):
            raise ValueError("Descriptor file must contain a mapping")
        if "environment" not in data:
            raise ValueError("Descriptor file missing 'environment'")
        defaults = data.get("defaults", {}) or {}
        resources = tuple(
            ResourceDescriptor.from_dict(entry, defaults)
            for entry in data.get("resources", []) or []
        )
        return cls(
            name=str(data["environment"]),
            resources=resources,
            required_env=tuple(data.get("required_env", []) or []),
            description=data.get("description", ""),
        )

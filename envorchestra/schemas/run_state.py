"""
RunState schema - the single mutable record of one orchestration execution.

A RunState is created at the start of a provision or decommission run,
mutated only by the orchestrator driving that run, and persisted as a
report at run end. When sibling resources are processed concurrently,
every mutation goes through the methods below, which serialize access
with an internal lock. The lock is never held across a controller call
or a wait.
"""

import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

# ULID type alias for documentation
ULID = str


def _utcnow() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


class Phase(str, Enum):
    """Lifecycle phase of a run."""
    PROVISIONING = "provisioning"
    DECOMMISSIONING = "decommissioning"
    COMPLETED = "completed"
    ABORTED = "aborted"


class OutcomeStatus(str, Enum):
    """Per-resource outcome."""
    CREATED = "created"
    READY = "ready"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    SKIPPED = "skipped"
    DELETED = "deleted"
    STILL_PRESENT = "still_present"


class Classification(str, Enum):
    """Why a resource ended in a non-success outcome."""
    TRANSIENT_EXHAUSTED = "transient_exhausted"
    PERMANENT = "permanent"
    TIMED_OUT = "timed_out"
    PROBE_FAILED = "probe_failed"
    RESOURCE_FAILED = "resource_failed"
    DEPENDENCY_NOT_READY = "dependency_not_ready"
    CANCELLED = "cancelled"
    NOT_CREATED = "not_created"
    RUN_ABORTED = "run_aborted"


# Outcomes that mean the resource may exist and needs cleanup.
EXISTING_STATUSES = frozenset({OutcomeStatus.CREATED, OutcomeStatus.READY})


@dataclass(frozen=True)
class ResourceOutcome:
    """
    The outcome of processing a single resource within a run.

    Attributes:
        resource_id: Descriptor id
        status: Outcome status
        classification: Failure classification (None on success)
        reason: Human-readable failure reason
        attempts: Number of controller invocations for the create/delete call
        wait_seconds: Total time spent in backoff sleeps and readiness polling
        still_present: Decommission only - whether the resource may still exist
        created: Provisioning only - the create call succeeded, so the resource exists
        started_at: When processing of this resource started
        create_called_at: When the first create call was issued
        ready_at: When readiness was observed
        completed_at: When processing of this resource finished
    """
    resource_id: str
    status: OutcomeStatus
    classification: Optional[Classification] = None
    reason: Optional[str] = None
    attempts: int = 0
    wait_seconds: float = 0.0
    still_present: Optional[bool] = None
    created: bool = False
    started_at: Optional[datetime] = None
    create_called_at: Optional[datetime] = None
    ready_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def duration_ms(self) -> Optional[int]:
        """Processing duration in milliseconds if both timestamps present."""
        if self.started_at and self.completed_at:
            delta = self.completed_at - self.started_at
            return int(delta.total_seconds() * 1000)
        return None

    @property
    def exists(self) -> bool:
        """True when the resource was created and may need cleanup."""
        return self.status in EXISTING_STATUSES or self.created

    @property
    def succeeded(self) -> bool:
        return self.status in (OutcomeStatus.READY, OutcomeStatus.DELETED) or (
            self.status == OutcomeStatus.SKIPPED and self.still_present is False
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        result: dict[str, Any] = {
            "resource_id": self.resource_id,
            "status": self.status.value,
            "attempts": self.attempts,
            "wait_seconds": round(self.wait_seconds, 3),
        }
        if self.classification is not None:
            result["classification"] = self.classification.value
        if self.reason is not None:
            result["reason"] = self.reason
        if self.still_present is not None:
            result["still_present"] = self.still_present
        if self.created:
            result["created"] = True
        for key in ("started_at", "create_called_at", "ready_at", "completed_at"):
            value = getattr(self, key)
            if value is not None:
                result[key] = value.isoformat()
        if self.duration_ms is not None:
            result["duration_ms"] = self.duration_ms
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ResourceOutcome":
        """Deserialize from dictionary."""

        def _ts(key: str) -> Optional[datetime]:
            return datetime.fromisoformat(data[key]) if data.get(key) else None

        return cls(
            resource_id=data["resource_id"],
            status=OutcomeStatus(data["status"]),
            classification=Classification(data["classification"]) if data.get("classification") else None,
            reason=data.get("reason"),
            attempts=data.get("attempts", 0),
            wait_seconds=data.get("wait_seconds", 0.0),
            still_present=data.get("still_present"),
            created=data.get("created", False),
            started_at=_ts("started_at"),
            create_called_at=_ts("create_called_at"),
            ready_at=_ts("ready_at"),
            completed_at=_ts("completed_at"),
        )


@dataclass
class RunState:
    """
    State of one orchestration run.

    Attributes:
        run_id: ULID uniquely identifying this run
        environment: Name of the descriptor set being orchestrated
        phase: Current lifecycle phase
        attempted: Resource ids in the order their processing started
        outcomes: Mapping of resource id to its latest outcome
        handles: Opaque controller handles returned by create()
        abort_reason: Why the run aborted (None unless phase is ABORTED)
        started_at: When the run started
        completed_at: When the run finished
    """
    run_id: ULID
    environment: str
    phase: Phase
    attempted: list[str] = field(default_factory=list)
    outcomes: dict[str, ResourceOutcome] = field(default_factory=dict)
    handles: dict[str, Any] = field(default_factory=dict)
    abort_reason: Optional[str] = None
    started_at: datetime = field(default_factory=_utcnow)
    completed_at: Optional[datetime] = None
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    # -- mutation (serialized) ------------------------------------------------

    def begin(self, phase: Phase) -> None:
        """Enter PROVISIONING or DECOMMISSIONING."""
        with self._lock:
            self.phase = phase
            self.abort_reason = None
            self.completed_at = None

    def mark_started(self, resource_id: str) -> datetime:
        """Append resource to `attempted` and return the start timestamp."""
        with self._lock:
            if resource_id not in self.attempted:
                self.attempted.append(resource_id)
            return _utcnow()

    def record(self, outcome: ResourceOutcome) -> None:
        """Record (or replace) the outcome for a resource."""
        with self._lock:
            self.outcomes[outcome.resource_id] = outcome

    def update(self, resource_id: str, **changes: Any) -> ResourceOutcome:
        """Replace fields on an existing outcome and return the new value."""
        with self._lock:
            updated = replace(self.outcomes[resource_id], **changes)
            self.outcomes[resource_id] = updated
            return updated

    def set_handle(self, resource_id: str, handle: Any) -> None:
        with self._lock:
            self.handles[resource_id] = handle

    def abort(self, reason: str) -> bool:
        """
        Transition to ABORTED.

        Returns:
            True if this call performed the transition, False if already aborted
        """
        with self._lock:
            if self.phase == Phase.ABORTED:
                return False
            self.phase = Phase.ABORTED
            self.abort_reason = reason
            return True

    def finish(self) -> None:
        """Mark the run complete; an aborted run keeps its ABORTED phase."""
        with self._lock:
            if self.phase != Phase.ABORTED:
                self.phase = Phase.COMPLETED
            self.completed_at = _utcnow()

    # -- queries --------------------------------------------------------------

    @property
    def aborted(self) -> bool:
        return self.phase == Phase.ABORTED

    def get_outcome(self, resource_id: str) -> Optional[ResourceOutcome]:
        with self._lock:
            return self.outcomes.get(resource_id)

    def status_of(self, resource_id: str) -> Optional[OutcomeStatus]:
        outcome = self.get_outcome(resource_id)
        return outcome.status if outcome else None

    def get_handle(self, resource_id: str) -> Any:
        with self._lock:
            return self.handles.get(resource_id)

    def existing_ids(self) -> list[str]:
        """Attempted ids whose resource exists (Created, Ready, or created but never ready)."""
        with self._lock:
            return [
                rid for rid in self.attempted
                if rid in self.outcomes and self.outcomes[rid].exists
            ]

    def failed_outcomes(self) -> list[ResourceOutcome]:
        """Outcomes that did not reach their terminal success state."""
        with self._lock:
            return [o for o in self.outcomes.values() if not o.succeeded]

    @property
    def succeeded(self) -> bool:
        return self.phase == Phase.COMPLETED and not self.failed_outcomes()

    @property
    def duration_ms(self) -> Optional[int]:
        if self.completed_at:
            delta = self.completed_at - self.started_at
            return int(delta.total_seconds() * 1000)
        return None

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        with self._lock:
            result: dict[str, Any] = {
                "run_id": self.run_id,
                "environment": self.environment,
                "phase": self.phase.value,
                "attempted": list(self.attempted),
                "outcomes": {rid: o.to_dict() for rid, o in self.outcomes.items()},
                "handles": {rid: h for rid, h in self.handles.items() if h is not None},
                "started_at": self.started_at.isoformat(),
            }
            if self.abort_reason is not None:
                result["abort_reason"] = self.abort_reason
            if self.completed_at is not None:
                result["completed_at"] = self.completed_at.isoformat()
        if self.duration_ms is not None:
            result["duration_ms"] = self.duration_ms
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RunState":
        """Deserialize from dictionary."""
        return cls(
            run_id=data["run_id"],
            environment=data.get("environment", ""),
            phase=Phase(data["phase"]),
            attempted=list(data.get("attempted", [])),
            outcomes={
                rid: ResourceOutcome.from_dict(o)
                for rid, o in data.get("outcomes", {}).items()
            },
            handles=dict(data.get("handles", {})),
            abort_reason=data.get("abort_reason"),
            started_at=datetime.fromisoformat(data["started_at"]),
            completed_at=datetime.fromisoformat(data["completed_at"]) if data.get("completed_at") else None,
        )

"""
RunReport - the final record of a provision or decommission invocation.

A report bundles up to three RunStates:
- provisioning: the forward run (provision operation)
- recovery: the rollback decommission triggered by an aborted provisioning run
- decommission: an explicit teardown (decommission operation)

to_dict() is the machine-readable report (one row per resource with its
outcome, classification, attempts, wait and duration); render() prints the
human summary, including the resources that need manual cleanup.

Exit codes:
    0  every resource reached its terminal success state
    1  usage or configuration error (CLI only)
    2  provisioning aborted (recovery attempted)
    3  decommission (or recovery) left resources behind
    4  descriptor set failed validation (CLI only)
"""

from dataclasses import dataclass, field
from typing import Any, Optional

from rich.console import Console
from rich.table import Table

from envorchestra.schemas import OutcomeStatus, ResourceOutcome, RunState
from envorchestra.utils import console as default_console

EXIT_OK = 0
EXIT_USAGE = 1
EXIT_PROVISION_ABORTED = 2
EXIT_RESOURCES_LEFT = 3
EXIT_INVALID_DESCRIPTORS = 4

OPERATION_PROVISION = "provision"
OPERATION_DECOMMISSION = "decommission"

_STATUS_STYLES = {
    OutcomeStatus.READY: "green",
    OutcomeStatus.DELETED: "green",
    OutcomeStatus.CREATED: "yellow",
    OutcomeStatus.SKIPPED: "dim",
    OutcomeStatus.FAILED: "bold red",
    OutcomeStatus.TIMED_OUT: "red",
    OutcomeStatus.STILL_PRESENT: "red",
}


def _needs_cleanup(outcome: ResourceOutcome) -> bool:
    return bool(outcome.still_present)


@dataclass
class RunReport:
    """
    Result of one CLI-level operation.

    Attributes:
        operation: "provision" or "decommission"
        environment: Descriptor set name
        kinds: Resource id -> kind value, for display
        provisioning: Forward RunState (provision only)
        recovery: Rollback RunState (only when provisioning aborted)
        decommission: Teardown RunState (decommission only)
        dry_run: Whether the run used the dry-run controller
    """
    operation: str
    environment: str
    kinds: dict[str, str] = field(default_factory=dict)
    provisioning: Optional[RunState] = None
    recovery: Optional[RunState] = None
    decommission: Optional[RunState] = None
    dry_run: bool = False

    @property
    def primary(self) -> RunState:
        """The RunState the operation was invoked for."""
        state = self.provisioning if self.operation == OPERATION_PROVISION else self.decommission
        if state is None:
            raise ValueError(f"{self.operation} report has no run state")
        return state

    @property
    def run_id(self) -> str:
        return self.primary.run_id

    @property
    def teardown(self) -> Optional[RunState]:
        """The decommission-type state, if any (recovery or explicit teardown)."""
        return self.recovery if self.operation == OPERATION_PROVISION else self.decommission

    def cleanup_required(self) -> list[ResourceOutcome]:
        """Outcomes of resources that may still exist after teardown."""
        state = self.teardown
        if state is None:
            return []
        return [o for o in state.outcomes.values() if _needs_cleanup(o)]

    @property
    def succeeded(self) -> bool:
        return self.primary.succeeded

    @property
    def exit_code(self) -> int:
        if self.operation == OPERATION_PROVISION:
            return EXIT_OK if self.succeeded else EXIT_PROVISION_ABORTED
        return EXIT_OK if self.succeeded else EXIT_RESOURCES_LEFT

    def rows(self, state: RunState) -> list[dict[str, Any]]:
        """One row per resource, in the order outcomes were first recorded."""
        rows = []
        for outcome in list(state.outcomes.values()):
            rows.append({
                "id": outcome.resource_id,
                "kind": self.kinds.get(outcome.resource_id),
                "outcome": outcome.status.value,
                "classification": outcome.classification.value if outcome.classification else None,
                "attempts": outcome.attempts,
                "wait_seconds": round(outcome.wait_seconds, 3),
                "duration_ms": outcome.duration_ms,
                "still_present": outcome.still_present,
                "reason": outcome.reason,
            })
        return rows

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output and the run store."""
        primary = self.primary
        result: dict[str, Any] = {
            "run_id": primary.run_id,
            "operation": self.operation,
            "environment": self.environment,
            "dry_run": self.dry_run,
            "phase": primary.phase.value,
            "succeeded": self.succeeded,
            "exit_code": self.exit_code,
            "started_at": primary.started_at.isoformat(),
            "resources": self.rows(primary),
            "cleanup_required": [o.resource_id for o in self.cleanup_required()],
            "kinds": dict(self.kinds),
            "states": {},
        }
        if primary.abort_reason:
            result["abort_reason"] = primary.abort_reason
        if primary.completed_at:
            result["completed_at"] = primary.completed_at.isoformat()
            result["duration_ms"] = primary.duration_ms
        if self.recovery is not None:
            result["recovery"] = {
                "run_id": self.recovery.run_id,
                "phase": self.recovery.phase.value,
                "succeeded": self.recovery.succeeded,
                "resources": self.rows(self.recovery),
            }

        for key in ("provisioning", "recovery", "decommission"):
            state = getattr(self, key)
            if state is not None:
                result["states"][key] = state.to_dict()
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RunReport":
        """Deserialize a stored report."""
        states = data.get("states", {})
        return cls(
            operation=data["operation"],
            environment=data.get("environment", ""),
            kinds=dict(data.get("kinds", {})),
            provisioning=RunState.from_dict(states["provisioning"]) if "provisioning" in states else None,
            recovery=RunState.from_dict(states["recovery"]) if "recovery" in states else None,
            decommission=RunState.from_dict(states["decommission"]) if "decommission" in states else None,
            dry_run=data.get("dry_run", False),
        )

    # -- human summary ----------------------------------------------------------

    def _table(self, title: str, state: RunState) -> Table:
        table = Table(title=title)
        table.add_column("Resource", style="cyan")
        table.add_column("Kind")
        table.add_column("Outcome")
        table.add_column("Classification")
        table.add_column("Attempts", justify="right")
        table.add_column("Wait", justify="right")
        table.add_column("Duration", justify="right")
        table.add_column("Reason", overflow="fold")

        for outcome in list(state.outcomes.values()):
            style = _STATUS_STYLES.get(outcome.status, "")
            duration = outcome.duration_ms
            table.add_row(
                outcome.resource_id,
                self.kinds.get(outcome.resource_id, ""),
                f"[{style}]{outcome.status.value}[/]" if style else outcome.status.value,
                outcome.classification.value if outcome.classification else "",
                str(outcome.attempts),
                f"{outcome.wait_seconds:.1f}s",
                f"{duration / 1000:.1f}s" if duration is not None else "",
                outcome.reason or "",
            )
        return table

    def render(self, console: Optional[Console] = None) -> None:
        """Print the human-readable summary."""
        console = console or default_console

        label = "[DRY-RUN] " if self.dry_run else ""
        primary = self.primary
        console.print(self._table(
            f"{label}{self.operation.capitalize()} '{self.environment}' ({primary.run_id})",
            primary,
        ))

        if primary.abort_reason:
            console.print(f"[bold red]Aborted:[/] {primary.abort_reason}")

        if self.recovery is not None:
            console.print(self._table(f"Recovery ({self.recovery.run_id})", self.recovery))

        leftover = self.cleanup_required()
        if leftover:
            console.print("[bold yellow]Manual cleanup required:[/]")
            for outcome in leftover:
                kind = self.kinds.get(outcome.resource_id, "resource")
                console.print(f"  - {kind} '{outcome.resource_id}': {outcome.reason or outcome.status.value}")
            console.print(
                "Re-run decommission with the same descriptor set once the cause is fixed; "
                "deleting an absent resource is a no-op."
            )
        elif self.succeeded:
            console.print(f"[green]✓[/] {self.operation.capitalize()} of '{self.environment}' succeeded")

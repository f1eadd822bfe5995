import itertools
import threading
from typing import Any, Iterable, Optional

import pytest

from envorchestra.controllers import ControllerRegistry, ResourceController
from envorchestra.schemas import (
    DescriptorSet,
    ResourceDescriptor,
    ResourceKind,
    ResourceStatus,
    RetryPolicy,
)


class FakeClock:
    """Monotonic clock advanced only by the paired sleep()."""

    def __init__(self):
        self.now = 0.0
        self.sleeps: list[float] = []
        self._lock = threading.Lock()

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        with self._lock:
            self.sleeps.append(seconds)
            self.now += seconds


class FakeController(ResourceController):
    """
    Scriptable in-memory controller that records every call.

    Per resource id:
        create_errors / delete_errors / describe_errors: exceptions raised by
            successive calls before the call starts succeeding
        after_create / after_delete: statuses returned by successive describe
            calls once the create / delete call succeeded (the last one repeats)
    """

    def __init__(self, existing: Iterable[str] = ()):
        self._lock = threading.Lock()
        self._seq = itertools.count()
        self.calls: list[tuple[str, str]] = []
        self.events: list[tuple[int, str, str]] = []
        self.handles_seen: dict[str, Any] = {}
        self.create_errors: dict[str, list[Exception]] = {}
        self.delete_errors: dict[str, list[Exception]] = {}
        self.describe_errors: dict[str, list[Exception]] = {}
        self.after_create: dict[str, list[ResourceStatus]] = {}
        self.after_delete: dict[str, list[ResourceStatus]] = {}
        self._state: dict[str, str] = {rid: "present" for rid in existing}

    # -- helpers for assertions ---------------------------------------------------

    def _event(self, action: str, rid: str) -> None:
        self.events.append((next(self._seq), action, rid))

    def calls_for(self, action: str) -> list[str]:
        return [rid for a, rid in self.calls if a == action]

    def first(self, action: str, rid: str) -> Optional[int]:
        for seq, a, r in self.events:
            if a == action and r == rid:
                return seq
        return None

    def exists(self, rid: str) -> bool:
        return self._state.get(rid) in ("present", "created")

    # -- ResourceController -----------------------------------------------------

    def create(self, descriptor: ResourceDescriptor) -> Any:
        rid = descriptor.id
        with self._lock:
            self.calls.append(("create", rid))
            self._event("create", rid)
            errors = self.create_errors.get(rid)
            if errors:
                raise errors.pop(0)
            self._state[rid] = "created"
        return f"handle-{rid}"

    def delete(self, descriptor: ResourceDescriptor, handle: Optional[Any] = None) -> None:
        rid = descriptor.id
        with self._lock:
            self.calls.append(("delete", rid))
            self._event("delete", rid)
            self.handles_seen[rid] = handle
            errors = self.delete_errors.get(rid)
            if errors:
                raise errors.pop(0)
            self._state[rid] = "deleted"

    def describe(self, descriptor: ResourceDescriptor, handle: Optional[Any] = None) -> ResourceStatus:
        rid = descriptor.id
        with self._lock:
            self.calls.append(("describe", rid))
            errors = self.describe_errors.get(rid)
            if errors:
                raise errors.pop(0)

            state = self._state.get(rid, "absent")
            if state == "created":
                status = self._next(self.after_create, rid, ResourceStatus.READY)
            elif state == "deleted":
                status = self._next(self.after_delete, rid, ResourceStatus.ABSENT)
            elif state == "present":
                status = ResourceStatus.READY
            else:
                status = ResourceStatus.ABSENT

            if status == ResourceStatus.READY:
                self._event("ready", rid)
            return status

    @staticmethod
    def _next(script: dict[str, list[ResourceStatus]], rid: str, default: ResourceStatus) -> ResourceStatus:
        statuses = script.get(rid)
        if not statuses:
            return default
        if len(statuses) > 1:
            return statuses.pop(0)
        return statuses[0]


def make_descriptor(
    rid: str,
    kind: ResourceKind = ResourceKind.CLUSTER,
    depends_on: Iterable[str] = (),
    **kwargs,
) -> ResourceDescriptor:
    """Descriptor with short timeouts suitable for a fake clock."""
    kwargs.setdefault("creation_timeout", 60.0)
    kwargs.setdefault("deletion_timeout", 60.0)
    kwargs.setdefault("poll_interval", 5.0)
    return ResourceDescriptor(id=rid, kind=kind, depends_on=frozenset(depends_on), **kwargs)


@pytest.fixture(autouse=True)
def envorchestra_home(tmp_path, monkeypatch):
    """Isolate every test from the user's real configuration."""
    home = tmp_path / "envorchestra_home"
    monkeypatch.setenv("ENVORCHESTRA_HOME", str(home))
    return home


@pytest.fixture
def fake():
    return FakeController()


@pytest.fixture
def controllers(fake):
    registry = ControllerRegistry()
    registry.register("fake", fake)
    registry.set_default("fake")
    return registry


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def policy():
    """Three attempts, 1s/2s backoff (sleeps go to the fake clock)."""
    return RetryPolicy(max_attempts=3, initial_delay=1.0, backoff_multiplier=2.0, max_delay=10.0)


@pytest.fixture
def scenario_set():
    """DB (no deps), Cluster (no deps), SubnetGroup (depends on Cluster)."""
    return DescriptorSet(
        name="scenario",
        resources=(
            make_descriptor("database", ResourceKind.MANAGED_DATABASE),
            make_descriptor("cluster", ResourceKind.CLUSTER),
            make_descriptor("subnet-group", ResourceKind.SUBNET_GROUP, depends_on=["cluster"]),
        ),
    )

"""Tests for the dependency scheduler."""

import threading
import time

import pytest

from envorchestra.scheduler import DependencyScheduler


class Recorder:
    """Work function that records start/finish order."""

    def __init__(self, delay: float = 0.0, fail_on: str = None):
        self.delay = delay
        self.fail_on = fail_on
        self.started: list[str] = []
        self.finished: list[str] = []
        self.max_concurrent = 0
        self._running = 0
        self._lock = threading.Lock()

    def __call__(self, node: str) -> None:
        with self._lock:
            self.started.append(node)
            self._running += 1
            self.max_concurrent = max(self.max_concurrent, self._running)
        try:
            if self.delay:
                time.sleep(self.delay)
            if node == self.fail_on:
                raise RuntimeError(f"boom in {node}")
        finally:
            with self._lock:
                self._running -= 1
                self.finished.append(node)


class TestSequential:
    """max_workers=1 runs nodes in the given order."""

    def test_runs_in_order(self):
        scheduler = DependencyScheduler(
            ["cluster", "database", "subnet-group"],
            {"subnet-group": frozenset({"cluster"})},
        )
        work = Recorder()
        assert scheduler.run(work) == []
        assert work.started == ["cluster", "database", "subnet-group"]

    def test_should_stop_returns_unstarted(self):
        scheduler = DependencyScheduler(["a", "b", "c"], {})
        work = Recorder()

        unstarted = scheduler.run(work, should_stop=lambda: "a" in work.finished)

        assert work.started == ["a"]
        assert unstarted == ["b", "c"]

    def test_rejects_zero_workers(self):
        with pytest.raises(ValueError):
            DependencyScheduler(["a"], {}, max_workers=0)

    def test_unknown_predecessors_ignored(self):
        scheduler = DependencyScheduler(["b"], {"b": frozenset({"a"})})
        work = Recorder()
        scheduler.run(work)
        assert work.started == ["b"]


class TestConcurrent:
    """Siblings may overlap; dependents wait for their predecessors."""

    def test_predecessors_finish_first(self):
        predecessors = {
            "subnet-group": frozenset({"cluster"}),
            "database": frozenset({"subnet-group", "rule"}),
        }
        scheduler = DependencyScheduler(
            ["cluster", "rule", "subnet-group", "database"], predecessors, max_workers=4,
        )
        work = Recorder(delay=0.01)
        scheduler.run(work)

        for node, deps in predecessors.items():
            for dep in deps:
                assert work.finished.index(dep) < work.started.index(node)

    def test_siblings_overlap(self):
        scheduler = DependencyScheduler(["a", "b", "c"], {}, max_workers=3)
        work = Recorder(delay=0.05)
        scheduler.run(work)

        assert sorted(work.finished) == ["a", "b", "c"]
        assert work.max_concurrent > 1

    def test_worker_limit_respected(self):
        scheduler = DependencyScheduler([f"n{i}" for i in range(6)], {}, max_workers=2)
        work = Recorder(delay=0.01)
        scheduler.run(work)

        assert work.max_concurrent <= 2
        assert len(work.finished) == 6


class TestErrors:

    def test_work_exception_propagates(self):
        scheduler = DependencyScheduler(["a", "b"], {"b": frozenset({"a"})})
        work = Recorder(fail_on="a")

        with pytest.raises(RuntimeError, match="boom in a"):
            scheduler.run(work)
        assert work.started == ["a"]

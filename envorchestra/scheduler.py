"""
DependencyScheduler - run one unit of work per resource, respecting edges.

A node starts only after every one of its predecessors has finished.
Nodes with no path between them (siblings) may run concurrently on a
thread pool of `max_workers`; with max_workers=1 nodes run strictly in the
order given, which must already be a valid topological order.

The scheduler knows nothing about resources or outcomes. Callers supply:
- `order`: node ids in a valid dependency order
- `predecessors`: node id -> ids that must finish first
- `work`: callable run once per started node
- `should_stop`: checked before every start; once True no new node starts,
  in-flight nodes are allowed to finish
"""

import logging
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import Callable, Mapping, Sequence

logger = logging.getLogger(__name__)


class DependencyScheduler:
    """Dependency-respecting executor for per-resource work."""

    def __init__(
        self,
        order: Sequence[str],
        predecessors: Mapping[str, frozenset[str]],
        max_workers: int = 1,
    ):
        if max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        self._order = list(order)
        known = set(self._order)
        self._predecessors = {
            node: frozenset(p for p in predecessors.get(node, frozenset()) if p in known)
            for node in self._order
        }
        self._max_workers = max_workers

    def run(
        self,
        work: Callable[[str], None],
        should_stop: Callable[[], bool] = lambda: False,
    ) -> list[str]:
        """
        Run `work` for every node, in dependency order.

        Args:
            work: Called with the node id; exceptions propagate to the caller
                  after in-flight nodes finish
            should_stop: When it returns True, no further nodes are started

        Returns:
            Ids of nodes that were never started, in order
        """
        remaining = list(self._order)
        finished: set[str] = set()
        in_flight: dict[Future, str] = {}

        with ThreadPoolExecutor(
            max_workers=self._max_workers, thread_name_prefix="envorchestra"
        ) as pool:
            while remaining or in_flight:
                if not should_stop():
                    for node in list(remaining):
                        if len(in_flight) >= self._max_workers:
                            break
                        if self._predecessors[node] <= finished:
                            remaining.remove(node)
                            in_flight[pool.submit(work, node)] = node

                if not in_flight:
                    break

                done, _ = wait(list(in_flight), return_when=FIRST_COMPLETED)
                for future in done:
                    node = in_flight.pop(future)
                    finished.add(node)
                    error = future.exception()
                    if error is not None:
                        # Leaving the pool context waits for in-flight nodes
                        logger.error(f"Unexpected error processing '{node}': {error}")
                        raise error

        if remaining:
            logger.debug(f"Not started: {', '.join(remaining)}")
        return remaining

"""Resource dependency ordering and bounded fan-out.

The sequencer is not a scheduler. Tasks reconcile resources in a fixed,
hand-written order and the core relies on that order holding:

    network -> subnet -> router -> security_group -> server/volume
    -> floating_ip -> load_balancer -> listener -> pool -> member

This module makes the convention checkable:
1. A dependency graph over resource kinds with cycle detection and a
   deterministic topological order.
2. A per-run ``Sequencer`` that records which kinds were reconciled and
   flags a kind reconciled before a prerequisite the plan declares.
3. ``run_bounded`` for independent creations (N worker nodes) as a
   bounded worker pool under structured concurrency.

EXAMPLE:
```python
sequencer = Sequencer(planned={"network", "subnet", "server"}, strict=True)
sequencer.record("network")
sequencer.check("server")   # raises OutOfOrderError: subnet not reconciled yet
```
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from typing import TypeVar

from .errors import OutOfOrderError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CyclicDependencyError(ValueError):
    """Raised when the kind dependency table contains a cycle."""

    pass


# Kind -> kinds that must be reconciled first (when the plan contains them)
RESOURCE_DEPENDENCIES: dict[str, list[str]] = {
    # OpenStack network layer
    "network": [],
    "subnet": ["network"],
    "router": ["subnet"],
    "security_group": ["network"],
    "security_group_rule": ["security_group"],
    # Compute and storage
    "port": ["subnet", "security_group"],
    "server": ["subnet", "security_group"],
    "volume": [],
    # Public addressing
    "floating_ip": ["router"],
    # Load balancing
    "load_balancer": ["subnet", "floating_ip"],
    "listener": ["load_balancer"],
    "pool": ["listener"],
    "health_monitor": ["pool"],
    "member": ["pool", "server"],
    # Rancher
    "cluster": [],
    "registration_token": ["cluster"],
    "project": ["cluster"],
    "namespace": ["project"],
}


@dataclass
class DependencyNode:
    """A node in the kind dependency graph."""

    kind: str
    depends_on: list[str] = field(default_factory=list)


@dataclass
class DependencyGraph:
    """Directed acyclic graph of resource kind dependencies."""

    nodes: dict[str, DependencyNode] = field(default_factory=dict)

    @classmethod
    def from_table(cls, table: dict[str, list[str]] | None = None) -> DependencyGraph:
        graph = cls()
        for kind, deps in (table or RESOURCE_DEPENDENCIES).items():
            graph.add_node(kind, deps)
        return graph

    def add_node(self, kind: str, depends_on: list[str] | None = None) -> None:
        """Add a kind and its prerequisites; unknown prerequisites become nodes."""
        if kind in self.nodes:
            if depends_on:
                self.nodes[kind].depends_on = depends_on
        else:
            self.nodes[kind] = DependencyNode(kind=kind, depends_on=depends_on or [])

        for dep in depends_on or []:
            if dep not in self.nodes:
                self.nodes[dep] = DependencyNode(kind=dep)

    def topological_sort(self) -> list[str]:
        """Return kinds in dependency order (prerequisites first).

        Raises:
            CyclicDependencyError: If a cycle is detected.
        """
        dependents: dict[str, list[str]] = {node: [] for node in self.nodes}
        in_degree: dict[str, int] = {node: 0 for node in self.nodes}

        for node in self.nodes.values():
            for dep in node.depends_on:
                dependents[dep].append(node.kind)
                in_degree[node.kind] += 1

        # Kahn's algorithm
        result: list[str] = []
        queue = [node for node, degree in in_degree.items() if degree == 0]

        while queue:
            # Sort for deterministic ordering among nodes with same in_degree
            queue.sort()
            current = queue.pop(0)
            result.append(current)

            for dependent in dependents[current]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    queue.append(dependent)

        if len(result) != len(self.nodes):
            cycle_nodes = sorted(node for node, degree in in_degree.items() if degree > 0)
            raise CyclicDependencyError(f"Circular dependency detected involving: {cycle_nodes}")

        return result

    def prerequisites(self, kind: str) -> set[str]:
        """All transitive prerequisites of ``kind``."""
        seen: set[str] = set()
        stack = list(self.nodes[kind].depends_on) if kind in self.nodes else []
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            stack.extend(self.nodes.get(current, DependencyNode(current)).depends_on)
        return seen

    def order(self, kinds: Iterable[str]) -> list[str]:
        """Return ``kinds`` sorted into dependency order."""
        wanted = set(kinds)
        return [kind for kind in self.topological_sort() if kind in wanted]


class Sequencer:
    """Per-run guard that resources are reconciled in dependency order.

    Args:
        planned: Kinds the current plan contains. Only planned prerequisites
            are enforced, so a run that skips load balancing is not blocked.
        strict: Raise OutOfOrderError on violation instead of logging.
        graph: Dependency graph (defaults to RESOURCE_DEPENDENCIES).
    """

    def __init__(
        self,
        planned: Iterable[str] | None = None,
        strict: bool = False,
        graph: DependencyGraph | None = None,
    ) -> None:
        self._graph = graph or DependencyGraph.from_table()
        self._graph.topological_sort()
        self._planned = set(planned or [])
        self._strict = strict
        self._reconciled: set[str] = set()

    @property
    def reconciled(self) -> frozenset[str]:
        return frozenset(self._reconciled)

    def missing(self, kind: str) -> list[str]:
        """Planned prerequisites of ``kind`` not yet reconciled."""
        required = self._graph.prerequisites(kind) & self._planned
        return sorted(required - self._reconciled)

    def check(self, kind: str) -> None:
        """Verify ``kind`` may be reconciled now."""
        missing = self.missing(kind)
        if not missing:
            return
        if self._strict:
            raise OutOfOrderError(kind, missing)
        logger.warning(
            f"Reconciling {kind} before its prerequisites",
            extra={"kind": kind, "missing": missing},
        )

    def record(self, kind: str) -> None:
        self._reconciled.add(kind)


async def run_bounded(
    factories: list[Callable[[], Awaitable[T]]],
    limit: int,
) -> list[T]:
    """Run independent coroutines with at most ``limit`` in flight.

    Results come back in submission order. The first failure cancels the
    remaining work (structured concurrency via ``asyncio.TaskGroup``) and
    propagates; with several failures the first one is re-raised.
    """
    if limit < 1:
        raise ValueError("limit must be at least 1")

    semaphore = asyncio.Semaphore(limit)
    results: list[T | None] = [None] * len(factories)

    async def worker(index: int, factory: Callable[[], Awaitable[T]]) -> None:
        async with semaphore:
            results[index] = await factory()

    try:
        async with asyncio.TaskGroup() as group:
            for index, factory in enumerate(factories):
                group.create_task(worker(index, factory))
    except* Exception as eg:
        # Surface the original error rather than the group wrapper
        raise eg.exceptions[0] from None

    return results  # type: ignore[return-value]

"""Dependency graph utilities for task chains.

Provides a directed graph keyed by task id, topological ordering (Kahn's
algorithm) and the validation run when a chain is submitted.
"""

from __future__ import annotations

from collections import deque
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field


class GraphError(Exception):
    """Raised for cycles or edges that point at unknown nodes."""


@dataclass
class Graph:
    """Directed graph using adjacency lists.

    An edge ``a -> b`` means *b* depends on *a*: *a* must complete first.
    """

    _adjacency: dict[str, list[str]] = field(default_factory=dict)

    def add_node(self, name: str) -> None:
        """Add a node (idempotent)."""
        self._adjacency.setdefault(name, [])

    def add_edge(self, source: str, target: str) -> None:
        """Add ``source -> target``; duplicate edges are ignored."""
        self.add_node(source)
        self.add_node(target)
        if target not in self._adjacency[source]:
            self._adjacency[source].append(target)

    @property
    def nodes(self) -> list[str]:
        return list(self._adjacency)

    @property
    def edges(self) -> list[tuple[str, str]]:
        return [(src, tgt) for src, targets in self._adjacency.items() for tgt in targets]

    def successors(self, name: str) -> list[str]:
        if name not in self._adjacency:
            raise GraphError(f"Unknown node: {name!r}")
        return list(self._adjacency[name])

    def predecessors(self, name: str) -> list[str]:
        if name not in self._adjacency:
            raise GraphError(f"Unknown node: {name!r}")
        return [src for src, targets in self._adjacency.items() if name in targets]

    def in_degree(self, name: str) -> int:
        return len(self.predecessors(name))

    @classmethod
    def from_dependencies(cls, dependencies: Mapping[str, Iterable[str]]) -> Graph:
        """Build a graph from ``{node: [nodes it depends on]}``.

        Raises:
            GraphError: If a dependency names a node that is not a key.
        """
        graph = cls()
        for name in dependencies:
            graph.add_node(name)
        for name, deps in dependencies.items():
            for dep in deps:
                if dep not in dependencies:
                    raise GraphError(f"{name!r} depends on unknown node {dep!r}")
                graph.add_edge(dep, name)
        return graph


def topological_sort(graph: Graph) -> list[str]:
    """Order nodes so every node follows all of its dependencies.

    Ties are broken by insertion order, so a chain declared in order
    is executed in that order.

    Raises:
        GraphError: If the graph contains a cycle.
    """
    all_nodes = graph.nodes
    in_deg: dict[str, int] = {n: 0 for n in all_nodes}
    for _src, tgt in graph.edges:
        in_deg[tgt] += 1

    queue: deque[str] = deque(n for n in all_nodes if in_deg[n] == 0)
    order: list[str] = []
    while queue:
        current = queue.popleft()
        order.append(current)
        for succ in graph.successors(current):
            in_deg[succ] -= 1
            if in_deg[succ] == 0:
                queue.append(succ)

    if len(order) != len(all_nodes):
        stuck = sorted(n for n, d in in_deg.items() if d > 0)
        raise GraphError(f"Cycle detected among {stuck!r}")
    return order

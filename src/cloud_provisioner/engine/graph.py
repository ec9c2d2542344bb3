"""Dependency graph construction and ordering.

Nodes are kept in a list sorted by ``(kind, name)``; edges are index
adjacency lists, so ordering and cycle detection are plain array walks.
"""

from __future__ import annotations

import heapq
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from cloud_provisioner.engine.errors import (
    DependencyCycleError,
    DuplicateAddressError,
    UnresolvedReferenceError,
)
from cloud_provisioner.resources.markers import iter_references

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Mapping, Sequence

    from cloud_provisioner.resources.base import Resource


def address_sort_key(address: str) -> tuple[str, str]:
    """``"kind.name"`` → ``(kind, name)`` for deterministic tie-breaks."""
    kind, _, name = address.partition(".")
    return kind, name


class DependencyGraph:
    """A directed graph where nodes depend on other nodes."""

    def __init__(
        self,
        nodes: Iterable[str],
        dependencies: Mapping[str, Iterable[str]],
        *,
        sort_key: Callable[[str], Any] = address_sort_key,
    ) -> None:
        self._nodes: list[str] = sorted(set(nodes), key=sort_key)
        self._index: dict[str, int] = {n: i for i, n in enumerate(self._nodes)}
        # index -> sorted indices of deps within graph (external deps dropped)
        self._deps: list[list[int]] = []
        self._dependents: list[list[int]] = [[] for _ in self._nodes]
        for i, node in enumerate(self._nodes):
            deps = sorted({self._index[d] for d in dependencies.get(node, []) if d in self._index})
            self._deps.append(deps)
            for d in deps:
                self._dependents[d].append(i)

    @property
    def nodes(self) -> list[str]:
        return list(self._nodes)

    def __contains__(self, node: object) -> bool:
        return node in self._index

    def dependencies_of(self, node: str) -> list[str]:
        return [self._nodes[d] for d in self._deps[self._index[node]]]

    def dependents_of(self, node: str) -> list[str]:
        return [self._nodes[d] for d in self._dependents[self._index[node]]]

    def topological_order(self) -> list[str]:
        """Return deterministic topo order (sort key tie-break)."""
        indegree = [len(deps) for deps in self._deps]
        ready = [i for i, deg in enumerate(indegree) if deg == 0]
        heapq.heapify(ready)

        order: list[int] = []
        while ready:
            i = heapq.heappop(ready)
            order.append(i)
            for child in self._dependents[i]:
                indegree[child] -= 1
                if indegree[child] == 0:
                    heapq.heappush(ready, child)

        if len(order) != len(self._nodes):
            placed = set(order)
            raise DependencyCycleError(
                self._find_cycle([i for i in range(len(self._nodes)) if i not in placed])
            )

        return [self._nodes[i] for i in order]

    def reverse_topological_order(self) -> list[str]:
        order = self.topological_order()
        order.reverse()
        return order

    def _find_cycle(self, candidates: list[int]) -> list[str]:
        """Extract one concrete cycle among nodes Kahn's algorithm could not place."""
        allowed = set(candidates)
        state = dict.fromkeys(candidates, 0)  # 0 = unvisited, 1 = on stack, 2 = done
        for start in candidates:
            if state[start]:
                continue
            path: list[int] = []
            stack: list[tuple[int, int]] = [(start, 0)]
            while stack:
                node, pos = stack.pop()
                if pos == 0:
                    state[node] = 1
                    path.append(node)
                deps = [d for d in self._deps[node] if d in allowed]
                if pos < len(deps):
                    stack.append((node, pos + 1))
                    nxt = deps[pos]
                    if state[nxt] == 1:
                        cycle = path[path.index(nxt) :]
                        return [self._nodes[i] for i in cycle]
                    if state[nxt] == 0:
                        stack.append((nxt, 0))
                else:
                    state[node] = 2
                    path.pop()
        # Unreachable for a graph Kahn's algorithm rejected; report the candidates.
        return [self._nodes[i] for i in candidates]


@dataclass(frozen=True)
class ResourceGraph:
    """Desired resources plus their dependency graph."""

    resources: dict[str, Resource]
    dependencies: dict[str, list[str]]
    graph: DependencyGraph

    def topological_order(self) -> list[str]:
        return self.graph.topological_order()


def build_graph(resources: Sequence[Resource]) -> ResourceGraph:
    """Build the dependency graph of *resources*: explicit ``depends_on`` plus references.

    Raises:
        DuplicateAddressError: Two resources share ``(kind, name)``.
        UnresolvedReferenceError: A reference or ``depends_on`` names a missing
            resource or a field the target kind does not have.
        DependencyCycleError: The references form a cycle.
    """
    by_addr: dict[str, Resource] = {}
    for r in resources:
        if r.address in by_addr:
            raise DuplicateAddressError(r.address)
        by_addr[r.address] = r

    dep_map: dict[str, list[str]] = {}
    for addr, r in by_addr.items():
        deps: list[str] = []
        for dep in r.depends_on:
            if dep not in by_addr:
                raise UnresolvedReferenceError(addr, dep, attribute="depends_on")
            if dep not in deps:
                deps.append(dep)
        for attr_path, ref in iter_references(r.attributes()):
            target = by_addr.get(ref.address)
            if target is None or not target.has_field(ref.field):
                raise UnresolvedReferenceError(addr, str(ref), attribute=attr_path)
            if ref.address not in deps:
                deps.append(ref.address)
        dep_map[addr] = deps

    graph = DependencyGraph(by_addr, dep_map)
    graph.topological_order()  # fail fast on cycles
    return ResourceGraph(resources=by_addr, dependencies=dep_map, graph=graph)

"""Dependency graph over the steps of one workflow.

Manifesto:
    The engine asks the graph three questions: *is this structure legal?*,
    *what can run now?* and *what does a change touch?*. The graph answers
    them from node ids and dependency edges alone; it knows nothing about
    executors, data or time. Step statuses are passed in, never stored.

ARCHITECTURE
────────────
::

    DependencyGraph
      ├── add_node / remove_node / set_dependencies   ─ structure
      ├── missing_dependencies()    ─ edges pointing at unknown nodes
      ├── has_cycle()               ─ DFS with an explicit recursion stack
      ├── find_cycle_nodes()        ─ every node lying on any cycle
      ├── eligible_nodes(statuses)  ─ pending nodes whose deps are completed
      ├── affected_by(ids)          ─ reflexive-transitive dependents
      └── topological_order()       ─ Kahn, ties broken by declaration order

Edges point from a node to its dependencies. Declaration order is kept and
every list-returning query honours it, so scheduling is deterministic.

Example::

    graph = DependencyGraph()
    graph.add_node("extract")
    graph.add_node("transform", ["extract"])
    graph.add_node("load", ["transform"])

    graph.eligible_nodes({"extract": "pending", "transform": "pending", "load": "pending"})
    # ['extract']
    graph.affected_by(["transform"])
    # {'transform', 'load'}

Tags:
    flowspine, orchestration, DAG, cycle-detection, scheduling

Doc-Types:
    api-reference
"""

from __future__ import annotations

from collections import deque
from collections.abc import Iterable, Iterator, Mapping

from flowspine.orchestration.exceptions import (
    CyclicDependencyError,
    DuplicateStepError,
    UnknownDependencyError,
)
from flowspine.orchestration.models import StepStatus


class DependencyGraph:
    """Directed graph of step ids and their dependencies."""

    def __init__(self) -> None:
        # Insertion-ordered: iteration order is declaration order
        self._deps: dict[str, tuple[str, ...]] = {}

    @classmethod
    def from_edges(cls, edges: Iterable[tuple[str, Iterable[str]]]) -> DependencyGraph:
        """Build from ``(node, dependencies)`` pairs in declaration order."""
        graph = cls()
        for node, deps in edges:
            graph.add_node(node, deps)
        return graph

    # =========================================================================
    # Structure
    # =========================================================================

    def add_node(self, node: str, dependencies: Iterable[str] = ()) -> None:
        """Add a node. Dependencies may name nodes that are added later."""
        if node in self._deps:
            raise DuplicateStepError(node)
        self._deps[node] = _dedupe(dependencies)

    def remove_node(self, node: str) -> None:
        """Remove a node; edges other nodes hold towards it become dangling."""
        if node not in self._deps:
            raise KeyError(node)
        del self._deps[node]

    def set_dependencies(self, node: str, dependencies: Iterable[str]) -> tuple[str, ...]:
        """Replace a node's dependencies, returning the previous ones."""
        if node not in self._deps:
            raise KeyError(node)
        previous = self._deps[node]
        self._deps[node] = _dedupe(dependencies)
        return previous

    def dependencies_of(self, node: str) -> tuple[str, ...]:
        """Direct dependencies of a node."""
        return self._deps[node]

    def dependents_of(self, node: str) -> list[str]:
        """Nodes that depend directly on ``node``, in declaration order."""
        return [other for other, deps in self._deps.items() if node in deps]

    def nodes(self) -> list[str]:
        return list(self._deps)

    def __contains__(self, node: object) -> bool:
        return node in self._deps

    def __len__(self) -> int:
        return len(self._deps)

    def __iter__(self) -> Iterator[str]:
        return iter(self._deps)

    # =========================================================================
    # Validation
    # =========================================================================

    def missing_dependencies(self) -> dict[str, list[str]]:
        """Map each node with dangling edges to the unknown ids it names."""
        missing: dict[str, list[str]] = {}
        for node, deps in self._deps.items():
            unknown = [dep for dep in deps if dep not in self._deps]
            if unknown:
                missing[node] = unknown
        return missing

    def has_cycle(self) -> bool:
        """True if any node can reach itself through its dependencies.

        Iterative DFS: a node on the current recursion stack that is reached
        again closes a cycle. A self-dependency is a cycle of length one.
        """
        done: set[str] = set()
        for root in self._deps:
            if root in done:
                continue
            on_stack = {root}
            work: list[tuple[str, Iterator[str]]] = [(root, iter(self._known_deps(root)))]
            while work:
                node, children = work[-1]
                for child in children:
                    if child in on_stack:
                        return True
                    if child not in done:
                        on_stack.add(child)
                        work.append((child, iter(self._known_deps(child))))
                        break
                else:
                    work.pop()
                    on_stack.discard(node)
                    done.add(node)
        return False

    def find_cycle_nodes(self) -> list[str]:
        """Every node lying on some cycle, in declaration order.

        Tarjan's strongly-connected components, run iteratively: a node is on
        a cycle iff its component has more than one member or it depends on
        itself. Nodes merely downstream of a cycle are not reported.
        """
        index: dict[str, int] = {}
        low: dict[str, int] = {}
        stack: list[str] = []
        on_stack: set[str] = set()
        on_cycle: set[str] = set()
        counter = 0

        for root in self._deps:
            if root in index:
                continue
            index[root] = low[root] = counter
            counter += 1
            stack.append(root)
            on_stack.add(root)
            work: list[tuple[str, Iterator[str]]] = [(root, iter(self._known_deps(root)))]

            while work:
                node, children = work[-1]
                descended = False
                for child in children:
                    if child not in index:
                        index[child] = low[child] = counter
                        counter += 1
                        stack.append(child)
                        on_stack.add(child)
                        work.append((child, iter(self._known_deps(child))))
                        descended = True
                        break
                    if child in on_stack:
                        low[node] = min(low[node], index[child])
                if descended:
                    continue

                work.pop()
                if work:
                    parent = work[-1][0]
                    low[parent] = min(low[parent], low[node])

                if low[node] == index[node]:
                    component = []
                    while True:
                        member = stack.pop()
                        on_stack.discard(member)
                        component.append(member)
                        if member == node:
                            break
                    if len(component) > 1 or node in self._deps[node]:
                        on_cycle.update(component)

        return [node for node in self._deps if node in on_cycle]

    def validate(self, workflow_id: str | None = None) -> None:
        """Raise if the graph has dangling edges or cycles.

        Raises:
            UnknownDependencyError: First node (declaration order) with unknown deps
            CyclicDependencyError: Lists every node lying on a cycle
        """
        missing = self.missing_dependencies()
        if missing:
            node, unknown = next(iter(missing.items()))
            raise UnknownDependencyError(node, unknown, workflow_id=workflow_id)
        if self.has_cycle():
            raise CyclicDependencyError(self.find_cycle_nodes(), workflow_id=workflow_id)

    # =========================================================================
    # Scheduling queries
    # =========================================================================

    def eligible_nodes(self, status_of: Mapping[str, StepStatus | str]) -> list[str]:
        """Pending nodes whose dependencies are all completed.

        Args:
            status_of: Current status of every node (missing → pending)
        """
        eligible = []
        for node, deps in self._deps.items():
            if status_of.get(node, StepStatus.PENDING) != StepStatus.PENDING:
                continue
            if all(status_of.get(dep) == StepStatus.COMPLETED for dep in deps):
                eligible.append(node)
        return eligible

    def affected_by(self, changed: Iterable[str]) -> set[str]:
        """Changed nodes plus everything that transitively depends on them."""
        dependents: dict[str, list[str]] = {node: [] for node in self._deps}
        for node, deps in self._deps.items():
            for dep in deps:
                if dep in dependents:
                    dependents[dep].append(node)

        visited: set[str] = set()
        queue: deque[str] = deque()
        for node in changed:
            if node not in self._deps:
                raise KeyError(node)
            if node not in visited:
                visited.add(node)
                queue.append(node)

        while queue:
            node = queue.popleft()
            for dependent in dependents[node]:
                if dependent not in visited:
                    visited.add(dependent)
                    queue.append(dependent)
        return visited

    def topological_order(self) -> list[str]:
        """Dependencies before dependents (Kahn's algorithm).

        Among nodes that become ready together, declaration order wins.

        Raises:
            CyclicDependencyError: If the graph has a cycle
        """
        position = {node: i for i, node in enumerate(self._deps)}
        in_degree = {node: len(self._known_deps(node)) for node in self._deps}
        dependents: dict[str, list[str]] = {node: [] for node in self._deps}
        for node in self._deps:
            for dep in self._known_deps(node):
                dependents[dep].append(node)

        ready = [node for node, degree in in_degree.items() if degree == 0]
        order: list[str] = []
        while ready:
            ready.sort(key=position.__getitem__)
            node = ready.pop(0)
            order.append(node)
            for dependent in dependents[node]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    ready.append(dependent)

        if len(order) != len(self._deps):
            raise CyclicDependencyError(self.find_cycle_nodes())
        return order

    # =========================================================================
    # Internals
    # =========================================================================

    def _known_deps(self, node: str) -> tuple[str, ...]:
        return tuple(dep for dep in self._deps[node] if dep in self._deps)

    def __repr__(self) -> str:
        return f"DependencyGraph(nodes={len(self._deps)})"


def _dedupe(items: Iterable[str]) -> tuple[str, ...]:
    return tuple(dict.fromkeys(items))


__all__ = ["DependencyGraph"]

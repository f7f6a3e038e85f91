"""
Dependency graph with Kahn's algorithm.

Used in two places: the configuration validator builds one over field and
cascading-step references to find cycles, and the submission pipeline builds
one over its steps to get an execution order.
"""

from __future__ import annotations

from collections import deque


class DependencyGraph:
    """Nodes in insertion order; ``depends_on`` edges point at prerequisites."""

    def __init__(self) -> None:
        self._edges: dict[str, list[str]] = {}

    def add_node(self, name: str, depends_on: list[str] | None = None) -> DependencyGraph:
        self._edges.setdefault(name, [])
        for dep in depends_on or []:
            if dep not in self._edges[name]:
                self._edges[name].append(dep)
        return self

    def __contains__(self, name: str) -> bool:
        return name in self._edges

    def depends_on(self, name: str) -> list[str]:
        return list(self._edges.get(name, []))

    def unknown_dependencies(self) -> list[tuple[str, str]]:
        return [
            (name, dep)
            for name, deps in self._edges.items()
            for dep in deps
            if dep not in self._edges
        ]

    def _kahn(self) -> tuple[list[str], list[str]]:
        """Returns (ordered nodes, nodes left over because they sit on or behind a cycle)."""
        in_degree = {name: 0 for name in self._edges}
        dependents: dict[str, list[str]] = {name: [] for name in self._edges}
        for name, deps in self._edges.items():
            for dep in deps:
                if dep in self._edges:
                    in_degree[name] += 1
                    dependents[dep].append(name)

        queue = deque(name for name, degree in in_degree.items() if degree == 0)
        order: list[str] = []
        while queue:
            current = queue.popleft()
            order.append(current)
            for name in dependents[current]:
                in_degree[name] -= 1
                if in_degree[name] == 0:
                    queue.append(name)

        leftover = [name for name in self._edges if name not in set(order)]
        return order, leftover

    def topological_order(self) -> list[str]:
        unknown = self.unknown_dependencies()
        if unknown:
            name, dep = unknown[0]
            raise ValueError(f"'{name}' depends on unknown node '{dep}'")
        order, leftover = self._kahn()
        if leftover:
            raise ValueError(f"Cycle detected among: {', '.join(leftover)}")
        return order

    def cycle_members(self) -> list[str]:
        """Nodes that lie on a cycle (not merely downstream of one)."""
        _, leftover = self._kahn()
        remaining = set(leftover)
        members = []
        for start in leftover:
            # A leftover node is on a cycle when it can reach itself through leftover nodes.
            stack = [d for d in self._edges[start] if d in remaining]
            seen: set[str] = set()
            while stack:
                node = stack.pop()
                if node == start:
                    members.append(start)
                    break
                if node in seen:
                    continue
                seen.add(node)
                stack.extend(d for d in self._edges[node] if d in remaining)
        return members

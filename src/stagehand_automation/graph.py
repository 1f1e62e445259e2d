from __future__ import annotations

from typing import Iterable, Mapping, Sequence

from .errors import CycleError, PlanValidationError
from .references import find_references
from .types import Resource


class DependencyGraph:
    """Index-based adjacency for a set of named nodes.

    ``dependencies[i]`` holds the indices node ``i`` waits for and
    ``dependents[i]`` the indices waiting on node ``i``.
    """

    def __init__(self, names: Sequence[str], edges: Mapping[str, Iterable[str]]):
        self.names = list(names)
        self.index = {name: idx for idx, name in enumerate(self.names)}
        self.dependencies: list[set[int]] = [set() for _ in self.names]
        self.dependents: list[set[int]] = [set() for _ in self.names]
        for name, deps in edges.items():
            node = self.index[name]
            for dep in deps:
                if dep not in self.index:
                    raise PlanValidationError(f"'{name}' depends on unknown resource '{dep}'")
                dep_idx = self.index[dep]
                self.dependencies[node].add(dep_idx)
                self.dependents[dep_idx].add(node)

    @classmethod
    def from_resources(cls, resources: Sequence[Resource]) -> "DependencyGraph":
        names: list[str] = []
        seen: set[str] = set()
        for resource in resources:
            if resource.name in seen:
                raise PlanValidationError(f"Duplicate resource name '{resource.name}'")
            seen.add(resource.name)
            names.append(resource.name)
        edges: dict[str, set[str]] = {}
        for resource in resources:
            deps = set(resource.depends_on)
            deps |= {name for name, _ in find_references(resource.attributes)}
            edges[resource.name] = deps
        return cls(names, edges)

    def __len__(self) -> int:
        return len(self.names)

    def order(self) -> list[int]:
        """Return node indices in dependency order, declaration order breaking ties."""
        in_degree = [len(deps) for deps in self.dependencies]
        queue = [idx for idx, deg in enumerate(in_degree) if deg == 0]
        ordered: list[int] = []
        while queue:
            current = queue.pop(0)
            ordered.append(current)
            for node in sorted(self.dependents[current]):
                in_degree[node] -= 1
                if in_degree[node] == 0:
                    queue.append(node)
            queue.sort()
        if len(ordered) != len(self.names):
            done = set(ordered)
            remaining = [idx for idx in range(len(self.names)) if idx not in done]
            raise CycleError(self._find_cycle(remaining))
        return ordered

    def ordered_names(self) -> list[str]:
        return [self.names[idx] for idx in self.order()]

    def _find_cycle(self, candidates: list[int]) -> list[str]:
        # Every node left over by Kahn's algorithm lies on or behind a cycle, so
        # walking dependencies inside that set must revisit a node.
        pool = set(candidates)
        start = candidates[0]
        path: list[int] = []
        position: dict[int, int] = {}
        current = start
        while current not in position:
            position[current] = len(path)
            path.append(current)
            current = min(dep for dep in self.dependencies[current] if dep in pool)
        cycle = path[position[current]:] + [current]
        return [self.names[idx] for idx in cycle]

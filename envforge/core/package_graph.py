"""Package input DAG — topological ordering and cycle detection.

The graph is an arena of ``PackageRef`` nodes addressed by name.  Edges
run from a package to the inputs it declares.  Cycles are never allowed.
"""

from __future__ import annotations

from collections import deque
from collections.abc import Mapping

from envforge.models.packages import PackageRef


class CyclicDependencyError(ValueError):
    """Raised when the package graph contains a cycle."""

    def __init__(self, message: str, cycle: list[str]) -> None:
        super().__init__(message)
        self.cycle = cycle


class DanglingInputError(ValueError):
    """Raised when a package declares an input missing from the arena."""


class PackageGraph:
    """Directed acyclic graph of package inputs.

    Built from the ``DeclaredEnvironment.graph`` arena.  Construction
    validates that every input exists and that there are no cycles, so a
    successfully built graph can be ordered and walked safely.
    """

    def __init__(self, arena: Mapping[str, PackageRef]) -> None:
        self._nodes: dict[str, PackageRef] = dict(arena)
        # Forward edges: name -> inputs
        self._inputs: dict[str, list[str]] = {}
        # Reverse edges: name -> packages that take it as input
        self._dependents: dict[str, list[str]] = {name: [] for name in self._nodes}

        for name, ref in self._nodes.items():
            for dep in ref.inputs:
                if dep not in self._nodes:
                    raise DanglingInputError(
                        f"Package {name!r} declares input {dep!r}, "
                        f"which is not part of the graph."
                    )
            # duplicate inputs count as one edge
            self._inputs[name] = list(dict.fromkeys(ref.inputs))
            for dep in self._inputs[name]:
                self._dependents[dep].append(name)

        self._order = self._topological_order()

    def _topological_order(self) -> list[str]:
        """Kahn's algorithm; ties are broken by name for determinism."""
        in_degree = {name: len(deps) for name, deps in self._inputs.items()}
        queue = deque(sorted(name for name, deg in in_degree.items() if deg == 0))
        result: list[str] = []

        while queue:
            node = queue.popleft()
            result.append(node)
            for dependent in sorted(self._dependents[node]):
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    queue.append(dependent)

        if len(result) != len(self._nodes):
            remaining = {name for name, deg in in_degree.items() if deg > 0}
            cycle = self._find_cycle(remaining)
            raise CyclicDependencyError(
                f"Package graph has a cycle: {' -> '.join(cycle)}. "
                f"Ordered {len(result)}/{len(self._nodes)} packages.",
                cycle,
            )
        return result

    def _find_cycle(self, candidates: set[str]) -> list[str]:
        """Return one cycle among the nodes Kahn's algorithm could not order."""
        # Every leftover node has an unresolved input that is also leftover,
        # so following such inputs must revisit a node.
        start = min(candidates)
        path: list[str] = []
        seen: dict[str, int] = {}
        node = start
        while node not in seen:
            seen[node] = len(path)
            path.append(node)
            node = min(dep for dep in self._inputs[node] if dep in candidates)
        return path[seen[node]:] + [node]

    # ------------------------------------------------------------------
    # Query methods
    # ------------------------------------------------------------------

    @property
    def order(self) -> list[str]:
        """All package names, inputs before the packages that use them."""
        return list(self._order)

    def get(self, name: str) -> PackageRef:
        return self._nodes[name]

    def get_inputs(self, name: str) -> list[str]:
        """Return the direct inputs of a package."""
        return list(self._inputs.get(name, []))

    def get_dependents(self, name: str) -> list[str]:
        """Return every package that needs ``name``, directly or not, in build order."""
        affected = {name}
        for node in self._order:
            if any(dep in affected for dep in self._inputs.get(node, [])):
                affected.add(node)
        return [node for node in self._order if node in affected and node != name]

    def __len__(self) -> int:
        return len(self._nodes)

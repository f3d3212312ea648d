"""Dependency graph over a profile's files.

An edge (A, B) means A must be materialized before B, e.g. a template
before the file generated from it. Ordering is deterministic: files with
no edge between them are ordered lexicographically by path.
"""
from typing import Iterable, Optional

from .errors import CycleError
from .schema import DependencyEdge


class DependencyGraph:
    """Directed acyclic graph of file ordering constraints."""

    def __init__(
        self,
        nodes: Optional[Iterable[str]] = None,
        edges: Optional[Iterable[DependencyEdge]] = None,
    ):
        # node -> set of nodes it depends on
        self._deps: dict[str, set[str]] = {}
        for node in nodes or []:
            self.add_node(node)
        for edge in edges or []:
            self.add_edge(edge.from_path, edge.to_path)

    def add_node(self, path: str) -> None:
        self._deps.setdefault(path, set())

    def add_edge(self, from_path: str, to_path: str) -> None:
        """Declare that from_path must be materialized before to_path."""
        self.add_node(from_path)
        self.add_node(to_path)
        self._deps[to_path].add(from_path)

    @property
    def nodes(self) -> list[str]:
        return sorted(self._deps)

    def edges(self) -> list[DependencyEdge]:
        return sorted(
            (DependencyEdge(dep, node) for node, deps in self._deps.items() for dep in deps),
            key=lambda e: (e.from_path, e.to_path),
        )

    def dependencies_of(self, path: str) -> list[str]:
        return sorted(self._deps.get(path, ()))

    def __len__(self) -> int:
        return len(self._deps)

    def __contains__(self, path: str) -> bool:
        return path in self._deps

    def topological_order(self) -> list[str]:
        """
        Depth-first topological sort.

        Nodes are visited in lexicographic order and each node's
        dependencies are emitted before it, so the result is reproducible.

        Raises:
            CycleError: Naming the cycle, on revisiting a node that is
                still on the recursion stack
        """
        order: list[str] = []
        done: set[str] = set()
        stack: list[str] = []
        on_stack: set[str] = set()

        def visit(node: str) -> None:
            if node in done:
                return
            if node in on_stack:
                start = stack.index(node)
                # Stack holds dependents first, report in materialization order
                raise CycleError(list(reversed(stack[start:] + [node])))
            stack.append(node)
            on_stack.add(node)
            for dep in sorted(self._deps[node]):
                visit(dep)
            stack.pop()
            on_stack.discard(node)
            done.add(node)
            order.append(node)

        for node in sorted(self._deps):
            visit(node)
        return order

    def validate(self) -> None:
        """Raise CycleError if the graph is not acyclic."""
        self.topological_order()

    def layers(self) -> list[list[str]]:
        """
        Group files into layers that can run concurrently.

        A file's layer is one more than the deepest layer among its
        dependencies; files with no dependencies are in layer 0.
        """
        depth: dict[str, int] = {}
        for node in self.topological_order():
            deps = self._deps[node]
            depth[node] = 1 + max((depth[d] for d in deps), default=-1)

        grouped: dict[int, list[str]] = {}
        for node, level in depth.items():
            grouped.setdefault(level, []).append(node)
        return [sorted(grouped[level]) for level in sorted(grouped)]

    def reverse_layers(self) -> list[list[str]]:
        """Layers in restore order: dependents before their dependencies."""
        return list(reversed(self.layers()))


"""
Directed acyclic dependency graph for workflow steps.

**Design Decision Hidden** (Parnas's Information Hiding):
- **"How step dependencies are stored and traversed"**

Callers ask parents/children/roots questions; adjacency sets, the cycle
search and the level computation stay in here. The same class serves
templates (nodes are step names) and task instances (nodes are step ids).

**Construction validates acyclicity**: a cyclic edge set raises
CycleDetectedError, a fatal configuration error meant to surface when a
template is registered, never in the middle of a pass.

**Example**:
```python
graph = WorkflowGraph(
    ["fetch", "validate", "charge"],
    [("fetch", "validate"), ("validate", "charge")],
)
graph.roots()                  # frozenset({"fetch"})
graph.parents("charge")        # frozenset({"validate"})
print(graph.level_graph())
```
"""

from __future__ import annotations

from collections import Counter, deque
from collections.abc import Iterable
from dataclasses import dataclass

from pyconductor.core.errors import ConfigurationError, CycleDetectedError

__all__ = ["WorkflowGraph", "DagSummary"]


@dataclass(frozen=True)
class DagSummary:
    """
    Structural statistics of a workflow graph.

    **Attributes**:
        total_steps: Number of nodes
        root_count: Nodes with no parents
        leaf_count: Nodes with no children
        max_depth: Longest root-to-node distance (roots are depth 0)
        roots: Root node keys in declaration order
        leaves: Leaf node keys in declaration order
    """

    total_steps: int
    root_count: int
    leaf_count: int
    max_depth: int
    roots: tuple[str, ...]
    leaves: tuple[str, ...]


class WorkflowGraph:
    """
    Immutable parent → child dependency graph.

    Nodes keep their declaration order, which makes topological order and
    level listings deterministic.
    """

    def __init__(
        self,
        nodes: Iterable[str],
        edges: Iterable[tuple[str, str]],
        *,
        validate: bool = True,
    ):
        """
        Build the graph and (by default) reject cycles.

        **Args**:
            nodes: Node keys in declaration order
            edges: (parent, child) pairs
            validate: Raise on cycles; disable only to inspect broken input

        **Raises**:
            ConfigurationError: Duplicate node or edge endpoint not in nodes
            CycleDetectedError: If validate is set and the edges form a cycle
        """
        self._nodes: tuple[str, ...] = tuple(nodes)
        dupes = sorted(n for n, count in Counter(self._nodes).items() if count > 1)
        if dupes:
            raise ConfigurationError(f"Duplicate step(s) in graph: {', '.join(dupes)}")

        self._index: dict[str, int] = {n: i for i, n in enumerate(self._nodes)}
        self._parents: dict[str, set[str]] = {n: set() for n in self._nodes}
        self._children: dict[str, set[str]] = {n: set() for n in self._nodes}

        for parent, child in edges:
            if parent not in self._parents:
                raise ConfigurationError(
                    f"Edge {parent!r} -> {child!r} references unknown step {parent!r}"
                )
            if child not in self._parents:
                raise ConfigurationError(
                    f"Edge {parent!r} -> {child!r} references unknown step {child!r}"
                )
            self._children[parent].add(child)
            self._parents[child].add(parent)

        self._cycle = self._search_cycle()
        if validate and self._cycle is not None:
            raise CycleDetectedError(self._cycle)

    # ========================================================================
    # Core queries
    # ========================================================================

    @property
    def nodes(self) -> tuple[str, ...]:
        return self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, node: object) -> bool:
        return node in self._parents

    def parents(self, node: str) -> frozenset[str]:
        """Direct parents of a node (the steps it depends on)."""
        return frozenset(self._parents[node])

    def children(self, node: str) -> frozenset[str]:
        """Direct children of a node (the steps depending on it)."""
        return frozenset(self._children[node])

    def roots(self) -> frozenset[str]:
        """Nodes with zero incoming edges."""
        return frozenset(n for n in self._nodes if not self._parents[n])

    def leaves(self) -> frozenset[str]:
        """Nodes with zero outgoing edges."""
        return frozenset(n for n in self._nodes if not self._children[n])

    def is_acyclic(self) -> bool:
        return self._cycle is None

    def find_cycle(self) -> list[str] | None:
        """Return one cycle as a closed node path, or None when acyclic."""
        return list(self._cycle) if self._cycle is not None else None

    def edges(self) -> list[tuple[str, str]]:
        """All (parent, child) pairs in declaration order."""
        return [(p, c) for p in self._nodes for c in self._ordered(self._children[p])]

    def descendants(self, node: str) -> frozenset[str]:
        """All nodes reachable from ``node`` (excluding itself)."""
        seen: set[str] = set()
        queue = deque(self._children[node])
        while queue:
            current = queue.popleft()
            if current in seen:
                continue
            seen.add(current)
            queue.extend(self._children[current])
        return frozenset(seen)

    def reachable_from_roots(self) -> list[str]:
        """Breadth-first traversal from the roots, each node listed once."""
        seen: set[str] = set()
        order: list[str] = []
        queue = deque(self._ordered(self.roots()))
        while queue:
            current = queue.popleft()
            if current in seen:
                continue
            seen.add(current)
            order.append(current)
            queue.extend(self._ordered(self._children[current]))
        return order

    # ========================================================================
    # Ordering and levels
    # ========================================================================

    def topological_order(self) -> list[str]:
        """
        Stable topological order (Kahn's algorithm, ties by declaration order).

        **Raises**:
            CycleDetectedError: If the graph was built with validate=False and has a cycle
        """
        if self._cycle is not None:
            raise CycleDetectedError(self._cycle)

        in_degree = {n: len(self._parents[n]) for n in self._nodes}
        ready = deque(n for n in self._nodes if in_degree[n] == 0)
        order: list[str] = []
        while ready:
            node = ready.popleft()
            order.append(node)
            for child in self._ordered(self._children[node]):
                in_degree[child] -= 1
                if in_degree[child] == 0:
                    ready.append(child)
        return order

    def depths(self) -> dict[str, int]:
        """
        Longest distance from any root for each node.

        Roots have depth 0; a node's depth is one more than its deepest parent.
        """
        depths: dict[str, int] = {}
        for node in self.topological_order():
            parents = self._parents[node]
            depths[node] = max((depths[p] + 1 for p in parents), default=0)
        return depths

    def levels(self) -> list[list[str]]:
        """Nodes grouped by depth; nodes in one level can run in parallel."""
        depths = self.depths()
        if not depths:
            return []
        levels: list[list[str]] = [[] for _ in range(max(depths.values()) + 1)]
        for node in self._nodes:
            levels[depths[node]].append(node)
        return levels

    def summary(self) -> DagSummary:
        """
        Returns a summary of the graph structure.

        **Returns**:
            DagSummary with graph statistics
        """
        roots = tuple(self._ordered(self.roots()))
        leaves = tuple(self._ordered(self.leaves()))
        depths = self.depths()
        return DagSummary(
            total_steps=len(self._nodes),
            root_count=len(roots),
            leaf_count=len(leaves),
            max_depth=max(depths.values(), default=0),
            roots=roots,
            leaves=leaves,
        )

    def level_graph(self) -> str:
        """
        Returns a level-based view showing parallel execution levels.

        **Example output**:
        ```
        Level 0: [fetch]
                 ↓
        Level 1: [validate] [price] (2 parallel steps)
                 ↓
        Level 2: [charge]
        ```
        """
        output = f"Workflow Levels ({len(self._nodes)} steps):\n\n"
        levels = self.levels()
        for level, nodes in enumerate(levels):
            parallel_note = f" ({len(nodes)} parallel steps)" if len(nodes) > 1 else ""
            output += f"Level {level}: [{'] ['.join(nodes)}]{parallel_note}\n"
            if level < len(levels) - 1:
                output += "         ↓\n"
        return output

    # ========================================================================
    # Internals
    # ========================================================================

    def _ordered(self, nodes: Iterable[str]) -> list[str]:
        return sorted(nodes, key=self._index.__getitem__)

    def _search_cycle(self) -> tuple[str, ...] | None:
        # Iterative DFS with colouring; returns the first back-edge cycle found.
        white, grey, black = 0, 1, 2
        colour = dict.fromkeys(self._nodes, white)
        parent_of: dict[str, str] = {}

        for start in self._nodes:
            if colour[start] != white:
                continue
            stack: list[tuple[str, list[str]]] = [(start, self._ordered(self._children[start]))]
            colour[start] = grey
            while stack:
                node, pending = stack[-1]
                if not pending:
                    colour[node] = black
                    stack.pop()
                    continue
                child = pending.pop(0)
                if colour[child] == grey:
                    path = [child]
                    current = node
                    while current != child:
                        path.append(current)
                        current = parent_of[current]
                    path.append(child)
                    return tuple(reversed(path))
                if colour[child] == white:
                    colour[child] = grey
                    parent_of[child] = node
                    stack.append((child, self._ordered(self._children[child])))
        return None

    def __repr__(self) -> str:
        return f"WorkflowGraph(nodes={len(self._nodes)}, edges={len(self.edges())})"

"""Deterministic, insertion-ordered task graph and wave scheduling."""

from __future__ import annotations

from collections import deque
from collections.abc import Iterable, Iterator, Mapping, Sequence, Set
from dataclasses import dataclass
from typing import TYPE_CHECKING, cast

from taskwave.domain.models import Wave

if TYPE_CHECKING:
    from taskwave.domain.models import Plan


class StructuralError(ValueError):
    """Base class for plans whose dependency relation cannot be scheduled."""


class CycleError(StructuralError):
    """Raised when a cycle is detected in the task graph."""

    cycles: tuple[tuple[str, ...], ...]
    stuck: tuple[str, ...]

    def __init__(
        self,
        cycles: Iterable[Sequence[str]],
        *,
        stuck: Iterable[str] = (),
    ) -> None:
        normalized: tuple[tuple[str, ...], ...] = tuple(tuple(path) for path in cycles)
        self.cycles = normalized
        self.stuck = tuple(stuck)

        if not normalized:
            message = "Task graph contains at least one cycle."
        else:
            preview = ", ".join(" -> ".join(path) for path in normalized[:3])
            suffix = "..." if len(normalized) > 3 else ""
            message = f"Task graph contains cycle(s): {preview}{suffix}"
        if self.stuck:
            message = f"{message} Unschedulable tasks: {', '.join(self.stuck)}"
        super().__init__(message)


class MissingDependencyError(StructuralError):
    """Raised when a task depends on an id that is not in the plan."""

    missing: tuple[tuple[str, str], ...]

    def __init__(self, missing: Iterable[tuple[str, str]]) -> None:
        self.missing = tuple(missing)
        preview = ", ".join(f"{task} -> {dep}" for task, dep in self.missing[:5])
        suffix = "..." if len(self.missing) > 5 else ""
        super().__init__(f"Task graph has unresolved dependencies: {preview}{suffix}")


@dataclass(frozen=True, slots=True)
class GraphValidationResult:
    """Pre-flight report over a plan's dependency relation."""

    cycles: tuple[tuple[str, ...], ...] = ()
    missing_dependencies: tuple[tuple[str, str], ...] = ()
    orphans: tuple[str, ...] = ()

    @property
    def valid(self) -> bool:
        return not (self.cycles or self.missing_dependencies or self.orphans)

    def to_dict(self) -> dict[str, object]:
        return {
            "valid": self.valid,
            "cycles": [list(path) for path in self.cycles],
            "missing_dependencies": [
                {"task_id": task_id, "missing": missing}
                for task_id, missing in self.missing_dependencies
            ],
            "orphans": list(self.orphans),
        }


class TaskGraph:
    """
    Directed graph keyed by task id.

    Edges point from a dependency to its dependent (``parent -> child``).
    Traversal order follows node insertion order so results line up with the
    order tasks were declared in a plan.
    """

    __slots__ = ("_nodes", "_children", "_parents")

    def __init__(
        self,
        nodes: Iterable[str] | None = None,
        edges: Iterable[tuple[str, str]] | None = None,
    ) -> None:
        self._nodes: dict[str, int] = {}
        self._children: dict[str, dict[str, None]] = {}
        self._parents: dict[str, dict[str, None]] = {}

        if nodes is not None:
            for node_id in nodes:
                self.add_node(node_id)

        if edges is not None:
            for parent, child in edges:
                self.add_edge(parent, child)

    @classmethod
    def from_plan(cls, plan: Plan) -> TaskGraph:
        """Build a graph from a plan, ignoring dependencies that do not resolve."""
        graph = cls(nodes=plan.task_ids)
        for task in plan.tasks:
            for dependency in task.dependencies:
                if dependency in graph._nodes:
                    graph.add_edge(dependency, task.id)
        return graph

    @property
    def nodes(self) -> tuple[str, ...]:
        """All node IDs in insertion order."""
        return tuple(self._nodes)

    @property
    def edges(self) -> tuple[tuple[str, str], ...]:
        """All edges as ``(parent, child)`` pairs in insertion order."""
        return tuple(
            (parent, child) for parent in self._nodes for child in self._children[parent]
        )

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._nodes

    def add_node(self, node_id: str) -> None:
        """Add a node if it does not already exist."""
        self._validate_node_id(node_id)
        if node_id in self._nodes:
            return

        self._nodes[node_id] = len(self._nodes)
        self._children[node_id] = {}
        self._parents[node_id] = {}

    def remove_node(self, node_id: str) -> None:
        """Remove a node and all inbound/outbound edges."""
        self._assert_node_exists(node_id)

        for parent in tuple(self._parents[node_id]):
            del self._children[parent][node_id]
        for child in tuple(self._children[node_id]):
            del self._parents[child][node_id]

        del self._children[node_id]
        del self._parents[node_id]
        del self._nodes[node_id]

    def add_edge(self, parent: str, child: str) -> None:
        """Add a directed edge ``parent -> child``."""
        self._validate_node_id(parent)
        self._validate_node_id(child)

        if parent not in self._nodes:
            self.add_node(parent)
        if child not in self._nodes:
            self.add_node(child)

        self._children[parent].setdefault(child, None)
        self._parents[child].setdefault(parent, None)

    def waves(self) -> tuple[Wave, ...]:
        """
        Layer the graph into waves of mutually independent nodes.

        Wave 0 holds every node without parents. Each following wave holds the
        nodes whose last parent was placed in the previous wave. Within a wave
        nodes keep insertion order. Raises ``CycleError`` when any node can
        never be placed.
        """
        indegree: dict[str, int] = {node: len(self._parents[node]) for node in self._nodes}
        current = [node for node, degree in indegree.items() if degree == 0]

        waves: list[Wave] = []
        placed = 0
        while current:
            waves.append(Wave(level=len(waves), task_ids=tuple(current)))
            placed += len(current)

            released: list[str] = []
            for node in current:
                for child in self._children[node]:
                    indegree[child] -= 1
                    if indegree[child] == 0:
                        released.append(child)
            current = sorted(released, key=self._nodes.__getitem__)

        if placed != len(self._nodes):
            stuck = tuple(node for node, degree in indegree.items() if degree > 0)
            raise CycleError(self.detect_cycles(), stuck=stuck)

        return tuple(waves)

    def topological_sort(self) -> tuple[str, ...]:
        """Return the wave order flattened, or raise ``CycleError``."""
        return tuple(node for wave in self.waves() for node in wave.task_ids)

    def detect_cycles(self) -> tuple[tuple[str, ...], ...]:
        """
        Detect directed cycles.

        Returns cycle paths as closed paths, e.g. ``("A", "B", "C", "A")``.
        """
        state: dict[str, int] = {}
        stack: list[str] = []
        stack_index: dict[str, int] = {}
        cycles: dict[tuple[str, ...], None] = {}

        for start in self._nodes:
            if state.get(start, 0) != 0:
                continue

            state[start] = 1
            stack.append(start)
            stack_index[start] = len(stack) - 1
            frames: list[tuple[str, Iterator[str]]] = [(start, iter(self._children[start]))]

            while frames:
                node, child_iter = frames[-1]

                try:
                    child = next(child_iter)
                except StopIteration:
                    frames.pop()
                    state[node] = 2
                    stack.pop()
                    del stack_index[node]
                    continue

                child_state = state.get(child, 0)
                if child_state == 0:
                    state[child] = 1
                    stack_index[child] = len(stack)
                    stack.append(child)
                    frames.append((child, iter(self._children[child])))
                    continue

                if child_state == 1:
                    start_index = stack_index[child]
                    cycle = tuple(stack[start_index:] + [child])
                    cycles[self._canonicalize_cycle(cycle)] = None

        return tuple(cycles)

    def get_dependencies(self, node_id: str, *, transitive: bool = False) -> tuple[str, ...]:
        """Return direct or transitive dependencies for ``node_id``."""
        self._assert_node_exists(node_id)
        if not transitive:
            return tuple(self._parents[node_id])
        return self._breadth_first(node_id, upstream=True)

    def get_dependents(self, node_id: str, *, transitive: bool = False) -> tuple[str, ...]:
        """Return direct or transitive dependents for ``node_id``."""
        self._assert_node_exists(node_id)
        if not transitive:
            return tuple(self._children[node_id])
        return self._breadth_first(node_id, upstream=False)

    def get_runnable(self, completed: Set[str]) -> tuple[str, ...]:
        """
        Return nodes ready to run.

        A node is runnable when it is not already completed and all dependencies
        are present in ``completed``.
        """
        return tuple(
            node
            for node in self._nodes
            if node not in completed and all(parent in completed for parent in self._parents[node])
        )

    def roots(self) -> tuple[str, ...]:
        return tuple(node for node in self._nodes if not self._parents[node])

    def serialize(self) -> dict[str, object]:
        """Serialize graph to a stable JSON-friendly mapping."""
        return {
            "nodes": list(self._nodes),
            "edges": [list(edge) for edge in self.edges],
        }

    @classmethod
    def deserialize(cls, payload: Mapping[str, object]) -> TaskGraph:
        """Deserialize from :meth:`serialize` output."""
        nodes = cls._parse_nodes(payload.get("nodes", ()))
        edges = cls._parse_edges(payload.get("edges", ()))

        graph = cls(nodes=nodes)
        for parent, child in edges:
            graph.add_edge(parent, child)
        return graph

    def _breadth_first(self, node_id: str, *, upstream: bool) -> tuple[str, ...]:
        adjacency = self._parents if upstream else self._children
        visited: dict[str, None] = {}
        queue: deque[str] = deque(adjacency[node_id])

        while queue:
            node = queue.popleft()
            if node in visited or node == node_id:
                continue
            visited[node] = None
            queue.extend(neighbor for neighbor in adjacency[node] if neighbor not in visited)

        return tuple(visited)

    @staticmethod
    def _canonicalize_cycle(cycle: Sequence[str]) -> tuple[str, ...]:
        if len(cycle) < 2:
            raise ValueError("Cycle path must contain at least two nodes.")

        core = tuple(cycle[:-1])
        if len(core) == 1:
            return (core[0], core[0])

        best = core
        for offset in range(1, len(core)):
            rotated = core[offset:] + core[:offset]
            if rotated < best:
                best = rotated

        return best + (best[0],)

    @staticmethod
    def _parse_nodes(raw_nodes: object) -> tuple[str, ...]:
        if not isinstance(raw_nodes, Sequence) or isinstance(raw_nodes, (str, bytes, bytearray)):
            raise TypeError("'nodes' must be a sequence of strings.")

        nodes: list[str] = []
        seen: set[str] = set()
        for index, raw_node in enumerate(raw_nodes):
            if not isinstance(raw_node, str):
                raise TypeError(f"'nodes[{index}]' must be a string.")
            TaskGraph._validate_node_id(raw_node)
            if raw_node in seen:
                raise ValueError(f"Duplicate node '{raw_node}' in 'nodes'.")
            seen.add(raw_node)
            nodes.append(raw_node)
        return tuple(nodes)

    @staticmethod
    def _parse_edges(raw_edges: object) -> tuple[tuple[str, str], ...]:
        if not isinstance(raw_edges, Sequence) or isinstance(raw_edges, (str, bytes, bytearray)):
            raise TypeError("'edges' must be a sequence of [parent, child] pairs.")

        edges: list[tuple[str, str]] = []
        for index, raw_edge in enumerate(raw_edges):
            if not isinstance(raw_edge, Sequence) or isinstance(raw_edge, (str, bytes, bytearray)):
                raise TypeError(f"'edges[{index}]' must be a sequence of two strings.")
            pair = cast("Sequence[object]", raw_edge)
            if len(pair) != 2:
                raise ValueError(f"'edges[{index}]' must contain exactly two node IDs.")

            parent_raw, child_raw = pair[0], pair[1]
            if not isinstance(parent_raw, str) or not isinstance(child_raw, str):
                raise TypeError(f"'edges[{index}]' must contain only strings.")

            TaskGraph._validate_node_id(parent_raw)
            TaskGraph._validate_node_id(child_raw)
            edges.append((parent_raw, child_raw))

        return tuple(edges)

    @staticmethod
    def _validate_node_id(node_id: str) -> None:
        if not node_id:
            raise ValueError("Node ID must be non-empty.")

    def _assert_node_exists(self, node_id: str) -> None:
        if node_id not in self._nodes:
            raise KeyError(f"Unknown node: {node_id}")


def _missing_dependencies(plan: Plan) -> tuple[tuple[str, str], ...]:
    known = set(plan.task_ids)
    return tuple(
        (task.id, dependency)
        for task in plan.tasks
        for dependency in task.dependencies
        if dependency not in known
    )


def compute_waves(plan: Plan) -> tuple[Wave, ...]:
    """
    Partition ``plan`` into execution waves.

    Raises ``MissingDependencyError`` for unresolved dependency ids and then
    ``CycleError`` for cyclic plans. No partial wave list is ever returned.
    """
    missing = _missing_dependencies(plan)
    if missing:
        raise MissingDependencyError(missing)
    return TaskGraph.from_plan(plan).waves()


def downstream_of(plan: Plan, task_id: str) -> tuple[str, ...]:
    """Return every task that transitively depends on ``task_id``, breadth-first."""
    graph = TaskGraph.from_plan(plan)
    if task_id not in graph:
        return ()
    return graph.get_dependents(task_id, transitive=True)


def validate_plan(plan: Plan) -> GraphValidationResult:
    """
    Report cycles, unresolved dependencies and orphans without raising.

    A task is an orphan when no path leads to it from a root (a task that
    declares no dependencies). A plan without roots is entirely orphaned.
    """
    missing = _missing_dependencies(plan)
    graph = TaskGraph.from_plan(plan)
    cycles = graph.detect_cycles()

    roots = [task.id for task in plan.tasks if not task.dependencies]
    reachable: set[str] = set()
    queue: deque[str] = deque(roots)
    while queue:
        node = queue.popleft()
        if node in reachable:
            continue
        reachable.add(node)
        queue.extend(graph.get_dependents(node))
    orphans = tuple(task_id for task_id in plan.task_ids if task_id not in reachable)

    return GraphValidationResult(
        cycles=cycles,
        missing_dependencies=missing,
        orphans=orphans,
    )


__all__ = [
    "CycleError",
    "GraphValidationResult",
    "MissingDependencyError",
    "StructuralError",
    "TaskGraph",
    "compute_waves",
    "downstream_of",
    "validate_plan",
]

"""Dependency resolver - builds task graphs and assigns execution waves.

This module resolves dependency references (local ids or cross-source
pairs) against one global index, rejects unresolved references and cycles,
and partitions tasks into ordered waves with a Kahn-style iteration.
"""

from collections import defaultdict

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from maestro.core.errors import (
    CircularDependencyError,
    DuplicateTaskError,
    UnresolvedDependencyError,
)
from maestro.planning.models import (
    DependencyGraph,
    Plan,
    Task,
    TaskRef,
    Wave,
    task_sort_key,
)


class FileConflict(BaseModel):
    """Represents files touched by more than one task in one wave."""

    model_config = ConfigDict(frozen=True)

    file_path: str = Field(description="Path to conflicting file")
    task_keys: list[str] = Field(description="Keys of conflicting tasks")
    wave_number: int = Field(description="Wave where conflict occurs")

    @property
    def description(self) -> str:
        return (
            f"Multiple tasks in wave {self.wave_number} touch {self.file_path}: "
            f"{', '.join(self.task_keys)}"
        )


class DependencyResolver:
    """
    Resolve task dependencies and organize into execution waves.

    Wave assignment repeatedly collects every unassigned task whose
    dependencies all sit in earlier waves. Within a wave, tasks are ordered
    by numeric id then sub-id, independent of input order.

    Example:
        >>> resolver = DependencyResolver()
        >>> graph = resolver.resolve(plan.tasks)
        >>> [w.task_keys for w in graph.waves]
        [['1', '2'], ['3']]
    """

    def __init__(self, tasks: list[Task] | None = None) -> None:
        """
        Initialize the resolver.

        Args:
            tasks: Optional list of tasks to resolve.
        """
        self._tasks: list[Task] = list(tasks or [])
        self._graph = DependencyGraph()
        self._conflicts: list[FileConflict] = []

    def resolve(self, tasks: list[Task] | None = None) -> DependencyGraph:
        """
        Resolve dependencies and build the complete dependency graph.

        Args:
            tasks: Optional list of tasks (uses constructor tasks if not provided).

        Returns:
            DependencyGraph with nodes, resolved edges, and computed waves.

        Raises:
            DuplicateTaskError: If two tasks share a key.
            UnresolvedDependencyError: If a reference names no task.
            CircularDependencyError: If the graph has a cycle.
        """
        if tasks is not None:
            self._tasks = list(tasks)

        logger.info(f"Resolving dependencies for {len(self._tasks)} tasks")

        self._graph = self.build_graph(self._tasks)
        self._graph.waves = self.calculate_waves(self._graph)
        self._conflicts = self.detect_file_conflicts()

        if self._conflicts:
            logger.warning(f"Detected {len(self._conflicts)} same-wave file overlaps")

        logger.info(f"Resolved {len(self._tasks)} tasks into {self._graph.total_waves} waves")

        return self._graph

    def resolve_plan(self, plan: Plan) -> DependencyGraph:
        """Resolve a plan and store the computed waves on it."""
        graph = self.resolve(plan.tasks)
        plan.waves = list(graph.waves)
        return graph

    def get_graph(self) -> DependencyGraph:
        """Get the resolved dependency graph."""
        return self._graph

    def get_conflicts(self) -> list[FileConflict]:
        """Get detected same-wave file overlaps."""
        return self._conflicts

    # =========================================================================
    # GRAPH BUILDING
    # =========================================================================

    def build_graph(self, tasks: list[Task]) -> DependencyGraph:
        """
        Build a dependency graph with every reference resolved to a task key.

        Args:
            tasks: Tasks with dependency references.

        Returns:
            DependencyGraph without waves.

        Raises:
            DuplicateTaskError: If two tasks share a key.
            UnresolvedDependencyError: If a reference names no task.
        """
        graph = DependencyGraph()
        by_local_id: dict[str, list[str]] = defaultdict(list)

        for task in tasks:
            if task.key in graph.nodes:
                raise DuplicateTaskError(task.key)
            graph.nodes[task.key] = task
            by_local_id[task.id].append(task.key)

        for task in tasks:
            resolved: list[str] = []
            for reference in task.depends_on:
                key = self._resolve_reference(task, reference, graph.nodes, by_local_id)
                if key not in resolved:
                    resolved.append(key)
            graph.edges[task.key] = resolved

        logger.debug(
            f"Built dependency graph: {len(graph.nodes)} nodes, "
            f"{sum(len(d) for d in graph.edges.values())} edges"
        )
        return graph

    @staticmethod
    def _resolve_reference(
        task: Task,
        reference: str | TaskRef,
        nodes: dict[str, Task],
        by_local_id: dict[str, list[str]],
    ) -> str:
        """Resolve one dependency reference to a task key.

        A bare id resolves within the task's own source first, then as an
        exact key, then as a local id that is unique across the plan.
        """
        if isinstance(reference, TaskRef):
            if reference.key in nodes:
                return reference.key
            raise UnresolvedDependencyError(task.key, reference.key)

        ref = reference.strip()
        if task.source:
            local = TaskRef(source=task.source, id=ref).key
            if local in nodes:
                return local
        if ref in nodes:
            return ref
        candidates = by_local_id.get(ref, [])
        if len(candidates) == 1:
            return candidates[0]
        raise UnresolvedDependencyError(task.key, ref)

    # =========================================================================
    # WAVE CALCULATION
    # =========================================================================

    def calculate_waves(self, graph: DependencyGraph) -> list[Wave]:
        """
        Assign every task to a wave using topological levels.

        Args:
            graph: Graph with resolved edges.

        Returns:
            Ordered list of waves.

        Raises:
            CircularDependencyError: If some tasks can never be assigned.
        """
        waves: list[Wave] = []
        assigned: set[str] = set()
        remaining = set(graph.nodes)

        while remaining:
            ready = [
                key for key in remaining
                if all(dep in assigned for dep in graph.edges.get(key, []))
            ]

            if not ready:
                members = sorted(remaining, key=lambda k: self._order_key(graph.nodes[k]))
                residual = {k: graph.edges.get(k, []) for k in members}
                cycles = self.detect_cycles(residual)
                logger.error(f"Cannot assign remaining tasks: {members}")
                raise CircularDependencyError(members, cycles[0] if cycles else None)

            ready.sort(key=lambda k: self._order_key(graph.nodes[k]))
            waves.append(Wave(number=len(waves), task_keys=ready))
            assigned.update(ready)
            remaining.difference_update(ready)

        for wave in waves:
            logger.debug(f"{wave.name}: {len(wave)} tasks")

        return waves

    @staticmethod
    def _order_key(task: Task) -> tuple:
        return (task_sort_key(task.id), task.source, task.id)

    # =========================================================================
    # CYCLE DETECTION
    # =========================================================================

    def detect_cycles(
        self,
        graph: dict[str, list[str]],
    ) -> list[list[str]] | None:
        """
        Detect cycles in the dependency graph using DFS.

        Args:
            graph: Dependency graph (task key -> [dependency keys]).

        Returns:
            List of cycle paths if found, None otherwise.

        Example:
            >>> resolver.detect_cycles({"a": ["b"], "b": ["a"]})[0]
            ['a', 'b', 'a']
        """
        WHITE, GRAY, BLACK = 0, 1, 2
        colors: dict[str, int] = {node: WHITE for node in graph}
        cycles: list[list[str]] = []

        def dfs(node: str, path: list[str]) -> bool:
            colors[node] = GRAY
            path.append(node)

            for neighbor in graph.get(node, []):
                if neighbor not in colors:
                    continue
                if colors[neighbor] == GRAY:
                    cycle_start = path.index(neighbor)
                    cycles.append(path[cycle_start:] + [neighbor])
                    return True
                if colors[neighbor] == WHITE and dfs(neighbor, path):
                    return True

            path.pop()
            colors[node] = BLACK
            return False

        for node in graph:
            if colors[node] == WHITE and dfs(node, []):
                break

        return cycles if cycles else None

    # =========================================================================
    # CONFLICT DETECTION
    # =========================================================================

    def detect_file_conflicts(self) -> list[FileConflict]:
        """
        Detect files touched by several tasks within one wave.

        Such tasks will contend for the same file lock at runtime, and all
        but one will fail with a lock conflict.

        Returns:
            List of FileConflict objects.
        """
        conflicts: list[FileConflict] = []

        for wave in self._graph.waves:
            touched: dict[str, list[str]] = defaultdict(list)
            for key in wave.task_keys:
                task = self._graph.nodes.get(key)
                if not task:
                    continue
                for file_path in dict.fromkeys(task.files):
                    touched[file_path].append(key)

            for file_path, keys in touched.items():
                if len(keys) > 1:
                    conflict = FileConflict(
                        file_path=file_path,
                        task_keys=keys,
                        wave_number=wave.number,
                    )
                    conflicts.append(conflict)
                    logger.warning(conflict.description)

        return conflicts

    # =========================================================================
    # CRITICAL PATH
    # =========================================================================

    def calculate_critical_path(self) -> list[str]:
        """
        Find the longest chain of dependencies through the resolved graph.

        Returns:
            Task keys on the critical path, earliest first.
        """
        graph = self._graph
        depths: dict[str, int] = {}

        for wave in graph.waves:
            for key in wave.task_keys:
                deps = graph.edges.get(key, [])
                depths[key] = 1 + max((depths[d] for d in deps), default=-1)

        if not depths:
            return []

        current = max(depths, key=lambda k: (depths[k], k))
        path = [current]
        while graph.edges.get(current):
            current = max(graph.edges[current], key=lambda d: (depths.get(d, 0), d))
            path.append(current)

        return list(reversed(path))

    def get_execution_order(self) -> list[str]:
        """Get flat list of task keys in wave order."""
        order: list[str] = []
        for wave in self._graph.waves:
            order.extend(wave.task_keys)
        return order


# =============================================================================
# CONVENIENCE FUNCTIONS
# =============================================================================


def calculate_waves(tasks: list[Task]) -> list[Wave]:
    """
    Convenience function to compute waves for a task list.

    Example:
        >>> [w.task_keys for w in calculate_waves(tasks)]
        [['A', 'B'], ['C']]
    """
    return DependencyResolver(tasks).resolve().waves


def detect_conflicts(tasks: list[Task]) -> list[FileConflict]:
    """Detect same-wave file overlaps in a task list."""
    resolver = DependencyResolver(tasks)
    resolver.resolve()
    return resolver.get_conflicts()

"""Dependency graph - validation, repair and readiness over a task collection.

This module provides a derived, read-only view over a TaskCollection,
including referential integrity checks, cycle detection, deterministic
auto-fix, topological ordering, wave assignment and next-task selection.
"""

from collections import Counter, deque
from enum import Enum
from typing import Any

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from taskgraph.tasks.models import Task, TaskCollection

# =============================================================================
# RESULT MODELS
# =============================================================================


class ViolationKind(str, Enum):
    """Kinds of graph invariant violations."""

    MISSING_REFERENCE = "MISSING_REFERENCE"
    SELF_DEPENDENCY = "SELF_DEPENDENCY"
    CYCLE = "CYCLE"
    DUPLICATE_REFERENCE = "DUPLICATE_REFERENCE"


class Violation(BaseModel):
    """A single invariant violation naming the offending task ids."""

    model_config = ConfigDict(frozen=True)

    kind: ViolationKind
    task_id: int = Field(description="Task whose dependency list is at fault")
    dependency_id: int | None = Field(
        default=None,
        description="Referenced id for reference-level violations",
    )
    cycle: tuple[int, ...] = Field(
        default=(),
        description="Cycle path from back-edge target to the current node",
    )
    message: str = ""

    @property
    def task_ids(self) -> list[int]:
        """Every task id named by this violation."""
        if self.cycle:
            return list(self.cycle)
        ids = [self.task_id]
        if self.dependency_id is not None and self.dependency_id != self.task_id:
            ids.append(self.dependency_id)
        return ids


class FixAction(BaseModel):
    """One edge removed by auto-fix."""

    model_config = ConfigDict(frozen=True)

    kind: ViolationKind
    task_id: int
    removed_dependency: int
    message: str = ""


class AutoFixResult(BaseModel):
    """Repaired working copy plus the list of applied fixes."""

    collection: TaskCollection
    fixes: list[FixAction] = Field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.fixes)


class NextTaskReason(str, Enum):
    """Why no task was returned by next_task()."""

    NO_TASKS = "no_tasks"
    ALL_COMPLETE = "all_complete"
    ALL_BLOCKED = "all_blocked"


class NextTaskResult(BaseModel):
    """Outcome of next-task selection; task=None is a valid outcome."""

    task: Task | None = None
    reason: NextTaskReason | None = None
    message: str = ""
    candidates: list[int] = Field(
        default_factory=list,
        description="All ready task ids in selection order",
    )

    @property
    def found(self) -> bool:
        return self.task is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "task": self.task.to_dict() if self.task else None,
            "reason": self.reason.value if self.reason else None,
            "message": self.message,
            "candidates": self.candidates,
        }


# =============================================================================
# DEPENDENCY GRAPH
# =============================================================================


class DependencyGraph:
    """
    Read-only dependency view over a task collection.

    Never mutates the collection it wraps; auto_fix() returns a repaired
    copy that the mutation engine decides whether to commit.

    Example:
        >>> graph = DependencyGraph(collection)
        >>> graph.validate()
        []
        >>> graph.next_task().task.id
        2
    """

    def __init__(self, collection: TaskCollection) -> None:
        """
        Initialize the graph.

        Args:
            collection: Task collection to analyse.
        """
        self._collection = collection
        self._tasks: dict[int, Task] = {t.id: t for t in collection.tasks}

    @property
    def collection(self) -> TaskCollection:
        return self._collection

    def edges(self) -> dict[int, list[int]]:
        """Task id -> sorted, de-duplicated ids of existing dependencies (self-loops excluded)."""
        return {
            task_id: sorted(
                {d for d in task.dependencies if d in self._tasks and d != task_id}
            )
            for task_id, task in sorted(self._tasks.items())
        }

    # =========================================================================
    # VALIDATION
    # =========================================================================

    def validate(self) -> list[Violation]:
        """
        Check referential integrity and acyclicity.

        Returns:
            List of violations, empty when the graph is consistent.

        Example:
            >>> DependencyGraph(TaskCollection(tasks=[Task(id=1, title="A", dependencies=[99])])).validate()
            [Violation(kind=<ViolationKind.MISSING_REFERENCE: ...>, task_id=1, dependency_id=99, ...)]
        """
        violations: list[Violation] = []

        for task_id, task in sorted(self._tasks.items()):
            counts = Counter(task.dependencies)
            for dep_id in sorted(counts):
                if counts[dep_id] > 1:
                    violations.append(
                        Violation(
                            kind=ViolationKind.DUPLICATE_REFERENCE,
                            task_id=task_id,
                            dependency_id=dep_id,
                            message=(
                                f"Task {task_id} lists dependency {dep_id} "
                                f"{counts[dep_id]} times"
                            ),
                        )
                    )
                if dep_id == task_id:
                    violations.append(
                        Violation(
                            kind=ViolationKind.SELF_DEPENDENCY,
                            task_id=task_id,
                            dependency_id=dep_id,
                            message=f"Task {task_id} depends on itself",
                        )
                    )
                elif dep_id not in self._tasks:
                    violations.append(
                        Violation(
                            kind=ViolationKind.MISSING_REFERENCE,
                            task_id=task_id,
                            dependency_id=dep_id,
                            message=f"Task {task_id} depends on missing task {dep_id}",
                        )
                    )

        for cycle in self.detect_cycles():
            violations.append(
                Violation(
                    kind=ViolationKind.CYCLE,
                    task_id=cycle[-1],
                    dependency_id=cycle[0],
                    cycle=tuple(cycle),
                    message="Circular dependency: " + " -> ".join(
                        str(n) for n in [*cycle, cycle[0]]
                    ),
                )
            )

        if violations:
            logger.debug(f"Dependency validation found {len(violations)} violations")
        return violations

    def is_valid(self) -> bool:
        return not self.validate()

    # =========================================================================
    # CYCLE DETECTION
    # =========================================================================

    def detect_cycles(self, graph: dict[int, list[int]] | None = None) -> list[list[int]]:
        """
        Detect cycles using DFS with an on-stack marker.

        Every back edge to an on-stack node yields one cycle, reported as
        the ordered node list from the back-edge target to the current
        node. Runs in O(V+E).

        Args:
            graph: Optional adjacency (task_id -> [dependency_ids]); defaults
                to the collection's valid edges.

        Returns:
            List of cycle paths, empty if the graph is acyclic.

        Example:
            >>> graph.detect_cycles({1: [2], 2: [1]})
            [[1, 2]]
        """
        graph = graph if graph is not None else self.edges()
        WHITE, GRAY, BLACK = 0, 1, 2
        colors: dict[int, int] = {node: WHITE for node in graph}
        cycles: list[list[int]] = []

        for root in sorted(graph):
            if colors[root] != WHITE:
                continue

            # Iterative DFS so deep chains do not hit the recursion limit
            path: list[int] = [root]
            on_path: dict[int, int] = {root: 0}
            colors[root] = GRAY
            stack: list[tuple[int, list[int], int]] = [(root, sorted(graph.get(root, [])), 0)]

            while stack:
                node, neighbors, index = stack[-1]
                if index >= len(neighbors):
                    stack.pop()
                    path.pop()
                    del on_path[node]
                    colors[node] = BLACK
                    continue

                stack[-1] = (node, neighbors, index + 1)
                neighbor = neighbors[index]
                if neighbor not in colors:
                    continue  # Missing references are reported separately
                if colors[neighbor] == GRAY:
                    cycles.append(path[on_path[neighbor]:])
                elif colors[neighbor] == WHITE:
                    colors[neighbor] = GRAY
                    on_path[neighbor] = len(path)
                    path.append(neighbor)
                    stack.append((neighbor, sorted(graph.get(neighbor, [])), 0))

        return cycles

    def would_create_cycle(self, task_id: int, dependency_id: int) -> bool:
        """Check whether adding task_id -> dependency_id closes a cycle."""
        if task_id == dependency_id:
            return True
        return task_id in self.transitive_dependencies(dependency_id)

    def transitive_dependencies(self, task_id: int) -> set[int]:
        """Every task reachable through dependency edges from task_id."""
        edges = self.edges()
        seen: set[int] = set()
        queue: deque[int] = deque(edges.get(task_id, []))
        while queue:
            node = queue.popleft()
            if node in seen:
                continue
            seen.add(node)
            queue.extend(edges.get(node, []))
        return seen

    # =========================================================================
    # AUTO-FIX
    # =========================================================================

    def auto_fix(self) -> AutoFixResult:
        """
        Repair violations by removing edges only.

        Policy, applied in order: de-duplicate references, drop self
        references, drop references to missing tasks, then break every
        remaining cycle by removing the edge whose dependency id is the
        highest in that cycle. Deterministic and idempotent; never adds
        tasks or edges.

        Returns:
            AutoFixResult with the repaired copy and the applied fixes.
        """
        fixed = self._collection.working_copy()
        existing = fixed.task_ids
        fixes: list[FixAction] = []

        for task in fixed.sorted_tasks():
            kept: list[int] = []
            for dep_id in task.dependencies:
                if dep_id in kept:
                    fixes.append(
                        FixAction(
                            kind=ViolationKind.DUPLICATE_REFERENCE,
                            task_id=task.id,
                            removed_dependency=dep_id,
                            message=f"Removed duplicate dependency {dep_id} from task {task.id}",
                        )
                    )
                elif dep_id == task.id:
                    fixes.append(
                        FixAction(
                            kind=ViolationKind.SELF_DEPENDENCY,
                            task_id=task.id,
                            removed_dependency=dep_id,
                            message=f"Removed self dependency from task {task.id}",
                        )
                    )
                elif dep_id not in existing:
                    fixes.append(
                        FixAction(
                            kind=ViolationKind.MISSING_REFERENCE,
                            task_id=task.id,
                            removed_dependency=dep_id,
                            message=f"Removed missing dependency {dep_id} from task {task.id}",
                        )
                    )
                else:
                    kept.append(dep_id)
            if len(kept) != len(task.dependencies):
                task.dependencies = kept

        # Each pass removes one edge, so this terminates within E passes
        while True:
            graph = DependencyGraph(fixed)
            cycles = graph.detect_cycles()
            if not cycles:
                break
            task_id, dep_id = self._edge_to_break(cycles[0])
            task = fixed.get(task_id)
            if task is None:  # pragma: no cover - cycle nodes always exist
                break
            task.dependencies = [d for d in task.dependencies if d != dep_id]
            fixes.append(
                FixAction(
                    kind=ViolationKind.CYCLE,
                    task_id=task_id,
                    removed_dependency=dep_id,
                    message=(
                        f"Broke cycle {' -> '.join(str(n) for n in cycles[0])} "
                        f"by removing dependency {dep_id} from task {task_id}"
                    ),
                )
            )

        for fix in fixes:
            logger.info(fix.message)
            task = fixed.get(fix.task_id)
            if task is not None:
                task.touch()

        return AutoFixResult(collection=fixed, fixes=fixes)

    @staticmethod
    def _edge_to_break(cycle: list[int]) -> tuple[int, int]:
        """Pick the cycle edge whose dependency id is highest."""
        edges = [
            (cycle[i], cycle[(i + 1) % len(cycle)])
            for i in range(len(cycle))
        ]
        # Each node is the target of exactly one cycle edge, so this is unique
        return max(edges, key=lambda edge: (edge[1], edge[0]))

    # =========================================================================
    # READINESS
    # =========================================================================

    def is_ready(self, task_id: int) -> bool:
        """All dependencies of the task are in a terminal status."""
        task = self._tasks.get(task_id)
        if task is None:
            return False
        return all(
            dep in self._tasks and self._tasks[dep].status.is_terminal
            for dep in task.dependencies
        )

    def ready_tasks(self) -> list[Task]:
        """
        Open tasks whose dependencies are all terminal.

        Returns:
            Tasks ordered by priority rank (high first) then ascending id.
        """
        ready = [
            task for task in self._tasks.values()
            if not task.status.is_closed and self.is_ready(task.id)
        ]
        return sorted(ready, key=lambda t: (-t.priority.rank, t.id))

    def next_task(self) -> NextTaskResult:
        """
        Select the next actionable task.

        Returns:
            NextTaskResult with the chosen task, or task=None and a reason
            when nothing qualifies.

        Example:
            >>> result = graph.next_task()
            >>> result.task.id if result.found else result.reason
            2
        """
        if not self._tasks:
            return NextTaskResult(
                reason=NextTaskReason.NO_TASKS,
                message="No tasks found in project",
            )

        ready = self.ready_tasks()
        if ready:
            chosen = ready[0]
            logger.debug(f"Next task: {chosen.id} ({chosen.title})")
            return NextTaskResult(
                task=chosen,
                message=(
                    f"Task {chosen.id} is ready: all dependencies complete, "
                    f"priority {chosen.priority.value}"
                ),
                candidates=[t.id for t in ready],
            )

        open_tasks = [t for t in self._tasks.values() if not t.status.is_closed]
        if not open_tasks:
            return NextTaskResult(
                reason=NextTaskReason.ALL_COMPLETE,
                message="All tasks are complete or cancelled",
            )

        # No ready task while open tasks remain: every open task is blocked
        return NextTaskResult(
            reason=NextTaskReason.ALL_BLOCKED,
            message=(
                f"All {len(open_tasks)} open tasks are waiting on incomplete "
                "dependencies"
            ),
        )

    def dependents(self, task_id: int) -> list[int]:
        """Ids of tasks that directly depend on task_id."""
        return sorted(
            tid for tid, task in self._tasks.items()
            if task_id in task.dependencies
        )

    # =========================================================================
    # ORDERING
    # =========================================================================

    def topological_order(self) -> list[int]:
        """
        Kahn topological sort, dependencies first, ties by ascending id.

        Tasks caught in a cycle are appended at the end in id order.

        Returns:
            List of task ids.
        """
        edges = self.edges()
        in_degree = {tid: len(deps) for tid, deps in edges.items()}
        reverse: dict[int, list[int]] = {tid: [] for tid in edges}
        for tid, deps in edges.items():
            for dep in deps:
                reverse[dep].append(tid)

        ready = sorted(tid for tid, degree in in_degree.items() if degree == 0)
        queue: deque[int] = deque(ready)
        order: list[int] = []

        while queue:
            node = queue.popleft()
            order.append(node)
            released = []
            for dependent in reverse[node]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    released.append(dependent)
            queue.extend(sorted(released))

        if len(order) != len(edges):
            remaining = sorted(set(edges) - set(order))
            logger.warning(f"Tasks left unsorted due to cycles: {remaining}")
            order.extend(remaining)

        return order

    def waves(self) -> list[list[int]]:
        """
        Group tasks into topological levels.

        Tasks in the same wave have no dependency on each other and could
        be worked on in parallel.

        Returns:
            List of waves, each a sorted list of task ids.
        """
        edges = self.edges()
        waves: list[list[int]] = []
        assigned: set[int] = set()

        while len(assigned) < len(edges):
            wave = sorted(
                tid for tid, deps in edges.items()
                if tid not in assigned and all(d in assigned for d in deps)
            )
            if not wave:
                remaining = sorted(set(edges) - assigned)
                logger.error(f"Cannot assign remaining tasks: {remaining}")
                waves.append(remaining)
                break
            waves.append(wave)
            assigned.update(wave)

        return waves

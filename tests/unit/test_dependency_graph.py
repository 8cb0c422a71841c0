"""Unit tests for the dependency graph."""

from taskgraph.tasks.dependency_graph import (
    DependencyGraph,
    NextTaskReason,
    ViolationKind,
)
from taskgraph.tasks.models import Task, TaskCollection, TaskStatus


def make_collection(spec: dict[int, list[int]], done: tuple[int, ...] = ()) -> TaskCollection:
    """Build a collection from {id: [dependency ids]}."""
    return TaskCollection(
        tasks=[
            Task(
                id=task_id,
                title=f"Task {task_id}",
                dependencies=deps,
                status=TaskStatus.DONE if task_id in done else TaskStatus.PENDING,
            )
            for task_id, deps in spec.items()
        ]
    )


class TestValidation:
    """Tests for DependencyGraph.validate."""

    def test_valid_graph(self, sample_collection: TaskCollection) -> None:
        graph = DependencyGraph(sample_collection)

        assert graph.validate() == []
        assert graph.is_valid()

    def test_missing_reference(self) -> None:
        """A dependency on an absent task is reported on the dependent."""
        violations = DependencyGraph(make_collection({1: [99]})).validate()

        assert len(violations) == 1
        assert violations[0].kind == ViolationKind.MISSING_REFERENCE
        assert violations[0].task_id == 1
        assert violations[0].dependency_id == 99

    def test_self_dependency(self) -> None:
        violations = DependencyGraph(make_collection({1: [1]})).validate()

        assert [v.kind for v in violations] == [ViolationKind.SELF_DEPENDENCY]

    def test_duplicate_reference(self) -> None:
        violations = DependencyGraph(make_collection({1: [], 2: [1, 1]})).validate()

        assert [v.kind for v in violations] == [ViolationKind.DUPLICATE_REFERENCE]
        assert violations[0].task_id == 2

    def test_cycle_names_every_task(self) -> None:
        """Test that a cycle violation carries the whole path."""
        violations = DependencyGraph(make_collection({1: [3], 2: [1], 3: [2]})).validate()

        cycles = [v for v in violations if v.kind == ViolationKind.CYCLE]
        assert len(cycles) == 1
        assert sorted(cycles[0].task_ids) == [1, 2, 3]
        assert cycles[0].message.startswith("Circular dependency: ")


class TestCycleDetection:
    """Tests for cycle detection."""

    def test_detect_two_node_cycle(self) -> None:
        graph = DependencyGraph(TaskCollection())

        assert graph.detect_cycles({1: [2], 2: [1]}) == [[1, 2]]

    def test_detect_no_cycle(self) -> None:
        graph = DependencyGraph(TaskCollection())

        assert graph.detect_cycles({1: [], 2: [1], 3: [1, 2]}) == []

    def test_long_chain_does_not_recurse(self) -> None:
        """Test that a very deep chain is handled iteratively."""
        chain = {i: [i - 1] if i > 1 else [] for i in range(1, 3001)}
        graph = DependencyGraph(TaskCollection())

        assert graph.detect_cycles(chain) == []

    def test_would_create_cycle(self) -> None:
        graph = DependencyGraph(make_collection({1: [], 2: [1], 3: [2]}))

        assert graph.would_create_cycle(1, 3)
        assert graph.would_create_cycle(2, 2)
        assert not graph.would_create_cycle(3, 1)
        assert graph.transitive_dependencies(3) == {1, 2}


class TestAutoFix:
    """Tests for DependencyGraph.auto_fix."""

    def test_removes_missing_reference(self) -> None:
        """Missing references are dropped and nothing else changes."""
        collection = make_collection({1: [99]})

        result = DependencyGraph(collection).auto_fix()

        assert result.changed
        assert result.collection.require(1).dependencies == []
        assert result.fixes[0].kind == ViolationKind.MISSING_REFERENCE
        # The input collection is left untouched
        assert collection.require(1).dependencies == [99]

    def test_breaks_cycle_by_highest_dependency(self) -> None:
        result = DependencyGraph(make_collection({1: [2], 2: [1]})).auto_fix()

        assert result.collection.require(1).dependencies == []
        assert result.collection.require(2).dependencies == [1]
        assert result.fixes[0].kind == ViolationKind.CYCLE
        assert result.fixes[0].removed_dependency == 2

    def test_fix_yields_valid_graph(self) -> None:
        collection = make_collection({1: [1, 5], 2: [3, 3], 3: [4], 4: [2]})

        fixed = DependencyGraph(collection).auto_fix().collection

        assert DependencyGraph(fixed).validate() == []
        assert fixed.task_ids == collection.task_ids

    def test_fix_is_idempotent(self) -> None:
        collection = make_collection({1: [3], 2: [1, 7], 3: [2]})

        once = DependencyGraph(collection).auto_fix().collection
        twice = DependencyGraph(once).auto_fix()

        assert not twice.changed
        assert [t.dependencies for t in twice.collection.tasks] == [t.dependencies for t in once.tasks]

    def test_fix_never_adds_edges(self) -> None:
        collection = make_collection({1: [2, 3], 2: [3], 3: [1]})

        fixed = DependencyGraph(collection).auto_fix().collection

        for task in fixed.tasks:
            assert set(task.dependencies) <= set(collection.require(task.id).dependencies)


class TestNextTask:
    """Tests for next-task selection."""

    def test_next_task_follows_chain(self) -> None:
        """Task 1 done, task 2 pending: task 2 is next."""
        collection = make_collection({1: [], 2: [1], 3: [2]}, done=(1,))

        result = DependencyGraph(collection).next_task()

        assert result.found
        assert result.task.id == 2
        assert result.candidates == [2]

    def test_prefers_higher_priority(self, sample_collection: TaskCollection) -> None:
        """Task 2 (high) beats task 4 (low) even though both are ready."""
        result = DependencyGraph(sample_collection).next_task()

        assert result.task.id == 2
        assert result.candidates == [2, 4]

    def test_never_returns_task_with_incomplete_dependency(self) -> None:
        collection = make_collection({1: [], 2: [1], 3: [1, 2], 4: [3]}, done=(1,))
        graph = DependencyGraph(collection)

        for task in graph.ready_tasks():
            assert all(collection.require(d).status.is_terminal for d in task.dependencies)
        assert graph.next_task().task.id == 2

    def test_no_tasks(self) -> None:
        result = DependencyGraph(TaskCollection()).next_task()

        assert result.task is None
        assert result.reason == NextTaskReason.NO_TASKS

    def test_all_complete(self) -> None:
        result = DependencyGraph(make_collection({1: [], 2: [1]}, done=(1, 2))).next_task()

        assert result.reason == NextTaskReason.ALL_COMPLETE

    def test_all_blocked(self) -> None:
        """Tasks waiting on a cycle are never offered."""
        result = DependencyGraph(make_collection({1: [2], 2: [1]})).next_task()

        assert result.task is None
        assert result.reason == NextTaskReason.ALL_BLOCKED
        assert result.to_dict()["reason"] == "all_blocked"

    def test_cancelled_dependency_blocks(self) -> None:
        """A cancelled task is closed but not complete, so its dependents stay blocked."""
        collection = TaskCollection(
            tasks=[
                Task(id=1, title="Dropped", status=TaskStatus.CANCELLED),
                Task(id=2, title="Follow-up", dependencies=[1]),
            ]
        )

        result = DependencyGraph(collection).next_task()

        assert result.task is None
        assert result.reason == NextTaskReason.ALL_BLOCKED
        assert {r.value for r in NextTaskReason} == {"no_tasks", "all_complete", "all_blocked"}


class TestOrdering:
    """Tests for topological order and waves."""

    def test_topological_order(self) -> None:
        graph = DependencyGraph(make_collection({1: [], 2: [1], 3: [1], 4: [2, 3]}))

        assert graph.topological_order() == [1, 2, 3, 4]

    def test_waves(self) -> None:
        graph = DependencyGraph(make_collection({1: [], 2: [1], 3: [1], 4: [2, 3], 5: []}))

        assert graph.waves() == [[1, 5], [2, 3], [4]]

    def test_dependents(self, sample_collection: TaskCollection) -> None:
        graph = DependencyGraph(sample_collection)

        assert graph.dependents(1) == [2]
        assert graph.dependents(4) == []

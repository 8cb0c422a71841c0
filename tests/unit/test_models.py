"""Unit tests for task models."""

import pytest
from pydantic import ValidationError

from taskgraph.core.exceptions import TaskNotFoundError
from taskgraph.tasks.models import (
    Priority,
    Subtask,
    SubtaskStatus,
    Task,
    TaskCollection,
    TaskRef,
    TaskStatus,
)


class TestTaskStatus:
    """Tests for TaskStatus helpers."""

    def test_terminal_statuses(self) -> None:
        """Test that only done and completed are terminal."""
        assert TaskStatus.DONE.is_terminal
        assert TaskStatus.COMPLETED.is_terminal
        assert not TaskStatus.CANCELLED.is_terminal
        assert not TaskStatus.IN_PROGRESS.is_terminal

    def test_cancelled_is_closed(self) -> None:
        assert TaskStatus.CANCELLED.is_closed
        assert TaskStatus.DONE.is_closed
        assert not TaskStatus.PENDING.is_closed


class TestTask:
    """Tests for the Task model."""

    def test_task_is_ready(self) -> None:
        """Test task readiness check."""
        task = Task(id=3, title="Build API", dependencies=[1, 2])

        assert not task.is_ready(set())
        assert not task.is_ready({1})
        assert task.is_ready({1, 2})

    def test_camel_case_aliases(self) -> None:
        """Test that tasks.json field names load and dump."""
        task = Task.model_validate(
            {"id": 1, "title": "Setup", "testStrategy": "Run the suite", "estimatedEffort": "2h"}
        )

        assert task.test_strategy == "Run the suite"
        data = task.to_dict()
        assert data["testStrategy"] == "Run the suite"
        assert data["estimatedEffort"] == "2h"
        assert "createdAt" in data

    def test_priority_is_case_insensitive(self) -> None:
        task = Task(id=1, title="Setup", priority="HIGH")

        assert task.priority == Priority.HIGH
        assert Priority.HIGH.rank > Priority.MEDIUM.rank > Priority.LOW.rank

    def test_blank_title_rejected(self) -> None:
        with pytest.raises(ValidationError):
            Task(id=1, title="   ")

    def test_invalid_status_assignment_rejected(self) -> None:
        """Test that assignment is validated."""
        task = Task(id=1, title="Setup")

        with pytest.raises(ValidationError):
            task.status = "finished"

    def test_next_subtask_id(self) -> None:
        task = Task(
            id=5,
            title="Parent",
            subtasks=[Subtask(id=1, title="a"), Subtask(id=4, title="b")],
        )

        assert task.next_subtask_id() == 5
        assert Task(id=6, title="Empty").next_subtask_id() == 1


class TestSubtask:
    """Tests for the Subtask model."""

    def test_full_id(self) -> None:
        assert Subtask(id=2, title="Write tests").full_id(7) == "7.2"

    def test_done_is_normalised(self) -> None:
        """Test that the legacy 'done' value maps to completed."""
        subtask = Subtask(id=1, title="Write tests", status="done")

        assert subtask.status == SubtaskStatus.COMPLETED


class TestTaskCollection:
    """Tests for TaskCollection."""

    def test_require_missing_task(self, sample_collection: TaskCollection) -> None:
        with pytest.raises(TaskNotFoundError):
            sample_collection.require(42)

    def test_ids_are_never_reused(self, sample_collection: TaskCollection) -> None:
        """Test that removing the newest task does not free its id."""
        sample_collection.remove(4)

        assert sample_collection.allocate_id() == 5

    def test_allocate_id_respects_existing_ids(self) -> None:
        collection = TaskCollection(tasks=[Task(id=9, title="Imported")])

        assert collection.allocate_id() == 10

    def test_working_copy_is_independent(self, sample_collection: TaskCollection) -> None:
        copy = sample_collection.working_copy()
        copy.require(2).title = "Changed"

        assert sample_collection.require(2).title == "Design database schema"

    def test_completed_ids(self, sample_collection: TaskCollection) -> None:
        assert sample_collection.completed_ids == {1}


class TestTaskRef:
    """Tests for task reference parsing."""

    def test_parse_task(self) -> None:
        ref = TaskRef.parse("7")

        assert ref.task_id == 7
        assert not ref.is_subtask
        assert TaskRef.parse(7) == ref

    def test_parse_subtask(self) -> None:
        ref = TaskRef.parse("7.2")

        assert ref.is_subtask
        assert ref.subtask_id == 2
        assert str(ref) == "7.2"

    @pytest.mark.parametrize("value", ["", "abc", "1.2.3", "-1", "1.x"])
    def test_parse_invalid(self, value: str) -> None:
        with pytest.raises(ValueError):
            TaskRef.parse(value)

"""Pydantic models for tasks, subtasks and task collections.

This module defines the data structures shared by the store, the
dependency graph, the complexity analyzer and the mutation engine.
JSON field names are camelCase so existing tasks.json files load as-is.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    PositiveInt,
    field_validator,
)

from taskgraph.core.exceptions import TaskNotFoundError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# ENUMS
# =============================================================================


class TaskStatus(str, Enum):
    """Lifecycle status of a task."""

    PENDING = "pending"
    NOT_STARTED = "not-started"
    IN_PROGRESS = "in-progress"
    DONE = "done"
    COMPLETED = "completed"
    BLOCKED = "blocked"
    DEFERRED = "deferred"
    REVIEW = "review"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        """Done or completed."""
        return self in TERMINAL_STATUSES

    @property
    def is_closed(self) -> bool:
        """Terminal or cancelled; never offered as the next task."""
        return self in TERMINAL_STATUSES or self == TaskStatus.CANCELLED


TERMINAL_STATUSES = frozenset({TaskStatus.DONE, TaskStatus.COMPLETED})


class SubtaskStatus(str, Enum):
    """Reduced status enum for subtasks."""

    PENDING = "pending"
    COMPLETED = "completed"


class Priority(str, Enum):
    """Task priority."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        """Higher rank is more urgent."""
        return {"low": 1, "medium": 2, "high": 3}[self.value]


# =============================================================================
# SUBTASK
# =============================================================================


class Subtask(BaseModel):
    """Child work item scoped to exactly one task.

    Example:
        >>> subtask = Subtask(id=1, title="Write migration")
        >>> subtask.full_id(5)
        '5.1'
    """

    model_config = ConfigDict(populate_by_name=True, validate_assignment=True)

    id: PositiveInt = Field(..., description="Index unique within the parent task")
    title: str = Field(..., min_length=1, max_length=500)
    description: str | None = Field(default=None)
    details: str | None = Field(default=None)
    status: SubtaskStatus = Field(default=SubtaskStatus.PENDING)
    assignee: str | None = Field(default=None)

    @field_validator("status", mode="before")
    @classmethod
    def normalize_status(cls, v: Any) -> Any:
        """Accept the legacy 'done' value."""
        if isinstance(v, str) and v.lower() in ("done", "complete"):
            return SubtaskStatus.COMPLETED
        return v

    def full_id(self, parent_id: int) -> str:
        """Composite 'parentId.index' identifier."""
        return f"{parent_id}.{self.id}"


# =============================================================================
# TASK
# =============================================================================


class Task(BaseModel):
    """Top-level unit of work.

    ``dependencies`` has set semantics but is stored as a list so that
    duplicates in loaded data can be reported instead of hidden.

    Example:
        >>> task = Task(id=2, title="Build API", dependencies=[1])
        >>> task.is_ready({1})
        True
    """

    model_config = ConfigDict(populate_by_name=True, validate_assignment=True)

    id: PositiveInt = Field(..., description="Unique task identifier")
    title: str = Field(..., min_length=1, max_length=500)
    description: str | None = Field(default=None)
    status: TaskStatus = Field(default=TaskStatus.PENDING)
    priority: Priority = Field(default=Priority.MEDIUM)
    dependencies: list[int] = Field(
        default_factory=list,
        description="Ids of tasks that must complete first",
    )
    subtasks: list[Subtask] = Field(default_factory=list)
    details: str | None = Field(default=None)
    test_strategy: str | None = Field(default=None, alias="testStrategy")
    estimated_effort: str | None = Field(default=None, alias="estimatedEffort")
    actual_effort: str | None = Field(default=None, alias="actualEffort")
    created_at: datetime = Field(default_factory=utcnow, alias="createdAt")
    updated_at: datetime = Field(default_factory=utcnow, alias="updatedAt")

    @field_validator("title")
    @classmethod
    def validate_title(cls, v: str) -> str:
        """Reject blank titles."""
        if not v.strip():
            raise ValueError("title must not be blank")
        return v.strip()

    @field_validator("priority", mode="before")
    @classmethod
    def normalize_priority(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.lower()
        return v

    def is_ready(self, completed: set[int]) -> bool:
        """Check if all dependencies are in the completed set."""
        return all(dep in completed for dep in self.dependencies)

    def get_subtask(self, subtask_id: int) -> Subtask | None:
        """Get a subtask by its per-task id."""
        for subtask in self.subtasks:
            if subtask.id == subtask_id:
                return subtask
        return None

    def next_subtask_id(self) -> int:
        """Next free per-task subtask id."""
        return max((s.id for s in self.subtasks), default=0) + 1

    def touch(self) -> None:
        """Refresh the update timestamp."""
        self.updated_at = utcnow()

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return self.model_dump(mode="json", by_alias=True)


# =============================================================================
# COLLECTION
# =============================================================================


class TaskCollection(BaseModel):
    """All tasks of a project plus the id high-water mark.

    Example:
        >>> collection = TaskCollection(tasks=[Task(id=1, title="Setup")])
        >>> collection.allocate_id()
        2
    """

    model_config = ConfigDict(populate_by_name=True)

    tasks: list[Task] = Field(default_factory=list)
    last_task_id: int = Field(default=0, ge=0, alias="lastTaskId")
    metadata: dict[str, Any] = Field(default_factory=dict)

    def get(self, task_id: int) -> Task | None:
        """Get a task by id."""
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None

    def require(self, task_id: int) -> Task:
        """Get a task by id or raise TaskNotFoundError."""
        task = self.get(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    @property
    def task_ids(self) -> set[int]:
        return {t.id for t in self.tasks}

    @property
    def completed_ids(self) -> set[int]:
        """Ids of tasks in a terminal status."""
        return {t.id for t in self.tasks if t.status.is_terminal}

    def allocate_id(self) -> int:
        """Allocate a fresh task id; ids are never reused."""
        highest = max(self.task_ids, default=0)
        self.last_task_id = max(self.last_task_id, highest) + 1
        return self.last_task_id

    def add(self, task: Task) -> None:
        """Append a task, keeping the high-water mark current."""
        self.tasks.append(task)
        self.last_task_id = max(self.last_task_id, task.id)

    def remove(self, task_id: int) -> Task | None:
        """Remove a task; the high-water mark is left untouched."""
        for index, task in enumerate(self.tasks):
            if task.id == task_id:
                return self.tasks.pop(index)
        return None

    def sorted_tasks(self) -> list[Task]:
        return sorted(self.tasks, key=lambda t: t.id)

    def working_copy(self) -> "TaskCollection":
        """Deep copy that can be mutated without touching this instance."""
        return self.model_copy(deep=True)

    def to_dict(self) -> dict[str, Any]:
        """Convert to the on-disk JSON shape."""
        return self.model_dump(mode="json", by_alias=True)


# =============================================================================
# TASK REFERENCES
# =============================================================================


class TaskRef(BaseModel):
    """Parsed task or subtask reference such as '7' or '7.2'."""

    model_config = ConfigDict(frozen=True)

    task_id: PositiveInt
    subtask_id: PositiveInt | None = None

    @classmethod
    def parse(cls, value: int | str) -> "TaskRef":
        """Parse an id given as int, '7' or '7.2'.

        Raises:
            ValueError: If the value is not a valid reference.
        """
        if isinstance(value, int):
            return cls(task_id=value)
        text = str(value).strip()
        parts = text.split(".")
        if len(parts) > 2 or not all(p.isdigit() for p in parts):
            raise ValueError(
                f"Invalid task id: {value!r}. Use a positive integer or 'parent.sub' (e.g. '5.2')"
            )
        if len(parts) == 2:
            return cls(task_id=int(parts[0]), subtask_id=int(parts[1]))
        return cls(task_id=int(parts[0]))

    @property
    def is_subtask(self) -> bool:
        return self.subtask_id is not None

    def __str__(self) -> str:
        if self.subtask_id is None:
            return str(self.task_id)
        return f"{self.task_id}.{self.subtask_id}"

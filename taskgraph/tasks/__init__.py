"""Tasks module - task models, dependency graph and persistence."""

from taskgraph.tasks.database import SqlTaskStore
from taskgraph.tasks.dependency_graph import (
    AutoFixResult,
    DependencyGraph,
    NextTaskReason,
    NextTaskResult,
    Violation,
    ViolationKind,
)
from taskgraph.tasks.models import (
    Priority,
    Subtask,
    SubtaskStatus,
    Task,
    TaskCollection,
    TaskRef,
    TaskStatus,
)
from taskgraph.tasks.store import JsonTaskStore, TaskStore

__all__ = [
    "AutoFixResult",
    "DependencyGraph",
    "JsonTaskStore",
    "NextTaskReason",
    "NextTaskResult",
    "Priority",
    "SqlTaskStore",
    "Subtask",
    "SubtaskStatus",
    "Task",
    "TaskCollection",
    "TaskRef",
    "TaskStatus",
    "TaskStore",
    "Violation",
    "ViolationKind",
]

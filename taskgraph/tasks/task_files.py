"""Render one plain-text file per task (task_NNN.txt)."""

import re
from pathlib import Path

from loguru import logger
from pydantic import BaseModel, Field

from taskgraph.tasks.models import Task, TaskCollection

TASK_FILE_RE = re.compile(r"^task_(\d+)\.txt$")


class TaskFilesResult(BaseModel):
    """Outcome of a task file generation run."""

    directory: str
    written: list[str] = Field(default_factory=list)
    removed: list[str] = Field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.written)


def task_file_name(task_id: int) -> str:
    return f"task_{task_id:03d}.txt"


def _format_dependencies(task: Task, collection: TaskCollection) -> str:
    if not task.dependencies:
        return "None"
    parts = []
    for dep_id in task.dependencies:
        dep = collection.get(dep_id)
        status = dep.status.value if dep else "missing"
        parts.append(f"{dep_id} ({status})")
    return ", ".join(parts)


def render_task(task: Task, collection: TaskCollection) -> str:
    """
    Render a task as text.

    Example:
        >>> print(render_task(task, collection).splitlines()[0])
        # Task ID: 1
    """
    lines = [
        f"# Task ID: {task.id}",
        f"# Title: {task.title}",
        f"# Status: {task.status.value}",
        f"# Dependencies: {_format_dependencies(task, collection)}",
        f"# Priority: {task.priority.value}",
        f"# Description: {task.description or ''}",
        "# Details:",
        task.details or "",
        "",
        "# Test Strategy:",
        task.test_strategy or "",
    ]

    if task.subtasks:
        lines.extend(["", "# Subtasks:"])
        for subtask in task.subtasks:
            lines.append(f"## {subtask.full_id(task.id)}. {subtask.title} [{subtask.status.value}]")
            lines.append(f"### Description: {subtask.description or ''}")
            lines.append("### Details:")
            lines.append(subtask.details or "")
            lines.append("")

    return "\n".join(lines).rstrip("\n") + "\n"


def generate_task_files(collection: TaskCollection, output_dir: str | Path) -> TaskFilesResult:
    """
    Write task_NNN.txt for every task and remove files of deleted tasks.

    Args:
        collection: Task collection to render.
        output_dir: Destination directory, created if missing.

    Returns:
        TaskFilesResult listing written and removed file names.
    """
    directory = Path(output_dir)
    directory.mkdir(parents=True, exist_ok=True)
    result = TaskFilesResult(directory=str(directory))

    valid_ids = collection.task_ids
    for path in sorted(directory.iterdir()):
        match = TASK_FILE_RE.match(path.name)
        if match and int(match.group(1)) not in valid_ids:
            path.unlink()
            result.removed.append(path.name)
            logger.info(f"Removed orphaned task file: {path.name}")

    for task in collection.sorted_tasks():
        name = task_file_name(task.id)
        (directory / name).write_text(render_task(task, collection), encoding="utf-8")
        result.written.append(name)

    logger.info(f"Generated {result.count} task files in '{directory}'")
    return result

"""Unit tests for task file generation."""

from pathlib import Path

from taskgraph.tasks.models import TaskCollection
from taskgraph.tasks.task_files import generate_task_files, render_task, task_file_name


class TestRenderTask:
    """Tests for the text layout."""

    def test_header_lines(self, sample_collection: TaskCollection) -> None:
        text = render_task(sample_collection.require(2), sample_collection)
        lines = text.splitlines()

        assert lines[0] == "# Task ID: 2"
        assert lines[1] == "# Title: Design database schema"
        assert lines[2] == "# Status: pending"
        assert lines[3] == "# Dependencies: 1 (done)"
        assert lines[4] == "# Priority: high"

    def test_subtasks_section(self, sample_collection: TaskCollection) -> None:
        text = render_task(sample_collection.require(3), sample_collection)

        assert "# Subtasks:" in text
        assert "## 3.1. Create router [pending]" in text
        assert "## 3.2. Add validation [pending]" in text

    def test_missing_dependency_is_marked(self, sample_collection: TaskCollection) -> None:
        task = sample_collection.require(4).model_copy(update={"dependencies": [42]})

        assert "# Dependencies: 42 (missing)" in render_task(task, sample_collection)


class TestGenerateTaskFiles:
    """Tests for writing the files."""

    def test_writes_one_file_per_task(self, sample_collection: TaskCollection, tmp_path: Path) -> None:
        result = generate_task_files(sample_collection, tmp_path / "tasks")

        assert result.count == 4
        assert sorted(p.name for p in (tmp_path / "tasks").iterdir()) == [
            "task_001.txt",
            "task_002.txt",
            "task_003.txt",
            "task_004.txt",
        ]

    def test_removes_orphaned_files(self, sample_collection: TaskCollection, tmp_path: Path) -> None:
        """Files of deleted tasks go away; unrelated files stay."""
        output = tmp_path / "tasks"
        output.mkdir()
        (output / task_file_name(9)).write_text("stale")
        (output / "notes.txt").write_text("keep me")

        result = generate_task_files(sample_collection, output)

        assert result.removed == ["task_009.txt"]
        assert not (output / "task_009.txt").exists()
        assert (output / "notes.txt").exists()

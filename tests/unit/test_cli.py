"""Unit tests for the Typer CLI."""

import json
from pathlib import Path

import pytest
from typer.testing import CliRunner

from taskgraph import __version__
from taskgraph.cli import main as cli_main
from taskgraph.cli.main import app

runner = CliRunner()


@pytest.fixture
def cli_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, mock_settings: None) -> Path:
    """Point the CLI at a temporary JSON store and keep loguru sinks untouched."""
    monkeypatch.setenv("TASKGRAPH_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.setenv("TASKGRAPH_PROJECT", "cli-demo")
    monkeypatch.setenv("TASKGRAPH_STORE_BACKEND", "json")
    monkeypatch.setattr(cli_main, "configure_logging", lambda settings=None: None)
    return tmp_path / "data"


def invoke(*args: str):
    return runner.invoke(app, list(args))


class TestBasics:
    """Tests for global options."""

    def test_version(self) -> None:
        result = invoke("--version")

        assert result.exit_code == 0
        assert __version__ in result.output

    def test_help_lists_commands(self) -> None:
        result = invoke("--help")

        assert result.exit_code == 0
        for command in ("init", "next", "add-dep", "analyze"):
            assert command in result.output


class TestProjectFlow:
    """Tests for a manual workflow through the CLI."""

    def test_init_creates_store(self, cli_env: Path) -> None:
        result = invoke("init", "--name", "CLI Demo")

        assert result.exit_code == 0
        assert "Initialized project" in result.output
        assert (cli_env / "cli-demo" / "tasks.json").exists()

    def test_init_twice_fails(self, cli_env: Path) -> None:
        invoke("init")

        result = invoke("init")

        assert result.exit_code == 1
        assert "STORE_IO_ERROR" in result.output

    def test_list_without_project(self, cli_env: Path) -> None:
        result = invoke("list")

        assert result.exit_code == 1
        assert "NOT_FOUND" in result.output

    def test_add_list_and_next(self, cli_env: Path) -> None:
        invoke("init")

        first = invoke("add", "Set up CI", "--priority", "high")
        second = invoke("add", "Write docs", "--dependencies", "1")
        listing = invoke("list")
        upcoming = invoke("next")

        assert first.exit_code == 0
        assert "Added task" in first.output
        assert second.exit_code == 0
        assert listing.exit_code == 0
        assert "Set up CI" in listing.output
        assert "0/2 complete" in listing.output
        assert upcoming.exit_code == 0
        assert "Task 1" in upcoming.output

    def test_set_status_advances_next(self, cli_env: Path) -> None:
        invoke("init")
        invoke("add", "Set up CI")
        invoke("add", "Write docs", "--dependencies", "1")

        result = invoke("set-status", "1", "done")
        upcoming = invoke("next")

        assert result.exit_code == 0
        assert "Task 2" in upcoming.output

    def test_update_requires_prompt_or_field(self, cli_env: Path) -> None:
        invoke("init")
        invoke("add", "Set up CI")

        result = invoke("update", "1")

        assert result.exit_code == 2


class TestDependencyCommands:
    """Tests for add-dep, validate and the JSON output mode."""

    @pytest.fixture
    def chain(self, cli_env: Path) -> Path:
        invoke("init")
        invoke("add", "First")
        invoke("add", "Second", "--dependencies", "1")
        return cli_env

    def test_add_dep_rejects_cycle(self, chain: Path) -> None:
        result = invoke("add-dep", "1", "2")

        assert result.exit_code == 1
        assert "VALIDATION_ERROR" in result.output
        assert "CYCLE" in result.output

    def test_add_dep_rejects_missing_target(self, chain: Path) -> None:
        result = invoke("add-dep", "2", "9")

        assert result.exit_code == 1
        assert "MISSING_REFERENCE" in result.output

    def test_validate_clean_graph(self, chain: Path) -> None:
        result = invoke("validate")

        assert result.exit_code == 0
        assert "All dependencies are valid" in result.output

    def test_json_output(self, chain: Path) -> None:
        result = invoke("--json", "next")

        assert result.exit_code == 0
        payload = json.loads(result.output)
        assert payload["success"] is True
        assert payload["data"]["task"]["id"] == 1

    def test_json_error_envelope(self, chain: Path) -> None:
        result = invoke("--json", "remove-dep", "1", "2")

        assert result.exit_code == 1
        payload = json.loads(result.output)
        assert payload["success"] is False
        assert payload["error"]["code"] == "NOT_FOUND"

    def test_delete_then_generate(self, chain: Path, tmp_path: Path) -> None:
        deleted = invoke("delete", "1")
        generated = invoke("generate", "--output", str(tmp_path / "files"))

        assert deleted.exit_code == 0
        assert generated.exit_code == 0
        assert "Generated 1 task files" in generated.output
        assert (tmp_path / "files" / "task_002.txt").exists()

    def test_analyze_writes_report(self, chain: Path, tmp_path: Path) -> None:
        report = tmp_path / "complexity-report.json"

        result = invoke("analyze", "--output", str(report))

        assert result.exit_code == 0
        assert json.loads(report.read_text())["summary"]["lowCount"] == 2

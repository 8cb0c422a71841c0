"""Main CLI entry point using Typer."""

from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

import anyio
import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from taskgraph import __version__
from taskgraph.core.config import configure_logging, get_settings
from taskgraph.core.service import TaskGraphService
from taskgraph.tasks.mutations import OperationResult

app = typer.Typer(
    name="taskgraph",
    help="taskgraph - dependency-aware task management with AI assistance",
    add_completion=True,
    rich_markup_mode="rich",
)

console = Console()

# Global options set by the callback
state: dict[str, Any] = {"project": None, "json": False}

STATUS_STYLES = {
    "done": "green",
    "completed": "green",
    "in-progress": "yellow",
    "review": "magenta",
    "blocked": "red",
    "deferred": "dim",
    "cancelled": "dim strike",
}


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"[bold blue]taskgraph[/bold blue] version {__version__}")
        raise typer.Exit()


def get_service() -> TaskGraphService:
    """Build the service from environment settings."""
    settings = get_settings()
    configure_logging(settings)
    return TaskGraphService(settings)


def run_operation(operation: Callable[[TaskGraphService], Awaitable[OperationResult]]) -> OperationResult:
    """Run one async service call and close the service afterwards."""

    async def execute() -> OperationResult:
        service = get_service()
        try:
            return await operation(service)
        finally:
            await service.close()

    return anyio.run(execute)


def emit(result: OperationResult, render: Callable[[Any], None] | None = None) -> None:
    """Print a result (rich or JSON) and exit non-zero on failure."""
    if state["json"]:
        console.print_json(data=result.to_dict())
        if not result.success:
            raise typer.Exit(code=1)
        return

    if not result.success:
        error = result.error
        console.print(f"[bold red]{error.code.value}[/bold red]: {error.message}")
        for violation in error.violations:
            console.print(f"  [red]-[/red] {violation.kind.value}: {violation.message}")
        raise typer.Exit(code=1)

    if result.is_no_op:
        console.print("[yellow]No changes were needed[/yellow]")
    if render is not None:
        render(result.data)
    if result.telemetry is not None and result.telemetry.records:
        telemetry = result.telemetry
        console.print(
            f"[dim]AI usage: {telemetry.total_input_tokens} in / {telemetry.total_output_tokens} out tokens, "
            f"${telemetry.total_cost_usd:.4f} via {', '.join(telemetry.providers_used)}[/dim]"
        )


def _status(value: str) -> str:
    style = STATUS_STYLES.get(value)
    return f"[{style}]{value}[/{style}]" if style else value


@app.callback()
def main(
    version: bool | None = typer.Option(
        None,
        "--version",
        "-v",
        help="Show version and exit.",
        callback=version_callback,
        is_eager=True,
    ),
    project: str | None = typer.Option(
        None,
        "--project",
        "-p",
        help="Project reference (defaults to TASKGRAPH_PROJECT)",
    ),
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Print raw JSON results.",
    ),
) -> None:
    """
    taskgraph - manage a dependency graph of tasks.

    Validates dependencies, picks the next task, scores complexity and
    uses AI providers to expand and update tasks.
    """
    state["project"] = project
    state["json"] = json_output


# =============================================================================
# PROJECT
# =============================================================================


@app.command()
def init(
    name: str | None = typer.Option(None, "--name", "-n", help="Human readable project name"),
) -> None:
    """Initialize an empty task collection."""
    result = run_operation(lambda s: s.init_project(state["project"], name))
    emit(
        result,
        lambda data: console.print(
            f"[green]Initialized project[/green] [bold]{data['project']}[/bold]"
        ),
    )


@app.command("list")
def list_tasks(
    status: str | None = typer.Option(None, "--status", "-s", help="Filter by status"),
    with_subtasks: bool = typer.Option(False, "--with-subtasks", help="Show subtasks"),
) -> None:
    """List tasks with status, priority and dependencies."""
    result = run_operation(lambda s: s.list_tasks(state["project"], status, with_subtasks))

    def render(data: dict[str, Any]) -> None:
        table = Table(title="Tasks")
        table.add_column("ID", style="cyan", justify="right")
        table.add_column("Title", style="bold")
        table.add_column("Status")
        table.add_column("Priority")
        table.add_column("Dependencies")
        table.add_column("Subtasks", justify="right")

        for task in data["tasks"]:
            subtasks = task["subtasks"]
            table.add_row(
                str(task["id"]),
                task["title"],
                _status(task["status"]),
                task["priority"],
                ", ".join(str(d) for d in task["dependencies"]) or "-",
                str(len(subtasks) if isinstance(subtasks, list) else subtasks),
            )
            if with_subtasks and isinstance(subtasks, list):
                for subtask in subtasks:
                    table.add_row(
                        f"{task['id']}.{subtask['id']}",
                        f"  {subtask['title']}",
                        _status(subtask["status"]),
                        "",
                        "",
                        "",
                    )

        console.print(table)
        stats = data["stats"]
        console.print(
            f"[dim]{stats['completed']}/{stats['total']} complete "
            f"({stats['completionPercentage']}%)[/dim]"
        )

    emit(result, render)


@app.command()
def show(ref: str = typer.Argument(..., help="Task id ('7') or subtask id ('7.2')")) -> None:
    """Show one task or subtask."""
    result = run_operation(lambda s: s.get_task(ref, state["project"]))

    def render(data: dict[str, Any]) -> None:
        if "subtask" in data:
            subtask = data["subtask"]
            console.print(
                Panel(
                    f"{subtask.get('description') or ''}\n\n{subtask.get('details') or ''}".strip(),
                    title=f"[bold]{data['id']}[/bold] {subtask['title']} ({subtask['status']})",
                    border_style="cyan",
                )
            )
            return

        task = data["task"]
        body = [
            f"[bold]Status:[/bold] {_status(task['status'])}",
            f"[bold]Priority:[/bold] {task['priority']}",
            f"[bold]Dependencies:[/bold] {', '.join(map(str, task['dependencies'])) or 'None'}",
            f"[bold]Ready:[/bold] {'yes' if data['ready'] else 'no'}",
            f"[bold]Dependents:[/bold] {', '.join(map(str, data['dependents'])) or 'None'}",
        ]
        if task.get("description"):
            body.append(f"\n{task['description']}")
        if task.get("details"):
            body.append(f"\n[bold]Details:[/bold]\n{task['details']}")
        if task.get("testStrategy"):
            body.append(f"\n[bold]Test strategy:[/bold]\n{task['testStrategy']}")
        for subtask in task["subtasks"]:
            body.append(f"  {task['id']}.{subtask['id']} {subtask['title']} [{subtask['status']}]")
        console.print(
            Panel("\n".join(body), title=f"[bold]Task {task['id']}[/bold]: {task['title']}", border_style="blue")
        )

    emit(result, render)


@app.command("next")
def next_task() -> None:
    """Show the next task to work on."""
    result = run_operation(lambda s: s.next_task(state["project"]))

    def render(data: dict[str, Any]) -> None:
        task = data["task"]
        if task is None:
            console.print(f"[yellow]No task available[/yellow] ({data['reason']}): {data['message']}")
            return
        console.print(
            Panel(
                f"{task.get('description') or ''}\n\n[dim]{data['message']}[/dim]".strip(),
                title=f"[bold green]Next: Task {task['id']}[/bold green] {task['title']}",
                border_style="green",
            )
        )

    emit(result, render)


# =============================================================================
# TASK MUTATIONS
# =============================================================================


@app.command()
def add(
    title: str = typer.Argument(..., help="Task title"),
    description: str | None = typer.Option(None, "--description", "-d"),
    details: str | None = typer.Option(None, "--details"),
    test_strategy: str | None = typer.Option(None, "--test-strategy"),
    priority: str = typer.Option("medium", "--priority", help="low, medium or high"),
    dependencies: str | None = typer.Option(None, "--dependencies", help="Comma-separated task ids"),
) -> None:
    """Add a task."""
    deps = [int(d) for d in dependencies.split(",") if d.strip()] if dependencies else []
    result = run_operation(
        lambda s: s.add_task(
            title,
            state["project"],
            description=description,
            details=details,
            test_strategy=test_strategy,
            priority=priority,
            dependencies=deps,
        )
    )
    emit(result, lambda data: console.print(f"[green]Added task[/green] {data['taskId']}: {title}"))


@app.command("set-status")
def set_status(
    ref: str = typer.Argument(..., help="Task id ('7') or subtask id ('7.2')"),
    status: str = typer.Argument(..., help="New status"),
) -> None:
    """Set the status of a task or subtask."""
    result = run_operation(lambda s: s.set_status(ref, status, state["project"]))
    emit(result, lambda data: console.print(f"[green]{data['id']}[/green] -> {_status(data['status'])}"))


@app.command()
def update(
    task_id: int = typer.Argument(..., help="Task id"),
    prompt: str | None = typer.Option(None, "--prompt", help="AI change request"),
    research: bool = typer.Option(False, "--research", "-r", help="Use the research role"),
    title: str | None = typer.Option(None, "--title"),
    description: str | None = typer.Option(None, "--description"),
    details: str | None = typer.Option(None, "--details"),
    test_strategy: str | None = typer.Option(None, "--test-strategy"),
    priority: str | None = typer.Option(None, "--priority"),
    timeout: float | None = typer.Option(None, "--timeout", min=0.1, help="Per-call AI timeout in seconds"),
) -> None:
    """Update a task manually (field options) or with AI (--prompt)."""
    patch = {
        key: value
        for key, value in {
            "title": title,
            "description": description,
            "details": details,
            "testStrategy": test_strategy,
            "priority": priority,
        }.items()
        if value is not None
    }
    if not prompt and not patch:
        console.print("[red]Provide --prompt or at least one field option[/red]")
        raise typer.Exit(code=2)

    result = run_operation(
        lambda s: s.update_task(
            task_id,
            patch=patch,
            prompt=prompt,
            research=research,
            project_ref=state["project"],
            timeout=timeout,
        )
    )

    def render(data: dict[str, Any]) -> None:
        if data["updated"]:
            console.print(f"[green]Updated task {task_id}[/green]: {', '.join(data['changedFields'])}")
        if data.get("reason"):
            console.print(f"[dim]{data['reason']}[/dim]")

    emit(result, render)


@app.command()
def expand(
    task_id: int = typer.Argument(..., help="Task id"),
    num: int | None = typer.Option(None, "--num", "-n", min=1, max=20, help="Number of subtasks"),
    research: bool = typer.Option(False, "--research", "-r"),
    force: bool = typer.Option(False, "--force", help="Clear existing subtasks first"),
    context: str = typer.Option("", "--context", help="Additional prompt context"),
    timeout: float | None = typer.Option(None, "--timeout", min=0.1, help="Per-call AI timeout in seconds"),
) -> None:
    """Break a task into subtasks with AI."""
    with console.status(f"Expanding task {task_id}..."):
        result = run_operation(
            lambda s: s.expand_task(
                task_id,
                num_subtasks=num,
                research=research,
                clear_first=force,
                additional_context=context,
                project_ref=state["project"],
                timeout=timeout,
            )
        )
    emit(
        result,
        lambda data: console.print(
            f"[green]Added {data['subtasksAdded']} subtasks[/green]: {', '.join(data['subtaskIds'])}"
        ),
    )


@app.command("expand-all")
def expand_all(
    num: int | None = typer.Option(None, "--num", "-n", min=1, max=20),
    research: bool = typer.Option(False, "--research", "-r"),
    force: bool = typer.Option(False, "--force", help="Re-expand tasks that already have subtasks"),
    context: str = typer.Option("", "--context"),
    timeout: float | None = typer.Option(None, "--timeout", min=0.1, help="Per-call AI timeout in seconds"),
) -> None:
    """Expand every open task that has no subtasks."""
    with console.status("Expanding tasks..."):
        result = run_operation(
            lambda s: s.expand_all(
                num_subtasks=num,
                research=research,
                force=force,
                additional_context=context,
                project_ref=state["project"],
                timeout=timeout,
            )
        )

    def render(data: dict[str, Any]) -> None:
        table = Table(title="Expansion")
        table.add_column("Task", style="cyan", justify="right")
        table.add_column("Result")
        for row in data["results"]:
            outcome = (
                f"[green]{row['subtasksAdded']} subtasks[/green]"
                if row["success"]
                else f"[red]{row['error']}[/red]"
            )
            table.add_row(str(row["taskId"]), outcome)
        console.print(table)
        console.print(f"[bold]{data['expanded']} expanded, {data['failed']} failed[/bold]")

    emit(result, render)


@app.command("clear-subtasks")
def clear_subtasks(
    ids: str = typer.Argument("all", help="'1,2,3', '3..7' or 'all'"),
) -> None:
    """Remove subtasks from tasks."""
    result = run_operation(lambda s: s.clear_subtasks(ids, state["project"]))
    emit(
        result,
        lambda data: console.print(
            f"[green]Cleared subtasks from[/green] {', '.join(map(str, data['cleared'])) or 'no tasks'}"
        ),
    )


@app.command()
def delete(ref: str = typer.Argument(..., help="Task id ('7') or subtask id ('7.2')")) -> None:
    """Delete a task (and its subtasks) or a single subtask."""
    result = run_operation(lambda s: s.delete_task(ref, state["project"]))
    emit(result, lambda data: console.print(f"[green]Deleted[/green] {data['deleted']}"))


# =============================================================================
# DEPENDENCIES
# =============================================================================


@app.command("add-dep")
def add_dep(
    task_id: int = typer.Argument(..., help="Dependent task"),
    dependency_id: int = typer.Argument(..., help="Task it depends on"),
) -> None:
    """Add a dependency edge."""
    result = run_operation(lambda s: s.add_dependency(task_id, dependency_id, state["project"]))
    emit(result, lambda data: console.print(f"[green]Task {task_id} now depends on {dependency_id}[/green]"))


@app.command("remove-dep")
def remove_dep(
    task_id: int = typer.Argument(..., help="Dependent task"),
    dependency_id: int = typer.Argument(..., help="Dependency to remove"),
) -> None:
    """Remove a dependency edge."""
    result = run_operation(lambda s: s.remove_dependency(task_id, dependency_id, state["project"]))
    emit(result, lambda data: console.print(f"[green]Removed dependency {task_id} -> {dependency_id}[/green]"))


@app.command()
def validate() -> None:
    """Check dependencies for missing references, self references and cycles."""
    result = run_operation(lambda s: s.validate_dependencies(state["project"]))

    def render(data: dict[str, Any]) -> None:
        if data["valid"]:
            console.print("[green]All dependencies are valid[/green]")
            for index, wave in enumerate(data["waves"]):
                console.print(f"[dim]Wave {index}: {', '.join(map(str, wave))}[/dim]")
            return
        for violation in data["violations"]:
            console.print(f"[red]{violation['kind']}[/red]: {violation['message']}")
        raise typer.Exit(code=1)

    emit(result, render)


@app.command()
def fix() -> None:
    """Repair dependency violations by removing offending edges."""
    result = run_operation(lambda s: s.fix_dependencies(state["project"]))

    def render(data: dict[str, Any]) -> None:
        for item in data["fixes"]:
            console.print(f"[green]-[/green] {item['message']}")
        console.print(f"[bold]{data['fixed']} fixes applied[/bold]")

    emit(result, render)


# =============================================================================
# ANALYSIS AND FILES
# =============================================================================


@app.command()
def analyze(
    ids: str = typer.Option("all", "--ids", "-i", help="'1,2,3', '3..7' or 'all'"),
    threshold: int | None = typer.Option(None, "--threshold", "-t", min=1, max=10),
    research: bool = typer.Option(False, "--research", "-r"),
    output: Path | None = typer.Option(None, "--output", "-o", help="Write complexity-report.json"),
    timeout: float | None = typer.Option(None, "--timeout", min=0.1, help="Per-call AI timeout in seconds"),
) -> None:
    """Score task complexity."""
    result = run_operation(
        lambda s: s.analyze_complexity(ids, threshold, research, state["project"], output, timeout=timeout)
    )

    def render(data: dict[str, Any]) -> None:
        table = Table(title="Complexity")
        table.add_column("ID", style="cyan", justify="right")
        table.add_column("Title", style="bold")
        table.add_column("Score", justify="right")
        table.add_column("Level")
        table.add_column("Recommendation")
        for row in data["analyses"]:
            table.add_row(
                str(row["taskId"]),
                row["title"],
                str(row["score"]),
                row["level"],
                row["recommendations"][0] if row["recommendations"] else "",
            )
        console.print(table)
        summary = data["summary"]
        console.print(
            f"high: {summary['highCount']}  medium: {summary['mediumCount']}  low: {summary['lowCount']}"
        )
        if data["missingIds"]:
            console.print(f"[yellow]Not found: {', '.join(map(str, data['missingIds']))}[/yellow]")

    emit(result, render)


@app.command()
def generate(
    output_dir: Path | None = typer.Option(None, "--output", "-o", help="Directory for task files"),
) -> None:
    """Write one task_NNN.txt file per task."""
    result = run_operation(lambda s: s.generate_files(state["project"], output_dir))
    emit(
        result,
        lambda data: console.print(
            f"[green]Generated {data['count']} task files[/green] in {data['directory']}"
        ),
    )


if __name__ == "__main__":
    app()

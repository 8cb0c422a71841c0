"""TaskGraph service - wires the engine together and exposes boundary operations.

This module provides the primary interface for external callers (the CLI,
or any HTTP/tool-call adapter). Every method returns the
``{success, data | error}`` OperationResult envelope.
"""

from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

from loguru import logger

from taskgraph.ai.models import OperationTelemetry
from taskgraph.ai.orchestrator import AIOrchestrator
from taskgraph.core.config import Settings, configure_logging, get_settings
from taskgraph.core.exceptions import ConfigurationError, TaskGraphError, TaskNotFoundError
from taskgraph.tasks.complexity import AnalysisOptions, ComplexityAnalyzer, TaskSelection
from taskgraph.tasks.database import SqlTaskStore
from taskgraph.tasks.dependency_graph import DependencyGraph
from taskgraph.tasks.models import TaskRef, TaskStatus
from taskgraph.tasks.mutations import OperationResult, TaskMutationEngine
from taskgraph.tasks.store import JsonTaskStore, TaskStore
from taskgraph.tasks.task_files import generate_task_files


def build_store(settings: Settings) -> TaskStore:
    """Create the configured persistence backend."""
    if settings.taskgraph_store_backend == "sql":
        if not settings.database_url:
            raise ConfigurationError("DATABASE_URL is required for the sql store backend")
        return SqlTaskStore(
            settings.database_url,
            backup_retention=settings.taskgraph_backup_retention,
            echo=settings.taskgraph_debug,
        )
    return JsonTaskStore(settings.data_path, backup_retention=settings.taskgraph_backup_retention)


class TaskGraphService:
    """
    Facade over store, dependency graph, complexity analyzer, AI
    orchestrator and mutation engine.

    Example:
        >>> service = TaskGraphService()
        >>> await service.init_project()
        >>> result = await service.add_task(title="Set up CI")
        >>> (await service.next_task()).data["task"]["id"]
        1
    """

    def __init__(
        self,
        settings: Settings | None = None,
        store: TaskStore | None = None,
        orchestrator: AIOrchestrator | None = None,
        configure_logs: bool = False,
    ) -> None:
        """Initialize the service.

        Args:
            settings: Optional settings override. Uses default if not provided.
            store: Optional store override; built from settings otherwise.
            orchestrator: Optional orchestrator override; built from settings otherwise.
            configure_logs: Install the loguru sinks described by settings.
        """
        self.settings = settings or get_settings()
        if configure_logs:
            configure_logging(self.settings)

        self.store = store or build_store(self.settings)
        self.orchestrator = orchestrator or AIOrchestrator(self.settings.to_ai_config())
        self.analyzer = ComplexityAnalyzer(
            self.orchestrator,
            max_concurrent=self.settings.taskgraph_batch_concurrency,
        )
        self.engine = TaskMutationEngine(
            self.store,
            self.orchestrator,
            batch_concurrency=self.settings.taskgraph_batch_concurrency,
        )

    def _project(self, project_ref: str | None) -> str:
        return project_ref or self.settings.taskgraph_project

    async def _read(
        self,
        name: str,
        compute: Callable[[], Awaitable[Any]],
        telemetry: OperationTelemetry | None = None,
    ) -> OperationResult:
        """Run a read-only operation (no lock) inside the error envelope."""
        try:
            data = await compute()
        except TaskGraphError as e:
            logger.warning(f"{name} failed: [{e.code.value}] {e.message}")
            return OperationResult.from_exception(e, telemetry)
        except Exception as e:
            return OperationResult.from_exception(e, telemetry)
        return OperationResult(success=True, data=data, telemetry=telemetry)

    # =========================================================================
    # PROJECTS
    # =========================================================================

    async def init_project(self, project_ref: str | None = None, name: str | None = None) -> OperationResult:
        """Create an empty task collection for a project."""
        return await self.engine.init_project(self._project(project_ref), name)

    async def close(self) -> None:
        await self.store.close()

    # =========================================================================
    # READ-ONLY OPERATIONS
    # =========================================================================

    async def list_tasks(
        self,
        project_ref: str | None = None,
        status: str | None = None,
        with_subtasks: bool = False,
    ) -> OperationResult:
        """List tasks, optionally filtered by status."""
        project = self._project(project_ref)

        async def compute() -> dict[str, Any]:
            collection = await self.store.load(project)
            wanted = TaskStatus(status.lower()) if status else None
            tasks = [
                t for t in collection.sorted_tasks()
                if wanted is None or t.status == wanted
            ]
            rows = []
            for task in tasks:
                row = task.to_dict()
                if not with_subtasks:
                    row["subtasks"] = len(task.subtasks)
                rows.append(row)
            completed = len(collection.completed_ids)
            total = len(collection.tasks)
            return {
                "tasks": rows,
                "stats": {
                    "total": total,
                    "completed": completed,
                    "completionPercentage": round(completed / total * 100, 1) if total else 0.0,
                },
            }

        return await self._read("list-tasks", compute)

    async def get_task(self, ref: int | str, project_ref: str | None = None) -> OperationResult:
        """Get one task ('7') or subtask ('7.2')."""
        project = self._project(project_ref)

        async def compute() -> dict[str, Any]:
            parsed = TaskRef.parse(ref)
            collection = await self.store.load(project)
            task = collection.require(parsed.task_id)
            graph = DependencyGraph(collection)
            if parsed.is_subtask:
                subtask = task.get_subtask(parsed.subtask_id)
                if subtask is None:
                    raise TaskNotFoundError(str(parsed), f"Subtask {parsed} not found")
                return {
                    "id": str(parsed),
                    "parentTaskId": task.id,
                    "subtask": subtask.model_dump(mode="json"),
                }
            return {
                "task": task.to_dict(),
                "ready": graph.is_ready(task.id),
                "dependents": graph.dependents(task.id),
            }

        return await self._read("get-task", compute)

    async def next_task(self, project_ref: str | None = None) -> OperationResult:
        """NextTask(projectRef) -> Task | none(reason)."""
        project = self._project(project_ref)

        async def compute() -> dict[str, Any]:
            collection = await self.store.load(project)
            return DependencyGraph(collection).next_task().to_dict()

        return await self._read("next-task", compute)

    async def validate_dependencies(self, project_ref: str | None = None) -> OperationResult:
        """Report every dependency violation without changing anything."""
        project = self._project(project_ref)

        async def compute() -> dict[str, Any]:
            collection = await self.store.load(project)
            graph = DependencyGraph(collection)
            violations = graph.validate()
            return {
                "valid": not violations,
                "violations": [v.model_dump(mode="json") for v in violations],
                "waves": graph.waves() if not violations else [],
            }

        return await self._read("validate-dependencies", compute)

    async def analyze_complexity(
        self,
        selection: str | list[int] | None = "all",
        threshold: int | None = None,
        research: bool = False,
        project_ref: str | None = None,
        output_path: str | Path | None = None,
        timeout: float | None = None,
    ) -> OperationResult:
        """
        AnalyzeComplexity(ids|range|all, threshold, research?) -> Report.

        Read-only: never takes the write lock, even in research mode.
        """
        project = self._project(project_ref)
        telemetry = OperationTelemetry(operation="analyze-complexity")

        async def compute() -> dict[str, Any]:
            parsed = TaskSelection.parse(selection)
            options = AnalysisOptions(
                threshold=threshold or self.settings.taskgraph_complexity_threshold,
                research=research,
                timeout=timeout,
            )
            collection = await self.store.load(project)
            report = await self.analyzer.analyze_batch(collection, parsed, options, telemetry)
            if output_path is not None:
                report.write(output_path)
            return report.to_dict()

        return await self._read("analyze-complexity", compute, telemetry)

    async def generate_files(
        self,
        project_ref: str | None = None,
        output_dir: str | Path | None = None,
    ) -> OperationResult:
        """Render task_NNN.txt files for a project."""
        project = self._project(project_ref)

        async def compute() -> dict[str, Any]:
            collection = await self.store.load(project)
            target = Path(output_dir) if output_dir else self.settings.data_path / project / "tasks"
            result = generate_task_files(collection, target)
            return result.model_dump() | {"count": result.count}

        return await self._read("generate-files", compute)

    # =========================================================================
    # MUTATIONS
    # =========================================================================

    async def add_task(self, title: str, project_ref: str | None = None, **fields: Any) -> OperationResult:
        return await self.engine.add_task(self._project(project_ref), title, **fields)

    async def update_task(
        self,
        task_id: int,
        patch: dict[str, Any] | None = None,
        prompt: str | None = None,
        research: bool = False,
        project_ref: str | None = None,
        timeout: float | None = None,
    ) -> OperationResult:
        """UpdateTaskById: a manual field patch or an AI change request."""
        project = self._project(project_ref)
        if prompt:
            return await self.engine.update_with_ai(project, task_id, prompt, research=research, timeout=timeout)
        return await self.engine.update_manual(project, task_id, patch or {})

    async def update_subtask(self, subtask_ref: str, patch: dict[str, Any], project_ref: str | None = None) -> OperationResult:
        return await self.engine.update_subtask(self._project(project_ref), subtask_ref, patch)

    async def set_status(self, ref: int | str, status: str, project_ref: str | None = None) -> OperationResult:
        return await self.engine.set_status(self._project(project_ref), ref, status)

    async def expand_task(
        self,
        task_id: int,
        num_subtasks: int | None = None,
        research: bool = False,
        clear_first: bool = False,
        additional_context: str = "",
        project_ref: str | None = None,
        timeout: float | None = None,
    ) -> OperationResult:
        return await self.engine.expand(
            self._project(project_ref),
            task_id,
            num_subtasks=num_subtasks,
            research=research,
            clear_first=clear_first,
            additional_context=additional_context,
            timeout=timeout,
        )

    async def expand_all(
        self,
        num_subtasks: int | None = None,
        research: bool = False,
        force: bool = False,
        additional_context: str = "",
        project_ref: str | None = None,
        timeout: float | None = None,
    ) -> OperationResult:
        return await self.engine.expand_all(
            self._project(project_ref),
            num_subtasks=num_subtasks,
            research=research,
            force=force,
            additional_context=additional_context,
            timeout=timeout,
        )

    async def clear_subtasks(self, selection: str | list[int], project_ref: str | None = None) -> OperationResult:
        return await self.engine.clear_subtasks(self._project(project_ref), selection)

    async def add_dependency(self, task_id: int, dependency_id: int, project_ref: str | None = None) -> OperationResult:
        return await self.engine.add_dependency(self._project(project_ref), task_id, dependency_id)

    async def remove_dependency(self, task_id: int, dependency_id: int, project_ref: str | None = None) -> OperationResult:
        return await self.engine.remove_dependency(self._project(project_ref), task_id, dependency_id)

    async def fix_dependencies(self, project_ref: str | None = None) -> OperationResult:
        return await self.engine.fix_dependencies(self._project(project_ref))

    async def delete_task(self, ref: int | str, project_ref: str | None = None) -> OperationResult:
        return await self.engine.delete(self._project(project_ref), ref)

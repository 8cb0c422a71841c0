"""
Task mutation engine - the only component that writes task collections.

Every operation runs load -> compute -> validate -> write-or-abort while
holding the store's per-project lock, and is tracked through the states
LOADED, COMPUTING, VALIDATING, COMMITTED or ABORTED. Nothing intermediate
is ever persisted. Public operations never raise for domain failures:
they return an OperationResult with ``success=False`` and an error code.

Example:
    >>> engine = TaskMutationEngine(store, orchestrator)
    >>> result = await engine.add_dependency("default", 3, 2)
    >>> result.success
    True
"""

import asyncio
from collections.abc import AsyncGenerator, Awaitable, Callable
from contextlib import asynccontextmanager
from enum import Enum
from typing import Any

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from taskgraph.ai.models import AIRole, OperationTelemetry
from taskgraph.ai.orchestrator import AIOrchestrator
from taskgraph.core.exceptions import (
    ConfigurationError,
    ErrorCode,
    ResponseFormatError,
    TaskGraphError,
    TaskNotFoundError,
    ValidationError,
)
from taskgraph.prompts.builder import (
    ExpansionResponse,
    UpdateResponse,
    get_prompt_builder,
)
from taskgraph.tasks.complexity import TaskSelection
from taskgraph.tasks.dependency_graph import DependencyGraph, Violation, ViolationKind
from taskgraph.tasks.models import (
    Subtask,
    SubtaskStatus,
    Task,
    TaskCollection,
    TaskRef,
    TaskStatus,
)
from taskgraph.tasks.store import TaskStore

MIN_SUBTASKS = 1
MAX_SUBTASKS = 20

# Patch key (camelCase or snake_case) -> Task attribute
TASK_PATCH_FIELDS: dict[str, str] = {
    "title": "title",
    "description": "description",
    "details": "details",
    "priority": "priority",
    "testStrategy": "test_strategy",
    "test_strategy": "test_strategy",
    "estimatedEffort": "estimated_effort",
    "estimated_effort": "estimated_effort",
    "actualEffort": "actual_effort",
    "actual_effort": "actual_effort",
}

SUBTASK_PATCH_FIELDS: dict[str, str] = {
    "title": "title",
    "description": "description",
    "details": "details",
    "assignee": "assignee",
    "status": "status",
}

# Fields with dedicated operations
PROTECTED_FIELDS: dict[str, str] = {
    "id": "task ids are immutable",
    "dependencies": "use add_dependency / remove_dependency",
    "subtasks": "use expand / clear_subtasks / update_subtask",
    "status": "use set_status",
}

# =============================================================================
# RESULT MODELS
# =============================================================================


class OperationState(str, Enum):
    """Lifecycle of a single mutation."""

    LOADED = "LOADED"
    COMPUTING = "COMPUTING"
    VALIDATING = "VALIDATING"
    COMMITTED = "COMMITTED"
    ABORTED = "ABORTED"


class OperationError(BaseModel):
    """Error half of the operation envelope."""

    code: ErrorCode
    message: str
    violations: list[Violation] = Field(default_factory=list)
    details: dict[str, Any] = Field(default_factory=dict)


class OperationResult(BaseModel):
    """
    ``{success, data | error}`` envelope returned by every mutation.

    A successful no-op carries ``code=NO_OP`` and ``data["updated"] is False``.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    success: bool
    data: Any = None
    error: OperationError | None = None
    code: ErrorCode | None = None
    state: OperationState | None = None
    telemetry: OperationTelemetry | None = None

    @classmethod
    def from_exception(
        cls,
        error: Exception,
        telemetry: OperationTelemetry | None = None,
    ) -> "OperationResult":
        """Convert an exception into the failure envelope."""
        if isinstance(error, TaskGraphError):
            payload = OperationError(
                code=error.code,
                message=error.message,
                violations=getattr(error, "violations", []),
                details=error.details,
            )
        elif isinstance(error, (PydanticValidationError, ValueError)):
            payload = OperationError(code=ErrorCode.VALIDATION_ERROR, message=str(error))
        else:
            logger.exception(f"Unexpected error: {error}")
            payload = OperationError(
                code=ErrorCode.INTERNAL_ERROR,
                message=f"{type(error).__name__}: {error}",
            )
        return cls(
            success=False,
            error=payload,
            code=payload.code,
            state=OperationState.ABORTED,
            telemetry=telemetry,
        )

    @property
    def is_no_op(self) -> bool:
        return self.success and self.code == ErrorCode.NO_OP

    def to_dict(self) -> dict[str, Any]:
        """Convert to the external envelope."""
        data: dict[str, Any] = {"success": self.success}
        if self.success:
            data["data"] = self.data
            if self.code is not None:
                data["code"] = self.code.value
        else:
            data["error"] = self.error.model_dump(mode="json", exclude_defaults=True)
            data["error"]["code"] = self.error.code.value
        if self.telemetry is not None and self.telemetry.records:
            data["telemetry"] = self.telemetry.to_dict()
        return data


class _Operation:
    """Working state of one in-flight mutation."""

    def __init__(self, name: str, project_ref: str, collection: TaskCollection, telemetry: OperationTelemetry):
        self.name = name
        self.project_ref = project_ref
        self.baseline = collection
        self.working = collection.working_copy()
        self.telemetry = telemetry
        self.state = OperationState.LOADED
        self.no_op = False

    def transition(self, state: OperationState) -> None:
        logger.debug(f"{self.name}[{self.project_ref}]: {self.state.value} -> {state.value}")
        self.state = state

    def mark_no_op(self) -> None:
        """Finish without writing anything."""
        self.no_op = True


def _violation_key(violation: Violation) -> tuple:
    # A cycle is identified by its edges, whichever node the search entered it from
    if violation.kind == ViolationKind.CYCLE:
        cycle = list(violation.cycle)
        return (violation.kind, frozenset(zip(cycle, cycle[1:] + cycle[:1], strict=True)))
    return (violation.kind, violation.task_id, violation.dependency_id)


# =============================================================================
# MUTATION ENGINE
# =============================================================================


class TaskMutationEngine:
    """
    Apply manual and AI-driven changes to a task collection atomically.

    Attributes:
        store: Persistence backend; also provides the per-project lock.
        orchestrator: AI orchestrator for expand and AI updates.
        batch_concurrency: Worker pool size for expand_all.
    """

    def __init__(
        self,
        store: TaskStore,
        orchestrator: AIOrchestrator | None = None,
        batch_concurrency: int = 3,
    ) -> None:
        """
        Initialize the engine.

        Args:
            store: Task store.
            orchestrator: Needed only by AI operations.
            batch_concurrency: Concurrent AI calls in expand_all.
        """
        self.store = store
        self.orchestrator = orchestrator
        self.batch_concurrency = batch_concurrency
        self._prompt_builder = get_prompt_builder()

    # =========================================================================
    # OPERATION PIPELINE
    # =========================================================================

    @asynccontextmanager
    async def _operation(
        self,
        name: str,
        project_ref: str,
        telemetry: OperationTelemetry,
    ) -> AsyncGenerator[_Operation, None]:
        """Lock, load, yield a working copy, then validate and commit or abort."""
        async with self.store.lock(project_ref):
            collection = await self.store.load(project_ref)
            op = _Operation(name, project_ref, collection, telemetry)
            try:
                op.transition(OperationState.COMPUTING)
                yield op
                if not op.no_op:
                    op.transition(OperationState.VALIDATING)
                    self._check_invariants(op)
                    await self.store.save(project_ref, op.working)
                op.transition(OperationState.COMMITTED)
            except BaseException:
                op.transition(OperationState.ABORTED)
                raise

    def _check_invariants(self, op: _Operation) -> None:
        """Reject the working copy if it introduces a violation absent from the baseline."""
        before = {_violation_key(v) for v in DependencyGraph(op.baseline).validate()}
        introduced = [
            v for v in DependencyGraph(op.working).validate()
            if _violation_key(v) not in before
        ]
        if introduced:
            first = introduced[0]
            raise ValidationError(
                f"{first.kind.value}: {first.message}",
                violations=introduced,
            )

    async def _execute(
        self,
        name: str,
        project_ref: str,
        compute: Callable[[_Operation], Awaitable[Any]],
    ) -> OperationResult:
        """Run compute inside the pipeline and wrap the outcome in the envelope."""
        telemetry = OperationTelemetry(operation=name)
        try:
            async with self._operation(name, project_ref, telemetry) as op:
                data = await compute(op)
        except TaskGraphError as e:
            logger.warning(f"{name} aborted: [{e.code.value}] {e.message}")
            return OperationResult.from_exception(e, telemetry)
        except Exception as e:
            return OperationResult.from_exception(e, telemetry)

        if op.no_op:
            logger.info(f"{name}: no changes")
        else:
            logger.info(f"{name} committed for project '{project_ref}'")
        return OperationResult(
            success=True,
            data=data,
            code=ErrorCode.NO_OP if op.no_op else None,
            state=op.state,
            telemetry=telemetry,
        )

    def _require_orchestrator(self) -> AIOrchestrator:
        if self.orchestrator is None:
            raise ConfigurationError("AI orchestrator is not configured")
        return self.orchestrator

    # =========================================================================
    # TASK CRUD
    # =========================================================================

    async def init_project(self, project_ref: str, name: str | None = None) -> OperationResult:
        """
        Create an empty collection for a new project.

        The existence check and the first write happen under the project
        lock, so of two concurrent calls exactly one succeeds.
        """
        try:
            async with self.store.lock(project_ref):
                collection = await self.store.initialize(project_ref, name)
        except TaskGraphError as e:
            logger.warning(f"init-project aborted: [{e.code.value}] {e.message}")
            return OperationResult.from_exception(e)

        return OperationResult(
            success=True,
            data={"project": project_ref, "metadata": collection.metadata},
            state=OperationState.COMMITTED,
        )

    async def add_task(
        self,
        project_ref: str,
        title: str,
        description: str | None = None,
        details: str | None = None,
        test_strategy: str | None = None,
        priority: str = "medium",
        dependencies: list[int] | None = None,
    ) -> OperationResult:
        """Create a task with a freshly allocated id."""

        async def compute(op: _Operation) -> dict[str, Any]:
            task = Task(
                id=op.working.allocate_id(),
                title=title,
                description=description,
                details=details,
                test_strategy=test_strategy,
                priority=priority,
                dependencies=list(dict.fromkeys(dependencies or [])),
            )
            op.working.add(task)
            return {"task": task.to_dict(), "taskId": task.id}

        return await self._execute("add-task", project_ref, compute)

    async def update_manual(
        self,
        project_ref: str,
        task_id: int,
        patch: dict[str, Any],
    ) -> OperationResult:
        """
        Apply a field patch to a task.

        Only the provided fields change. Unknown fields and any attempt to
        patch id, dependencies, subtasks or status are rejected.
        """

        async def compute(op: _Operation) -> dict[str, Any]:
            updates = self._resolve_patch(patch, TASK_PATCH_FIELDS)
            task = op.working.require(task_id)
            changed = self._apply_patch(task, updates)
            if not changed:
                op.mark_no_op()
            else:
                task.touch()
            return {"updated": bool(changed), "changedFields": changed, "task": task.to_dict()}

        return await self._execute("update-task", project_ref, compute)

    async def update_subtask(
        self,
        project_ref: str,
        subtask_ref: str,
        patch: dict[str, Any],
    ) -> OperationResult:
        """Apply a field patch to a subtask given as 'parent.sub'."""

        async def compute(op: _Operation) -> dict[str, Any]:
            ref = TaskRef.parse(subtask_ref)
            if not ref.is_subtask:
                raise ValidationError(f"'{subtask_ref}' is not a subtask id (expected 'parent.sub')")
            updates = self._resolve_patch(patch, SUBTASK_PATCH_FIELDS)
            parent = op.working.require(ref.task_id)
            subtask = self._require_subtask(parent, ref)
            changed = self._apply_patch(subtask, updates)
            if not changed:
                op.mark_no_op()
            else:
                parent.touch()
            return {
                "updated": bool(changed),
                "changedFields": changed,
                "subtaskId": str(ref),
                "subtask": subtask.model_dump(mode="json"),
            }

        return await self._execute("update-subtask", project_ref, compute)

    async def set_status(self, project_ref: str, ref: int | str, status: str) -> OperationResult:
        """
        Set the status of a task ('7') or subtask ('7.2').

        Marking a task done/completed also completes its subtasks.
        """

        async def compute(op: _Operation) -> dict[str, Any]:
            parsed = TaskRef.parse(ref)
            task = op.working.require(parsed.task_id)

            if parsed.is_subtask:
                subtask = self._require_subtask(task, parsed)
                old_subtask_status = subtask.status
                try:
                    subtask.status = status
                except PydanticValidationError as e:
                    raise ValidationError(f"Invalid subtask status '{status}'") from e
                if subtask.status == old_subtask_status:
                    op.mark_no_op()
                    return {"id": str(parsed), "status": subtask.status.value}
                task.touch()
                return {"id": str(parsed), "status": subtask.status.value}

            try:
                new_status = TaskStatus(status.lower())
            except ValueError as e:
                allowed = ", ".join(s.value for s in TaskStatus)
                raise ValidationError(f"Invalid status '{status}'. Allowed: {allowed}") from e

            old_status = task.status
            if old_status == new_status:
                op.mark_no_op()
                return {"id": str(parsed), "oldStatus": old_status.value, "status": new_status.value}
            task.status = new_status
            if new_status.is_terminal:
                for subtask in task.subtasks:
                    subtask.status = SubtaskStatus.COMPLETED
            task.touch()
            return {"id": str(parsed), "oldStatus": old_status.value, "status": new_status.value}

        return await self._execute("set-status", project_ref, compute)

    async def delete(self, project_ref: str, ref: int | str) -> OperationResult:
        """
        Delete a task (and its subtasks) or a single subtask.

        Deleting a task strips its id from every other task's dependencies;
        the id high-water mark is untouched so the id is never reused.
        """

        async def compute(op: _Operation) -> dict[str, Any]:
            parsed = TaskRef.parse(ref)
            task = op.working.require(parsed.task_id)

            if parsed.is_subtask:
                subtask = self._require_subtask(task, parsed)
                task.subtasks = [s for s in task.subtasks if s.id != subtask.id]
                task.touch()
                return {"deleted": str(parsed), "subtask": subtask.model_dump(mode="json")}

            op.working.remove(task.id)
            updated_dependents = []
            for other in op.working.tasks:
                if task.id in other.dependencies:
                    other.dependencies = [d for d in other.dependencies if d != task.id]
                    other.touch()
                    updated_dependents.append(other.id)

            return {
                "deleted": str(parsed),
                "task": task.to_dict(),
                "removedSubtasks": len(task.subtasks),
                "updatedDependents": updated_dependents,
            }

        return await self._execute("delete-task", project_ref, compute)

    # =========================================================================
    # DEPENDENCIES
    # =========================================================================

    async def add_dependency(self, project_ref: str, task_id: int, dependency_id: int) -> OperationResult:
        """
        Add one dependency edge.

        Rejected with VALIDATION_ERROR when the edge references a missing
        task, points at the task itself, already exists, or closes a cycle.
        """

        async def compute(op: _Operation) -> dict[str, Any]:
            task = op.working.require(task_id)
            if dependency_id == task_id:
                raise ValidationError(
                    f"SELF_DEPENDENCY: Task {task_id} cannot depend on itself",
                    violations=[
                        Violation(
                            kind=ViolationKind.SELF_DEPENDENCY,
                            task_id=task_id,
                            dependency_id=dependency_id,
                            message=f"Task {task_id} depends on itself",
                        )
                    ],
                )
            if op.working.get(dependency_id) is None:
                raise ValidationError(
                    f"MISSING_REFERENCE: Dependency target {dependency_id} does not exist",
                    violations=[
                        Violation(
                            kind=ViolationKind.MISSING_REFERENCE,
                            task_id=task_id,
                            dependency_id=dependency_id,
                            message=f"Task {task_id} depends on missing task {dependency_id}",
                        )
                    ],
                )
            if dependency_id in task.dependencies:
                raise ValidationError(
                    f"DUPLICATE_REFERENCE: Task {task_id} already depends on {dependency_id}",
                    violations=[
                        Violation(
                            kind=ViolationKind.DUPLICATE_REFERENCE,
                            task_id=task_id,
                            dependency_id=dependency_id,
                            message=f"Task {task_id} already depends on {dependency_id}",
                        )
                    ],
                )

            task.dependencies = [*task.dependencies, dependency_id]
            task.touch()
            return {"taskId": task_id, "dependencyId": dependency_id, "dependencies": task.dependencies}

        return await self._execute("add-dependency", project_ref, compute)

    async def remove_dependency(self, project_ref: str, task_id: int, dependency_id: int) -> OperationResult:
        """Remove one dependency edge; NOT_FOUND if the edge is absent."""

        async def compute(op: _Operation) -> dict[str, Any]:
            task = op.working.require(task_id)
            if dependency_id not in task.dependencies:
                raise TaskNotFoundError(
                    f"{task_id}->{dependency_id}",
                    f"Task {task_id} does not depend on task {dependency_id}",
                )
            task.dependencies = [d for d in task.dependencies if d != dependency_id]
            task.touch()
            return {"taskId": task_id, "dependencyId": dependency_id, "dependencies": task.dependencies}

        return await self._execute("remove-dependency", project_ref, compute)

    async def fix_dependencies(self, project_ref: str) -> OperationResult:
        """Commit DependencyGraph.auto_fix(); a clean graph is a no-op."""

        async def compute(op: _Operation) -> dict[str, Any]:
            result = DependencyGraph(op.working).auto_fix()
            if not result.changed:
                op.mark_no_op()
                return {"fixed": 0, "fixes": []}
            op.working = result.collection
            return {
                "fixed": len(result.fixes),
                "fixes": [f.model_dump(mode="json") for f in result.fixes],
            }

        return await self._execute("fix-dependencies", project_ref, compute)

    # =========================================================================
    # SUBTASKS AND AI OPERATIONS
    # =========================================================================

    async def clear_subtasks(self, project_ref: str, selection: str | list[int]) -> OperationResult:
        """Remove all subtasks from the selected tasks ('1,2', '3..5' or 'all')."""

        async def compute(op: _Operation) -> dict[str, Any]:
            parsed = selection if isinstance(selection, TaskSelection) else TaskSelection.parse(selection)
            found, missing = parsed.resolve(op.working)
            if missing and not found:
                raise TaskNotFoundError(",".join(str(i) for i in missing))

            cleared = []
            for task_id in found:
                task = op.working.require(task_id)
                if task.subtasks:
                    task.subtasks = []
                    task.touch()
                    cleared.append(task_id)
            if not cleared:
                op.mark_no_op()
            return {"cleared": cleared, "missing": missing}

        return await self._execute("clear-subtasks", project_ref, compute)

    async def update_with_ai(
        self,
        project_ref: str,
        task_id: int,
        prompt: str,
        research: bool = False,
        timeout: float | None = None,
    ) -> OperationResult:
        """
        Apply a natural-language change request via the main or research role.

        A response with ``updated: false`` or no effective change succeeds
        as a NO_OP and leaves the task untouched.
        """

        async def compute(op: _Operation) -> dict[str, Any]:
            if not prompt or not prompt.strip():
                raise ValidationError("Update prompt must not be empty")
            orchestrator = self._require_orchestrator()
            task = op.working.require(task_id)

            spec = self._prompt_builder.build_update_prompt(task, prompt, research, timeout=timeout)
            role = AIRole.RESEARCH if research else AIRole.MAIN
            result = await orchestrator.run(role, spec, telemetry=op.telemetry)
            response: UpdateResponse = result.payload

            changed: list[str] = []
            if response.updated and response.task is not None:
                updates = response.task.model_dump(exclude_none=True)
                changed = self._apply_patch(task, updates)

            if not changed:
                op.mark_no_op()
            else:
                task.touch()
            return {
                "updated": bool(changed),
                "changedFields": changed,
                "reason": response.reason,
                "task": task.to_dict(),
                "provider": result.provider,
                "model": result.model,
                "isFallback": result.is_fallback,
            }

        return await self._execute("update-task-ai", project_ref, compute)

    async def expand(
        self,
        project_ref: str,
        task_id: int,
        num_subtasks: int | None = None,
        research: bool = False,
        clear_first: bool = False,
        additional_context: str = "",
        timeout: float | None = None,
    ) -> OperationResult:
        """
        Append AI-proposed subtasks with fresh per-task ids.

        Args:
            project_ref: Project.
            task_id: Task to expand.
            num_subtasks: Exact count to keep (1-20); provider's choice when None.
            research: Use the research role.
            clear_first: Remove existing subtasks before appending.
            additional_context: Extra prompt context.
            timeout: Per-call AI timeout in seconds; None uses the configured default.
        """

        async def compute(op: _Operation) -> dict[str, Any]:
            self._check_num_subtasks(num_subtasks)
            orchestrator = self._require_orchestrator()
            task = op.working.require(task_id)
            added = await self._expand_task(
                orchestrator, task, num_subtasks, research, clear_first, additional_context,
                op.telemetry, timeout,
            )
            return {
                "task": task.to_dict(),
                "subtasksAdded": len(added),
                "subtaskIds": [s.full_id(task.id) for s in added],
            }

        return await self._execute("expand-task", project_ref, compute)

    async def expand_all(
        self,
        project_ref: str,
        num_subtasks: int | None = None,
        research: bool = False,
        force: bool = False,
        additional_context: str = "",
        timeout: float | None = None,
    ) -> OperationResult:
        """
        Expand every open task without subtasks in one atomic commit.

        AI calls run on a bounded worker pool; a failure on one task is
        reported as a row and never aborts the others. With ``force`` tasks
        that already have subtasks are cleared and re-expanded.
        """

        async def compute(op: _Operation) -> dict[str, Any]:
            self._check_num_subtasks(num_subtasks)
            orchestrator = self._require_orchestrator()
            candidates = [
                t for t in op.working.sorted_tasks()
                if not t.status.is_closed and (force or not t.subtasks)
            ]
            if not candidates:
                op.mark_no_op()
                return {"expanded": 0, "failed": 0, "results": []}

            semaphore = asyncio.Semaphore(self.batch_concurrency)

            async def _one(task: Task) -> list[Subtask]:
                async with semaphore:
                    return await self._expand_task(
                        orchestrator, task, num_subtasks, research, force, additional_context,
                        op.telemetry, timeout,
                    )

            logger.info(f"Expanding {len(candidates)} tasks (concurrency={self.batch_concurrency})")
            outcomes = await asyncio.gather(*(_one(t) for t in candidates), return_exceptions=True)

            rows = []
            for task, outcome in zip(candidates, outcomes, strict=False):
                if isinstance(outcome, BaseException) and not isinstance(outcome, Exception):
                    raise outcome
                if isinstance(outcome, Exception):
                    message = outcome.message if isinstance(outcome, TaskGraphError) else str(outcome)
                    logger.error(f"Expansion of task {task.id} failed: {message}")
                    rows.append({"taskId": task.id, "success": False, "error": message})
                else:
                    rows.append(
                        {
                            "taskId": task.id,
                            "success": True,
                            "subtasksAdded": len(outcome),
                            "subtaskIds": [s.full_id(task.id) for s in outcome],
                        }
                    )

            expanded = sum(1 for r in rows if r["success"])
            if expanded == 0:
                op.mark_no_op()
            return {"expanded": expanded, "failed": len(rows) - expanded, "results": rows}

        return await self._execute("expand-all", project_ref, compute)

    async def _expand_task(
        self,
        orchestrator: AIOrchestrator,
        task: Task,
        num_subtasks: int | None,
        research: bool,
        clear_first: bool,
        additional_context: str,
        telemetry: OperationTelemetry,
        timeout: float | None = None,
    ) -> list[Subtask]:
        """Call the provider, then mutate the working task in place."""
        spec = self._prompt_builder.build_expand_prompt(
            task,
            num_subtasks,
            additional_context=additional_context,
            research=research,
            timeout=timeout,
        )
        role = AIRole.RESEARCH if research else AIRole.MAIN
        result = await orchestrator.run(role, spec, telemetry=telemetry)
        response: ExpansionResponse = result.payload

        proposals = response.subtasks[:num_subtasks] if num_subtasks else response.subtasks
        if not proposals:
            raise ResponseFormatError(f"Provider returned no subtasks for task {task.id}")
        if num_subtasks and len(proposals) < num_subtasks:
            logger.warning(
                f"Requested {num_subtasks} subtasks for task {task.id}, provider returned {len(proposals)}"
            )

        # Mutate only after the AI call succeeded
        if clear_first:
            task.subtasks = []
        start = task.next_subtask_id()
        added = [
            Subtask(
                id=start + index,
                title=proposal.title,
                description=proposal.description,
                details=proposal.details,
                status=SubtaskStatus.PENDING,
            )
            for index, proposal in enumerate(proposals)
        ]
        task.subtasks = [*task.subtasks, *added]
        task.touch()
        logger.info(f"Added {len(added)} subtasks to task {task.id}")
        return added

    # =========================================================================
    # HELPERS
    # =========================================================================

    @staticmethod
    def _check_num_subtasks(num_subtasks: int | None) -> None:
        if num_subtasks is not None and not MIN_SUBTASKS <= num_subtasks <= MAX_SUBTASKS:
            raise ValidationError(
                f"num_subtasks must be between {MIN_SUBTASKS} and {MAX_SUBTASKS}, got {num_subtasks}"
            )

    @staticmethod
    def _require_subtask(task: Task, ref: TaskRef) -> Subtask:
        subtask = task.get_subtask(ref.subtask_id)
        if subtask is None:
            raise TaskNotFoundError(str(ref), f"Subtask {ref} not found")
        return subtask

    @staticmethod
    def _resolve_patch(patch: dict[str, Any], allowed: dict[str, str]) -> dict[str, Any]:
        """Map patch keys to attributes, rejecting protected and unknown fields."""
        if not patch:
            raise ValidationError("Patch must contain at least one field")

        protected = [key for key in patch if key in PROTECTED_FIELDS and key not in allowed]
        if protected:
            reasons = "; ".join(f"{key}: {PROTECTED_FIELDS[key]}" for key in protected)
            raise ValidationError(
                f"Cannot patch protected fields ({reasons})",
                details={"fields": protected},
            )

        unknown = [key for key in patch if key not in allowed]
        if unknown:
            raise ValidationError(
                f"Unknown fields: {', '.join(sorted(unknown))}",
                details={"fields": unknown, "allowed": sorted(set(allowed))},
            )
        return {allowed[key]: value for key, value in patch.items()}

    @staticmethod
    def _apply_patch(target: BaseModel, updates: dict[str, Any]) -> list[str]:
        """
        Assign attributes with validation; returns the names that changed.

        Validation happens on a copy first so a bad value leaves the target untouched.
        """
        candidate = target.model_copy(deep=True)
        try:
            for attr, value in updates.items():
                setattr(candidate, attr, value)
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid field value: {e.errors()[0].get('msg', e)}") from e

        changed = []
        for attr in updates:
            if getattr(candidate, attr) != getattr(target, attr):
                setattr(target, attr, getattr(candidate, attr))
                changed.append(attr)
        return changed

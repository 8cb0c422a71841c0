"""
Prompt builder - turns tasks into PromptSpecs for the AI orchestrator.

This module also defines the structured response models each prompt
expects back, so the orchestrator can validate payloads before the
mutation engine sees them.
"""

import json

from pydantic import BaseModel, ConfigDict, Field, field_validator

from taskgraph.ai.models import PromptSpec, ResponseKind
from taskgraph.prompts.templates import (
    COMPLEXITY_PROMPT,
    EXPAND_TASK_PROMPT,
    RESEARCH_SYSTEM_PROMPT,
    SYSTEM_PROMPT,
    UPDATE_TASK_PROMPT,
)
from taskgraph.tasks.models import Priority, Task

# =============================================================================
# RESPONSE MODELS
# =============================================================================


class ProposedSubtask(BaseModel):
    """Subtask suggested by the model; ids are assigned by the engine."""

    title: str = Field(..., min_length=1)
    description: str | None = None
    details: str | None = None


class ExpansionResponse(BaseModel):
    """Expected payload of the expand_task prompt."""

    subtasks: list[ProposedSubtask] = Field(default_factory=list)


class TaskPatch(BaseModel):
    """Editable fields an AI update may touch."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    title: str | None = Field(default=None, min_length=1)
    description: str | None = None
    details: str | None = None
    test_strategy: str | None = Field(default=None, alias="testStrategy")
    priority: Priority | None = None

    @field_validator("priority", mode="before")
    @classmethod
    def normalize_priority(cls, v):
        if isinstance(v, str):
            return v.lower()
        return v


class UpdateResponse(BaseModel):
    """Expected payload of the update_task prompt."""

    updated: bool = True
    task: TaskPatch | None = None
    reason: str = ""


class ComplexityResponse(BaseModel):
    """Expected payload of the complexity prompt."""

    model_config = ConfigDict(populate_by_name=True)

    score: int = Field(..., ge=1, le=10)
    reasoning: str = ""
    recommended_subtasks: int | None = Field(default=None, ge=0, alias="recommendedSubtasks")

    @field_validator("score", mode="before")
    @classmethod
    def round_score(cls, v):
        """Models sometimes answer 6.5."""
        if isinstance(v, float):
            return round(v)
        return v


# =============================================================================
# PROMPT BUILDER
# =============================================================================


class PromptBuilder:
    """
    Build PromptSpecs from templates and task data.

    Example:
        >>> builder = get_prompt_builder()
        >>> spec = builder.build_expand_prompt(task, num_subtasks=3)
        >>> spec.response_kind
        <ResponseKind.STRUCTURED: 'structured'>
    """

    def __init__(self) -> None:
        """Initialize the prompt builder."""
        self._max_details_length = 4000

    def _system_prompt(self, research: bool) -> str:
        template = RESEARCH_SYSTEM_PROMPT if research else SYSTEM_PROMPT
        return template.format()

    def _truncate(self, content: str | None) -> str:
        """Truncate long free text to keep prompts bounded."""
        if not content:
            return "(none)"
        if len(content) > self._max_details_length:
            return content[: self._max_details_length] + "\n... (truncated)"
        return content

    def build_expand_prompt(
        self,
        task: Task,
        num_subtasks: int | None,
        additional_context: str = "",
        research: bool = False,
        timeout: float | None = None,
    ) -> PromptSpec:
        """
        Build the subtask expansion prompt.

        Args:
            task: Task to expand.
            num_subtasks: Number of subtasks to request; None lets the model choose.
            additional_context: Free text appended to the prompt.
            research: Whether the research system prompt is used.
            timeout: Per-call timeout in seconds; None uses the configured default.

        Returns:
            Structured PromptSpec validated against ExpansionResponse.
        """
        existing = "\n".join(
            f"- {s.full_id(task.id)} {s.title}" for s in task.subtasks
        ) or "(none)"
        context = f"\n## Additional Context\n{additional_context}\n" if additional_context else ""

        prompt = EXPAND_TASK_PROMPT.format(
            count_instruction=(
                f"exactly {num_subtasks}" if num_subtasks else "an appropriate number of (typically 3 to 7)"
            ),
            task_id=task.id,
            title=task.title,
            description=task.description or "(none)",
            details=self._truncate(task.details),
            existing_subtasks=existing,
            additional_context=context,
        )
        return PromptSpec(
            operation="expand-task",
            prompt=prompt,
            system_prompt=self._system_prompt(research),
            response_kind=ResponseKind.STRUCTURED,
            response_model=ExpansionResponse,
            timeout_seconds=timeout,
        )

    def build_update_prompt(
        self,
        task: Task,
        prompt: str,
        research: bool = False,
        timeout: float | None = None,
    ) -> PromptSpec:
        """Build the AI update prompt embedding the current task as JSON."""
        editable = {
            "id": task.id,
            "title": task.title,
            "description": task.description,
            "details": task.details,
            "testStrategy": task.test_strategy,
            "priority": task.priority.value,
            "status": task.status.value,
            "dependencies": task.dependencies,
        }
        text = UPDATE_TASK_PROMPT.format(
            task_json=json.dumps(editable, indent=2),
            prompt=prompt,
        )
        return PromptSpec(
            operation="update-task",
            prompt=text,
            system_prompt=self._system_prompt(research),
            response_kind=ResponseKind.STRUCTURED,
            response_model=UpdateResponse,
            timeout_seconds=timeout,
        )

    def build_complexity_prompt(
        self,
        task: Task,
        base_score: int,
        timeout: float | None = None,
    ) -> PromptSpec:
        """Build the research-mode complexity prompt."""
        text = COMPLEXITY_PROMPT.format(
            task_id=task.id,
            title=task.title,
            description=task.description or "(none)",
            details=self._truncate(task.details),
            subtask_count=len(task.subtasks),
            dependency_count=len(task.dependencies),
            base_score=base_score,
        )
        return PromptSpec(
            operation="analyze-complexity",
            prompt=text,
            system_prompt=self._system_prompt(research=True),
            response_kind=ResponseKind.STRUCTURED,
            response_model=ComplexityResponse,
            timeout_seconds=timeout,
        )


# =============================================================================
# FACTORY AND SINGLETON
# =============================================================================


_builder: PromptBuilder | None = None


def get_prompt_builder() -> PromptBuilder:
    """
    Get the shared PromptBuilder instance.

    Returns:
        PromptBuilder singleton.
    """
    global _builder
    if _builder is None:
        _builder = PromptBuilder()
    return _builder

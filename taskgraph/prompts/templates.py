"""
Prompt templates for taskgraph AI operations.

This module provides pre-built prompt templates for subtask expansion,
AI-driven task updates and research-mode complexity scoring.
"""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

# =============================================================================
# TEMPLATE MODEL
# =============================================================================


class PromptTemplate(BaseModel):
    """A reusable prompt template."""

    model_config = ConfigDict(frozen=True)

    name: str
    template: str
    description: str = ""
    variables: list[str] = Field(default_factory=list)

    def format(self, **kwargs: Any) -> str:
        """Format the template with provided values.

        Args:
            **kwargs: Template variable values.

        Returns:
            Formatted prompt string.

        Raises:
            KeyError: If a declared variable is missing.
        """
        missing = self.get_missing_variables(**kwargs)
        if missing:
            raise KeyError(f"Missing template variables for '{self.name}': {missing}")
        return self.template.format(**kwargs)

    def get_missing_variables(self, **kwargs: Any) -> list[str]:
        """Get list of variables not provided.

        Args:
            **kwargs: Provided variables.

        Returns:
            List of missing variable names.
        """
        return [v for v in self.variables if v not in kwargs]


# =============================================================================
# SYSTEM PROMPTS
# =============================================================================


SYSTEM_PROMPT = PromptTemplate(
    name="system",
    description="Default system prompt for task planning calls",
    template="""You are an expert software project planner helping a development team manage a dependency-ordered task list.

Guidelines:
- Be concrete and implementation-oriented
- Keep every item small enough to be completed and verified on its own
- Respect the existing task structure and dependencies
- Respond ONLY with the JSON format requested, with no surrounding prose""",
)


RESEARCH_SYSTEM_PROMPT = PromptTemplate(
    name="research_system",
    description="System prompt for research-backed calls",
    template="""You are a senior software architect with up-to-date knowledge of current libraries, tools and best practices.

Use that knowledge to ground your answer in how the work is actually done today.
Respond ONLY with the JSON format requested, with no surrounding prose.""",
)


# =============================================================================
# TASK PROMPTS
# =============================================================================


EXPAND_TASK_PROMPT = PromptTemplate(
    name="expand_task",
    description="Break a task into implementation subtasks",
    template="""Break down the following task into {count_instruction} specific, actionable subtasks.

# Task {task_id}: {title}

## Description
{description}

## Details
{details}

## Existing Subtasks
{existing_subtasks}
{additional_context}
## Output Format
Return a JSON object:
{{
  "subtasks": [
    {{
      "title": "Short imperative title",
      "description": "What this subtask accomplishes",
      "details": "Implementation notes"
    }}
  ]
}}

Do not repeat existing subtasks. Order subtasks in the sequence they should be implemented.""",
    variables=[
        "count_instruction",
        "task_id",
        "title",
        "description",
        "details",
        "existing_subtasks",
        "additional_context",
    ],
)


UPDATE_TASK_PROMPT = PromptTemplate(
    name="update_task",
    description="Apply a natural-language change request to one task",
    template="""Update the task below according to the change request.

# Current Task
```json
{task_json}
```

# Change Request
{prompt}

## Rules
- You may change only: title, description, details, testStrategy, priority
- Keep fields that the request does not affect exactly as they are
- If the request requires no change, set "updated" to false

## Output Format
Return a JSON object:
{{
  "updated": true,
  "task": {{
    "title": "...",
    "description": "...",
    "details": "...",
    "testStrategy": "...",
    "priority": "low | medium | high"
  }},
  "reason": "One sentence explaining the change"
}}""",
    variables=["task_json", "prompt"],
)


COMPLEXITY_PROMPT = PromptTemplate(
    name="complexity",
    description="Research-mode complexity estimate for one task",
    template="""Assess the implementation complexity of this task on a scale of 1 (trivial) to 10 (very complex).

# Task {task_id}: {title}

## Description
{description}

## Details
{details}

## Context
- Existing subtasks: {subtask_count}
- Dependencies: {dependency_count}
- Deterministic score: {base_score}

## Output Format
Return a JSON object:
{{
  "score": 7,
  "reasoning": "Why the task has this complexity",
  "recommendedSubtasks": 5
}}""",
    variables=[
        "task_id",
        "title",
        "description",
        "details",
        "subtask_count",
        "dependency_count",
        "base_score",
    ],
)


# =============================================================================
# TEMPLATE REGISTRY
# =============================================================================


TEMPLATES: dict[str, PromptTemplate] = {
    "system": SYSTEM_PROMPT,
    "research_system": RESEARCH_SYSTEM_PROMPT,
    "expand_task": EXPAND_TASK_PROMPT,
    "update_task": UPDATE_TASK_PROMPT,
    "complexity": COMPLEXITY_PROMPT,
}


def get_template(name: str) -> PromptTemplate:
    """Get a template by name.

    Args:
        name: Template name.

    Returns:
        PromptTemplate instance.

    Raises:
        KeyError: If template not found.
    """
    if name not in TEMPLATES:
        raise KeyError(f"Template not found: {name}")
    return TEMPLATES[name]

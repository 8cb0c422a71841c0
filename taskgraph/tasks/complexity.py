"""
Complexity analyzer - deterministic scoring with optional research refinement.

Scores are 1-10 and built from bucketed factors (subtasks, dependencies,
text length, technical-term markers, effort estimate). In research mode
the deterministic score is averaged with an AI estimate; an AI failure
never loses the deterministic result.
"""

import asyncio
import json
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from taskgraph.ai.models import AIRole, OperationTelemetry
from taskgraph.ai.orchestrator import AIOrchestrator
from taskgraph.core.exceptions import TaskGraphError, ValidationError
from taskgraph.prompts.builder import ComplexityResponse, get_prompt_builder
from taskgraph.tasks.models import Task, TaskCollection

# Recognised technical-term markers
TECHNICAL_MARKERS: tuple[str, ...] = (
    "api",
    "database",
    "schema",
    "migration",
    "authentication",
    "authorization",
    "oauth",
    "encryption",
    "security",
    "concurrency",
    "async",
    "distributed",
    "cache",
    "queue",
    "websocket",
    "integration",
    "performance",
    "scalab",
    "algorithm",
    "refactor",
    "infrastructure",
    "deployment",
    "machine learning",
    "real-time",
)

DEFAULT_THRESHOLD = 5

# =============================================================================
# MODELS
# =============================================================================


class ComplexityLevel(str, Enum):
    """Qualitative complexity level derived from the score."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    VERY_HIGH = "very-high"

    @classmethod
    def from_score(cls, score: int) -> "ComplexityLevel":
        """Map a 1-10 score to a level: <5 low, 5-7 medium, 8 high, 9-10 very-high."""
        if score < 5:
            return cls.LOW
        if score <= 7:
            return cls.MEDIUM
        if score == 8:
            return cls.HIGH
        return cls.VERY_HIGH


class AnalysisOptions(BaseModel):
    """Options for a single analysis."""

    model_config = ConfigDict(frozen=True)

    threshold: int = Field(default=DEFAULT_THRESHOLD, ge=1, le=10)
    research: bool = False
    timeout: float | None = Field(default=None, gt=0, description="Per-call AI timeout in seconds")


class ComplexityFactors(BaseModel):
    """Bucketed inputs to the deterministic score."""

    subtask_count: int = 0
    subtask_bucket: int = 0
    dependency_count: int = 0
    dependency_bucket: int = 0
    text_length: int = 0
    length_bucket: int = 0
    technical_markers: list[str] = Field(default_factory=list)
    marker_bucket: int = 0
    has_effort_estimate: bool = False


class ComplexityAnalysis(BaseModel):
    """Analysis row for one task."""

    model_config = ConfigDict(populate_by_name=True)

    task_id: int = Field(..., alias="taskId")
    title: str = ""
    score: int = Field(..., ge=1, le=10)
    level: ComplexityLevel
    deterministic_score: int = Field(..., ge=1, le=10, alias="deterministicScore")
    ai_score: int | None = Field(default=None, alias="aiScore")
    factors: ComplexityFactors
    recommendations: list[str] = Field(default_factory=list)
    recommended_subtasks: int = Field(default=0, alias="recommendedSubtasks")
    expansion_prompt: str | None = Field(default=None, alias="expansionPrompt")
    should_expand: bool = Field(default=False, alias="shouldExpand")
    reasoning: str | None = None
    research_error: str | None = Field(default=None, alias="researchError")

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class ComplexitySummary(BaseModel):
    """Counts per level; very-high counts as high."""

    model_config = ConfigDict(populate_by_name=True)

    high_count: int = Field(default=0, alias="highCount")
    medium_count: int = Field(default=0, alias="mediumCount")
    low_count: int = Field(default=0, alias="lowCount")


class ComplexityReport(BaseModel):
    """Batch analysis report."""

    model_config = ConfigDict(populate_by_name=True)

    generated_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        alias="generatedAt",
    )
    threshold: int = DEFAULT_THRESHOLD
    research: bool = False
    analyses: list[ComplexityAnalysis] = Field(default_factory=list)
    summary: ComplexitySummary = Field(default_factory=ComplexitySummary)
    missing_ids: list[int] = Field(default_factory=list, alias="missingIds")

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)

    def write(self, path: str | Path) -> Path:
        """Write the report as JSON (complexity-report.json)."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(self.to_dict(), indent=2), encoding="utf-8")
        logger.info(f"Complexity report written to {path}")
        return path


# =============================================================================
# TASK SELECTION
# =============================================================================


class TaskSelection(BaseModel):
    """Which tasks a batch analysis covers: explicit ids, a range, or all."""

    model_config = ConfigDict(frozen=True)

    ids: tuple[int, ...] | None = None
    from_id: int | None = None
    to_id: int | None = None

    @property
    def is_all(self) -> bool:
        return self.ids is None and self.from_id is None and self.to_id is None

    @classmethod
    def parse(cls, value: str | list[int] | None) -> "TaskSelection":
        """
        Parse '1,2,3', '3..7', 'all' or a list of ids.

        Raises:
            ValidationError: If the selection cannot be parsed.

        Example:
            >>> TaskSelection.parse("3..5").resolve(collection)
            ([3, 4, 5], [])
        """
        if value is None:
            return cls()
        if isinstance(value, list):
            return cls(ids=tuple(value))

        text = value.strip().lower()
        if text in ("", "all"):
            return cls()
        try:
            if ".." in text:
                start, _, end = text.partition("..")
                from_id, to_id = int(start), int(end)
                if from_id > to_id:
                    raise ValueError(f"range start {from_id} is after end {to_id}")
                return cls(from_id=from_id, to_id=to_id)
            return cls(ids=tuple(int(part) for part in text.split(",") if part.strip()))
        except ValueError as e:
            raise ValidationError(f"Invalid task selection '{value}': {e}") from e

    def resolve(self, collection: TaskCollection) -> tuple[list[int], list[int]]:
        """
        Resolve to existing ids in request order plus requested-but-missing ids.

        Returns:
            Tuple of (found ids, missing ids).
        """
        existing = collection.task_ids
        if self.is_all:
            return sorted(existing), []
        if self.ids is not None:
            requested = list(dict.fromkeys(self.ids))
            return (
                [i for i in requested if i in existing],
                [i for i in requested if i not in existing],
            )
        low = self.from_id if self.from_id is not None else min(existing, default=1)
        high = self.to_id if self.to_id is not None else max(existing, default=0)
        return sorted(i for i in existing if low <= i <= high), []


# =============================================================================
# ANALYZER
# =============================================================================


class ComplexityAnalyzer:
    """
    Score task complexity.

    Example:
        >>> analyzer = ComplexityAnalyzer()
        >>> analyzer.score(Task(id=1, title="Fix typo")).level
        <ComplexityLevel.LOW: 'low'>
    """

    def __init__(
        self,
        orchestrator: AIOrchestrator | None = None,
        max_concurrent: int = 3,
    ) -> None:
        """
        Initialize the analyzer.

        Args:
            orchestrator: Needed only for research mode.
            max_concurrent: Worker pool size for batch analysis.
        """
        self.orchestrator = orchestrator
        self.max_concurrent = max_concurrent
        self._prompt_builder = get_prompt_builder()

    # -------------------------------------------------------------------------
    # DETERMINISTIC SCORING
    # -------------------------------------------------------------------------

    @staticmethod
    def compute_factors(task: Task) -> ComplexityFactors:
        """Compute bucketed factors for a task."""
        subtasks = len(task.subtasks)
        dependencies = len(set(task.dependencies))
        text = f"{task.description or ''} {task.details or ''}".strip()
        lowered = f"{task.title} {text}".lower()
        markers = [m for m in TECHNICAL_MARKERS if m in lowered]

        if subtasks == 0:
            subtask_bucket = 0
        elif subtasks <= 2:
            subtask_bucket = 1
        elif subtasks <= 5:
            subtask_bucket = 2
        else:
            subtask_bucket = 3

        if dependencies == 0:
            dependency_bucket = 0
        elif dependencies <= 2:
            dependency_bucket = 1
        else:
            dependency_bucket = 2

        length = len(text)
        if length < 100:
            length_bucket = 0
        elif length < 300:
            length_bucket = 1
        elif length < 800:
            length_bucket = 2
        else:
            length_bucket = 3

        marker_bucket = 0 if not markers else (1 if len(markers) <= 2 else 2)

        return ComplexityFactors(
            subtask_count=subtasks,
            subtask_bucket=subtask_bucket,
            dependency_count=dependencies,
            dependency_bucket=dependency_bucket,
            text_length=length,
            length_bucket=length_bucket,
            technical_markers=markers,
            marker_bucket=marker_bucket,
            has_effort_estimate=bool(task.estimated_effort),
        )

    @staticmethod
    def deterministic_score(factors: ComplexityFactors) -> int:
        """1 + weighted bucket sum, clamped to [1, 10]."""
        raw = (
            1
            + factors.subtask_bucket
            + factors.dependency_bucket
            + factors.length_bucket
            + factors.marker_bucket
            + (0 if factors.has_effort_estimate else 1)
        )
        return max(1, min(10, raw))

    def score(self, task: Task, options: AnalysisOptions | None = None) -> ComplexityAnalysis:
        """Deterministic analysis only; never calls a provider."""
        options = options or AnalysisOptions()
        factors = self.compute_factors(task)
        base = self.deterministic_score(factors)
        return self._build_analysis(task, factors, base, options)

    def _build_analysis(
        self,
        task: Task,
        factors: ComplexityFactors,
        final_score: int,
        options: AnalysisOptions,
        deterministic: int | None = None,
        ai_score: int | None = None,
        recommended: int | None = None,
        reasoning: str | None = None,
        research_error: str | None = None,
    ) -> ComplexityAnalysis:
        level = ComplexityLevel.from_score(final_score)
        should_expand = final_score >= options.threshold and not task.subtasks
        recommended_subtasks = recommended if recommended is not None else self._recommended_subtasks(final_score)

        recommendations: list[str] = []
        if should_expand:
            recommendations.append(
                f"Expand into about {recommended_subtasks} subtasks "
                f"(score {final_score} >= threshold {options.threshold})"
            )
        if factors.dependency_count >= 3:
            recommendations.append("Review dependencies; many prerequisites increase scheduling risk")
        if not factors.has_effort_estimate:
            recommendations.append("Add an effort estimate")
        if factors.text_length < 100 and final_score >= options.threshold:
            recommendations.append("Add implementation details to the description")
        if not recommendations:
            recommendations.append("No action needed")

        return ComplexityAnalysis(
            task_id=task.id,
            title=task.title,
            score=final_score,
            level=level,
            deterministic_score=deterministic if deterministic is not None else final_score,
            ai_score=ai_score,
            factors=factors,
            recommendations=recommendations,
            recommended_subtasks=recommended_subtasks if should_expand else 0,
            expansion_prompt=(
                f"Break down task {task.id} '{task.title}' into {recommended_subtasks} subtasks"
                if should_expand
                else None
            ),
            should_expand=should_expand,
            reasoning=reasoning,
            research_error=research_error,
        )

    @staticmethod
    def _recommended_subtasks(score: int) -> int:
        return max(2, min(10, (score + 1) // 2 + 1))

    # -------------------------------------------------------------------------
    # RESEARCH MODE
    # -------------------------------------------------------------------------

    async def analyze(
        self,
        task: Task,
        options: AnalysisOptions | None = None,
        telemetry: OperationTelemetry | None = None,
    ) -> ComplexityAnalysis:
        """
        Analyze one task, refining the score with the research role when requested.

        Research failures degrade to the deterministic score and are recorded
        on the row; only cancellation propagates.
        """
        options = options or AnalysisOptions()
        factors = self.compute_factors(task)
        base = self.deterministic_score(factors)

        if not options.research:
            return self._build_analysis(task, factors, base, options)

        if self.orchestrator is None:
            return self._build_analysis(
                task, factors, base, options,
                research_error="Research requested but no AI orchestrator is configured",
            )

        spec = self._prompt_builder.build_complexity_prompt(task, base, timeout=options.timeout)
        try:
            result = await self.orchestrator.run(AIRole.RESEARCH, spec, telemetry=telemetry)
            response: ComplexityResponse = result.payload
        except TaskGraphError as e:
            logger.warning(f"Research complexity for task {task.id} failed: {e.message}")
            return self._build_analysis(task, factors, base, options, research_error=e.message)

        combined = max(1, min(10, round((base + response.score) / 2)))
        logger.debug(f"Task {task.id} complexity: deterministic={base} ai={response.score} -> {combined}")
        return self._build_analysis(
            task,
            factors,
            combined,
            options,
            deterministic=base,
            ai_score=response.score,
            recommended=response.recommended_subtasks,
            reasoning=response.reasoning or None,
        )

    # -------------------------------------------------------------------------
    # BATCH
    # -------------------------------------------------------------------------

    async def analyze_batch(
        self,
        collection: TaskCollection,
        selection: TaskSelection | str | None = None,
        options: AnalysisOptions | None = None,
        telemetry: OperationTelemetry | None = None,
    ) -> ComplexityReport:
        """
        Analyze many tasks with a bounded worker pool.

        Args:
            collection: Snapshot of the task collection.
            selection: Ids, range or all.
            options: Threshold and research flag.
            telemetry: Accumulator for research calls.

        Returns:
            ComplexityReport with rows in request order.
        """
        options = options or AnalysisOptions()
        if not isinstance(selection, TaskSelection):
            selection = TaskSelection.parse(selection)
        task_ids, missing = selection.resolve(collection)
        if missing:
            logger.warning(f"Tasks not found for complexity analysis: {missing}")

        tasks = [collection.require(task_id) for task_id in task_ids]
        semaphore = asyncio.Semaphore(self.max_concurrent)

        async def _run(task: Task) -> ComplexityAnalysis:
            async with semaphore:
                return await self.analyze(task, options, telemetry)

        logger.info(f"Analyzing complexity of {len(tasks)} tasks (research={options.research})")
        results = await asyncio.gather(*(_run(task) for task in tasks), return_exceptions=True)

        analyses: list[ComplexityAnalysis] = []
        for task, result in zip(tasks, results, strict=False):
            if isinstance(result, BaseException) and not isinstance(result, Exception):
                raise result  # Cancellation and interpreter exits propagate
            if isinstance(result, Exception):
                logger.error(f"Complexity analysis failed for task {task.id}: {result}")
                fallback = self.score(task, options)
                fallback.research_error = str(result)
                analyses.append(fallback)
            else:
                analyses.append(result)

        summary = ComplexitySummary()
        for analysis in analyses:
            if analysis.level in (ComplexityLevel.HIGH, ComplexityLevel.VERY_HIGH):
                summary.high_count += 1
            elif analysis.level == ComplexityLevel.MEDIUM:
                summary.medium_count += 1
            else:
                summary.low_count += 1

        return ComplexityReport(
            threshold=options.threshold,
            research=options.research,
            analyses=analyses,
            summary=summary,
            missing_ids=missing,
        )

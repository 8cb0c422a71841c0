"""Pydantic models for AI orchestration.

Configuration objects here are frozen: they are built once per process
from Settings and handed to the orchestrator at construction time.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, SecretStr


# =============================================================================
# ENUMS
# =============================================================================


class AIRole(str, Enum):
    """Named slot mapping to a provider+model pair."""

    MAIN = "main"
    RESEARCH = "research"
    FALLBACK = "fallback"


class ResponseKind(str, Enum):
    """Shape the caller expects back from the provider."""

    TEXT = "text"
    STRUCTURED = "structured"


# =============================================================================
# CONFIGURATION
# =============================================================================


class RoleConfig(BaseModel):
    """Provider binding for a single role."""

    model_config = ConfigDict(frozen=True)

    provider: str = Field(..., min_length=1, description="Provider identifier, e.g. 'anthropic'")
    model: str = Field(..., min_length=1, description="Model identifier")
    max_tokens: int = Field(default=4000, gt=0)
    temperature: float = Field(default=0.2, ge=0.0, le=2.0)
    base_url: str | None = Field(default=None, description="Override for the provider endpoint")
    api_key: SecretStr | None = Field(default=None, description="Provider API key")


class RetryPolicy(BaseModel):
    """Exponential backoff budget for one provider."""

    model_config = ConfigDict(frozen=True)

    max_retries: int = Field(default=2, ge=0, description="Retries after the first attempt")
    initial_delay: float = Field(default=1.0, ge=0.0, description="Delay before first retry (s)")
    backoff_factor: float = Field(default=2.0, ge=1.0)
    max_delay: float = Field(default=30.0, ge=0.0)

    @property
    def max_attempts(self) -> int:
        """Total attempts including the first one."""
        return self.max_retries + 1

    def delay_for(self, retry_number: int) -> float:
        """Backoff delay before the given retry (1-based)."""
        if retry_number <= 0:
            return 0.0
        delay = self.initial_delay * (self.backoff_factor ** (retry_number - 1))
        return min(delay, self.max_delay)


class AIConfig(BaseModel):
    """Immutable role -> provider mapping plus execution policy.

    Example:
        >>> config = AIConfig(roles={
        ...     AIRole.MAIN: RoleConfig(provider="anthropic", model="claude-sonnet-4-20250514"),
        ...     AIRole.FALLBACK: RoleConfig(provider="openai", model="gpt-4o"),
        ... })
        >>> config.role_config(AIRole.MAIN).provider
        'anthropic'
    """

    model_config = ConfigDict(frozen=True)

    roles: dict[AIRole, RoleConfig] = Field(default_factory=dict)
    primary_retry: RetryPolicy = Field(default_factory=RetryPolicy)
    fallback_retry: RetryPolicy = Field(
        default_factory=lambda: RetryPolicy(max_retries=1),
    )
    timeout_seconds: float = Field(default=120.0, gt=0)
    max_concurrency_per_provider: int = Field(default=4, ge=1)

    def role_config(self, role: AIRole) -> RoleConfig | None:
        """Get the provider binding for a role, if configured."""
        return self.roles.get(role)


# =============================================================================
# REQUESTS AND RESULTS
# =============================================================================


class PromptSpec(BaseModel):
    """Fully formed prompt plus the expected response shape.

    The orchestrator does not interpret task semantics; callers build
    the prompt and say whether they want free text or JSON back.
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    operation: str = Field(..., description="Logical operation name for telemetry")
    prompt: str = Field(..., min_length=1)
    system_prompt: str | None = None
    response_kind: ResponseKind = ResponseKind.TEXT
    response_model: type[BaseModel] | None = Field(
        default=None,
        description="Optional model the structured payload must validate against",
    )
    max_tokens: int | None = Field(default=None, gt=0)
    temperature: float | None = Field(default=None, ge=0.0, le=2.0)
    timeout_seconds: float | None = Field(default=None, gt=0)


class TelemetryRecord(BaseModel):
    """Usage record for one provider within a logical operation."""

    operation: str
    role: AIRole
    provider: str
    model: str
    attempts: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    latency_seconds: float = 0.0
    cost_usd: float = 0.0
    success: bool = False
    cancelled: bool = False
    error: str | None = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


class OperationTelemetry(BaseModel):
    """Telemetry accumulated across every AI call of one operation.

    Example:
        >>> telemetry = OperationTelemetry(operation="expand-task")
        >>> result = await orchestrator.run(AIRole.MAIN, spec, telemetry=telemetry)
        >>> telemetry.total_cost_usd
        0.0123
    """

    operation: str
    records: list[TelemetryRecord] = Field(default_factory=list)

    def add(self, record: TelemetryRecord) -> None:
        self.records.append(record)

    def extend(self, other: "OperationTelemetry") -> None:
        self.records.extend(other.records)

    @property
    def total_attempts(self) -> int:
        return sum(r.attempts for r in self.records)

    @property
    def total_input_tokens(self) -> int:
        return sum(r.input_tokens for r in self.records)

    @property
    def total_output_tokens(self) -> int:
        return sum(r.output_tokens for r in self.records)

    @property
    def total_cost_usd(self) -> float:
        return round(sum(r.cost_usd for r in self.records), 6)

    @property
    def providers_used(self) -> list[str]:
        seen: list[str] = []
        for record in self.records:
            if record.provider not in seen:
                seen.append(record.provider)
        return seen

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "operation": self.operation,
            "records": [r.model_dump(mode="json") for r in self.records],
            "totalAttempts": self.total_attempts,
            "inputTokens": self.total_input_tokens,
            "outputTokens": self.total_output_tokens,
            "totalTokens": self.total_input_tokens + self.total_output_tokens,
            "totalCost": self.total_cost_usd,
            "currency": "USD",
            "providers": self.providers_used,
        }


class AIResult(BaseModel):
    """Provider response normalised at the orchestrator boundary."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    kind: ResponseKind
    payload: Any
    role: AIRole
    provider: str
    model: str
    is_fallback: bool = False
    raw_text: str = ""
    telemetry: list[TelemetryRecord] = Field(default_factory=list)

    @property
    def text(self) -> str:
        return self.payload if self.kind == ResponseKind.TEXT else self.raw_text

"""AI module - provider adapters and the retry/fallback orchestrator."""

from taskgraph.ai.models import (
    AIConfig,
    AIResult,
    AIRole,
    OperationTelemetry,
    PromptSpec,
    ResponseKind,
    RetryPolicy,
    RoleConfig,
    TelemetryRecord,
)
from taskgraph.ai.orchestrator import AIOrchestrator
from taskgraph.ai.providers import (
    AnthropicProvider,
    OpenAICompatibleProvider,
    Provider,
    ProviderRequest,
    ProviderResponse,
)

__all__ = [
    "AIConfig",
    "AIOrchestrator",
    "AIResult",
    "AIRole",
    "AnthropicProvider",
    "OpenAICompatibleProvider",
    "OperationTelemetry",
    "PromptSpec",
    "Provider",
    "ProviderRequest",
    "ProviderResponse",
    "ResponseKind",
    "RetryPolicy",
    "RoleConfig",
    "TelemetryRecord",
]

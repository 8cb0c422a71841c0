"""
AI orchestrator - role based provider selection with retry and fallback.

The orchestrator resolves a role (main, research, fallback) to a provider
and model through an immutable AIConfig, runs the call with exponential
backoff, hops once to the fallback role when the primary provider is
exhausted, and records one telemetry entry per provider tried.

Example:
    >>> orchestrator = AIOrchestrator(settings.to_ai_config())
    >>> telemetry = OperationTelemetry(operation="expand-task")
    >>> result = await orchestrator.run(AIRole.MAIN, spec, telemetry=telemetry)
    >>> result.payload
"""

import asyncio
import time
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

import anthropic
import httpx
from loguru import logger
from pydantic import ValidationError as PydanticValidationError

from taskgraph.ai.costs import calculate_cost
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
from taskgraph.ai.parsing import extract_json
from taskgraph.ai.providers import (
    Provider,
    ProviderResponse,
    build_request,
    default_providers,
)
from taskgraph.core.exceptions import (
    ConfigurationError,
    ProviderCallError,
    ProviderError,
    ResponseFormatError,
)

# Substrings that mark an error message as transient
RETRYABLE_MARKERS = (
    "rate limit",
    "overloaded",
    "service temporarily unavailable",
    "timeout",
    "timed out",
    "network error",
    "connection reset",
)


# =============================================================================
# ATTEMPT OUTCOMES
# =============================================================================


@dataclass
class Ok:
    """Successful attempt with its normalised payload."""

    response: ProviderResponse
    payload: Any


@dataclass
class Retryable:
    """Transient failure; worth another attempt on the same provider."""

    error: Exception
    message: str
    response: ProviderResponse | None = None


@dataclass
class Fatal:
    """Permanent failure; move on to the fallback provider."""

    error: Exception
    message: str


AttemptOutcome = Ok | Retryable | Fatal


def _is_retryable_status(status_code: int | None) -> bool:
    return status_code is not None and (status_code in (408, 429) or status_code >= 500)


def classify_error(error: Exception) -> Retryable | Fatal:
    """
    Classify a provider exception as retryable or fatal.

    Args:
        error: Exception raised by a provider call.

    Returns:
        Retryable for timeouts, rate limits, 5xx, connection errors and
        unparseable responses; Fatal otherwise.
    """
    message = str(error) or type(error).__name__

    if isinstance(error, (asyncio.TimeoutError, TimeoutError)):
        return Retryable(error, f"Request timed out: {message}")
    if isinstance(error, ConfigurationError):
        return Fatal(error, message)
    if isinstance(error, ResponseFormatError):
        return Retryable(error, message)
    if isinstance(error, ProviderCallError):
        if error.retryable is not None:
            return Retryable(error, message) if error.retryable else Fatal(error, message)
        if _is_retryable_status(error.status_code):
            return Retryable(error, message)
        if error.status_code is not None:
            return Fatal(error, message)

    # Anthropic SDK (APITimeoutError subclasses APIConnectionError)
    if isinstance(error, anthropic.APIConnectionError):
        return Retryable(error, message)
    if isinstance(error, anthropic.APIStatusError):
        if _is_retryable_status(error.status_code):
            return Retryable(error, message)
        return Fatal(error, message)

    # httpx transport layer
    if isinstance(error, httpx.HTTPStatusError):
        if _is_retryable_status(error.response.status_code):
            return Retryable(error, message)
        return Fatal(error, message)
    if isinstance(error, (httpx.TimeoutException, httpx.TransportError)):
        return Retryable(error, message)

    lowered = message.lower()
    if any(marker in lowered for marker in RETRYABLE_MARKERS):
        return Retryable(error, message)
    return Fatal(error, message)


# =============================================================================
# ORCHESTRATOR
# =============================================================================


@dataclass
class _ChainEntry:
    role: AIRole
    config: RoleConfig
    policy: RetryPolicy
    is_fallback: bool


class AIOrchestrator:
    """
    Role based AI call runner.

    Attributes:
        config: Immutable role bindings and execution policy.

    Example:
        >>> orchestrator = AIOrchestrator(config, providers={"anthropic": fake})
        >>> result = await orchestrator.run(AIRole.MAIN, PromptSpec(operation="x", prompt="hi"))
        >>> result.text
        'hello'
    """

    def __init__(
        self,
        config: AIConfig,
        providers: Mapping[str, Provider] | None = None,
    ) -> None:
        """
        Initialize the orchestrator.

        Args:
            config: Immutable AI configuration.
            providers: Provider registry; defaults to the real SDK adapters.
        """
        self.config = config
        self._providers: dict[str, Provider] = dict(
            providers if providers is not None else default_providers()
        )
        self._semaphores: dict[str, asyncio.Semaphore] = {}

    def is_configured(self, role: AIRole) -> bool:
        """Check if a role is bound to a provider."""
        return self.config.role_config(role) is not None

    def _semaphore_for(self, provider: str) -> asyncio.Semaphore:
        if provider not in self._semaphores:
            self._semaphores[provider] = asyncio.Semaphore(
                self.config.max_concurrency_per_provider
            )
        return self._semaphores[provider]

    def _build_chain(self, role: AIRole) -> list[_ChainEntry]:
        """Requested role first, then at most one fallback hop."""
        chain: list[_ChainEntry] = []
        requested = self.config.role_config(role)
        if requested is not None:
            policy = (
                self.config.fallback_retry if role == AIRole.FALLBACK
                else self.config.primary_retry
            )
            chain.append(_ChainEntry(role, requested, policy, is_fallback=False))
        else:
            logger.warning(f"Role '{role.value}' is not configured, using fallback")

        if role != AIRole.FALLBACK:
            fallback = self.config.role_config(AIRole.FALLBACK)
            if fallback is not None:
                chain.append(
                    _ChainEntry(
                        AIRole.FALLBACK,
                        fallback,
                        self.config.fallback_retry,
                        is_fallback=True,
                    )
                )
        return chain

    async def run(
        self,
        role: AIRole,
        spec: PromptSpec,
        telemetry: OperationTelemetry | None = None,
    ) -> AIResult:
        """
        Run a prompt against the provider bound to a role.

        Args:
            role: Requested role.
            spec: Prompt plus expected response shape.
            telemetry: Operation-level accumulator; one record is appended
                per provider tried, including failed and cancelled ones.

        Returns:
            Normalised AIResult.

        Raises:
            ProviderError: If every provider in the chain failed.
            asyncio.CancelledError: Propagated immediately when cancelled.
        """
        telemetry = telemetry if telemetry is not None else OperationTelemetry(operation=spec.operation)
        chain = self._build_chain(role)
        if not chain:
            raise ProviderError(
                f"No provider configured for role '{role.value}' and no fallback available",
                telemetry=telemetry,
            )

        records: list[TelemetryRecord] = []
        last_entry = chain[-1]
        last_message = "no attempt made"

        for entry in chain:
            if entry.is_fallback:
                logger.warning(
                    f"Falling back to {entry.config.provider}/{entry.config.model} "
                    f"for {spec.operation}"
                )
            outcome = await self._run_provider(entry, spec, telemetry, records)
            if isinstance(outcome, Ok):
                payload = outcome.payload
                return AIResult(
                    kind=spec.response_kind,
                    payload=payload,
                    role=entry.role,
                    provider=entry.config.provider,
                    model=entry.config.model,
                    is_fallback=entry.is_fallback,
                    raw_text=outcome.response.text,
                    telemetry=records,
                )
            last_entry = entry
            last_message = outcome.message

        logger.error(f"All providers failed for {spec.operation}: {last_message}")
        raise ProviderError(
            f"AI call failed for {spec.operation} "
            f"({last_entry.config.provider}/{last_entry.config.model}): {last_message}",
            provider=last_entry.config.provider,
            model=last_entry.config.model,
            telemetry=telemetry,
        )

    async def _run_provider(
        self,
        entry: _ChainEntry,
        spec: PromptSpec,
        telemetry: OperationTelemetry,
        records: list[TelemetryRecord],
    ) -> AttemptOutcome:
        """Retry loop for one provider; always leaves one telemetry record."""
        record = TelemetryRecord(
            operation=spec.operation,
            role=entry.role,
            provider=entry.config.provider,
            model=entry.config.model,
        )
        started = time.monotonic()
        outcome: AttemptOutcome = Fatal(
            ConfigurationError("not attempted"), "not attempted"
        )

        try:
            provider = self._providers.get(entry.config.provider)
            if provider is None:
                error = ConfigurationError(f"Unknown provider '{entry.config.provider}'")
                outcome = Fatal(error, error.message)
                return outcome

            request = build_request(
                entry.config,
                spec.prompt,
                system_prompt=spec.system_prompt,
                max_tokens=spec.max_tokens,
                temperature=spec.temperature,
            )
            semaphore = self._semaphore_for(entry.config.provider)
            timeout = spec.timeout_seconds or self.config.timeout_seconds

            for attempt in range(1, entry.policy.max_attempts + 1):
                record.attempts = attempt
                outcome = await self._attempt(provider, request, spec, semaphore, timeout)

                response = outcome.response if isinstance(outcome, (Ok, Retryable)) else None
                if response is not None:
                    record.input_tokens += response.input_tokens
                    record.output_tokens += response.output_tokens

                if isinstance(outcome, Ok):
                    break
                if isinstance(outcome, Fatal):
                    logger.error(
                        f"{entry.config.provider} failed with non-retryable error: {outcome.message}"
                    )
                    break
                if attempt < entry.policy.max_attempts:
                    delay = entry.policy.delay_for(attempt)
                    logger.warning(
                        f"{entry.config.provider} attempt {attempt} failed: {outcome.message}. "
                        f"Retrying in {delay:.2f}s"
                    )
                    await asyncio.sleep(delay)
                else:
                    logger.error(
                        f"{entry.config.provider} exhausted {attempt} attempts: {outcome.message}"
                    )
            return outcome

        except asyncio.CancelledError:
            record.cancelled = True
            record.error = "cancelled"
            logger.warning(f"{spec.operation} cancelled during {entry.config.provider} call")
            raise

        finally:
            record.latency_seconds = round(time.monotonic() - started, 4)
            record.cost_usd = calculate_cost(
                entry.config.provider,
                entry.config.model,
                record.input_tokens,
                record.output_tokens,
            )
            if not record.cancelled:
                record.success = isinstance(outcome, Ok)
                record.error = None if record.success else outcome.message
            telemetry.add(record)
            records.append(record)

    async def _attempt(
        self,
        provider: Provider,
        request: Any,
        spec: PromptSpec,
        semaphore: asyncio.Semaphore,
        timeout: float,
    ) -> AttemptOutcome:
        """Perform one provider call and normalise its result."""
        try:
            async with semaphore:
                response = await asyncio.wait_for(provider.complete(request), timeout=timeout)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            return classify_error(e)

        if spec.response_kind == ResponseKind.TEXT:
            return Ok(response=response, payload=response.text)

        try:
            payload = extract_json(response.text)
            if spec.response_model is not None:
                payload = spec.response_model.model_validate(payload)
        except ResponseFormatError as e:
            return Retryable(e, e.message, response)
        except PydanticValidationError as e:
            return Retryable(e, f"Response failed validation: {e}", response)
        return Ok(response=response, payload=payload)

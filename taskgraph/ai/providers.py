"""Provider adapters for the AI orchestrator.

Each adapter performs exactly one completion call per ``complete()`` and
never retries on its own; retry, backoff and fallback belong to the
orchestrator. Clients are created per call so no connection state is
shared between operations.
"""

from typing import Protocol

import httpx
from anthropic import AsyncAnthropic
from loguru import logger
from pydantic import BaseModel, Field

from taskgraph.ai.models import RoleConfig
from taskgraph.core.exceptions import ConfigurationError, ProviderCallError

# Default OpenAI-compatible endpoints
DEFAULT_BASE_URLS: dict[str, str] = {
    "openai": "https://api.openai.com/v1",
    "perplexity": "https://api.perplexity.ai",
    "openrouter": "https://openrouter.ai/api/v1",
    "xai": "https://api.x.ai/v1",
    "ollama": "http://localhost:11434/v1",
}


# =============================================================================
# REQUEST / RESPONSE
# =============================================================================


class ProviderRequest(BaseModel):
    """Single completion request sent to a provider."""

    model: str
    prompt: str
    system_prompt: str | None = None
    max_tokens: int = Field(default=4000, gt=0)
    temperature: float = Field(default=0.2, ge=0.0, le=2.0)
    base_url: str | None = None
    api_key: str | None = None


class ProviderResponse(BaseModel):
    """Raw text plus token usage returned by a provider."""

    text: str
    input_tokens: int = 0
    output_tokens: int = 0
    model: str | None = None


class Provider(Protocol):
    """Anything that can perform one completion call."""

    name: str

    async def complete(self, request: ProviderRequest) -> ProviderResponse: ...


# =============================================================================
# ANTHROPIC
# =============================================================================


class AnthropicProvider:
    """Anthropic Messages API via the official SDK."""

    name = "anthropic"

    async def complete(self, request: ProviderRequest) -> ProviderResponse:
        """
        Call the Messages API once.

        SDK exceptions propagate untouched; the orchestrator classifies them.
        """
        if not request.api_key:
            raise ConfigurationError("ANTHROPIC_API_KEY is not configured")

        # SDK-level retries disabled: the orchestrator owns the retry budget
        client = AsyncAnthropic(api_key=request.api_key, max_retries=0)
        try:
            kwargs = {
                "model": request.model,
                "max_tokens": request.max_tokens,
                "temperature": request.temperature,
                "messages": [{"role": "user", "content": request.prompt}],
            }
            if request.system_prompt:
                kwargs["system"] = request.system_prompt

            logger.debug(f"Calling Anthropic model {request.model}")
            response = await client.messages.create(**kwargs)
        finally:
            await client.close()

        text = "".join(
            block.text for block in response.content if getattr(block, "type", None) == "text"
        )
        return ProviderResponse(
            text=text.strip(),
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
            model=response.model,
        )


# =============================================================================
# OPENAI-COMPATIBLE
# =============================================================================


class OpenAICompatibleProvider:
    """Chat completions endpoint shared by OpenAI, Perplexity, OpenRouter, xAI and Ollama."""

    def __init__(self, name: str, base_url: str | None = None, require_key: bool = True) -> None:
        """
        Initialize the adapter.

        Args:
            name: Provider identifier used in telemetry.
            base_url: Endpoint root; defaults to the provider's public URL.
            require_key: Whether a missing API key is a configuration error.
        """
        self.name = name
        self.base_url = base_url or DEFAULT_BASE_URLS.get(name)
        self.require_key = require_key

    async def complete(self, request: ProviderRequest) -> ProviderResponse:
        """Call ``{base_url}/chat/completions`` once."""
        base_url = request.base_url or self.base_url
        if not base_url:
            raise ConfigurationError(f"No base URL configured for provider '{self.name}'")
        if self.require_key and not request.api_key:
            raise ConfigurationError(f"API key for provider '{self.name}' is not configured")

        messages = []
        if request.system_prompt:
            messages.append({"role": "system", "content": request.system_prompt})
        messages.append({"role": "user", "content": request.prompt})

        headers = {"Content-Type": "application/json"}
        if request.api_key:
            headers["Authorization"] = f"Bearer {request.api_key}"

        logger.debug(f"Calling {self.name} model {request.model}")
        async with httpx.AsyncClient(base_url=base_url.rstrip("/"), timeout=None) as client:
            response = await client.post(
                "/chat/completions",
                headers=headers,
                json={
                    "model": request.model,
                    "messages": messages,
                    "max_tokens": request.max_tokens,
                    "temperature": request.temperature,
                },
            )

        if response.status_code >= 400:
            raise ProviderCallError(
                f"{self.name} returned HTTP {response.status_code}: {response.text[:300]}",
                status_code=response.status_code,
            )

        try:
            data = response.json()
            text = data["choices"][0]["message"]["content"] or ""
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise ProviderCallError(
                f"{self.name} returned an unexpected payload: {e}",
                retryable=True,
            ) from e

        usage = data.get("usage") or {}
        return ProviderResponse(
            text=text.strip(),
            input_tokens=usage.get("prompt_tokens", 0) or 0,
            output_tokens=usage.get("completion_tokens", 0) or 0,
            model=data.get("model"),
        )


# =============================================================================
# REGISTRY
# =============================================================================


def default_providers() -> dict[str, Provider]:
    """Build the default provider registry."""
    providers: dict[str, Provider] = {"anthropic": AnthropicProvider()}
    for name in ("openai", "perplexity", "openrouter", "xai"):
        providers[name] = OpenAICompatibleProvider(name)
    providers["ollama"] = OpenAICompatibleProvider("ollama", require_key=False)
    return providers


def build_request(
    role_config: RoleConfig,
    prompt: str,
    system_prompt: str | None = None,
    max_tokens: int | None = None,
    temperature: float | None = None,
) -> ProviderRequest:
    """Merge role defaults with per-call overrides."""
    return ProviderRequest(
        model=role_config.model,
        prompt=prompt,
        system_prompt=system_prompt,
        max_tokens=max_tokens or role_config.max_tokens,
        temperature=role_config.temperature if temperature is None else temperature,
        base_url=role_config.base_url,
        api_key=role_config.api_key.get_secret_value() if role_config.api_key else None,
    )

"""Configuration management using Pydantic Settings."""

import sys
from functools import lru_cache
from pathlib import Path
from typing import Literal

from loguru import logger
from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

from taskgraph.ai.models import AIConfig, AIRole, RetryPolicy, RoleConfig

# Environment variable holding the API key for each provider
PROVIDER_KEY_FIELDS: dict[str, str] = {
    "anthropic": "anthropic_api_key",
    "openai": "openai_api_key",
    "perplexity": "perplexity_api_key",
    "openrouter": "openrouter_api_key",
    "xai": "xai_api_key",
    "ollama": "ollama_api_key",
}


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="",
        case_sensitive=False,
        extra="ignore",
    )

    # Provider API keys
    anthropic_api_key: SecretStr | None = Field(default=None, description="Anthropic API key")
    openai_api_key: SecretStr | None = Field(default=None, description="OpenAI API key")
    perplexity_api_key: SecretStr | None = Field(default=None, description="Perplexity API key")
    openrouter_api_key: SecretStr | None = Field(default=None, description="OpenRouter API key")
    xai_api_key: SecretStr | None = Field(default=None, description="xAI API key")
    ollama_api_key: SecretStr | None = Field(default=None, description="Ollama API key (optional)")

    # Storage
    database_url: str | None = Field(
        default=None,
        description="SQLAlchemy async URL, used when the store backend is 'sql'",
    )
    taskgraph_store_backend: Literal["json", "sql"] = Field(
        default="json",
        description="Persistence backend for task collections",
    )
    taskgraph_data_dir: str = Field(
        default="./.taskgraph",
        description="Root directory for JSON task stores, reports and logs",
    )
    taskgraph_project: str = Field(
        default="default",
        description="Project reference used when none is given",
    )
    taskgraph_backup_retention: int = Field(
        default=5,
        ge=1,
        description="Number of backups kept per project",
    )

    # Logging
    taskgraph_log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )
    taskgraph_debug: bool = Field(default=False, description="Enable debug mode")
    taskgraph_log_to_file: bool = Field(default=True, description="Write rotating log files")

    # Role bindings
    taskgraph_main_provider: str = Field(default="anthropic")
    taskgraph_main_model: str = Field(default="claude-sonnet-4-20250514")
    taskgraph_research_provider: str | None = Field(default="perplexity")
    taskgraph_research_model: str | None = Field(default="sonar-pro")
    taskgraph_fallback_provider: str | None = Field(default="anthropic")
    taskgraph_fallback_model: str | None = Field(default="claude-3-5-haiku-20241022")
    taskgraph_max_tokens: int = Field(default=4000, gt=0)
    taskgraph_research_max_tokens: int = Field(default=8000, gt=0)
    taskgraph_temperature: float = Field(default=0.2, ge=0.0, le=2.0)
    taskgraph_research_temperature: float = Field(default=0.1, ge=0.0, le=2.0)
    taskgraph_ollama_base_url: str | None = Field(default=None)

    # Execution policy
    taskgraph_ai_max_retries: int = Field(default=2, ge=0, le=10)
    taskgraph_ai_fallback_max_retries: int = Field(default=1, ge=0, le=10)
    taskgraph_ai_retry_delay: float = Field(default=1.0, ge=0.0)
    taskgraph_ai_timeout: float = Field(default=120.0, gt=0)
    taskgraph_ai_provider_concurrency: int = Field(default=4, ge=1, le=32)
    taskgraph_batch_concurrency: int = Field(default=3, ge=1, le=32)

    # Complexity
    taskgraph_complexity_threshold: int = Field(default=5, ge=1, le=10)

    @property
    def data_path(self) -> Path:
        """Resolved data directory."""
        return Path(self.taskgraph_data_dir).expanduser().resolve()

    def api_key_for(self, provider: str) -> SecretStr | None:
        """Get the configured API key for a provider."""
        field_name = PROVIDER_KEY_FIELDS.get(provider.lower())
        if field_name is None:
            return None
        return getattr(self, field_name)

    def to_ai_config(self) -> AIConfig:
        """Build the immutable AI configuration.

        Returns:
            AIConfig with every configured role bound.

        Example:
            >>> settings = get_settings()
            >>> settings.to_ai_config().role_config(AIRole.MAIN).model
            'claude-sonnet-4-20250514'
        """
        roles: dict[AIRole, RoleConfig] = {
            AIRole.MAIN: self._role(
                self.taskgraph_main_provider,
                self.taskgraph_main_model,
                self.taskgraph_max_tokens,
                self.taskgraph_temperature,
            ),
        }
        if self.taskgraph_research_provider and self.taskgraph_research_model:
            roles[AIRole.RESEARCH] = self._role(
                self.taskgraph_research_provider,
                self.taskgraph_research_model,
                self.taskgraph_research_max_tokens,
                self.taskgraph_research_temperature,
            )
        if self.taskgraph_fallback_provider and self.taskgraph_fallback_model:
            roles[AIRole.FALLBACK] = self._role(
                self.taskgraph_fallback_provider,
                self.taskgraph_fallback_model,
                self.taskgraph_max_tokens,
                self.taskgraph_temperature,
            )

        return AIConfig(
            roles=roles,
            primary_retry=RetryPolicy(
                max_retries=self.taskgraph_ai_max_retries,
                initial_delay=self.taskgraph_ai_retry_delay,
            ),
            fallback_retry=RetryPolicy(
                max_retries=self.taskgraph_ai_fallback_max_retries,
                initial_delay=self.taskgraph_ai_retry_delay,
            ),
            timeout_seconds=self.taskgraph_ai_timeout,
            max_concurrency_per_provider=self.taskgraph_ai_provider_concurrency,
        )

    def _role(self, provider: str, model: str, max_tokens: int, temperature: float) -> RoleConfig:
        base_url = self.taskgraph_ollama_base_url if provider.lower() == "ollama" else None
        return RoleConfig(
            provider=provider.lower(),
            model=model,
            max_tokens=max_tokens,
            temperature=temperature,
            base_url=base_url,
            api_key=self.api_key_for(provider),
        )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance.

    Returns:
        Settings instance loaded from environment.

    Example:
        >>> settings = get_settings()
        >>> settings.taskgraph_batch_concurrency
        3
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache (useful for testing)."""
    get_settings.cache_clear()


def configure_logging(settings: Settings | None = None) -> None:
    """Configure loguru sinks based on settings."""
    settings = settings or get_settings()
    logger.remove()  # Remove default handler

    log_format = (
        "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
        "<level>{level: <8}</level> | "
        "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
        "<level>{message}</level>"
    )
    level = "DEBUG" if settings.taskgraph_debug else settings.taskgraph_log_level

    if settings.taskgraph_log_to_file:
        logs_dir = settings.data_path / "logs"
        logs_dir.mkdir(parents=True, exist_ok=True)
        logger.add(
            str(logs_dir / "taskgraph_{time:YYYY-MM-DD}.log"),
            rotation="1 day",
            retention="7 days",
            level=settings.taskgraph_log_level,
            format=log_format,
        )

    logger.add(
        sys.stderr,
        level=level,
        format=log_format,
        colorize=True,
    )

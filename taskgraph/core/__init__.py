"""Core module - configuration, errors and the service facade."""

from taskgraph.core.config import Settings, clear_settings_cache, configure_logging, get_settings
from taskgraph.core.exceptions import (
    ConfigurationError,
    ErrorCode,
    ProviderCallError,
    ProviderError,
    ResponseFormatError,
    StoreCorruptError,
    StoreIOError,
    StoreNotFoundError,
    TaskGraphError,
    TaskNotFoundError,
    ValidationError,
)

__all__ = [
    "ConfigurationError",
    "ErrorCode",
    "ProviderCallError",
    "ProviderError",
    "ResponseFormatError",
    "Settings",
    "StoreCorruptError",
    "StoreIOError",
    "StoreNotFoundError",
    "TaskGraphError",
    "TaskNotFoundError",
    "ValidationError",
    "clear_settings_cache",
    "configure_logging",
    "get_settings",
]

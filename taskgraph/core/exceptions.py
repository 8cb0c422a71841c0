"""Exception hierarchy and error codes for taskgraph.

Every error raised inside the engine derives from TaskGraphError and
carries an ErrorCode, so the operation boundary can turn it into the
``{success: false, error: {code, message}}`` envelope without guessing.
"""

from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    """Error codes surfaced to external callers."""

    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"
    PROVIDER_ERROR = "PROVIDER_ERROR"
    STORE_IO_ERROR = "STORE_IO_ERROR"
    NO_OP = "NO_OP"
    INTERNAL_ERROR = "INTERNAL_ERROR"


# =============================================================================
# BASE
# =============================================================================


class TaskGraphError(Exception):
    """Base exception for taskgraph errors."""

    code: ErrorCode = ErrorCode.INTERNAL_ERROR

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert to the error envelope shape."""
        data: dict[str, Any] = {"code": self.code.value, "message": self.message}
        if self.details:
            data["details"] = self.details
        return data


# =============================================================================
# DOMAIN ERRORS
# =============================================================================


class ValidationError(TaskGraphError):
    """A graph invariant or a field constraint would be violated."""

    code = ErrorCode.VALIDATION_ERROR

    def __init__(
        self,
        message: str,
        violations: list[Any] | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details)
        self.violations = violations or []

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        if self.violations:
            data["violations"] = [
                v.model_dump(mode="json") if hasattr(v, "model_dump") else v
                for v in self.violations
            ]
        return data


class TaskNotFoundError(TaskGraphError):
    """Task or subtask id is absent."""

    code = ErrorCode.NOT_FOUND

    def __init__(self, task_id: int | str, message: str | None = None) -> None:
        super().__init__(message or f"Task {task_id} not found", {"task_id": str(task_id)})
        self.task_id = task_id


class ProviderError(TaskGraphError):
    """Every provider in the retry/fallback chain failed."""

    code = ErrorCode.PROVIDER_ERROR

    def __init__(
        self,
        message: str,
        provider: str | None = None,
        model: str | None = None,
        telemetry: Any | None = None,
    ) -> None:
        details = {}
        if provider:
            details["provider"] = provider
        if model:
            details["model"] = model
        super().__init__(message, details)
        self.provider = provider
        self.model = model
        self.telemetry = telemetry


class ProviderCallError(TaskGraphError):
    """A single provider call failed.

    Raised by provider adapters; the orchestrator classifies it as
    retryable or fatal and never lets it escape on its own.
    """

    code = ErrorCode.PROVIDER_ERROR

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        retryable: bool | None = None,
    ) -> None:
        super().__init__(message, {"status_code": status_code} if status_code else None)
        self.status_code = status_code
        self.retryable = retryable


class ResponseFormatError(TaskGraphError):
    """A structured response could not be parsed or validated."""

    code = ErrorCode.PROVIDER_ERROR


class ConfigurationError(TaskGraphError):
    """A role or provider is not configured."""

    code = ErrorCode.PROVIDER_ERROR


# =============================================================================
# STORE ERRORS
# =============================================================================


class StoreIOError(TaskGraphError):
    """Persistence layer failure."""

    code = ErrorCode.STORE_IO_ERROR


class StoreNotFoundError(StoreIOError):
    """The project has no stored task collection."""

    code = ErrorCode.NOT_FOUND

    def __init__(self, project_ref: str) -> None:
        super().__init__(f"Project '{project_ref}' not found", {"reason": "NOT_FOUND"})
        self.project_ref = project_ref


class StoreCorruptError(StoreIOError):
    """Stored data exists but cannot be decoded."""

    def __init__(self, project_ref: str, reason: str) -> None:
        super().__init__(
            f"Task data for project '{project_ref}' is corrupt: {reason}",
            {"reason": "CORRUPT"},
        )
        self.project_ref = project_ref

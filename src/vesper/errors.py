"""Application-level exception types for Vesper."""

from __future__ import annotations


class VesperError(Exception):
    """Base exception for Vesper."""


class ConfigurationError(VesperError):
    """Base exception for configuration and startup validation errors."""


class EmbeddingDimensionError(ConfigurationError):
    """Raised when stored vectors and the configured embedder disagree on dimensionality."""


class UnknownProviderError(ConfigurationError):
    """Raised when a backend or embedding provider name is not supported."""


class ApiKeyNotConfiguredError(ConfigurationError):
    """Raised when an API key is required but missing."""


class DuplicateToolError(ConfigurationError):
    """Raised when two tools are registered under the same name."""


class TurnError(VesperError):
    """Base exception for failures that abort one turn."""


class InvalidInputError(TurnError):
    """Raised for an empty or malformed prompt."""


class BackendUnavailableError(TurnError):
    """Raised when the model backend keeps failing after all retry attempts."""

    def __init__(self, message: str, *, attempts: int) -> None:
        super().__init__(message)
        self.attempts = attempts


class ToolLoopExceededError(TurnError):
    """Raised when the backend keeps requesting tools past the round limit."""

    def __init__(self, max_rounds: int) -> None:
        super().__init__(f"tool call loop exceeded {max_rounds} rounds")
        self.max_rounds = max_rounds


class TurnCancelledError(TurnError):
    """Raised when the caller aborts a turn before it completes."""


class StorageError(TurnError):
    """Raised when the memory store cannot be read or written."""


class EmbeddingError(TurnError):
    """Raised when the embedding backend fails."""


class PhaseOrderError(TurnError):
    """Raised when a turn tries to move back to an earlier phase."""


class ToolError(VesperError):
    """Base exception raised by tool implementations.

    Tool errors never abort a turn; the gateway folds them into a ``ToolResult``.
    """

    kind = "error"


class ToolIoError(ToolError):
    kind = "io"


class ToolTimeoutError(ToolError):
    kind = "timeout"


class ToolPermissionError(ToolError):
    kind = "permission_denied"


class ToolInputError(ToolError):
    kind = "invalid_input"


class ToolDeniedError(ToolError):
    kind = "denied"

"""
Error taxonomy for the task board.

Remote store failures wrap the underlying exception in `.cause` so callers
can log the underlying error without depending on backend-specific types.
"""
from typing import Optional


class TaskboardError(Exception):
    """Base class for all task board errors."""
    pass


class RemoteReadError(TaskboardError):
    """Raised when the remote store cannot be read."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


class RemoteWriteError(TaskboardError):
    """Raised when a write to the remote store fails."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


class SignatureValidationError(TaskboardError):
    """Raised when a webhook signature is missing or does not match."""
    pass


class MalformedPayloadError(TaskboardError):
    """Raised when a webhook body is not valid JSON or lacks required data."""
    pass


class ConfigError(TaskboardError):
    """Raised when configuration is invalid or incomplete."""
    pass

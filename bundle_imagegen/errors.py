"""Error taxonomy for build orchestration.

Every error carries a stable ``code`` that callers (HTTP layer, CLI) can
map to a response without parsing messages.
"""

from __future__ import annotations

# Error code constants
INVALID_INPUT = "invalid_input"
CAPACITY_EXCEEDED = "capacity_exceeded"
BUILD_NOT_FOUND = "build_not_found"
INVALID_STATE = "invalid_state"
CONTEXT_PREPARATION_FAILED = "context_preparation_failed"
BUILD_FAILED = "build_failed"
TIMEOUT = "timeout"
CANCELLED = "cancelled"
RUNTIME_UNAVAILABLE = "runtime_unavailable"
PUSH_FAILED = "push_failed"


class BuilderError(Exception):
    """Base error for build orchestration operations."""

    default_code = "builder_error"

    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message)
        self.code = code or self.default_code


class InvalidInputError(BuilderError):
    """Raised when a request is malformed or missing required fields."""

    default_code = INVALID_INPUT


class CapacityExceededError(BuilderError):
    """Raised when the concurrency ceiling is reached."""

    default_code = CAPACITY_EXCEEDED

    def __init__(self, limit: int) -> None:
        super().__init__(
            f"Too many concurrent builds (limit {limit}); try again later"
        )
        self.limit = limit


class NotFoundError(BuilderError):
    """Raised when a build id is unknown or already garbage-collected."""

    default_code = BUILD_NOT_FOUND

    def __init__(self, build_id: str) -> None:
        super().__init__(f"Build not found: {build_id}")
        self.build_id = build_id


class InvalidStateError(BuilderError):
    """Raised when an operation is not legal for the build's status."""

    default_code = INVALID_STATE


class ContextPreparationError(BuilderError):
    """Raised when a bundle cannot be downloaded or expanded."""

    default_code = CONTEXT_PREPARATION_FAILED


class BuildFailedError(BuilderError):
    """Raised when the build tool exits non-zero."""

    default_code = BUILD_FAILED

    def __init__(self, message: str, exit_code: int | None = None) -> None:
        super().__init__(message)
        self.exit_code = exit_code


class BuildTimeoutError(BuilderError):
    """Raised when a build exceeds its configured duration."""

    default_code = TIMEOUT


class BuildCancelledError(BuilderError):
    """Raised when a build was cancelled by its caller."""

    default_code = CANCELLED


class ExternalToolUnavailableError(BuilderError):
    """Raised when the container runtime itself cannot be invoked."""

    default_code = RUNTIME_UNAVAILABLE


class RuntimeCommandError(BuilderError):
    """Raised when a runtime command (inspect, tag, push, ...) exits non-zero."""

    default_code = "runtime_command_failed"

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        stderr: str = "",
        code: str | None = None,
    ) -> None:
        super().__init__(message, code)
        self.exit_code = exit_code
        self.stderr = stderr


class PushFailedError(BuilderError):
    """Raised when login, tag or push against a registry fails."""

    default_code = PUSH_FAILED


__all__ = [
    "BUILD_FAILED",
    "BUILD_NOT_FOUND",
    "CANCELLED",
    "CAPACITY_EXCEEDED",
    "CONTEXT_PREPARATION_FAILED",
    "INVALID_INPUT",
    "INVALID_STATE",
    "PUSH_FAILED",
    "RUNTIME_UNAVAILABLE",
    "TIMEOUT",
    "BuildCancelledError",
    "BuildFailedError",
    "BuildTimeoutError",
    "BuilderError",
    "CapacityExceededError",
    "ContextPreparationError",
    "ExternalToolUnavailableError",
    "InvalidInputError",
    "InvalidStateError",
    "NotFoundError",
    "PushFailedError",
    "RuntimeCommandError",
]

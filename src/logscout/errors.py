"""Application-level exception types for logscout."""

from __future__ import annotations


class LogscoutError(Exception):
    """Base exception for logscout."""


class ConfigurationError(LogscoutError):
    """Base exception for configuration and startup validation errors."""


class ApiKeyNotConfiguredError(ConfigurationError):
    """Raised when an API key is required but missing."""


class AgentError(LogscoutError):
    """Base exception for agent loop failures surfaced to the caller."""


class AgentTerminatedError(AgentError):
    """Raised when run() is called on a terminated agent loop."""

    def __init__(self) -> None:
        super().__init__("agent loop terminated")


class RetriesExhaustedError(AgentError):
    """Raised when an upstream request keeps failing past the retry ceiling."""

    def __init__(self, attempts: int, last_error: BaseException) -> None:
        super().__init__(f"upstream request failed after {attempts} attempts: {last_error!s}")
        self.attempts = attempts
        self.last_error = last_error


class UpstreamStreamError(AgentError):
    """Raised when the response stream reports a failure event."""

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        type: str | None = None,
        param: str | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.type = type
        self.param = param
        self.status_code = status_code

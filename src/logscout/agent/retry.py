"""Upstream error classification and retry backoff."""

from __future__ import annotations

import re
from enum import StrEnum

import openai

RETRY_HINT_RE = re.compile(r"(?:retry|try) again in ([\d.]+)s", re.IGNORECASE)
MAX_TOKENS_RE = re.compile(r"max_tokens is too large", re.IGNORECASE)


class ErrorKind(StrEnum):
    TRANSIENT = "transient"
    RATE_LIMIT = "rate_limit"
    CONTEXT_LENGTH = "context_length"
    FATAL = "fatal"

    @property
    def retryable(self) -> bool:
        return self in (ErrorKind.TRANSIENT, ErrorKind.RATE_LIMIT)


def classify_error(exc: BaseException) -> ErrorKind:
    """Map an upstream failure onto the retry taxonomy.

    Works on openai SDK exceptions and on any exception exposing the same
    ``status_code``/``code``/``type``/``param`` attributes.
    """
    if isinstance(exc, (openai.APITimeoutError, openai.APIConnectionError, TimeoutError, ConnectionError)):
        return ErrorKind.TRANSIENT

    status = _status_of(exc)
    code = getattr(exc, "code", None)
    error_type = getattr(exc, "type", None)
    param = getattr(exc, "param", None)
    message = _message_of(exc)

    if code == "context_length_exceeded" or (
        error_type == "invalid_request_error" and (param == "max_tokens" or MAX_TOKENS_RE.search(message))
    ):
        return ErrorKind.CONTEXT_LENGTH

    if isinstance(exc, openai.RateLimitError) or status == 429 or "rate_limit_exceeded" in (code, error_type):
        return ErrorKind.RATE_LIMIT

    if isinstance(exc, openai.InternalServerError) or (status is not None and status >= 500):
        return ErrorKind.TRANSIENT
    if error_type == "server_error" or code == "server_error":
        return ErrorKind.TRANSIENT

    return ErrorKind.FATAL


def suggested_delay(message: str) -> float | None:
    """Parse a provider hint such as ``Please try again in 1.5s``."""
    match = RETRY_HINT_RE.search(message)
    if match is None:
        return None
    try:
        return float(match.group(1))
    except ValueError:
        return None


def backoff_delay(attempt: int, base_seconds: float, message: str = "") -> float:
    """Exponential backoff from ``base_seconds``, overridden by a provider hint."""
    hinted = suggested_delay(message)
    if hinted is not None:
        return hinted
    return base_seconds * 2 ** (attempt - 1)


def error_message(exc: BaseException) -> str:
    return _message_of(exc)


def _status_of(exc: BaseException) -> int | None:
    for attr in ("status_code", "status", "http_status"):
        value = getattr(exc, attr, None)
        if isinstance(value, int):
            return value
    return None


def _message_of(exc: BaseException) -> str:
    message = getattr(exc, "message", None)
    if isinstance(message, str):
        return message
    return str(exc)

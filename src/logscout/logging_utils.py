"""Runtime logging helpers."""

from __future__ import annotations

import os
import sys
from contextvars import ContextVar, Token
from logging import Handler
from typing import Literal

import loguru
from loguru import logger
from rich import get_console
from rich.logging import RichHandler

LogProfile = Literal["default", "chat"]

_PROFILE_FORMATS: dict[LogProfile, str] = {
    "chat": "{extra[turn]} | {message}",
    "default": "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level:<6} | {name}:{function}:{line} | {extra[turn]} | {message}",
}
_CONFIGURED_PROFILE: LogProfile | None = None
_CURRENT_TURN: ContextVar[str] = ContextVar("logscout_turn", default="-")


def bind_turn(generation: int) -> Token[str]:
    """Tag log records emitted from the current task with a turn generation."""
    return _CURRENT_TURN.set(f"turn-{generation}")


def reset_turn(token: Token[str]) -> None:
    _CURRENT_TURN.reset(token)


def _inject_turn(record: loguru.Record) -> None:
    record["extra"]["turn"] = _CURRENT_TURN.get()


def _build_chat_handler() -> Handler:
    return RichHandler(
        console=get_console(),
        show_level=True,
        show_time=False,
        show_path=False,
        markup=False,
        rich_tracebacks=False,
    )


def configure_logging(*, profile: LogProfile = "default", level: str | None = None) -> None:
    """Configure process-level logging once per profile.

    ``level`` wins over ``LOGSCOUT_LOG_LEVEL``; both default to INFO.
    """
    global _CONFIGURED_PROFILE
    if profile == _CONFIGURED_PROFILE:
        return

    resolved_level = (level or os.getenv("LOGSCOUT_LOG_LEVEL", "INFO")).upper()
    logger.remove()
    sink: Handler | object = _build_chat_handler() if profile == "chat" else sys.stderr
    logger.add(
        sink,
        level=resolved_level,
        format=_PROFILE_FORMATS[profile],
        backtrace=False,
        diagnose=False,
    )
    logger.configure(patcher=_inject_turn)
    _CONFIGURED_PROFILE = profile

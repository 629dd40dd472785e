"""Model-facing tool declarations and per-model request options."""

from __future__ import annotations

import json
from typing import Any

from logscout.agent.items import ResponseItem

SHELL_FUNCTION_TOOL: dict[str, Any] = {
    "type": "function",
    "name": "shell",
    "description": "Runs a shell command, and returns its output.",
    "strict": False,
    "parameters": {
        "type": "object",
        "properties": {
            "command": {"type": "array", "items": {"type": "string"}},
            "workdir": {
                "type": "string",
                "description": "The working directory for the command.",
            },
            "timeout": {
                "type": "number",
                "description": "The maximum time to wait for the command to complete in milliseconds.",
            },
        },
        "required": ["command"],
        "additionalProperties": False,
    },
}

LOCAL_SHELL_TOOL: dict[str, Any] = {"type": "local_shell"}

REASONING_SUMMARY_MODELS = frozenset({"o3", "o4-mini", "codex-mini-latest"})


def tools_for_model(model: str) -> list[dict[str, Any]]:
    if model.startswith("codex"):
        return [LOCAL_SHELL_TOOL]
    return [SHELL_FUNCTION_TOOL]


def reasoning_for_model(model: str, effort: str = "high") -> dict[str, str] | None:
    if not model.startswith("o"):
        return None
    reasoning = {"effort": effort}
    if model in REASONING_SUMMARY_MODELS:
        reasoning["summary"] = "auto"
    return reasoning


def function_call_parts(item: ResponseItem) -> tuple[str, str]:
    """Return ``(name, raw_arguments)`` for Responses and chat-style calls."""
    function = item.get("function")
    if isinstance(function, dict):
        return str(function.get("name") or ""), function.get("arguments") or "{}"
    return str(item.get("name") or ""), item.get("arguments") or "{}"


def parse_tool_call_arguments(raw: str) -> dict[str, Any] | None:
    """Decode shell tool arguments, or ``None`` when they are unusable.

    Accepts ``cmd`` as an alias of ``command``; a string command is kept as
    is and split later by the executor.
    """
    try:
        payload = json.loads(raw)
    except (TypeError, ValueError):
        return None
    if not isinstance(payload, dict):
        return None

    command = payload.get("command", payload.get("cmd"))
    if isinstance(command, list):
        if not all(isinstance(part, str) for part in command):
            return None
    elif not isinstance(command, str):
        return None

    args: dict[str, Any] = {"command": command}
    if isinstance(workdir := payload.get("workdir"), str) and workdir:
        args["workdir"] = workdir
    if isinstance(timeout := payload.get("timeout"), (int, float)) and not isinstance(timeout, bool):
        args["timeout"] = timeout
    return args


def local_shell_arguments(item: ResponseItem) -> dict[str, Any]:
    action = item.get("action") or {}
    args: dict[str, Any] = {"command": list(action.get("command") or [])}
    if workdir := action.get("working_directory"):
        args["workdir"] = workdir
    if timeout := action.get("timeout_ms"):
        args["timeout"] = timeout
    return args

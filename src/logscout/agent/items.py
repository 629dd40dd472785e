"""Response item helpers for the Responses API item shapes."""

from __future__ import annotations

import json
import time
from collections.abc import Iterable
from typing import Any

from logscout.events.bridge import ResponseItem

TOOL_CALL_TYPES = frozenset({"function_call", "local_shell_call"})
API_MESSAGE_TYPES = frozenset({"message", "function_call_output", "local_shell_call_output"})
OUTPUT_TYPE_FOR_CALL = {
    "function_call": "function_call_output",
    "local_shell_call": "local_shell_call_output",
}
INTERNAL_FIELDS = ("duration_ms", "id", "status")
ABORTED_PAYLOAD = {"output": "aborted", "metadata": {"exit_code": 1, "duration_seconds": 0}}


def as_item(raw: Any) -> ResponseItem:
    """Normalize SDK models and plain mappings into dict items."""
    if isinstance(raw, dict):
        return raw
    model_dump = getattr(raw, "model_dump", None)
    if callable(model_dump):
        return model_dump(exclude_none=True)
    raise TypeError(f"unsupported response item: {type(raw).__name__}")


def is_tool_call(item: ResponseItem) -> bool:
    return item.get("type") in TOOL_CALL_TYPES


def call_id(item: ResponseItem) -> str | None:
    return item.get("call_id") or item.get("id")


def strip_internal_fields(item: ResponseItem) -> ResponseItem:
    return {key: value for key, value in item.items() if key not in INTERNAL_FIELDS}


def filter_to_api_messages(items: Iterable[ResponseItem]) -> list[ResponseItem]:
    return [item for item in items if item.get("type") in API_MESSAGE_TYPES]


def is_transcript_item(item: ResponseItem) -> bool:
    """Whether a model-produced item is kept in the local transcript."""
    if item.get("role") == "system":
        return False
    if item.get("type") == "message" and item.get("role") == "user":
        return False
    return item.get("type") in API_MESSAGE_TYPES


def tool_output(call_type: str, call_id: str, output: str) -> ResponseItem:
    return {"type": OUTPUT_TYPE_FOR_CALL.get(call_type, "function_call_output"), "call_id": call_id, "output": output}


def aborted_output(call_id: str, call_type: str = "function_call") -> ResponseItem:
    return tool_output(call_type, call_id, json.dumps(ABORTED_PAYLOAD))


def user_message(text: str) -> ResponseItem:
    return {"type": "message", "role": "user", "content": [{"type": "input_text", "text": text}]}


def system_message(text: str) -> ResponseItem:
    return {
        "id": f"error-{int(time.time() * 1000)}",
        "type": "message",
        "role": "system",
        "content": [{"type": "input_text", "text": text}],
    }


def message_text(item: ResponseItem) -> str:
    """Join the text parts of a message item."""
    parts: list[str] = []
    for part in item.get("content") or []:
        if isinstance(part, dict) and isinstance(text := part.get("text"), str):
            parts.append(text)
    return "".join(parts)

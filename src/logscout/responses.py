"""Canned user-facing responses."""

from __future__ import annotations

COMMAND_BLOCKED = """I cannot execute that command because it would modify files. As a log analyzer, I can only perform read operations.

Instead, I can help you:
- Analyze log files for errors and patterns
- Search for specific content in logs
- Correlate events across multiple files
- Provide troubleshooting guidance

What would you like me to investigate?"""

CONTEXT_LENGTH_EXCEEDED = (
    "⚠️  The current request exceeds the maximum context length supported by the chosen model. "
    "Please shorten the conversation, run /clear, or switch to a model with a larger context window and try again."
)


def command_blocked(reason: str) -> str:
    return f"{COMMAND_BLOCKED}\n\nReason: {reason}"

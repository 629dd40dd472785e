"""Read-only shell tools: validation, approval, and execution."""

from logscout.tools.approval import (
    ApprovalPolicy,
    ApprovalRequest,
    CommandConfirmation,
    ConfirmCallback,
    ReviewDecision,
)
from logscout.tools.executor import ExecMetadata, ShellInput, ToolExecutor, ToolResult
from logscout.tools.validator import Allowed, CommandDecision, Denied, validate_command

__all__ = [
    "Allowed",
    "ApprovalPolicy",
    "ApprovalRequest",
    "CommandConfirmation",
    "CommandDecision",
    "ConfirmCallback",
    "Denied",
    "ExecMetadata",
    "ReviewDecision",
    "ShellInput",
    "ToolExecutor",
    "ToolResult",
    "validate_command",
]

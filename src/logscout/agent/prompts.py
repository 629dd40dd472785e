"""Model instructions for the log analysis agent."""

from __future__ import annotations

from dataclasses import dataclass, field

LOG_ANALYZER_PREFIX = (
    "You are a specialized log analysis assistant. You can read and analyze files, "
    "but you cannot create, modify, or delete files. Focus on investigating logs, "
    "identifying patterns, and providing insights. Use shell commands for read-only "
    "operations like grep, cat, find, etc.\n"
)


@dataclass(frozen=True)
class ResponseBehavior:
    include_line_numbers: bool = True
    max_log_lines_in_response: int = 10
    group_similar_errors: bool = True
    include_timestamps: bool = True


@dataclass(frozen=True)
class InvestigationBehavior:
    ask_clarifying_questions: bool = True
    suggest_next_steps: bool = True
    correlate_across_files: bool = True


@dataclass(frozen=True)
class BehaviorConfig:
    responses: ResponseBehavior = field(default_factory=ResponseBehavior)
    investigation: InvestigationBehavior = field(default_factory=InvestigationBehavior)


def agent_instructions(config: BehaviorConfig) -> str:
    lines: list[str] = []
    if config.responses.include_line_numbers:
        lines.append("Always include line numbers when referencing log entries")
    if config.responses.group_similar_errors:
        lines.append("Group similar errors together in your analysis")
    if config.investigation.ask_clarifying_questions:
        lines.append("Ask clarifying questions to better understand the issue")
    if config.investigation.suggest_next_steps:
        lines.append("Always suggest next steps for investigation or resolution")
    return "\n".join(lines)


def build_instructions(user_instructions: str = "", behavior: BehaviorConfig | None = None) -> str:
    """Prefix + user instructions + behavior rules, skipping empty parts."""
    behavior = behavior or BehaviorConfig()
    parts = [LOG_ANALYZER_PREFIX, user_instructions.strip(), agent_instructions(behavior)]
    return "\n".join(part for part in parts if part)

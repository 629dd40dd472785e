"""Agent loop and its helpers."""

from logscout.agent.items import user_message
from logscout.agent.loop import AgentLoop, LoopState, TurnContext
from logscout.agent.prompts import BehaviorConfig, build_instructions
from logscout.agent.retry import ErrorKind, classify_error

__all__ = [
    "AgentLoop",
    "BehaviorConfig",
    "ErrorKind",
    "LoopState",
    "TurnContext",
    "build_instructions",
    "classify_error",
    "user_message",
]

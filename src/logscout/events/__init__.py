"""Agent event bridge.

Usage:
    from logscout.events import AgentEventBridge

    bridge = AgentEventBridge()
    unsubscribe = bridge.on_item(lambda item: print(item["type"]))
    bridge.emit_item({"type": "message", "role": "assistant", "content": []})
    unsubscribe()
"""

from logscout.events.bridge import AgentEventBridge, AgentEventKind, ResponseItem, Unsubscribe

__all__ = [
    "AgentEventBridge",
    "AgentEventKind",
    "ResponseItem",
    "Unsubscribe",
]

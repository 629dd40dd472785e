"""Signal-based event bridge between the agent loop and its listeners."""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Callable
from enum import StrEnum
from typing import Any

from blinker import Signal
from loguru import logger

from logscout.tools.approval import PatchInfo, Resolver

Unsubscribe = Callable[[], None]
ResponseItem = dict[str, Any]


class AgentEventKind(StrEnum):
    """Every notification the agent loop can publish."""

    ITEM = "item"
    LOADING = "loading"
    RESPONSE_ID = "response_id"
    CONFIRM_COMMAND = "confirm_command"
    ERROR = "error"
    COMPLETE = "complete"
    CANCELED = "canceled"
    TOOL_CALL_START = "tool_call_start"
    TOOL_CALL_COMPLETE = "tool_call_complete"


class AgentEventBridge:
    """Typed fan-out channel backed by one blinker signal per event kind.

    Emission never raises and never waits: a failing subscriber is logged and the
    remaining subscribers still run, coroutine subscribers are scheduled on the
    running event loop.
    """

    def __init__(self, name: str = "agent") -> None:
        self._name = name
        self._signals = {kind: Signal(f"{name}.{kind.value}") for kind in AgentEventKind}
        self._receivers: dict[AgentEventKind, list[Callable[..., None]]] = {kind: [] for kind in AgentEventKind}
        self._tasks: set[asyncio.Task[Any]] = set()

    # emit

    def emit_item(self, item: ResponseItem) -> None:
        self._emit(AgentEventKind.ITEM, item)

    def emit_loading(self, loading: bool) -> None:
        self._emit(AgentEventKind.LOADING, loading)

    def emit_response_id(self, response_id: str) -> None:
        self._emit(AgentEventKind.RESPONSE_ID, response_id)

    def emit_confirm_command(self, command: list[str], patch_info: PatchInfo | None, resolver: Resolver) -> None:
        self._emit(AgentEventKind.CONFIRM_COMMAND, command, patch_info, resolver)

    def emit_error(self, error: BaseException) -> None:
        self._emit(AgentEventKind.ERROR, error)

    def emit_complete(self) -> None:
        self._emit(AgentEventKind.COMPLETE)

    def emit_canceled(self) -> None:
        self._emit(AgentEventKind.CANCELED)

    def emit_tool_call_start(self, name: str, args: Any) -> None:
        self._emit(AgentEventKind.TOOL_CALL_START, name, args)

    def emit_tool_call_complete(self, name: str, result: Any) -> None:
        self._emit(AgentEventKind.TOOL_CALL_COMPLETE, name, result)

    # subscribe

    def on_item(self, handler: Callable[[ResponseItem], object]) -> Unsubscribe:
        return self.subscribe(AgentEventKind.ITEM, handler)

    def on_loading(self, handler: Callable[[bool], object]) -> Unsubscribe:
        return self.subscribe(AgentEventKind.LOADING, handler)

    def on_response_id(self, handler: Callable[[str], object]) -> Unsubscribe:
        return self.subscribe(AgentEventKind.RESPONSE_ID, handler)

    def on_confirm_command(
        self,
        handler: Callable[[list[str], PatchInfo | None, Resolver], object],
    ) -> Unsubscribe:
        return self.subscribe(AgentEventKind.CONFIRM_COMMAND, handler)

    def on_error(self, handler: Callable[[BaseException], object]) -> Unsubscribe:
        return self.subscribe(AgentEventKind.ERROR, handler)

    def on_complete(self, handler: Callable[[], object]) -> Unsubscribe:
        return self.subscribe(AgentEventKind.COMPLETE, handler)

    def on_canceled(self, handler: Callable[[], object]) -> Unsubscribe:
        return self.subscribe(AgentEventKind.CANCELED, handler)

    def on_tool_call_start(self, handler: Callable[[str, Any], object]) -> Unsubscribe:
        return self.subscribe(AgentEventKind.TOOL_CALL_START, handler)

    def on_tool_call_complete(self, handler: Callable[[str, Any], object]) -> Unsubscribe:
        return self.subscribe(AgentEventKind.TOOL_CALL_COMPLETE, handler)

    def subscribe(self, kind: AgentEventKind, handler: Callable[..., object]) -> Unsubscribe:
        signal = self._signals[kind]

        def _receiver(sender: Any, *, args: tuple[Any, ...]) -> None:
            self._dispatch(kind, handler, args)

        signal.connect(_receiver, weak=False)
        self._receivers[kind].append(_receiver)

        def _unsubscribe() -> None:
            signal.disconnect(_receiver)
            if _receiver in self._receivers[kind]:
                self._receivers[kind].remove(_receiver)

        return _unsubscribe

    def has_subscribers(self, kind: AgentEventKind) -> bool:
        return bool(self._receivers[kind])

    def clear(self) -> None:
        """Remove every subscriber; publishing keeps working."""
        for kind, receivers in self._receivers.items():
            for receiver in receivers:
                self._signals[kind].disconnect(receiver)
            receivers.clear()

    def _emit(self, kind: AgentEventKind, *args: Any) -> None:
        if not self._receivers[kind]:
            return
        self._signals[kind].send(self, args=args)

    def _dispatch(self, kind: AgentEventKind, handler: Callable[..., object], args: tuple[Any, ...]) -> None:
        try:
            result = handler(*args)
        except Exception:
            logger.exception("event.handler.error bridge={} kind={}", self._name, kind.value)
            return
        if inspect.isawaitable(result):
            self._schedule(kind, result)

    def _schedule(self, kind: AgentEventKind, awaitable: Any) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("event.handler.no_loop bridge={} kind={}", self._name, kind.value)
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            return
        task = loop.create_task(_await(awaitable))
        self._tasks.add(task)

        def _done(finished: asyncio.Task[Any]) -> None:
            self._tasks.discard(finished)
            if finished.cancelled():
                return
            if (exc := finished.exception()) is not None:
                logger.opt(exception=exc).error("event.handler.error bridge={} kind={}", self._name, kind.value)

        task.add_done_callback(_done)


async def _await(awaitable: Any) -> Any:
    return await awaitable

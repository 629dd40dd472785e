"""Cancelable agent loop over a streamed Responses API conversation."""

from __future__ import annotations

import asyncio
import functools
import time
from collections.abc import AsyncIterator
from contextlib import suppress
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any, Protocol

from loguru import logger

from logscout.agent.items import (
    ResponseItem,
    aborted_output,
    as_item,
    call_id,
    filter_to_api_messages,
    is_tool_call,
    is_transcript_item,
    strip_internal_fields,
    system_message,
    tool_output,
)
from logscout.agent.prompts import BehaviorConfig, build_instructions
from logscout.agent.retry import ErrorKind, backoff_delay, classify_error, error_message
from logscout.agent.staging import DEFAULT_ID_CAPACITY, BoundedIdSet, StagedItemBuffer
from logscout.agent.tools import (
    function_call_parts,
    local_shell_arguments,
    parse_tool_call_arguments,
    reasoning_for_model,
    tools_for_model,
)
from logscout.errors import AgentTerminatedError, RetriesExhaustedError, UpstreamStreamError
from logscout.events.bridge import AgentEventBridge, AgentEventKind
from logscout.logging_utils import bind_turn, reset_turn
from logscout.responses import CONTEXT_LENGTH_EXCEEDED
from logscout.tools.approval import (
    NO_APPROVER_MESSAGE,
    ApprovalPolicy,
    ApprovalRequest,
    CommandConfirmation,
    PatchInfo,
)
from logscout.tools.executor import ABORTED_OUTPUT, ToolExecutor

if TYPE_CHECKING:
    from logscout.config import Settings

STAGE_DELAY_SECONDS = 0.003
_STREAM_END = object()


class ResponsesAPI(Protocol):
    async def create(self, **kwargs: Any) -> Any: ...


class ResponsesClient(Protocol):
    responses: ResponsesAPI


class LoopState(StrEnum):
    IDLE = "idle"
    AWAITING_STREAM = "awaiting_stream"
    STREAMING = "streaming"
    EXECUTING_TOOLS = "executing_tools"
    COMPLETED = "completed"
    CANCELED = "canceled"
    TERMINATED = "terminated"


@dataclass
class TurnContext:
    """State owned by one ``run()`` call."""

    generation: int
    abort: asyncio.Event = field(default_factory=asyncio.Event)
    started: float = field(default_factory=time.monotonic)
    completed: bool = False
    finished: bool = False
    loading_cleared: bool = False


@dataclass
class _StreamState:
    response_id: str = ""
    received_items: bool = False
    completed: bool = False
    stalled: asyncio.Event = field(default_factory=asyncio.Event)
    watchdog: asyncio.TimerHandle | None = None


@dataclass(frozen=True)
class _StreamResult:
    next_input: list[ResponseItem]
    response_id: str
    forced: bool = False


class AgentLoop:
    """Drives one conversation against the Responses API.

    A turn may span several upstream requests: each completed response whose
    output contains tool calls is answered with the tool results and the loop
    asks again, until the model stops calling tools. Progress is reported only
    through the event bridge, and only for the current generation.
    """

    def __init__(
        self,
        *,
        client: ResponsesClient,
        model: str,
        instructions: str = "",
        approval_policy: ApprovalPolicy = ApprovalPolicy.SUGGEST,
        disable_response_storage: bool = False,
        events: AgentEventBridge | None = None,
        executor: ToolExecutor | None = None,
        behavior: BehaviorConfig | None = None,
        max_retries: int = 5,
        rate_limit_retry_wait: float = 0.5,
        stream_idle_timeout: float = 30.0,
        approval_timeout: float = 300.0,
        stage_delay: float = STAGE_DELAY_SECONDS,
        reasoning_effort: str = "high",
        id_capacity: int = DEFAULT_ID_CAPACITY,
    ) -> None:
        if max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        self._client = client
        self._model = model
        self._instructions = build_instructions(instructions, behavior)
        self._disable_response_storage = disable_response_storage
        self._events = events or AgentEventBridge()
        self._executor = executor or ToolExecutor(approval_policy=approval_policy)
        self._max_retries = max_retries
        self._rate_limit_retry_wait = rate_limit_retry_wait
        self._stream_idle_timeout = stream_idle_timeout
        self._approval_timeout = approval_timeout
        self._reasoning_effort = reasoning_effort

        self._generation = 0
        self._state = LoopState.IDLE
        self._terminated = False
        self._hard_abort = asyncio.Event()
        self._turn: TurnContext | None = None
        self._last_response_id = ""
        self._transcript: list[ResponseItem] = []
        self._pending_aborts: dict[str, ResponseItem] = {}
        self._processed = BoundedIdSet(id_capacity)
        self._staged_ids = BoundedIdSet(id_capacity)
        self._staged = StagedItemBuffer(self._events.emit_item, delay=stage_delay, seen=self._staged_ids)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        client: ResponsesClient | None = None,
        events: AgentEventBridge | None = None,
        behavior: BehaviorConfig | None = None,
    ) -> AgentLoop:
        if client is None:
            from logscout.llm import build_client

            client = build_client(settings)
        executor = ToolExecutor(
            approval_policy=settings.approval_policy,
            workspace=settings.resolve_workspace(),
            default_timeout_seconds=settings.exec_timeout_seconds,
        )
        return cls(
            client=client,
            model=settings.model,
            instructions=settings.instructions,
            approval_policy=settings.approval_policy,
            disable_response_storage=settings.disable_response_storage,
            events=events,
            executor=executor,
            behavior=behavior,
            max_retries=settings.max_retries,
            rate_limit_retry_wait=settings.rate_limit_retry_wait_ms / 1000,
            stream_idle_timeout=settings.stream_idle_timeout_seconds,
            approval_timeout=settings.approval_timeout_seconds,
        )

    @property
    def events(self) -> AgentEventBridge:
        return self._events

    @property
    def model(self) -> str:
        return self._model

    @property
    def instructions(self) -> str:
        return self._instructions

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def state(self) -> LoopState:
        return self._state

    @property
    def terminated(self) -> bool:
        return self._terminated

    @property
    def last_response_id(self) -> str:
        return self._last_response_id

    @property
    def transcript(self) -> list[ResponseItem]:
        return list(self._transcript)

    @property
    def pending_aborts(self) -> tuple[str, ...]:
        return tuple(self._pending_aborts)

    async def run(self, input_items: list[ResponseItem], previous_response_id: str = "") -> None:
        """Run one turn to completion, cancellation or failure."""
        if self._terminated:
            raise AgentTerminatedError()

        previous = self._turn
        if previous is not None and self._is_live(previous):
            logger.info("agent.loop.supersede generation={}", previous.generation)
            previous.abort.set()
            self._staged.discard()

        self._generation += 1
        ctx = TurnContext(generation=self._generation)
        self._turn = ctx
        turn_token = bind_turn(ctx.generation)
        logger.info(
            "agent.loop.run generation={} items={} pending_aborts={}",
            ctx.generation,
            len(input_items),
            len(self._pending_aborts),
        )

        aborted = self._resolve_pending_aborts()
        if self._disable_response_storage:
            new_messages = filter_to_api_messages(input_items)
            turn_input = [*self._transcript, *aborted, *new_messages]
            self._transcript.extend(strip_internal_fields(item) for item in new_messages)
            last_response_id = ""
        else:
            answers = [item for item in aborted if not is_tool_call(item)]
            turn_input = [*answers, *input_items]
            last_response_id = previous_response_id
        turn_input = [strip_internal_fields(item) for item in turn_input]

        self._events.emit_loading(True)
        try:
            await self._run_turn(ctx, turn_input, last_response_id)
        except Exception as exc:
            if not self._is_current(ctx):
                logger.warning("agent.loop.stale_error generation={} error={!r}", ctx.generation, exc)
                return
            logger.opt(exception=exc).error("agent.loop.error generation={}", ctx.generation)
            self._set_state(LoopState.IDLE)
            self._events.emit_error(exc)
            raise
        else:
            if self._is_current(ctx):
                self._complete(ctx)
        finally:
            ctx.finished = True
            if self._is_current(ctx) and not ctx.loading_cleared:
                self._events.emit_loading(False)
            reset_turn(turn_token)

    def cancel(self) -> None:
        """Abandon the live turn, if any. Safe to call repeatedly."""
        if self._terminated:
            return
        ctx = self._turn
        if ctx is None or not self._is_live(ctx):
            logger.debug("agent.loop.cancel.noop generation={}", self._generation)
            return

        logger.info(
            "agent.loop.cancel generation={} pending_aborts={}",
            ctx.generation,
            len(self._pending_aborts),
        )
        ctx.abort.set()
        self._staged.discard()
        self._generation += 1
        self._set_state(LoopState.CANCELED)
        if not self._pending_aborts:
            self._last_response_id = ""
            self._events.emit_response_id("")
        self._events.emit_loading(False)
        self._events.emit_canceled()

    def terminate(self) -> None:
        """Cancel and refuse every later ``run()``."""
        if self._terminated:
            return
        self.cancel()
        self._terminated = True
        self._hard_abort.set()
        self._set_state(LoopState.TERMINATED)
        logger.info("agent.loop.terminate generation={}", self._generation)

    async def _run_turn(self, ctx: TurnContext, turn_input: list[ResponseItem], last_response_id: str) -> None:
        requests = 0
        while turn_input:
            if not self._is_current(ctx):
                return
            requests += 1
            logger.debug(
                "agent.loop.request generation={} request={} input={}",
                ctx.generation,
                requests,
                len(turn_input),
            )
            result = await self._request_with_retry(ctx, turn_input, last_response_id)
            if result is None or not self._is_current(ctx):
                return
            turn_input = result.next_input
            if result.response_id:
                last_response_id = result.response_id
                self._last_response_id = result.response_id
                if not result.forced:
                    self._events.emit_response_id(result.response_id)

    async def _request_with_retry(
        self,
        ctx: TurnContext,
        turn_input: list[ResponseItem],
        last_response_id: str,
    ) -> _StreamResult | None:
        for attempt in range(1, self._max_retries + 1):
            if not self._is_current(ctx):
                return None
            self._set_state(LoopState.AWAITING_STREAM)
            pending_before = set(self._pending_aborts)
            try:
                stream = await self._create_stream(turn_input, last_response_id)
                return await self._consume_stream(ctx, stream)
            except Exception as exc:
                if not self._is_current(ctx):
                    raise
                self._drop_pending_since(pending_before)
                kind = classify_error(exc)
                if kind is ErrorKind.CONTEXT_LENGTH:
                    logger.warning("agent.loop.context_length generation={} error={}", ctx.generation, exc)
                    self._events.emit_item(system_message(CONTEXT_LENGTH_EXCEEDED))
                    return None
                if not kind.retryable:
                    raise
                if attempt >= self._max_retries:
                    raise RetriesExhaustedError(attempt, exc) from exc
                delay = backoff_delay(attempt, self._rate_limit_retry_wait, error_message(exc))
                logger.warning(
                    "agent.loop.retry attempt={}/{} kind={} delay={:.2f}s error={}",
                    attempt,
                    self._max_retries,
                    kind,
                    delay,
                    exc,
                )
                if not await self._sleep(ctx, delay):
                    return None
        return None

    def _drop_pending_since(self, before: set[str]) -> None:
        # Calls from a failed response never reach the upstream chain.
        for cid in [cid for cid in self._pending_aborts if cid not in before]:
            logger.debug("agent.loop.drop_pending call_id={}", cid)
            del self._pending_aborts[cid]

    async def _create_stream(self, turn_input: list[ResponseItem], last_response_id: str) -> Any:
        params: dict[str, Any] = {
            "model": self._model,
            "instructions": self._instructions,
            "input": turn_input,
            "stream": True,
            "parallel_tool_calls": False,
            "tools": tools_for_model(self._model),
            "tool_choice": "auto",
        }
        if reasoning := reasoning_for_model(self._model, self._reasoning_effort):
            params["reasoning"] = reasoning
        if self._disable_response_storage:
            params["store"] = False
        else:
            params["store"] = True
            if last_response_id:
                params["previous_response_id"] = last_response_id
        return await self._client.responses.create(**params)

    async def _consume_stream(self, ctx: TurnContext, stream: Any) -> _StreamResult | None:
        self._set_state(LoopState.STREAMING)
        state = _StreamState()
        iterator = aiter(stream)
        self._arm_watchdog(ctx, state)
        try:
            while True:
                event = await self._next_event(ctx, state, iterator)
                if event is None or not self._is_current(ctx):
                    break
                self._arm_watchdog(ctx, state)

                event_type = event.get("type")
                if event_type in ("response.created", "response.in_progress"):
                    state.response_id = (event.get("response") or {}).get("id") or state.response_id
                elif event_type == "response.output_item.done":
                    state.received_items = True
                    self._handle_output_item(ctx, as_item(event["item"]))
                elif event_type == "response.completed":
                    state.completed = True
                    self._cancel_watchdog(state)
                    response = event.get("response") or {}
                    state.response_id = response.get("id") or state.response_id
                    next_input = await self._handle_response_completed(ctx, response)
                    if not self._is_current(ctx):
                        return None
                    await self._staged.flush()
                    return _StreamResult(next_input=next_input, response_id=state.response_id)
                elif event_type in ("response.failed", "error"):
                    raise _stream_error(event)
        finally:
            self._cancel_watchdog(state)
            await _close_stream(stream)

        if not self._is_current(ctx):
            return None
        await self._staged.flush()
        if state.stalled.is_set():
            self._force_completion(ctx, state)
            return _StreamResult(next_input=[], response_id=state.response_id, forced=True)
        return _StreamResult(next_input=[], response_id=state.response_id)

    async def _next_event(
        self,
        ctx: TurnContext,
        state: _StreamState,
        iterator: AsyncIterator[Any],
    ) -> dict[str, Any] | None:
        """Next stream event, or ``None`` on end, abort or stall."""
        reader = asyncio.ensure_future(_read_next(iterator))
        aborted = asyncio.ensure_future(ctx.abort.wait())
        stalled = asyncio.ensure_future(state.stalled.wait())
        try:
            await asyncio.wait({reader, aborted, stalled}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            aborted.cancel()
            stalled.cancel()

        if not reader.done():
            reader.cancel()
            await asyncio.wait({reader})
            return None
        event = reader.result()
        if event is _STREAM_END:
            return None
        return as_item(event)

    def _arm_watchdog(self, ctx: TurnContext, state: _StreamState) -> None:
        self._cancel_watchdog(state)
        loop = asyncio.get_running_loop()
        state.watchdog = loop.call_later(self._stream_idle_timeout, self._on_watchdog, ctx, state)

    @staticmethod
    def _cancel_watchdog(state: _StreamState) -> None:
        if state.watchdog is not None:
            state.watchdog.cancel()
            state.watchdog = None

    def _on_watchdog(self, ctx: TurnContext, state: _StreamState) -> None:
        state.watchdog = None
        if state.completed or not state.received_items or not self._is_current(ctx):
            return
        logger.warning(
            "agent.loop.watchdog generation={} idle={}s response_id={}",
            ctx.generation,
            self._stream_idle_timeout,
            state.response_id,
        )
        state.stalled.set()

    def _force_completion(self, ctx: TurnContext, state: _StreamState) -> None:
        self._complete(ctx)
        self._events.emit_loading(False)
        ctx.loading_cleared = True
        if state.response_id:
            self._last_response_id = state.response_id
            self._events.emit_response_id(state.response_id)

    def _handle_output_item(self, ctx: TurnContext, item: ResponseItem) -> None:
        if item.get("type") == "reasoning":
            item["duration_ms"] = int((time.monotonic() - ctx.started) * 1000)
        if is_tool_call(item):
            if (cid := call_id(item)) is not None:
                self._pending_aborts[cid] = item
            return
        self._stage(ctx, item)

    async def _handle_response_completed(self, ctx: TurnContext, response: dict[str, Any]) -> list[ResponseItem]:
        output = [as_item(entry) for entry in response.get("output") or []]
        for item in output:
            self._stage(ctx, item)

        status = response.get("status")
        if status not in ("completed", "requires_action"):
            logger.warning("agent.loop.response_status generation={} status={}", ctx.generation, status)
            return []

        self._set_state(LoopState.EXECUTING_TOOLS)
        answered, results = await self._execute_tool_calls(ctx, output)

        if not self._disable_response_storage:
            return results
        self._transcript.extend(strip_internal_fields(item) for item in output if is_transcript_item(item))
        if not results:
            return []
        return [*self._transcript, *(strip_internal_fields(item) for item in answered), *results]

    async def _execute_tool_calls(
        self,
        ctx: TurnContext,
        output: list[ResponseItem],
    ) -> tuple[list[ResponseItem], list[ResponseItem]]:
        answered: list[ResponseItem] = []
        results: list[ResponseItem] = []
        for item in output:
            if not is_tool_call(item):
                continue
            cid = call_id(item)
            key = item.get("id") or cid
            if key is None:
                continue
            if key in self._processed:
                logger.debug("agent.loop.tool_call.replayed call_id={}", cid)
                self._pending_aborts.pop(cid or "", None)
                continue
            if not self._is_current(ctx):
                break

            self._processed.add(key)
            outputs = await self._handle_function_call(ctx, item)
            if not self._is_current(ctx):
                break
            self._pending_aborts.pop(cid or "", None)
            answered.append(item)
            results.extend(outputs)
        return answered, results

    async def _handle_function_call(self, ctx: TurnContext, item: ResponseItem) -> list[ResponseItem]:
        item_type = item.get("type", "function_call")
        cid = call_id(item) or ""
        if item_type == "local_shell_call":
            name = "local_shell"
            args: dict[str, Any] | None = local_shell_arguments(item)
            raw = ""
        else:
            name, raw = function_call_parts(item)
            args = parse_tool_call_arguments(raw)
        logger.info("agent.loop.tool_call name={} call_id={} args={}", name, cid, raw or args)
        if args is None:
            return [tool_output(item_type, cid, f"invalid arguments: {raw}")]

        self._events.emit_tool_call_start(name, args)
        result = await self._executor.execute(
            name,
            args,
            cancel=ctx.abort,
            confirm=functools.partial(self._confirm, ctx),
        )
        if self._is_current(ctx):
            self._events.emit_tool_call_complete(name, result)
        return [tool_output(item_type, cid, result.to_output()), *result.additional_items]

    async def _confirm(
        self,
        ctx: TurnContext,
        command: list[str],
        patch_info: PatchInfo | None,
    ) -> CommandConfirmation:
        if not self._events.has_subscribers(AgentEventKind.CONFIRM_COMMAND):
            return CommandConfirmation.deny(NO_APPROVER_MESSAGE)

        request = ApprovalRequest(command, patch_info)
        self._events.emit_confirm_command(request.command, patch_info, request.resolve)
        decision = asyncio.ensure_future(request.wait(self._approval_timeout))
        aborted = asyncio.ensure_future(ctx.abort.wait())
        try:
            await asyncio.wait({decision, aborted}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            aborted.cancel()
        if decision.done():
            return decision.result()
        decision.cancel()
        request.resolve(CommandConfirmation.deny(ABORTED_OUTPUT))
        return CommandConfirmation.deny(ABORTED_OUTPUT)

    async def _sleep(self, ctx: TurnContext, delay: float) -> bool:
        """Sleep for ``delay`` seconds; ``False`` if the turn was abandoned meanwhile."""
        try:
            await asyncio.wait_for(ctx.abort.wait(), timeout=delay)
        except TimeoutError:
            return self._is_current(ctx)
        return False

    def _resolve_pending_aborts(self) -> list[ResponseItem]:
        """Call items paired with synthetic aborted results, in call order."""
        resolved: list[ResponseItem] = []
        for cid, item in self._pending_aborts.items():
            logger.info("agent.loop.abort_pending call_id={}", cid)
            resolved.append(item)
            resolved.append(aborted_output(cid, item.get("type", "function_call")))
        self._pending_aborts.clear()
        return resolved

    def _stage(self, ctx: TurnContext, item: ResponseItem) -> None:
        self._staged.stage(item, guard=functools.partial(self._is_current, ctx))

    def _complete(self, ctx: TurnContext) -> None:
        if ctx.completed:
            return
        ctx.completed = True
        self._set_state(LoopState.COMPLETED)
        self._events.emit_complete()

    def _is_current(self, ctx: TurnContext) -> bool:
        return ctx.generation == self._generation and not ctx.abort.is_set() and not self._hard_abort.is_set()

    def _is_live(self, ctx: TurnContext) -> bool:
        return not ctx.finished and self._is_current(ctx)

    def _set_state(self, state: LoopState) -> None:
        if self._state is not state:
            logger.debug("agent.loop.state {} -> {}", self._state, state)
            self._state = state


async def _read_next(iterator: AsyncIterator[Any]) -> Any:
    try:
        return await anext(iterator)
    except StopAsyncIteration:
        return _STREAM_END


async def _close_stream(stream: Any) -> None:
    close = getattr(stream, "aclose", None) or getattr(stream, "close", None)
    if close is None:
        return
    with suppress(Exception):
        result = close()
        if asyncio.iscoroutine(result) or isinstance(result, asyncio.Future):
            await result


def _stream_error(event: dict[str, Any]) -> UpstreamStreamError:
    if event.get("type") == "response.failed":
        error = (event.get("response") or {}).get("error") or {}
    else:
        error = event
    message = error.get("message") or f"response stream failed: {event.get('type')}"
    return UpstreamStreamError(
        message,
        code=error.get("code"),
        type=error.get("type") if error is not event else None,
        param=error.get("param"),
    )

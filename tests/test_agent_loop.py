from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import httpx
import openai
import pytest

from logscout.agent import AgentLoop, LoopState, user_message
from logscout.agent.items import aborted_output
from logscout.agent.tools import LOCAL_SHELL_TOOL, SHELL_FUNCTION_TOOL
from logscout.errors import AgentTerminatedError, RetriesExhaustedError, UpstreamStreamError
from logscout.events import AgentEventBridge
from logscout.responses import CONTEXT_LENGTH_EXCEEDED
from logscout.tools import ApprovalPolicy, CommandConfirmation, ExecMetadata, ToolExecutor, ToolResult
from logscout.tools.approval import USER_DENIED_MESSAGE

_REQUEST = httpx.Request("POST", "https://api.openai.com/v1/responses")


class FakeStream:
    def __init__(self, events: list[dict[str, Any]], *, hang: bool = False, fail: Exception | None = None) -> None:
        self.events = events
        self.hang = hang
        self.fail = fail
        self.closed = False

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for event in self.events:
            await asyncio.sleep(0)
            yield event
        if self.fail is not None:
            raise self.fail
        if self.hang:
            await asyncio.Event().wait()

    async def close(self) -> None:
        self.closed = True


class FakeResponses:
    def __init__(self, script: list[FakeStream | Exception]) -> None:
        self.script = list(script)
        self.calls: list[dict[str, Any]] = []

    async def create(self, **kwargs: Any) -> FakeStream:
        self.calls.append(kwargs)
        step = self.script.pop(0)
        if isinstance(step, Exception):
            raise step
        return step


@dataclass
class FakeClient:
    responses: FakeResponses


class FakeExecutor:
    def __init__(self, *, block: bool = False) -> None:
        self.block = block
        self.calls: list[tuple[str, dict[str, Any]]] = []

    async def execute(self, name: str, args: dict[str, Any], *, cancel: asyncio.Event, confirm=None) -> ToolResult:
        self.calls.append((name, args))
        if self.block:
            await cancel.wait()
            return ToolResult(output_text="aborted", metadata=ExecMetadata(exit_code=-9, duration_seconds=0.1))
        return ToolResult(output_text="app.log", metadata=ExecMetadata(exit_code=0, duration_seconds=0.01))


@dataclass
class Recorder:
    events: list[tuple[str, Any]] = field(default_factory=list)

    def attach(self, bridge: AgentEventBridge) -> None:
        bridge.on_item(lambda item: self.events.append(("item", item)))
        bridge.on_loading(lambda loading: self.events.append(("loading", loading)))
        bridge.on_response_id(lambda response_id: self.events.append(("response_id", response_id)))
        bridge.on_complete(lambda: self.events.append(("complete", None)))
        bridge.on_canceled(lambda: self.events.append(("canceled", None)))
        bridge.on_error(lambda error: self.events.append(("error", error)))
        bridge.on_tool_call_start(lambda name, args: self.events.append(("tool_call_start", (name, args))))
        bridge.on_tool_call_complete(lambda name, result: self.events.append(("tool_call_complete", (name, result))))

    def of(self, kind: str) -> list[Any]:
        return [payload for event_kind, payload in self.events if event_kind == kind]

    def kinds(self) -> list[str]:
        return [event_kind for event_kind, _ in self.events]


def created(response_id: str) -> dict[str, Any]:
    return {"type": "response.created", "response": {"id": response_id}}


def item_done(item: dict[str, Any]) -> dict[str, Any]:
    return {"type": "response.output_item.done", "item": item}


def completed(response_id: str, output: list[dict[str, Any]], status: str = "completed") -> dict[str, Any]:
    return {"type": "response.completed", "response": {"id": response_id, "status": status, "output": output}}


def assistant(text: str, item_id: str) -> dict[str, Any]:
    return {
        "id": item_id,
        "type": "message",
        "role": "assistant",
        "status": "completed",
        "content": [{"type": "output_text", "text": text}],
    }


def shell_call(call_id: str, command: list[str], item_id: str, *, arguments: str | None = None) -> dict[str, Any]:
    return {
        "id": item_id,
        "type": "function_call",
        "call_id": call_id,
        "name": "shell",
        "status": "completed",
        "arguments": arguments if arguments is not None else json.dumps({"command": command}),
    }


def answer_turn(response_id: str, text: str, item_id: str) -> FakeStream:
    message = assistant(text, item_id)
    return FakeStream([created(response_id), item_done(message), completed(response_id, [message])])


def tool_turn(response_id: str, call: dict[str, Any]) -> FakeStream:
    return FakeStream([created(response_id), item_done(call), completed(response_id, [call])])


def build_loop(
    script: list[FakeStream | Exception],
    *,
    executor: Any = None,
    model: str = "gpt-4.1",
    **kwargs: Any,
) -> tuple[AgentLoop, FakeResponses, Recorder]:
    responses = FakeResponses(script)
    kwargs.setdefault("stage_delay", 0)
    kwargs.setdefault("rate_limit_retry_wait", 0.001)
    loop = AgentLoop(
        client=FakeClient(responses),
        model=model,
        events=AgentEventBridge(),
        executor=executor if executor is not None else FakeExecutor(),
        **kwargs,
    )
    recorder = Recorder()
    recorder.attach(loop.events)
    return loop, responses, recorder


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.005)


@pytest.mark.asyncio
async def test_plain_turn_publishes_answer_once_and_completes() -> None:
    loop, responses, recorder = build_loop([answer_turn("resp_1", "All quiet.", "msg_1")])

    await loop.run([user_message("any errors?")])

    assert recorder.kinds() == ["loading", "item", "response_id", "complete", "loading"]
    assert recorder.of("loading") == [True, False]
    assert [item["id"] for item in recorder.of("item")] == ["msg_1"]
    assert recorder.of("response_id") == ["resp_1"]
    assert loop.state is LoopState.COMPLETED
    assert loop.last_response_id == "resp_1"

    request = responses.calls[0]
    assert request["stream"] is True
    assert request["parallel_tool_calls"] is False
    assert request["tool_choice"] == "auto"
    assert request["tools"] == [SHELL_FUNCTION_TOOL]
    assert request["store"] is True
    assert "previous_response_id" not in request
    assert "reasoning" not in request
    assert request["input"] == [user_message("any errors?")]
    assert request["instructions"].startswith("You are a specialized log analysis assistant.")


@pytest.mark.asyncio
async def test_tool_call_results_continue_the_turn() -> None:
    executor = FakeExecutor()
    loop, responses, recorder = build_loop(
        [tool_turn("resp_1", shell_call("call_1", ["ls"], "fc_1")), answer_turn("resp_2", "Found app.log", "msg_2")],
        executor=executor,
    )

    await loop.run([user_message("list logs")], "resp_0")

    assert executor.calls == [("shell", {"command": ["ls"]})]
    assert recorder.of("tool_call_start") == [("shell", {"command": ["ls"]})]
    assert len(recorder.of("tool_call_complete")) == 1
    assert responses.calls[0]["previous_response_id"] == "resp_0"
    assert responses.calls[1]["previous_response_id"] == "resp_1"
    assert responses.calls[1]["input"] == [
        {
            "type": "function_call_output",
            "call_id": "call_1",
            "output": json.dumps({"output": "app.log", "metadata": {"exit_code": 0, "duration_seconds": 0.01}}),
        }
    ]
    assert recorder.of("response_id") == ["resp_1", "resp_2"]
    assert recorder.of("complete") == [None]
    assert loop.pending_aborts == ()


@pytest.mark.asyncio
async def test_several_tool_calls_run_in_issue_order() -> None:
    first = shell_call("call_a", ["ls"], "fc_a")
    second = shell_call("call_b", ["pwd"], "fc_b")
    executor = FakeExecutor()
    loop, responses, recorder = build_loop(
        [
            FakeStream([created("resp_1"), item_done(first), item_done(second), completed("resp_1", [first, second])]),
            answer_turn("resp_2", "done", "msg_2"),
        ],
        executor=executor,
    )

    await loop.run([user_message("where am I")])

    assert executor.calls == [("shell", {"command": ["ls"]}), ("shell", {"command": ["pwd"]})]
    assert [args["command"] for _, args in recorder.of("tool_call_start")] == [["ls"], ["pwd"]]
    continuation = responses.calls[1]["input"]
    assert [item["type"] for item in continuation] == ["function_call_output", "function_call_output"]
    assert [item["call_id"] for item in continuation] == ["call_a", "call_b"]
    assert loop.pending_aborts == ()


@pytest.mark.asyncio
async def test_replayed_tool_call_is_not_executed_twice() -> None:
    call = shell_call("call_1", ["ls"], "fc_1")
    executor = FakeExecutor()
    loop, responses, _ = build_loop(
        [tool_turn("resp_1", call), answer_turn("resp_2", "done", "msg_2"), tool_turn("resp_3", dict(call))],
        executor=executor,
    )

    await loop.run([user_message("list logs")])
    await loop.run([user_message("again")], loop.last_response_id)

    assert len(executor.calls) == 1
    assert len(responses.calls) == 3
    assert loop.pending_aborts == ()


@pytest.mark.asyncio
async def test_invalid_arguments_are_reported_to_the_model() -> None:
    executor = FakeExecutor()
    loop, responses, _ = build_loop(
        [
            tool_turn("resp_1", shell_call("call_1", [], "fc_1", arguments="not json")),
            answer_turn("resp_2", "sorry", "msg_2"),
        ],
        executor=executor,
    )

    await loop.run([user_message("hi")])

    assert executor.calls == []
    assert responses.calls[1]["input"] == [
        {"type": "function_call_output", "call_id": "call_1", "output": "invalid arguments: not json"}
    ]


@pytest.mark.asyncio
async def test_local_shell_calls_for_codex_models() -> None:
    call = {
        "id": "lsc_1",
        "type": "local_shell_call",
        "call_id": "call_1",
        "status": "completed",
        "action": {"type": "exec", "command": ["ls", "-la"], "working_directory": "/var/log"},
    }
    executor = FakeExecutor()
    loop, responses, _ = build_loop(
        [tool_turn("resp_1", call), answer_turn("resp_2", "ok", "msg_2")],
        executor=executor,
        model="codex-mini-latest",
    )

    await loop.run([user_message("list")])

    assert responses.calls[0]["tools"] == [LOCAL_SHELL_TOOL]
    assert executor.calls == [("local_shell", {"command": ["ls", "-la"], "workdir": "/var/log"})]
    assert responses.calls[1]["input"][0]["type"] == "local_shell_call_output"


@pytest.mark.asyncio
async def test_reasoning_models_request_reasoning() -> None:
    loop, responses, _ = build_loop([answer_turn("resp_1", "ok", "msg_1")], model="o4-mini")

    await loop.run([user_message("hi")])

    assert responses.calls[0]["reasoning"] == {"effort": "high", "summary": "auto"}


@pytest.mark.asyncio
async def test_cancel_mid_stream_records_pending_tool_call() -> None:
    call = shell_call("call_1", ["ls"], "fc_1")
    loop, responses, recorder = build_loop(
        [FakeStream([created("resp_1"), item_done(call)], hang=True), answer_turn("resp_2", "ok", "msg_2")]
    )

    task = asyncio.create_task(loop.run([user_message("list logs")]))
    await wait_until(lambda: loop.pending_aborts == ("call_1",))
    loop.cancel()
    loop.cancel()
    await asyncio.wait_for(task, timeout=2)

    assert recorder.of("canceled") == [None]
    assert recorder.of("complete") == []
    assert recorder.of("loading") == [True, False]
    assert "" not in recorder.of("response_id")
    assert loop.generation == 2
    assert loop.state is LoopState.CANCELED

    await loop.run([user_message("what now?")], "resp_1")

    assert responses.calls[1]["input"] == [aborted_output("call_1"), user_message("what now?")]
    assert loop.pending_aborts == ()


@pytest.mark.asyncio
async def test_cancel_discards_staged_items_and_clears_response_id() -> None:
    loop, _, recorder = build_loop(
        [FakeStream([created("resp_1"), item_done(assistant("partial", "msg_1"))], hang=True)],
        stage_delay=0.2,
    )

    task = asyncio.create_task(loop.run([user_message("hi")]))
    await wait_until(lambda: loop.state is LoopState.STREAMING)
    await asyncio.sleep(0.02)
    loop.cancel()
    await asyncio.wait_for(task, timeout=2)
    await asyncio.sleep(0.3)

    assert recorder.of("item") == []
    assert recorder.of("response_id") == [""]
    assert loop.last_response_id == ""


@pytest.mark.asyncio
async def test_cancel_kills_running_tool_and_keeps_call_pending() -> None:
    executor = FakeExecutor(block=True)
    loop, responses, recorder = build_loop(
        [tool_turn("resp_1", shell_call("call_1", ["tail", "-f", "x"], "fc_1"))],
        executor=executor,
    )

    task = asyncio.create_task(loop.run([user_message("follow the log")]))
    await wait_until(lambda: bool(executor.calls))
    loop.cancel()
    await asyncio.wait_for(task, timeout=2)

    assert len(responses.calls) == 1
    assert loop.pending_aborts == ("call_1",)
    assert recorder.of("tool_call_complete") == []
    assert recorder.of("canceled") == [None]


@pytest.mark.asyncio
async def test_cancel_without_live_turn_is_a_no_op() -> None:
    loop, _, recorder = build_loop([answer_turn("resp_1", "ok", "msg_1")])

    loop.cancel()
    await loop.run([user_message("hi")])
    loop.cancel()

    assert recorder.of("canceled") == []
    assert loop.generation == 1


@pytest.mark.asyncio
async def test_watchdog_forces_completion_on_stalled_stream() -> None:
    loop, _, recorder = build_loop(
        [FakeStream([created("resp_1"), item_done(assistant("partial answer", "msg_1"))], hang=True)],
        stream_idle_timeout=0.05,
    )

    await asyncio.wait_for(loop.run([user_message("hi")]), timeout=2)

    assert [item["id"] for item in recorder.of("item")] == ["msg_1"]
    assert recorder.of("complete") == [None]
    assert recorder.of("response_id") == ["resp_1"]
    assert recorder.of("loading") == [True, False]
    assert loop.last_response_id == "resp_1"


@pytest.mark.asyncio
async def test_transient_errors_are_retried() -> None:
    loop, responses, recorder = build_loop(
        [
            openai.APIConnectionError(request=_REQUEST),
            UpstreamStreamError("Rate limit reached. Please try again in 0.01s.", code="rate_limit_exceeded"),
            answer_turn("resp_1", "ok", "msg_1"),
        ]
    )

    await loop.run([user_message("hi")])

    assert len(responses.calls) == 3
    assert recorder.of("error") == []
    assert recorder.of("complete") == [None]


@pytest.mark.asyncio
async def test_mid_stream_failure_replays_without_duplicate_items() -> None:
    message = assistant("partial", "msg_1")
    loop, responses, recorder = build_loop(
        [
            FakeStream([created("resp_1"), item_done(message)], fail=UpstreamStreamError("boom", code="server_error")),
            answer_turn("resp_2", "partial", "msg_1"),
        ]
    )

    await loop.run([user_message("hi")])

    assert len(responses.calls) == 2
    assert [item["id"] for item in recorder.of("item")] == ["msg_1"]
    assert recorder.of("complete") == [None]


@pytest.mark.asyncio
async def test_tool_call_from_failed_stream_is_not_left_pending() -> None:
    stale = shell_call("call_stale", ["ls"], "fc_stale")
    executor = FakeExecutor()
    loop, responses, recorder = build_loop(
        [
            FakeStream([created("resp_1"), item_done(stale)], fail=UpstreamStreamError("boom", code="server_error")),
            answer_turn("resp_2", "ok", "msg_1"),
            answer_turn("resp_3", "ok again", "msg_3"),
        ],
        executor=executor,
    )

    await loop.run([user_message("hi")])

    assert loop.pending_aborts == ()
    assert executor.calls == []

    await loop.run([user_message("next")], loop.last_response_id)

    assert responses.calls[2]["previous_response_id"] == "resp_2"
    assert responses.calls[2]["input"] == [user_message("next")]
    assert recorder.of("complete") == [None, None]


@pytest.mark.asyncio
async def test_stream_failure_event_is_classified() -> None:
    failed = {"type": "response.failed", "response": {"id": "resp_1", "error": {"code": "server_error", "message": "x"}}}
    loop, responses, _ = build_loop([FakeStream([created("resp_1"), failed]), answer_turn("resp_2", "ok", "msg_1")])

    await loop.run([user_message("hi")])

    assert len(responses.calls) == 2


@pytest.mark.asyncio
async def test_retry_ceiling_raises_and_reports_error() -> None:
    loop, responses, recorder = build_loop(
        [openai.APIConnectionError(request=_REQUEST), openai.APIConnectionError(request=_REQUEST)],
        max_retries=2,
    )

    with pytest.raises(RetriesExhaustedError) as excinfo:
        await loop.run([user_message("hi")])

    assert excinfo.value.attempts == 2
    assert len(responses.calls) == 2
    assert len(recorder.of("error")) == 1
    assert recorder.of("complete") == []
    assert recorder.of("loading") == [True, False]


@pytest.mark.asyncio
async def test_context_length_publishes_guidance_without_raising() -> None:
    loop, responses, recorder = build_loop([UpstreamStreamError("too long", code="context_length_exceeded")])

    await loop.run([user_message("hi")])

    assert len(responses.calls) == 1
    [notice] = recorder.of("item")
    assert notice["role"] == "system"
    assert notice["content"][0]["text"] == CONTEXT_LENGTH_EXCEEDED
    assert recorder.of("error") == []
    assert recorder.of("loading")[-1] is False


@pytest.mark.asyncio
async def test_fatal_error_is_reported_and_raised() -> None:
    error = openai.AuthenticationError("bad key", response=httpx.Response(401, request=_REQUEST), body=None)
    loop, responses, recorder = build_loop([error])

    with pytest.raises(openai.AuthenticationError):
        await loop.run([user_message("hi")])

    assert len(responses.calls) == 1
    assert recorder.of("error") == [error]
    assert recorder.of("loading") == [True, False]


@pytest.mark.asyncio
async def test_terminate_stops_live_turn_and_refuses_new_ones() -> None:
    loop, _, recorder = build_loop([FakeStream([created("resp_1")], hang=True)])

    task = asyncio.create_task(loop.run([user_message("hi")]))
    await wait_until(lambda: loop.state is LoopState.STREAMING)
    loop.terminate()
    await asyncio.wait_for(task, timeout=2)

    assert loop.state is LoopState.TERMINATED
    assert recorder.of("canceled") == [None]
    with pytest.raises(AgentTerminatedError):
        await loop.run([user_message("again")])


@pytest.mark.asyncio
async def test_new_run_supersedes_live_turn() -> None:
    loop, responses, recorder = build_loop(
        [FakeStream([created("resp_1")], hang=True), answer_turn("resp_2", "ok", "msg_1")]
    )

    first = asyncio.create_task(loop.run([user_message("one")]))
    await wait_until(lambda: loop.state is LoopState.STREAMING)
    await loop.run([user_message("two")])
    await asyncio.wait_for(first, timeout=2)

    assert len(responses.calls) == 2
    assert recorder.of("complete") == [None]
    assert recorder.of("response_id") == ["resp_2"]


@pytest.mark.asyncio
async def test_stateless_mode_replays_local_transcript() -> None:
    call = shell_call("call_1", ["ls"], "fc_1")
    first_answer = assistant("Let me look.", "msg_1")
    loop, responses, _ = build_loop(
        [
            FakeStream([created("resp_1"), completed("resp_1", [first_answer, call])]),
            answer_turn("resp_2", "Found app.log", "msg_2"),
            answer_turn("resp_3", "Nothing else", "msg_3"),
        ],
        disable_response_storage=True,
    )

    await loop.run([user_message("list logs")], "ignored")

    first, second = responses.calls[0], responses.calls[1]
    assert first["store"] is False
    assert "previous_response_id" not in first
    assert first["input"] == [user_message("list logs")]
    assert [item["type"] for item in second["input"]] == ["message", "message", "function_call", "function_call_output"]
    assert all("id" not in item and "status" not in item for item in second["input"])
    assert [item["role"] for item in loop.transcript] == ["user", "assistant", "assistant"]

    await loop.run([user_message("anything else?")])

    third = responses.calls[2]
    assert third["input"][:3] == loop.transcript[:3]
    assert third["input"][-1] == user_message("anything else?")


@pytest.mark.asyncio
async def test_command_confirmation_goes_through_bridge(tmp_path: Path) -> None:
    executor = ToolExecutor(approval_policy=ApprovalPolicy.SUGGEST, workspace=tmp_path)
    loop, responses, _ = build_loop(
        [tool_turn("resp_1", shell_call("call_1", ["ls"], "fc_1")), answer_turn("resp_2", "ok", "msg_1")],
        executor=executor,
    )
    asked: list[list[str]] = []

    def deny(command: list[str], patch_info: object, resolve) -> None:
        asked.append(command)
        resolve(CommandConfirmation.deny())

    loop.events.on_confirm_command(deny)
    await loop.run([user_message("list")])

    assert asked == [["ls"]]
    output = json.loads(responses.calls[1]["input"][0]["output"])
    assert output["output"] == USER_DENIED_MESSAGE

"""Shell tool execution with validation, approval, and cancellation."""

from __future__ import annotations

import asyncio
import json
import shlex
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from loguru import logger
from pydantic import BaseModel, Field, ValidationError, field_validator

from logscout.responses import command_blocked
from logscout.tools.approval import NO_APPROVER_MESSAGE, ApprovalPolicy, CommandConfirmation, ConfirmCallback
from logscout.tools.validator import Denied, validate_command

SHELL_TOOL_NAMES = frozenset({"shell", "container.exec", "local_shell"})
SHELL_WRAPPERS = frozenset({("bash", "-lc"), ("bash", "-c"), ("sh", "-c"), ("sh", "-lc"), ("zsh", "-lc")})
NO_FUNCTION_FOUND = "no function found"
ABORTED_OUTPUT = "aborted"
EMPTY_OUTPUT = "(no output)"
_SHELL_SYNTAX_CHARS = frozenset("|&;<>*?$")


class ShellInput(BaseModel):
    """Arguments of the shell tool as declared to the model."""

    command: list[str] = Field(..., min_length=1, description="Command and arguments")
    workdir: str | None = Field(default=None, description="Working directory")
    timeout: float | None = Field(default=None, gt=0, description="Timeout in milliseconds")

    @field_validator("command", mode="before")
    @classmethod
    def _wrap_string_command(cls, value: object) -> object:
        if isinstance(value, str):
            return [value]
        return value


@dataclass(frozen=True)
class ExecMetadata:
    exit_code: int
    duration_seconds: float

    def to_dict(self) -> dict[str, Any]:
        return {"exit_code": self.exit_code, "duration_seconds": self.duration_seconds}


@dataclass(frozen=True)
class ToolResult:
    """Output of one tool call as fed back to the model."""

    output_text: str
    metadata: ExecMetadata | None = None
    additional_items: list[dict[str, Any]] = field(default_factory=list)

    def to_output(self) -> str:
        if self.metadata is None:
            return self.output_text
        return json.dumps({"output": self.output_text, "metadata": self.metadata.to_dict()})


def command_script(command: list[str]) -> str:
    """Return the shell text a command list amounts to, for validation."""
    if len(command) == 3 and (command[0], command[1]) in SHELL_WRAPPERS:
        return command[2]
    if len(command) == 1:
        return command[0]
    return shlex.join(command)


def command_argv(command: list[str]) -> list[str]:
    """Return the argv to spawn; single strings with shell syntax go through bash."""
    if len(command) == 1 and (" " in command[0] or _SHELL_SYNTAX_CHARS & set(command[0])):
        return ["bash", "-lc", command[0]]
    return list(command)


def blocked_result(reason: str) -> ToolResult:
    return ToolResult(
        output_text=command_blocked(reason),
        metadata=ExecMetadata(exit_code=1, duration_seconds=0),
    )


class ToolExecutor:
    """Runs read-only shell tool calls on behalf of the model."""

    def __init__(
        self,
        *,
        approval_policy: ApprovalPolicy = ApprovalPolicy.SUGGEST,
        workspace: Path | None = None,
        default_timeout_seconds: float = 30.0,
    ) -> None:
        self.approval_policy = approval_policy
        self.workspace = workspace
        self.default_timeout_seconds = default_timeout_seconds

    async def execute(
        self,
        name: str,
        args: dict[str, Any],
        *,
        cancel: asyncio.Event,
        confirm: ConfirmCallback | None = None,
    ) -> ToolResult:
        if name not in SHELL_TOOL_NAMES:
            logger.warning("tool.execute.unknown name={}", name)
            return ToolResult(output_text=NO_FUNCTION_FOUND)

        try:
            params = ShellInput.model_validate(args)
        except ValidationError as exc:
            return ToolResult(
                output_text=f"invalid arguments: {exc.errors(include_url=False)}",
                metadata=ExecMetadata(exit_code=1, duration_seconds=0),
            )

        script = command_script(params.command)
        decision = validate_command(script)
        if isinstance(decision, Denied):
            logger.info("tool.execute.blocked command={} reason={}", script, decision.reason)
            return blocked_result(decision.reason)

        if self.approval_policy.requires_confirmation:
            if confirm is None:
                confirmation = CommandConfirmation.deny(NO_APPROVER_MESSAGE)
            else:
                confirmation = await confirm(params.command, None)
            if not confirmation.approved:
                logger.info("tool.execute.denied command={}", script)
                return ToolResult(
                    output_text=confirmation.custom_deny_message or "Command denied by user",
                    metadata=ExecMetadata(exit_code=1, duration_seconds=0),
                )

        if cancel.is_set():
            return ToolResult(output_text=ABORTED_OUTPUT, metadata=ExecMetadata(exit_code=1, duration_seconds=0))

        timeout_seconds = params.timeout / 1000 if params.timeout is not None else self.default_timeout_seconds
        cwd = params.workdir or (str(self.workspace) if self.workspace is not None else None)
        return await self._spawn(command_argv(params.command), cwd=cwd, timeout_seconds=timeout_seconds, cancel=cancel)

    async def _spawn(
        self,
        argv: list[str],
        *,
        cwd: str | None,
        timeout_seconds: float,
        cancel: asyncio.Event,
    ) -> ToolResult:
        rendered = shlex.join(argv)
        logger.info("tool.exec.start command={} cwd={}", rendered, cwd or ".")
        start = time.monotonic()
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                cwd=cwd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            return _spawn_error(exc, exit_code=127, start=start)
        except PermissionError as exc:
            return _spawn_error(exc, exit_code=126, start=start)
        except OSError as exc:
            return _spawn_error(exc, exit_code=1, start=start)

        communicate = asyncio.ensure_future(process.communicate())
        canceled = asyncio.ensure_future(cancel.wait())
        try:
            done, _ = await asyncio.wait(
                {communicate, canceled}, timeout=timeout_seconds, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            canceled.cancel()

        if communicate not in done:
            reason = ABORTED_OUTPUT if cancel.is_set() else f"command timed out after {timeout_seconds:g}s"
            await _kill(process, communicate)
            duration = time.monotonic() - start
            logger.info("tool.exec.killed command={} reason={}", rendered, reason)
            return ToolResult(
                output_text=reason,
                metadata=ExecMetadata(exit_code=_exit_code(process.returncode), duration_seconds=round(duration, 3)),
            )

        stdout_bytes, stderr_bytes = communicate.result()
        duration = time.monotonic() - start
        stdout = (stdout_bytes or b"").decode("utf-8", errors="replace")
        stderr = (stderr_bytes or b"").decode("utf-8", errors="replace")
        output = stdout + (f"\n\nSTDERR:\n{stderr}" if stderr else "")
        exit_code = _exit_code(process.returncode)
        logger.info("tool.exec.end command={} exit_code={} duration={:.3f}s", rendered, exit_code, duration)
        return ToolResult(
            output_text=output or EMPTY_OUTPUT,
            metadata=ExecMetadata(exit_code=exit_code, duration_seconds=round(duration, 3)),
        )


async def _kill(process: asyncio.subprocess.Process, communicate: asyncio.Future[Any]) -> None:
    if process.returncode is None:
        try:
            process.kill()
        except ProcessLookupError:
            pass
    communicate.cancel()
    await process.wait()


def _exit_code(returncode: int | None) -> int:
    return 1 if returncode is None else returncode


def _spawn_error(exc: OSError, *, exit_code: int, start: float) -> ToolResult:
    logger.warning("tool.exec.spawn_error error={}", exc)
    return ToolResult(
        output_text=f"Error executing command: {exc!s}",
        metadata=ExecMetadata(exit_code=exit_code, duration_seconds=round(time.monotonic() - start, 3)),
    )

"""Terminal front-end for logscout."""

from __future__ import annotations

import asyncio
import shlex
import signal
from contextlib import suppress
from pathlib import Path
from typing import Annotated, Any, Optional

import typer
from loguru import logger
from rich.console import Console
from rich.markdown import Markdown
from rich.prompt import Confirm
from rich.status import Status

from logscout.agent import AgentLoop, user_message
from logscout.agent.items import ResponseItem, message_text
from logscout.config import Settings, get_settings
from logscout.errors import LogscoutError
from logscout.events import Unsubscribe
from logscout.logging_utils import configure_logging
from logscout.tools import ApprovalPolicy, CommandConfirmation, Denied, ToolResult, validate_command
from logscout.tools.approval import PatchInfo, Resolver

EXIT_COMMANDS = frozenset({"quit", "exit", "q", "/quit", "/exit"})

app = typer.Typer(
    name="logscout",
    help="Conversational log analysis assistant.",
    add_completion=False,
    rich_markup_mode="rich",
)

WorkspaceOption = Annotated[Optional[Path], typer.Option("--workspace", "-w", help="Directory holding the logs.")]
ModelOption = Annotated[Optional[str], typer.Option("--model", "-m", help="Model name override.")]
PolicyOption = Annotated[
    Optional[ApprovalPolicy],
    typer.Option("--approval-policy", "-a", help="suggest, auto-edit or full-auto."),
]


class TerminalSession:
    """Renders agent loop events on a rich console and answers approval prompts."""

    def __init__(self, agent: AgentLoop, console: Console) -> None:
        self.agent = agent
        self.console = console
        self._status: Status | None = None
        events = agent.events
        self._unsubscribers: list[Unsubscribe] = [
            events.on_item(self._on_item),
            events.on_loading(self._on_loading),
            events.on_confirm_command(self._on_confirm_command),
            events.on_tool_call_start(self._on_tool_call_start),
            events.on_tool_call_complete(self._on_tool_call_complete),
            events.on_error(self._on_error),
            events.on_canceled(self._on_canceled),
        ]

    def close(self) -> None:
        self._stop_status()
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()

    async def ask(self, text: str) -> None:
        """Run one turn; Ctrl-C cancels the turn instead of the process."""
        loop = asyncio.get_running_loop()
        installed = False
        with suppress(NotImplementedError, RuntimeError):
            loop.add_signal_handler(signal.SIGINT, self.agent.cancel)
            installed = True
        try:
            await self.agent.run([user_message(text)], self.agent.last_response_id)
        finally:
            if installed:
                loop.remove_signal_handler(signal.SIGINT)
            self._stop_status()

    def _on_item(self, item: ResponseItem) -> None:
        item_type = item.get("type")
        if item_type == "message":
            text = message_text(item)
            if not text:
                return
            self._stop_status()
            if item.get("role") == "system":
                self.console.print(text, style="yellow")
            else:
                self.console.print(Markdown(text))
        elif item_type == "reasoning":
            summary = " ".join(part.get("text", "") for part in item.get("summary") or [])
            if summary:
                self._stop_status()
                self.console.print(summary, style="dim italic")

    def _on_loading(self, loading: bool) -> None:
        if loading:
            self._start_status()
        else:
            self._stop_status()

    def _on_confirm_command(self, command: list[str], patch_info: PatchInfo | None, resolve: Resolver) -> Any:
        return self._confirm(command, resolve)

    async def _confirm(self, command: list[str], resolve: Resolver) -> None:
        self._stop_status()
        approved = await asyncio.to_thread(
            Confirm.ask,
            f"Run [bold cyan]{shlex.join(command)}[/]?",
            console=self.console,
            default=False,
        )
        resolve(CommandConfirmation.approve() if approved else CommandConfirmation.deny())

    def _on_tool_call_start(self, name: str, args: dict[str, Any]) -> None:
        command = args.get("command")
        shown = shlex.join(command) if isinstance(command, list) else str(command)
        self._stop_status()
        self.console.print(f"$ {shown}", style="bold cyan", markup=False, highlight=False)

    def _on_tool_call_complete(self, name: str, result: ToolResult) -> None:
        if result.metadata is None:
            self.console.print(result.output_text, style="dim", markup=False)
            return
        self.console.print(
            f"exit {result.metadata.exit_code} in {result.metadata.duration_seconds:.1f}s",
            style="dim",
        )

    def _on_error(self, error: BaseException) -> None:
        self._stop_status()
        self.console.print(f"error: {error}", style="bold red", markup=False)

    def _on_canceled(self) -> None:
        self._stop_status()
        self.console.print("canceled", style="dim")

    def _start_status(self) -> None:
        if self._status is None:
            self._status = self.console.status("thinking...")
            self._status.start()

    def _stop_status(self) -> None:
        if self._status is not None:
            self._status.stop()
            self._status = None


def _resolve_settings(
    workspace: Optional[Path],
    model: Optional[str],
    approval_policy: Optional[ApprovalPolicy],
) -> Settings:
    settings = get_settings(workspace)
    updates: dict[str, Any] = {}
    if model:
        updates["model"] = model
    if approval_policy is not None:
        updates["approval_policy"] = approval_policy
    return settings.model_copy(update=updates) if updates else settings


def _build_agent(settings: Settings) -> AgentLoop:
    try:
        return AgentLoop.from_settings(settings)
    except LogscoutError as exc:
        typer.secho(f"error: {exc}", fg=typer.colors.RED, err=True)
        raise typer.Exit(2) from exc


async def _chat(agent: AgentLoop, console: Console) -> None:
    session = TerminalSession(agent, console)
    try:
        while True:
            try:
                text = await asyncio.to_thread(console.input, "[bold green]> [/]")
            except (EOFError, KeyboardInterrupt):
                break
            text = text.strip()
            if not text:
                continue
            if text.lower() in EXIT_COMMANDS:
                break
            try:
                await session.ask(text)
            except LogscoutError as exc:
                logger.debug("cli.chat.turn_failed error={!r}", exc)
            except Exception:
                logger.exception("cli.chat.turn_failed")
    finally:
        session.close()
        agent.terminate()


async def _ask_once(agent: AgentLoop, console: Console, question: str) -> None:
    session = TerminalSession(agent, console)
    try:
        await session.ask(question)
    finally:
        session.close()
        agent.terminate()


@app.callback(invoke_without_command=True)
def main_callback(ctx: typer.Context) -> None:
    if ctx.invoked_subcommand is None:
        chat()


@app.command()
def chat(
    workspace: WorkspaceOption = None,
    model: ModelOption = None,
    approval_policy: PolicyOption = None,
) -> None:
    """Start an interactive log analysis session."""
    settings = _resolve_settings(workspace, model, approval_policy)
    configure_logging(profile="chat", level=settings.log_level)
    agent = _build_agent(settings)
    console = Console()
    console.print(
        f"logscout [bold]{agent.model}[/] in {settings.resolve_workspace()} "
        f"(approval: {settings.approval_policy}). Type 'exit' to quit, Ctrl-C cancels a turn."
    )
    asyncio.run(_chat(agent, console))


@app.command()
def ask(
    question: Annotated[str, typer.Argument(help="Question about the logs.")],
    workspace: WorkspaceOption = None,
    model: ModelOption = None,
    approval_policy: PolicyOption = None,
) -> None:
    """Ask a single question and print the answer."""
    settings = _resolve_settings(workspace, model, approval_policy)
    configure_logging(profile="chat", level=settings.log_level)
    agent = _build_agent(settings)
    try:
        asyncio.run(_ask_once(agent, Console(), question))
    except LogscoutError as exc:
        raise typer.Exit(1) from exc


@app.command()
def check(command: Annotated[str, typer.Argument(help="Shell command line to validate.")]) -> None:
    """Report whether a shell command passes the read-only validator."""
    decision = validate_command(command)
    if isinstance(decision, Denied):
        typer.secho(f"denied: {decision.reason}", fg=typer.colors.RED)
        raise typer.Exit(1)
    typer.secho("allowed", fg=typer.colors.GREEN)


if __name__ == "__main__":
    app()

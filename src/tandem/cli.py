"""Reference command line interface."""

from __future__ import annotations

import asyncio
import contextlib
import signal
from pathlib import Path

import typer
from rich.console import Console
from rich.markup import escape

from tandem.app import build_agent_for_workspace
from tandem.core.loop import Agent, LoopState
from tandem.errors import TandemError
from tandem.logging_utils import configure_logging
from tandem.tokens import format_token_count
from tandem.types import AgentEvent, ContentEvent, DoneEvent, TokenCountEvent, ToolCallsEvent, ToolOutcomeEvent
from tandem.utils import shorten_text

EXIT_COMMANDS = {"/quit", "/exit", "quit", "exit"}

app = typer.Typer(name="tandem", help="Tool-using coding assistant.", add_completion=False)


class Renderer:
    """Render agent events on a rich console."""

    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console()
        self._streaming = False
        self.tokens = 0

    def render(self, event: AgentEvent) -> None:
        match event:
            case ContentEvent(text=text):
                self.console.print(text, end="", markup=False, highlight=False)
                self._streaming = True
            case ToolCallsEvent(invocations=invocations):
                self._end_stream()
                names = ", ".join(invocation.name for invocation in invocations)
                self.console.print(f"[yellow]> calling[/yellow] {names}")
            case ToolOutcomeEvent(invocation=invocation, outcome=outcome):
                style = "green" if outcome.success else "red"
                preview = shorten_text(outcome.content.replace("\n", " "), width=80)
                self.console.print(f"[{style}]< {invocation.name}[/{style}] {escape(preview)}", highlight=False)
            case TokenCountEvent(tokens=tokens):
                self.tokens = tokens
            case DoneEvent(state=state, rounds=rounds):
                self._end_stream()
                self.console.print(
                    f"[dim]{state} | rounds: {rounds} | context: {format_token_count(self.tokens)} tokens[/dim]"
                )

    def error(self, message: str) -> None:
        self._end_stream()
        self.console.print(f"[bold red]Error:[/bold red] {message}")

    def _end_stream(self) -> None:
        if self._streaming:
            self.console.print()
            self._streaming = False


async def _drive(agent: Agent, prompt: str, renderer: Renderer) -> LoopState:
    loop = asyncio.get_running_loop()
    with contextlib.suppress(NotImplementedError, RuntimeError):
        loop.add_signal_handler(signal.SIGINT, agent.cancel)
    try:
        async for event in agent.submit(prompt):
            renderer.render(event)
    finally:
        with contextlib.suppress(NotImplementedError, RuntimeError):
            loop.remove_signal_handler(signal.SIGINT)
    return agent.state


async def _chat_loop(agent: Agent, renderer: Renderer) -> None:
    while True:
        try:
            line = await asyncio.to_thread(renderer.console.input, "[bold cyan]you>[/bold cyan] ")
        except (KeyboardInterrupt, EOFError):
            renderer.console.print("\nGoodbye!")
            return
        text = line.strip()
        if not text:
            continue
        if text in EXIT_COMMANDS:
            return
        if text == "/reset":
            agent.reset()
            renderer.console.print("[dim]conversation cleared[/dim]")
            continue
        if text == "/metrics":
            renderer.console.print(agent.selector.format_metrics(), markup=False)
            continue
        await _drive(agent, text, renderer)


def _load_agent(workspace: Path | None, model: str | None) -> Agent:
    try:
        return build_agent_for_workspace(workspace, model=model)
    except TandemError as exc:
        Renderer().error(str(exc))
        raise typer.Exit(1) from exc


@app.command()
def chat(
    workspace: Path | None = typer.Option(None, "--workspace", "-w", help="Workspace root"),  # noqa: B008
    model: str | None = typer.Option(None, "--model", "-m", help="Model override"),
) -> None:
    """Start an interactive session. Ctrl-C cancels the running request."""

    configure_logging(profile="chat")
    agent = _load_agent(workspace, model)
    renderer = Renderer()
    renderer.console.print("[bold blue]Tandem[/bold blue] [dim](/reset, /metrics, /quit)[/dim]")
    asyncio.run(_chat_loop(agent, renderer))


@app.command()
def run(
    prompt: str = typer.Argument(..., help="Request to run"),
    workspace: Path | None = typer.Option(None, "--workspace", "-w", help="Workspace root"),  # noqa: B008
    model: str | None = typer.Option(None, "--model", "-m", help="Model override"),
) -> None:
    """Run one request and exit."""

    configure_logging()
    agent = _load_agent(workspace, model)
    state = asyncio.run(_drive(agent, prompt, Renderer()))
    if state != LoopState.RESPONSE_COMPLETE:
        raise typer.Exit(1)

"""Karyo entry point: interactive console REPL.

  Settings -> LanguageModel -> ToolRegistry + PermissionGate -> Agent -> REPL

One process runs one session: one conversation, one permission gate.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.prompt import Prompt

from karyo import __version__
from karyo.agent.context import ContextManager
from karyo.agent.limits import MODEL_LIMITS, provider_for
from karyo.agent.llm import ConfigError, create_model
from karyo.agent.models import ContextAction, TurnEvent
from karyo.agent.permissions import PermissionGate
from karyo.agent.runner import Agent
from karyo.config import Settings
from karyo.tokens import format_tokens

logger = logging.getLogger(__name__)

_EXIT_COMMANDS = frozenset({"/exit", "/quit", "/q"})
_TOOL_PREVIEW_CHARS = 500

HELP_TEXT = """\
[bold]Commands[/bold]
  /help            Show this help
  /clear           Clear the conversation
  /context         Show context usage
  /model \\[id]      Switch the model (no id: pick from a list)
  /exit, /quit     Exit

Ctrl+C stops the running turn; press it twice to abort immediately."""


class Repl:
    """Console front-end for one Agent."""

    def __init__(self, settings: Settings, console: Console | None = None, select: bool = False) -> None:
        self.settings = settings
        self.console = console or Console()
        self.select = select
        self.agent: Agent | None = None

    async def permission_prompt(self, action: str, details: str) -> str:
        self.console.print(Panel(escape(details), title=f"Permission required: {action}", border_style="yellow"))
        try:
            return self.console.input(escape("Allow? [y/N/always] "))
        except EOFError:
            return ""

    async def start(self) -> None:
        if self.select:
            chosen = self.pick_model()
            if chosen:
                self.settings = self.settings.model_copy(update={"model": chosen})
        try:
            model = create_model(self.settings)
        except ConfigError as e:
            self.console.print(f"[red]Configuration error:[/red] {escape(str(e))}")
            return

        self.agent = Agent(self.settings, model, permissions=PermissionGate(self.permission_prompt))
        self.console.print(
            Panel.fit(
                f"[bold blue]karyo {__version__}[/bold blue]\n"
                f"Model: {escape(model.model_id)}\n"
                f"Working directory: {escape(str(self.settings.workspace))}\n"
                "Type /help for commands.",
                border_style="blue",
            )
        )

        try:
            while True:
                try:
                    user_input = Prompt.ask("\n[bold cyan]You[/bold cyan]", console=self.console)
                except EOFError:
                    break
                text = user_input.strip()
                if not text:
                    continue
                if text.startswith("/"):
                    if not await self.handle_command(text):
                        break
                    continue
                await self.run_turn(text)
        finally:
            await self.agent.model.aclose()
            self.console.print("\n[yellow]Goodbye![/yellow]")

    async def handle_command(self, text: str) -> bool:
        """Run a slash command. Returns False when the REPL should exit."""
        assert self.agent is not None
        command, _, arg = text.partition(" ")
        command = command.lower()
        arg = arg.strip()

        if command in _EXIT_COMMANDS:
            return False
        if command == "/help":
            self.console.print(HELP_TEXT)
        elif command == "/clear":
            self.agent.clear()
            self.console.print("[yellow]Conversation cleared[/yellow]")
        elif command == "/context":
            self.console.print(escape(ContextManager.format_stats(self.agent.stats())))
        elif command == "/model":
            await self.switch_model(arg)
        else:
            self.console.print(f"[red]Unknown command:[/red] {escape(command)}. Type /help for commands.")
        return True

    def pick_model(self) -> str | None:
        """Numbered picker over the known models. Blank input or EOF keeps the current one."""
        models = list(MODEL_LIMITS)
        self.console.print("\n[bold]Select a model:[/bold]")
        for number, model_id in enumerate(models, 1):
            limits = MODEL_LIMITS[model_id]
            self.console.print(
                f"  [cyan]{number:2d})[/cyan] {escape(model_id)} "
                f"[dim]\\[{provider_for(model_id)}] {format_tokens(limits.context)} context[/dim]"
            )

        while True:
            try:
                answer = self.console.input(f"Enter number (1-{len(models)}, blank to cancel): ").strip()
            except EOFError:
                return None
            if not answer:
                return None
            if answer.isdigit() and 1 <= int(answer) <= len(models):
                return models[int(answer) - 1]
            self.console.print("[red]Invalid selection. Please try again.[/red]")

    async def switch_model(self, model_id: str) -> None:
        assert self.agent is not None
        if not model_id:
            self.console.print(f"Current model: {escape(self.agent.model.model_id)}")
            model_id = self.pick_model() or ""
            if not model_id or model_id == self.agent.model.model_id:
                return
        try:
            model = create_model(self.settings, model_id)
        except ConfigError as e:
            self.console.print(f"[red]Cannot switch model:[/red] {escape(str(e))}")
            return
        previous = self.agent.model
        self.agent.switch_model(model)
        await previous.aclose()
        self.console.print(f"[green]Switched to {escape(model_id)}[/green]")

    async def run_turn(self, text: str) -> None:
        assert self.agent is not None
        self.console.print("\n[bold green]Assistant[/bold green]")
        turn = asyncio.ensure_future(self._stream_turn(text))
        restore = self._trap_interrupt(turn)
        try:
            await turn
        except asyncio.CancelledError:
            task = asyncio.current_task()
            if task is None or task.uncancel() > 0:
                raise
            self.console.print("\n[yellow]Interrupted[/yellow]")
        finally:
            restore()

    async def _stream_turn(self, text: str) -> None:
        assert self.agent is not None
        async for event in self.agent.run_turn(text):
            self.render(event)

    def interrupt(self, turn: asyncio.Future) -> None:
        """First Ctrl+C stops the turn after the running tool; the second aborts it."""
        assert self.agent is not None
        if self.agent.cancel_event.is_set():
            turn.cancel()
            return
        self.agent.cancel()
        self.console.print("\n[yellow]Stopping... press Ctrl+C again to abort[/yellow]")

    def _trap_interrupt(self, turn: asyncio.Future):
        """Route SIGINT to interrupt() while a turn runs; returns the undo callable."""
        loop = asyncio.get_running_loop()
        previous = signal.getsignal(signal.SIGINT)
        try:
            loop.add_signal_handler(signal.SIGINT, self.interrupt, turn)
        except (NotImplementedError, RuntimeError, ValueError):
            # No loop signal support (Windows, non-main thread)
            return lambda: None

        def restore() -> None:
            loop.remove_signal_handler(signal.SIGINT)
            if previous is not None:
                signal.signal(signal.SIGINT, previous)

        return restore

    def render(self, event: TurnEvent) -> None:
        console = self.console
        if event.type == "context" and event.action is not ContextAction.NONE:
            label = "pruned old tool outputs" if event.action is ContextAction.PRUNED else "compacted conversation"
            console.print(f"[yellow]\\[Context: {label}][/yellow]")
        elif event.type == "text_delta":
            console.print(event.text, end="", markup=False, highlight=False)
        elif event.type == "tool_start":
            console.print(f"\n[cyan]\\[Tool: {escape(event.tool_name)}][/cyan]")
        elif event.type == "tool_end":
            preview = event.text
            if len(preview) > _TOOL_PREVIEW_CHARS:
                preview = preview[:_TOOL_PREVIEW_CHARS] + "..."
            style = "red" if event.is_error else "dim"
            console.print(f"[{style}]{escape(preview)}[/{style}]")
        elif event.type == "warning":
            console.print(f"\n[yellow]{escape(event.text)}[/yellow]")
        elif event.type == "error":
            console.print(f"\n[red]Error:[/red] {escape(event.text)}")
        elif event.type == "done" and event.usage is not None:
            console.print(
                f"\n[dim]Tokens: {format_tokens(event.usage.input_tokens)} in, "
                f"{format_tokens(event.usage.output_tokens)} out[/dim]"
            )


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="karyo", description="Interactive coding assistant")
    parser.add_argument("-d", "--dir", help="Working directory (default: current directory)")
    parser.add_argument("-m", "--model", help="Model id (default: claude-sonnet-4-20250514)")
    parser.add_argument("-s", "--select", action="store_true", help="Pick the model from a list at startup")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser.parse_args(argv)


def build_settings(args: argparse.Namespace) -> Settings:
    overrides: dict[str, str] = {}
    if args.model:
        overrides["model"] = args.model
    if args.dir:
        overrides["workspace_dir"] = args.dir
    return Settings(**overrides)


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    settings = build_settings(args)

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.WARNING),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    if not settings.workspace.is_dir():
        print(f"Error: working directory does not exist: {settings.workspace}", file=sys.stderr)
        sys.exit(1)

    logger.info("Starting karyo in %s with %s", settings.workspace, settings.model)
    try:
        asyncio.run(Repl(settings, select=args.select).start())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()

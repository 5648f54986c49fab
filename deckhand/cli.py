"""Terminal rendering for Deckhand."""

import json

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.prompt import Confirm, Prompt
from rich.syntax import Syntax
from rich.text import Text

from deckhand.agent import StreamEvent
from deckhand.confirmation import ConfirmationRequest, ConfirmationResult
from deckhand.exceptions import DeckhandError
from deckhand.llm import ToolCallRequest
from deckhand.logging import get_logger

log = get_logger(__name__)


def _format_arguments(call: ToolCallRequest, limit: int = 160) -> str:
    try:
        data = json.loads(call.arguments or "{}")
    except json.JSONDecodeError:
        text = call.arguments
    else:
        if isinstance(data, dict):
            text = ", ".join(f"{key}={value!r}" for key, value in data.items())
        else:
            text = str(data)
    if len(text) > limit:
        text = text[:limit] + "..."
    return text


class TerminalRenderer:
    """Renders agent events to the terminal with rich."""

    def __init__(self, console: Console | None = None, result_preview_chars: int = 400):
        self.console = console or Console()
        self.result_preview_chars = result_preview_chars
        self._thinking_open = False
        self._content_open = False

    def print_welcome(self, model: str = "") -> None:
        subtitle = f"model: {model}" if model else None
        self.console.print(
            Panel(
                "Type your message, or /help for commands.",
                title="Deckhand",
                subtitle=subtitle,
                border_style="cyan",
            )
        )

    def print_help(self) -> None:
        self.console.print(
            "\n".join(
                [
                    "[bold]Commands:[/bold]",
                    "  /help      Show this help message",
                    "  /clear     Clear the conversation",
                    "  /summary   Show the compacted context summary",
                    "  /exit      Exit (also /quit)",
                    "",
                    "Press Ctrl-C while a response is running to cancel it.",
                ]
            )
        )

    def print_error(self, message: str) -> None:
        self.console.print(f"[bold red]Error:[/bold red] {escape(message)}")

    def print_info(self, message: str) -> None:
        self.console.print(f"[dim]{escape(message)}[/dim]")

    def prompt(self, prompt_text: str = "> ") -> str:
        return self.console.input(f"[bold green]{prompt_text}[/bold green]")

    def _close_streams(self) -> None:
        if self._thinking_open or self._content_open:
            self.console.print()
        self._thinking_open = False
        self._content_open = False

    def render_event(self, event: StreamEvent) -> None:
        """Render one event of a turn."""
        if event.type == "thinking":
            if not self._thinking_open:
                self._close_streams()
                self.console.print(Text("thinking: ", style="dim italic"), end="")
                self._thinking_open = True
            self.console.print(Text(event.content or "", style="dim"), end="")
        elif event.type == "content":
            if not self._content_open:
                self._close_streams()
                self._content_open = True
            self.console.print(Text(event.content or ""), end="")
        elif event.type == "tool_calls":
            self._close_streams()
            for call in event.tool_calls or []:
                self.console.print(f"[cyan]⏺ {escape(call.name)}[/cyan]([dim]{escape(_format_arguments(call))}[/dim])")
        elif event.type == "tool_result":
            self._close_streams()
            self._render_tool_result(event)
        elif event.type == "cancelled":
            self._close_streams()
            self.console.print(Text((event.content or "").strip(), style="yellow"))
        elif event.type == "error":
            self._close_streams()
            self._render_error(event)
        elif event.type == "done":
            self._close_streams()

    def _render_tool_result(self, event: StreamEvent) -> None:
        result = event.tool_result
        if result is None:
            return
        text = result.to_message_content()
        if len(text) > self.result_preview_chars:
            hidden = len(text) - self.result_preview_chars
            text = text[: self.result_preview_chars] + f"\n... ({hidden} more characters)"
        style = "green" if result.success else "red"
        self.console.print(Text.assemble(("  ⎿ ", style), (text, "" if result.success else "red")))

    def _render_error(self, event: StreamEvent) -> None:
        if isinstance(event.error, DeckhandError):
            self.print_error(event.error.message)
            for suggestion in event.error.suggestions:
                line = f"  • {suggestion.description}"
                if suggestion.command:
                    line += f" [dim]({suggestion.command})[/dim]"
                self.console.print(line)
            return
        self.print_error(event.content or "Unknown error")

    def confirm(self, request: ConfirmationRequest) -> ConfirmationResult:
        """Ask the user about a side-effecting operation."""
        self._close_streams()
        title = escape(f"{request.operation}: {request.target}")
        if request.preview:
            lexer = "diff" if request.kind == "file" else "bash"
            self.console.print(Panel(Syntax(request.preview, lexer, word_wrap=True), title=title))
        else:
            self.console.print(Panel(title, border_style="yellow"))

        if not Confirm.ask("Proceed?", console=self.console, default=True):
            feedback = Prompt.ask("Feedback for the assistant (optional)", console=self.console, default="")
            return ConfirmationResult(confirmed=False, feedback=feedback or None)

        scope = "file operations" if request.kind == "file" else "bash commands"
        standing = Confirm.ask(f"Don't ask again for {scope} this session?", console=self.console, default=False)
        return ConfirmationResult(confirmed=True, standing_acceptance=standing)

    def handle_special_command(self, cmd: str) -> str | None:
        """Map slash commands to actions.

        Returns the original text for regular messages, an action name for
        commands, or None when the command was handled here.
        """
        cmd = cmd.strip()
        if not cmd.startswith("/"):
            return cmd

        command = cmd.split(None, 1)[0].lower()
        if command in ("/help", "/h", "/?"):
            self.print_help()
            return None
        if command == "/clear":
            return "CLEAR"
        if command == "/summary":
            return "SUMMARY"
        if command in ("/exit", "/quit", "/q"):
            return "EXIT"
        self.print_error(f"Unknown command: {command}")
        return None

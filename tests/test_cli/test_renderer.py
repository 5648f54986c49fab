from io import StringIO

import pytest
from rich.console import Console
from typer.testing import CliRunner

import deckhand.cli as cli_module
from deckhand.agent import StreamEvent
from deckhand.cli import TerminalRenderer
from deckhand.confirmation import ConfirmationRequest
from deckhand.exceptions import RateLimitError
from deckhand.llm import ToolCallRequest
from deckhand.main import app
from deckhand.tools import ToolResult


def _renderer(**kwargs) -> tuple[TerminalRenderer, StringIO]:
    buffer = StringIO()
    console = Console(file=buffer, width=120, color_system=None, force_terminal=False)
    return TerminalRenderer(console=console, **kwargs), buffer


@pytest.mark.parametrize(
    "text, expected",
    [
        ("/clear", "CLEAR"),
        ("/summary", "SUMMARY"),
        ("/exit", "EXIT"),
        ("/QUIT", "EXIT"),
        ("/q", "EXIT"),
        ("  list files  ", "list files"),
    ],
)
def test_special_commands(text, expected):
    renderer, _ = _renderer()

    assert renderer.handle_special_command(text) == expected


def test_help_and_unknown_commands_are_handled_locally():
    renderer, buffer = _renderer()

    assert renderer.handle_special_command("/help") is None
    assert renderer.handle_special_command("/frobnicate now") is None

    output = buffer.getvalue()
    assert "Commands:" in output
    assert "Unknown command: /frobnicate" in output


def test_render_stream_of_events():
    renderer, buffer = _renderer()
    call = ToolCallRequest(id="c1", name="bash", arguments='{"command": "ls"}')

    for event in [
        StreamEvent(type="thinking", content="hm"),
        StreamEvent(type="tool_calls", tool_calls=[call]),
        StreamEvent(type="tool_result", tool_call=call, tool_result=ToolResult(output="a.txt")),
        StreamEvent(type="content", content="Done"),
        StreamEvent(type="content", content="."),
        StreamEvent(type="done"),
    ]:
        renderer.render_event(event)

    output = buffer.getvalue()
    assert "thinking: hm" in output
    assert "⏺ bash(command='ls')" in output
    assert "⎿ a.txt" in output
    assert "Done." in output


def test_long_tool_results_are_truncated():
    renderer, buffer = _renderer(result_preview_chars=10)

    renderer.render_event(StreamEvent(type="tool_result", tool_result=ToolResult(output="x" * 25)))

    assert "... (15 more characters)" in buffer.getvalue()


def test_render_error_with_suggestions():
    renderer, buffer = _renderer()

    renderer.render_event(StreamEvent(type="error", content="slow down", error=RateLimitError("Too many", 3)))

    output = buffer.getvalue()
    assert "Error: Too many" in output
    assert "Rate limit will reset after this time" in output


def test_render_cancelled():
    renderer, buffer = _renderer()

    renderer.render_event(StreamEvent(type="cancelled", content="\n\n[Operation cancelled by user]"))

    assert "[Operation cancelled by user]" in buffer.getvalue()


def test_confirm_rejection_collects_feedback(monkeypatch):
    renderer, buffer = _renderer()
    monkeypatch.setattr(cli_module.Confirm, "ask", classmethod(lambda cls, *args, **kwargs: False))
    monkeypatch.setattr(cli_module.Prompt, "ask", classmethod(lambda cls, *args, **kwargs: "use a branch"))

    result = renderer.confirm(ConfirmationRequest(operation="Run", target="git push", kind="bash"))

    assert result.confirmed is False
    assert result.feedback == "use a branch"
    assert "Run: git push" in buffer.getvalue()


def test_confirm_with_standing_acceptance(monkeypatch):
    renderer, _ = _renderer()
    monkeypatch.setattr(cli_module.Confirm, "ask", classmethod(lambda cls, *args, **kwargs: True))

    result = renderer.confirm(ConfirmationRequest(operation="Write", target="a.txt", preview="+hello"))

    assert result.confirmed
    assert result.standing_acceptance


def test_version_command():
    result = CliRunner().invoke(app, ["version"])

    assert result.exit_code == 0
    assert result.output.startswith("Deckhand v")

"""Main entry point for Deckhand."""

import asyncio
import os
import signal
import sys
from pathlib import Path

import typer

from deckhand.agent import Agent
from deckhand.cli import TerminalRenderer
from deckhand.config import Config, set_config
from deckhand.confirmation import AutoApproveGate, CallbackGate, SessionContext
from deckhand.llm import get_provider
from deckhand.logging import configure_logging, get_logger, set_log_sink

log = get_logger(__name__)

app = typer.Typer(help="Deckhand - a terminal coding assistant", no_args_is_help=False)


def _load_config(
    config: str,
    model: str,
    provider: str,
    max_rounds: int,
) -> Config:
    if config:
        try:
            cfg = Config.from_yaml(Path(config))
        except Exception as e:
            log.error("Failed to load config", path=config, error=str(e))
            cfg = Config.load()
    else:
        cfg = Config.load()

    if model:
        cfg.model.model = model
    if provider:
        cfg.model.provider = provider
    if max_rounds > 0:
        cfg.agent.max_tool_rounds = max_rounds
    return cfg


async def run_turn(agent: Agent, renderer: TerminalRenderer, text: str) -> None:
    """Stream one turn to the terminal; Ctrl-C cancels it."""
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, agent.cancel_current_turn)
        handler_installed = True
    except (NotImplementedError, RuntimeError):
        handler_installed = False

    try:
        async for event in agent.submit_user_message(text):
            renderer.render_event(event)
    finally:
        if handler_installed:
            loop.remove_signal_handler(signal.SIGINT)


async def run_interactive(agent: Agent, renderer: TerminalRenderer) -> None:
    """Read-eval loop until /exit or EOF."""
    renderer.print_welcome(agent.config.model.model)
    while True:
        try:
            raw = await asyncio.to_thread(renderer.prompt)
        except (EOFError, KeyboardInterrupt):
            renderer.print_info("Goodbye.")
            return

        if not raw.strip():
            continue
        action = renderer.handle_special_command(raw)
        if action is None:
            continue
        if action == "EXIT":
            return
        if action == "CLEAR":
            agent.clear_history()
            agent.session.reset()
            renderer.print_info("Conversation cleared.")
            continue
        if action == "SUMMARY":
            summary = agent.get_context_summary()
            renderer.print_info(summary or "No context summary yet.")
            continue

        try:
            await run_turn(agent, renderer, action)
        except Exception as e:
            log.error("Error in interactive loop", error=str(e), exc_info=True)
            renderer.print_error(str(e))


async def _run(renderer: TerminalRenderer, prompt: str, auto_approve: bool) -> int:
    gate = AutoApproveGate() if auto_approve else CallbackGate(renderer.confirm)
    agent = Agent(session=SessionContext(gate))
    try:
        if prompt:
            await run_turn(agent, renderer, prompt)
            return 1 if agent.last_error is not None else 0
        await run_interactive(agent, renderer)
        return 0
    finally:
        await agent.provider.close()


@app.command()
def run(
    prompt: str = typer.Option("", "--prompt", help="Run a single prompt and exit"),
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
    model: str = typer.Option("", "-m", "--model", help="Override model"),
    provider: str = typer.Option("", "-p", "--provider", help="Override provider"),
    max_rounds: int = typer.Option(0, "--max-rounds", help="Override the tool round ceiling"),
    auto_approve: bool = typer.Option(False, "--auto-approve", help="Approve every operation without asking"),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Debug logging"),
) -> None:
    """Start a Deckhand session."""
    if verbose:
        os.environ["DECKHAND_LOGGING__LEVEL"] = "DEBUG"

    cfg = _load_config(config, model, provider, max_rounds)
    if verbose:
        cfg.logging.level = "DEBUG"
    set_config(cfg)
    renderer = TerminalRenderer()
    set_log_sink(renderer.print_info)
    configure_logging()

    try:
        get_provider()
    except ValueError as e:
        renderer.print_error(str(e))
        raise typer.Exit(code=2)

    try:
        code = asyncio.run(_run(renderer, prompt, auto_approve))
    except KeyboardInterrupt:
        log.info("Shutting down...")
        sys.exit(0)
    raise typer.Exit(code=code)


@app.command()
def version() -> None:
    """Show version information."""
    from deckhand import __version__

    typer.echo(f"Deckhand v{__version__}")


if __name__ == "__main__":
    app()

"""Structured logging for Deckhand.

Records are rendered by structlog, either for the console or as one JSON
object per line. While a turn is running every record also carries the
turn's id and current round, bound through `turn_context`.
"""

import logging
import sys
import uuid
from contextlib import contextmanager
from typing import Callable, Iterator

import structlog
from structlog._config import BoundLoggerLazyProxy

from deckhand.config import get_config

_log_sink: Callable[[str], None] | None = None


class _SinkWriter:
    """File-like sink for structlog that forwards lines to a callback."""

    def __init__(self, sink: Callable[[str], None]):
        self._sink = sink
        self._buffer = ""

    def write(self, text: str) -> int:
        self._buffer += text
        while "\n" in self._buffer:
            line, self._buffer = self._buffer.split("\n", 1)
            if line:
                self._sink(line)
        return len(text)

    def flush(self) -> None:
        if self._buffer:
            self._sink(self._buffer)
            self._buffer = ""


def set_log_sink(sink: Callable[[str], None] | None) -> None:
    """Route log lines to a callback instead of stderr (the terminal renderer uses this)."""
    global _log_sink
    _log_sink = sink


def configure_logging(level: str | None = None) -> None:
    """Install the structlog pipeline from the `logging` config section.

    Args:
        level: Overrides `logging.level` when given (the CLI's --verbose flag)
    """
    settings = get_config().logging
    log_level = getattr(logging, (level or settings.level).upper(), logging.INFO)

    renderer = structlog.dev.ConsoleRenderer() if settings.format == "console" else structlog.processors.JSONRenderer()
    output = _SinkWriter(_log_sink) if _log_sink else sys.stderr

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=output),
        cache_logger_on_first_use=True,
    )


def new_turn_id() -> str:
    return uuid.uuid4().hex[:12]


@contextmanager
def turn_context(turn_id: str, **values) -> Iterator[str]:
    """Bind `turn_id` (and any extra values) to every record logged inside the block.

    Values already bound under the same keys are restored on exit, so a
    sub-agent turn nested in a parent turn hands the parent's id back.
    """
    bound = {"round": 0, **values, "turn_id": turn_id}
    with structlog.contextvars.bound_contextvars(**bound):
        yield turn_id


def bind_round(round_number: int) -> None:
    """Tag subsequent records of the current turn with its model round."""
    structlog.contextvars.bind_contextvars(round=round_number)


def get_logger(name: str | None = None) -> structlog.BoundLogger:
    """Get a logger; records carry `logger=<name>` when a name is given."""
    if name:
        return BoundLoggerLazyProxy(None, initial_values={"logger": name}, logger_factory_args=(name,))
    return structlog.get_logger()

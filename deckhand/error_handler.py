"""Turn errors into user-facing text and debug log records."""

import asyncio
from typing import Awaitable, Callable, TypeVar

from deckhand.exceptions import DeckhandError
from deckhand.logging import get_logger

log = get_logger(__name__)

T = TypeVar("T")


def handle(error: BaseException) -> str:
    """Return a short user-facing description of an error."""
    if isinstance(error, DeckhandError):
        return error.format_for_user()
    return f"An unexpected error occurred: {error}"


def to_simple_message(error: BaseException) -> str:
    """Plain message suitable for a ToolResult error field."""
    if isinstance(error, DeckhandError):
        return error.message
    return str(error) or type(error).__name__


def should_retry(error: BaseException) -> bool:
    """Whether the error is marked recoverable."""
    return isinstance(error, DeckhandError) and error.recoverable


def log_error(error: BaseException, **context: object) -> None:
    """Record an error with its traceback on the debug/log path."""
    if isinstance(error, DeckhandError):
        log.error(
            "Deckhand error",
            error_code=error.code,
            error=error.message,
            error_context=error.context,
            exc_info=error,
            **context,
        )
        return
    log.error("Unexpected error", error=str(error), exc_info=error, **context)


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    max_retries: int = 3,
    delay_seconds: float = 1.0,
) -> T:
    """Run an async operation, retrying recoverable errors with exponential backoff."""
    attempt = 0
    while True:
        try:
            return await operation()
        except Exception as e:
            attempt += 1
            if not should_retry(e) or attempt >= max_retries:
                raise
            wait = delay_seconds * (2 ** (attempt - 1))
            log.warning("Retrying after recoverable error", attempt=attempt, wait=wait, error=str(e))
            await asyncio.sleep(wait)

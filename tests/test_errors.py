import pytest

from deckhand import error_handler
from deckhand.exceptions import (
    APIError,
    AuthenticationError,
    InvalidTransitionError,
    MissingFileError,
    NetworkError,
    ToolArgumentsError,
)


def test_format_for_user_includes_context_and_suggestions():
    text = MissingFileError("notes.md").format_for_user()

    assert text.startswith("File not found: notes.md")
    assert "Context:" in text
    assert "Suggestions:" in text
    assert "  1. " in text


def test_to_dict_is_serializable_shape():
    data = ToolArgumentsError("bash", "{oops", "malformed JSON").to_dict()

    assert data["name"] == "ToolArgumentsError"
    assert data["code"] == "VALIDATION_ERROR"
    assert data["recoverable"] is True
    assert data["context"]["tool"] == "bash"
    assert data["suggestions"][0]["action"] == "Check the parameter format"


def test_api_error_recoverability_follows_status():
    assert APIError("bad request", 400).recoverable is True
    assert APIError("server", 503).recoverable is False
    assert AuthenticationError("denied").suggestions[0].action == "Set your API key"


def test_handle_and_simple_message():
    assert error_handler.handle(RuntimeError("boom")) == "An unexpected error occurred: boom"
    assert error_handler.to_simple_message(NetworkError("offline")) == "offline"
    assert error_handler.to_simple_message(KeyError()) == "KeyError"


def test_invalid_transition_lists_allowed_targets():
    error = InvalidTransitionError("idle", "responding", ["thinking", "error"])

    assert error.message == (
        "Invalid state transition: idle -> responding. Valid transitions from idle: thinking, error"
    )


@pytest.mark.asyncio
async def test_with_retry_retries_recoverable_errors():
    attempts = []

    async def flaky():
        attempts.append(1)
        if len(attempts) < 3:
            raise NetworkError("blip")
        return "ok"

    assert await error_handler.with_retry(flaky, max_retries=3, delay_seconds=0) == "ok"
    assert len(attempts) == 3


@pytest.mark.asyncio
async def test_with_retry_gives_up():
    attempts = []

    async def always_down():
        attempts.append(1)
        raise NetworkError("down")

    with pytest.raises(NetworkError):
        await error_handler.with_retry(always_down, max_retries=2, delay_seconds=0)
    assert len(attempts) == 2


@pytest.mark.asyncio
async def test_with_retry_does_not_retry_fatal_errors():
    attempts = []

    async def broken():
        attempts.append(1)
        raise APIError("server", 500)

    with pytest.raises(APIError):
        await error_handler.with_retry(broken, delay_seconds=0)
    assert attempts == [1]

import json
from typing import Any

import pytest

import deckhand.config as config_module
from deckhand.config import AgentConfig, Config, set_config
from deckhand.llm import (
    LLMProvider,
    LLMResponse,
    Message,
    StreamFragment,
    ToolCallDelta,
    ToolDefinition,
    set_provider,
)


class ScriptedProvider(LLMProvider):
    """Replays one scripted round per `stream` call.

    A round is a list of fragments, or an exception raised before any
    fragment, or a list ending in an exception (raised mid-stream).
    Callables inside a round are invoked when reached, without yielding.
    """

    def __init__(self, rounds: list[Any] | None = None, completions: list[Any] | None = None, priming_style: str = "exchange"):
        self.rounds = list(rounds or [])
        self.completions = list(completions or [])
        self.priming_style = priming_style
        self.stream_calls: list[list[Message]] = []
        self.stream_tools: list[list[ToolDefinition] | None] = []
        self.complete_calls: list[list[Message]] = []
        self.closed = False

    async def stream(self, messages, tools=None):
        self.stream_calls.append(list(messages))
        self.stream_tools.append(tools)
        if not self.rounds:
            raise AssertionError("no scripted round left")
        script = self.rounds.pop(0)
        if isinstance(script, BaseException):
            raise script
        for item in script:
            if isinstance(item, BaseException):
                raise item
            if callable(item):
                item()
                continue
            yield item

    async def complete(self, messages, tools=None):
        self.complete_calls.append(list(messages))
        if not self.completions:
            return LLMResponse(content="Summary of earlier work.")
        item = self.completions.pop(0)
        if isinstance(item, BaseException):
            raise item
        return LLMResponse(content=item)

    async def close(self):
        self.closed = True

    @staticmethod
    def text(content: str, thinking: str = "") -> list[StreamFragment]:
        fragments = [StreamFragment(role="assistant")]
        if thinking:
            fragments.append(StreamFragment(reasoning=thinking))
        if content:
            fragments.append(StreamFragment(content=content))
        fragments.append(StreamFragment(finish_reason="stop"))
        return fragments

    @staticmethod
    def tool_calls(*calls: tuple[str, str, dict[str, Any] | str], content: str = "") -> list[StreamFragment]:
        fragments = [StreamFragment(role="assistant", content=content or None)]
        for index, (call_id, name, arguments) in enumerate(calls):
            raw = arguments if isinstance(arguments, str) else json.dumps(arguments)
            fragments.append(StreamFragment(tool_call_deltas=[ToolCallDelta(index=index, id=call_id, name=name)]))
            fragments.append(StreamFragment(tool_call_deltas=[ToolCallDelta(index=index, arguments=raw)]))
        fragments.append(StreamFragment(finish_reason="tool_calls"))
        return fragments


@pytest.fixture
def provider_cls() -> type[ScriptedProvider]:
    return ScriptedProvider


@pytest.fixture(autouse=True)
def deckhand_config(monkeypatch):
    """Isolated config with display pacing disabled."""
    cfg = Config(agent=AgentConfig(content_chunk_delay=0, thinking_chunk_delay=0))
    set_config(cfg)
    yield cfg
    monkeypatch.setattr(config_module, "_config", None)
    set_provider(None)

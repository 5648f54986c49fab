"""Model transport: conversation types and OpenAI-compatible streaming provider."""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator

import httpx

from deckhand.exceptions import (
    APIError,
    AuthenticationError,
    LLMError,
    ModelNotFoundError,
    NetworkError,
    RateLimitError,
)
from deckhand.logging import get_logger

log = get_logger(__name__)


PROVIDER_BASE_URLS = {
    "zai": "https://api.z.ai/api/paas/v4",
    "openai": "https://api.openai.com/v1",
    "ollama": "http://127.0.0.1:11434/v1",
}

PRIMING_OPENER = "Hello, I need help with coding tasks, file editing, and system operations."


@dataclass
class ToolCallRequest:
    """A finalized request from the model to run a tool."""

    id: str
    name: str
    arguments: str = ""

    def to_wire(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }


@dataclass
class Message:
    """A message in the conversation."""

    role: str  # "system", "user", "assistant", "tool"
    content: str
    tool_calls: list[ToolCallRequest] | None = None
    tool_call_id: str | None = None

    def to_wire(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"role": self.role, "content": self.content or ""}
        if self.tool_calls:
            payload["tool_calls"] = [call.to_wire() for call in self.tool_calls]
        if self.tool_call_id:
            payload["tool_call_id"] = self.tool_call_id
        return payload


@dataclass
class ToolDefinition:
    """Definition of a tool for the LLM."""

    name: str
    description: str
    parameters: dict[str, Any]  # JSON Schema

    def to_wire(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters or {"type": "object", "properties": {}},
            },
        }


@dataclass
class ToolCallDelta:
    """Partial tool-call data addressed by its position in the call list."""

    index: int = 0
    id: str | None = None
    name: str | None = None
    arguments: str | None = None


@dataclass
class StreamFragment:
    """One partial unit of a streamed model response."""

    role: str | None = None
    content: str | None = None
    reasoning: str | None = None
    tool_call_deltas: list[ToolCallDelta] = field(default_factory=list)
    finish_reason: str | None = None


@dataclass
class LLMResponse:
    """Non-streaming response from the LLM."""

    content: str
    tool_calls: list[ToolCallRequest] = field(default_factory=list)
    model: str = ""
    usage: dict[str, int] = field(default_factory=dict)


class LLMProvider(ABC):
    """Abstract base class for model endpoints."""

    priming_style: str = "exchange"

    @abstractmethod
    def stream(
        self,
        messages: list[Message],
        tools: list[ToolDefinition] | None = None,
    ) -> AsyncIterator[StreamFragment]:
        """Send the conversation and yield response fragments in arrival order."""

    @abstractmethod
    async def complete(
        self,
        messages: list[Message],
        tools: list[ToolDefinition] | None = None,
    ) -> LLMResponse:
        """Send the conversation and return the whole response."""

    def count_tokens(self, text: str) -> int:
        """Rough token estimate (~4 characters per token)."""
        return (len(text or "") + 3) // 4

    def count_message_tokens(self, messages: list[Message]) -> int:
        total = 0
        for msg in messages:
            total += self.count_tokens(msg.content)
            for call in msg.tool_calls or []:
                total += self.count_tokens(call.name) + self.count_tokens(call.arguments)
        return total

    def build_priming(self, guidelines: str) -> list[Message]:
        """Leading messages that carry the assistant's guidelines.

        Some endpoints stop emitting reasoning when a system message is
        combined with tool definitions, so the default style plants the
        guidelines in a synthetic user/assistant exchange instead.
        """
        if self.priming_style == "system":
            return [Message(role="system", content=guidelines)]
        return [
            Message(role="user", content=PRIMING_OPENER),
            Message(role="assistant", content=guidelines),
        ]

    async def close(self) -> None:
        return None


def _parse_stream_chunk(chunk: dict[str, Any]) -> StreamFragment | None:
    """Convert one OpenAI-style `chat.completion.chunk` into a fragment."""
    choices = chunk.get("choices") or []
    if not choices:
        return None
    choice = choices[0] or {}
    delta = choice.get("delta") or {}

    deltas: list[ToolCallDelta] = []
    for raw in delta.get("tool_calls") or []:
        function = raw.get("function") or {}
        deltas.append(
            ToolCallDelta(
                index=int(raw.get("index", 0) or 0),
                id=raw.get("id") or None,
                name=function.get("name") or None,
                arguments=function.get("arguments") or None,
            )
        )

    return StreamFragment(
        role=delta.get("role") or None,
        content=delta.get("content") or None,
        reasoning=delta.get("reasoning_content") or delta.get("reasoning") or None,
        tool_call_deltas=deltas,
        finish_reason=choice.get("finish_reason") or None,
    )


class OpenAICompatibleProvider(LLMProvider):
    """Chat-completions provider over HTTP with server-sent event streaming."""

    def __init__(
        self,
        model: str,
        base_url: str,
        api_key: str | None = None,
        temperature: float = 0.7,
        max_tokens: int = 8192,
        timeout: float = 120.0,
        priming_style: str = "exchange",
        client: httpx.AsyncClient | None = None,
    ):
        """Initialize provider.

        Args:
            model: Model name sent with every request
            base_url: Endpoint root, `/chat/completions` is appended
            api_key: Optional bearer token
            temperature: Sampling temperature
            max_tokens: Max tokens to generate
            timeout: Request timeout in seconds
            priming_style: "exchange" or "system"
            client: Optional preconfigured httpx client (tests inject MockTransport)
        """
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.priming_style = priming_style
        self.client = client or httpx.AsyncClient(timeout=timeout, follow_redirects=True)

    @property
    def url(self) -> str:
        return f"{self.base_url}/chat/completions"

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _body(
        self,
        messages: list[Message],
        tools: list[ToolDefinition] | None,
        stream: bool,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": self.model,
            "messages": [msg.to_wire() for msg in messages],
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "stream": stream,
        }
        if tools:
            body["tools"] = [tool.to_wire() for tool in tools]
            body["tool_choice"] = "auto"
        return body

    def _raise_for_status(self, status_code: int, body_text: str, headers: httpx.Headers) -> None:
        if status_code < 400:
            return
        detail = body_text.strip()[:500]
        if status_code in (401, 403):
            raise AuthenticationError(f"Authentication failed ({status_code}): {detail}")
        if status_code == 404:
            raise ModelNotFoundError(self.model)
        if status_code == 429:
            retry_after: float | None = None
            raw_retry = headers.get("retry-after")
            if raw_retry:
                try:
                    retry_after = float(raw_retry)
                except ValueError:
                    retry_after = None
            raise RateLimitError(f"Rate limit exceeded: {detail}", retry_after=retry_after)
        raise APIError(f"API error {status_code}: {detail}", status_code=status_code)

    async def stream(
        self,
        messages: list[Message],
        tools: list[ToolDefinition] | None = None,
    ) -> AsyncIterator[StreamFragment]:
        """Stream fragments from the endpoint."""
        body = self._body(messages, tools, stream=True)
        log.debug("Opening model stream", model=self.model, msg_count=len(messages), tools=len(tools or []))
        try:
            async with self.client.stream("POST", self.url, json=body, headers=self._headers()) as response:
                if response.status_code >= 400:
                    await response.aread()
                    self._raise_for_status(response.status_code, response.text, response.headers)

                async for line in response.aiter_lines():
                    line = line.strip()
                    if not line or not line.startswith("data:"):
                        continue
                    data = line[len("data:"):].strip()
                    if data == "[DONE]":
                        break
                    try:
                        chunk = json.loads(data)
                    except json.JSONDecodeError:
                        log.warning("Skipping undecodable stream line", line=data[:200])
                        continue
                    fragment = _parse_stream_chunk(chunk)
                    if fragment is not None:
                        yield fragment
        except httpx.TimeoutException as e:
            raise NetworkError(f"Model request timed out: {e}") from e
        except httpx.HTTPError as e:
            raise NetworkError(f"Model stream failed: {e}") from e

    async def complete(
        self,
        messages: list[Message],
        tools: list[ToolDefinition] | None = None,
    ) -> LLMResponse:
        """Generate a non-streaming completion."""
        body = self._body(messages, tools, stream=False)
        try:
            response = await self.client.post(self.url, json=body, headers=self._headers())
        except httpx.HTTPError as e:
            raise NetworkError(f"Model request failed: {e}") from e

        self._raise_for_status(response.status_code, response.text, response.headers)

        try:
            data = response.json()
        except json.JSONDecodeError as e:
            raise LLMError(f"Model response decode error: {e}") from e

        choices = data.get("choices") or []
        message = (choices[0] or {}).get("message", {}) if choices else {}
        tool_calls = [
            ToolCallRequest(
                id=str(raw.get("id", "")),
                name=str((raw.get("function") or {}).get("name", "")),
                arguments=str((raw.get("function") or {}).get("arguments", "") or ""),
            )
            for raw in message.get("tool_calls") or []
        ]
        usage = data.get("usage") or {}
        return LLMResponse(
            content=message.get("content") or "",
            tool_calls=tool_calls,
            model=str(data.get("model", self.model)),
            usage={
                "prompt_tokens": int(usage.get("prompt_tokens", 0) or 0),
                "completion_tokens": int(usage.get("completion_tokens", 0) or 0),
                "total_tokens": int(usage.get("total_tokens", 0) or 0),
            },
        )

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()


def create_provider(
    provider: str = "zai",
    model: str = "glm-4.6",
    api_key: str | None = None,
    base_url: str | None = None,
    temperature: float = 0.7,
    max_tokens: int = 8192,
    timeout: float = 120.0,
    priming_style: str = "exchange",
) -> LLMProvider:
    """Create an LLM provider.

    Args:
        provider: Provider name (zai, openai, ollama)
        model: Model name
        api_key: Optional API key
        base_url: Optional base URL (overrides the provider default)
        temperature: Default temperature
        max_tokens: Default max tokens
        timeout: Request timeout in seconds
        priming_style: How guidelines are planted at the start of the conversation

    Returns:
        Configured LLMProvider instance
    """
    name = (provider or "").strip().lower()
    resolved_base = base_url or PROVIDER_BASE_URLS.get(name)
    if not resolved_base:
        raise ValueError(
            f"Provider '{provider}' not supported. Use one of {', '.join(PROVIDER_BASE_URLS)} or set base_url."
        )
    return OpenAICompatibleProvider(
        model=model,
        base_url=resolved_base,
        api_key=api_key,
        temperature=temperature,
        max_tokens=max_tokens,
        timeout=timeout,
        priming_style=priming_style,
    )


# Global provider instance
_provider: LLMProvider | None = None


def get_provider() -> LLMProvider:
    """Get the global LLM provider instance."""
    global _provider
    if _provider is None:
        from deckhand.config import get_config

        cfg = get_config()
        _provider = create_provider(
            provider=cfg.model.provider,
            model=cfg.model.model,
            api_key=cfg.model.api_key or None,
            base_url=cfg.model.base_url or None,
            temperature=cfg.model.temperature,
            max_tokens=cfg.model.max_tokens,
            timeout=cfg.model.request_timeout,
            priming_style=cfg.model.priming,
        )
    return _provider


def set_provider(provider: LLMProvider | None) -> None:
    """Set the global LLM provider instance."""
    global _provider
    _provider = provider

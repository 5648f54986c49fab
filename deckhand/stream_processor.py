"""Full-stream consumption of model responses.

The processor drains a response stream completely before handing anything
back, so final text can never start rendering while the model is still
emitting tool-call arguments. Fragments are folded into one message by
`reduce_fragment`, which addresses tool calls by their explicit index.
"""

from dataclasses import dataclass, field, replace
from typing import AsyncIterable

from deckhand.llm import StreamFragment, ToolCallRequest
from deckhand.logging import get_logger

log = get_logger(__name__)

FINISH_STOP = "stop"
FINISH_TOOL_CALLS = "tool_calls"
FINISH_LENGTH = "length"


@dataclass
class AccumulatedMessage:
    """Message assembled from the fragments seen so far."""

    role: str | None = None
    content: str = ""
    reasoning: str = ""
    tool_calls: list[ToolCallRequest | None] = field(default_factory=list)
    finish_reason: str | None = None

    def finalized_tool_calls(self) -> list[ToolCallRequest]:
        """Tool calls in index order, skipping indices never populated.

        Every returned call carries a distinct id: a missing or repeated id is
        replaced with `call_<index>` so each result can be matched to its call.
        """
        calls: list[ToolCallRequest] = []
        seen: set[str] = set()
        for index, call in enumerate(self.tool_calls):
            if call is None:
                continue
            if not call.id or call.id in seen:
                fallback = f"call_{index}"
                suffix = 1
                while fallback in seen:
                    fallback = f"call_{index}_{suffix}"
                    suffix += 1
                call = replace(call, id=fallback)
            seen.add(call.id)
            calls.append(call)
        return calls


def reduce_fragment(accumulated: AccumulatedMessage, fragment: StreamFragment) -> AccumulatedMessage:
    """Fold one fragment into the accumulated message.

    Returns a new AccumulatedMessage; the input is left untouched.
    """
    tool_calls = list(accumulated.tool_calls)
    for delta in fragment.tool_call_deltas:
        index = max(0, int(delta.index))
        if index >= len(tool_calls):
            tool_calls.extend([None] * (index + 1 - len(tool_calls)))
        current = tool_calls[index] or ToolCallRequest(id="", name="", arguments="")
        tool_calls[index] = replace(
            current,
            id=delta.id if delta.id else current.id,
            name=current.name + (delta.name or ""),
            arguments=current.arguments + (delta.arguments or ""),
        )

    return AccumulatedMessage(
        role=accumulated.role or fragment.role,
        content=accumulated.content + (fragment.content or ""),
        reasoning=accumulated.reasoning + (fragment.reasoning or ""),
        tool_calls=tool_calls,
        finish_reason=fragment.finish_reason or accumulated.finish_reason,
    )


@dataclass
class ProcessorResult:
    """Outcome of one fully drained model round."""

    thinking: str
    content: str
    tool_calls: list[ToolCallRequest]
    finish_reason: str
    message: AccumulatedMessage
    interrupted: bool = False
    interruption: str | None = None


class StreamProcessor:
    """Drain a fragment stream and return a single ProcessorResult."""

    def __init__(self):
        self._message = AccumulatedMessage()
        self._fragments = 0

    async def process(self, stream: AsyncIterable[StreamFragment]) -> ProcessorResult:
        """Consume the whole stream, then return the assembled result.

        A transport failure before any fragment arrives propagates. A failure
        after fragments were received ends the round with whatever was
        accumulated, flagged as interrupted; the finish reason then falls
        back to "stop" unless the endpoint already sent one.
        """
        self._message = AccumulatedMessage()
        self._fragments = 0
        interruption: str | None = None

        try:
            async for fragment in stream:
                self._fragments += 1
                self._message = reduce_fragment(self._message, fragment)
        except Exception as e:
            if self._fragments == 0:
                raise
            interruption = str(e) or type(e).__name__
            log.warning(
                "Model stream interrupted",
                fragments=self._fragments,
                error=interruption,
            )

        message = self._message
        return ProcessorResult(
            thinking=message.reasoning,
            content=message.content,
            tool_calls=message.finalized_tool_calls(),
            finish_reason=message.finish_reason or FINISH_STOP,
            message=message,
            interrupted=interruption is not None,
            interruption=interruption,
        )

    @staticmethod
    def has_tool_calls(result: ProcessorResult) -> bool:
        """True only when the endpoint ended on tool_calls and produced at least one."""
        return result.finish_reason == FINISH_TOOL_CALLS and len(result.tool_calls) > 0

    @property
    def message(self) -> AccumulatedMessage:
        return self._message

    @property
    def fragment_count(self) -> int:
        return self._fragments

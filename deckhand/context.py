"""Conversation compaction.

Long conversations are bounded by replacing the middle of the history with a
single summary message. The leading priming messages and the most recent
messages are always kept verbatim.
"""

import re

from deckhand import error_handler
from deckhand.config import Config, ContextConfig, get_config
from deckhand.instructions import InstructionLoader, get_instruction_loader
from deckhand.llm import LLMProvider, Message
from deckhand.logging import get_logger

log = get_logger(__name__)

SUMMARY_TAG = "context_summary"
EMPTY_SUMMARY = "No earlier messages needed summarizing."


def format_summary_message(summary: str) -> Message:
    return Message(
        role="system",
        content=f"<{SUMMARY_TAG}>\nPrevious conversation summary:\n{summary.strip()}\n</{SUMMARY_TAG}>",
    )


def is_summary_message(message: Message) -> bool:
    return message.role == "system" and message.content.startswith(f"<{SUMMARY_TAG}>")


def format_transcript(
    messages: list[Message],
    max_total_chars: int = 24000,
    max_item_chars: int = 600,
) -> str:
    """Render messages as numbered lines for the summarization prompt."""
    lines: list[str] = []
    consumed = 0
    for idx, msg in enumerate(messages, start=1):
        label = f"{idx}. {msg.role or 'unknown'}"
        if msg.tool_calls:
            label += "(" + ", ".join(call.name for call in msg.tool_calls) + ")"
        content = re.sub(r"\s+", " ", (msg.content or "").strip())
        if len(content) > max_item_chars:
            content = content[:max_item_chars].rstrip() + "... [truncated]"
        line = f"{label}: {content}"
        if consumed + len(line) > max_total_chars:
            lines.append("[... remaining conversation truncated for summarization ...]")
            break
        lines.append(line)
        consumed += len(line)
    return "\n".join(lines)


class ContextCompactor:
    """Keep a conversation under a message ceiling by summarizing its middle."""

    def __init__(
        self,
        provider: LLMProvider,
        max_messages: int | None = None,
        keep_recent: int | None = None,
        instructions: InstructionLoader | None = None,
        config: Config | None = None,
        max_retries: int = 2,
    ):
        settings = (config or get_config()).context
        # Overrides pass through the same window check as the config section.
        window = ContextConfig(
            max_messages=max_messages or settings.max_messages,
            keep_recent=keep_recent if keep_recent is not None else settings.keep_recent,
        )
        self.provider = provider
        self.max_messages = window.max_messages
        self.keep_recent = window.keep_recent
        self.instructions = instructions or get_instruction_loader()
        self.max_retries = max_retries
        self._summary: str | None = None
        self.compactions = 0

    @property
    def summary(self) -> str | None:
        """Most recent summary produced, if any."""
        return self._summary

    def reset(self) -> None:
        self._summary = None
        self.compactions = 0

    def needs_compaction(self, messages: list[Message]) -> bool:
        return len(messages) > self.max_messages

    def partition(
        self,
        messages: list[Message],
        leading_count: int,
    ) -> tuple[list[Message], list[Message], list[Message]]:
        """Split into (leading, middle, trailing).

        The trailing window never starts with a tool message, since its
        originating assistant message would be summarized away.
        """
        leading = messages[:leading_count]
        rest = messages[leading_count:]
        split = max(0, len(rest) - self.keep_recent)
        while split < len(rest) and rest[split].role == "tool":
            split += 1
        return leading, rest[:split], rest[split:]

    async def _summarize(self, middle: list[Message]) -> str:
        previous = f"Earlier summary:\n{self._summary}\n\n" if self._summary else ""
        prompt = self.instructions.render(
            "compaction_user_prompt.md",
            previous_summary=previous,
            transcript=format_transcript(middle),
        )
        request = [
            Message(role="system", content=self.instructions.load("compaction_system_prompt.md")),
            Message(role="user", content=prompt),
        ]

        async def _call():
            return await self.provider.complete(request, tools=None)

        response = await error_handler.with_retry(_call, max_retries=self.max_retries)
        summary = (response.content or "").strip()
        if not summary:
            raise ValueError("summarization returned no text")
        return summary

    async def compact(self, messages: list[Message], leading_count: int) -> list[Message]:
        """Return leading + [summary] + trailing.

        An empty middle produces no model call; the previous summary (or a
        placeholder) fills the summary slot.

        Raises:
            Whatever the summarization request raises.
        """
        leading, middle, trailing = self.partition(messages, leading_count)
        if middle:
            summary = await self._summarize(middle)
        else:
            summary = self._summary or EMPTY_SUMMARY

        self._summary = summary
        self.compactions += 1
        log.info(
            "Conversation compacted",
            summarized=len(middle),
            kept_leading=len(leading),
            kept_recent=len(trailing),
        )
        return [*leading, format_summary_message(summary), *trailing]

    async def maybe_compact(self, messages: list[Message], leading_count: int) -> list[Message] | None:
        """Compact when over the ceiling; None means the history is unchanged.

        A failed summarization is logged and skipped so the user turn
        proceeds; compaction is attempted again before the next message.
        """
        if not self.needs_compaction(messages):
            return None
        try:
            return await self.compact(messages, leading_count)
        except Exception as e:
            error_handler.log_error(e, operation="context_compaction", message_count=len(messages))
            log.warning("Context compaction skipped", error=str(e))
            return None

"""Agent loop: one conversation driven through model rounds and tool calls."""

import asyncio
import re
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import AsyncIterator, Literal

from deckhand import error_handler
from deckhand.cancellation import CancellationToken
from deckhand.config import Config, get_config
from deckhand.confirmation import SessionContext
from deckhand.context import ContextCompactor
from deckhand.dispatcher import ToolDispatcher
from deckhand.exceptions import ConversationError, DeckhandError, OrchestrationError
from deckhand.instructions import InstructionLoader, get_instruction_loader, load_project_instructions
from deckhand.llm import LLMProvider, Message, ToolCallRequest, get_provider
from deckhand.logging import bind_round, get_logger, new_turn_id, turn_context
from deckhand.state_machine import ChatState, ChatStateMachine, StateTransition
from deckhand.stream_processor import ProcessorResult, StreamProcessor
from deckhand.subagents import SubAgentLauncher
from deckhand.tools import ToolRegistry, ToolResult, create_default_registry

log = get_logger(__name__)

CANCELLED_MARKER = "[Operation cancelled by user]"
MAX_ROUNDS_NOTICE = "Maximum tool execution rounds reached. Stopping to prevent infinite loops."

EventType = Literal["token_count", "thinking", "tool_calls", "tool_result", "content", "done", "cancelled", "error"]
TERMINAL_EVENTS = frozenset({"done", "cancelled", "error"})

_WORD_SPLIT = re.compile(r"(\s+)")


@dataclass
class StreamEvent:
    """One event of a turn, in emission order."""

    type: EventType
    content: str | None = None
    token_count: int | None = None
    tool_calls: list[ToolCallRequest] | None = None
    tool_call: ToolCallRequest | None = None
    tool_result: ToolResult | None = None
    error: BaseException | None = None

    @property
    def is_terminal(self) -> bool:
        return self.type in TERMINAL_EVENTS


@dataclass
class ChatEntry:
    """UI-facing projection of the conversation."""

    type: Literal["user", "assistant", "tool_call", "tool_result"]
    content: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    tool_calls: list[ToolCallRequest] | None = None
    tool_call: ToolCallRequest | None = None
    tool_result: ToolResult | None = None


class Agent:
    """Owns one conversation and processes user turns against it.

    A turn runs as an async generator of StreamEvents. Each turn ends with
    exactly one terminal event: `done`, `cancelled` or `error`.
    """

    def __init__(
        self,
        provider: LLMProvider | None = None,
        session: SessionContext | None = None,
        registry: ToolRegistry | None = None,
        config: Config | None = None,
        max_tool_rounds: int | None = None,
        system_prompt: str | None = None,
        enable_delegation: bool = True,
        instructions: InstructionLoader | None = None,
        compactor: ContextCompactor | None = None,
    ):
        """Initialize the agent.

        Args:
            provider: Model endpoint (defaults to the global provider)
            session: Confirmation state shared with sub-agents
            registry: Tools available to this agent
            config: Settings (defaults to the global config)
            max_tool_rounds: Per-turn ceiling on tool rounds
            system_prompt: Replaces the default guidelines (sub-agents)
            enable_delegation: Advertise `agent__*` delegation tools
            instructions: Prompt template loader
            compactor: Context compactor (built from config when omitted)
        """
        self.config = config or get_config()
        self.provider = provider or get_provider()
        self.session = session or SessionContext()
        self.registry = registry or create_default_registry()
        self.instructions = instructions or get_instruction_loader()
        self.max_tool_rounds = max(1, max_tool_rounds or self.config.agent.max_tool_rounds)
        self.compactor = compactor or ContextCompactor(
            self.provider,
            instructions=self.instructions,
            config=self.config,
        )

        launcher = None
        if enable_delegation:
            launcher = SubAgentLauncher(
                self.provider,
                self.session,
                base_path=lambda: self.registry.runtime_base_path,
                config=self.config,
                instructions=self.instructions,
            )
        self.dispatcher = ToolDispatcher(self.registry, self.session, launcher)

        self.state_machine = ChatStateMachine()
        self._system_prompt = system_prompt
        self._priming = self._build_priming()
        self._messages: list[Message] = list(self._priming)
        self._chat_history: list[ChatEntry] = []
        self._cancel_token: CancellationToken | None = None
        self._turn_active = False
        self._tools_used: list[str] = []
        self.last_error: BaseException | None = None
        self.last_usage: dict[str, int] = self._empty_usage()
        self.total_usage: dict[str, int] = self._empty_usage()

    # ------------------------------------------------------------------
    # Conversation construction
    # ------------------------------------------------------------------

    def _build_priming(self) -> list[Message]:
        if self._system_prompt is not None:
            guidelines = self._system_prompt
        else:
            project = load_project_instructions(self.registry.runtime_base_path)
            custom = (
                f"\nCUSTOM INSTRUCTIONS:\n{project}\n\n"
                "The above custom instructions should be followed alongside the standard guidelines."
                if project
                else ""
            )
            guidelines = self.instructions.render(
                "guidelines.md",
                cwd=self.registry.runtime_base_path,
                custom_instructions=custom,
            )
        return self.provider.build_priming(guidelines)

    @property
    def leading_count(self) -> int:
        """Number of priming messages that are never compacted."""
        return len(self._priming)

    def _pending_tool_call_ids(self) -> list[str]:
        """Tool-call ids of the latest assistant message not yet answered."""
        answered: set[str] = set()
        for msg in reversed(self._messages):
            if msg.role == "tool":
                answered.add(msg.tool_call_id or "")
                continue
            if msg.role == "assistant" and msg.tool_calls:
                return [call.id for call in msg.tool_calls if call.id not in answered]
            return []
        return []

    def _append_assistant(self, content: str, tool_calls: list[ToolCallRequest] | None = None) -> None:
        if self._pending_tool_call_ids():
            raise ConversationError("Assistant message appended while tool calls are unanswered")
        self._messages.append(Message(role="assistant", content=content or "", tool_calls=tool_calls or None))
        if tool_calls:
            self._chat_history.append(
                ChatEntry(type="assistant", content=content or "Using tools to help you...", tool_calls=tool_calls)
            )
            for call in tool_calls:
                self._chat_history.append(ChatEntry(type="tool_call", content=call.name, tool_call=call))
        else:
            self._chat_history.append(ChatEntry(type="assistant", content=content or ""))

    def _require_pending(self, call: ToolCallRequest) -> None:
        if call.id not in self._pending_tool_call_ids():
            raise ConversationError(
                f"Tool result for '{call.id}' does not answer a pending call of the previous assistant message"
            )

    def _append_tool_result(self, call: ToolCallRequest, result: ToolResult) -> None:
        self._require_pending(call)
        content = result.to_message_content()
        self._messages.append(Message(role="tool", content=content, tool_call_id=call.id))
        self._chat_history.append(ChatEntry(type="tool_result", content=content, tool_call=call, tool_result=result))

    def _close_pending_tool_calls(self, reason: str) -> None:
        """Answer unexecuted calls so the history stays valid for the next request."""
        pending = set(self._pending_tool_call_ids())
        if not pending:
            return
        for msg in reversed(self._messages):
            if msg.role == "assistant" and msg.tool_calls:
                for call in msg.tool_calls:
                    if call.id in pending:
                        self._messages.append(Message(role="tool", content=reason, tool_call_id=call.id))
                break

    async def _compact_if_needed(self) -> None:
        compacted = await self.compactor.maybe_compact(self._messages, self.leading_count)
        if compacted is not None:
            self._messages = compacted

    # ------------------------------------------------------------------
    # Usage accounting
    # ------------------------------------------------------------------

    @staticmethod
    def _empty_usage() -> dict[str, int]:
        return {
            "prompt_tokens": 0,
            "completion_tokens": 0,
            "total_tokens": 0,
        }

    def _record_round_usage(self, turn_usage: dict[str, int], result: ProcessorResult) -> None:
        prompt = self.provider.count_message_tokens(self._messages)
        completion = self.provider.count_tokens(result.content) + self.provider.count_tokens(result.thinking)
        for call in result.tool_calls:
            completion += self.provider.count_tokens(call.name) + self.provider.count_tokens(call.arguments)
        turn_usage["prompt_tokens"] += prompt
        turn_usage["completion_tokens"] += completion
        turn_usage["total_tokens"] += prompt + completion

    def _finalize_turn_usage(self, turn_usage: dict[str, int]) -> None:
        self.last_usage = turn_usage
        for key in self.total_usage:
            self.total_usage[key] += int(turn_usage.get(key, 0))

    @property
    def usage(self) -> dict[str, int]:
        """Estimated token usage across all turns."""
        return dict(self.total_usage)

    # ------------------------------------------------------------------
    # Turn processing
    # ------------------------------------------------------------------

    async def submit_user_message(self, text: str) -> AsyncIterator[StreamEvent]:
        """Process one user message, yielding events until a terminal one.

        Raises:
            OrchestrationError: another turn is still in progress
        """
        if self._turn_active:
            raise OrchestrationError("A turn is already in progress")
        self._turn_active = True
        token = CancellationToken()
        self._cancel_token = token
        self.state_machine.reset()
        self.last_error = None
        turn_usage = self._empty_usage()
        try:
            with turn_context(new_turn_id()):
                async for event in self._run_turn(text, token, turn_usage):
                    yield event
        finally:
            self._turn_active = False
            self._cancel_token = None
            self._finalize_turn_usage(turn_usage)

    async def _run_turn(
        self,
        text: str,
        token: CancellationToken,
        turn_usage: dict[str, int],
    ) -> AsyncIterator[StreamEvent]:
        await self._compact_if_needed()
        self._messages.append(Message(role="user", content=text))
        self._chat_history.append(ChatEntry(type="user", content=text))

        input_tokens = self.provider.count_message_tokens(self._messages)
        yield StreamEvent(type="token_count", token_count=input_tokens)

        rounds = 0
        try:
            while rounds < self.max_tool_rounds:
                if token.cancelled:
                    yield self._finish_cancelled()
                    return

                bind_round(rounds + 1)
                self.state_machine.transition(ChatState.THINKING, round=rounds + 1)
                result = await self._request_round()
                self._record_round_usage(turn_usage, result)

                if token.cancelled:
                    yield self._finish_cancelled()
                    return

                if result.thinking and self.state_machine.can_show_thinking():
                    delay = self.config.agent.thinking_chunk_delay
                    for char in result.thinking:
                        yield StreamEvent(type="thinking", content=char)
                        if delay:
                            await asyncio.sleep(delay)

                if StreamProcessor.has_tool_calls(result):
                    self.state_machine.transition(ChatState.PLANNING_TOOLS, tool_calls=len(result.tool_calls))
                    self.state_machine.transition(ChatState.EXECUTING_TOOLS)
                    rounds += 1
                    yield StreamEvent(type="tool_calls", tool_calls=list(result.tool_calls))
                    self._append_assistant(result.content, result.tool_calls)

                    for call in result.tool_calls:
                        if token.cancelled:
                            yield self._finish_cancelled()
                            return
                        if not self.state_machine.can_execute_tools():
                            raise OrchestrationError(f"Tool execution attempted in state {self.state_machine.state.value}")
                        self._require_pending(call)
                        tool_result = await self.dispatcher.execute(call, token)
                        self._tools_used.append(call.name)
                        self._append_tool_result(call, tool_result)
                        yield StreamEvent(type="tool_result", tool_call=call, tool_result=tool_result)

                    input_tokens = self.provider.count_message_tokens(self._messages)
                    yield StreamEvent(
                        type="token_count",
                        token_count=input_tokens + self.provider.count_tokens(result.content),
                    )
                    continue

                self.state_machine.transition(ChatState.RESPONDING)
                if result.content:
                    delay = self.config.agent.content_chunk_delay
                    for piece in _WORD_SPLIT.split(result.content):
                        if not piece:
                            continue
                        if token.cancelled:
                            yield self._finish_cancelled()
                            return
                        if not self.state_machine.can_stream_content():
                            raise OrchestrationError(
                                f"Content streamed in state {self.state_machine.state.value}"
                            )
                        yield StreamEvent(type="content", content=piece)
                        if delay:
                            await asyncio.sleep(delay)
                    yield StreamEvent(
                        type="token_count",
                        token_count=input_tokens + self.provider.count_tokens(result.content),
                    )

                self._append_assistant(result.content)
                self.state_machine.transition(ChatState.DONE)
                yield StreamEvent(type="done")
                return

            log.warning("Tool round ceiling reached", max_tool_rounds=self.max_tool_rounds)
            yield StreamEvent(type="content", content=f"\n\n{MAX_ROUNDS_NOTICE}")
            self.state_machine.transition(ChatState.DONE, reason="max_tool_rounds")
            yield StreamEvent(type="done")
        except asyncio.CancelledError:
            self._close_pending_tool_calls(CANCELLED_MARKER)
            raise
        except Exception as e:
            yield self._finish_error(e)

    async def _request_round(self) -> ProcessorResult:
        """Open one stream with the current history and drain it completely."""
        stream = self.provider.stream(list(self._messages), self.dispatcher.definitions())
        return await StreamProcessor().process(stream)

    def _enter_error_state(self, **metadata: object) -> None:
        if self.state_machine.can_transition(ChatState.ERROR):
            self.state_machine.transition(ChatState.ERROR, **metadata)
        else:
            self.state_machine.force_state(ChatState.ERROR)

    def _finish_cancelled(self) -> StreamEvent:
        self._close_pending_tool_calls(CANCELLED_MARKER)
        self._enter_error_state(cancelled=True)
        log.info("Turn cancelled", reason=self._cancel_token.reason if self._cancel_token else None)
        return StreamEvent(type="cancelled", content=CANCELLED_MARKER)

    def _finish_error(self, error: Exception) -> StreamEvent:
        self.last_error = error
        self._close_pending_tool_calls(f"Not executed: {error_handler.to_simple_message(error)}")
        if not self.state_machine.is_error():
            self._enter_error_state(error=type(error).__name__)
        error_handler.log_error(error, operation="agent_turn", state=self.state_machine.state.value)
        if isinstance(error, DeckhandError):
            message = error.format_for_user()
        else:
            message = error_handler.handle(error)
        return StreamEvent(type="error", content=message, error=error)

    def cancel_current_turn(self) -> bool:
        """Signal the in-flight turn to stop. Returns False when no turn is running."""
        if self._cancel_token is None:
            return False
        self._cancel_token.cancel()
        return True

    @property
    def is_busy(self) -> bool:
        return self._turn_active

    async def run(self, text: str) -> str:
        """Run one turn to completion and return the final text.

        Raises:
            The turn's error when it ends with an `error` event.
        """
        parts: list[str] = []
        failure: StreamEvent | None = None
        async for event in self.submit_user_message(text):
            if event.type == "content" and event.content:
                parts.append(event.content)
            elif event.type == "error":
                failure = event
        if failure is not None:
            raise failure.error or DeckhandError(failure.content or "Turn failed")
        return "".join(parts).strip()

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def get_history(self) -> list[Message]:
        return list(self._messages)

    def get_chat_history(self) -> list[ChatEntry]:
        return list(self._chat_history)

    def get_context_summary(self) -> str | None:
        return self.compactor.summary

    @property
    def state_history(self) -> list[StateTransition]:
        """Transitions recorded during the current or last turn."""
        return self.state_machine.history()

    def tools_used(self) -> list[str]:
        """Distinct tool names executed by this agent, first-use order."""
        return list(dict.fromkeys(self._tools_used))

    def clear_history(self) -> None:
        """Drop the conversation back to its priming messages."""
        if self._turn_active:
            raise OrchestrationError("Cannot clear history while a turn is in progress")
        self._messages = list(self._priming)
        self._chat_history = []
        self._tools_used = []
        self.compactor.reset()

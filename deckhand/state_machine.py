"""Chat turn state machine.

Guards which side effects are legal at each point of a turn: reasoning may
only be shown while thinking or planning tools, tools may only run while
executing tools, and final content may only stream while responding.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from deckhand.exceptions import InvalidTransitionError
from deckhand.logging import get_logger

log = get_logger(__name__)


class ChatState(str, Enum):
    """Phases of a single user turn."""

    IDLE = "idle"
    THINKING = "thinking"
    PLANNING_TOOLS = "planning_tools"
    EXECUTING_TOOLS = "executing_tools"
    RESPONDING = "responding"
    DONE = "done"
    ERROR = "error"


VALID_TRANSITIONS: dict[ChatState, frozenset[ChatState]] = {
    ChatState.IDLE: frozenset({ChatState.THINKING}),
    ChatState.THINKING: frozenset(
        {ChatState.PLANNING_TOOLS, ChatState.RESPONDING, ChatState.DONE, ChatState.ERROR}
    ),
    ChatState.PLANNING_TOOLS: frozenset({ChatState.EXECUTING_TOOLS, ChatState.ERROR}),
    ChatState.EXECUTING_TOOLS: frozenset(
        {ChatState.THINKING, ChatState.RESPONDING, ChatState.DONE, ChatState.ERROR}
    ),
    ChatState.RESPONDING: frozenset({ChatState.DONE, ChatState.ERROR}),
    ChatState.DONE: frozenset({ChatState.IDLE}),
    ChatState.ERROR: frozenset({ChatState.IDLE}),
}


@dataclass(frozen=True)
class StateTransition:
    """One recorded transition."""

    from_state: ChatState
    to_state: ChatState
    timestamp: float
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Checkpoint:
    state: ChatState
    history_length: int


class ChatStateMachine:
    """Finite-state guard for one turn."""

    def __init__(self):
        self._state = ChatState.IDLE
        self._history: list[StateTransition] = []

    @property
    def state(self) -> ChatState:
        return self._state

    def can_transition(self, to: ChatState) -> bool:
        return ChatState(to) in VALID_TRANSITIONS[self._state]

    def transition(self, to: ChatState | str, **metadata: Any) -> StateTransition:
        """Move to a new state.

        Raises:
            InvalidTransitionError if the table does not allow it. The
            machine is left in `error` so the turn cannot continue.
        """
        target = ChatState(to)
        allowed = VALID_TRANSITIONS[self._state]
        if target not in allowed:
            source = self._state
            self.force_state(ChatState.ERROR)
            raise InvalidTransitionError(
                source.value,
                target.value,
                sorted(state.value for state in allowed),
            )

        record = StateTransition(
            from_state=self._state,
            to_state=target,
            timestamp=time.monotonic(),
            metadata=dict(metadata),
        )
        self._state = target
        self._history.append(record)
        log.debug("Chat state transition", from_state=record.from_state.value, to_state=target.value)
        return record

    def can_stream_content(self) -> bool:
        return self._state is ChatState.RESPONDING

    def can_execute_tools(self) -> bool:
        return self._state is ChatState.EXECUTING_TOOLS

    def can_show_thinking(self) -> bool:
        return self._state in (ChatState.THINKING, ChatState.PLANNING_TOOLS)

    def is_complete(self) -> bool:
        return self._state in (ChatState.DONE, ChatState.ERROR)

    def is_error(self) -> bool:
        return self._state is ChatState.ERROR

    def is_idle(self) -> bool:
        return self._state is ChatState.IDLE

    def reset(self) -> None:
        """Return to idle and forget history (start of a new turn)."""
        self._state = ChatState.IDLE
        self._history = []

    def history(self) -> list[StateTransition]:
        return list(self._history)

    def state_duration(self) -> float:
        """Seconds spent in the current state."""
        if not self._history:
            return 0.0
        return time.monotonic() - self._history[-1].timestamp

    def total_duration(self) -> float:
        """Seconds between the first and last recorded transitions."""
        if not self._history:
            return 0.0
        return self._history[-1].timestamp - self._history[0].timestamp

    def force_state(self, state: ChatState | str) -> None:
        """Set state without validation (error recovery only)."""
        forced = ChatState(state)
        if forced is not self._state:
            self._history.append(
                StateTransition(
                    from_state=self._state,
                    to_state=forced,
                    timestamp=time.monotonic(),
                    metadata={"forced": True},
                )
            )
        self._state = forced

    def checkpoint(self) -> Checkpoint:
        return Checkpoint(state=self._state, history_length=len(self._history))

    def restore(self, checkpoint: Checkpoint) -> None:
        """Roll back to a checkpoint taken earlier in this turn."""
        self._state = checkpoint.state
        self._history = self._history[: checkpoint.history_length]

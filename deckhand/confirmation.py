"""Confirmation gate for side-effecting operations.

A `SessionContext` is created once per session and handed to the dispatcher
and the agent. It owns the standing-acceptance flags, so "don't ask again"
answers live exactly as long as the session does.
"""

import inspect
from dataclasses import dataclass
from typing import Awaitable, Callable, Literal, Protocol

from deckhand.logging import get_logger

log = get_logger(__name__)

OperationKind = Literal["file", "bash"]


@dataclass
class ConfirmationRequest:
    """Describes an operation awaiting approval."""

    operation: str
    target: str
    kind: OperationKind = "file"
    preview: str = ""


@dataclass
class ConfirmationResult:
    confirmed: bool
    feedback: str | None = None
    standing_acceptance: bool = False


class ConfirmationGate(Protocol):
    async def request_confirmation(self, request: ConfirmationRequest) -> ConfirmationResult: ...


class AutoApproveGate:
    """Approves everything (headless runs, sub-agents)."""

    async def request_confirmation(self, request: ConfirmationRequest) -> ConfirmationResult:
        return ConfirmationResult(confirmed=True)


class RejectAllGate:
    """Rejects everything (read-only sessions)."""

    def __init__(self, feedback: str = "Operation rejected: session is read-only"):
        self.feedback = feedback

    async def request_confirmation(self, request: ConfirmationRequest) -> ConfirmationResult:
        return ConfirmationResult(confirmed=False, feedback=self.feedback)


ConfirmationCallback = Callable[
    [ConfirmationRequest],
    ConfirmationResult | Awaitable[ConfirmationResult],
]


class CallbackGate:
    """Delegates the decision to a UI callback (sync or async)."""

    def __init__(self, callback: ConfirmationCallback):
        self._callback = callback

    async def request_confirmation(self, request: ConfirmationRequest) -> ConfirmationResult:
        result = self._callback(request)
        if inspect.isawaitable(result):
            result = await result
        return result


class SessionContext:
    """Per-session confirmation state."""

    def __init__(self, gate: ConfirmationGate | None = None):
        self.gate: ConfirmationGate = gate or AutoApproveGate()
        self.file_operations = False
        self.bash_commands = False
        self.all_operations = False

    def is_accepted(self, kind: OperationKind) -> bool:
        if self.all_operations:
            return True
        if kind == "bash":
            return self.bash_commands
        return self.file_operations

    def accept(self, kind: OperationKind) -> None:
        if kind == "bash":
            self.bash_commands = True
        else:
            self.file_operations = True

    def flags(self) -> dict[str, bool]:
        return {
            "file_operations": self.file_operations,
            "bash_commands": self.bash_commands,
            "all_operations": self.all_operations,
        }

    def reset(self) -> None:
        """Drop all standing acceptances."""
        self.file_operations = False
        self.bash_commands = False
        self.all_operations = False

    async def confirm(self, request: ConfirmationRequest) -> ConfirmationResult:
        """Ask the gate unless this class of operation is already accepted."""
        if self.is_accepted(request.kind):
            return ConfirmationResult(confirmed=True)

        result = await self.gate.request_confirmation(request)
        if result.confirmed and result.standing_acceptance:
            self.accept(request.kind)
            log.info("Standing acceptance granted", kind=request.kind)
        if not result.confirmed:
            log.info("Operation rejected", operation=request.operation, target=request.target)
        return result

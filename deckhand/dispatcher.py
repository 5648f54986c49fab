"""Route finalized tool calls to their implementations.

Every outcome, including unknown tools, malformed arguments and failures
inside a tool, comes back as a ToolResult so the conversation can always
be answered with a tool message.
"""

import asyncio
import json
from dataclasses import dataclass
from typing import Any

import pydantic
from pydantic import Field

from deckhand import error_handler
from deckhand.cancellation import CancellationToken
from deckhand.confirmation import SessionContext
from deckhand.exceptions import DeckhandError, ToolArgumentsError, ToolNotFoundError
from deckhand.llm import ToolCallRequest, ToolDefinition
from deckhand.logging import get_logger
from deckhand.subagents import DELEGATION_PREFIX, SubAgentLauncher, delegation_tool_definitions
from deckhand.tools.registry import Tool, ToolArgs, ToolContext, ToolRegistry, ToolResult

log = get_logger(__name__)


class DelegationArgs(ToolArgs):
    task_description: str = Field(min_length=1)
    thoroughness: str = "medium"


@dataclass
class ToolInvocation:
    """A tool call decoded into its typed argument record."""

    call: ToolCallRequest
    args: ToolArgs
    tool: Tool | None = None
    agent_type: str | None = None

    @property
    def is_delegation(self) -> bool:
        return self.agent_type is not None


def _decode_arguments(call: ToolCallRequest) -> dict[str, Any]:
    raw = (call.arguments or "").strip()
    if not raw:
        return {}
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ToolArgumentsError(call.name, call.arguments, f"malformed JSON ({e.msg})") from e
    if not isinstance(data, dict):
        raise ToolArgumentsError(call.name, call.arguments, "arguments must be a JSON object")
    return data


def _validation_reason(error: pydantic.ValidationError) -> str:
    parts = []
    for item in error.errors():
        location = ".".join(str(piece) for piece in item.get("loc", ())) or "arguments"
        parts.append(f"{location}: {item.get('msg', 'invalid')}")
    return "; ".join(parts)


class ToolDispatcher:
    """Decode, confirm and execute tool calls for one agent."""

    def __init__(
        self,
        registry: ToolRegistry,
        session: SessionContext,
        launcher: SubAgentLauncher | None = None,
    ):
        self.registry = registry
        self.session = session
        self.launcher = launcher

    def definitions(self) -> list[ToolDefinition]:
        """Tool definitions advertised to the model."""
        definitions = self.registry.get_definitions()
        if self.launcher is not None:
            definitions.extend(delegation_tool_definitions())
        return definitions

    def decode(self, call: ToolCallRequest) -> ToolInvocation:
        """Turn a raw call into a ToolInvocation.

        Raises:
            ToolNotFoundError: name matches no tool and no delegation target
            ToolArgumentsError: arguments are not valid for the tool
        """
        if call.name.startswith(DELEGATION_PREFIX):
            if self.launcher is None:
                raise ToolNotFoundError(call.name)
            model: type[ToolArgs] = DelegationArgs
            tool = None
            agent_type: str | None = call.name[len(DELEGATION_PREFIX):]
        else:
            tool = self.registry.get(call.name)
            model = tool.args_model
            agent_type = None

        data = _decode_arguments(call)
        try:
            args = model.model_validate(data)
        except pydantic.ValidationError as e:
            raise ToolArgumentsError(call.name, call.arguments, _validation_reason(e)) from e
        return ToolInvocation(call=call, args=args, tool=tool, agent_type=agent_type)

    async def execute(
        self,
        call: ToolCallRequest,
        cancel_token: CancellationToken | None = None,
    ) -> ToolResult:
        """Execute one tool call. Never raises for tool-level failures."""
        try:
            invocation = self.decode(call)
            if invocation.tool is None:
                delegation = invocation.args
                return await self.launcher.launch(
                    invocation.agent_type or "",
                    delegation.task_description,
                    delegation.thoroughness,
                    cancel_token=cancel_token,
                )

            context = ToolContext(
                session=self.session,
                workspace=self.registry.workspace,
                cancel_token=cancel_token,
            )
            log.debug("Executing tool", tool=call.name, tool_call_id=call.id)
            return await invocation.tool.execute(invocation.args, context)
        except asyncio.CancelledError:
            raise
        except DeckhandError as e:
            log.warning("Tool call failed", tool=call.name, tool_call_id=call.id, error_code=e.code, error=e.message)
            return ToolResult(
                success=False,
                error=error_handler.to_simple_message(e),
                metadata={"error_code": e.code},
            )
        except Exception as e:
            error_handler.log_error(e, tool=call.name, tool_call_id=call.id)
            return ToolResult(success=False, error=f"Tool execution error: {e}")

"""Tool registry and base tool class."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, ClassVar

from pydantic import BaseModel, ConfigDict, Field, model_validator

from deckhand.cancellation import CancellationToken
from deckhand.confirmation import OperationKind, SessionContext
from deckhand.exceptions import ToolNotFoundError
from deckhand.llm import ToolDefinition
from deckhand.logging import get_logger

log = get_logger(__name__)


def _normalize_tool_name(value: str) -> str:
    """Normalize tool names for policy comparisons."""
    return str(value or "").strip().lower()


class ToolResult(BaseModel):
    """Result from tool execution."""

    success: bool = True
    output: str = ""
    error: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _normalize_failure_error(self) -> "ToolResult":
        """Ensure failed results always provide an error message."""
        if not self.success and not (self.error or "").strip():
            fallback = (self.output or "").strip()
            self.error = fallback or "Tool execution failed"
        return self

    def to_message_content(self) -> str:
        """Text fed back to the model as the tool message."""
        if self.success:
            return self.output or "Success"
        return self.error or "Error"


class ToolArgs(BaseModel):
    """Base for typed tool argument records."""

    model_config = ConfigDict(extra="ignore")


class Workspace:
    """Working directory shared by the tools of one session."""

    def __init__(self, root: Path | str | None = None):
        self._cwd = Path(root or Path.cwd()).expanduser().resolve()

    @property
    def cwd(self) -> Path:
        return self._cwd

    def resolve(self, path: str | Path) -> Path:
        """Resolve a tool-supplied path against the working directory."""
        candidate = Path(path).expanduser()
        if not candidate.is_absolute():
            candidate = self._cwd / candidate
        return candidate.resolve()

    def chdir(self, path: str | Path) -> Path:
        target = self.resolve(path)
        if not target.is_dir():
            raise NotADirectoryError(str(target))
        self._cwd = target
        return target


@dataclass
class ToolContext:
    """Per-call collaborators handed to a tool."""

    session: SessionContext
    workspace: Workspace
    cancel_token: CancellationToken | None = None
    extras: dict[str, Any] = field(default_factory=dict)


class Tool(ABC):
    """Base class for all tools."""

    name: ClassVar[str] = ""
    description: ClassVar[str] = ""
    parameters: ClassVar[dict[str, Any]] = {}
    args_model: ClassVar[type[ToolArgs]] = ToolArgs
    operation_kind: ClassVar[OperationKind | None] = None

    @abstractmethod
    async def execute(self, args: Any, context: ToolContext) -> ToolResult:
        """Execute the tool.

        Args:
            args: Decoded instance of `args_model`
            context: Session, workspace and cancellation for this call

        Returns:
            ToolResult with success status and output

        Raises:
            DeckhandError subclasses for expected failures; the dispatcher
            converts them into failed results.
        """

    @property
    def requires_confirmation(self) -> bool:
        return self.operation_kind is not None

    def get_definition(self) -> ToolDefinition:
        """Get the tool definition for the model."""
        return ToolDefinition(
            name=self.name,
            description=self.description,
            parameters=self.parameters,
        )


class ToolPolicy(BaseModel):
    """Allow/deny rule set for filtering available tools."""

    allow: list[str] | None = None
    deny: list[str] = Field(default_factory=list)

    def permits(self, name: str) -> bool:
        normalized = _normalize_tool_name(name)
        if normalized in {_normalize_tool_name(item) for item in self.deny}:
            return False
        if self.allow is None:
            return True
        return normalized in {_normalize_tool_name(item) for item in self.allow}


class ToolRegistry:
    """Registry for managing available tools."""

    def __init__(self, base_path: Path | str | None = None, policy: ToolPolicy | None = None):
        self._tools: dict[str, Tool] = {}
        self._policy = policy
        self.workspace = Workspace(base_path)

    @property
    def runtime_base_path(self) -> Path:
        return self.workspace.cwd

    def set_runtime_base_path(self, base_path: Path | str) -> None:
        """Reset the working directory used by tools for relative paths."""
        self.workspace = Workspace(base_path)

    @property
    def policy(self) -> ToolPolicy | None:
        return self._policy

    def set_policy(self, policy: ToolPolicy | dict[str, Any] | None) -> None:
        if isinstance(policy, dict):
            policy = ToolPolicy(**policy)
        self._policy = policy

    def register(self, tool: Tool) -> None:
        """Register a tool.

        Args:
            tool: Tool instance to register
        """
        if not tool.name:
            raise ValueError("Tool must have a name")

        log.debug("Registering tool", tool=tool.name)
        self._tools[tool.name] = tool

    def unregister(self, name: str) -> None:
        self._tools.pop(name, None)

    def has_tool(self, name: str) -> bool:
        """Registered and permitted by the active policy."""
        return name in self._tools and (self._policy is None or self._policy.permits(name))

    def get(self, name: str) -> Tool:
        """Get a tool by name.

        Raises:
            ToolNotFoundError if not registered or filtered out by policy
        """
        if not self.has_tool(name):
            raise ToolNotFoundError(name)
        return self._tools[name]

    def list_tools(self) -> list[str]:
        return [name for name in self._tools if self.has_tool(name)]

    def get_definitions(self) -> list[ToolDefinition]:
        """Definitions of every permitted tool, in registration order."""
        return [self._tools[name].get_definition() for name in self.list_tools()]

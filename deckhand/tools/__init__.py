"""Tools package for Deckhand."""

from pathlib import Path

from deckhand.tools.batch_edit import BatchEditTool
from deckhand.tools.registry import (
    Tool,
    ToolArgs,
    ToolContext,
    ToolPolicy,
    ToolRegistry,
    ToolResult,
    Workspace,
)
from deckhand.tools.search import SearchTool
from deckhand.tools.session import CheckSessionAcceptanceTool
from deckhand.tools.shell import BashTool
from deckhand.tools.text_editor import (
    CreateFileTool,
    EditHistory,
    ReplaceLinesTool,
    StrReplaceEditorTool,
    ViewFileTool,
    create_editor_tools,
)
from deckhand.tools.todo import TodoList, create_todo_tools


def create_default_registry(
    base_path: Path | str | None = None,
    policy: ToolPolicy | None = None,
) -> ToolRegistry:
    """Registry holding every built-in tool, with shared edit history and todo list."""
    registry = ToolRegistry(base_path, policy=policy)
    history = EditHistory()
    for tool in create_editor_tools(history):
        registry.register(tool)
    registry.register(BashTool())
    registry.register(SearchTool())
    registry.register(BatchEditTool(history))
    for tool in create_todo_tools(TodoList()):
        registry.register(tool)
    registry.register(CheckSessionAcceptanceTool())
    return registry


__all__ = [
    "Tool",
    "ToolArgs",
    "ToolContext",
    "ToolPolicy",
    "ToolRegistry",
    "ToolResult",
    "Workspace",
    "BashTool",
    "BatchEditTool",
    "CheckSessionAcceptanceTool",
    "CreateFileTool",
    "EditHistory",
    "ReplaceLinesTool",
    "SearchTool",
    "StrReplaceEditorTool",
    "TodoList",
    "ViewFileTool",
    "create_default_registry",
]

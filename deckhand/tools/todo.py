"""Todo tools for tracking multi-step work within a session."""

from typing import Literal

from pydantic import BaseModel, Field

from deckhand.exceptions import ValidationError
from deckhand.logging import get_logger
from deckhand.tools.registry import Tool, ToolArgs, ToolContext, ToolResult

log = get_logger(__name__)

TodoStatus = Literal["pending", "in_progress", "completed"]
TodoPriority = Literal["high", "medium", "low"]

_CHECKBOX = {"completed": "●", "in_progress": "◐", "pending": "○"}


class TodoItem(BaseModel):
    id: str = Field(min_length=1)
    content: str = Field(min_length=1)
    status: TodoStatus = "pending"
    priority: TodoPriority = "medium"


class TodoUpdate(BaseModel):
    id: str = Field(min_length=1)
    status: TodoStatus | None = None
    content: str | None = None
    priority: TodoPriority | None = None


class TodoList:
    """In-memory todo list shared by the todo tools of one session."""

    def __init__(self):
        self.items: list[TodoItem] = []

    def replace(self, items: list[TodoItem]) -> None:
        ids = [item.id for item in items]
        if len(ids) != len(set(ids)):
            raise ValidationError("Todo ids must be unique", "todos", ids)
        self.items = list(items)

    def update(self, updates: list[TodoUpdate]) -> None:
        """Apply updates atomically; an unknown id leaves the list unchanged."""
        index = {item.id: pos for pos, item in enumerate(self.items)}
        missing = [update.id for update in updates if update.id not in index]
        if missing:
            raise ValidationError(f"Todo with id {missing[0]} not found", "updates", missing)

        items = list(self.items)
        for update in updates:
            pos = index[update.id]
            changes = update.model_dump(exclude={"id"}, exclude_none=True)
            items[pos] = items[pos].model_copy(update=changes)
        self.items = items

    def render(self) -> str:
        if not self.items:
            return "No todos created yet"
        return "\n".join(f"{_CHECKBOX[item.status]} {item.content}" for item in self.items)

    def counts(self) -> dict[str, int]:
        result = {"pending": 0, "in_progress": 0, "completed": 0}
        for item in self.items:
            result[item.status] += 1
        return result


_TODO_ITEM_SCHEMA = {
    "type": "object",
    "properties": {
        "id": {"type": "string", "description": "Unique identifier for the todo item"},
        "content": {"type": "string", "description": "Description of the todo item"},
        "status": {
            "type": "string",
            "enum": ["pending", "in_progress", "completed"],
            "description": "Current status of the todo item",
        },
        "priority": {
            "type": "string",
            "enum": ["high", "medium", "low"],
            "description": "Priority level of the todo item",
        },
    },
    "required": ["id", "content", "status", "priority"],
}


class CreateTodoListArgs(ToolArgs):
    todos: list[TodoItem]


class CreateTodoListTool(Tool):
    name = "create_todo_list"
    description = "Create a new todo list for planning and tracking tasks."
    parameters = {
        "type": "object",
        "properties": {
            "todos": {
                "type": "array",
                "description": "Array of todo items",
                "items": _TODO_ITEM_SCHEMA,
            },
        },
        "required": ["todos"],
    }
    args_model = CreateTodoListArgs

    def __init__(self, todo_list: TodoList):
        self.todo_list = todo_list

    async def execute(self, args: CreateTodoListArgs, context: ToolContext) -> ToolResult:
        self.todo_list.replace(args.todos)
        log.debug("Todo list created", items=len(args.todos))
        return ToolResult(output=self.todo_list.render(), metadata=self.todo_list.counts())


class UpdateTodoListArgs(ToolArgs):
    updates: list[TodoUpdate] = Field(min_length=1)


class UpdateTodoListTool(Tool):
    name = "update_todo_list"
    description = "Update existing todos in the todo list."
    parameters = {
        "type": "object",
        "properties": {
            "updates": {
                "type": "array",
                "description": "Array of todo updates",
                "items": {
                    "type": "object",
                    "properties": {
                        "id": {"type": "string", "description": "ID of the todo item to update"},
                        "status": {
                            "type": "string",
                            "enum": ["pending", "in_progress", "completed"],
                            "description": "New status for the todo item",
                        },
                        "content": {"type": "string", "description": "New content for the todo item"},
                        "priority": {
                            "type": "string",
                            "enum": ["high", "medium", "low"],
                            "description": "New priority for the todo item",
                        },
                    },
                    "required": ["id"],
                },
            },
        },
        "required": ["updates"],
    }
    args_model = UpdateTodoListArgs

    def __init__(self, todo_list: TodoList):
        self.todo_list = todo_list

    async def execute(self, args: UpdateTodoListArgs, context: ToolContext) -> ToolResult:
        self.todo_list.update(args.updates)
        return ToolResult(output=self.todo_list.render(), metadata=self.todo_list.counts())


class ViewTodoListTool(Tool):
    name = "view_todo_list"
    description = "Show the current todo list."
    parameters = {"type": "object", "properties": {}}

    def __init__(self, todo_list: TodoList):
        self.todo_list = todo_list

    async def execute(self, args: ToolArgs, context: ToolContext) -> ToolResult:
        return ToolResult(output=self.todo_list.render(), metadata=self.todo_list.counts())


def create_todo_tools(todo_list: TodoList | None = None) -> list[Tool]:
    shared = todo_list if todo_list is not None else TodoList()
    return [CreateTodoListTool(shared), UpdateTodoListTool(shared), ViewTodoListTool(shared)]

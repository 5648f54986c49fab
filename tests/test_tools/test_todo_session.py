import pytest

from deckhand.confirmation import (
    AutoApproveGate,
    CallbackGate,
    ConfirmationRequest,
    ConfirmationResult,
    RejectAllGate,
    SessionContext,
)
from deckhand.exceptions import ValidationError
from deckhand.tools import ToolContext, ToolPolicy, ToolRegistry, Workspace, create_default_registry
from deckhand.tools.session import CheckSessionAcceptanceTool
from deckhand.tools.todo import TodoItem, TodoList, TodoUpdate, create_todo_tools


def _context(root, session=None) -> ToolContext:
    return ToolContext(session=session or SessionContext(), workspace=Workspace(root))


def test_todo_render_and_counts():
    todos = TodoList()
    assert todos.render() == "No todos created yet"

    todos.replace(
        [
            TodoItem(id="1", content="Read code", status="completed"),
            TodoItem(id="2", content="Write fix", status="in_progress"),
            TodoItem(id="3", content="Run tests"),
        ]
    )

    assert todos.render() == "● Read code\n◐ Write fix\n○ Run tests"
    assert todos.counts() == {"pending": 1, "in_progress": 1, "completed": 1}


def test_todo_update_is_atomic():
    todos = TodoList()
    todos.replace([TodoItem(id="1", content="a"), TodoItem(id="2", content="b")])

    with pytest.raises(ValidationError) as excinfo:
        todos.update([TodoUpdate(id="1", status="completed"), TodoUpdate(id="9", status="completed")])

    assert excinfo.value.message == "Todo with id 9 not found"
    assert todos.items[0].status == "pending"


def test_todo_ids_must_be_unique():
    with pytest.raises(ValidationError):
        TodoList().replace([TodoItem(id="1", content="a"), TodoItem(id="1", content="b")])


@pytest.mark.asyncio
async def test_todo_tools_share_one_list(tmp_path):
    create, update, view = create_todo_tools()
    context = _context(tmp_path)

    await create.execute(create.args_model(todos=[{"id": "t1", "content": "Plan", "status": "pending"}]), context)
    await update.execute(update.args_model(updates=[{"id": "t1", "status": "completed"}]), context)
    result = await view.execute(view.args_model(), context)

    assert result.output == "● Plan"
    assert result.metadata["completed"] == 1


@pytest.mark.asyncio
async def test_session_acceptance_tool_reports_flags(tmp_path):
    session = SessionContext()
    tool = CheckSessionAcceptanceTool()

    empty = await tool.execute(tool.args_model(), _context(tmp_path, session))
    session.accept("bash")
    granted = await tool.execute(tool.args_model(), _context(tmp_path, session))

    assert empty.output == "No standing acceptance"
    assert empty.metadata["has_any_acceptance"] is False
    assert granted.output == "Accepted for this session: bash commands"
    assert granted.metadata["bash_commands"] is True


@pytest.mark.asyncio
async def test_session_context_short_circuits_after_standing_acceptance():
    calls = []

    async def ask(request):
        calls.append(request.kind)
        return ConfirmationResult(confirmed=True, standing_acceptance=True)

    session = SessionContext(CallbackGate(ask))
    request = ConfirmationRequest(operation="Write", target="a.txt", kind="file")

    await session.confirm(request)
    await session.confirm(request)
    await session.confirm(ConfirmationRequest(operation="Run", target="ls", kind="bash"))

    assert calls == ["file", "bash"]
    assert session.flags() == {"file_operations": True, "bash_commands": True, "all_operations": False}

    session.reset()
    assert not session.is_accepted("file")


@pytest.mark.asyncio
async def test_all_operations_flag_covers_every_kind():
    session = SessionContext(RejectAllGate())
    session.all_operations = True

    result = await session.confirm(ConfirmationRequest(operation="Run", target="make", kind="bash"))

    assert result.confirmed


@pytest.mark.asyncio
async def test_builtin_gates():
    request = ConfirmationRequest(operation="Write", target="a")

    assert (await AutoApproveGate().request_confirmation(request)).confirmed
    rejected = await RejectAllGate("read only").request_confirmation(request)
    assert not rejected.confirmed
    assert rejected.feedback == "read only"


def test_default_registry_contains_every_tool(tmp_path):
    registry = create_default_registry(tmp_path)

    assert registry.list_tools() == [
        "view_file",
        "create_file",
        "str_replace_editor",
        "replace_lines",
        "bash",
        "search",
        "batch_edit",
        "create_todo_list",
        "update_todo_list",
        "view_todo_list",
        "check_session_acceptance",
    ]


def test_registry_policy_allow_and_deny(tmp_path):
    registry = create_default_registry(tmp_path, policy=ToolPolicy(allow=["view_file", "Bash"], deny=["bash"]))

    assert registry.list_tools() == ["view_file"]
    assert not registry.has_tool("search")

    registry.set_policy(None)
    assert registry.has_tool("search")


def test_registry_rejects_nameless_tool(tmp_path):
    from deckhand.tools.registry import Tool

    class Nameless(Tool):
        async def execute(self, args, context):
            raise NotImplementedError

    with pytest.raises(ValueError):
        ToolRegistry(tmp_path).register(Nameless())

import pytest

from deckhand.confirmation import RejectAllGate, SessionContext
from deckhand.exceptions import ValidationError
from deckhand.tools import ToolContext, Workspace
from deckhand.tools.batch_edit import BatchEditArgs, BatchEditParams, BatchEditTool, apply_edit
from deckhand.tools.search import SearchArgs, SearchTool, search_workspace
from deckhand.tools.text_editor import EditHistory


@pytest.fixture
def project(tmp_path):
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "app.py").write_text("def load_user():\n    return fetch_user()\n", encoding="utf-8")
    (tmp_path / "src" / "util.py").write_text("def fetch_user():\n    pass\n", encoding="utf-8")
    (tmp_path / "README.md").write_text("Use load_user to start.\n", encoding="utf-8")
    (tmp_path / ".git").mkdir()
    (tmp_path / ".git" / "config").write_text("load_user", encoding="utf-8")
    return tmp_path


def _context(root, session=None) -> ToolContext:
    return ToolContext(session=session or SessionContext(), workspace=Workspace(root))


def test_text_search_skips_hidden_directories(project):
    results = search_workspace(project, "load_user", search_type="text")

    assert results.files_with_text == ["README.md", "src/app.py"]


def test_file_search_matches_names(project):
    results = search_workspace(project, "util", search_type="files")

    assert results.file_matches == ["src/util.py"]
    assert results.text_matches == []


def test_include_and_file_type_filters(project):
    by_glob = search_workspace(project, "user", search_type="text", include_pattern="*.md")
    by_type = search_workspace(project, "user", search_type="text", file_types=["py"])

    assert by_glob.files_with_text == ["README.md"]
    assert by_type.files_with_text == ["src/app.py", "src/util.py"]


def test_whole_word_and_case(project):
    assert search_workspace(project, "LOAD_USER", search_type="text", case_sensitive=True).text_matches == []
    assert search_workspace(project, "user", search_type="text", whole_word=True).text_matches == []


def test_max_results_caps_matches(project):
    results = search_workspace(project, "user", search_type="text", max_results=2)

    assert len(results.text_matches) == 2


@pytest.mark.asyncio
async def test_search_tool_formats_output(project):
    result = await SearchTool().execute(SearchArgs(query="fetch_user", search_type="text"), _context(project))

    assert "Text matches for 'fetch_user' (2 in 2 files):" in result.output
    assert "src/util.py" in result.output


@pytest.mark.asyncio
async def test_search_tool_no_results(project):
    result = await SearchTool().execute(SearchArgs(query="zebra"), _context(project))

    assert result.output == "No results found for: zebra"


def test_apply_edit_variants():
    params = BatchEditParams(search="a", replace="b")
    assert apply_edit("a a", "search-replace", params) == ("b b", 2)

    rename = BatchEditParams(old_name="user", new_name="account")
    assert apply_edit("user users user_id user", "rename-symbol", rename) == ("account users user_id account", 2)

    assert apply_edit("x\ny", "insert", BatchEditParams(content="top", position="start")) == ("top\nx\ny", 1)
    assert apply_edit("x\ny", "insert", BatchEditParams(content="mid", position=2)) == ("x\nmid\ny", 1)
    assert apply_edit("1\n2\n3", "delete", BatchEditParams(start_line=2, end_line=3)) == ("1", 2)


def test_apply_edit_requires_parameters():
    with pytest.raises(ValidationError):
        apply_edit("x", "search-replace", BatchEditParams())


def test_batch_args_need_a_target():
    with pytest.raises(ValueError):
        BatchEditArgs(type="delete", params=BatchEditParams(start_line=1))


@pytest.mark.asyncio
async def test_rename_symbol_across_pattern_matches(project):
    history = EditHistory()
    tool = BatchEditTool(history, max_concurrency=2)
    args = BatchEditArgs(
        type="rename-symbol",
        pattern="fetch_user",
        params=BatchEditParams(old_name="fetch_user", new_name="get_user"),
    )

    result = await tool.execute(args, _context(project))

    assert result.success
    assert result.output.startswith("Batch edit complete: 2 of 2 files changed")
    assert "get_user()" in (project / "src" / "app.py").read_text(encoding="utf-8")
    assert (project / "src" / "util.py").read_text(encoding="utf-8").startswith("def get_user")
    assert len(history) == 2


@pytest.mark.asyncio
async def test_batch_edit_rejection_leaves_files(project):
    tool = BatchEditTool()
    args = BatchEditArgs(
        type="search-replace",
        files=["README.md"],
        params=BatchEditParams(search="start", replace="begin"),
    )

    result = await tool.execute(args, _context(project, SessionContext(RejectAllGate(feedback=""))))

    assert result.success is False
    assert result.error == "Batch edit cancelled by user"
    assert (project / "README.md").read_text(encoding="utf-8") == "Use load_user to start.\n"


@pytest.mark.asyncio
async def test_batch_edit_reports_missing_files(project):
    tool = BatchEditTool()
    args = BatchEditArgs(
        type="search-replace",
        files=["README.md", "gone.py"],
        params=BatchEditParams(search="start", replace="begin"),
    )

    result = await tool.execute(args, _context(project))

    assert result.success is False
    assert "x gone.py: File not found: gone.py" in result.output
    assert (project / "README.md").read_text(encoding="utf-8") == "Use load_user to begin.\n"

"""File viewing and editing tools."""

import difflib
from dataclasses import dataclass
from pathlib import Path

from pydantic import Field

from deckhand.config import get_config
from deckhand.confirmation import ConfirmationRequest
from deckhand.exceptions import (
    FileAlreadyExistsError,
    FileOperationError,
    FilePermissionError,
    InvalidLineRangeError,
    MissingFileError,
)
from deckhand.logging import get_logger
from deckhand.tools.registry import Tool, ToolArgs, ToolContext, ToolResult

log = get_logger(__name__)


def _plural(count: int, word: str) -> str:
    return f"{count} {word}{'' if count == 1 else 's'}"


def render_diff(old_lines: list[str], new_lines: list[str], display_path: str) -> str:
    """Unified diff headed by a one-line change summary."""
    body = list(
        difflib.unified_diff(
            old_lines,
            new_lines,
            fromfile=f"a/{display_path}" if old_lines else "/dev/null",
            tofile=f"b/{display_path}",
            lineterm="",
            n=3,
        )
    )
    added = sum(1 for line in body if line.startswith("+") and not line.startswith("+++"))
    removed = sum(1 for line in body if line.startswith("-") and not line.startswith("---"))

    if not old_lines:
        summary = f"Created {display_path}"
    elif added and removed:
        summary = f"Updated {display_path} with {_plural(added, 'addition')} and {_plural(removed, 'removal')}"
    elif added:
        summary = f"Updated {display_path} with {_plural(added, 'addition')}"
    elif removed:
        summary = f"Updated {display_path} with {_plural(removed, 'removal')}"
    else:
        return f"No changes in {display_path}"
    return "\n".join([summary, *body])


def read_text(path: Path, display_path: str, operation: str) -> str:
    """Read a file, mapping OS errors onto tool errors."""
    if not path.exists():
        raise MissingFileError(display_path, operation)
    try:
        return path.read_text(encoding="utf-8")
    except PermissionError as e:
        raise FilePermissionError(display_path, "read") from e
    except (OSError, UnicodeDecodeError) as e:
        raise FileOperationError(
            f"Failed to read {display_path}: {e}",
            {"file": display_path, "operation": operation},
        ) from e


def write_text(path: Path, content: str, display_path: str, operation: str) -> None:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
    except PermissionError as e:
        raise FilePermissionError(display_path, "write") from e
    except OSError as e:
        raise FileOperationError(
            f"Failed to {operation} {display_path}: {e}",
            {"file": display_path, "operation": operation},
        ) from e


@dataclass
class EditRecord:
    command: str
    path: str
    before: str | None
    after: str


class EditHistory:
    """Edits applied during a session, most recent last."""

    def __init__(self):
        self._records: list[EditRecord] = []

    def record(self, command: str, path: Path, before: str | None, after: str) -> None:
        self._records.append(EditRecord(command=command, path=str(path), before=before, after=after))

    def entries(self) -> list[EditRecord]:
        return list(self._records)

    def undo_last(self) -> EditRecord | None:
        """Revert the most recent edit on disk and return it."""
        if not self._records:
            return None
        record = self._records.pop()
        target = Path(record.path)
        if record.before is None:
            target.unlink(missing_ok=True)
        else:
            target.write_text(record.before, encoding="utf-8")
        return record

    def __len__(self) -> int:
        return len(self._records)


async def confirm_file_change(
    context: ToolContext,
    operation: str,
    display_path: str,
    preview: str,
    rejected_message: str,
) -> ToolResult | None:
    """Pass the change through the session gate; return a failed result if rejected."""
    outcome = await context.session.confirm(
        ConfirmationRequest(operation=operation, target=display_path, kind="file", preview=preview)
    )
    if outcome.confirmed:
        return None
    return ToolResult(success=False, error=outcome.feedback or rejected_message)


class ViewFileArgs(ToolArgs):
    path: str
    start_line: int | None = Field(default=None, ge=1)
    end_line: int | None = Field(default=None, ge=1)


class ViewFileTool(Tool):
    """Show file contents or list a directory."""

    name = "view_file"
    description = "View contents of a file or list directory contents."
    parameters = {
        "type": "object",
        "properties": {
            "path": {
                "type": "string",
                "description": "Path to file or directory to view",
            },
            "start_line": {
                "type": "number",
                "description": "Starting line number for partial file view (optional)",
            },
            "end_line": {
                "type": "number",
                "description": "Ending line number for partial file view (optional)",
            },
        },
        "required": ["path"],
    }
    args_model = ViewFileArgs

    def __init__(self, max_lines: int | None = None):
        self.max_lines = max_lines or get_config().tools.view_max_lines

    async def execute(self, args: ViewFileArgs, context: ToolContext) -> ToolResult:
        target = context.workspace.resolve(args.path)
        if target.is_dir():
            entries = sorted(item.name + ("/" if item.is_dir() else "") for item in target.iterdir())
            return ToolResult(
                output=f"Directory contents of {args.path}:\n" + "\n".join(entries),
                metadata={"path": str(target), "entries": len(entries)},
            )

        lines = read_text(target, args.path, "view").split("\n")
        total = len(lines)

        if args.start_line is not None:
            start = args.start_line
            end = min(args.end_line or total, total)
            if start > total or end < start:
                raise InvalidLineRangeError(args.path, start, args.end_line or start, total)
            numbered = "\n".join(f"{start + idx}: {line}" for idx, line in enumerate(lines[start - 1 : end]))
            return ToolResult(
                output=f"Lines {start}-{end} of {args.path}:\n{numbered}",
                metadata={"path": str(target), "total_lines": total},
            )

        shown = lines[: self.max_lines]
        numbered = "\n".join(f"{idx + 1}: {line}" for idx, line in enumerate(shown))
        more = f"\n... +{total - self.max_lines} lines" if total > self.max_lines else ""
        return ToolResult(
            output=f"Contents of {args.path}:\n{numbered}{more}",
            metadata={"path": str(target), "total_lines": total},
        )


class CreateFileArgs(ToolArgs):
    path: str
    content: str


class CreateFileTool(Tool):
    """Create a new file; never overwrites."""

    name = "create_file"
    description = "Create a new file with specified content. Fails if the file already exists."
    parameters = {
        "type": "object",
        "properties": {
            "path": {
                "type": "string",
                "description": "Path where the file should be created",
            },
            "content": {
                "type": "string",
                "description": "Content to write to the file",
            },
        },
        "required": ["path", "content"],
    }
    args_model = CreateFileArgs
    operation_kind = "file"

    def __init__(self, history: EditHistory | None = None):
        self.history = history if history is not None else EditHistory()

    async def execute(self, args: CreateFileArgs, context: ToolContext) -> ToolResult:
        target = context.workspace.resolve(args.path)
        if target.exists():
            raise FileAlreadyExistsError(args.path)

        new_lines = args.content.split("\n")
        preview = render_diff([], new_lines, args.path)
        rejected = await confirm_file_change(context, "Write", args.path, preview, "File creation cancelled by user")
        if rejected is not None:
            return rejected

        write_text(target, args.content, args.path, "create")
        self.history.record("create", target, None, args.content)
        log.info("Created file", path=str(target), chars=len(args.content))
        return ToolResult(output=preview, metadata={"path": str(target)})


class StrReplaceArgs(ToolArgs):
    path: str
    old_str: str = Field(min_length=1)
    new_str: str
    replace_all: bool = False


class StrReplaceEditorTool(Tool):
    """Replace text in an existing file."""

    name = "str_replace_editor"
    description = "Replace specific text in a file. Use this for single line edits only."
    parameters = {
        "type": "object",
        "properties": {
            "path": {
                "type": "string",
                "description": "Path to the file to edit",
            },
            "old_str": {
                "type": "string",
                "description": "Text to replace (must match exactly)",
            },
            "new_str": {
                "type": "string",
                "description": "Text to replace with",
            },
            "replace_all": {
                "type": "boolean",
                "description": "Replace all occurrences (default: false, only replaces first occurrence)",
            },
        },
        "required": ["path", "old_str", "new_str"],
    }
    args_model = StrReplaceArgs
    operation_kind = "file"

    def __init__(self, history: EditHistory | None = None):
        self.history = history if history is not None else EditHistory()

    async def execute(self, args: StrReplaceArgs, context: ToolContext) -> ToolResult:
        target = context.workspace.resolve(args.path)
        content = read_text(target, args.path, "edit")

        occurrences = content.count(args.old_str)
        if occurrences == 0:
            if "\n" in args.old_str:
                return ToolResult(
                    success=False,
                    error="String not found in file. For multi-line replacements, consider using replace_lines.",
                )
            return ToolResult(success=False, error=f'String not found in file: "{args.old_str}"')

        if args.replace_all:
            updated = content.replace(args.old_str, args.new_str)
        else:
            updated = content.replace(args.old_str, args.new_str, 1)

        diff = render_diff(content.split("\n"), updated.split("\n"), args.path)
        operation = "Edit file"
        if args.replace_all and occurrences > 1:
            operation += f" ({occurrences} occurrences)"
        rejected = await confirm_file_change(context, operation, args.path, diff, "File edit cancelled by user")
        if rejected is not None:
            return rejected

        write_text(target, updated, args.path, "edit")
        self.history.record("str_replace", target, content, updated)
        return ToolResult(
            output=diff,
            metadata={"path": str(target), "replacements": occurrences if args.replace_all else 1},
        )


class ReplaceLinesArgs(ToolArgs):
    path: str
    start_line: int = Field(ge=1)
    end_line: int = Field(ge=1)
    new_content: str


class ReplaceLinesTool(Tool):
    """Replace an inclusive line range."""

    name = "replace_lines"
    description = "Replace a range of lines in a file. Ideal for multi-line edits."
    parameters = {
        "type": "object",
        "properties": {
            "path": {
                "type": "string",
                "description": "Path to the file to edit",
            },
            "start_line": {
                "type": "number",
                "description": "First line to replace (1-based)",
            },
            "end_line": {
                "type": "number",
                "description": "Last line to replace (inclusive)",
            },
            "new_content": {
                "type": "string",
                "description": "Replacement text for the range",
            },
        },
        "required": ["path", "start_line", "end_line", "new_content"],
    }
    args_model = ReplaceLinesArgs
    operation_kind = "file"

    def __init__(self, history: EditHistory | None = None):
        self.history = history if history is not None else EditHistory()

    async def execute(self, args: ReplaceLinesArgs, context: ToolContext) -> ToolResult:
        target = context.workspace.resolve(args.path)
        content = read_text(target, args.path, "edit lines")
        lines = content.split("\n")
        total = len(lines)
        if args.start_line > total or args.end_line < args.start_line or args.end_line > total:
            raise InvalidLineRangeError(args.path, args.start_line, args.end_line, total)

        new_lines = lines[: args.start_line - 1] + args.new_content.split("\n") + lines[args.end_line :]
        diff = render_diff(lines, new_lines, args.path)
        rejected = await confirm_file_change(
            context,
            f"Replace lines {args.start_line}-{args.end_line}",
            args.path,
            diff,
            "Line replacement cancelled by user",
        )
        if rejected is not None:
            return rejected

        updated = "\n".join(new_lines)
        write_text(target, updated, args.path, "replace lines in")
        self.history.record("replace_lines", target, content, updated)
        return ToolResult(output=diff, metadata={"path": str(target)})


def create_editor_tools(history: EditHistory | None = None, view_max_lines: int | None = None) -> list[Tool]:
    """Editor tools sharing one edit history."""
    shared = history if history is not None else EditHistory()
    return [
        ViewFileTool(max_lines=view_max_lines),
        CreateFileTool(shared),
        StrReplaceEditorTool(shared),
        ReplaceLinesTool(shared),
    ]

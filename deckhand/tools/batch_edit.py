"""Batch edit tool: apply one edit across many files."""

import asyncio
import re
from dataclasses import dataclass
from typing import Literal

from pydantic import BaseModel, Field, model_validator

from deckhand.config import get_config
from deckhand.exceptions import ValidationError
from deckhand.logging import get_logger
from deckhand.tools.registry import Tool, ToolArgs, ToolContext, ToolResult
from deckhand.tools.search import compile_query, search_workspace
from deckhand.tools.text_editor import EditHistory, confirm_file_change, read_text, render_diff, write_text

log = get_logger(__name__)

EditType = Literal["search-replace", "insert", "delete", "rename-symbol"]


class BatchEditParams(BaseModel):
    search: str | None = None
    replace: str | None = None
    regex: bool = False
    case_sensitive: bool = True
    whole_word: bool = False
    content: str | None = None
    position: Literal["start", "end"] | int = "end"
    start_line: int | None = Field(default=None, ge=1)
    end_line: int | None = Field(default=None, ge=1)
    old_name: str | None = None
    new_name: str | None = None


class BatchEditArgs(ToolArgs):
    type: EditType
    files: list[str] | None = None
    pattern: str | None = None
    include_pattern: str | None = None
    exclude_pattern: str | None = None
    params: BatchEditParams = Field(default_factory=BatchEditParams)

    @model_validator(mode="after")
    def _check_targets(self) -> "BatchEditArgs":
        if not self.files and not self.pattern:
            raise ValueError("either 'files' or 'pattern' is required")
        return self


@dataclass
class FileEditResult:
    file: str
    success: bool
    changes: int = 0
    error: str | None = None
    before: str = ""
    after: str = ""


def _required(value: str | None, field: str, edit_type: str) -> str:
    if value is None or value == "":
        raise ValidationError(f"'{field}' is required for {edit_type}", f"params.{field}")
    return value


def apply_edit(content: str, edit_type: str, params: BatchEditParams) -> tuple[str, int]:
    """Return (new content, number of changes) for one file."""
    if edit_type == "search-replace":
        search = _required(params.search, "search", edit_type)
        pattern = compile_query(search, params.regex, params.case_sensitive, params.whole_word)
        replacement = params.replace or ""
        if params.regex:
            return pattern.subn(replacement, content)
        return pattern.subn(lambda _m: replacement, content)

    if edit_type == "rename-symbol":
        old_name = _required(params.old_name, "old_name", edit_type)
        new_name = _required(params.new_name, "new_name", edit_type)
        pattern = re.compile(rf"\b{re.escape(old_name)}\b")
        return pattern.subn(lambda _m: new_name, content)

    lines = content.split("\n")
    if edit_type == "insert":
        text = _required(params.content, "content", edit_type)
        if params.position == "start":
            index = 0
        elif params.position == "end":
            index = len(lines)
        else:
            index = min(max(int(params.position) - 1, 0), len(lines))
        lines[index:index] = text.split("\n")
        return "\n".join(lines), 1

    if edit_type == "delete":
        if params.start_line is None:
            raise ValidationError("'start_line' is required for delete", "params.start_line")
        start = params.start_line
        end = params.end_line or start
        if start > len(lines) or end < start:
            return content, 0
        end = min(end, len(lines))
        del lines[start - 1 : end]
        return "\n".join(lines), end - start + 1

    raise ValidationError(f"Unknown batch edit type: {edit_type}", "type", edit_type)


class BatchEditTool(Tool):
    """Apply search-replace, insert, delete, or rename across several files."""

    name = "batch_edit"
    description = (
        "Apply the same edit to multiple files at once. Targets are given explicitly in 'files' "
        "or found by searching file contents for 'pattern'. Types: search-replace, insert, "
        "delete (line range), rename-symbol."
    )
    parameters = {
        "type": "object",
        "properties": {
            "type": {
                "type": "string",
                "enum": ["search-replace", "insert", "delete", "rename-symbol"],
                "description": "Kind of edit to apply",
            },
            "files": {
                "type": "array",
                "items": {"type": "string"},
                "description": "Explicit list of files to edit",
            },
            "pattern": {
                "type": "string",
                "description": "Text to search for to select files (used when 'files' is omitted)",
            },
            "include_pattern": {
                "type": "string",
                "description": "Glob of files to consider when searching by pattern",
            },
            "exclude_pattern": {
                "type": "string",
                "description": "Glob of files to skip when searching by pattern",
            },
            "params": {
                "type": "object",
                "description": "Edit parameters",
                "properties": {
                    "search": {"type": "string", "description": "Text to find (search-replace)"},
                    "replace": {"type": "string", "description": "Replacement text (search-replace)"},
                    "regex": {"type": "boolean", "description": "Treat search as regex"},
                    "case_sensitive": {"type": "boolean", "description": "Case sensitive matching"},
                    "whole_word": {"type": "boolean", "description": "Whole word matching"},
                    "content": {"type": "string", "description": "Text to insert (insert)"},
                    "position": {
                        "description": "'start', 'end', or a 1-based line number (insert)",
                        "anyOf": [{"type": "string", "enum": ["start", "end"]}, {"type": "number"}],
                    },
                    "start_line": {"type": "number", "description": "First line to delete (delete)"},
                    "end_line": {"type": "number", "description": "Last line to delete (delete)"},
                    "old_name": {"type": "string", "description": "Symbol to rename (rename-symbol)"},
                    "new_name": {"type": "string", "description": "New symbol name (rename-symbol)"},
                },
            },
        },
        "required": ["type", "params"],
    }
    args_model = BatchEditArgs
    operation_kind = "file"

    def __init__(self, history: EditHistory | None = None, max_concurrency: int | None = None):
        self.history = history if history is not None else EditHistory()
        self.max_concurrency = max_concurrency or get_config().tools.batch_max_concurrency

    def _resolve_files(self, args: BatchEditArgs, context: ToolContext) -> list[str]:
        if args.files:
            return list(dict.fromkeys(args.files))
        results = search_workspace(
            context.workspace.cwd,
            args.pattern or "",
            search_type="text",
            case_sensitive=True,
            include_pattern=args.include_pattern,
            exclude_pattern=args.exclude_pattern,
            max_results=10_000,
        )
        return results.files_with_text

    async def _process_file(
        self,
        display_path: str,
        args: BatchEditArgs,
        context: ToolContext,
        semaphore: asyncio.Semaphore,
    ) -> FileEditResult:
        async with semaphore:
            target = context.workspace.resolve(display_path)
            try:
                before = await asyncio.to_thread(read_text, target, display_path, "batch edit")
                after, changes = apply_edit(before, args.type, args.params)
            except ValidationError:
                raise
            except Exception as e:
                return FileEditResult(file=display_path, success=False, error=str(e))
            return FileEditResult(file=display_path, success=True, changes=changes, before=before, after=after)

    async def execute(self, args: BatchEditArgs, context: ToolContext) -> ToolResult:
        files = await asyncio.to_thread(self._resolve_files, args, context)
        if not files:
            return ToolResult(success=False, error="No files matched the batch edit target")

        semaphore = asyncio.Semaphore(max(1, self.max_concurrency))
        results = await asyncio.gather(*(self._process_file(name, args, context, semaphore) for name in files))
        changed = [item for item in results if item.success and item.changes and item.before != item.after]

        if not changed:
            return ToolResult(output=self._format(results, applied=False), metadata={"files_changed": 0})

        preview = "\n\n".join(
            render_diff(item.before.split("\n"), item.after.split("\n"), item.file) for item in changed
        )
        total_changes = sum(item.changes for item in changed)
        rejected = await confirm_file_change(
            context,
            f"Batch {args.type} ({total_changes} changes in {len(changed)} files)",
            ", ".join(item.file for item in changed[:5]) + (" ..." if len(changed) > 5 else ""),
            preview,
            "Batch edit cancelled by user",
        )
        if rejected is not None:
            return rejected

        for item in changed:
            target = context.workspace.resolve(item.file)
            try:
                write_text(target, item.after, item.file, "write")
            except Exception as e:
                item.success = False
                item.error = str(e)
                continue
            self.history.record("batch_edit", target, item.before, item.after)

        log.info("Batch edit applied", type=args.type, files=len(changed), changes=total_changes)
        return ToolResult(
            success=all(item.success for item in results),
            output=self._format(results, applied=True),
            error=None if all(item.success for item in results) else "Some files could not be edited",
            metadata={"files_changed": sum(1 for item in changed if item.success), "changes": total_changes},
        )

    @staticmethod
    def _format(results: list[FileEditResult], applied: bool) -> str:
        changed = [item for item in results if item.success and item.changes]
        verb = "Batch edit complete" if applied else "Batch edit found nothing to change"
        lines = [f"{verb}: {len(changed)} of {len(results)} files changed"]
        for item in results:
            if not item.success:
                lines.append(f"  x {item.file}: {item.error}")
            elif item.changes:
                lines.append(f"  + {item.file}: {item.changes} change{'s' if item.changes != 1 else ''}")
            else:
                lines.append(f"  - {item.file}: no changes")
        return "\n".join(lines)

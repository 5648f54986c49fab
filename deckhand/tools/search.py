"""Search tool for finding text in files and files by name."""

import asyncio
import fnmatch
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

from pydantic import Field

from deckhand.config import get_config
from deckhand.logging import get_logger
from deckhand.tools.registry import Tool, ToolArgs, ToolContext, ToolResult

log = get_logger(__name__)

SearchType = Literal["text", "files", "both"]

_SKIPPED_DIRS = {".git", "node_modules", "__pycache__", ".venv", "venv", ".mypy_cache", ".pytest_cache", "dist", "build"}
_MAX_FILE_BYTES = 1_000_000


@dataclass
class TextMatch:
    path: str
    line: int
    text: str


@dataclass
class SearchResults:
    text_matches: list[TextMatch] = field(default_factory=list)
    file_matches: list[str] = field(default_factory=list)

    @property
    def files_with_text(self) -> list[str]:
        """Distinct files containing a text match, first-seen order."""
        return list(dict.fromkeys(match.path for match in self.text_matches))


def _matches_any(relative: str, patterns: list[str]) -> bool:
    name = relative.rsplit("/", 1)[-1]
    for pattern in patterns:
        if fnmatch.fnmatch(relative, pattern) or fnmatch.fnmatch(name, pattern):
            return True
        if pattern in relative.split("/"):
            return True
    return False


def _split_patterns(raw: str | None) -> list[str]:
    return [item.strip() for item in (raw or "").split(",") if item.strip()]


def iter_files(
    root: Path,
    include: list[str] | None = None,
    exclude: list[str] | None = None,
    file_types: list[str] | None = None,
):
    """Yield (relative, absolute) paths under root, skipping hidden and vendored directories."""
    extensions = {"." + ext.lstrip(".") for ext in file_types or []}
    for path in sorted(root.rglob("*")):
        relative_parts = path.relative_to(root).parts
        if any(part in _SKIPPED_DIRS or part.startswith(".") for part in relative_parts[:-1]):
            continue
        if not path.is_file():
            continue
        relative = "/".join(relative_parts)
        if exclude and _matches_any(relative, exclude):
            continue
        if include and not _matches_any(relative, include):
            continue
        if extensions and path.suffix not in extensions:
            continue
        yield relative, path


def compile_query(
    query: str,
    regex: bool = False,
    case_sensitive: bool = False,
    whole_word: bool = False,
) -> re.Pattern[str]:
    """Compile a search query; invalid regex input is treated literally."""
    body = query if regex else re.escape(query)
    if whole_word:
        body = rf"\b(?:{body})\b"
    flags = 0 if case_sensitive else re.IGNORECASE
    try:
        return re.compile(body, flags)
    except re.error:
        literal = re.escape(query)
        return re.compile(rf"\b{literal}\b" if whole_word else literal, flags)


def search_workspace(
    root: Path,
    query: str,
    search_type: SearchType = "both",
    regex: bool = False,
    case_sensitive: bool = False,
    whole_word: bool = False,
    include_pattern: str | None = None,
    exclude_pattern: str | None = None,
    file_types: list[str] | None = None,
    max_results: int = 50,
) -> SearchResults:
    """Walk root and collect text and/or filename matches.

    Args:
        root: Directory to search
        query: Text, regex, or filename fragment
        search_type: "text" for contents, "files" for names, "both" for either
        regex: Treat query as a regular expression
        case_sensitive: Match case exactly
        whole_word: Match only at word boundaries
        include_pattern: Comma-separated globs a file must match
        exclude_pattern: Comma-separated globs or directory names to skip
        file_types: Extensions to restrict to (e.g. ["py", "ts"])
        max_results: Cap for each kind of match

    Returns:
        SearchResults with at most max_results of each kind
    """
    results = SearchResults()
    pattern = compile_query(query, regex, case_sensitive, whole_word)
    name_query = query if case_sensitive else query.lower()
    include = _split_patterns(include_pattern)
    exclude = _split_patterns(exclude_pattern)

    for relative, path in iter_files(root, include, exclude, file_types):
        text_full = len(results.text_matches) >= max_results
        files_full = len(results.file_matches) >= max_results
        if (search_type == "text" and text_full) or (search_type == "files" and files_full):
            break
        if search_type == "both" and text_full and files_full:
            break

        if search_type in ("files", "both") and not files_full:
            candidate = relative if case_sensitive else relative.lower()
            if name_query in candidate:
                results.file_matches.append(relative)

        if search_type in ("text", "both") and not text_full:
            try:
                if path.stat().st_size > _MAX_FILE_BYTES:
                    continue
                content = path.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError):
                continue
            for line_no, line in enumerate(content.splitlines(), start=1):
                if pattern.search(line):
                    results.text_matches.append(TextMatch(relative, line_no, line.strip()))
                    if len(results.text_matches) >= max_results:
                        break
    return results


def format_results(query: str, results: SearchResults) -> str:
    if not results.text_matches and not results.file_matches:
        return f"No results found for: {query}"

    lines: list[str] = []
    if results.file_matches:
        lines.append(f"Files matching '{query}' ({len(results.file_matches)}):")
        lines.extend(f"  {name}" for name in results.file_matches)
    if results.text_matches:
        if lines:
            lines.append("")
        lines.append(
            f"Text matches for '{query}' ({len(results.text_matches)} in {len(results.files_with_text)} files):"
        )
        current = None
        for match in results.text_matches:
            if match.path != current:
                current = match.path
                lines.append(f"  {match.path}")
            lines.append(f"    {match.line}: {match.text[:200]}")
    return "\n".join(lines)


class SearchArgs(ToolArgs):
    query: str = Field(min_length=1)
    search_type: SearchType = "both"
    regex: bool = False
    case_sensitive: bool = False
    whole_word: bool = False
    include_pattern: str | None = None
    exclude_pattern: str | None = None
    file_types: list[str] | None = None
    max_results: int | None = Field(default=None, ge=1)


class SearchTool(Tool):
    """Find text in files and files by name."""

    name = "search"
    description = (
        "Unified search tool for finding text content or files. "
        "Use search_type 'text' to search file contents, 'files' to match file names, "
        "or 'both' (default)."
    )
    parameters = {
        "type": "object",
        "properties": {
            "query": {
                "type": "string",
                "description": "Text to search for or file name fragment",
            },
            "search_type": {
                "type": "string",
                "enum": ["text", "files", "both"],
                "description": "Type of search (default: both)",
            },
            "regex": {
                "type": "boolean",
                "description": "Treat query as a regular expression (default: false)",
            },
            "case_sensitive": {
                "type": "boolean",
                "description": "Case sensitive search (default: false)",
            },
            "whole_word": {
                "type": "boolean",
                "description": "Match whole words only (default: false)",
            },
            "include_pattern": {
                "type": "string",
                "description": "Comma-separated glob patterns of files to include (e.g. '*.py')",
            },
            "exclude_pattern": {
                "type": "string",
                "description": "Comma-separated glob patterns or directory names to exclude",
            },
            "file_types": {
                "type": "array",
                "items": {"type": "string"},
                "description": "File extensions to search (e.g. ['py', 'ts'])",
            },
            "max_results": {
                "type": "number",
                "description": "Maximum number of results (default from config)",
            },
        },
        "required": ["query"],
    }
    args_model = SearchArgs

    def __init__(self, max_results: int | None = None):
        self.max_results = max_results or get_config().tools.search_max_results

    async def execute(self, args: SearchArgs, context: ToolContext) -> ToolResult:
        root = context.workspace.cwd
        limit = args.max_results or self.max_results
        results = await asyncio.to_thread(
            search_workspace,
            root,
            args.query,
            args.search_type,
            args.regex,
            args.case_sensitive,
            args.whole_word,
            args.include_pattern,
            args.exclude_pattern,
            args.file_types,
            limit,
        )
        log.debug(
            "Search finished",
            query=args.query,
            text_matches=len(results.text_matches),
            file_matches=len(results.file_matches),
        )
        return ToolResult(
            output=format_results(args.query, results),
            metadata={
                "text_matches": len(results.text_matches),
                "file_matches": len(results.file_matches),
            },
        )

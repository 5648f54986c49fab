"""Shell tool for executing commands."""

import asyncio
import os
import re
import shlex
from typing import Any

from pydantic import Field

from deckhand.config import get_config
from deckhand.confirmation import ConfirmationRequest
from deckhand.exceptions import BashCommandError
from deckhand.logging import get_logger
from deckhand.tools.registry import Tool, ToolArgs, ToolContext, ToolResult

log = get_logger(__name__)

_ASSIGNMENT_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*=.*$")
_SHELL_SEPARATOR_TOKENS = {";", "&&", "||", "|", "&"}
_SHELL_WRAPPER_TOKENS = {"sudo", "command", "builtin", "nohup", "time"}

# Commands that only inspect state run without asking for confirmation.
READ_ONLY_COMMANDS = frozenset(
    {
        "ls", "pwd", "cat", "head", "tail", "wc", "echo", "find", "grep", "rg",
        "which", "whoami", "date", "tree", "file", "stat", "du", "df", "env",
    }
)
_READ_ONLY_GIT = frozenset({"status", "diff", "log", "show", "branch"})


def _compile_shell_pattern(pattern: str) -> re.Pattern[str]:
    """Compile regex pattern with literal fallback for invalid regex input."""
    try:
        return re.compile(pattern)
    except re.error:
        return re.compile(re.escape(pattern))


def _tokenize_shell_command(command: str) -> list[str]:
    """Tokenize shell command while preserving control operators."""
    lexer = shlex.shlex(command, posix=True, punctuation_chars=";&|")
    lexer.whitespace_split = True
    lexer.commenters = ""
    return list(lexer)


def split_shell_segments(command: str) -> list[list[str]]:
    """Split a command into tokenized segments separated by control operators."""
    segments: list[list[str]] = []
    current: list[str] = []
    for token in _tokenize_shell_command(command):
        if token in _SHELL_SEPARATOR_TOKENS:
            if current:
                segments.append(current)
                current = []
            continue
        current.append(token)
    if current:
        segments.append(current)
    return segments


def _segment_command(tokens: list[str]) -> list[str]:
    """Tokens of a segment starting at the executable (wrappers and env assignments dropped)."""
    idx = 0
    while idx < len(tokens):
        token = str(tokens[idx]).strip()
        if not token or token in _SHELL_WRAPPER_TOKENS or (_ASSIGNMENT_RE.match(token) and "/" not in token):
            idx += 1
            continue
        return tokens[idx:]
    return []


def extract_shell_base_commands(command: str) -> list[str]:
    """Extract base command token from each shell segment."""
    cleaned = str(command or "").strip()
    if not cleaned:
        return []
    try:
        segments = split_shell_segments(cleaned)
    except ValueError:
        return []
    return [tokens[0] for segment in segments if (tokens := _segment_command(segment))]


def is_blocked_shell_command(command: str, blocked_patterns: list[str]) -> tuple[bool, str]:
    """Evaluate command against blocked patterns using parsed command matching."""
    cleaned = str(command or "").strip()
    if not cleaned:
        return True, "empty_command"

    try:
        segments = split_shell_segments(cleaned)
    except ValueError:
        return True, "unparseable_command"

    segment_texts = [" ".join(tokens) for tokens in segments]
    base_commands = [tokens[0] for segment in segments if (tokens := _segment_command(segment))]
    if not base_commands:
        return True, "unparseable_command"

    for raw_pattern in blocked_patterns or []:
        pattern = str(raw_pattern or "").strip()
        if not pattern:
            continue
        compiled = _compile_shell_pattern(pattern)
        # Patterns containing whitespace match whole segments, others match the executable.
        segment_level_pattern = bool(re.search(r"\s", pattern))
        targets = [cleaned, *segment_texts] if segment_level_pattern else base_commands
        matcher = compiled.search if segment_level_pattern else compiled.match
        for target in targets:
            if matcher(target):
                return True, pattern
    return False, ""


def is_read_only_command(command: str) -> bool:
    """True when every segment runs an inspection-only command without redirection."""
    if ">" in command:
        return False
    try:
        segments = split_shell_segments(command)
    except ValueError:
        return False
    if not segments:
        return False
    for segment in segments:
        tokens = _segment_command(segment)
        if not tokens:
            return False
        base = tokens[0].split("/")[-1]
        if base == "git":
            if len(tokens) < 2 or tokens[1] not in _READ_ONLY_GIT:
                return False
        elif base not in READ_ONLY_COMMANDS:
            return False
    return True


class BashArgs(ToolArgs):
    command: str = Field(min_length=1)
    timeout: int | None = Field(default=None, ge=1)


class BashTool(Tool):
    """Execute shell commands in the session working directory."""

    name = "bash"
    description = (
        "Execute a bash command in the current working directory. "
        "`cd` changes the directory for later commands."
    )
    parameters = {
        "type": "object",
        "properties": {
            "command": {
                "type": "string",
                "description": "The bash command to execute",
            },
            "timeout": {
                "type": "number",
                "description": "Timeout in seconds (optional, default from config)",
            },
        },
        "required": ["command"],
    }
    args_model = BashArgs
    operation_kind = "bash"

    def __init__(self):
        self.config = get_config().tools.shell

    def _is_command_safe(self, command: str) -> tuple[bool, str]:
        blocked, matched = is_blocked_shell_command(command, self.config.blocked)
        if not blocked:
            return True, ""
        if matched == "empty_command":
            return False, "Command is empty"
        if matched == "unparseable_command":
            return False, "Command is not parseable"
        return False, f"Command matches blocked pattern: {matched}"

    @staticmethod
    def _cd_target(command: str) -> str | None:
        """Directory argument when the whole command is a single `cd`."""
        try:
            segments = split_shell_segments(command)
        except ValueError:
            return None
        if len(segments) != 1 or not segments[0] or segments[0][0] != "cd":
            return None
        tokens = segments[0]
        if len(tokens) > 2:
            return None
        return tokens[1] if len(tokens) == 2 else os.path.expanduser("~")

    async def execute(self, args: BashArgs, context: ToolContext) -> ToolResult:
        command = args.command.strip()
        is_safe, reason = self._is_command_safe(command)
        if not is_safe:
            log.warning("Blocked unsafe command", command=command, reason=reason)
            return ToolResult(success=False, error=f"Command blocked: {reason}")

        if not is_read_only_command(command) and self._cd_target(command) is None:
            outcome = await context.session.confirm(
                ConfirmationRequest(operation="Run bash command", target=command, kind="bash", preview=f"$ {command}")
            )
            if not outcome.confirmed:
                return ToolResult(success=False, error=outcome.feedback or "Command execution cancelled by user")

        cd_target = self._cd_target(command)
        if cd_target is not None:
            try:
                new_dir = context.workspace.chdir(cd_target)
            except (NotADirectoryError, OSError) as e:
                return ToolResult(success=False, error=f"Cannot change directory: {e}")
            return ToolResult(output=f"Changed directory to: {new_dir}", metadata={"cwd": str(new_dir)})

        timeout = max(1, int(args.timeout or self.config.timeout))
        if context.cancel_token is not None and context.cancel_token.cancelled:
            return ToolResult(success=False, error="Command aborted")

        env = os.environ.copy()
        env["PATH"] = os.environ.get("PATH", "/usr/local/bin:/usr/bin:/bin")

        log.info("Executing shell command", command=command, timeout=timeout, cwd=str(context.workspace.cwd))
        process = await asyncio.create_subprocess_shell(
            command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(context.workspace.cwd),
            env=env,
        )

        # A token cancelled after this point lets the command run to completion.
        communicate_task = asyncio.create_task(process.communicate())
        try:
            done, _ = await asyncio.wait({communicate_task}, timeout=timeout)
            if communicate_task not in done:
                await self._kill(process, communicate_task)
                return ToolResult(success=False, error=f"Command timed out after {timeout}s")
            stdout, stderr = communicate_task.result()
        except asyncio.CancelledError:
            await self._kill(process, communicate_task)
            raise

        stdout_text = stdout.decode("utf-8", errors="replace").strip()
        stderr_text = stderr.decode("utf-8", errors="replace").strip()
        max_length = self.config.max_output_chars

        if process.returncode != 0:
            failure = BashCommandError(command, process.returncode or 1, stderr_text)
            detail = stderr_text or stdout_text
            return ToolResult(
                success=False,
                output=stdout_text[:max_length],
                error=f"{failure.message}\n{detail[:max_length]}" if detail else failure.message,
                metadata={"exit_code": process.returncode, "cwd": str(context.workspace.cwd)},
            )

        output = stdout_text
        if stderr_text:
            output += f"\n[stderr] {stderr_text}"
        if len(output) > max_length:
            output = output[:max_length] + f"\n... [truncated, {len(output)} total chars]"

        return ToolResult(
            output=output or "Command executed successfully (no output)",
            metadata={"exit_code": 0, "cwd": str(context.workspace.cwd)},
        )

    @staticmethod
    async def _kill(process: asyncio.subprocess.Process, communicate_task: asyncio.Task[Any]) -> None:
        if process.returncode is None:
            process.kill()
        await process.wait()
        communicate_task.cancel()
        try:
            await communicate_task
        except asyncio.CancelledError:
            pass

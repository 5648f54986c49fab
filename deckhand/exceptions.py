"""Custom exceptions for Deckhand."""

from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from typing import Any


@dataclass
class ErrorSuggestion:
    """A remediation hint shown alongside an error."""

    action: str
    description: str
    command: str | None = None


class DeckhandError(Exception):
    """Base exception for Deckhand."""

    code = "DECKHAND_ERROR"

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        recoverable: bool = False,
        suggestions: list[ErrorSuggestion] | None = None,
        context: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.recoverable = recoverable
        self.suggestions: list[ErrorSuggestion] = list(suggestions or [])
        self.context: dict[str, Any] = dict(context or {})
        self.timestamp = datetime.now(UTC)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": type(self).__name__,
            "message": self.message,
            "code": self.code,
            "recoverable": self.recoverable,
            "suggestions": [asdict(item) for item in self.suggestions],
            "context": dict(self.context),
            "timestamp": self.timestamp.isoformat(),
        }

    def format_for_user(self) -> str:
        """Render message, context and suggestions for terminal display."""
        lines = [self.message]
        shown_context = {k: v for k, v in self.context.items() if v is not None}
        if shown_context:
            lines.append("")
            lines.append("Context:")
            for key, value in shown_context.items():
                lines.append(f"  {key}: {value}")
        if self.suggestions:
            lines.append("")
            lines.append("Suggestions:")
            for idx, suggestion in enumerate(self.suggestions, start=1):
                lines.append(f"  {idx}. {suggestion.action}")
                lines.append(f"     {suggestion.description}")
                if suggestion.command:
                    lines.append(f"     Command: {suggestion.command}")
        return "\n".join(lines)


class ConfigurationError(DeckhandError):
    """Configuration-related errors."""

    code = "CONFIGURATION_ERROR"

    def __init__(self, message: str, config_key: str, expected_value: str | None = None):
        suggestions = [
            ErrorSuggestion("Check your configuration", f"Review the '{config_key}' setting in your config"),
            ErrorSuggestion("Reset to defaults", "Try resetting configuration to default values"),
        ]
        if expected_value:
            suggestions.insert(0, ErrorSuggestion("Set the correct value", f"Expected value: {expected_value}"))
        super().__init__(
            message,
            recoverable=True,
            suggestions=suggestions,
            context={"config_key": config_key, "expected_value": expected_value},
        )


# ---------------------------------------------------------------------------
# Transport errors
# ---------------------------------------------------------------------------


class LLMError(DeckhandError):
    """Model endpoint errors."""

    code = "LLM_ERROR"


class APIError(LLMError):
    """Model API returned an error status."""

    code = "API_ERROR"

    def __init__(self, message: str, status_code: int | None = None, context: dict[str, Any] | None = None):
        suggestions: list[ErrorSuggestion] = []
        if status_code in (401, 403):
            suggestions.append(ErrorSuggestion("Check your API key", "Your API key may be invalid or expired"))
            suggestions.append(
                ErrorSuggestion(
                    "Verify API key configuration",
                    "Ensure the API key is correctly set in your environment",
                    command="echo $DECKHAND_MODEL__API_KEY",
                )
            )
        elif status_code == 429:
            suggestions.append(ErrorSuggestion("Wait before retrying", "You have hit the rate limit"))
            suggestions.append(ErrorSuggestion("Check rate limit status", "Review your API usage and limits"))
        elif status_code is not None and status_code >= 500:
            suggestions.append(ErrorSuggestion("Retry the request", "The API server may be experiencing issues"))
            suggestions.append(ErrorSuggestion("Check API status", "Visit the provider status page to check for outages"))
        elif status_code == 400:
            suggestions.append(ErrorSuggestion("Review request parameters", "Check that all required parameters are valid"))
        super().__init__(
            message,
            recoverable=status_code is not None and status_code < 500,
            suggestions=suggestions,
            context={"status_code": status_code, **(context or {})},
        )
        self.status_code = status_code


class AuthenticationError(APIError):
    """API key rejected."""

    def __init__(self, message: str):
        super().__init__(message, 401)
        self.suggestions.insert(
            0,
            ErrorSuggestion(
                "Set your API key",
                "Configure the model API key in your config or environment",
                command='export DECKHAND_MODEL__API_KEY="your-api-key"',
            ),
        )


class RateLimitError(APIError):
    """Too many requests."""

    def __init__(self, message: str, retry_after: float | None = None):
        super().__init__(message, 429, {"retry_after": retry_after})
        self.retry_after = retry_after
        if retry_after:
            self.suggestions.insert(
                0,
                ErrorSuggestion(f"Wait {retry_after:g} seconds", "Rate limit will reset after this time"),
            )


class ModelNotFoundError(APIError):
    """Configured model does not exist on the endpoint."""

    def __init__(self, model_name: str):
        super().__init__(f"Model not found: {model_name}", 404, {"model": model_name})
        self.suggestions.insert(
            0,
            ErrorSuggestion("Use a valid model name", "Check the list of available models for your API"),
        )


class NetworkError(LLMError):
    """Endpoint unreachable."""

    code = "NETWORK_ERROR"

    def __init__(self, message: str):
        super().__init__(
            message,
            recoverable=True,
            suggestions=[
                ErrorSuggestion("Check your internet connection", "Ensure you are connected to the internet"),
                ErrorSuggestion("Retry the operation", "Network issues may be temporary"),
                ErrorSuggestion("Check firewall settings", "Your firewall may be blocking the connection"),
            ],
        )


# ---------------------------------------------------------------------------
# Tool errors
# ---------------------------------------------------------------------------


class ToolError(DeckhandError):
    """Tool execution errors."""

    code = "TOOL_ERROR"


class ToolExecutionError(ToolError):
    """Tool execution failed."""

    code = "TOOL_EXECUTION_ERROR"

    def __init__(self, tool_name: str, message: str, context: dict[str, Any] | None = None):
        super().__init__(
            f"Tool '{tool_name}' execution failed: {message}",
            recoverable=True,
            context={"tool": tool_name, **(context or {})},
            suggestions=[
                ErrorSuggestion("Review tool parameters", "Ensure all required parameters are correct"),
                ErrorSuggestion("Try an alternative tool", "Consider using a different approach"),
            ],
        )
        self.tool_name = tool_name


class ToolNotFoundError(ToolError):
    """Tool not found in registry."""

    code = "TOOL_NOT_FOUND"

    def __init__(self, tool_name: str):
        super().__init__(f"Unknown tool: {tool_name}", recoverable=True, context={"tool": tool_name})
        self.tool_name = tool_name


class FileOperationError(ToolError):
    """File operation failed."""

    code = "FILE_OPERATION_ERROR"

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        suggestions: list[ErrorSuggestion] | None = None,
    ):
        super().__init__(message, recoverable=True, context=context, suggestions=suggestions)


class MissingFileError(FileOperationError):
    """File does not exist."""

    def __init__(self, file_path: str, operation: str = "read"):
        super().__init__(
            f"File not found: {file_path}",
            {"file": file_path, "operation": operation},
            [
                ErrorSuggestion("Verify the file path is correct", "Check for typos or incorrect directory"),
                ErrorSuggestion("Search for the file", "Use the search tool to locate the file"),
            ],
        )


class FilePermissionError(FileOperationError):
    """Insufficient permissions for a file operation."""

    def __init__(self, file_path: str, operation: str):
        super().__init__(
            f"Permission denied: Cannot {operation} {file_path}",
            {"file": file_path, "operation": operation},
            [
                ErrorSuggestion(
                    "Check file permissions",
                    "Verify you have the necessary permissions",
                    command=f"ls -la {file_path}",
                ),
            ],
        )


class FileAlreadyExistsError(FileOperationError):
    """Refused to create over an existing file."""

    def __init__(self, file_path: str):
        super().__init__(
            f"File already exists: {file_path}",
            {"file": file_path, "operation": "create"},
            [
                ErrorSuggestion("Use str_replace_editor instead", "Edit the existing file rather than creating a new one"),
                ErrorSuggestion("View the existing file", "Check the current contents of the file"),
            ],
        )


class InvalidLineRangeError(FileOperationError):
    """Requested line range falls outside the file."""

    def __init__(self, file_path: str, start_line: int, end_line: int, total_lines: int):
        super().__init__(
            f"Invalid line range {start_line}-{end_line}: file has {total_lines} lines",
            {"file": file_path, "start_line": start_line, "end_line": end_line, "total_lines": total_lines},
            [
                ErrorSuggestion("Use a valid line range", f"Choose lines between 1 and {total_lines}"),
                ErrorSuggestion("View the file", "See the file contents to determine the correct lines"),
            ],
        )


class BashCommandError(ToolError):
    """Shell command exited non-zero."""

    code = "BASH_COMMAND_ERROR"

    def __init__(self, command: str, exit_code: int, stderr: str):
        suggestions: list[ErrorSuggestion] = []
        if "command not found" in stderr or exit_code == 127:
            name = command.split(" ")[0] if command else ""
            suggestions.append(
                ErrorSuggestion("Install the missing command", f"The command '{name}' may not be installed")
            )
            suggestions.append(
                ErrorSuggestion("Check if command is in PATH", "Verify the command is accessible", command=f"which {name}")
            )
        elif "Permission denied" in stderr:
            suggestions.append(ErrorSuggestion("Check permissions", "You may need elevated privileges"))
        elif "No such file or directory" in stderr:
            suggestions.append(ErrorSuggestion("Verify the file path", "Check that the file or directory exists"))
        elif "syntax error" in stderr:
            suggestions.append(ErrorSuggestion("Check command syntax", "Review the command for syntax errors"))
        super().__init__(
            f"Command failed with exit code {exit_code}: {command}",
            recoverable=True,
            suggestions=suggestions,
            context={"command": command, "exit_code": exit_code, "stderr": stderr[:200]},
        )
        self.exit_code = exit_code
        self.stderr = stderr


# ---------------------------------------------------------------------------
# Validation errors
# ---------------------------------------------------------------------------


class ValidationError(DeckhandError):
    """Validation errors."""

    code = "VALIDATION_ERROR"

    def __init__(self, message: str, field: str, value: Any = None, context: dict[str, Any] | None = None):
        super().__init__(
            message,
            recoverable=True,
            context={"field": field, "value": value, **(context or {})},
            suggestions=[
                ErrorSuggestion("Check the parameter format", f"Verify that '{field}' has the correct format"),
                ErrorSuggestion("Review expected value type", f"Ensure '{field}' matches the expected data type"),
            ],
        )
        self.field = field


class MissingParameterError(ValidationError):
    """Required parameter absent."""

    def __init__(self, parameter_name: str, tool_name: str | None = None):
        message = (
            f"Missing required parameter '{parameter_name}' for tool '{tool_name}'"
            if tool_name
            else f"Missing required parameter: {parameter_name}"
        )
        super().__init__(message, parameter_name, None, {"tool": tool_name} if tool_name else None)


class ToolArgumentsError(ValidationError):
    """Tool-call arguments could not be decoded into the tool's argument record."""

    def __init__(self, tool_name: str, raw_arguments: str, reason: str):
        super().__init__(
            f"Invalid arguments for tool '{tool_name}': {reason}",
            "arguments",
            raw_arguments[:500],
            {"tool": tool_name},
        )
        self.tool_name = tool_name
        self.raw_arguments = raw_arguments


# ---------------------------------------------------------------------------
# Orchestration errors (fatal to the turn)
# ---------------------------------------------------------------------------


class OrchestrationError(DeckhandError):
    """Internal sequencing bug; never surfaced to the model as a tool result."""

    code = "ORCHESTRATION_ERROR"


class InvalidTransitionError(OrchestrationError):
    """Chat state machine refused a transition."""

    code = "INVALID_TRANSITION"

    def __init__(self, from_state: str, to_state: str, allowed: list[str]):
        allowed_text = ", ".join(allowed) if allowed else "none"
        super().__init__(
            f"Invalid state transition: {from_state} -> {to_state}. "
            f"Valid transitions from {from_state}: {allowed_text}",
            context={"from": from_state, "to": to_state},
        )
        self.from_state = from_state
        self.to_state = to_state


class ConversationError(OrchestrationError):
    """Message list invariant violated."""

    code = "CONVERSATION_ERROR"

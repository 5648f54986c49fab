"""Tool exposing the session's standing confirmation flags to the model."""

from deckhand.tools.registry import Tool, ToolArgs, ToolContext, ToolResult


class CheckSessionAcceptanceTool(Tool):
    name = "check_session_acceptance"
    description = (
        "Check which kinds of operations the user has already approved for this session "
        "(file operations, bash commands, or everything)."
    )
    parameters = {"type": "object", "properties": {}}

    async def execute(self, args: ToolArgs, context: ToolContext) -> ToolResult:
        flags = context.session.flags()
        accepted = [name.replace("_", " ") for name, value in flags.items() if value]
        summary = "Accepted for this session: " + ", ".join(accepted) if accepted else "No standing acceptance"
        return ToolResult(
            output=summary,
            metadata={**flags, "has_any_acceptance": any(flags.values())},
        )

"""Specialized sub-agents and the orchestrator that runs them.

A delegated task runs in an isolated agent with its own conversation, a
restricted tool set and a round ceiling chosen by thoroughness. Only a
summary of its final answer flows back into the parent conversation.
"""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable

from deckhand.cancellation import CancellationToken
from deckhand.config import Config, get_config
from deckhand.confirmation import SessionContext
from deckhand.exceptions import ValidationError
from deckhand.instructions import InstructionLoader, get_instruction_loader
from deckhand.llm import LLMProvider, ToolDefinition
from deckhand.logging import get_logger
from deckhand.tools.registry import ToolResult

log = get_logger(__name__)

DELEGATION_PREFIX = "agent__"

_EDIT_TOOLS = ("create_file", "str_replace_editor", "replace_lines")


class AgentType(str, Enum):
    GENERAL_PURPOSE = "general-purpose"
    CODE_REVIEWER = "code-reviewer"
    TEST_WRITER = "test-writer"
    DOCUMENTATION = "documentation"
    REFACTORING = "refactoring"
    DEBUGGING = "debugging"
    SECURITY_AUDIT = "security-audit"
    PERFORMANCE_OPTIMIZER = "performance-optimizer"
    EXPLORE = "explore"
    PLAN = "plan"


@dataclass(frozen=True)
class AgentCapability:
    name: str
    description: str
    tools: tuple[str, ...]
    system_prompt: str
    max_rounds: int


AGENT_CAPABILITIES: dict[AgentType, AgentCapability] = {
    AgentType.GENERAL_PURPOSE: AgentCapability(
        name="General Purpose",
        description="Handles general coding tasks, file operations, and command execution",
        tools=("view_file", *_EDIT_TOOLS, "bash", "search", "batch_edit",
               "create_todo_list", "update_todo_list", "view_todo_list"),
        system_prompt=(
            "You are a general-purpose AI coding assistant. You can:\n"
            "- Read, edit, and create files\n"
            "- Execute bash commands\n"
            "- Search through codebases\n"
            "- Make batch edits across multiple files\n"
            "Help the user with their coding tasks efficiently."
        ),
        max_rounds=50,
    ),
    AgentType.CODE_REVIEWER: AgentCapability(
        name="Code Reviewer",
        description="Reviews code for quality, bugs, and best practices",
        tools=("view_file", "search", "bash"),
        system_prompt=(
            "You are a meticulous code reviewer. Review code for:\n"
            "- Code quality and maintainability\n"
            "- Potential bugs and edge cases\n"
            "- Security vulnerabilities\n"
            "- Performance issues\n"
            "- Best practices and patterns\n"
            "- Test coverage gaps\n"
            "Provide actionable feedback with specific line numbers and suggestions."
        ),
        max_rounds=30,
    ),
    AgentType.TEST_WRITER: AgentCapability(
        name="Test Writer",
        description="Writes comprehensive unit and integration tests",
        tools=("view_file", *_EDIT_TOOLS, "bash", "search"),
        system_prompt=(
            "You are a test automation specialist. Write comprehensive tests that:\n"
            "- Cover edge cases and error scenarios\n"
            "- Follow testing best practices\n"
            "- Use appropriate testing frameworks\n"
            "- Include setup/teardown when needed\n"
            "- Are maintainable and readable\n"
            "Focus on high-quality, thorough test coverage."
        ),
        max_rounds=40,
    ),
    AgentType.DOCUMENTATION: AgentCapability(
        name="Documentation Writer",
        description="Creates and updates technical documentation",
        tools=("view_file", *_EDIT_TOOLS, "search"),
        system_prompt=(
            "You are a technical documentation specialist. Create clear, comprehensive documentation:\n"
            "- API documentation with examples\n"
            "- README files with usage instructions\n"
            "- Code comments and docstrings\n"
            "- Architecture diagrams (in markdown)\n"
            "- User guides and tutorials\n"
            "Make documentation accessible to all skill levels."
        ),
        max_rounds=30,
    ),
    AgentType.REFACTORING: AgentCapability(
        name="Refactoring Expert",
        description="Refactors code for better structure and maintainability",
        tools=("view_file", *_EDIT_TOOLS, "batch_edit", "search"),
        system_prompt=(
            "You are a refactoring expert. Improve code structure by:\n"
            "- Removing duplication\n"
            "- Improving naming\n"
            "- Extracting functions/classes\n"
            "- Applying design patterns\n"
            "- Maintaining backward compatibility\n"
            "- Ensuring tests still pass\n"
            "Make changes incrementally and safely."
        ),
        max_rounds=50,
    ),
    AgentType.DEBUGGING: AgentCapability(
        name="Debugger",
        description="Diagnoses and fixes bugs in code",
        tools=("view_file", *_EDIT_TOOLS, "bash", "search"),
        system_prompt=(
            "You are a debugging specialist. When fixing bugs:\n"
            "- Analyze error messages and stack traces\n"
            "- Identify root causes, not just symptoms\n"
            "- Add logging/debugging output when needed\n"
            "- Test fixes thoroughly\n"
            "- Explain what caused the bug\n"
            "- Suggest preventive measures\n"
            "Be methodical and thorough in your investigation."
        ),
        max_rounds=40,
    ),
    AgentType.SECURITY_AUDIT: AgentCapability(
        name="Security Auditor",
        description="Audits code for security vulnerabilities",
        tools=("view_file", "search", "bash"),
        system_prompt=(
            "You are a security auditor. Check for:\n"
            "- SQL injection vulnerabilities\n"
            "- XSS and CSRF risks\n"
            "- Authentication/authorization issues\n"
            "- Sensitive data exposure\n"
            "- Dependency vulnerabilities\n"
            "- Input validation gaps\n"
            "Provide severity ratings and remediation steps."
        ),
        max_rounds=30,
    ),
    AgentType.PERFORMANCE_OPTIMIZER: AgentCapability(
        name="Performance Optimizer",
        description="Analyzes and optimizes code performance",
        tools=("view_file", *_EDIT_TOOLS, "bash", "search"),
        system_prompt=(
            "You are a performance optimization expert. Optimize for:\n"
            "- Time complexity (reduce O(n^2) algorithms)\n"
            "- Memory usage\n"
            "- Database query efficiency\n"
            "- Bundle size\n"
            "- Network requests\n"
            "- Caching opportunities\n"
            "Measure before and after, provide benchmarks."
        ),
        max_rounds=40,
    ),
    AgentType.EXPLORE: AgentCapability(
        name="Codebase Explorer",
        description="Explores and understands codebases quickly",
        tools=("view_file", "search", "bash"),
        system_prompt=(
            "You are a codebase explorer. Your goal is to understand:\n"
            "- Project structure and architecture\n"
            "- Key files and entry points\n"
            "- Dependencies and relationships\n"
            "- Code patterns and conventions\n"
            "- Configuration and setup\n"
            "Be thorough but efficient. Use search and grep strategically."
        ),
        max_rounds=20,
    ),
    AgentType.PLAN: AgentCapability(
        name="Task Planner",
        description="Creates detailed implementation plans",
        tools=("view_file", "search"),
        system_prompt=(
            "You are a task planning specialist. Create detailed plans that:\n"
            "- Break down complex tasks into steps\n"
            "- Identify dependencies\n"
            "- Estimate effort\n"
            "- Consider edge cases\n"
            "- Provide clear acceptance criteria\n"
            "Your plans should be actionable and comprehensive."
        ),
        max_rounds=15,
    ),
}


class Thoroughness(str, Enum):
    QUICK = "quick"
    MEDIUM = "medium"
    THOROUGH = "thorough"


THOROUGHNESS_PROMPTS: dict[Thoroughness, str] = {
    Thoroughness.QUICK: "IMPORTANT: Be concise and focus on the most critical aspects. Limit to 2-3 key points.",
    Thoroughness.MEDIUM: "IMPORTANT: Provide balanced coverage. Include main points with supporting details.",
    Thoroughness.THOROUGH: "IMPORTANT: Be comprehensive and detailed. Cover all aspects thoroughly with examples.",
}


class TaskStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class AgentResult:
    success: bool
    output: str
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class AgentTask:
    """A unit of delegated work and its lifecycle."""

    id: str
    type: AgentType
    description: str
    prompt: str
    thoroughness: Thoroughness = Thoroughness.MEDIUM
    status: TaskStatus = TaskStatus.PENDING
    result: AgentResult | None = None
    error: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    started_at: datetime | None = None
    completed_at: datetime | None = None
    parent_task_id: str | None = None

    @property
    def duration(self) -> float | None:
        if self.started_at is None or self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()


TaskRunner = Callable[[AgentTask], Awaitable[AgentResult]]


def summarize_result(output: str, task_description: str, agent_name: str, config: Config | None = None) -> str:
    """Condense a sub-agent's output for the parent conversation.

    Short outputs pass through whole. Longer ones keep a head and a tail
    with an omission marker between them.
    """
    settings = (config or get_config()).subagents
    header = f'{agent_name} Result for "{task_description}":\n\n'
    if len(output) <= settings.summary_threshold:
        return header + output

    head = output[: settings.summary_head_chars]
    tail = output[-settings.summary_tail_chars :] if settings.summary_tail_chars else ""
    omitted = len(output) - settings.summary_head_chars - settings.summary_tail_chars
    return f"{header}{head}\n\n[... {omitted} characters omitted for brevity ...]\n\n{tail}"


class TaskOrchestrator:
    """Track delegated tasks and run them with a bounded level of parallelism."""

    def __init__(self, runner: TaskRunner, max_parallel_tasks: int | None = None):
        self._runner = runner
        self._tasks: dict[str, AgentTask] = {}
        self.max_parallel_tasks = max(1, max_parallel_tasks or get_config().subagents.max_parallel_tasks)

    def create_task(
        self,
        agent_type: AgentType | str,
        description: str,
        prompt: str | None = None,
        thoroughness: Thoroughness | str = Thoroughness.MEDIUM,
        parent_task_id: str | None = None,
    ) -> AgentTask:
        task = AgentTask(
            id=f"task_{uuid.uuid4().hex[:12]}",
            type=AgentType(agent_type),
            description=description,
            prompt=prompt or description,
            thoroughness=Thoroughness(thoroughness),
            parent_task_id=parent_task_id,
        )
        self._tasks[task.id] = task
        log.debug("Created agent task", task_id=task.id, agent_type=task.type.value)
        return task

    def _require(self, task_id: str) -> AgentTask:
        task = self._tasks.get(task_id)
        if task is None:
            raise ValidationError(f"Task {task_id} not found", "task_id", task_id)
        return task

    async def execute_task(self, task_id: str) -> AgentResult:
        """Run one pending task to completion.

        Runner failures are recorded on the task and returned as an
        unsuccessful AgentResult rather than raised.
        """
        task = self._require(task_id)
        if task.status is not TaskStatus.PENDING:
            raise ValidationError(f"Task {task_id} is not pending", "task_id", task.status.value)

        task.status = TaskStatus.RUNNING
        task.started_at = datetime.now(UTC)
        log.info("Agent task started", task_id=task.id, agent_type=task.type.value)
        try:
            result = await self._runner(task)
        except asyncio.CancelledError:
            task.status = TaskStatus.FAILED
            task.error = "Task cancelled"
            task.completed_at = datetime.now(UTC)
            raise
        except Exception as e:
            result = AgentResult(success=False, output="", metadata={"error": str(e)})

        task.completed_at = datetime.now(UTC)
        result.metadata.setdefault("duration", task.duration)
        task.result = result
        if result.success:
            task.status = TaskStatus.COMPLETED
        else:
            task.status = TaskStatus.FAILED
            task.error = str(result.metadata.get("error") or "Task execution failed")
        log.info("Agent task finished", task_id=task.id, status=task.status.value, duration=task.duration)
        return result

    async def execute_parallel(self, task_ids: list[str]) -> dict[str, AgentResult]:
        """Run tasks concurrently, at most `max_parallel_tasks` at a time."""
        for task_id in task_ids:
            self._require(task_id)
        semaphore = asyncio.Semaphore(self.max_parallel_tasks)

        async def _bounded(task_id: str) -> AgentResult:
            async with semaphore:
                return await self.execute_task(task_id)

        results = await asyncio.gather(*(_bounded(task_id) for task_id in task_ids))
        return dict(zip(task_ids, results))

    async def execute_sequential(self, task_ids: list[str]) -> dict[str, AgentResult]:
        """Run tasks one after another in the given order."""
        for task_id in task_ids:
            self._require(task_id)
        results: dict[str, AgentResult] = {}
        for task_id in task_ids:
            results[task_id] = await self.execute_task(task_id)
        return results

    def get_task(self, task_id: str) -> AgentTask | None:
        return self._tasks.get(task_id)

    def list_tasks(self) -> list[AgentTask]:
        return list(self._tasks.values())

    def tasks_by_status(self, status: TaskStatus | str) -> list[AgentTask]:
        wanted = TaskStatus(status)
        return [task for task in self._tasks.values() if task.status is wanted]

    def tasks_by_type(self, agent_type: AgentType | str) -> list[AgentTask]:
        wanted = AgentType(agent_type)
        return [task for task in self._tasks.values() if task.type is wanted]

    def cancel_task(self, task_id: str) -> bool:
        """Cancel a task that has not started. Returns False otherwise."""
        task = self._tasks.get(task_id)
        if task is None or task.status is not TaskStatus.PENDING:
            return False
        task.status = TaskStatus.FAILED
        task.error = "Cancelled by user"
        task.completed_at = datetime.now(UTC)
        return True

    def clear_completed(self) -> int:
        """Forget completed and failed tasks; returns how many were removed."""
        finished = [
            task_id
            for task_id, task in self._tasks.items()
            if task.status in (TaskStatus.COMPLETED, TaskStatus.FAILED)
        ]
        for task_id in finished:
            del self._tasks[task_id]
        return len(finished)

    def statistics(self) -> dict[str, Any]:
        stats: dict[str, Any] = {"total": len(self._tasks)}
        for status in TaskStatus:
            stats[status.value] = len(self.tasks_by_status(status))
        stats["by_type"] = {agent_type.value: len(self.tasks_by_type(agent_type)) for agent_type in AgentType}
        return stats

    def set_max_parallel_tasks(self, value: int) -> None:
        self.max_parallel_tasks = max(1, int(value))


def delegation_tool_definitions() -> list[ToolDefinition]:
    """One `agent__<type>` tool per specialized agent."""
    definitions = []
    for agent_type, capability in AGENT_CAPABILITIES.items():
        definitions.append(
            ToolDefinition(
                name=f"{DELEGATION_PREFIX}{agent_type.value}",
                description=(
                    f"Delegate a task to the {capability.name} agent: {capability.description}. "
                    "The agent works in isolation and returns only a summary of its findings."
                ),
                parameters={
                    "type": "object",
                    "properties": {
                        "task_description": {
                            "type": "string",
                            "description": "Complete, self-contained description of the task",
                        },
                        "thoroughness": {
                            "type": "string",
                            "enum": [level.value for level in Thoroughness],
                            "description": "How deep the agent should go (default: medium)",
                        },
                    },
                    "required": ["task_description"],
                },
            )
        )
    return definitions


class SubAgentLauncher:
    """Spawns isolated sub-agents for `agent__*` tool calls."""

    def __init__(
        self,
        provider: LLMProvider,
        session: SessionContext,
        base_path: Callable[[], Path] | Path | str | None = None,
        config: Config | None = None,
        orchestrator: TaskOrchestrator | None = None,
        instructions: InstructionLoader | None = None,
    ):
        self.provider = provider
        self.session = session
        self.config = config or get_config()
        self._base_path = base_path
        self.instructions = instructions or get_instruction_loader()
        self.orchestrator = orchestrator or TaskOrchestrator(
            self._run_task,
            max_parallel_tasks=self.config.subagents.max_parallel_tasks,
        )
        self._parent_tokens: dict[str, CancellationToken] = {}

    def _resolve_base_path(self) -> Path:
        if callable(self._base_path):
            return self._base_path()
        return Path(self._base_path or Path.cwd())

    def build_system_prompt(self, capability: AgentCapability, thoroughness: Thoroughness) -> str:
        return self.instructions.render(
            "subagent_system_prompt.md",
            agent_prompt=capability.system_prompt,
            agent_name=capability.name,
            thoroughness_prompt=THOROUGHNESS_PROMPTS[thoroughness],
        )

    def round_ceiling(self, capability: AgentCapability, thoroughness: Thoroughness) -> int:
        return min(capability.max_rounds, self.config.thoroughness_rounds(thoroughness.value))

    async def _run_task(self, task: AgentTask) -> AgentResult:
        """Build a fresh agent restricted to the capability's tools and run the task."""
        # Imported here to avoid a circular import with the agent module.
        from deckhand.agent import Agent
        from deckhand.tools import ToolPolicy, create_default_registry

        capability = AGENT_CAPABILITIES[task.type]
        registry = create_default_registry(
            self._resolve_base_path(),
            policy=ToolPolicy(allow=list(capability.tools)),
        )
        agent = Agent(
            provider=self.provider,
            session=self.session,
            registry=registry,
            config=self.config,
            max_tool_rounds=self.round_ceiling(capability, task.thoroughness),
            system_prompt=self.build_system_prompt(capability, task.thoroughness),
            enable_delegation=False,
        )
        parent_token = self._parent_tokens.pop(task.id, None)
        watcher: asyncio.Task | None = None
        if parent_token is not None:

            async def _forward_cancel() -> None:
                await parent_token.wait()
                agent.cancel_current_turn()

            watcher = asyncio.create_task(_forward_cancel())
        try:
            output = await agent.run(task.prompt)
        finally:
            if watcher is not None:
                watcher.cancel()

        if parent_token is not None and parent_token.cancelled:
            return AgentResult(
                success=False,
                output=output,
                metadata={"error": "Task cancelled", "tools_used": agent.tools_used()},
            )
        return AgentResult(
            success=True,
            output=output,
            metadata={"tools_used": agent.tools_used(), "tokens_used": agent.usage["total_tokens"]},
        )

    async def launch(
        self,
        agent_type: str,
        task_description: str,
        thoroughness: str = Thoroughness.MEDIUM.value,
        cancel_token: CancellationToken | None = None,
    ) -> ToolResult:
        """Run a delegated task and return its summarized result.

        Cancelling `cancel_token` stops the sub-agent at its next checkpoint.
        """
        try:
            kind = AgentType(agent_type)
        except ValueError:
            available = ", ".join(item.value for item in AgentType)
            return ToolResult(success=False, error=f"Unknown agent type: {agent_type}. Available types: {available}")
        try:
            level = Thoroughness(thoroughness or Thoroughness.MEDIUM.value)
        except ValueError:
            level = Thoroughness.MEDIUM

        capability = AGENT_CAPABILITIES[kind]
        task = self.orchestrator.create_task(kind, task_description, thoroughness=level)
        if cancel_token is not None:
            self._parent_tokens[task.id] = cancel_token
        result = await self.orchestrator.execute_task(task.id)

        metadata = {
            "agent_type": kind.value,
            "task_id": task.id,
            "thoroughness": level.value,
            "duration": task.duration,
            "tools_used": result.metadata.get("tools_used", []),
        }
        if not result.success:
            return ToolResult(
                success=False,
                output=result.output,
                error=str(result.metadata.get("error") or "Task execution failed"),
                metadata=metadata,
            )
        return ToolResult(
            output=summarize_result(result.output, task_description, capability.name, self.config),
            metadata=metadata,
        )

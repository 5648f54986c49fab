import asyncio

import pytest

from deckhand.agent import Agent
from deckhand.cancellation import CancellationToken
from deckhand.confirmation import SessionContext
from deckhand.config import Config, SubAgentConfig
from deckhand.exceptions import ValidationError
from deckhand.subagents import (
    AGENT_CAPABILITIES,
    AgentResult,
    AgentType,
    SubAgentLauncher,
    TaskOrchestrator,
    TaskStatus,
    Thoroughness,
    delegation_tool_definitions,
    summarize_result,
)
from deckhand.tools import ToolRegistry


async def _echo_runner(task):
    return AgentResult(success=True, output=f"done: {task.prompt}")


@pytest.mark.asyncio
async def test_execute_task_moves_through_lifecycle():
    orchestrator = TaskOrchestrator(_echo_runner, max_parallel_tasks=2)
    task = orchestrator.create_task("explore", "map the repo")

    assert task.status is TaskStatus.PENDING
    result = await orchestrator.execute_task(task.id)

    assert result.success
    assert result.output == "done: map the repo"
    assert task.status is TaskStatus.COMPLETED
    assert task.started_at is not None and task.completed_at is not None
    assert task.duration is not None and task.duration >= 0


@pytest.mark.asyncio
async def test_runner_exception_marks_task_failed():
    async def boom(task):
        raise RuntimeError("agent crashed")

    orchestrator = TaskOrchestrator(boom, max_parallel_tasks=1)
    task = orchestrator.create_task(AgentType.DEBUGGING, "find bug")

    result = await orchestrator.execute_task(task.id)

    assert result.success is False
    assert task.status is TaskStatus.FAILED
    assert task.error == "agent crashed"


@pytest.mark.asyncio
async def test_only_pending_tasks_can_run():
    orchestrator = TaskOrchestrator(_echo_runner, max_parallel_tasks=1)
    task = orchestrator.create_task("plan", "plan it")
    await orchestrator.execute_task(task.id)

    with pytest.raises(ValidationError):
        await orchestrator.execute_task(task.id)
    with pytest.raises(ValidationError):
        await orchestrator.execute_task("task_missing")


@pytest.mark.asyncio
async def test_parallel_execution_respects_limit():
    active = 0
    peak = 0

    async def slow(task):
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        await asyncio.sleep(0.01)
        active -= 1
        return AgentResult(success=True, output=task.description)

    orchestrator = TaskOrchestrator(slow, max_parallel_tasks=2)
    ids = [orchestrator.create_task("explore", f"t{idx}").id for idx in range(5)]

    results = await orchestrator.execute_parallel(ids)

    assert peak == 2
    assert [results[task_id].output for task_id in ids] == [f"t{idx}" for idx in range(5)]
    assert orchestrator.statistics()["completed"] == 5


@pytest.mark.asyncio
async def test_sequential_execution_preserves_order():
    order = []

    async def record(task):
        order.append(task.description)
        return AgentResult(success=True, output="")

    orchestrator = TaskOrchestrator(record, max_parallel_tasks=3)
    ids = [orchestrator.create_task("plan", name).id for name in ("a", "b", "c")]

    await orchestrator.execute_sequential(ids)

    assert order == ["a", "b", "c"]


def test_cancel_clear_and_statistics():
    orchestrator = TaskOrchestrator(_echo_runner, max_parallel_tasks=1)
    first = orchestrator.create_task("explore", "one")
    second = orchestrator.create_task("code-reviewer", "two")

    assert orchestrator.cancel_task(first.id) is True
    assert orchestrator.cancel_task(first.id) is False
    assert first.error == "Cancelled by user"

    stats = orchestrator.statistics()
    assert stats["total"] == 2
    assert stats["failed"] == 1
    assert stats["pending"] == 1
    assert stats["by_type"]["code-reviewer"] == 1
    assert orchestrator.tasks_by_type("explore") == [first]

    assert orchestrator.clear_completed() == 1
    assert orchestrator.list_tasks() == [second]

    orchestrator.set_max_parallel_tasks(0)
    assert orchestrator.max_parallel_tasks == 1


def test_summarize_short_output_passes_through():
    text = summarize_result("all good", "check things", "Code Reviewer")

    assert text == 'Code Reviewer Result for "check things":\n\nall good'


def test_summarize_long_output_keeps_head_and_tail():
    config = Config(subagents=SubAgentConfig(summary_threshold=30, summary_head_chars=10, summary_tail_chars=5))
    output = "H" * 10 + "m" * 40 + "T" * 5

    text = summarize_result(output, "task", "Explorer", config)

    assert "HHHHHHHHHH\n\n[... 40 characters omitted for brevity ...]\n\nTTTTT" in text
    assert "m" not in text.split("\n\n", 1)[1].replace("omitted", "")


def test_delegation_definitions_cover_every_agent_type():
    names = {definition.name for definition in delegation_tool_definitions()}

    assert names == {f"agent__{agent_type.value}" for agent_type in AgentType}


def test_round_ceiling_uses_smaller_limit(provider_cls):
    launcher = SubAgentLauncher(provider_cls(), SessionContext())
    explore = AGENT_CAPABILITIES[AgentType.EXPLORE]

    assert launcher.round_ceiling(explore, Thoroughness.QUICK) == 10
    assert launcher.round_ceiling(explore, Thoroughness.THOROUGH) == explore.max_rounds


@pytest.mark.asyncio
async def test_launch_unknown_type_fails(provider_cls):
    launcher = SubAgentLauncher(provider_cls(), SessionContext())

    result = await launcher.launch("wizard", "do magic")

    assert result.success is False
    assert result.error.startswith("Unknown agent type: wizard")


@pytest.mark.asyncio
async def test_launch_runs_restricted_sub_agent(provider_cls, tmp_path):
    provider = provider_cls([provider_cls.text("The entry point is main.py.")])
    launcher = SubAgentLauncher(provider, SessionContext(), base_path=tmp_path)

    result = await launcher.launch("explore", "find the entry point", "quick")

    assert result.success
    assert result.output.startswith('Codebase Explorer Result for "find the entry point"')
    assert "The entry point is main.py." in result.output
    assert result.metadata["agent_type"] == "explore"

    advertised = {definition.name for definition in provider.stream_tools[0]}
    assert advertised == set(AGENT_CAPABILITIES[AgentType.EXPLORE].tools)

    system_prompt = provider.stream_calls[0][1].content
    assert "Be concise" in system_prompt


@pytest.mark.asyncio
async def test_sub_agent_failure_is_reported_as_failed_result(provider_cls, tmp_path):
    provider = provider_cls([RuntimeError("model unavailable")])
    launcher = SubAgentLauncher(provider, SessionContext(), base_path=tmp_path)

    result = await launcher.launch("plan", "plan the work")

    assert result.success is False
    assert "model unavailable" in result.error


@pytest.mark.asyncio
async def test_cancelled_parent_turn_fails_sub_agent(provider_cls, tmp_path):
    provider = provider_cls([provider_cls.text("Partial plan")])
    launcher = SubAgentLauncher(provider, SessionContext(), base_path=tmp_path)
    token = CancellationToken()
    token.cancel()

    result = await launcher.launch("plan", "plan the work", cancel_token=token)

    assert result.success is False
    assert result.error == "Task cancelled"
    assert launcher.orchestrator.tasks_by_status(TaskStatus.FAILED)


@pytest.mark.asyncio
async def test_parent_agent_delegates_through_tool_call(provider_cls, tmp_path):
    provider = provider_cls(
        [
            provider_cls.tool_calls(("d1", "agent__plan", {"task_description": "plan a refactor"})),
            provider_cls.text("Step 1: split the module."),
            provider_cls.text("Here is the plan."),
        ]
    )
    agent = Agent(provider=provider, registry=ToolRegistry(tmp_path))

    events = [event async for event in agent.submit_user_message("help me plan")]

    result = next(event for event in events if event.type == "tool_result").tool_result
    assert result.success
    assert "Step 1: split the module." in result.output
    sub_agent_tools = {definition.name for definition in provider.stream_tools[1]}
    assert not any(name.startswith("agent__") for name in sub_agent_tools)
    assert events[-1].type == "done"

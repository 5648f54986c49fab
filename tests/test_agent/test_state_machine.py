import pytest

from deckhand.exceptions import InvalidTransitionError
from deckhand.state_machine import VALID_TRANSITIONS, ChatState, ChatStateMachine


def test_tool_round_then_response_path():
    machine = ChatStateMachine()
    for state in (
        ChatState.THINKING,
        ChatState.PLANNING_TOOLS,
        ChatState.EXECUTING_TOOLS,
        ChatState.THINKING,
        ChatState.RESPONDING,
        ChatState.DONE,
        ChatState.IDLE,
    ):
        machine.transition(state)

    assert machine.is_idle()
    assert [record.to_state for record in machine.history()][-2:] == [ChatState.DONE, ChatState.IDLE]


def test_every_state_outside_the_table_is_rejected():
    for source, allowed in VALID_TRANSITIONS.items():
        for target in ChatState:
            if target in allowed:
                continue
            machine = ChatStateMachine()
            machine.force_state(source)
            with pytest.raises(InvalidTransitionError):
                machine.transition(target)
            assert machine.is_error()


def test_idle_cannot_jump_to_responding():
    machine = ChatStateMachine()

    with pytest.raises(InvalidTransitionError) as excinfo:
        machine.transition(ChatState.RESPONDING)

    assert "idle" in excinfo.value.message
    assert machine.state is ChatState.ERROR


def test_guards_follow_state():
    machine = ChatStateMachine()
    assert not machine.can_show_thinking()

    machine.transition("thinking")
    assert machine.can_show_thinking()
    assert not machine.can_execute_tools()
    assert not machine.can_stream_content()

    machine.transition("planning_tools")
    assert machine.can_show_thinking()

    machine.transition("executing_tools")
    assert machine.can_execute_tools()
    assert not machine.can_show_thinking()

    machine.transition("responding")
    assert machine.can_stream_content()

    machine.transition("done")
    assert machine.is_complete()


def test_transition_records_metadata():
    machine = ChatStateMachine()
    record = machine.transition(ChatState.THINKING, round=1)

    assert record.from_state is ChatState.IDLE
    assert record.metadata == {"round": 1}
    assert machine.state_duration() >= 0


def test_reset_clears_history():
    machine = ChatStateMachine()
    machine.transition(ChatState.THINKING)
    machine.reset()

    assert machine.is_idle()
    assert machine.history() == []


def test_force_state_is_marked_in_history():
    machine = ChatStateMachine()
    machine.force_state(ChatState.ERROR)

    assert machine.history()[-1].metadata == {"forced": True}


def test_checkpoint_restore_rolls_back():
    machine = ChatStateMachine()
    machine.transition(ChatState.THINKING)
    checkpoint = machine.checkpoint()
    machine.transition(ChatState.RESPONDING)
    machine.transition(ChatState.DONE)

    machine.restore(checkpoint)

    assert machine.state is ChatState.THINKING
    assert len(machine.history()) == 1

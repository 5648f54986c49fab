import pytest

from deckhand.exceptions import NetworkError
from deckhand.llm import StreamFragment, ToolCallDelta
from deckhand.stream_processor import AccumulatedMessage, StreamProcessor, reduce_fragment


async def _stream(fragments):
    for fragment in fragments:
        if isinstance(fragment, BaseException):
            raise fragment
        yield fragment


def _fold(fragments):
    message = AccumulatedMessage()
    for fragment in fragments:
        message = reduce_fragment(message, fragment)
    return message


def _split_text(text: str, sizes: list[int]) -> list[str]:
    pieces, pos = [], 0
    for size in sizes:
        pieces.append(text[pos : pos + size])
        pos += size
    pieces.append(text[pos:])
    return [piece for piece in pieces if piece]


@pytest.mark.parametrize("sizes", [[], [1], [3, 5], [1, 1, 1, 1, 1, 1, 1]])
def test_reduction_does_not_depend_on_fragment_boundaries(sizes):
    content = "Listing the directory now."
    arguments = '{"command": "ls -la"}'

    fragments = [StreamFragment(role="assistant")]
    fragments += [StreamFragment(content=piece) for piece in _split_text(content, sizes)]
    fragments.append(StreamFragment(tool_call_deltas=[ToolCallDelta(index=0, id="call_1", name="bash")]))
    fragments += [
        StreamFragment(tool_call_deltas=[ToolCallDelta(index=0, arguments=piece)])
        for piece in _split_text(arguments, sizes)
    ]
    fragments.append(StreamFragment(finish_reason="tool_calls"))

    message = _fold(fragments)

    assert message.content == content
    assert message.finish_reason == "tool_calls"
    calls = message.finalized_tool_calls()
    assert len(calls) == 1
    assert calls[0].id == "call_1"
    assert calls[0].name == "bash"
    assert calls[0].arguments == arguments


def test_interleaved_tool_call_deltas_are_addressed_by_index():
    message = _fold(
        [
            StreamFragment(tool_call_deltas=[ToolCallDelta(index=1, id="b", name="search")]),
            StreamFragment(tool_call_deltas=[ToolCallDelta(index=0, id="a", name="view_")]),
            StreamFragment(tool_call_deltas=[ToolCallDelta(index=0, name="file", arguments='{"path":')]),
            StreamFragment(tool_call_deltas=[ToolCallDelta(index=1, arguments='{"query": "x"}')]),
            StreamFragment(tool_call_deltas=[ToolCallDelta(index=0, arguments=' "a.py"}')]),
        ]
    )

    calls = message.finalized_tool_calls()
    assert [call.id for call in calls] == ["a", "b"]
    assert calls[0].name == "view_file"
    assert calls[0].arguments == '{"path": "a.py"}'
    assert calls[1].arguments == '{"query": "x"}'


def test_later_fragment_without_id_keeps_first_id():
    message = _fold(
        [
            StreamFragment(tool_call_deltas=[ToolCallDelta(index=0, id="call_9", name="bash")]),
            StreamFragment(tool_call_deltas=[ToolCallDelta(index=0, arguments="{}")]),
        ]
    )

    assert message.finalized_tool_calls()[0].id == "call_9"


def test_last_supplied_id_wins():
    message = _fold(
        [
            StreamFragment(tool_call_deltas=[ToolCallDelta(index=0, id="a", name="bash")]),
            StreamFragment(tool_call_deltas=[ToolCallDelta(index=0, id="b", arguments="{}")]),
        ]
    )

    assert message.finalized_tool_calls()[0].id == "b"


def test_missing_and_repeated_ids_are_made_unique():
    blank = _fold(
        [
            StreamFragment(tool_call_deltas=[ToolCallDelta(index=0, name="bash")]),
            StreamFragment(tool_call_deltas=[ToolCallDelta(index=1, name="search")]),
        ]
    )
    repeated = _fold(
        [
            StreamFragment(tool_call_deltas=[ToolCallDelta(index=0, id="dup", name="bash")]),
            StreamFragment(tool_call_deltas=[ToolCallDelta(index=1, id="dup", name="search")]),
            StreamFragment(tool_call_deltas=[ToolCallDelta(index=2, id="call_1", name="view_file")]),
        ]
    )

    assert [call.id for call in blank.finalized_tool_calls()] == ["call_0", "call_1"]
    assert [call.id for call in repeated.finalized_tool_calls()] == ["dup", "call_1", "call_2"]


def test_unpopulated_indices_are_skipped():
    message = _fold([StreamFragment(tool_call_deltas=[ToolCallDelta(index=2, id="c", name="bash")])])

    assert len(message.tool_calls) == 3
    assert [call.id for call in message.finalized_tool_calls()] == ["c"]


def test_reduce_fragment_does_not_mutate_input():
    original = AccumulatedMessage(content="a")
    updated = reduce_fragment(original, StreamFragment(content="b"))

    assert original.content == "a"
    assert updated.content == "ab"


@pytest.mark.asyncio
async def test_process_collects_thinking_and_content():
    result = await StreamProcessor().process(
        _stream(
            [
                StreamFragment(role="assistant"),
                StreamFragment(reasoning="Let me "),
                StreamFragment(reasoning="think."),
                StreamFragment(content="Done."),
                StreamFragment(finish_reason="stop"),
            ]
        )
    )

    assert result.thinking == "Let me think."
    assert result.content == "Done."
    assert result.finish_reason == "stop"
    assert result.interrupted is False
    assert not StreamProcessor.has_tool_calls(result)


@pytest.mark.asyncio
async def test_tool_calls_require_tool_calls_finish_reason():
    fragments = [
        StreamFragment(tool_call_deltas=[ToolCallDelta(index=0, id="x", name="bash", arguments="{}")]),
        StreamFragment(finish_reason="stop"),
    ]

    result = await StreamProcessor().process(_stream(fragments))

    assert len(result.tool_calls) == 1
    assert StreamProcessor.has_tool_calls(result) is False


@pytest.mark.asyncio
async def test_missing_finish_reason_defaults_to_stop():
    result = await StreamProcessor().process(_stream([StreamFragment(content="hi")]))

    assert result.finish_reason == "stop"


@pytest.mark.asyncio
async def test_failure_after_fragments_returns_partial_result():
    result = await StreamProcessor().process(
        _stream([StreamFragment(content="partial "), StreamFragment(content="answer"), NetworkError("reset")])
    )

    assert result.content == "partial answer"
    assert result.interrupted is True
    assert "reset" in (result.interruption or "")
    assert result.finish_reason == "stop"


@pytest.mark.asyncio
async def test_failure_before_any_fragment_propagates():
    with pytest.raises(NetworkError):
        await StreamProcessor().process(_stream([NetworkError("refused")]))

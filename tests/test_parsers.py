"""Stream parser characterization: wire lines in, tagged events out.

Parsers must be independent of how the transport splits the body into reads,
including splits inside a multi-byte UTF-8 sequence.
"""

from __future__ import annotations

from hypothesis import given, settings
from hypothesis import strategies as st
import pytest

from tests.helpers import (
    aiter_chunks,
    anthropic_tool_stream,
    ndjson,
    openai_text_stream,
    openai_tool_stream,
    sse,
    split_every,
)
from toolstream.cancel import CancellationToken
from toolstream.parsers import (
    AnthropicStreamParser,
    Done,
    Finish,
    NDJSONStreamParser,
    OpenAIStreamParser,
    RoleAssigned,
    StreamErrorEvent,
    TextDelta,
    ToolCallDelta,
    ToolCallEnd,
    ToolCallStart,
    UsageUpdate,
)
from toolstream.tool_calls import ToolCallAccumulator

pytestmark = pytest.mark.contract


def _parse_all(parser, data: bytes, size: int | None = None):
    events = []
    for chunk in split_every(data, size) if size else [data]:
        events.extend(parser.feed(chunk))
    events.extend(parser.flush())
    return events


# =============================================================================
# Anthropic
# =============================================================================


def test_anthropic_tool_use_block_accumulates_by_index() -> None:
    """content_block_start + two input_json_delta fragments + stop -> one call."""
    body = anthropic_tool_stream("t1", "file_create", ('{"path":', '"a.txt"}'))
    events = _parse_all(AnthropicStreamParser(), body)

    acc = ToolCallAccumulator()
    ready = [call for event in events for call in acc.apply(event)]

    assert len(ready) == 1
    call = ready[0]
    assert call.id == "t1"
    assert call.name == "file_create"
    assert call.parameters == {"path": "a.txt"}
    assert ToolCallStart(index=0, id="t1", name="file_create") in events
    assert ToolCallEnd(0) in events
    assert events[-1] == Done()


def test_anthropic_text_usage_and_finish() -> None:
    body = sse(
        {"type": "message_start", "message": {"usage": {"input_tokens": 25, "output_tokens": 1}}},
        {"type": "ping"},
        {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "Hello"}},
        {"type": "message_delta", "delta": {"stop_reason": "end_turn"}, "usage": {"output_tokens": 15}},
        {"type": "message_stop"},
    )

    events = _parse_all(AnthropicStreamParser(), body)

    assert events == [
        UsageUpdate(input_tokens=25, output_tokens=1),
        TextDelta("Hello"),
        Finish("end_turn"),
        UsageUpdate(input_tokens=None, output_tokens=15),
        Done(),
    ]


def test_anthropic_error_event() -> None:
    body = sse({"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}})

    assert _parse_all(AnthropicStreamParser(), body) == [StreamErrorEvent("overloaded_error", "Overloaded")]


def test_sse_framing_lines_are_ignored() -> None:
    body = b"event: content_block_delta\nid: 7\n: keepalive\n" + sse(
        {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "x"}}
    )

    assert _parse_all(AnthropicStreamParser(), body) == [TextDelta("x")]


# =============================================================================
# OpenAI
# =============================================================================


def test_openai_fragments_concatenate_until_finish_reason() -> None:
    """Two argument fragments for index 0, then finish_reason tool_calls."""
    body = sse(
        {"choices": [{"delta": {"tool_calls": [{"index": 0, "id": "c1", "function": {"name": "calc", "arguments": '{"x":1'}}]}}]},
        {"choices": [{"delta": {"tool_calls": [{"index": 0, "function": {"arguments": "}"}}]}}]},
        {"choices": [{"delta": {}, "finish_reason": "tool_calls"}]},
        "[DONE]",
    )
    events = _parse_all(OpenAIStreamParser(), body)

    acc = ToolCallAccumulator()
    ready = [call for event in events for call in acc.apply(event)]

    assert [c.index for c in acc.calls()] == [0]
    assert len(ready) == 1
    assert ready[0].parameters == {"x": 1}
    assert events[-1] == Done()


def test_openai_text_role_usage_and_done() -> None:
    events = _parse_all(OpenAIStreamParser(), openai_text_stream("Hel", "lo"))

    assert events == [
        RoleAssigned("assistant"),
        TextDelta("Hel"),
        TextDelta("lo"),
        Finish("stop"),
        UsageUpdate(input_tokens=8, output_tokens=4),
        Done(),
    ]


def test_openai_missing_index_falls_back_to_position() -> None:
    body = sse({"choices": [{"delta": {"tool_calls": [{"id": "a", "function": {"name": "f", "arguments": "{}"}}]}}]})

    events = _parse_all(OpenAIStreamParser(), body)

    assert events == [ToolCallStart(index=0, id="a", name="f"), ToolCallDelta(index=0, fragment="{}")]


def test_openai_error_object() -> None:
    body = sse({"error": {"type": "server_error", "message": "boom"}})
    assert _parse_all(OpenAIStreamParser(), body) == [StreamErrorEvent("server_error", "boom")]


# =============================================================================
# NDJSON
# =============================================================================


def test_ndjson_done_line_reports_usage_then_finish() -> None:
    body = ndjson(
        {"response": "Hi", "done": False},
        {"response": " there", "done": False},
        {"response": "", "done": True, "prompt_eval_count": 7, "eval_count": 2},
    )

    assert _parse_all(NDJSONStreamParser(), body) == [
        TextDelta("Hi"),
        TextDelta(" there"),
        UsageUpdate(input_tokens=7, output_tokens=2),
        Finish("stop"),
        Done(),
    ]


def test_ndjson_final_line_without_newline_is_flushed() -> None:
    parser = NDJSONStreamParser()
    assert parser.feed(b'{"response": "tail", "done": false}') == []
    assert parser.flush() == [TextDelta("tail")]


def test_ndjson_error_line() -> None:
    assert _parse_all(NDJSONStreamParser(), ndjson({"error": "model not found"})) == [
        StreamErrorEvent("server_error", "model not found")
    ]


# =============================================================================
# Robustness
# =============================================================================


@pytest.mark.parametrize("parser_cls", [AnthropicStreamParser, OpenAIStreamParser, NDJSONStreamParser])
def test_garbage_lines_produce_no_events(parser_cls) -> None:
    body = b"data: {not json\n\ndata: [1, 2]\n\n{partial\n\n\r\n   \n"
    assert _parse_all(parser_cls(), body) == []


def test_split_utf8_sequence_across_reads() -> None:
    data = ndjson({"response": "héllo 日本", "done": False})
    parser = NDJSONStreamParser()
    events = []
    # One byte per read splits every multi-byte character.
    for i in range(len(data)):
        events.extend(parser.feed(data[i : i + 1]))
    events.extend(parser.flush())

    assert events == [TextDelta("héllo 日本")]


@settings(max_examples=50, deadline=None)
@given(size=st.integers(min_value=1, max_value=97))
def test_anthropic_events_independent_of_read_boundaries(size: int) -> None:
    body = anthropic_tool_stream(text="Let me check ✓")
    expected = _parse_all(AnthropicStreamParser(), body)

    assert _parse_all(AnthropicStreamParser(), body, size) == expected


@settings(max_examples=50, deadline=None)
@given(size=st.integers(min_value=1, max_value=97))
def test_openai_events_independent_of_read_boundaries(size: int) -> None:
    body = openai_text_stream("ça ", "va ", "🙂")
    expected = _parse_all(OpenAIStreamParser(), body)

    assert _parse_all(OpenAIStreamParser(), body, size) == expected


GARBAGE_LINES = [b"data: {not json\n", b"data: [1, 2]\n", b"{partial\n", b"\r\n", b"   \n", b"data: \"text\"\n"]

BODIES = {
    AnthropicStreamParser: anthropic_tool_stream(text="Let me check"),
    OpenAIStreamParser: openai_tool_stream(),
    NDJSONStreamParser: ndjson(
        {"response": "Hi", "done": False},
        {"response": " there", "done": False},
        {"response": "", "done": True, "prompt_eval_count": 3, "eval_count": 2},
    ),
}


def _with_line_inserted(body: bytes, line: bytes, position: int) -> bytes:
    starts = [0] + [i + 1 for i, byte in enumerate(body) if byte == ord("\n")]
    at = starts[position % len(starts)]
    return body[:at] + line + body[at:]


@pytest.mark.parametrize("parser_cls", list(BODIES))
@settings(max_examples=50, deadline=None)
@given(line=st.sampled_from(GARBAGE_LINES), position=st.integers(min_value=0, max_value=500))
def test_stray_line_anywhere_leaves_events_unchanged(parser_cls, line: bytes, position: int) -> None:
    body = BODIES[parser_cls]
    expected = _parse_all(parser_cls(), body)

    assert _parse_all(parser_cls(), _with_line_inserted(body, line, position)) == expected


# =============================================================================
# Read loop
# =============================================================================


@pytest.mark.asyncio
async def test_iter_events_releases_exactly_once_on_normal_end() -> None:
    released = 0

    async def release() -> None:
        nonlocal released
        released += 1

    parser = NDJSONStreamParser()
    chunks = split_every(ndjson({"response": "a"}, {"response": "b", "done": True}), 5)
    events = [e async for e in parser.iter_events(aiter_chunks(chunks), release=release)]

    assert [e for e in events if isinstance(e, TextDelta)] == [TextDelta("a"), TextDelta("b")]
    assert released == 1


@pytest.mark.asyncio
async def test_iter_events_stops_reading_after_cancel() -> None:
    token = CancellationToken()
    released = 0
    reads = 0

    async def release() -> None:
        nonlocal released
        released += 1

    async def chunks():
        nonlocal reads
        for line in (b'{"response": "one"}\n', b'{"response": "two"}\n', b'{"response": "three"}\n'):
            reads += 1
            yield line

    seen = []
    async for event in NDJSONStreamParser().iter_events(chunks(), cancel=token, release=release):
        seen.append(event)
        token.cancel("user pressed stop")

    assert seen == [TextDelta("one")]
    assert reads == 1
    assert released == 1

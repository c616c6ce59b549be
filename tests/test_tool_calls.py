from __future__ import annotations

import json
import logging

from hypothesis import given
from hypothesis import strategies as st
import pytest

from toolstream.parsers.events import Finish, TextDelta, ToolCallDelta, ToolCallEnd, ToolCallStart
from toolstream.tool_calls import ToolCall, ToolCallAccumulator, ToolCallState, parse_arguments

pytestmark = pytest.mark.unit

_json_values = st.recursive(
    st.none() | st.booleans() | st.integers() | st.text(max_size=10),
    lambda children: st.lists(children, max_size=3) | st.dictionaries(st.text(max_size=5), children, max_size=3),
    max_leaves=8,
)


@given(
    params=st.dictionaries(st.text(max_size=8), _json_values, max_size=4),
    cuts=st.lists(st.integers(min_value=0, max_value=400), max_size=6),
)
def test_any_fragmentation_yields_the_same_parameters(params: dict, cuts: list[int]) -> None:
    raw = json.dumps(params)
    points = sorted({min(c, len(raw)) for c in cuts})
    fragments = [raw[a:b] for a, b in zip([0, *points], [*points, len(raw)], strict=True)]

    acc = ToolCallAccumulator()
    acc.apply(ToolCallStart(index=0, id="c", name="f"))
    for fragment in fragments:
        acc.apply(ToolCallDelta(index=0, fragment=fragment))
    (call,) = acc.apply(ToolCallEnd(0))

    assert call.parameters == params


def test_one_call_per_index_and_calls_sorted() -> None:
    acc = ToolCallAccumulator()
    acc.apply(ToolCallStart(index=1, id="b", name="second"))
    acc.apply(ToolCallStart(index=0, id="a", name="first"))
    acc.apply(ToolCallStart(index=0, id="", name=""))

    assert [(c.index, c.id, c.name) for c in acc.calls()] == [(0, "a", "first"), (1, "b", "second")]
    assert len(acc) == 2


def test_finish_tool_calls_finalizes_every_pending_call() -> None:
    acc = ToolCallAccumulator()
    acc.apply(ToolCallDelta(index=0, fragment='{"a": 1}'))
    acc.apply(ToolCallDelta(index=1, fragment='{"b": 2}'))

    ready = acc.apply(Finish("tool_calls"))

    assert [c.parameters for c in ready] == [{"a": 1}, {"b": 2}]
    assert all(c.state is ToolCallState.READY for c in ready)
    assert acc.apply(Finish("tool_calls")) == []


def test_unrelated_events_and_unknown_indices_are_ignored() -> None:
    acc = ToolCallAccumulator()
    assert acc.apply(TextDelta("hi")) == []
    assert acc.apply(ToolCallEnd(5)) == []
    assert acc.apply(Finish("stop")) == []
    assert len(acc) == 0


def test_parameters_are_parsed_exactly_once(monkeypatch: pytest.MonkeyPatch) -> None:
    calls = 0
    real = json.loads

    def counting_loads(raw, *args, **kwargs):
        nonlocal calls
        calls += 1
        return real(raw, *args, **kwargs)

    monkeypatch.setattr("toolstream.tool_calls.json.loads", counting_loads)
    call = ToolCall(id="x", name="f", arguments='{"k": "v"}')

    assert call.parameters == {"k": "v"}
    assert call.parameters is call.finalize()
    assert calls == 1


def test_fragments_after_finalize_are_ignored() -> None:
    call = ToolCall(id="x", arguments='{"k": 1}')
    call.finalize()
    call.append(', "late": true}')

    assert call.parameters == {"k": 1}


def test_invalid_arguments_become_empty_parameters(caplog: pytest.LogCaptureFixture) -> None:
    with caplog.at_level(logging.WARNING, logger="toolstream.tool_calls"):
        assert parse_arguments('{"path": ', call_id="c9") == {}
    assert "c9" in caplog.text
    assert parse_arguments("[1, 2]") == {}
    assert parse_arguments("   ") == {}


def test_missing_id_is_synthesized_on_finalize() -> None:
    call = ToolCall(name="f", arguments="{}")
    call.finalize()

    assert call.id.startswith("call_")
    assert call.state is ToolCallState.READY


def test_complete_builds_a_finalized_call_in_both_wire_shapes() -> None:
    call = ToolCall.complete(id="toolu_1", name="file_read", parameters={"path": "a"})

    assert call.finalized
    assert call.to_openai() == {
        "id": "toolu_1",
        "type": "function",
        "function": {"name": "file_read", "arguments": '{"path": "a"}'},
    }
    assert call.to_anthropic() == {"type": "tool_use", "id": "toolu_1", "name": "file_read", "input": {"path": "a"}}


def test_terminal_states() -> None:
    assert {s for s in ToolCallState if s.terminal} == {
        ToolCallState.SUCCEEDED,
        ToolCallState.FAILED,
        ToolCallState.DENIED,
        ToolCallState.TIMED_OUT,
    }

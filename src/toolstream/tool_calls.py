"""In-flight tool calls and their per-stream accumulator.

A tool call is created by the first event that names its index, grows by
argument fragments, and is finalized exactly once: the argument buffer is
JSON-parsed when the provider signals the call is complete. A buffer that
does not parse yields empty parameters instead of failing the turn.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import enum
import json
import logging
from typing import TYPE_CHECKING, Any
import uuid

from toolstream.parsers.events import Finish, ToolCallDelta, ToolCallEnd, ToolCallStart

if TYPE_CHECKING:
    from collections.abc import Iterator

    from toolstream.parsers.events import StreamEvent

log = logging.getLogger(__name__)


class ToolCallState(str, enum.Enum):
    """Lifecycle of one tool call."""

    ACCUMULATING = "accumulating"
    PENDING_APPROVAL = "pending_approval"
    READY = "ready"
    EXECUTING = "executing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    DENIED = "denied"
    TIMED_OUT = "timed_out"

    @property
    def terminal(self) -> bool:
        return self in _TERMINAL_STATES


_TERMINAL_STATES = frozenset(
    {
        ToolCallState.SUCCEEDED,
        ToolCallState.FAILED,
        ToolCallState.DENIED,
        ToolCallState.TIMED_OUT,
    }
)


def synthesize_call_id() -> str:
    """Return an id for calls whose backend did not assign one."""
    return f"call_{uuid.uuid4().hex[:12]}"


@dataclass
class ToolCall:
    """A backend's request to invoke a capability, possibly still streaming."""

    index: int = 0
    id: str = ""
    name: str = ""
    arguments: str = ""
    state: ToolCallState = ToolCallState.ACCUMULATING
    _parameters: dict[str, Any] | None = field(default=None, repr=False)

    def append(self, fragment: str) -> None:
        """Concatenate an argument fragment; fragments never replace."""
        if self._parameters is not None:
            log.debug("Ignoring fragment for finalized tool call %s", self.id)
            return
        self.arguments += fragment

    @property
    def finalized(self) -> bool:
        return self._parameters is not None

    def finalize(self) -> dict[str, Any]:
        """Parse the buffer once; later calls return the cached mapping."""
        if self._parameters is not None:
            return self._parameters
        if not self.id:
            self.id = synthesize_call_id()
        self._parameters = parse_arguments(self.arguments, call_id=self.id)
        if self.state is ToolCallState.ACCUMULATING:
            self.state = ToolCallState.READY
        return self._parameters

    @property
    def parameters(self) -> dict[str, Any]:
        """Parsed parameters (finalizes on first access)."""
        return self.finalize()

    @classmethod
    def complete(
        cls,
        *,
        id: str,
        name: str,
        parameters: dict[str, Any] | None = None,
        index: int = 0,
    ) -> ToolCall:
        """Build an already-finalized call from a non-streaming response."""
        params = dict(parameters or {})
        return cls(
            index=index,
            id=id or synthesize_call_id(),
            name=name,
            arguments=json.dumps(params),
            state=ToolCallState.READY,
            _parameters=params,
        )

    def to_openai(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments or "{}"},
        }

    def to_anthropic(self) -> dict[str, Any]:
        return {
            "type": "tool_use",
            "id": self.id,
            "name": self.name,
            "input": self.parameters,
        }


def parse_arguments(raw: str, *, call_id: str = "") -> dict[str, Any]:
    """Decode a JSON argument buffer; anything but an object becomes ``{}``."""
    if not raw.strip():
        return {}
    try:
        value = json.loads(raw)
    except (json.JSONDecodeError, ValueError):
        log.warning(
            "Tool call %s arguments are not valid JSON; using empty parameters",
            call_id or "<unknown>",
        )
        return {}
    if not isinstance(value, dict):
        log.warning("Tool call %s arguments are not a JSON object", call_id or "<unknown>")
        return {}
    return value


class ToolCallAccumulator:
    """Index-keyed table of the tool calls of one stream.

    Exactly one :class:`ToolCall` exists per index. ``apply`` returns the calls
    that became ready as a result of the event, in index order.
    """

    def __init__(self) -> None:
        self._calls: dict[int, ToolCall] = {}

    def __len__(self) -> int:
        return len(self._calls)

    def __iter__(self) -> Iterator[ToolCall]:
        return iter(self.calls())

    def calls(self) -> list[ToolCall]:
        return [self._calls[i] for i in sorted(self._calls)]

    def get(self, index: int) -> ToolCall | None:
        return self._calls.get(index)

    def _ensure(self, index: int) -> ToolCall:
        call = self._calls.get(index)
        if call is None:
            call = ToolCall(index=index)
            self._calls[index] = call
        return call

    def start(self, index: int, call_id: str = "", name: str = "") -> ToolCall:
        call = self._ensure(index)
        # Later deltas may repeat the id or send an empty name.
        if call_id and not call.id:
            call.id = call_id
        if name and not call.name:
            call.name = name
        return call

    def append(self, index: int, fragment: str) -> ToolCall:
        call = self._ensure(index)
        call.append(fragment)
        return call

    def finish(self, index: int) -> ToolCall | None:
        """Finalize one call (content-block stop); None if the index is unknown."""
        call = self._calls.get(index)
        if call is None or call.finalized:
            return None
        call.finalize()
        return call

    def finish_all(self) -> list[ToolCall]:
        """Finalize every pending call (OpenAI ``finish_reason == "tool_calls"``)."""
        ready = []
        for call in self.calls():
            if not call.finalized:
                call.finalize()
                ready.append(call)
        return ready

    def apply(self, event: StreamEvent) -> list[ToolCall]:
        if isinstance(event, ToolCallStart):
            self.start(event.index, event.id, event.name)
        elif isinstance(event, ToolCallDelta):
            self.append(event.index, event.fragment)
        elif isinstance(event, ToolCallEnd):
            call = self.finish(event.index)
            return [call] if call is not None else []
        elif isinstance(event, Finish) and event.reason in ("tool_calls", "tool_use"):
            return self.finish_all()
        return []

    def clear(self) -> None:
        self._calls.clear()

"""Anthropic Messages API server-sent events."""

from __future__ import annotations

from typing import Any

from toolstream.parsers.base import StreamParser, strip_sse_data
from toolstream.parsers.events import (
    Done,
    Finish,
    StreamErrorEvent,
    StreamEvent,
    TextDelta,
    ToolCallDelta,
    ToolCallEnd,
    ToolCallStart,
    UsageUpdate,
)


def _int_or_none(value: Any) -> int | None:
    return value if isinstance(value, int) and not isinstance(value, bool) else None


class AnthropicStreamParser(StreamParser):
    """Parser for ``text/event-stream`` bodies of the Messages API.

    Tool argument fragments are keyed by content-block index: a tool_use
    block's id arrives in ``content_block_start`` but every later delta only
    names the index.
    """

    protocol = "anthropic"

    def parse_line(self, line: str) -> list[StreamEvent]:
        payload = strip_sse_data(line)
        if payload is None or not payload.strip():
            return []
        event = self.load_json(payload)
        if event is None:
            return []

        kind = event.get("type")
        if kind == "content_block_delta":
            return self._block_delta(event)
        if kind == "content_block_start":
            return self._block_start(event)
        if kind == "content_block_stop":
            index = _int_or_none(event.get("index"))
            return [ToolCallEnd(index)] if index is not None else []
        if kind == "message_start":
            message = event.get("message")
            usage = message.get("usage") if isinstance(message, dict) else None
            if isinstance(usage, dict):
                return [
                    UsageUpdate(
                        input_tokens=_int_or_none(usage.get("input_tokens")),
                        output_tokens=_int_or_none(usage.get("output_tokens")),
                    )
                ]
            return []
        if kind == "message_delta":
            return self._message_delta(event)
        if kind == "message_stop":
            return [Done()]
        if kind == "error":
            error = event.get("error")
            if not isinstance(error, dict):
                error = {}
            return [
                StreamErrorEvent(
                    kind=str(error.get("type") or "unknown"),
                    message=str(error.get("message") or "Unknown error"),
                )
            ]
        # ping and future event types carry nothing we consume.
        return []

    @staticmethod
    def _block_start(event: dict[str, Any]) -> list[StreamEvent]:
        block = event.get("content_block")
        index = _int_or_none(event.get("index"))
        if not isinstance(block, dict) or index is None:
            return []
        if block.get("type") != "tool_use":
            return []
        return [
            ToolCallStart(
                index=index,
                id=str(block.get("id") or ""),
                name=str(block.get("name") or ""),
            )
        ]

    @staticmethod
    def _block_delta(event: dict[str, Any]) -> list[StreamEvent]:
        delta = event.get("delta")
        if not isinstance(delta, dict):
            return []
        delta_type = delta.get("type")
        if delta_type == "text_delta":
            text = delta.get("text")
            return [TextDelta(text)] if isinstance(text, str) and text else []
        if delta_type == "input_json_delta":
            index = _int_or_none(event.get("index"))
            fragment = delta.get("partial_json")
            if index is None or not isinstance(fragment, str) or not fragment:
                return []
            return [ToolCallDelta(index=index, fragment=fragment)]
        return []

    @staticmethod
    def _message_delta(event: dict[str, Any]) -> list[StreamEvent]:
        events: list[StreamEvent] = []
        delta = event.get("delta")
        if isinstance(delta, dict) and isinstance(delta.get("stop_reason"), str):
            events.append(Finish(delta["stop_reason"]))
        usage = event.get("usage")
        if isinstance(usage, dict):
            events.append(
                UsageUpdate(
                    input_tokens=_int_or_none(usage.get("input_tokens")),
                    output_tokens=_int_or_none(usage.get("output_tokens")),
                )
            )
        return events

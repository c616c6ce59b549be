"""OpenAI Chat Completions server-sent events (also spoken by DeepSeek)."""

from __future__ import annotations

from typing import Any

from toolstream.parsers.base import StreamParser, strip_sse_data
from toolstream.parsers.events import (
    Done,
    Finish,
    RoleAssigned,
    StreamErrorEvent,
    StreamEvent,
    TextDelta,
    ToolCallDelta,
    ToolCallStart,
    UsageUpdate,
)

DONE_SENTINEL = "[DONE]"


class OpenAIStreamParser(StreamParser):
    """Parser for ``chat.completion.chunk`` streams.

    ``function.arguments`` is always a fragment to append, never a
    replacement. ``finish_reason`` lives on the choice, not the delta, and is
    reported as a separate :class:`Finish` after the delta's own events.
    """

    protocol = "openai"

    def parse_line(self, line: str) -> list[StreamEvent]:
        payload = strip_sse_data(line)
        if payload is None or not payload.strip():
            return []
        if payload.strip() == DONE_SENTINEL:
            return [Done()]
        chunk = self.load_json(payload)
        if chunk is None:
            return []

        error = chunk.get("error")
        if isinstance(error, dict):
            return [
                StreamErrorEvent(
                    kind=str(error.get("type") or error.get("code") or "unknown"),
                    message=str(error.get("message") or "Unknown error"),
                )
            ]

        events: list[StreamEvent] = []
        choices = chunk.get("choices")
        choice = choices[0] if isinstance(choices, list) and choices else None
        if isinstance(choice, dict):
            delta = choice.get("delta")
            if isinstance(delta, dict):
                events.extend(self._delta_events(delta))
            finish_reason = choice.get("finish_reason")
            if isinstance(finish_reason, str) and finish_reason:
                events.append(Finish(finish_reason))

        usage = chunk.get("usage")
        if isinstance(usage, dict):
            prompt = usage.get("prompt_tokens")
            completion = usage.get("completion_tokens")
            events.append(
                UsageUpdate(
                    input_tokens=prompt if isinstance(prompt, int) else None,
                    output_tokens=completion if isinstance(completion, int) else None,
                )
            )
        return events

    @staticmethod
    def _delta_events(delta: dict[str, Any]) -> list[StreamEvent]:
        events: list[StreamEvent] = []
        role = delta.get("role")
        if isinstance(role, str) and role:
            events.append(RoleAssigned(role))

        content = delta.get("content")
        if isinstance(content, str) and content:
            events.append(TextDelta(content))

        tool_calls = delta.get("tool_calls")
        if isinstance(tool_calls, list):
            for position, item in enumerate(tool_calls):
                if not isinstance(item, dict):
                    continue
                index = item.get("index")
                if not isinstance(index, int):
                    index = position
                function = item.get("function")
                if not isinstance(function, dict):
                    function = {}
                call_id = item.get("id")
                name = function.get("name")
                if call_id or name:
                    events.append(
                        ToolCallStart(
                            index=index,
                            id=str(call_id or ""),
                            name=str(name or ""),
                        )
                    )
                arguments = function.get("arguments")
                if isinstance(arguments, str) and arguments:
                    events.append(ToolCallDelta(index=index, fragment=arguments))
        return events

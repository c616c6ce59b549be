"""Newline-delimited JSON streams from local inference servers (Ollama)."""

from __future__ import annotations

from toolstream.parsers.base import StreamParser
from toolstream.parsers.events import (
    Done,
    Finish,
    StreamErrorEvent,
    StreamEvent,
    TextDelta,
    UsageUpdate,
)


class NDJSONStreamParser(StreamParser):
    """One JSON object per line: ``{"response": "...", "done": false}``.

    No SSE framing and no tool calls.
    """

    protocol = "ndjson"

    def parse_line(self, line: str) -> list[StreamEvent]:
        chunk = self.load_json(line)
        if chunk is None:
            return []

        error = chunk.get("error")
        if isinstance(error, str) and error:
            return [StreamErrorEvent(kind="server_error", message=error)]

        events: list[StreamEvent] = []
        text = chunk.get("response")
        if isinstance(text, str) and text:
            events.append(TextDelta(text))

        if chunk.get("done") is True:
            prompt = chunk.get("prompt_eval_count")
            completion = chunk.get("eval_count")
            if isinstance(prompt, int) or isinstance(completion, int):
                events.append(
                    UsageUpdate(
                        input_tokens=prompt if isinstance(prompt, int) else None,
                        output_tokens=completion if isinstance(completion, int) else None,
                    )
                )
            reason = chunk.get("done_reason")
            events.append(Finish(reason if isinstance(reason, str) and reason else "stop"))
            events.append(Done())
        return events

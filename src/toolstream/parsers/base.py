"""Line framing and the async read loop shared by every protocol parser.

A parser owns an incremental UTF-8 decoder and the tail of the last line that
may be incomplete across read boundaries. Subclasses implement
:meth:`StreamParser.parse_line`, which classifies one complete line into zero
or more :mod:`toolstream.parsers.events`.

Malformed input never raises: a line that fails to decode as JSON is logged
at debug level and produces no events.
"""

from __future__ import annotations

import codecs
import json
import logging
from typing import TYPE_CHECKING, Any, ClassVar

if TYPE_CHECKING:
    from collections.abc import AsyncIterable, AsyncIterator, Awaitable, Callable

    from toolstream.cancel import CancellationToken
    from toolstream.parsers.events import StreamEvent

log = logging.getLogger(__name__)


class StreamParser:
    """Base class: bytes in, tagged stream events out."""

    protocol: ClassVar[str] = "base"

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    def reset(self) -> None:
        """Drop any buffered partial line and decoder state."""
        self._decoder.reset()
        self._buffer = ""

    def feed(self, data: bytes | str) -> list[StreamEvent]:
        """Consume one read and return the events of every completed line."""
        text = data if isinstance(data, str) else self._decoder.decode(data)
        if not text:
            return []
        self._buffer += text
        *lines, self._buffer = self._buffer.split("\n")
        events: list[StreamEvent] = []
        for line in lines:
            events.extend(self._classify(line))
        return events

    def flush(self) -> list[StreamEvent]:
        """Classify whatever is left once the transport reports end-of-stream."""
        self._buffer += self._decoder.decode(b"", final=True)
        tail, self._buffer = self._buffer, ""
        return self._classify(tail)

    def _classify(self, line: str) -> list[StreamEvent]:
        line = line.rstrip("\r")
        if not line.strip():
            return []
        return self.parse_line(line)

    def parse_line(self, line: str) -> list[StreamEvent]:
        """Classify one complete, non-blank line."""
        raise NotImplementedError

    def load_json(self, payload: str) -> dict[str, Any] | None:
        """Decode a JSON object, or return None for partial/garbage input."""
        try:
            value = json.loads(payload)
        except (json.JSONDecodeError, ValueError):
            log.debug("%s parser skipped non-JSON line: %.80r", self.protocol, payload)
            return None
        if not isinstance(value, dict):
            log.debug("%s parser skipped non-object payload: %.80r", self.protocol, payload)
            return None
        return value

    async def iter_events(
        self,
        chunks: AsyncIterable[bytes],
        *,
        cancel: CancellationToken | None = None,
        release: Callable[[], Awaitable[None]] | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Read *chunks* until exhausted or cancelled, yielding events in order.

        The cancellation handle is checked before every read; a cancelled read
        loop exits without flushing the partial tail. *release* is awaited
        exactly once when the loop ends, on every path.
        """
        iterator = chunks.__aiter__()
        try:
            while True:
                if cancel is not None and cancel.cancelled:
                    log.info("%s stream aborted by caller", self.protocol)
                    return
                try:
                    chunk = await iterator.__anext__()
                except StopAsyncIteration:
                    break
                for event in self.feed(chunk):
                    yield event
            for event in self.flush():
                yield event
        finally:
            if release is not None:
                await release()


def strip_sse_data(line: str) -> str | None:
    """Return the payload of an SSE ``data:`` line; None for other SSE fields.

    Lines without any SSE field prefix are returned unchanged so that
    backends which drop the framing still parse.
    """
    if line.startswith("data:"):
        payload = line[5:]
        return payload[1:] if payload.startswith(" ") else payload
    if line.startswith(("event:", "id:", "retry:", ":")):
        return None
    return line

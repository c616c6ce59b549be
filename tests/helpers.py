"""Test helpers (small, reusable doubles).

Keep this file tiny and purpose-built: wire-format builders and scripted
``httpx.MockTransport`` handlers shared by the provider and orchestrator
suites.
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

import httpx

if TYPE_CHECKING:
    from collections.abc import AsyncIterator


def sse(*events: dict[str, Any] | str) -> bytes:
    """Encode events as ``data:`` lines; strings are sent verbatim (``[DONE]``)."""
    lines = []
    for event in events:
        payload = event if isinstance(event, str) else json.dumps(event, ensure_ascii=False)
        lines.append(f"data: {payload}\n\n")
    return "".join(lines).encode()


def ndjson(*objects: dict[str, Any]) -> bytes:
    return "".join(json.dumps(obj, ensure_ascii=False) + "\n" for obj in objects).encode()


def split_every(data: bytes, size: int) -> list[bytes]:
    return [data[i : i + size] for i in range(0, len(data), size)] or [b""]


async def aiter_chunks(chunks: list[bytes]) -> AsyncIterator[bytes]:
    for chunk in chunks:
        yield chunk


class ChunkStream(httpx.AsyncByteStream):
    """Response body delivered as the given reads, tracking closure."""

    def __init__(self, chunks: list[bytes]) -> None:
        self.chunks = chunks
        self.closed = False

    async def __aiter__(self) -> AsyncIterator[bytes]:
        for chunk in self.chunks:
            yield chunk

    async def aclose(self) -> None:
        self.closed = True


def anthropic_text_stream(*texts: str, input_tokens: int = 10, output_tokens: int = 5) -> bytes:
    events: list[dict[str, Any]] = [
        {"type": "message_start", "message": {"usage": {"input_tokens": input_tokens, "output_tokens": 1}}},
        {"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}},
    ]
    events.extend(
        {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": t}} for t in texts
    )
    events.extend(
        [
            {"type": "content_block_stop", "index": 0},
            {
                "type": "message_delta",
                "delta": {"stop_reason": "end_turn"},
                "usage": {"output_tokens": output_tokens},
            },
            {"type": "message_stop"},
        ]
    )
    return sse(*events)


def anthropic_tool_stream(
    call_id: str = "toolu_1",
    name: str = "file_read",
    fragments: tuple[str, ...] = ('{"path":', ' "a.txt"}'),
    *,
    text: str = "",
) -> bytes:
    events: list[dict[str, Any]] = [
        {"type": "message_start", "message": {"usage": {"input_tokens": 12, "output_tokens": 1}}},
    ]
    index = 0
    if text:
        events.extend(
            [
                {"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}},
                {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": text}},
                {"type": "content_block_stop", "index": 0},
            ]
        )
        index = 1
    events.append(
        {
            "type": "content_block_start",
            "index": index,
            "content_block": {"type": "tool_use", "id": call_id, "name": name, "input": {}},
        }
    )
    events.extend(
        {
            "type": "content_block_delta",
            "index": index,
            "delta": {"type": "input_json_delta", "partial_json": fragment},
        }
        for fragment in fragments
    )
    events.extend(
        [
            {"type": "content_block_stop", "index": index},
            {"type": "message_delta", "delta": {"stop_reason": "tool_use"}, "usage": {"output_tokens": 20}},
            {"type": "message_stop"},
        ]
    )
    return sse(*events)


def openai_text_stream(*texts: str) -> bytes:
    chunks: list[dict[str, Any] | str] = [{"choices": [{"delta": {"role": "assistant"}, "finish_reason": None}]}]
    chunks.extend({"choices": [{"delta": {"content": t}, "finish_reason": None}]} for t in texts)
    chunks.append({"choices": [{"delta": {}, "finish_reason": "stop"}]})
    chunks.append({"choices": [], "usage": {"prompt_tokens": 8, "completion_tokens": 4}})
    chunks.append("[DONE]")
    return sse(*chunks)


def openai_tool_stream(
    call_id: str = "call_abc",
    name: str = "file_read",
    fragments: tuple[str, ...] = ('{"pa', 'th": "a.txt"}'),
) -> bytes:
    chunks: list[dict[str, Any] | str] = [
        {
            "choices": [
                {
                    "delta": {
                        "role": "assistant",
                        "tool_calls": [
                            {"index": 0, "id": call_id, "type": "function", "function": {"name": name, "arguments": ""}}
                        ],
                    },
                    "finish_reason": None,
                }
            ]
        }
    ]
    chunks.extend(
        {
            "choices": [
                {"delta": {"tool_calls": [{"index": 0, "function": {"arguments": fragment}}]}, "finish_reason": None}
            ]
        }
        for fragment in fragments
    )
    chunks.append({"choices": [{"delta": {}, "finish_reason": "tool_calls"}]})
    chunks.append("[DONE]")
    return sse(*chunks)


class ScriptedTransport:
    """MockTransport handler replaying a script of responses, one per request.

    Script items are ``(status, body_bytes)`` tuples or exceptions to raise.
    Every request is recorded with its decoded JSON body.
    """

    def __init__(self, *script: tuple[int, bytes] | Exception) -> None:
        self.script = list(script)
        self.requests: list[httpx.Request] = []
        self.streams: list[ChunkStream] = []

    @property
    def bodies(self) -> list[dict[str, Any]]:
        return [json.loads(r.content or b"{}") for r in self.requests]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if not self.script:
            raise AssertionError(f"Unexpected request to {request.url}")
        item = self.script.pop(0)
        if isinstance(item, Exception):
            raise item
        status, body = item
        stream = ChunkStream(split_every(body, 64))
        self.streams.append(stream)
        return httpx.Response(status, stream=stream, request=request)

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


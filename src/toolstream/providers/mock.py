"""Mock provider for testing without network access."""

from __future__ import annotations

import json
from typing import Any

import httpx

from toolstream.providers.local import LocalProvider
from toolstream.providers.models import ModelPricing, ProviderDescriptor, RequestDefaults

MOCK_DESCRIPTOR = ProviderDescriptor(
    id="mock",
    name="Mock",
    base_url="http://mock.invalid",
    models=("mock-model",),
    default_model="mock-model",
    supports_streaming=True,
    supports_tool_calling=False,
    pricing={"mock-model": ModelPricing(0.0, 0.0)},
    api_key_pattern=None,
    defaults=RequestDefaults(max_tokens=256, temperature=0.0, timeout_s=5.0),
)


def _echo_text(prompt: str) -> str:
    # The last "User:" section is the newest turn.
    last = prompt.rsplit("User: ", 1)[-1]
    last = last.split("\n\nAssistant:", 1)[0].strip()
    return f"echo: {last[:100]}"


def _mock_handler(request: httpx.Request) -> httpx.Response:
    body: dict[str, Any] = json.loads(request.content or b"{}")
    text = _echo_text(str(body.get("prompt", "")))
    if not body.get("stream"):
        return httpx.Response(
            200,
            json={
                "model": body.get("model"),
                "response": text,
                "done": True,
                "prompt_eval_count": 10,
                "eval_count": 10,
            },
        )
    words = text.split(" ")
    lines = [
        json.dumps({"response": word if i == 0 else f" {word}", "done": False})
        for i, word in enumerate(words)
    ]
    lines.append(json.dumps({"response": "", "done": True, "prompt_eval_count": 10, "eval_count": len(words)}))
    return httpx.Response(
        200,
        content="\n".join(lines).encode() + b"\n",
        headers={"content-type": "application/x-ndjson"},
    )


class MockProvider(LocalProvider):
    """Deterministic echo over an in-process transport.

    Speaks the local NDJSON protocol so the real parser and streaming loop
    run unchanged.
    """

    descriptor = MOCK_DESCRIPTOR

    def __init__(self, **kwargs: Any) -> None:
        kwargs.setdefault("transport", httpx.MockTransport(_mock_handler))
        super().__init__(**kwargs)

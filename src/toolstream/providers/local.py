"""Local inference provider (Ollama-style ``/api/generate`` NDJSON)."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from toolstream.parsers.ndjson import NDJSONStreamParser
from toolstream.providers.base import BaseProvider
from toolstream.providers.models import (
    ModelPricing,
    ProviderDescriptor,
    ProviderResponse,
    RequestDefaults,
    Usage,
)

if TYPE_CHECKING:
    from collections.abc import Sequence

    from toolstream.providers.models import Message

_LOCAL_MODELS = ("ollama", "lm-studio", "llama2", "codellama", "mistral", "phi")

LOCAL_DESCRIPTOR = ProviderDescriptor(
    id="local",
    name="Local LLM",
    base_url="http://localhost:11434",
    models=_LOCAL_MODELS,
    default_model="ollama",
    supports_streaming=True,
    supports_tool_calling=False,
    tool_format=None,
    max_tools=0,
    pricing={model: ModelPricing(0.0, 0.0) for model in _LOCAL_MODELS},
    api_key_pattern=None,
    # Local models can be slow to produce the first token.
    defaults=RequestDefaults(max_tokens=4000, temperature=0.7, timeout_s=120.0),
)


def render_prompt(messages: Sequence[Message], system: str | None) -> str:
    """Flatten a conversation into the single prompt ``/api/generate`` takes."""
    lines: list[str] = []
    if system:
        lines.append(f"System: {system}")
    for message in messages:
        label = {"system": "System", "user": "User", "assistant": "Assistant", "tool": "Tool"}[message.role]
        if message.content:
            lines.append(f"{label}: {message.content}")
    lines.append("Assistant:")
    return "\n\n".join(lines)


class LocalProvider(BaseProvider):
    """Unauthenticated local server; every model is free."""

    descriptor = LOCAL_DESCRIPTOR
    parser_class = NDJSONStreamParser

    def _url(self) -> str:
        return f"{self.descriptor.base_url}/api/generate"

    def _build_payload(
        self,
        *,
        system: str | None,
        messages: Sequence[Message],
        model: str,
        stream: bool,
        tools: list[dict[str, Any]] | None = None,
        tool_choice: str | dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        del tools, tool_choice
        return {
            "model": model,
            "prompt": render_prompt(messages, system),
            "stream": stream,
            "options": {
                "temperature": self.descriptor.defaults.temperature,
                "num_predict": self.descriptor.defaults.max_tokens,
            },
        }

    def _parse_response(self, data: dict[str, Any], model: str) -> ProviderResponse:
        usage = Usage.from_mapping(data)
        text = data.get("response")
        return ProviderResponse(
            text=text if isinstance(text, str) else "",
            usage=usage,
            cost=self.calculate_cost(usage, model),
            model=str(data.get("model") or model),
            provider=self.id,
            finish_reason=data.get("done_reason") or ("stop" if data.get("done") else None),
        )

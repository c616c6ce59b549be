"""OpenAI Chat Completions provider."""

from __future__ import annotations

import re
from typing import TYPE_CHECKING, Any

from toolstream.parsers.openai import OpenAIStreamParser
from toolstream.providers.base import BaseProvider
from toolstream.providers.models import (
    ModelPricing,
    ProviderDescriptor,
    ProviderResponse,
    RequestDefaults,
    Usage,
)
from toolstream.tool_adapter import map_tool_choice, parse_openai_tool_calls

if TYPE_CHECKING:
    from collections.abc import Sequence

    from toolstream.providers.models import Message
    from toolstream.tool_calls import ToolCall


def _per_1k(input_price: float, output_price: float) -> ModelPricing:
    return ModelPricing(input_price, output_price, per_tokens=1000)


OPENAI_DESCRIPTOR = ProviderDescriptor(
    id="openai",
    name="OpenAI GPT",
    base_url="https://api.openai.com/v1",
    models=(
        "chatgpt-4o-latest",
        "gpt-4o",
        "gpt-4o-mini",
        "gpt-4-turbo",
        "gpt-3.5-turbo",
        "gpt-4.1",
        "gpt-5",
    ),
    default_model="gpt-4o-mini",
    supports_streaming=True,
    supports_tool_calling=True,
    tool_format="openai_functions",
    max_tools=128,
    pricing={
        "chatgpt-4o-latest": _per_1k(0.0025, 0.01),
        "gpt-4o": _per_1k(0.0025, 0.01),
        "gpt-4o-mini": _per_1k(0.00015, 0.0006),
        "gpt-4-turbo": _per_1k(0.01, 0.03),
        "gpt-3.5-turbo": _per_1k(0.0005, 0.0015),
        "gpt-4.1": _per_1k(0.01, 0.03),
        "gpt-5": _per_1k(0.02, 0.06),
    },
    api_key_pattern=re.compile(r"sk-[a-zA-Z0-9_-]+"),
    defaults=RequestDefaults(max_tokens=4000, temperature=0.7, timeout_s=60.0),
)


def to_openai_messages(messages: Sequence[Message], system: str | None) -> list[dict[str, Any]]:
    out: list[dict[str, Any]] = []
    if system:
        out.append({"role": "system", "content": system})
    for message in messages:
        if message.role == "tool":
            out.append(
                {
                    "role": "tool",
                    "tool_call_id": message.tool_call_id or "",
                    "content": message.content,
                }
            )
        elif message.role == "assistant" and message.tool_calls:
            out.append(
                {
                    "role": "assistant",
                    "content": message.content or None,
                    "tool_calls": [call.to_openai() for call in message.tool_calls],
                }
            )
        else:
            out.append({"role": message.role, "content": message.content})
    return out


class OpenAIProvider(BaseProvider):
    """OpenAI Chat Completions over raw HTTP + SSE."""

    descriptor = OPENAI_DESCRIPTOR
    parser_class = OpenAIStreamParser

    def _url(self) -> str:
        return f"{self.descriptor.base_url}/chat/completions"

    def _headers(self, api_key: str | None) -> dict[str, str]:
        return {
            "content-type": "application/json",
            "authorization": f"Bearer {api_key or ''}",
        }

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
        payload: dict[str, Any] = {
            "model": model,
            "messages": to_openai_messages(messages, system),
            "max_tokens": self.descriptor.defaults.max_tokens,
            "temperature": self.descriptor.defaults.temperature,
            "stream": stream,
        }
        if stream:
            # Ask for a trailing usage chunk so streamed turns can be costed.
            payload["stream_options"] = {"include_usage": True}
        if tools:
            payload["tools"] = tools
            choice = map_tool_choice(tool_choice, self.tool_format)
            if choice is not None:
                payload["tool_choice"] = choice
        return payload

    def _parse_response(self, data: dict[str, Any], model: str) -> ProviderResponse:
        choices = data.get("choices")
        choice = choices[0] if isinstance(choices, list) and choices else {}
        message = choice.get("message") if isinstance(choice, dict) else None
        text = message.get("content") if isinstance(message, dict) else None
        usage = Usage.from_mapping(data.get("usage"))
        return ProviderResponse(
            text=text if isinstance(text, str) else "",
            usage=usage,
            cost=self.calculate_cost(usage, model),
            model=str(data.get("model") or model),
            provider=self.id,
            tool_calls=self.parse_tool_calls(data),
            finish_reason=choice.get("finish_reason") if isinstance(choice, dict) else None,
        )

    def parse_tool_calls(self, raw_response: Any) -> list[ToolCall]:
        """Accept a full completion body or its ``choices[0].message``."""
        if isinstance(raw_response, dict) and "choices" in raw_response:
            choices = raw_response.get("choices")
            first = choices[0] if isinstance(choices, list) and choices else {}
            raw_response = first.get("message") if isinstance(first, dict) else None
        return parse_openai_tool_calls(raw_response)

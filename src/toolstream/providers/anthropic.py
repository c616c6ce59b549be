"""Anthropic Messages API provider."""

from __future__ import annotations

import re
from typing import TYPE_CHECKING, Any

from toolstream.parsers.anthropic import AnthropicStreamParser
from toolstream.providers.base import BaseProvider
from toolstream.providers.models import (
    ModelPricing,
    ProviderDescriptor,
    ProviderResponse,
    RequestDefaults,
    Usage,
)
from toolstream.tool_adapter import map_tool_choice, parse_anthropic_tool_calls

if TYPE_CHECKING:
    from collections.abc import Sequence

    from toolstream.providers.models import Message
    from toolstream.tool_calls import ToolCall

ANTHROPIC_DESCRIPTOR = ProviderDescriptor(
    id="anthropic",
    name="Anthropic Claude",
    base_url="https://api.anthropic.com/v1",
    models=(
        "claude-sonnet-4-5-20250929",
        "claude-sonnet-4-20250514",
        "claude-3-5-haiku-20241022",
        "claude-3-haiku-20240307",
    ),
    default_model="claude-sonnet-4-5-20250929",
    supports_streaming=True,
    supports_tool_calling=True,
    tool_format="claude_tools",
    max_tools=64,
    pricing={
        "claude-sonnet-4-5-20250929": ModelPricing(3.00, 15.00),
        "claude-sonnet-4-20250514": ModelPricing(3.00, 15.00),
        "claude-3-5-haiku-20241022": ModelPricing(0.80, 4.00),
        "claude-3-haiku-20240307": ModelPricing(0.25, 1.25),
    },
    api_key_pattern=re.compile(r"sk-ant-[a-zA-Z0-9_-]+"),
    api_version="2023-06-01",
    defaults=RequestDefaults(max_tokens=4000, temperature=0.7, timeout_s=60.0),
)


def to_anthropic_messages(
    messages: Sequence[Message], system: str | None
) -> tuple[list[dict[str, Any]], str | None]:
    """Convert conversation turns; returns ``(messages, system)``.

    System turns fold into the top-level ``system`` field, and consecutive
    tool results share one ``user`` turn as the API requires.
    """
    system_parts = [system] if system else []
    out: list[dict[str, Any]] = []
    for message in messages:
        if message.role == "system":
            if message.content:
                system_parts.append(message.content)
            continue

        if message.role == "tool":
            block = {
                "type": "tool_result",
                "tool_use_id": message.tool_call_id or "",
                "content": message.content,
            }
            previous = out[-1] if out else None
            if (
                previous is not None
                and previous["role"] == "user"
                and isinstance(previous["content"], list)
                and all(b.get("type") == "tool_result" for b in previous["content"])
            ):
                previous["content"].append(block)
            else:
                out.append({"role": "user", "content": [block]})
            continue

        if message.role == "assistant" and message.tool_calls:
            blocks: list[dict[str, Any]] = []
            if message.content:
                blocks.append({"type": "text", "text": message.content})
            blocks.extend(call.to_anthropic() for call in message.tool_calls)
            out.append({"role": "assistant", "content": blocks})
            continue

        out.append({"role": message.role, "content": message.content})

    return out, "\n\n".join(system_parts) or None


class AnthropicProvider(BaseProvider):
    """Anthropic Messages API over raw HTTP + SSE."""

    descriptor = ANTHROPIC_DESCRIPTOR
    parser_class = AnthropicStreamParser

    def _url(self) -> str:
        return f"{self.descriptor.base_url}/messages"

    def _headers(self, api_key: str | None) -> dict[str, str]:
        return {
            "content-type": "application/json",
            "x-api-key": api_key or "",
            "anthropic-version": self.descriptor.api_version or "2023-06-01",
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
        converted, system_text = to_anthropic_messages(messages, system)
        payload: dict[str, Any] = {
            "model": model,
            "max_tokens": self.descriptor.defaults.max_tokens,
            "temperature": self.descriptor.defaults.temperature,
            "messages": converted,
            "stream": stream,
        }
        if system_text:
            payload["system"] = system_text
        if tools:
            payload["tools"] = tools
            choice = map_tool_choice(tool_choice, self.tool_format)
            if choice is not None:
                payload["tool_choice"] = choice
        return payload

    def _parse_response(self, data: dict[str, Any], model: str) -> ProviderResponse:
        content = data.get("content")
        text = ""
        if isinstance(content, list):
            text = "".join(
                block.get("text", "")
                for block in content
                if isinstance(block, dict) and block.get("type") == "text"
            )
        usage = Usage.from_mapping(data.get("usage"))
        return ProviderResponse(
            text=text,
            usage=usage,
            cost=self.calculate_cost(usage, model),
            model=str(data.get("model") or model),
            provider=self.id,
            tool_calls=self.parse_tool_calls(data),
            finish_reason=data.get("stop_reason"),
        )

    def parse_tool_calls(self, raw_response: Any) -> list[ToolCall]:
        if isinstance(raw_response, dict):
            raw_response = raw_response.get("content")
        return parse_anthropic_tool_calls(raw_response)

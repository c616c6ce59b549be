"""DeepSeek provider: OpenAI wire format, no tool calling."""

from __future__ import annotations

import re

from toolstream.providers.models import ModelPricing, ProviderDescriptor, RequestDefaults
from toolstream.providers.openai import OpenAIProvider

DEEPSEEK_DESCRIPTOR = ProviderDescriptor(
    id="deepseek",
    name="DeepSeek",
    base_url="https://api.deepseek.com/v1",
    models=("deepseek-chat", "deepseek-coder"),
    default_model="deepseek-chat",
    supports_streaming=True,
    supports_tool_calling=False,
    tool_format=None,
    max_tools=0,
    pricing={
        "deepseek-chat": ModelPricing(0.00014, 0.00028, per_tokens=1000),
        "deepseek-coder": ModelPricing(0.00014, 0.00028, per_tokens=1000),
    },
    api_key_pattern=re.compile(r"sk-[a-zA-Z0-9_-]+"),
    defaults=RequestDefaults(max_tokens=4000, temperature=0.7, timeout_s=60.0),
)


class DeepSeekProvider(OpenAIProvider):
    """Same transport and parser as OpenAI; tool-taking shapes fail fast."""

    descriptor = DEEPSEEK_DESCRIPTOR

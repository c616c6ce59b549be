"""Incremental stream parsers, one per backend wire protocol."""

from .anthropic import AnthropicStreamParser
from .base import StreamParser
from .events import (
    Done,
    Finish,
    RoleAssigned,
    StreamErrorEvent,
    StreamEvent,
    TextDelta,
    ToolCallDelta,
    ToolCallEnd,
    ToolCallStart,
    UsageUpdate,
)
from .ndjson import NDJSONStreamParser
from .openai import OpenAIStreamParser

__all__ = [
    "AnthropicStreamParser",
    "Done",
    "Finish",
    "NDJSONStreamParser",
    "OpenAIStreamParser",
    "RoleAssigned",
    "StreamErrorEvent",
    "StreamEvent",
    "StreamParser",
    "TextDelta",
    "ToolCallDelta",
    "ToolCallEnd",
    "ToolCallStart",
    "UsageUpdate",
]

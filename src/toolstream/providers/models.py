"""Domain models for the provider transport layer."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
import json
import re
import time
from typing import TYPE_CHECKING, Any, Literal
import uuid

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Mapping

    from toolstream.tool_calls import ToolCall

Role = Literal["system", "user", "assistant", "tool"]
ExecutionStatus = Literal["succeeded", "failed", "denied", "timed_out"]


@dataclass(frozen=True)
class ModelPricing:
    """Price of ``per_tokens`` input and output tokens."""

    input: float
    output: float
    per_tokens: int = 1_000_000


@dataclass(frozen=True)
class RequestDefaults:
    max_tokens: int = 4000
    temperature: float = 0.7
    timeout_s: float = 60.0


@dataclass(frozen=True)
class ProviderDescriptor:
    """Immutable description of one backend."""

    id: str
    name: str
    base_url: str
    models: tuple[str, ...]
    default_model: str
    supports_streaming: bool = True
    supports_tool_calling: bool = False
    tool_format: str | None = None
    max_tools: int = 0
    pricing: Mapping[str, ModelPricing] = field(default_factory=dict)
    #: None means the backend needs no credential.
    api_key_pattern: re.Pattern[str] | None = None
    api_version: str | None = None
    defaults: RequestDefaults = field(default_factory=RequestDefaults)

    def __post_init__(self) -> None:
        if self.default_model not in self.models:
            raise ValueError(
                f"default model {self.default_model!r} is not listed for {self.id!r}"
            )

    @property
    def requires_api_key(self) -> bool:
        return self.api_key_pattern is not None

    def with_base_url(self, base_url: str) -> ProviderDescriptor:
        return replace(self, base_url=base_url.rstrip("/"))


@dataclass(frozen=True)
class Message:
    """A standard conversational message turn."""

    role: Role
    content: str = ""
    tool_calls: tuple[ToolCall, ...] | None = None
    tool_call_id: str | None = None

    @classmethod
    def system(cls, content: str) -> Message:
        return cls("system", content)

    @classmethod
    def user(cls, content: str) -> Message:
        return cls("user", content)

    @classmethod
    def assistant(cls, content: str, tool_calls: list[ToolCall] | None = None) -> Message:
        return cls("assistant", content, tuple(tool_calls) if tool_calls else None)


@dataclass(frozen=True)
class Usage:
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any] | None) -> Usage:
        """Accept Anthropic, OpenAI or Ollama usage key conventions."""
        if not raw:
            return cls()

        def pick(*keys: str) -> int:
            for key in keys:
                value = raw.get(key)
                if isinstance(value, int) and not isinstance(value, bool):
                    return value
            return 0

        return cls(
            input_tokens=pick("input_tokens", "prompt_tokens", "prompt_eval_count"),
            output_tokens=pick("output_tokens", "completion_tokens", "eval_count"),
        )

    def merge(self, input_tokens: int | None, output_tokens: int | None) -> Usage:
        """Overlay counts reported mid-stream; None keeps the current value."""
        return Usage(
            input_tokens=self.input_tokens if input_tokens is None else input_tokens,
            output_tokens=self.output_tokens if output_tokens is None else output_tokens,
        )

    def to_dict(self) -> dict[str, int]:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "total_tokens": self.total_tokens,
        }


@dataclass(frozen=True)
class ExecutionResult:
    """Outcome of one tool call."""

    success: bool
    payload: Any = None
    error: str | None = None
    duration_s: float = 0.0
    status: ExecutionStatus = "succeeded"

    @classmethod
    def denied(cls, reason: str = "Denied by user") -> ExecutionResult:
        return cls(success=False, error=reason, status="denied")

    @classmethod
    def timed_out(cls, reason: str = "Approval timed out") -> ExecutionResult:
        return cls(success=False, error=reason, status="timed_out")

    def content(self) -> str:
        if self.success:
            if isinstance(self.payload, str):
                return self.payload
            return json.dumps(self.payload, default=str)
        return json.dumps({"error": self.error or "Tool execution failed", "status": self.status})

    def to_message(self, call: ToolCall) -> Message:
        """The ``tool`` role message carrying this result back to the model."""
        return Message("tool", self.content(), tool_call_id=call.id)


@dataclass(frozen=True)
class ProviderResponse:
    """A standardized non-streaming response."""

    text: str = ""
    usage: Usage = field(default_factory=Usage)
    cost: float = 0.0
    model: str = ""
    provider: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    finish_reason: str | None = None


@dataclass
class FinalMessage:
    """Completed streamed message, delivered to ``on_complete``."""

    content: str
    model: str
    provider: str
    usage: Usage = field(default_factory=Usage)
    cost: float = 0.0
    tool_calls: list[ToolCall] = field(default_factory=list)
    tool_results: dict[str, ExecutionResult] = field(default_factory=dict)
    finish_reason: str | None = None
    id: str = field(default_factory=lambda: f"msg_{uuid.uuid4().hex[:12]}")
    timestamp: float = field(default_factory=time.time)

    @property
    def was_silent(self) -> bool:
        """The model answered only with tool calls."""
        return not self.content.strip() and bool(self.tool_calls)

    def follow_up_messages(self) -> list[Message]:
        """Assistant turn plus one ``tool`` message per executed call."""
        messages = [Message.assistant(self.content, self.tool_calls)]
        for call in self.tool_calls:
            result = self.tool_results.get(call.id)
            if result is not None:
                messages.append(result.to_message(call))
        return messages


@dataclass
class StreamCallbacks:
    """Hooks a streaming request reports to; each may be sync or async."""

    on_chunk: Callable[[str, int], Awaitable[None] | None] | None = None
    on_tool_call: Callable[[ToolCall], Awaitable[ExecutionResult] | ExecutionResult] | None = None
    on_complete: Callable[[FinalMessage], Awaitable[None] | None] | None = None

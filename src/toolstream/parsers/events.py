"""Uniform stream event vocabulary produced by every protocol parser.

Events are built only inside a parser module; downstream code dispatches on
the event class, never on raw provider fields.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class TextDelta:
    """A fragment of assistant text."""

    text: str


@dataclass(frozen=True, slots=True)
class ToolCallStart:
    """A tool call was opened at *index* (id and name may be empty for OpenAI)."""

    index: int
    id: str
    name: str


@dataclass(frozen=True, slots=True)
class ToolCallDelta:
    """A raw argument fragment for the tool call at *index*."""

    index: int
    fragment: str


@dataclass(frozen=True, slots=True)
class ToolCallEnd:
    """Content block *index* closed; its arguments are complete."""

    index: int


@dataclass(frozen=True, slots=True)
class RoleAssigned:
    role: str


@dataclass(frozen=True, slots=True)
class Finish:
    """End of a generation phase (``"tool_calls"``, ``"stop"``, ``"end_turn"``...)."""

    reason: str


@dataclass(frozen=True, slots=True)
class UsageUpdate:
    """Token counts reported mid-stream; ``None`` means "not reported here"."""

    input_tokens: int | None = None
    output_tokens: int | None = None


@dataclass(frozen=True, slots=True)
class StreamErrorEvent:
    kind: str
    message: str


@dataclass(frozen=True, slots=True)
class Done:
    """The provider signalled the end of the stream."""


StreamEvent = (
    TextDelta
    | ToolCallStart
    | ToolCallDelta
    | ToolCallEnd
    | RoleAssigned
    | Finish
    | UsageUpdate
    | StreamErrorEvent
    | Done
)

"""Capability descriptors in, provider tool payloads out, and back again.

Three tool formats are understood:

- ``openai_functions``: ``{"type": "function", "function": {...}}``
- ``claude_tools``: ``{"name", "description", "input_schema"}``
- ``function_call``: ``{"name", "description", "parameters"}``

Backends without native tools get a text protocol instead: the model is taught
to emit ``[ACTION: id] {...} [/ACTION]`` markers, which
:func:`parse_text_tool_calls` scans for.
"""

from __future__ import annotations

from dataclasses import dataclass
import json
import logging
import re
from typing import TYPE_CHECKING, Any, Literal

from toolstream.errors import RequestValidationError, UnsupportedCapabilityError
from toolstream.tool_calls import ToolCall, parse_arguments, synthesize_call_id

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    from toolstream.capabilities import CapabilityDescriptor

log = logging.getLogger(__name__)

ToolFormat = Literal["openai_functions", "claude_tools", "function_call"]
TOOL_FORMATS: tuple[str, ...] = ("openai_functions", "claude_tools", "function_call")

_SCHEMA_KEYS = ("type", "description", "enum", "default", "items")


@dataclass(frozen=True)
class ToolDefinition:
    """Provider-neutral tool: name, description and a JSON-Schema object."""

    name: str
    description: str
    parameters: dict[str, Any]


def build_parameter_schema(parameters: dict[str, Any] | None) -> dict[str, Any]:
    """Return a JSON-Schema object for a capability's parameters.

    A mapping that already declares ``type: "object"`` passes through
    unchanged. Otherwise each entry of the flat map becomes one property and
    every ``required: true`` entry is collected into ``required``.
    """
    if not parameters:
        return {"type": "object", "properties": {}}
    if parameters.get("type") == "object":
        return parameters

    properties: dict[str, Any] = {}
    required: list[str] = []
    for name, param in parameters.items():
        if not isinstance(param, dict):
            param = {"type": param} if isinstance(param, str) else {}
        prop: dict[str, Any] = {
            "type": param.get("type", "string"),
            "description": param.get("description", name),
        }
        for key in _SCHEMA_KEYS[2:]:
            if key in param:
                prop[key] = param[key]
        properties[name] = prop
        if param.get("required") is True:
            required.append(name)

    schema: dict[str, Any] = {"type": "object", "properties": properties}
    if required:
        schema["required"] = required
    return schema


def to_tool_definition(descriptor: CapabilityDescriptor) -> ToolDefinition:
    return ToolDefinition(
        name=descriptor.id,
        description=descriptor.description or descriptor.name,
        parameters=build_parameter_schema(descriptor.parameters),
    )


def to_tool_definitions(descriptors: Iterable[CapabilityDescriptor]) -> list[ToolDefinition]:
    """Derive tool definitions, preserving descriptor order."""
    return [to_tool_definition(d) for d in descriptors]


def format_tool(definition: ToolDefinition, fmt: str | None) -> dict[str, Any]:
    if fmt == "openai_functions":
        return {
            "type": "function",
            "function": {
                "name": definition.name,
                "description": definition.description,
                "parameters": definition.parameters,
            },
        }
    if fmt == "claude_tools":
        return {
            "name": definition.name,
            "description": definition.description,
            "input_schema": definition.parameters,
        }
    if fmt == "function_call":
        return {
            "name": definition.name,
            "description": definition.description,
            "parameters": definition.parameters,
        }
    raise UnsupportedCapabilityError(
        f"Unsupported tool format: {fmt!r}",
        hint=f"Supported formats: {', '.join(TOOL_FORMATS)}",
    )


def format_tools(
    definitions: Sequence[ToolDefinition],
    fmt: str | None,
    *,
    max_tools: int | None = None,
) -> list[dict[str, Any]]:
    """Render definitions in a provider's tool format."""
    if max_tools is not None and len(definitions) > max_tools:
        raise RequestValidationError(
            f"{len(definitions)} tools exceed the provider limit of {max_tools}",
            hint="Filter capabilities by mode or register fewer tools.",
        )
    return [format_tool(d, fmt) for d in definitions]


def validate_tools(tools: Sequence[dict[str, Any]], fmt: str | None) -> bool:
    """Check rendered tools carry a name, description and schema; log the first gap."""
    for tool in tools:
        body = tool.get("function", {}) if fmt == "openai_functions" else tool
        schema_key = "input_schema" if fmt == "claude_tools" else "parameters"
        name = body.get("name") if isinstance(body, dict) else None
        if not isinstance(name, str) or not name:
            log.warning("Tool missing required 'name' field")
            return False
        if not isinstance(body.get("description"), str) or not body["description"]:
            log.warning("Tool %r missing required 'description' field", name)
            return False
        if not isinstance(body.get(schema_key), dict):
            log.warning("Tool %r missing required %r field", name, schema_key)
            return False
    return True


def map_tool_choice(choice: str | dict[str, Any] | None, fmt: str | None) -> Any:
    """Translate a provider-neutral tool choice for *fmt*.

    Anthropic spells ``required`` as ``{"type": "any"}`` and names a forced
    tool as ``{"type": "tool", "name": ...}``.
    """
    if choice is None:
        return None
    if fmt == "claude_tools":
        if isinstance(choice, dict):
            name = choice.get("name")
            return {"type": "tool", "name": name} if name else choice
        if choice == "required":
            return {"type": "any"}
        if choice == "auto":
            return {"type": "auto"}
        if choice == "none":
            return {"type": "none"}
        raise RequestValidationError(f"Unknown tool_choice {choice!r}")
    if isinstance(choice, dict):
        name = choice.get("name")
        return {"type": "function", "function": {"name": name}} if name else choice
    if choice not in ("auto", "required", "none"):
        raise RequestValidationError(f"Unknown tool_choice {choice!r}")
    return choice


# --- Completed-response parsing ---------------------------------------------


def parse_openai_tool_calls(message: dict[str, Any] | None) -> list[ToolCall]:
    """Extract calls from ``choices[0].message``; arguments are JSON strings."""
    if not isinstance(message, dict):
        return []
    raw_calls = message.get("tool_calls")
    if not isinstance(raw_calls, list):
        return []
    calls: list[ToolCall] = []
    for position, item in enumerate(raw_calls):
        if not isinstance(item, dict):
            continue
        function = item.get("function") or {}
        arguments = function.get("arguments")
        if isinstance(arguments, dict):
            params = arguments
        else:
            call_id = str(item.get("id") or "")
            params = parse_arguments(arguments if isinstance(arguments, str) else "", call_id=call_id)
        calls.append(
            ToolCall.complete(
                id=str(item.get("id") or ""),
                name=str(function.get("name") or ""),
                parameters=params,
                index=position,
            )
        )
    return calls


def parse_anthropic_tool_calls(content: list[Any] | None) -> list[ToolCall]:
    """Extract ``tool_use`` blocks; their ``input`` is already structured."""
    if not isinstance(content, list):
        return []
    calls: list[ToolCall] = []
    for position, block in enumerate(content):
        if not isinstance(block, dict) or block.get("type") != "tool_use":
            continue
        params = block.get("input")
        calls.append(
            ToolCall.complete(
                id=str(block.get("id") or ""),
                name=str(block.get("name") or ""),
                parameters=params if isinstance(params, dict) else {},
                index=position,
            )
        )
    return calls


def parse_function_calls(items: list[Any] | None) -> list[ToolCall]:
    """Extract ``{"functionCall": {"name", "args"}}`` entries."""
    if not isinstance(items, list):
        return []
    calls: list[ToolCall] = []
    for position, item in enumerate(items):
        if not isinstance(item, dict):
            continue
        fc = item.get("functionCall", item)
        if not isinstance(fc, dict) or not fc.get("name"):
            continue
        args = fc.get("args")
        calls.append(
            ToolCall.complete(
                id=str(fc.get("id") or ""),
                name=str(fc["name"]),
                parameters=args if isinstance(args, dict) else {},
                index=position,
            )
        )
    return calls


# Bounded, non-greedy: one marker body never swallows the next marker.
_ACTION_RE = re.compile(
    r"\[ACTION:\s*(\w+)\]\s*(\{.{0,20000}?\})\s*\[/ACTION\]",
    re.DOTALL,
)


def parse_text_tool_calls(text: str | None) -> list[ToolCall]:
    """Scan model text for ``[ACTION: id] {json} [/ACTION]`` markers."""
    if not text:
        return []
    calls: list[ToolCall] = []
    for match in _ACTION_RE.finditer(text):
        try:
            params = json.loads(match.group(2))
        except (json.JSONDecodeError, ValueError):
            log.warning("Skipping text tool call with invalid JSON: %.120r", match.group(0))
            continue
        if not isinstance(params, dict):
            log.warning("Skipping text tool call with non-object body: %.120r", match.group(0))
            continue
        calls.append(
            ToolCall.complete(
                id=synthesize_call_id(),
                name=match.group(1),
                parameters=params,
                index=len(calls),
            )
        )
    return calls


def strip_text_tool_calls(text: str) -> str:
    """Remove action markers, leaving the prose around them."""
    return _ACTION_RE.sub("", text).strip()


def text_tool_prompt(descriptors: Iterable[CapabilityDescriptor]) -> str:
    """Instruction block teaching a tool-less backend the marker protocol."""
    listing = "\n".join(f"- {d.id}: {d.description or d.name}" for d in descriptors)
    return (
        "When you want to perform an action, use this format:\n\n"
        "[ACTION: capability_id]\n"
        '{\n  "parameter1": "value1",\n  "parameter2": "value2"\n}\n'
        "[/ACTION]\n\n"
        f"Available capabilities:\n{listing}\n\n"
        "Example:\n"
        "[ACTION: file_create]\n"
        '{\n  "path": "src/test.js",\n  "content": "console.log(\'hello\');"\n}\n'
        "[/ACTION]\n"
    )


# --- Tool results -------------------------------------------------------------


def _result_text(result: Any) -> str:
    if isinstance(result, str):
        return result
    return json.dumps(result, default=str)


def build_tool_result(call_id: str, result: Any, fmt: str | None) -> dict[str, Any] | None:
    """Shape an execution result for the next request.

    Returns None for the text protocol, which has no result channel.
    """
    if fmt == "openai_functions":
        return {"role": "tool", "tool_call_id": call_id, "content": _result_text(result)}
    if fmt == "claude_tools":
        return {"type": "tool_result", "tool_use_id": call_id, "content": _result_text(result)}
    if fmt == "function_call":
        response = result if isinstance(result, dict) else {"result": result}
        return {"functionResponse": {"name": call_id, "response": response}}
    return None

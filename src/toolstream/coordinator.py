"""Tool execution coordinator.

Takes ready tool calls from a provider stream, applies the approval policy,
runs the capability and reports progress on the status channel::

    ACCUMULATING -> {PENDING_APPROVAL | READY} -> EXECUTING
                 -> {SUCCEEDED | FAILED | DENIED | TIMED_OUT}

Every call emits ``starting`` on arrival and exactly one terminal status
(``success``, ``error`` or ``denied``). Capability failures become failed
results; they never propagate into the turn.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import TYPE_CHECKING, Any, Literal

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from toolstream import telemetry
from toolstream._utils import maybe_await
from toolstream.approval import (
    DEFAULT_APPROVAL_TIMEOUT_S,
    ApprovalDecision,
    ApprovalPolicy,
    ApprovalRequest,
    ApprovalRequestPayload,
    ApprovalResolution,
    PendingApprovals,
)
from toolstream.capabilities import MODES
from toolstream.errors import ConfigurationError
from toolstream.providers.models import ExecutionResult
from toolstream.tool_calls import ToolCallState

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from toolstream.capabilities import CapabilityDescriptor, CapabilityRegistry
    from toolstream.tool_calls import ToolCall

log = logging.getLogger(__name__)

StatusName = Literal["starting", "executing", "success", "error", "denied"]

_CATEGORY_ICONS = {
    "read": "📖",
    "write": "📝",
    "execute": "⚙️",
    "search": "🔍",
    "git": "🔀",
    "terminal": "💻",
    "web": "🌐",
}
_NAME_ICONS = (
    ("create", "📝"),
    ("delete", "🗑️"),
    ("read", "📖"),
    ("search", "🔍"),
    ("git", "🔀"),
    ("terminal", "💻"),
)
ICON_EXECUTING = "⚙️"
ICON_SUCCESS = "✅"
ICON_ERROR = "❌"
ICON_DENIED = "🚫"
ICON_DEFAULT = "🛠️"


class ToolStatus(BaseModel):
    """One status-channel event for the UI."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    turn_id: str
    tool_call_id: str
    tool_name: str
    icon: str
    message: str
    status: StatusName
    result: Any = None

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json", exclude_none=True)


def icon_for(descriptor: CapabilityDescriptor) -> str:
    """Display icon: name keywords first, then category."""
    for keyword, icon in _NAME_ICONS:
        if keyword in descriptor.id:
            return icon
    return _CATEGORY_ICONS.get(descriptor.category, ICON_DEFAULT)


def status_message(name: str, parameters: dict[str, Any], status: str) -> str:
    path = parameters.get("path", "")
    if status == "starting":
        templates = {
            "file_create": f"Creating {path}...",
            "file_read": f"Reading {path}...",
            "file_edit": f"Editing {path}...",
            "file_delete": f"Deleting {path}...",
            "terminal_execute": f"Running command: {parameters.get('command', '')}",
            "git_commit": "Committing changes...",
        }
        return templates.get(name, f"Starting {name}...")
    if status == "executing":
        templates = {
            "file_create": f"Creating {path}...",
            "file_read": f"Reading {path}...",
        }
        return templates.get(name, f"Executing {name}...")
    if status == "success":
        templates = {
            "file_create": f"Created {path}",
            "file_read": f"Read {path}",
            "file_edit": f"Edited {path}",
            "file_delete": f"Deleted {path}",
            "terminal_execute": "Command completed",
            "git_commit": "Changes committed",
        }
        return templates.get(name, f"Completed {name}")
    return f"{name}..."


class ToolExecutionCoordinator:
    """Approval-gated execution of tool calls for one or more turns."""

    def __init__(
        self,
        capabilities: CapabilityRegistry,
        *,
        mode: str = "assistant",
        policy: ApprovalPolicy | None = None,
        approvals: PendingApprovals | None = None,
        approval_timeout_s: float = DEFAULT_APPROVAL_TIMEOUT_S,
        on_status: Callable[[ToolStatus], Awaitable[None] | None] | None = None,
        on_approval_request: Callable[[ApprovalRequestPayload], Awaitable[None] | None] | None = None,
    ) -> None:
        if approval_timeout_s <= 0:
            raise ConfigurationError(f"approval_timeout_s must be > 0, got {approval_timeout_s}")
        self.capabilities = capabilities
        self.policy = policy or ApprovalPolicy()
        self.approvals = approvals or PendingApprovals()
        self.approval_timeout_s = approval_timeout_s
        self.on_status = on_status
        self.on_approval_request = on_approval_request
        self._cancelled_turns: set[str] = set()
        self.mode = mode

    @property
    def mode(self) -> str:
        return self._mode

    @mode.setter
    def mode(self, value: str) -> None:
        if value not in MODES:
            raise ConfigurationError(
                f"Unknown mode: {value!r}",
                hint=f"Supported modes: {', '.join(MODES)}",
            )
        self._mode = value

    def descriptors(self) -> list[CapabilityDescriptor]:
        """Capabilities offered to the model in the current mode."""
        return [
            d
            for d in self.capabilities.descriptors(self.mode)
            if self.policy.decide(self.mode, d) is not ApprovalDecision.DISALLOW
        ]

    # --- Turn lifecycle ------------------------------------------------------

    def for_turn(self, turn_id: str) -> Callable[[ToolCall], Awaitable[ExecutionResult]]:
        """An ``on_tool_call`` callback bound to *turn_id*."""

        async def on_tool_call(call: ToolCall) -> ExecutionResult:
            return await self.handle(turn_id, call)

        return on_tool_call

    def cancel_turn(self, turn_id: str) -> int:
        """Stop new executions for a turn and force-deny its pending approvals."""
        self._cancelled_turns.add(turn_id)
        return self.approvals.deny_turn(turn_id)

    def is_cancelled(self, turn_id: str) -> bool:
        return turn_id in self._cancelled_turns

    def finish_turn(self, turn_id: str) -> None:
        self._cancelled_turns.discard(turn_id)

    def resolve_approval(self, turn_id: str, tool_call_id: str, approved: bool) -> bool:
        return self.approvals.resolve(turn_id, tool_call_id, approved)

    def apply_resolution(self, resolution: ApprovalResolution | dict[str, Any]) -> bool:
        return self.approvals.apply(resolution)

    # --- Execution -----------------------------------------------------------

    async def _emit(
        self,
        turn_id: str,
        call: ToolCall,
        status: StatusName,
        icon: str,
        message: str,
        result: Any = None,
    ) -> None:
        if self.on_status is None:
            return
        event = ToolStatus(
            turn_id=turn_id,
            tool_call_id=call.id,
            tool_name=call.name,
            icon=icon,
            message=message,
            status=status,
            result=result,
        )
        try:
            await maybe_await(self.on_status(event))
        except Exception as e:
            log.error("Status sink failed for %s: %s", call.id, e, exc_info=True)

    async def _deny(self, turn_id: str, call: ToolCall, message: str, *, state: ToolCallState) -> ExecutionResult:
        call.state = state
        await self._emit(turn_id, call, "denied", ICON_DENIED, message)
        if state is ToolCallState.TIMED_OUT:
            return ExecutionResult.timed_out(message)
        return ExecutionResult.denied(message)

    async def handle(self, turn_id: str, call: ToolCall) -> ExecutionResult:
        """Drive one ready tool call to a terminal state."""
        parameters = call.finalize()
        capability = self.capabilities.get(call.name)
        if capability is None:
            call.state = ToolCallState.FAILED
            message = f"Unknown capability: {call.name}"
            log.warning("%s (turn=%s, call=%s)", message, turn_id, call.id)
            await self._emit(turn_id, call, "error", ICON_ERROR, message)
            return ExecutionResult(success=False, error=message, status="failed")

        descriptor = capability.descriptor
        await self._emit(
            turn_id,
            call,
            "starting",
            icon_for(descriptor),
            status_message(descriptor.id, parameters, "starting"),
        )

        if self.is_cancelled(turn_id):
            return await self._deny(turn_id, call, "Turn cancelled", state=ToolCallState.DENIED)

        decision = self.policy.decide(self.mode, descriptor)
        if decision is ApprovalDecision.DISALLOW:
            log.warning("Capability %s is not allowed in %s mode", descriptor.id, self.mode)
            return await self._deny(
                turn_id,
                call,
                f"Not allowed in {self.mode} mode: {descriptor.name}",
                state=ToolCallState.DENIED,
            )

        if decision is ApprovalDecision.REQUIRE_APPROVAL:
            outcome = await self._await_approval(turn_id, call, descriptor, parameters)
            if outcome == "timed_out":
                return await self._deny(
                    turn_id, call, f"Approval timed out: {descriptor.name}", state=ToolCallState.TIMED_OUT
                )
            if outcome == "denied":
                log.warning("User denied %s (turn=%s, call=%s)", descriptor.id, turn_id, call.id)
                return await self._deny(turn_id, call, f"User denied: {descriptor.name}", state=ToolCallState.DENIED)
            if self.is_cancelled(turn_id):
                return await self._deny(turn_id, call, "Turn cancelled", state=ToolCallState.DENIED)

        call.state = ToolCallState.EXECUTING
        await self._emit(
            turn_id,
            call,
            "executing",
            ICON_EXECUTING,
            status_message(descriptor.id, parameters, "executing"),
        )
        start = time.perf_counter()
        try:
            with telemetry.tele_scope("tool.execute", capability=descriptor.id):
                payload = await capability.execute(parameters)
        except asyncio.CancelledError:
            call.state = ToolCallState.FAILED
            raise
        except Exception as e:
            duration = time.perf_counter() - start
            call.state = ToolCallState.FAILED
            log.error("Capability %s failed: %s", descriptor.id, e, exc_info=True)
            await self._emit(turn_id, call, "error", ICON_ERROR, f"Error: {e}")
            return ExecutionResult(success=False, error=str(e), duration_s=duration, status="failed")

        duration = time.perf_counter() - start
        call.state = ToolCallState.SUCCEEDED
        await self._emit(
            turn_id,
            call,
            "success",
            ICON_SUCCESS,
            status_message(descriptor.id, parameters, "success"),
            result=payload,
        )
        return ExecutionResult(success=True, payload=payload, duration_s=duration)

    async def _await_approval(
        self,
        turn_id: str,
        call: ToolCall,
        descriptor: CapabilityDescriptor,
        parameters: dict[str, Any],
    ) -> str:
        call.state = ToolCallState.PENDING_APPROVAL
        request = ApprovalRequest(
            turn_id=turn_id,
            tool_call_id=call.id,
            capability_name=descriptor.name,
            description=descriptor.description,
            risk_level=descriptor.risk_level,
            parameters=dict(parameters),
        )

        async def notify(req: ApprovalRequest) -> None:
            if self.on_approval_request is None:
                log.warning(
                    "No approval channel configured; %s will wait for resolve_approval()",
                    req.tool_call_id,
                )
                return
            await maybe_await(self.on_approval_request(req.to_payload()))

        try:
            outcome = await self.approvals.wait(request, timeout_s=self.approval_timeout_s, notify=notify)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.error("Approval channel failed for %s: %s", call.id, e, exc_info=True)
            return "denied"
        if outcome == "approved":
            call.state = ToolCallState.READY
        return outcome

"""Tool execution coordinator: approval gating, status events, failures."""

from __future__ import annotations

import asyncio

import pytest

from tests.conftest import RecordingFunction, make_capability
from toolstream.approval import ApprovalPolicy
from toolstream.capabilities import CapabilityRegistry
from toolstream.coordinator import ToolExecutionCoordinator, ToolStatus, icon_for, status_message
from toolstream.errors import ConfigurationError
from toolstream.tool_calls import ToolCall, ToolCallState

pytestmark = pytest.mark.unit


class Sink:
    def __init__(self) -> None:
        self.statuses: list[ToolStatus] = []
        self.approvals: list = []

    def on_status(self, status: ToolStatus) -> None:
        self.statuses.append(status)

    def kinds(self) -> list[str]:
        return [s.status for s in self.statuses]


def _call(name: str = "file_read", call_id: str = "c1") -> ToolCall:
    return ToolCall(index=0, id=call_id, name=name, arguments='{"path": "a.txt"}')


def _coordinator(registry: CapabilityRegistry, sink: Sink, **kwargs) -> ToolExecutionCoordinator:
    return ToolExecutionCoordinator(registry, on_status=sink.on_status, **kwargs)


@pytest.mark.asyncio
async def test_auto_approved_call_runs_and_reports_success(capability_registry, file_read) -> None:
    sink = Sink()
    coordinator = _coordinator(capability_registry, sink, mode="agent")
    call = _call()

    result = await coordinator.handle("t1", call)

    assert result.success is True
    assert result.payload == "ok"
    assert file_read[1].calls == [{"path": "a.txt"}]
    assert call.state is ToolCallState.SUCCEEDED
    assert sink.kinds() == ["starting", "executing", "success"]
    assert sink.statuses[0].message == "Reading a.txt..."
    assert sink.statuses[-1].message == "Read a.txt"
    assert sink.statuses[-1].result == "ok"
    assert sink.statuses[-1].to_wire()["toolCallId"] == "c1"


@pytest.mark.asyncio
async def test_user_denial_emits_exactly_one_denied_and_never_executes(capability_registry, file_delete) -> None:
    sink = Sink()

    def deny(payload) -> None:
        sink.approvals.append(payload)
        coordinator.resolve_approval(payload.turn_id, payload.tool_call_id, False)

    coordinator = _coordinator(capability_registry, sink, mode="assistant", on_approval_request=deny)
    call = _call("file_delete")

    result = await coordinator.handle("t1", call)

    assert sink.kinds().count("denied") == 1
    assert sink.kinds() == ["starting", "denied"]
    assert file_delete[1].calls == []
    assert result.status == "denied"
    assert call.state is ToolCallState.DENIED
    assert sink.approvals[0].capability_name == "file_delete"
    assert sink.approvals[0].parameters == {"path": "a.txt"}


@pytest.mark.asyncio
async def test_approval_timeout_is_a_denial(capability_registry, file_delete) -> None:
    sink = Sink()
    coordinator = _coordinator(capability_registry, sink, mode="agent", approval_timeout_s=0.01)
    call = _call("file_delete")

    result = await coordinator.handle("t1", call)

    assert result.status == "timed_out"
    assert call.state is ToolCallState.TIMED_OUT
    assert sink.kinds() == ["starting", "denied"]
    assert file_delete[1].calls == []


@pytest.mark.asyncio
async def test_approved_call_executes(capability_registry, file_delete) -> None:
    sink = Sink()
    coordinator = _coordinator(capability_registry, sink, mode="assistant")

    task = asyncio.create_task(coordinator.handle("t1", _call("file_delete", "c7")))
    while not coordinator.approvals.pending("t1"):
        await asyncio.sleep(0)
    assert coordinator.apply_resolution({"turnId": "t1", "toolCallId": "c7", "approved": True})
    result = await task

    assert result.success
    assert file_delete[1].calls == [{"path": "a.txt"}]
    assert sink.kinds() == ["starting", "executing", "success"]


@pytest.mark.asyncio
async def test_execution_error_becomes_failed_result() -> None:
    capability, body = make_capability("file_read", func=RecordingFunction(error=OSError("permission denied")))
    sink = Sink()
    coordinator = _coordinator(CapabilityRegistry([capability]), sink, mode="autonomous")
    call = _call()

    result = await coordinator.handle("t1", call)

    assert result.success is False
    assert result.status == "failed"
    assert result.error == "permission denied"
    assert call.state is ToolCallState.FAILED
    assert sink.kinds() == ["starting", "executing", "error"]
    assert sink.statuses[-1].message == "Error: permission denied"
    assert len(body.calls) == 1


@pytest.mark.asyncio
async def test_unknown_capability_is_reported_not_raised(capability_registry) -> None:
    sink = Sink()
    coordinator = _coordinator(capability_registry, sink, mode="autonomous")

    result = await coordinator.handle("t1", _call("rm_rf"))

    assert result.success is False
    assert "rm_rf" in (result.error or "")
    assert sink.kinds() == ["error"]


@pytest.mark.asyncio
async def test_never_execute_denies_without_asking(capability_registry, file_read) -> None:
    sink = Sink()
    coordinator = _coordinator(
        capability_registry,
        sink,
        mode="autonomous",
        policy=ApprovalPolicy(never_execute={"file_read"}),
        on_approval_request=sink.approvals.append,
    )

    result = await coordinator.handle("t1", _call())

    assert result.status == "denied"
    assert sink.approvals == []
    assert file_read[1].calls == []
    assert [d.id for d in coordinator.descriptors()] == ["file_delete"]


@pytest.mark.asyncio
async def test_cancel_turn_force_denies_pending_approval(capability_registry, file_delete) -> None:
    sink = Sink()
    coordinator = _coordinator(capability_registry, sink, mode="assistant")

    task = asyncio.create_task(coordinator.handle("t1", _call("file_delete")))
    while not coordinator.approvals.pending("t1"):
        await asyncio.sleep(0)
    assert coordinator.cancel_turn("t1") == 1
    result = await task

    assert result.status == "denied"
    assert file_delete[1].calls == []
    assert coordinator.is_cancelled("t1")
    # New calls for a cancelled turn never run.
    again = await coordinator.handle("t1", _call("file_read", "c2"))
    assert again.status == "denied"
    coordinator.finish_turn("t1")
    assert not coordinator.is_cancelled("t1")


@pytest.mark.asyncio
async def test_failing_status_sink_does_not_break_execution(capability_registry) -> None:
    def broken_sink(_status) -> None:
        raise RuntimeError("ui went away")

    coordinator = ToolExecutionCoordinator(capability_registry, mode="autonomous", on_status=broken_sink)

    result = await coordinator.handle("t1", _call())

    assert result.success


def test_mode_is_validated() -> None:
    coordinator = ToolExecutionCoordinator(CapabilityRegistry())
    with pytest.raises(ConfigurationError):
        coordinator.mode = "chaos"
    with pytest.raises(ConfigurationError):
        ToolExecutionCoordinator(CapabilityRegistry(), approval_timeout_s=0)


def test_icons_and_messages(file_read, file_delete) -> None:
    assert icon_for(file_read[0].descriptor) == "📖"
    assert icon_for(file_delete[0].descriptor) == "🗑️"
    assert status_message("file_create", {"path": "x.py"}, "starting") == "Creating x.py..."
    assert status_message("terminal_execute", {"command": "ls"}, "starting") == "Running command: ls"
    assert status_message("custom", {}, "success") == "Completed custom"

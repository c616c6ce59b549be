"""Approval policy decisions and the pending-approval table."""

from __future__ import annotations

import asyncio
import logging

import pytest

from toolstream.approval import (
    ApprovalDecision,
    ApprovalPolicy,
    ApprovalRequest,
    ApprovalResolution,
    PendingApprovals,
)
from toolstream.capabilities import CapabilityDescriptor, RiskLevel
from toolstream.errors import ConfigurationError, InternalError

pytestmark = pytest.mark.unit

AUTO = ApprovalDecision.AUTO_APPROVE
ASK = ApprovalDecision.REQUIRE_APPROVAL
NO = ApprovalDecision.DISALLOW


def _descriptor(cid: str = "file_read", risk: str = "low", **kwargs) -> CapabilityDescriptor:
    return CapabilityDescriptor(id=cid, description=cid, risk_level=risk, **kwargs)


def _request(turn: str = "t1", call: str = "c1") -> ApprovalRequest:
    return ApprovalRequest(
        turn_id=turn,
        tool_call_id=call,
        capability_name="file_delete",
        description="Delete a file",
        risk_level=RiskLevel.HIGH,
        parameters={"path": "a.txt"},
    )


# =============================================================================
# Policy
# =============================================================================


@pytest.mark.parametrize(
    ("mode", "risk", "expected"),
    [
        ("assistant", "low", ASK),
        ("assistant", "high", ASK),
        ("agent", "low", AUTO),
        ("agent", "medium", AUTO),
        ("agent", "high", ASK),
        ("autonomous", "low", AUTO),
        ("autonomous", "high", AUTO),
        ("autonomous", "critical", ASK),
    ],
)
def test_mode_and_risk_defaults(mode: str, risk: str, expected: ApprovalDecision) -> None:
    assert ApprovalPolicy().decide(mode, _descriptor(risk=risk)) is expected


def test_restriction_lists_win_over_mode() -> None:
    policy = ApprovalPolicy(always_approve={"git_commit"}, never_execute={"terminal_execute"})

    assert policy.decide("autonomous", _descriptor("git_commit")) is ASK
    assert policy.decide("autonomous", _descriptor("terminal_execute")) is NO


def test_unavailable_in_mode_is_disallowed() -> None:
    descriptor = _descriptor(modes={"agent", "autonomous"})
    assert ApprovalPolicy().decide("assistant", descriptor) is NO


def test_per_mode_overrides() -> None:
    descriptor = _descriptor(approval={"assistant": "none", "autonomous": "always"}, risk="high")
    policy = ApprovalPolicy()

    assert policy.decide("assistant", descriptor) is AUTO
    assert policy.decide("autonomous", descriptor) is ASK
    # No override for agent: the mode default for high risk applies.
    assert policy.decide("agent", descriptor) is ASK


def test_unknown_approval_setting_is_rejected() -> None:
    with pytest.raises(ConfigurationError, match="batch"):
        _descriptor(approval={"agent": "batch"})


def test_unknown_mode_is_a_configuration_error() -> None:
    with pytest.raises(ConfigurationError):
        ApprovalPolicy().decide("reckless", _descriptor())


# =============================================================================
# Pending table
# =============================================================================


@pytest.mark.asyncio
async def test_resolution_completes_the_matching_wait() -> None:
    table = PendingApprovals()

    async def approve_later() -> None:
        while ("t1", "c1") not in table:
            await asyncio.sleep(0)
        assert table.resolve("t1", "c1", True)

    resolver = asyncio.create_task(approve_later())
    outcome = await table.wait(_request(), timeout_s=5)
    await resolver

    assert outcome == "approved"
    assert len(table) == 0


@pytest.mark.asyncio
async def test_notify_may_resolve_synchronously() -> None:
    table = PendingApprovals()
    sent = []

    def notify(request: ApprovalRequest) -> None:
        sent.append(request.to_payload().to_wire())
        table.apply({"turnId": request.turn_id, "toolCallId": request.tool_call_id, "approved": False})

    outcome = await table.wait(_request(), timeout_s=5, notify=notify)

    assert outcome == "denied"
    assert sent == [
        {
            "turnId": "t1",
            "toolCallId": "c1",
            "capabilityName": "file_delete",
            "description": "Delete a file",
            "riskLevel": "high",
            "parameters": {"path": "a.txt"},
        }
    ]


@pytest.mark.asyncio
async def test_unanswered_wait_times_out(caplog: pytest.LogCaptureFixture) -> None:
    table = PendingApprovals()

    with caplog.at_level(logging.WARNING, logger="toolstream.approval"):
        outcome = await table.wait(_request(), timeout_s=0.01)

    assert outcome == "timed_out"
    assert ("t1", "c1") not in table
    assert "timed out" in caplog.text


def test_unmatched_resolution_is_dropped(caplog: pytest.LogCaptureFixture) -> None:
    table = PendingApprovals()

    with caplog.at_level(logging.WARNING, logger="toolstream.approval"):
        assert table.resolve("t1", "ghost", True) is False
        assert table.apply(ApprovalResolution(turn_id="t9", tool_call_id="c1", approved=True)) is False

    assert "unknown key" in caplog.text


@pytest.mark.asyncio
async def test_resolution_matches_turn_and_call_exactly() -> None:
    table = PendingApprovals()
    waits = [
        asyncio.create_task(table.wait(_request("t1", "c1"), timeout_s=5)),
        asyncio.create_task(table.wait(_request("t2", "c1"), timeout_s=5)),
    ]
    while len(table) < 2:
        await asyncio.sleep(0)

    table.resolve("t2", "c1", True)
    table.resolve("t1", "c1", False)

    assert [await w for w in waits] == ["denied", "approved"]


@pytest.mark.asyncio
async def test_duplicate_key_is_an_internal_error() -> None:
    table = PendingApprovals()
    first = asyncio.create_task(table.wait(_request(), timeout_s=5))
    while not table.pending():
        await asyncio.sleep(0)

    with pytest.raises(InternalError):
        await table.wait(_request(), timeout_s=5)

    table.resolve("t1", "c1", True)
    assert await first == "approved"


@pytest.mark.asyncio
async def test_deny_turn_force_denies_only_that_turn() -> None:
    table = PendingApprovals()
    a = asyncio.create_task(table.wait(_request("t1", "c1"), timeout_s=5))
    b = asyncio.create_task(table.wait(_request("t1", "c2"), timeout_s=5))
    other = asyncio.create_task(table.wait(_request("t2", "c1"), timeout_s=5))
    while len(table) < 3:
        await asyncio.sleep(0)

    assert table.deny_turn("t1") == 2
    assert await a == "denied"
    assert await b == "denied"
    assert [r.turn_id for r in table.pending()] == ["t2"]

    table.resolve("t2", "c1", True)
    assert await other == "approved"

"""Approval policy and the pending-approval table.

The policy maps ``(mode, capability)`` to a decision. When a decision needs
the user, the coordinator parks a future in :class:`PendingApprovals` under
``(turn_id, tool_call_id)`` and waits a bounded time for the UI to resolve
exactly that key. A wait that times out is a denial.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import enum
import logging
import time
from typing import TYPE_CHECKING, Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from toolstream._utils import maybe_await
from toolstream.capabilities import MODES, RiskLevel
from toolstream.errors import ConfigurationError, InternalError

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

    from toolstream.capabilities import CapabilityDescriptor

log = logging.getLogger(__name__)

ApprovalOutcome = Literal["approved", "denied", "timed_out"]

DEFAULT_APPROVAL_TIMEOUT_S = 30.0


class ApprovalDecision(str, enum.Enum):
    AUTO_APPROVE = "auto_approve"
    REQUIRE_APPROVAL = "require_approval"
    DISALLOW = "disallow"


@dataclass(frozen=True)
class ApprovalPolicy:
    """Mode- and risk-based approval rules plus user restriction lists.

    Mode defaults: ``assistant`` asks for every action, ``agent`` asks only
    for high and critical risk, ``autonomous`` never asks. Critical
    capabilities always ask. ``always_approve`` names capabilities that must
    always be confirmed; ``never_execute`` names ones that are blocked.
    """

    always_approve: frozenset[str] = field(default_factory=frozenset)
    never_execute: frozenset[str] = field(default_factory=frozenset)

    def __post_init__(self) -> None:
        object.__setattr__(self, "always_approve", frozenset(self.always_approve))
        object.__setattr__(self, "never_execute", frozenset(self.never_execute))

    def decide(self, mode: str, descriptor: CapabilityDescriptor) -> ApprovalDecision:
        if mode not in MODES:
            raise ConfigurationError(
                f"Unknown mode: {mode!r}",
                hint=f"Supported modes: {', '.join(MODES)}",
            )
        if descriptor.id in self.never_execute or not descriptor.available_in(mode):
            return ApprovalDecision.DISALLOW
        if descriptor.id in self.always_approve or descriptor.risk_level is RiskLevel.CRITICAL:
            return ApprovalDecision.REQUIRE_APPROVAL

        override = descriptor.approval.get(mode)
        if override == "always":
            return ApprovalDecision.REQUIRE_APPROVAL
        if override == "none":
            return ApprovalDecision.AUTO_APPROVE

        if mode == "assistant":
            return ApprovalDecision.REQUIRE_APPROVAL
        if mode == "agent" and descriptor.risk_level.rank >= RiskLevel.HIGH.rank:
            return ApprovalDecision.REQUIRE_APPROVAL
        return ApprovalDecision.AUTO_APPROVE


# --- UI channel models --------------------------------------------------------


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json", exclude_none=True)


class ApprovalRequestPayload(_CamelModel):
    """Outbound: ask the user to approve one tool call."""

    turn_id: str
    tool_call_id: str
    capability_name: str
    description: str
    risk_level: RiskLevel
    parameters: dict[str, Any] = Field(default_factory=dict)


class ApprovalResolution(_CamelModel):
    """Inbound: the user's answer for exactly one pending key."""

    turn_id: str
    tool_call_id: str
    approved: bool


@dataclass(frozen=True)
class ApprovalRequest:
    """A pending approval; lives only while its wait is outstanding."""

    turn_id: str
    tool_call_id: str
    capability_name: str
    description: str
    risk_level: RiskLevel
    parameters: dict[str, Any]
    created_at: float = field(default_factory=time.time)

    @property
    def key(self) -> tuple[str, str]:
        return (self.turn_id, self.tool_call_id)

    def to_payload(self) -> ApprovalRequestPayload:
        return ApprovalRequestPayload(
            turn_id=self.turn_id,
            tool_call_id=self.tool_call_id,
            capability_name=self.capability_name,
            description=self.description,
            risk_level=self.risk_level,
            parameters=dict(self.parameters),
        )


class PendingApprovals:
    """Table of outstanding approval waits keyed by ``(turn_id, tool_call_id)``.

    Expiry rides on the event loop's timer heap via :func:`asyncio.wait_for`,
    so there is no per-request timer thread.
    """

    def __init__(self) -> None:
        self._entries: dict[tuple[str, str], tuple[ApprovalRequest, asyncio.Future[bool]]] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def pending(self, turn_id: str | None = None) -> list[ApprovalRequest]:
        return [req for req, _ in self._entries.values() if turn_id is None or req.turn_id == turn_id]

    async def wait(
        self,
        request: ApprovalRequest,
        *,
        timeout_s: float,
        notify: Callable[[ApprovalRequest], Any] | None = None,
    ) -> ApprovalOutcome:
        """Park *request* until resolved or *timeout_s* elapses.

        *notify* runs after the key is registered, so a resolution it triggers
        synchronously is not lost.
        """
        if request.key in self._entries:
            raise InternalError(f"Approval already pending for {request.key!r}")
        future: asyncio.Future[bool] = asyncio.get_running_loop().create_future()
        self._entries[request.key] = (request, future)
        try:
            if notify is not None:
                await maybe_await(notify(request))
            approved = await asyncio.wait_for(future, timeout=timeout_s)
        except TimeoutError:
            log.warning(
                "Approval for %s (%s) timed out after %.1fs; treating as denied",
                request.capability_name,
                request.tool_call_id,
                timeout_s,
            )
            return "timed_out"
        finally:
            self._entries.pop(request.key, None)
        return "approved" if approved else "denied"

    def resolve(self, turn_id: str, tool_call_id: str, approved: bool) -> bool:
        """Resolve exactly one key; unmatched resolutions are logged and dropped."""
        entry = self._entries.get((turn_id, tool_call_id))
        if entry is None or entry[1].done():
            log.warning(
                "Dropping approval resolution for unknown key (turn=%s, tool_call=%s)",
                turn_id,
                tool_call_id,
            )
            return False
        entry[1].set_result(bool(approved))
        return True

    def apply(self, resolution: ApprovalResolution | dict[str, Any]) -> bool:
        """Resolve from a UI message (model or camelCase mapping)."""
        if not isinstance(resolution, ApprovalResolution):
            resolution = ApprovalResolution.model_validate(resolution)
        return self.resolve(resolution.turn_id, resolution.tool_call_id, resolution.approved)

    def deny_turn(self, turn_id: str) -> int:
        """Force-deny every pending approval of a turn; returns how many."""
        denied = 0
        for request, future in list(self._entries.values()):
            if request.turn_id == turn_id and not future.done():
                future.set_result(False)
                denied += 1
        if denied:
            log.info("Force-denied %d pending approval(s) for turn %s", denied, turn_id)
        return denied

    def keys(self) -> Iterable[tuple[str, str]]:
        return list(self._entries)

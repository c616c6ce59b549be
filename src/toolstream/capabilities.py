"""Capability contract and registry.

Capability implementations live outside this package. The engine only needs a
capability's descriptor (id, description, risk, parameter schema) and an
async ``execute(parameters)`` entry point.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import enum
from typing import TYPE_CHECKING, Any, Literal, Protocol, runtime_checkable

from toolstream._utils import maybe_await
from toolstream.errors import ConfigurationError

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Iterable

ModeName = Literal["assistant", "agent", "autonomous"]
ApprovalSetting = Literal["always", "none"]

MODES: tuple[ModeName, ...] = ("assistant", "agent", "autonomous")


class RiskLevel(str, enum.Enum):
    """Declared risk of running a capability."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _RISK_ORDER.index(self)


_RISK_ORDER = (RiskLevel.LOW, RiskLevel.MEDIUM, RiskLevel.HIGH, RiskLevel.CRITICAL)


@dataclass(frozen=True)
class CapabilityDescriptor:
    """What the engine knows about a capability.

    ``parameters`` is either a complete JSON-Schema object (``type: "object"``)
    or a flat ``{name: {type, description, required?, enum?, default?}}`` map.
    ``approval`` optionally overrides the mode policy per mode.
    """

    id: str
    description: str
    risk_level: RiskLevel = RiskLevel.LOW
    parameters: dict[str, Any] = field(default_factory=dict)
    name: str = ""
    category: str = ""
    modes: frozenset[str] = frozenset(MODES)
    approval: dict[str, ApprovalSetting] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.id:
            raise ConfigurationError("Capability id must be non-empty")
        if not isinstance(self.risk_level, RiskLevel):
            try:
                object.__setattr__(self, "risk_level", RiskLevel(self.risk_level))
            except ValueError as e:
                raise ConfigurationError(
                    f"Unknown risk level {self.risk_level!r} for capability {self.id!r}",
                    hint="Use one of: low, medium, high, critical.",
                ) from e
        unknown = {m: s for m, s in self.approval.items() if s not in ("always", "none")}
        if unknown:
            raise ConfigurationError(
                f"Unknown approval setting for capability {self.id!r}: {unknown}",
                hint='Per-mode approval overrides are "always" or "none"; omit a mode to use its default.',
            )
        if not isinstance(self.modes, frozenset):
            object.__setattr__(self, "modes", frozenset(self.modes))
        if not self.name:
            object.__setattr__(self, "name", self.id)

    def available_in(self, mode: str) -> bool:
        return mode in self.modes


@runtime_checkable
class Capability(Protocol):
    """An executable capability."""

    @property
    def descriptor(self) -> CapabilityDescriptor:
        """Static description of the capability."""
        ...

    async def execute(self, parameters: dict[str, Any]) -> Any:
        """Run the capability and return a JSON-serializable payload."""
        ...


class FunctionCapability:
    """Adapt a plain or async function into a :class:`Capability`."""

    def __init__(
        self,
        descriptor: CapabilityDescriptor,
        func: Callable[[dict[str, Any]], Any | Awaitable[Any]],
    ) -> None:
        self._descriptor = descriptor
        self._func = func

    @property
    def descriptor(self) -> CapabilityDescriptor:
        return self._descriptor

    async def execute(self, parameters: dict[str, Any]) -> Any:
        return await maybe_await(self._func(parameters))

    def __repr__(self) -> str:
        return f"FunctionCapability({self._descriptor.id!r})"


class CapabilityRegistry:
    """Explicitly constructed lookup table of capabilities by id."""

    def __init__(self, capabilities: Iterable[Capability] = ()) -> None:
        self._items: dict[str, Capability] = {}
        for capability in capabilities:
            self.register(capability)

    def register(self, capability: Capability) -> None:
        if not isinstance(capability, Capability):
            raise ConfigurationError(
                f"{capability!r} does not implement the Capability interface",
                hint="Provide a `descriptor` property and an async `execute(parameters)`.",
            )
        cid = capability.descriptor.id
        if cid in self._items:
            raise ConfigurationError(f"Capability {cid!r} is already registered")
        self._items[cid] = capability

    def unregister(self, capability_id: str) -> None:
        self._items.pop(capability_id, None)

    def get(self, capability_id: str) -> Capability | None:
        return self._items.get(capability_id)

    def __contains__(self, capability_id: object) -> bool:
        return capability_id in self._items

    def __len__(self) -> int:
        return len(self._items)

    def descriptors(self, mode: str | None = None) -> list[CapabilityDescriptor]:
        """Descriptors in registration order, optionally filtered by mode."""
        return [
            c.descriptor
            for c in self._items.values()
            if mode is None or c.descriptor.available_in(mode)
        ]

    def clear(self) -> None:
        self._items.clear()

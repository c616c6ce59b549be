"""Toolstream: streaming LLM turns with approval-gated tool execution.

Public API:
    - build_registry(): Provider registry from a Config
    - create_orchestrator(): Orchestrator wired with coordinator and credentials
    - Config: Configuration dataclass
    - CapabilityRegistry / FunctionCapability: Tools the model may call
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from toolstream.approval import ApprovalPolicy, ApprovalRequestPayload, ApprovalResolution
from toolstream.cancel import CancellationToken
from toolstream.capabilities import (
    Capability,
    CapabilityDescriptor,
    CapabilityRegistry,
    FunctionCapability,
    RiskLevel,
)
from toolstream.config import Config
from toolstream.coordinator import ToolExecutionCoordinator, ToolStatus
from toolstream.errors import (
    APIError,
    AuthenticationError,
    ConfigurationError,
    InternalError,
    RateLimitError,
    RequestValidationError,
    StreamError,
    ToolstreamError,
    TurnCancelledError,
    TurnInProgressError,
    UnsupportedCapabilityError,
)
from toolstream.orchestrator import EnvCredentialStore, StreamingOrchestrator, TurnResult
from toolstream.providers import (
    AnthropicProvider,
    DeepSeekProvider,
    ExecutionResult,
    FinalMessage,
    LocalProvider,
    Message,
    MockProvider,
    OpenAIProvider,
)
from toolstream.registry import ProviderRegistry
from toolstream.retry import RetryPolicy

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    import httpx

try:
    from importlib.metadata import PackageNotFoundError, version

    __version__ = version("toolstream")
except PackageNotFoundError:
    __version__ = "0.0.0+unknown"

# Library-level NullHandler: stay silent unless the consumer configures logging.
logging.getLogger("toolstream").addHandler(logging.NullHandler())


def build_registry(
    config: Config | None = None,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> ProviderRegistry:
    """Register every built-in provider and activate the configured one.

    *transport* is shared by the HTTP providers; tests pass an
    ``httpx.MockTransport`` here. The mock provider always keeps its own.
    """
    config = config or Config(use_mock=True)
    timeout = config.request_timeout_s
    registry = ProviderRegistry(
        [
            AnthropicProvider(timeout_s=timeout, transport=transport),
            OpenAIProvider(timeout_s=timeout, transport=transport),
            DeepSeekProvider(timeout_s=timeout, transport=transport),
            LocalProvider(base_url=config.local_base_url, timeout_s=timeout, transport=transport),
            MockProvider(),
        ]
    )
    registry.set_active(config.provider_id)
    return registry


def create_orchestrator(
    config: Config,
    capabilities: CapabilityRegistry | None = None,
    *,
    on_status: Callable[[ToolStatus], Awaitable[None] | None] | None = None,
    on_approval_request: Callable[[ApprovalRequestPayload], Awaitable[None] | None] | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> StreamingOrchestrator:
    """Compose registry, credentials and tool coordinator from *config*.

    Example:
        config = Config(provider="anthropic", mode="agent")
        engine = create_orchestrator(config, capabilities, on_status=print)
        result = await engine.stream_turn("t1", None, [Message.user("hi")])
    """
    coordinator = ToolExecutionCoordinator(
        capabilities if capabilities is not None else CapabilityRegistry(),
        mode=config.mode,
        policy=ApprovalPolicy(
            always_approve=config.always_approve,
            never_execute=config.never_execute,
        ),
        approval_timeout_s=config.approval_timeout_s,
        on_status=on_status,
        on_approval_request=on_approval_request,
    )
    return StreamingOrchestrator(
        build_registry(config, transport=transport),
        EnvCredentialStore({config.provider: config.api_key}),
        coordinator,
        retry=config.retry,
        max_tool_rounds=config.max_tool_rounds,
        model=config.model,
    )


__all__ = [
    "APIError",
    "AnthropicProvider",
    "ApprovalPolicy",
    "ApprovalRequestPayload",
    "ApprovalResolution",
    "AuthenticationError",
    "CancellationToken",
    "Capability",
    "CapabilityDescriptor",
    "CapabilityRegistry",
    "Config",
    "ConfigurationError",
    "DeepSeekProvider",
    "EnvCredentialStore",
    "ExecutionResult",
    "FinalMessage",
    "FunctionCapability",
    "InternalError",
    "LocalProvider",
    "Message",
    "MockProvider",
    "OpenAIProvider",
    "ProviderRegistry",
    "RateLimitError",
    "RequestValidationError",
    "RetryPolicy",
    "RiskLevel",
    "StreamError",
    "StreamingOrchestrator",
    "ToolExecutionCoordinator",
    "ToolStatus",
    "ToolstreamError",
    "TurnCancelledError",
    "TurnInProgressError",
    "TurnResult",
    "UnsupportedCapabilityError",
    "build_registry",
    "create_orchestrator",
    "__version__",
]

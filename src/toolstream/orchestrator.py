"""Streaming orchestrator: provider resolution, credentials, retry, turns.

One outstanding stream per turn id. Provider calls are wrapped in
:func:`toolstream.retry.retry_async`; a streamed attempt is only retried while
nothing from it has reached the caller (no text chunk delivered, no tool call
dispatched), so a retry can never duplicate output or side effects.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
import os
from typing import TYPE_CHECKING, Any, Literal, Protocol, runtime_checkable

from toolstream._utils import maybe_await
from toolstream.cancel import CancellationToken
from toolstream.config import API_KEY_ENV_VARS
from toolstream.errors import (
    RequestValidationError,
    ToolstreamError,
    TurnCancelledError,
    TurnInProgressError,
)
from toolstream.providers.models import Message, StreamCallbacks
from toolstream.retry import RetryPolicy, retry_async, should_retry_request
from toolstream.tool_adapter import (
    parse_text_tool_calls,
    strip_text_tool_calls,
    text_tool_prompt,
    to_tool_definitions,
)

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Mapping, Sequence

    from toolstream.capabilities import CapabilityDescriptor
    from toolstream.coordinator import ToolExecutionCoordinator
    from toolstream.providers.base import Provider
    from toolstream.providers.models import ExecutionResult, FinalMessage, ProviderResponse
    from toolstream.registry import ProviderRegistry
    from toolstream.tool_adapter import ToolDefinition
    from toolstream.tool_calls import ToolCall

log = logging.getLogger(__name__)

TurnStatus = Literal["done", "aborted"]


@runtime_checkable
class CredentialStore(Protocol):
    """Looks up the credential for a provider id (None when absent)."""

    def get(self, provider_id: str) -> str | None: ...  # noqa: D102


class EnvCredentialStore:
    """Credentials from explicit overrides, then ``<PROVIDER>_API_KEY``."""

    def __init__(self, overrides: Mapping[str, str | None] | None = None) -> None:
        self._overrides = dict(overrides or {})

    def get(self, provider_id: str) -> str | None:
        value = self._overrides.get(provider_id)
        if value:
            return value
        env_var = API_KEY_ENV_VARS.get(provider_id)
        return (os.environ.get(env_var) or None) if env_var else None

    def set(self, provider_id: str, api_key: str | None) -> None:
        self._overrides[provider_id] = api_key


@dataclass
class TurnResult:
    """Outcome of :meth:`StreamingOrchestrator.stream_turn`."""

    turn_id: str
    status: TurnStatus
    message: FinalMessage | None = None
    #: Provider attempts across all rounds, retries included.
    attempts: int = 0
    rounds: list[FinalMessage] = field(default_factory=list)


class StreamingOrchestrator:
    """Runs requests and streamed turns against the registry's providers."""

    def __init__(
        self,
        registry: ProviderRegistry,
        credentials: CredentialStore | None = None,
        coordinator: ToolExecutionCoordinator | None = None,
        *,
        retry: RetryPolicy | None = None,
        max_tool_rounds: int = 1,
        model: str | None = None,
    ) -> None:
        self.registry = registry
        self.credentials = credentials or EnvCredentialStore()
        self.coordinator = coordinator
        self.retry = retry or RetryPolicy()
        self.max_tool_rounds = max_tool_rounds
        self.model = model
        self._turns: dict[str, CancellationToken] = {}

    # --- Resolution ----------------------------------------------------------

    def _resolve(self, provider_id: str | None, model: str | None) -> tuple[Provider, str | None, str]:
        """Pick provider, credential and model; validation errors raise here."""
        provider = self.registry.get(provider_id) if provider_id else self.registry.active()
        api_key = self.credentials.get(provider.id)
        if not provider.validate_api_key(api_key):
            env_var = API_KEY_ENV_VARS.get(provider.id, "the provider API key")
            raise RequestValidationError(
                f"Missing or malformed API key for {provider.id}",
                hint=f"Set {env_var} or store a credential for {provider.id!r}.",
            )
        # A configured model only applies to the provider whose models it names.
        resolved = model or (self.model if self.model and provider.validate_model(self.model) else None)
        resolved = resolved or provider.descriptor.default_model
        if not provider.validate_model(resolved):
            raise RequestValidationError(
                f"Unknown model {resolved!r} for {provider.id}",
                hint=f"Available models: {', '.join(provider.list_models())}",
            )
        return provider, api_key, resolved

    # --- Non-streaming -------------------------------------------------------

    async def send(self, prompt: str, *, provider_id: str | None = None, model: str | None = None) -> ProviderResponse:
        provider, api_key, resolved = self._resolve(provider_id, model)
        return await retry_async(
            lambda: provider.send(prompt, api_key=api_key, model=resolved),
            policy=self.retry,
        )

    async def send_with_system(
        self,
        system: str | None,
        messages: Sequence[Message],
        *,
        provider_id: str | None = None,
        model: str | None = None,
    ) -> ProviderResponse:
        provider, api_key, resolved = self._resolve(provider_id, model)
        return await retry_async(
            lambda: provider.send_with_system(system, messages, api_key=api_key, model=resolved),
            policy=self.retry,
        )

    async def send_with_tools(
        self,
        system: str | None,
        messages: Sequence[Message],
        capabilities: Sequence[CapabilityDescriptor],
        *,
        provider_id: str | None = None,
        model: str | None = None,
        tool_choice: str | dict[str, Any] | None = None,
    ) -> ProviderResponse:
        provider, api_key, resolved = self._resolve(provider_id, model)
        tools = to_tool_definitions(capabilities)
        return await retry_async(
            lambda: provider.send_with_tools(
                system, messages, tools, api_key=api_key, model=resolved, tool_choice=tool_choice
            ),
            policy=self.retry,
        )

    # --- Streaming turns -----------------------------------------------------

    def is_streaming(self, turn_id: str) -> bool:
        return turn_id in self._turns

    def cancel_turn(self, turn_id: str, reason: str | None = None) -> bool:
        """Cancel an outstanding turn; False if none is running."""
        token = self._turns.get(turn_id)
        if token is None:
            return False
        token.cancel(reason or "cancelled by caller")
        return True

    def resolve_approval(self, turn_id: str, tool_call_id: str, approved: bool) -> bool:
        if self.coordinator is None:
            log.warning("Approval resolution for turn %s ignored: no coordinator", turn_id)
            return False
        return self.coordinator.resolve_approval(turn_id, tool_call_id, approved)

    async def stream_turn(
        self,
        turn_id: str,
        system: str | None,
        messages: Sequence[Message],
        *,
        capabilities: Sequence[CapabilityDescriptor] | None = None,
        on_chunk: Callable[[str, int], Awaitable[None] | None] | None = None,
        on_complete: Callable[[FinalMessage], Awaitable[None] | None] | None = None,
        on_error: Callable[[str, str], Awaitable[None] | None] | None = None,
        cancel: CancellationToken | None = None,
        provider_id: str | None = None,
        model: str | None = None,
        tool_choice: str | dict[str, Any] | None = None,
    ) -> TurnResult:
        """Stream one turn, executing tool calls through the coordinator.

        Returns a ``done`` or ``aborted`` :class:`TurnResult`. Any other
        failure calls ``on_error(turn_id, message)`` once and is re-raised.
        """
        if turn_id in self._turns:
            raise TurnInProgressError(
                f"Turn {turn_id!r} already has an outstanding stream",
                hint="Wait for it to finish or cancel it first.",
            )
        provider, api_key, resolved = self._resolve(provider_id, model)

        token = cancel or CancellationToken()
        self._turns[turn_id] = token
        if self.coordinator is not None:
            coordinator = self.coordinator
            token.add_callback(lambda _reason: coordinator.cancel_turn(turn_id))

        if capabilities is None:
            capabilities = self.coordinator.descriptors() if self.coordinator is not None else []
        native_tools = bool(capabilities) and provider.capabilities.tool_calling
        text_tools = bool(capabilities) and not native_tools and self.coordinator is not None
        if text_tools:
            prompt = text_tool_prompt(capabilities)
            system = f"{system}\n\n{prompt}" if system else prompt
        tools = to_tool_definitions(capabilities) if native_tools else []

        conversation = list(messages)
        rounds: list[FinalMessage] = []
        attempts = 0
        try:
            while True:
                final, used = await self._stream_round(
                    turn_id,
                    provider,
                    api_key=api_key,
                    model=resolved,
                    system=system,
                    messages=conversation,
                    tools=tools,
                    tool_choice=tool_choice,
                    on_chunk=on_chunk,
                    cancel=token,
                )
                attempts += used
                if text_tools and self.coordinator is not None:
                    await self._run_text_tools(self.coordinator, turn_id, final)
                rounds.append(final)
                token.raise_if_cancelled()
                if not (native_tools and final.tool_results) or len(rounds) > self.max_tool_rounds:
                    break
                conversation.extend(final.follow_up_messages())
                log.info("Turn %s: follow-up round %d after tool execution", turn_id, len(rounds))

            message = rounds[-1]
            if on_complete is not None:
                await maybe_await(on_complete(message))
            return TurnResult(turn_id, "done", message, attempts, rounds)
        except TurnCancelledError:
            log.info("Turn %s aborted (%s)", turn_id, token.reason)
            return TurnResult(turn_id, "aborted", rounds[-1] if rounds else None, attempts, rounds)
        except Exception as e:
            if token.cancelled:
                log.info("Turn %s aborted after error: %s", turn_id, e)
                return TurnResult(turn_id, "aborted", rounds[-1] if rounds else None, attempts, rounds)
            log.error("Turn %s failed: %s", turn_id, e)
            if on_error is not None:
                message = str(e)
                if isinstance(e, ToolstreamError) and e.hint:
                    message = f"{message} ({e.hint})"
                await maybe_await(on_error(turn_id, message))
            raise
        finally:
            self._turns.pop(turn_id, None)
            if self.coordinator is not None:
                self.coordinator.finish_turn(turn_id)

    async def _stream_round(
        self,
        turn_id: str,
        provider: Provider,
        *,
        api_key: str | None,
        model: str,
        system: str | None,
        messages: Sequence[Message],
        tools: Sequence[ToolDefinition],
        tool_choice: str | dict[str, Any] | None,
        on_chunk: Callable[[str, int], Awaitable[None] | None] | None,
        cancel: CancellationToken,
    ) -> tuple[FinalMessage, int]:
        delivered = False
        attempts = 0

        async def chunk(text: str, estimate: int) -> None:
            nonlocal delivered
            delivered = True
            if on_chunk is not None:
                await maybe_await(on_chunk(text, estimate))

        on_tool_call = None
        if self.coordinator is not None and tools:
            handler = self.coordinator.for_turn(turn_id)

            async def on_tool_call(call: ToolCall) -> ExecutionResult:
                nonlocal delivered
                delivered = True
                return await handler(call)

        callbacks = StreamCallbacks(on_chunk=chunk, on_tool_call=on_tool_call)

        async def attempt() -> FinalMessage:
            nonlocal attempts
            attempts += 1
            if tools:
                return await provider.stream_with_tools(
                    system,
                    messages,
                    tools,
                    api_key=api_key,
                    callbacks=callbacks,
                    cancel=cancel,
                    model=model,
                    tool_choice=tool_choice,
                )
            return await provider.stream_with_system(
                system,
                messages,
                api_key=api_key,
                callbacks=callbacks,
                cancel=cancel,
                model=model,
            )

        def should_retry(exc: BaseException) -> bool:
            return not delivered and not cancel.cancelled and should_retry_request(exc)

        final = await retry_async(attempt, policy=self.retry, should_retry=should_retry)
        return final, attempts

    async def _run_text_tools(
        self, coordinator: ToolExecutionCoordinator, turn_id: str, final: FinalMessage
    ) -> None:
        """Execute ``[ACTION: ...]`` markers from a backend without native tools."""
        calls = parse_text_tool_calls(final.content)
        if not calls:
            return
        final.content = strip_text_tool_calls(final.content)
        final.tool_calls = calls
        for call in calls:
            if coordinator.is_cancelled(turn_id):
                break
            final.tool_results[call.id] = await coordinator.handle(turn_id, call)

"""Provider contract and the shared HTTP/streaming implementation.

Concrete providers supply a :class:`ProviderDescriptor`, a stream parser class
and four hooks (endpoint, headers, payload, response parsing). Everything
else lives here: request validation, transport, the streaming read loop,
tool-call accumulation, cost accounting and running statistics.
"""

from __future__ import annotations

import asyncio
from contextlib import aclosing
from dataclasses import dataclass
import logging
import threading
from typing import TYPE_CHECKING, Any, ClassVar, Protocol, runtime_checkable

import httpx

from toolstream import telemetry
from toolstream._utils import maybe_await
from toolstream.errors import (
    APIError,
    RequestValidationError,
    TurnCancelledError,
    UnsupportedCapabilityError,
)
from toolstream.parsers.events import (
    Done,
    Finish,
    StreamErrorEvent,
    TextDelta,
    UsageUpdate,
)
from toolstream.providers._errors import raise_for_status, stream_error, wrap_provider_error
from toolstream.providers.models import (
    ExecutionResult,
    FinalMessage,
    Message,
    ProviderResponse,
    StreamCallbacks,
    Usage,
)
from toolstream.tool_adapter import (
    build_tool_result,
    format_tools,
    to_tool_definitions,
    validate_tools,
)
from toolstream.tool_calls import ToolCallAccumulator

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Iterable, Mapping, Sequence

    from toolstream.cancel import CancellationToken
    from toolstream.capabilities import CapabilityDescriptor
    from toolstream.parsers.base import StreamParser
    from toolstream.providers.models import ProviderDescriptor
    from toolstream.tool_adapter import ToolDefinition
    from toolstream.tool_calls import ToolCall

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProviderCapabilities:
    """Feature flags exposed by providers, checked at registration."""

    streaming: bool
    tool_calling: bool


@runtime_checkable
class Provider(Protocol):
    """Uniform contract every backend implements."""

    @property
    def descriptor(self) -> ProviderDescriptor:
        """Immutable backend description."""
        ...

    @property
    def id(self) -> str:
        """Registry key."""
        ...

    @property
    def capabilities(self) -> ProviderCapabilities:
        """Feature flags for registration-time checks."""
        ...

    def list_models(self) -> list[str]: ...  # noqa: D102
    def validate_api_key(self, api_key: str | None) -> bool: ...  # noqa: D102
    def validate_model(self, model: str) -> bool: ...  # noqa: D102
    def calculate_cost(self, usage: Usage | Mapping[str, Any], model: str) -> float: ...  # noqa: D102

    async def send(self, prompt: str, *, api_key: str | None, model: str | None = None) -> ProviderResponse:
        """Prompt-only request."""
        ...

    async def send_with_system(
        self,
        system: str | None,
        messages: Sequence[Message],
        *,
        api_key: str | None,
        model: str | None = None,
    ) -> ProviderResponse:
        """System-prompted request."""
        ...

    async def send_with_tools(
        self,
        system: str | None,
        messages: Sequence[Message],
        tools: Sequence[ToolDefinition],
        *,
        api_key: str | None,
        model: str | None = None,
        tool_choice: str | dict[str, Any] | None = None,
    ) -> ProviderResponse:
        """System-prompted request offering tools (non-streaming)."""
        ...

    async def stream_with_system(
        self,
        system: str | None,
        messages: Sequence[Message],
        *,
        api_key: str | None,
        callbacks: StreamCallbacks,
        cancel: CancellationToken | None = None,
        model: str | None = None,
    ) -> FinalMessage:
        """Streamed system-prompted request."""
        ...

    async def stream_with_tools(
        self,
        system: str | None,
        messages: Sequence[Message],
        tools: Sequence[ToolDefinition],
        *,
        api_key: str | None,
        callbacks: StreamCallbacks,
        cancel: CancellationToken | None = None,
        model: str | None = None,
        tool_choice: str | dict[str, Any] | None = None,
    ) -> FinalMessage:
        """Streamed request offering tools."""
        ...

    def stats(self) -> dict[str, Any]: ...  # noqa: D102
    def reset_stats(self) -> None: ...  # noqa: D102
    async def aclose(self) -> None: ...  # noqa: D102


class StreamHandle:
    """An open streaming HTTP response, released at most once."""

    def __init__(self, response: httpx.Response) -> None:
        self.response = response
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def aiter_bytes(self) -> AsyncIterator[bytes]:
        return self.response.aiter_bytes()

    async def aclose(self) -> None:
        """Release the transport; repeated calls are no-ops."""
        if self._closed:
            return
        self._closed = True
        await self.response.aclose()


class ProviderStats:
    """Running totals for one provider instance, safe across concurrent turns."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._reset()

    def _reset(self) -> None:
        self.requests = 0
        self.errors = 0
        self.input_tokens = 0
        self.output_tokens = 0
        self.total_cost = 0.0

    def record(self, usage: Usage, cost: float) -> None:
        with self._lock:
            self.requests += 1
            self.input_tokens += usage.input_tokens
            self.output_tokens += usage.output_tokens
            self.total_cost += cost

    def record_error(self) -> None:
        with self._lock:
            self.errors += 1

    def reset(self) -> None:
        with self._lock:
            self._reset()

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            total_tokens = self.input_tokens + self.output_tokens
            return {
                "requests": self.requests,
                "errors": self.errors,
                "input_tokens": self.input_tokens,
                "output_tokens": self.output_tokens,
                "total_tokens": total_tokens,
                "total_cost": self.total_cost,
                "average_tokens_per_request": (total_tokens / self.requests if self.requests else 0.0),
                "average_cost_per_request": (self.total_cost / self.requests if self.requests else 0.0),
            }


def estimate_tokens(text: str) -> int:
    """Rough token count used for progress reporting (about 4 chars per token)."""
    return max(1, len(text) // 4) if text else 0


class BaseProvider:
    """Shared behaviour behind the :class:`Provider` contract."""

    descriptor: ClassVar[ProviderDescriptor]
    parser_class: ClassVar[type[StreamParser]]

    def __init__(
        self,
        *,
        base_url: str | None = None,
        timeout_s: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize; the HTTP client is created lazily on first request."""
        if base_url:
            # Instance-level override of the class descriptor.
            self.descriptor = self.descriptor.with_base_url(base_url)
        self._timeout_s = timeout_s if timeout_s is not None else self.descriptor.defaults.timeout_s
        self._transport = transport
        self._client = client
        self._owns_client = client is None
        self._stats = ProviderStats()

    # --- Discovery -----------------------------------------------------------

    @property
    def id(self) -> str:
        return self.descriptor.id

    @property
    def name(self) -> str:
        return self.descriptor.name

    @property
    def default_model(self) -> str:
        return self.descriptor.default_model

    @property
    def tool_format(self) -> str | None:
        return self.descriptor.tool_format

    @property
    def max_tools(self) -> int:
        return self.descriptor.max_tools

    @property
    def capabilities(self) -> ProviderCapabilities:
        return ProviderCapabilities(
            streaming=self.descriptor.supports_streaming,
            tool_calling=self.descriptor.supports_tool_calling,
        )

    def list_models(self) -> list[str]:
        return list(self.descriptor.models)

    # --- Validation and cost -------------------------------------------------

    def validate_api_key(self, api_key: str | None) -> bool:
        """Non-empty and matching the backend's key pattern (if it has one)."""
        pattern = self.descriptor.api_key_pattern
        if pattern is None:
            return True
        if not isinstance(api_key, str) or not api_key.strip():
            return False
        return pattern.fullmatch(api_key) is not None

    def validate_model(self, model: str) -> bool:
        return model in self.descriptor.models

    def calculate_cost(self, usage: Usage | Mapping[str, Any], model: str) -> float:
        """Linear cost; unknown models cost 0.0 and log a warning."""
        if not isinstance(usage, Usage):
            usage = Usage.from_mapping(usage)
        pricing = self.descriptor.pricing.get(model)
        if pricing is None:
            log.warning("No pricing for %s model %r; reporting cost 0.0", self.id, model)
            return 0.0
        return (
            usage.input_tokens * pricing.input / pricing.per_tokens
            + usage.output_tokens * pricing.output / pricing.per_tokens
        )

    def _check_request(self, api_key: str | None, model: str | None) -> str:
        """Synchronous pre-flight validation; returns the resolved model."""
        if not self.validate_api_key(api_key):
            raise RequestValidationError(
                f"Invalid API key format for {self.name}",
                hint=f"Check the credential configured for {self.id!r}.",
            )
        resolved = model or self.default_model
        if not self.validate_model(resolved):
            raise RequestValidationError(
                f"Invalid model for {self.name}: {resolved!r}",
                hint=f"Available models: {', '.join(self.descriptor.models)}",
            )
        return resolved

    def _require_tools(self) -> None:
        if not self.descriptor.supports_tool_calling:
            raise UnsupportedCapabilityError(
                f"{self.name} does not support tool calling",
                hint="Pick a tool-capable provider or call without capabilities.",
            )

    # --- Tool helpers --------------------------------------------------------

    def convert_capabilities(self, descriptors: Iterable[CapabilityDescriptor]) -> list[dict[str, Any]]:
        """Render capability descriptors in this backend's tool format."""
        self._require_tools()
        return self._render_tools(to_tool_definitions(descriptors))

    def _render_tools(self, tools: Sequence[ToolDefinition]) -> list[dict[str, Any]]:
        rendered = format_tools(tools, self.tool_format, max_tools=self.max_tools or None)
        if not validate_tools(rendered, self.tool_format):
            raise RequestValidationError("Tool definitions are incomplete; see log for details")
        return rendered

    def parse_tool_calls(self, raw_response: Any) -> list[ToolCall]:
        """Extract tool calls from a completed (non-streaming) response body."""
        return []

    def build_tool_result(self, call_id: str, result: Any) -> dict[str, Any] | None:
        return build_tool_result(call_id, result, self.tool_format)

    # --- Statistics ----------------------------------------------------------

    def stats(self) -> dict[str, Any]:
        return {"provider": self.id, **self._stats.snapshot()}

    def reset_stats(self) -> None:
        self._stats.reset()

    # --- Hooks ---------------------------------------------------------------

    def _url(self) -> str:
        raise NotImplementedError

    def _headers(self, api_key: str | None) -> dict[str, str]:
        return {"content-type": "application/json"}

    def _build_payload(
        self,
        *,
        system: str | None,
        messages: Sequence[Message],
        model: str,
        stream: bool,
        tools: list[dict[str, Any]] | None = None,
        tool_choice: str | dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        raise NotImplementedError

    def _parse_response(self, data: dict[str, Any], model: str) -> ProviderResponse:
        raise NotImplementedError

    # --- Transport -----------------------------------------------------------

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._timeout_s),
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None

    async def _post_json(self, payload: dict[str, Any], *, api_key: str | None) -> dict[str, Any]:
        client = self._get_client()
        try:
            response = await client.post(self._url(), json=payload, headers=self._headers(api_key))
        except httpx.HTTPError as e:
            raise wrap_provider_error(e, provider=self.id, phase="request") from e
        await raise_for_status(response, provider=self.id, phase="request")
        try:
            data = response.json()
        except ValueError as e:
            raise APIError(
                f"{self.id} returned a non-JSON response",
                retryable=False,
                status_code=response.status_code,
                provider=self.id,
                phase="request",
                body=response.text[:500],
            ) from e
        if not isinstance(data, dict):
            raise APIError(f"{self.id} returned an unexpected response shape", provider=self.id, phase="request")
        return data

    async def _open_stream(self, payload: dict[str, Any], *, api_key: str | None) -> StreamHandle:
        client = self._get_client()
        request = client.build_request("POST", self._url(), json=payload, headers=self._headers(api_key))
        try:
            response = await client.send(request, stream=True)
        except httpx.HTTPError as e:
            raise wrap_provider_error(e, provider=self.id, phase="stream") from e
        handle = StreamHandle(response)
        try:
            await raise_for_status(response, provider=self.id, phase="stream")
        except BaseException:
            await handle.aclose()
            raise
        return handle

    # --- Request shapes ------------------------------------------------------

    async def send(self, prompt: str, *, api_key: str | None, model: str | None = None) -> ProviderResponse:
        return await self.send_with_system(None, [Message.user(prompt)], api_key=api_key, model=model)

    async def send_with_system(
        self,
        system: str | None,
        messages: Sequence[Message],
        *,
        api_key: str | None,
        model: str | None = None,
    ) -> ProviderResponse:
        resolved = self._check_request(api_key, model)
        payload = self._build_payload(system=system, messages=messages, model=resolved, stream=False)
        return await self._complete(payload, api_key=api_key, model=resolved)

    async def send_with_tools(
        self,
        system: str | None,
        messages: Sequence[Message],
        tools: Sequence[ToolDefinition],
        *,
        api_key: str | None,
        model: str | None = None,
        tool_choice: str | dict[str, Any] | None = None,
    ) -> ProviderResponse:
        self._require_tools()
        resolved = self._check_request(api_key, model)
        payload = self._build_payload(
            system=system,
            messages=messages,
            model=resolved,
            stream=False,
            tools=self._render_tools(tools) if tools else None,
            tool_choice=tool_choice,
        )
        return await self._complete(payload, api_key=api_key, model=resolved)

    async def _complete(self, payload: dict[str, Any], *, api_key: str | None, model: str) -> ProviderResponse:
        log.info("%s request started (model=%s)", self.id, model)
        with telemetry.tele_scope("provider.request", provider=self.id, model=model):
            try:
                data = await self._post_json(payload, api_key=api_key)
            except APIError:
                self._stats.record_error()
                raise
        response = self._parse_response(data, model)
        self._stats.record(response.usage, response.cost)
        log.info(
            "%s request complete (tokens=%d, cost=%.6f)",
            self.id,
            response.usage.total_tokens,
            response.cost,
        )
        return response

    async def stream_with_system(
        self,
        system: str | None,
        messages: Sequence[Message],
        *,
        api_key: str | None,
        callbacks: StreamCallbacks,
        cancel: CancellationToken | None = None,
        model: str | None = None,
    ) -> FinalMessage:
        resolved = self._check_request(api_key, model)
        payload = self._build_payload(system=system, messages=messages, model=resolved, stream=True)
        return await self._stream(payload, api_key=api_key, model=resolved, callbacks=callbacks, cancel=cancel)

    async def stream_with_tools(
        self,
        system: str | None,
        messages: Sequence[Message],
        tools: Sequence[ToolDefinition],
        *,
        api_key: str | None,
        callbacks: StreamCallbacks,
        cancel: CancellationToken | None = None,
        model: str | None = None,
        tool_choice: str | dict[str, Any] | None = None,
    ) -> FinalMessage:
        self._require_tools()
        resolved = self._check_request(api_key, model)
        payload = self._build_payload(
            system=system,
            messages=messages,
            model=resolved,
            stream=True,
            tools=self._render_tools(tools) if tools else None,
            tool_choice=tool_choice,
        )
        return await self._stream(payload, api_key=api_key, model=resolved, callbacks=callbacks, cancel=cancel)

    async def _stream(
        self,
        payload: dict[str, Any],
        *,
        api_key: str | None,
        model: str,
        callbacks: StreamCallbacks,
        cancel: CancellationToken | None,
    ) -> FinalMessage:
        """Run one streamed generation to completion.

        Tool calls are handed to ``callbacks.on_tool_call`` as independent
        tasks the moment they become ready, so text keeps flowing while they
        run. All of them are joined before ``on_complete``.
        """
        if cancel is not None:
            cancel.raise_if_cancelled()
        log.info("%s stream started (model=%s)", self.id, model)
        try:
            handle = await self._open_stream(payload, api_key=api_key)
        except APIError:
            self._stats.record_error()
            raise

        parser = self.parser_class()
        accumulator = ToolCallAccumulator()
        text_parts: list[str] = []
        usage = Usage()
        finish_reason: str | None = None
        estimate = 0
        tasks: list[asyncio.Task[None]] = []
        results: dict[str, ExecutionResult] = {}

        def launch(calls: list[ToolCall]) -> None:
            for call in calls:
                tasks.append(asyncio.create_task(self._run_tool(call, callbacks, results)))

        try:
            with telemetry.tele_scope("provider.stream", provider=self.id, model=model):
                events = parser.iter_events(handle.aiter_bytes(), cancel=cancel, release=handle.aclose)
                async with aclosing(events):
                    async for event in events:
                        if isinstance(event, TextDelta):
                            text_parts.append(event.text)
                            estimate += estimate_tokens(event.text)
                            if callbacks.on_chunk is not None:
                                await maybe_await(callbacks.on_chunk(event.text, estimate))
                        elif isinstance(event, UsageUpdate):
                            usage = usage.merge(event.input_tokens, event.output_tokens)
                        elif isinstance(event, StreamErrorEvent):
                            raise stream_error(event.kind, event.message, provider=self.id)
                        elif isinstance(event, Finish):
                            finish_reason = event.reason
                        elif isinstance(event, Done):
                            break
                        launch(accumulator.apply(event))

                if cancel is not None and cancel.cancelled:
                    raise TurnCancelledError(f"{self.id} stream cancelled: {cancel.reason or 'no reason'}")

                # Calls left open by a stream that ended without a phase marker.
                launch(accumulator.finish_all())
                if tasks:
                    await asyncio.gather(*tasks)
        except httpx.HTTPError as e:
            self._stats.record_error()
            raise wrap_provider_error(e, provider=self.id, phase="stream") from e
        except APIError:
            self._stats.record_error()
            raise
        finally:
            if cancel is not None and cancel.cancelled:
                # Pending approvals are already force-denied; let each call
                # reach its terminal status.
                await asyncio.gather(*tasks, return_exceptions=True)
            else:
                for task in tasks:
                    if not task.done():
                        task.cancel()
            await handle.aclose()

        cost = self.calculate_cost(usage, model)
        self._stats.record(usage, cost)
        final = FinalMessage(
            content="".join(text_parts),
            model=model,
            provider=self.id,
            usage=usage,
            cost=cost,
            tool_calls=accumulator.calls(),
            tool_results=results,
            finish_reason=finish_reason,
        )
        log.info(
            "%s stream complete (tokens=%d, tool_calls=%d, cost=%.6f)",
            self.id,
            usage.total_tokens,
            len(final.tool_calls),
            cost,
        )
        if callbacks.on_complete is not None:
            await maybe_await(callbacks.on_complete(final))
        return final

    async def _run_tool(
        self,
        call: ToolCall,
        callbacks: StreamCallbacks,
        results: dict[str, ExecutionResult],
    ) -> None:
        if callbacks.on_tool_call is None:
            return
        try:
            result = await maybe_await(callbacks.on_tool_call(call))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.error("Tool call %s (%s) handler failed: %s", call.id, call.name, e, exc_info=True)
            result = ExecutionResult(success=False, error=str(e), status="failed")
        if result is not None:
            results[call.id] = result

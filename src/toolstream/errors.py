"""Exception hierarchy for toolstream."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterator


class ToolstreamError(Exception):
    """Base exception for all toolstream errors."""

    def __init__(self, message: str, *, hint: str | None = None) -> None:
        super().__init__(message)
        self.hint = hint


class ConfigurationError(ToolstreamError):
    """Configuration validation or resolution failed."""


class RequestValidationError(ToolstreamError):
    """A request was rejected before any I/O (bad credential format, unknown model).

    Never retried.
    """


class UnsupportedCapabilityError(ToolstreamError):
    """The selected provider lacks a capability the request needs."""


class TurnInProgressError(ToolstreamError):
    """A stream is already outstanding for this turn id."""


class TurnCancelledError(ToolstreamError):
    """The turn was cancelled through its cancellation handle."""


class InternalError(ToolstreamError):
    """A toolstream internal error (bug) or invariant violation."""


class APIError(ToolstreamError):
    """Provider call failed.

    Providers attach retry metadata so the orchestrator can perform bounded
    retries without brittle substring matching.
    """

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        retryable: bool | None = None,
        status_code: int | None = None,
        retry_after_s: float | None = None,
        provider: str | None = None,
        phase: str | None = None,
        attempts: int | None = None,
        body: str | None = None,
    ) -> None:
        super().__init__(message, hint=hint)
        self.retryable = retryable
        self.status_code = status_code
        self.retry_after_s = retry_after_s
        self.provider = provider
        self.phase = phase
        self.attempts = attempts
        #: Raw provider error text, kept for diagnostics.
        self.body = body


class RateLimitError(APIError):
    """Rate limit exceeded (HTTP 429)."""


class AuthenticationError(APIError):
    """Credential rejected by the provider (HTTP 401/403)."""


class StreamError(APIError):
    """The provider reported an error event inside an open stream."""


def _walk_exception_chain(exc: BaseException) -> Iterator[BaseException]:
    """Yield *exc* and its ``__cause__``/``__context__`` chain, with cycle protection."""
    seen: set[int] = set()
    stack: list[BaseException] = [exc]
    while stack:
        cur = stack.pop()
        if id(cur) in seen:
            continue
        seen.add(id(cur))
        yield cur

        cause = cur.__cause__
        if isinstance(cause, BaseException):
            stack.append(cause)
        context = cur.__context__
        if isinstance(context, BaseException):
            stack.append(context)

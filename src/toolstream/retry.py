"""Minimal async retry with explicit error contracts.

Design goals:
- Small API surface
- Explicit state (policy + attempt counters)
- No brittle substring matching for retry decisions
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
import random
import time
from typing import TYPE_CHECKING, TypeVar

import httpx

from toolstream._http import RETRYABLE_STATUS_CODES
from toolstream.errors import APIError, _walk_exception_chain

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

T = TypeVar("T")

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry policy with exponential backoff.

    The delay before retry ``n`` (0-based) is
    ``initial_delay_s * backoff_multiplier ** n``, capped at ``max_delay_s``.
    """

    #: Number of retries after the first attempt.
    max_retries: int = 2
    initial_delay_s: float = 1.0
    backoff_multiplier: float = 2.0
    max_delay_s: float = 30.0
    jitter: bool = False  # "full jitter" when enabled
    max_elapsed_s: float | None = None

    def __post_init__(self) -> None:
        """Validate invariants to keep retry behavior predictable."""
        if self.max_retries < 0:
            raise ValueError("RetryPolicy.max_retries must be >= 0")
        if self.initial_delay_s < 0:
            raise ValueError("RetryPolicy.initial_delay_s must be >= 0")
        if self.backoff_multiplier <= 0:
            raise ValueError("RetryPolicy.backoff_multiplier must be > 0")
        if self.max_delay_s < 0:
            raise ValueError("RetryPolicy.max_delay_s must be >= 0")
        if self.max_elapsed_s is not None and self.max_elapsed_s < 0:
            raise ValueError("RetryPolicy.max_elapsed_s must be >= 0 or None")

    @property
    def max_attempts(self) -> int:
        """Total attempts including the first one."""
        return self.max_retries + 1


def _retry_after_from_error(exc: BaseException) -> float | None:
    if isinstance(exc, APIError):
        v = exc.retry_after_s
        if isinstance(v, (int, float)) and v >= 0:
            return float(v)
    return None


def _is_transient_network_error(exc: BaseException) -> bool:
    for e in _walk_exception_chain(exc):
        if isinstance(e, (TimeoutError, asyncio.TimeoutError, ConnectionError)):
            return True
        # RequestError is the stable base class for transport-level failures.
        if isinstance(e, (httpx.TimeoutException, httpx.RequestError)):
            return True
    return False


def should_retry_request(exc: BaseException) -> bool:
    """Return True when a provider request exception should be retried.

    Contract:
    - Cancellation is never retried.
    - APIError is retried only when the provider marks it retryable or it
      carries a known retryable HTTP status code.
    - Transport failures (connection refused, DNS, timeouts) are retried.
    - Everything else (validation, auth, unsupported capability) is fatal.
    """
    if isinstance(exc, asyncio.CancelledError):
        return False

    if isinstance(exc, APIError):
        if exc.retryable is False:
            return False
        return (exc.retryable is True) or (
            isinstance(exc.status_code, int)
            and exc.status_code in RETRYABLE_STATUS_CODES
        )

    return _is_transient_network_error(exc)


def compute_backoff_delay(policy: RetryPolicy, *, retry_index: int) -> float:
    """Return the sleep before retry *retry_index* (0 for the first retry)."""
    base = policy.initial_delay_s * (policy.backoff_multiplier ** max(0, retry_index))
    base = min(policy.max_delay_s, base)
    if base <= 0:
        return 0.0
    if not policy.jitter:
        return base
    # Full jitter: random in [0, base] to avoid thundering herd.
    return random.random() * base  # noqa: S311


def _with_attempts(exc: BaseException, attempts: int) -> BaseException:
    """Return *exc* re-attributed with the number of attempts made.

    APIError instances are rebuilt (same class, same metadata) rather than
    mutated in place.
    """
    if not isinstance(exc, APIError) or attempts <= 1:
        return exc
    message = exc.args[0] if exc.args else str(exc)
    cls: type[APIError] = type(exc)
    return cls(
        f"{message} (after {attempts} attempts)",
        hint=exc.hint,
        retryable=exc.retryable,
        status_code=exc.status_code,
        retry_after_s=exc.retry_after_s,
        provider=exc.provider,
        phase=exc.phase,
        attempts=attempts,
        body=exc.body,
    )


async def retry_async(
    factory: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy,
    should_retry: Callable[[BaseException], bool] = should_retry_request,
    on_retry: Callable[[int, BaseException, float], None] | None = None,
) -> T:
    """Run an async factory with bounded retries.

    ``on_retry(attempt, exc, delay)`` is called before each backoff sleep.
    When the budget is exhausted the last error is raised with its attempt
    count attached.
    """
    start = time.monotonic()

    for attempt in range(1, policy.max_attempts + 1):
        try:
            return await factory()
        except Exception as exc:
            if not should_retry(exc):
                raise
            if attempt >= policy.max_attempts:
                raise _with_attempts(exc, attempt) from exc

            retry_after = _retry_after_from_error(exc)
            delay = compute_backoff_delay(policy, retry_index=attempt - 1)
            if retry_after is not None:
                delay = max(delay, retry_after)

            if policy.max_elapsed_s is not None:
                remaining = policy.max_elapsed_s - (time.monotonic() - start)
                if remaining <= 0:
                    raise _with_attempts(exc, attempt) from exc
                delay = min(delay, remaining)

            log.warning(
                "Attempt %d/%d failed (%s); retrying in %.2fs",
                attempt,
                policy.max_attempts,
                exc,
                delay,
            )
            if on_retry is not None:
                on_retry(attempt, exc, delay)
            if delay > 0:
                await asyncio.sleep(delay)

    # Defensive: loop should always return or raise.
    raise RuntimeError("retry_async exhausted without an exception")  # pragma: no cover

"""Shared provider-side error helpers.

Providers attach retry metadata via APIError so the orchestrator's retry loop
stays bounded and deterministic without brittle substring matching.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any

import httpx

from toolstream._http import AUTH_STATUS_CODES, RETRYABLE_STATUS_CODES
from toolstream.config import API_KEY_ENV_VARS
from toolstream.errors import (
    APIError,
    AuthenticationError,
    RateLimitError,
    StreamError,
    _walk_exception_chain,
)

def extract_status_code(exc: BaseException) -> int | None:
    """Walk the exception chain to find an HTTP status code."""
    for e in _walk_exception_chain(exc):
        value = getattr(e, "status_code", None)
        if isinstance(value, int) and 100 <= value <= 599:
            return value
        response = getattr(e, "response", None)
        value = getattr(response, "status_code", None)
        if isinstance(value, int) and 100 <= value <= 599:
            return value
    return None


def parse_retry_after(headers: Any) -> float | None:
    """Seconds from a numeric ``Retry-After`` header, if present."""
    if headers is None:
        return None
    raw = headers.get("retry-after")
    if not isinstance(raw, str) or not raw.strip():
        return None
    try:
        seconds = float(raw)
    except ValueError:
        # HTTP-date form is not worth honouring for short backoffs.
        return None
    return seconds if seconds >= 0 else None


def _error_detail(body: str) -> str:
    """Best-effort human message from a provider error body."""
    try:
        data = json.loads(body)
    except (json.JSONDecodeError, ValueError):
        return body.strip()[:500]
    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict) and isinstance(error.get("message"), str):
            return error["message"]
        if isinstance(error, str):
            return error
        if isinstance(data.get("message"), str):
            return data["message"]
    return body.strip()[:500]


def _auth_hint(provider: str, status_code: int | None) -> str | None:
    if status_code in AUTH_STATUS_CODES:
        env_var = API_KEY_ENV_VARS.get(provider, "API key")
        return f"Check credentials/permissions (try setting {env_var} or Config.api_key)."
    return None


def error_from_response(
    *,
    status_code: int,
    body: str,
    headers: Any = None,
    provider: str,
    phase: str,
) -> APIError:
    """Map a non-2xx HTTP response onto the APIError hierarchy."""
    retry_after_s = parse_retry_after(headers)
    retryable = status_code in RETRYABLE_STATUS_CODES

    err_cls: type[APIError] = APIError
    if status_code == 429:
        err_cls = RateLimitError
    elif status_code in AUTH_STATUS_CODES:
        err_cls = AuthenticationError

    detail = _error_detail(body)
    msg = f"{provider} {phase} failed (status={status_code})"
    return err_cls(
        f"{msg}: {detail}" if detail else msg,
        hint=_auth_hint(provider, status_code),
        retryable=retryable,
        status_code=status_code,
        retry_after_s=retry_after_s,
        provider=provider,
        phase=phase,
        body=body,
    )


async def raise_for_status(response: httpx.Response, *, provider: str, phase: str) -> None:
    """Read the body of a failed (possibly streaming) response and raise."""
    if response.is_success:
        return
    raw = await response.aread()
    body = raw.decode("utf-8", errors="replace")
    raise error_from_response(
        status_code=response.status_code,
        body=body,
        headers=response.headers,
        provider=provider,
        phase=phase,
    )


def stream_error(kind: str, message: str, *, provider: str) -> StreamError:
    """An error event received inside an open stream."""
    retryable = kind in ("overloaded_error", "rate_limit_error", "api_error", "server_error")
    return StreamError(
        f"{provider} stream error ({kind}): {message}",
        retryable=retryable,
        provider=provider,
        phase="stream",
        body=message,
    )


def wrap_provider_error(
    exc: BaseException,
    *,
    provider: str,
    phase: str,
    message: str | None = None,
    hint: str | None = None,
) -> APIError:
    """Map transport exceptions into APIError with stable retry metadata."""
    if isinstance(exc, asyncio.CancelledError):
        raise exc

    # Already wrapped: fill in missing context only.
    if isinstance(exc, APIError):
        if exc.provider is None:
            exc.provider = provider
        if exc.phase is None:
            exc.phase = phase
        if hint is not None and exc.hint is None:
            exc.hint = hint
        return exc

    status_code = extract_status_code(exc)
    retryable = isinstance(status_code, int) and status_code in RETRYABLE_STATUS_CODES
    if status_code is None:
        for e in _walk_exception_chain(exc):
            if isinstance(e, (httpx.TimeoutException, httpx.RequestError)):
                retryable = True
                break

    msg = message or f"{provider} {phase} failed"
    status_note = f" (status={status_code})" if isinstance(status_code, int) else ""
    cause = str(exc) or type(exc).__name__
    err_cls: type[APIError] = RateLimitError if status_code == 429 else APIError
    return err_cls(
        f"{msg}{status_note}: {cause}",
        hint=hint if hint is not None else _auth_hint(provider, status_code),
        retryable=retryable,
        status_code=status_code,
        provider=provider,
        phase=phase,
    )

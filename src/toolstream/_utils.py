"""Small shared helpers."""

from __future__ import annotations

import inspect
from typing import Any


async def maybe_await(value: Any) -> Any:
    """Await *value* when a callback turned out to be a coroutine function."""
    if inspect.isawaitable(value):
        return await value
    return value

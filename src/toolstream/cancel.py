"""Cooperative cancellation handle threaded from caller to transport."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from toolstream.errors import TurnCancelledError

if TYPE_CHECKING:
    from collections.abc import Callable

log = logging.getLogger(__name__)


class CancellationToken:
    """A one-way cancellation flag with callbacks.

    Read loops check :attr:`cancelled` before every read. Callbacks registered
    with :meth:`add_callback` run once, synchronously, on the first
    :meth:`cancel`; later calls are no-ops.
    """

    def __init__(self) -> None:
        self._cancelled = False
        self._reason: str | None = None
        self._callbacks: list[Callable[[str | None], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str | None = None) -> None:
        """Request cancellation."""
        if self._cancelled:
            return
        self._cancelled = True
        self._reason = reason
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback(reason)
            except Exception:
                log.exception("Cancellation callback failed")

    def add_callback(self, callback: Callable[[str | None], None]) -> None:
        """Run *callback* on cancellation (immediately if already cancelled)."""
        if self._cancelled:
            callback(self._reason)
            return
        self._callbacks.append(callback)

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise TurnCancelledError(
                f"Turn cancelled: {self._reason}" if self._reason else "Turn cancelled"
            )

    def __repr__(self) -> str:
        return f"CancellationToken(cancelled={self._cancelled!r})"

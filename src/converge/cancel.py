"""Caller-initiated cancellation."""

from __future__ import annotations

import logging
from collections.abc import Callable

from converge.errors import RequestCancelledError

logger = logging.getLogger(__name__)


class CancelToken:
    """A one-shot cancellation signal shared between a caller and operations.

    Operations register callbacks; ``cancel()`` runs each of them once.
    Callbacks registered after cancellation run immediately.
    """

    __slots__ = ("_callbacks", "_cancelled", "_reason")

    def __init__(self) -> None:
        self._callbacks: list[Callable[[], None]] = []
        self._cancelled = False
        self._reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str | None = None) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        self._reason = reason
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception:
                logger.exception("Cancel callback %r failed", callback)

    def add_callback(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Register a callback; returns a function that unregisters it."""
        if self._cancelled:
            callback()
            return lambda: None
        self._callbacks.append(callback)

        def remove() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return remove

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise RequestCancelledError(self._reason or "Operation cancelled")

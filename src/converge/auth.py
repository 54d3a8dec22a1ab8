"""Bearer-token providers consulted by transports before each attempt."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Protocol, runtime_checkable

logger = logging.getLogger(__name__)


@runtime_checkable
class AuthProvider(Protocol):
    """Auth provider interface."""

    def get_bearer_token(self) -> str | None:
        """Return the current token, or None when unauthenticated."""
        ...

    async def refresh(self) -> bool:
        """Obtain a new token. Returns whether a usable token is available."""
        ...


class StaticTokenProvider:
    """Holds a token set by the application. Cannot refresh.

    A refresh request means the server rejected the token, so it is cleared.
    """

    def __init__(self, token: str | None = None) -> None:
        self._token = token

    def get_bearer_token(self) -> str | None:
        return self._token

    def set_token(self, token: str) -> None:
        self._token = token

    def clear(self) -> None:
        self._token = None

    async def refresh(self) -> bool:
        self._token = None
        return False


class RefreshingTokenProvider:
    """Token provider backed by an async refresh callable.

    Concurrent refresh requests share a single call to ``refresh_fn``.
    """

    def __init__(
        self,
        refresh_fn: Callable[[], Awaitable[str | None]],
        *,
        token: str | None = None,
    ) -> None:
        self._refresh_fn = refresh_fn
        self._token = token
        self._in_flight: asyncio.Future[bool] | None = None

    def get_bearer_token(self) -> str | None:
        return self._token

    def set_token(self, token: str | None) -> None:
        self._token = token

    async def refresh(self) -> bool:
        if self._in_flight is not None:
            return await asyncio.shield(self._in_flight)

        loop = asyncio.get_running_loop()
        future: asyncio.Future[bool] = loop.create_future()
        self._in_flight = future
        ok = False
        try:
            try:
                token = await self._refresh_fn()
            except Exception as e:
                logger.warning("Token refresh failed: %s", e)
                token = None
            self._token = token
            ok = token is not None
            return ok
        finally:
            # Waiters of a cancelled refresh see a failed one
            self._in_flight = None
            future.set_result(ok)

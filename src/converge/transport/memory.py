"""In-process transport that routes requests to handler functions."""

from __future__ import annotations

import asyncio
import inspect
import re
from collections.abc import Callable
from dataclasses import replace
from typing import Any

from converge.auth import AuthProvider
from converge.duration import to_seconds
from converge.errors import PermanentClientError
from converge.transport.base import auth_headers, raise_for_status
from converge.types import Duration, Request, Response

Handler = Callable[..., Any]

_PARAM_PATTERN = re.compile(r"\{(\w+)\}")


def _compile(path: str) -> re.Pattern[str]:
    pattern = _PARAM_PATTERN.sub(r"(?P<\1>[^/]+)", path.rstrip("/") or "/")
    return re.compile(f"^{pattern}$")


class MemoryTransport:
    """Routes requests to in-process handlers and records every call.

    Handlers receive the request plus path parameters and return either a
    :class:`Response`, plain data (sent as a 200) or raise.

    Example:
        transport = MemoryTransport()

        @transport.route("GET", "/products/{id}")
        def get_product(request, id):
            return {"id": id}
    """

    def __init__(
        self,
        *,
        auth: AuthProvider | None = None,
        latency: Duration = 0,
    ) -> None:
        self._auth = auth
        self._latency = to_seconds(latency)
        self._routes: list[tuple[str, re.Pattern[str], Handler]] = []
        self.calls: list[Request] = []

    def route(
        self,
        method: str,
        path: str,
        handler: Handler | None = None,
    ) -> Any:
        """Register a handler; usable directly or as a decorator."""

        def register(fn: Handler) -> Handler:
            self._routes.append((method.upper(), _compile(path), fn))
            return fn

        if handler is not None:
            return register(handler)
        return register

    def calls_to(self, method: str, path: str) -> list[Request]:
        return [
            c for c in self.calls if c.method.upper() == method.upper() and c.path == path
        ]

    async def send(self, request: Request) -> Response:
        token = self._auth.get_bearer_token() if self._auth is not None else None
        sent = replace(request, headers=auth_headers(request, token))
        self.calls.append(sent)
        if self._latency:
            await asyncio.sleep(self._latency)

        path = request.path.rstrip("/") or "/"
        for method, pattern, handler in self._routes:
            match = pattern.match(path)
            if method == request.method.upper() and match:
                result = handler(sent, **match.groupdict())
                if inspect.isawaitable(result):
                    result = await result
                if not isinstance(result, Response):
                    result = Response(200 if result is not None else 204, result)
                raise_for_status(result.status, result.data)
                return result

        raise PermanentClientError(404, {"detail": f"No route for {request.method} {path}"})

"""HTTP transport built on httpx."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from converge.auth import AuthProvider
from converge.duration import to_seconds
from converge.errors import (
    MalformedResponseError,
    RequestTimeoutError,
    TransientNetworkError,
)
from converge.transport.base import auth_headers, raise_for_status
from converge.types import Duration, Request, Response

logger = logging.getLogger(__name__)

DEFAULT_HEADERS = {"Accept": "application/json"}


def _decode(response: httpx.Response) -> Any:
    """Decode a body by content type; ``None`` for empty bodies."""
    if response.status_code == 204 or not response.content:
        return None
    content_type = response.headers.get("content-type", "")
    if "json" not in content_type:
        return response.text
    try:
        return response.json()
    except ValueError as e:
        if response.is_success:
            raise MalformedResponseError(
                f"Invalid JSON in {response.status_code} response"
            ) from e
        return response.text


class HttpTransport:
    """Async HTTP transport.

    Args:
        base_url: Prefix for every request path; trailing slashes are dropped.
        auth: Provider consulted for a bearer token before each attempt.
        timeout: Per-attempt timeout.
        headers: Default headers merged under per-request headers.
        client: An existing ``httpx.AsyncClient`` to use instead of creating
            one. The transport does not close clients it did not create.
    """

    def __init__(
        self,
        base_url: str = "",
        *,
        auth: AuthProvider | None = None,
        timeout: Duration = "10s",
        headers: dict[str, str] | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._auth = auth
        self._timeout = to_seconds(timeout)
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=self._base_url,
            headers={**DEFAULT_HEADERS, **(headers or {})},
            timeout=self._timeout,
            follow_redirects=True,
        )

    @property
    def base_url(self) -> str:
        return self._base_url

    async def send(self, request: Request) -> Response:
        """Send one request; raise a classified error on failure."""
        token = self._auth.get_bearer_token() if self._auth is not None else None
        timeout = (
            to_seconds(request.timeout) if request.timeout is not None else self._timeout
        )
        try:
            response = await self._client.request(
                request.method,
                request.path,
                params=request.params,
                json=request.json,
                headers=auth_headers(request, token),
                timeout=timeout,
            )
        except httpx.TimeoutException as e:
            raise RequestTimeoutError(
                f"{request.method} {request.path} timed out after {timeout}s"
            ) from e
        except httpx.TransportError as e:
            raise TransientNetworkError(
                f"{request.method} {request.path}: {e or type(e).__name__}"
            ) from e

        logger.debug("%s %s -> %d", request.method, request.path, response.status_code)
        data = _decode(response)
        raise_for_status(response.status_code, data)
        return Response(
            status=response.status_code,
            data=data,
            headers=dict(response.headers),
        )

    async def aclose(self) -> None:
        """Close the HTTP client if this transport created it."""
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> HttpTransport:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.aclose()

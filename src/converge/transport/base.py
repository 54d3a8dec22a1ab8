"""Base transport protocol and status classification."""

from typing import Any, Protocol, runtime_checkable

from converge.errors import (
    PermanentApplicationError,
    PermanentClientError,
    ProblemDetails,
    TransientServerError,
    UnauthorizedError,
)
from converge.types import Request, Response


@runtime_checkable
class Transport(Protocol):
    """Performs one request/response exchange.

    Implementations return a :class:`Response` for successful exchanges and
    raise a classified :mod:`converge.errors` exception otherwise.
    """

    async def send(self, request: Request) -> Response:
        """Send a request and return the decoded response."""
        ...


def raise_for_status(status: int, data: Any = None) -> None:
    """Raise the classified error for a non-success status."""
    if status < 400:
        return
    if status >= 500:
        raise TransientServerError(status, data)
    if status == 401:
        raise UnauthorizedError(data)
    if ProblemDetails.looks_like(data):
        raise PermanentApplicationError(ProblemDetails.from_dict(data), status)
    raise PermanentClientError(status, data)


def auth_headers(request: Request, token: str | None) -> dict[str, str]:
    """Request headers plus bearer and idempotency headers."""
    headers = dict(request.headers)
    if token:
        headers["Authorization"] = f"Bearer {token}"
    if request.idempotency_key:
        headers["Idempotency-Key"] = request.idempotency_key
    return headers

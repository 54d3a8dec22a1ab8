"""Exception hierarchy for converge.

Every failure the cache reacts to is classified as transient (retried by
:class:`~converge.retry.RetryPolicy`) or permanent (propagated at once and
rolling back optimistic state)::

    ConvergeError
    +-- TransientError
    |   +-- TransientNetworkError
    |   +-- TransientServerError       (HTTP 5xx)
    |   +-- RequestTimeoutError
    +-- PermanentError
    |   +-- PermanentClientError       (HTTP 4xx)
    |   |   +-- UnauthorizedError      (HTTP 401)
    |   +-- PermanentApplicationError  (problem-details payload)
    |   +-- MalformedResponseError
    |   +-- RequestCancelledError
    +-- ConflictError
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from converge.types import Key


class ConvergeError(Exception):
    """Base exception for all converge errors."""


class TransientError(ConvergeError):
    """A failure that may succeed if the attempt is repeated."""


class TransientNetworkError(TransientError):
    """Raised on connection-level failures (refused, reset, DNS)."""


class TransientServerError(TransientError):
    """Raised when the server answers with a 5xx status."""

    def __init__(self, status: int, body: Any = None) -> None:
        super().__init__(f"HTTP {status}")
        self.status = status
        self.body = body


class RequestTimeoutError(TransientError):
    """Raised when a single transport attempt exceeds its timeout."""


class PermanentError(ConvergeError):
    """A failure that repeating the attempt cannot fix."""


class PermanentClientError(PermanentError):
    """Raised when the server rejects the request with a 4xx status."""

    def __init__(self, status: int, body: Any = None, message: str | None = None) -> None:
        super().__init__(message or f"HTTP {status}")
        self.status = status
        self.body = body


class UnauthorizedError(PermanentClientError):
    """Raised on HTTP 401. Triggers one token refresh per operation."""

    def __init__(self, body: Any = None) -> None:
        super().__init__(401, body, "HTTP 401 Unauthorized")


@dataclass(frozen=True, slots=True)
class ProblemDetails:
    """An RFC 7807 problem-details payload."""

    type: str | None = None
    title: str | None = None
    status: int | None = None
    detail: str | None = None
    instance: str | None = None
    errors: dict[str, list[str]] | None = None
    extensions: dict[str, Any] = field(default_factory=dict)

    _MEMBERS = ("type", "title", "status", "detail", "instance", "errors")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ProblemDetails:
        status = data.get("status")
        return cls(
            type=data.get("type"),
            title=data.get("title"),
            status=status if isinstance(status, int) else None,
            detail=data.get("detail"),
            instance=data.get("instance"),
            errors=data.get("errors"),
            extensions={k: v for k, v in data.items() if k not in cls._MEMBERS},
        )

    @staticmethod
    def looks_like(data: Any) -> bool:
        """Whether a decoded body is shaped like problem details."""
        if not isinstance(data, dict):
            return False
        return "title" in data and ("type" in data or "status" in data)


class PermanentApplicationError(PermanentError):
    """Raised when the server reports a structured business error."""

    def __init__(self, problem: ProblemDetails, status: int | None = None) -> None:
        message = problem.detail or problem.title or "Application error"
        super().__init__(message)
        self.problem = problem
        self.status = status if status is not None else problem.status


class MalformedResponseError(PermanentError):
    """Raised when a response body cannot be decoded."""


class RequestCancelledError(PermanentError):
    """Raised when a caller cancels an operation through its CancelToken."""


class ConflictError(ConvergeError):
    """Raised when an optimistic write overlaps another on the same key."""

    def __init__(self, key: Key, message: str | None = None) -> None:
        super().__init__(message or f"Optimistic mutation already in progress for {key!r}")
        self.key = key

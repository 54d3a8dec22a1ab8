"""Core types for the converge resource cache."""

from __future__ import annotations

import enum
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Generic, TypeVar, Union

if TYPE_CHECKING:
    from converge.cancel import CancelToken
    from converge.retry import RetryPolicy

T = TypeVar("T")
P = TypeVar("P")
R = TypeVar("R")

# Keys are plain tuples of primitives; equality is structural
Primitive = Union[str, int, float, bool, None]
Key = tuple[Primitive, ...]
KeyPredicate = Callable[[Key], bool]
KeyMatcher = Union[Key, KeyPredicate]

# Duration type alias
Duration = Union[str, int]  # "30s", "5m", "2h", "1d" or milliseconds


class Status(enum.Enum):
    """Lifecycle status of a cache entry."""

    IDLE = "idle"
    FETCHING = "fetching"
    SUCCESS = "success"
    ERROR = "error"


class FailureClass(enum.Enum):
    """Whether a failed attempt may be retried."""

    TRANSIENT = "transient"
    PERMANENT = "permanent"


class MutationState(enum.Enum):
    """States of a single mutation instance."""

    IDLE = "idle"
    OPTIMISTIC_APPLIED = "optimistic_applied"
    COMMITTING = "committing"
    ROLLING_BACK = "rolling_back"
    SETTLED = "settled"


@dataclass(frozen=True, slots=True)
class QueryOptions:
    """Per-query options. ``None`` falls back to the client default."""

    stale_time: Duration | None = None
    enabled: bool = True
    keep_previous_on_key_change: bool = False
    retry: RetryPolicy | None = None
    cancel_token: CancelToken | None = None


@dataclass(frozen=True, slots=True)
class QueryResult(Generic[T]):
    """Immutable view of a query's state handed to consumers."""

    key: Key
    value: T | None
    status: Status
    error: BaseException | None = None
    updated_at: int = 0
    is_stale: bool = False
    is_previous_data: bool = False

    @property
    def is_loading(self) -> bool:
        return self.status is Status.FETCHING and self.value is None

    @property
    def is_error(self) -> bool:
        return self.status is Status.ERROR

    @property
    def is_success(self) -> bool:
        return self.status is Status.SUCCESS


@dataclass(frozen=True, slots=True)
class MutationConfig(Generic[P, R]):
    """Configuration for a mutation (write path)."""

    writer: Callable[[P], Awaitable[R]]
    target_keys: Sequence[Key] = ()
    invalidate_keys: Sequence[KeyMatcher] = ()
    optimistic_updater: Callable[[Any, P], Any] | None = None
    reconcile: Callable[[Key, Any, R], Any] | None = None
    idempotent: bool = False
    idempotency_key: str | None = None
    retry: RetryPolicy | None = None
    queue_timeout: Duration | None = None
    cancel_token: CancelToken | None = None


@dataclass(frozen=True, slots=True)
class Request:
    """Transport-agnostic request descriptor."""

    method: str = "GET"
    path: str = "/"
    params: dict[str, Any] | None = None
    json: Any = None
    headers: dict[str, str] = field(default_factory=dict)
    idempotency_key: str | None = None
    timeout: Duration | None = None


@dataclass(frozen=True, slots=True)
class Response:
    """Decoded transport response."""

    status: int
    data: Any = None
    headers: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

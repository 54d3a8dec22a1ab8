"""Retry policy with failure classification and exponential backoff."""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, TypeVar

from converge.duration import parse_duration
from converge.errors import PermanentError, TransientError, UnauthorizedError
from converge.types import Duration, FailureClass

if TYPE_CHECKING:
    from converge.auth import AuthProvider

T = TypeVar("T")

logger = logging.getLogger(__name__)


def classify_failure(error: BaseException) -> FailureClass:
    """Classify an exception as transient (retryable) or permanent."""
    if isinstance(error, TransientError):
        return FailureClass.TRANSIENT
    if isinstance(error, PermanentError):
        return FailureClass.PERMANENT
    # asyncio.TimeoutError is TimeoutError from 3.11 on
    if isinstance(error, (TimeoutError, asyncio.TimeoutError, ConnectionError)):
        return FailureClass.TRANSIENT
    return FailureClass.PERMANENT


@dataclass
class RetryState:
    """Bookkeeping for one logical operation."""

    attempts: int = 0
    delays: list[float] = field(default_factory=list)
    last_error: BaseException | None = None
    auth_refreshed: bool = False


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Decides whether, when and how often a failed attempt is retried.

    Policies are immutable and can be shared; per-operation state lives in
    the :class:`RetryState` returned by :meth:`begin`.

    Args:
        max_attempts: Total attempts including the first one.
        base_delay: Base backoff delay. Retry ``n`` (0-based) waits
            ``base * 2**n`` plus jitter drawn from ``[0, base)``.
        max_delay: Upper bound for a single delay, ``None`` for no cap.
        jitter: Add random jitter to each delay.
        classify: Maps an exception to a :class:`FailureClass`.
        sleep: Awaitable sleep taking seconds.
    """

    max_attempts: int = 3
    base_delay: Duration = "250ms"
    max_delay: Duration | None = "30s"
    jitter: bool = True
    classify: Callable[[BaseException], FailureClass] = classify_failure
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        # Validate durations eagerly
        parse_duration(self.base_delay)
        if self.max_delay is not None:
            parse_duration(self.max_delay)

    @classmethod
    def no_retry(cls) -> RetryPolicy:
        return cls(max_attempts=1)

    def begin(self) -> RetryState:
        """Start bookkeeping for a new logical operation."""
        return RetryState()

    def delay_for(self, retry: int) -> float:
        """Delay in seconds before retry number ``retry`` (0-based)."""
        base = parse_duration(self.base_delay) / 1000
        delay = base * (2**retry)
        if self.jitter and base > 0:
            delay += random.uniform(0, base)  # noqa: S311
        if self.max_delay is not None:
            delay = min(delay, parse_duration(self.max_delay) / 1000)
        return delay

    def for_write(
        self,
        *,
        idempotent: bool = False,
        idempotency_key: str | None = None,
    ) -> RetryPolicy:
        """Apply the idempotency guard for write operations.

        Non-idempotent writes are attempted once unless the caller provides
        an idempotency key the server can deduplicate on.
        """
        if idempotent or idempotency_key is not None:
            return self
        return replace(self, max_attempts=1)

    async def run(
        self,
        fn: Callable[[], Awaitable[T]],
        *,
        auth: AuthProvider | None = None,
        label: str = "operation",
        state: RetryState | None = None,
    ) -> T:
        """Run ``fn`` until it succeeds, fails permanently or attempts run out.

        A 401 triggers a single ``auth.refresh()`` and an immediate retry
        that does not count as an attempt. The last error is re-raised.
        """
        state = state or self.begin()
        while True:
            state.attempts += 1
            try:
                return await fn()
            except UnauthorizedError as e:
                state.last_error = e
                if auth is None or state.auth_refreshed:
                    raise
                state.auth_refreshed = True
                state.attempts -= 1
                logger.info("%s got 401, refreshing credentials", label)
                if not await auth.refresh():
                    raise
            except Exception as e:
                state.last_error = e
                if self.classify(e) is FailureClass.PERMANENT:
                    raise
                if state.attempts >= self.max_attempts:
                    logger.warning(
                        "%s failed after %d attempts: %s", label, state.attempts, e
                    )
                    raise
                delay = self.delay_for(state.attempts - 1)
                state.delays.append(delay)
                logger.warning(
                    "%s - %s (attempt %d/%d), retrying in %.3fs",
                    label,
                    type(e).__name__,
                    state.attempts,
                    self.max_attempts,
                    delay,
                )
                await self.sleep(delay)

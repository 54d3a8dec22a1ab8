"""Mutation execution - the write path.

Each mutation moves through ``IDLE -> OPTIMISTIC_APPLIED -> COMMITTING |
ROLLING_BACK -> SETTLED``. Mutations touching the same key queue behind one
another (FIFO per key) so snapshots always nest; mutations on disjoint keys
run in parallel.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Generator, Sequence
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any, Generic, TypeVar

from converge.cache import ResourceCache, SnapshotToken
from converge.duration import to_seconds
from converge.errors import ConflictError, RequestCancelledError
from converge.keys import as_key, exact, serialize_key
from converge.retry import RetryPolicy
from converge.types import Duration, Key, MutationConfig, MutationState

if TYPE_CHECKING:
    from converge.auth import AuthProvider

P = TypeVar("P")
R = TypeVar("R")

logger = logging.getLogger(__name__)


def _default_reconcile(key: Key, optimistic: Any, result: Any) -> Any:
    """Server result wins; keep the optimistic value when there is no body."""
    return optimistic if result is None else result


def _unique(keys: Sequence[Any]) -> list[Key]:
    seen: dict[Key, None] = {}
    for key in keys:
        seen.setdefault(as_key(key), None)
    return list(seen)


class Mutation(Generic[P, R]):
    """One execution of a mutation. Await it for the writer's result."""

    def __init__(self, payload: P, config: MutationConfig[P, R]) -> None:
        self.payload = payload
        self.config = config
        self.state = MutationState.IDLE
        self.transitions: list[MutationState] = [MutationState.IDLE]
        self.result: R | None = None
        self.error: BaseException | None = None
        self._task: asyncio.Task[R] | None = None

    @property
    def settled(self) -> bool:
        return self.state is MutationState.SETTLED

    def _transition(self, state: MutationState) -> None:
        logger.debug("Mutation %s: %s -> %s", id(self), self.state.value, state.value)
        self.state = state
        self.transitions.append(state)

    def cancel(self) -> bool:
        """Cancel a submitted mutation. Returns False if it already finished."""
        if self._task is None:
            raise RuntimeError("Mutation was not submitted")
        return self._task.cancel()

    def __await__(self) -> Generator[Any, None, R]:
        if self._task is None:
            raise RuntimeError("Mutation was not submitted")
        return self._task.__await__()


class MutationExecutor:
    """Write path over a :class:`ResourceCache`."""

    def __init__(
        self,
        cache: ResourceCache,
        *,
        retry: RetryPolicy | None = None,
        auth: AuthProvider | None = None,
        queue_timeout: Duration | None = "30s",
    ) -> None:
        self._cache = cache
        self._retry = retry or RetryPolicy()
        self._auth = auth
        self._queue_timeout = queue_timeout
        self._locks: dict[Key, asyncio.Lock] = {}
        self._lock_users: dict[Key, int] = {}
        self._tasks: set[asyncio.Task[Any]] = set()

    @property
    def cache(self) -> ResourceCache:
        return self._cache

    def is_busy(self, key: Any) -> bool:
        """Whether a mutation holds or waits for ``key``."""
        return as_key(key) in self._lock_users

    async def mutate(self, payload: P, config: MutationConfig[P, R]) -> R:
        """Run a mutation and return the writer's result."""
        return await self._execute(Mutation(payload, config))

    def submit(self, payload: P, config: MutationConfig[P, R]) -> Mutation[P, R]:
        """Schedule a mutation and return its awaitable record."""
        mutation = Mutation(payload, config)
        task = asyncio.get_running_loop().create_task(self._execute(mutation))
        mutation._task = task
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        # The error is kept on the Mutation; mark it retrieved for unawaited tasks
        task.add_done_callback(lambda t: t.cancelled() or t.exception())
        return mutation

    async def aclose(self) -> None:
        """Wait for submitted mutations to settle."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # -------------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------------

    async def _execute(self, mutation: Mutation[P, R]) -> R:
        config = mutation.config
        keys = _unique(config.target_keys)
        token = config.cancel_token
        task = asyncio.current_task()
        remove_cancel = None
        if token is not None:
            token.raise_if_cancelled()
            if task is not None:
                remove_cancel = token.add_callback(task.cancel)

        timeout = config.queue_timeout if config.queue_timeout is not None else self._queue_timeout
        try:
            async with self._serialized(keys, timeout):
                return await self._apply(mutation, keys)
        except asyncio.CancelledError:
            if token is None or not token.cancelled:
                if not mutation.settled:
                    # Cancelled while queued
                    mutation.error = RequestCancelledError("Mutation cancelled")
                    mutation._transition(MutationState.SETTLED)
                raise
            uncancel = getattr(task, "uncancel", None)
            if uncancel is not None:
                uncancel()
            error = mutation.error
            if not isinstance(error, RequestCancelledError):
                error = RequestCancelledError(token.reason or "Mutation cancelled")
                mutation.error = error
            if not mutation.settled:
                mutation._transition(MutationState.SETTLED)
            raise error from None
        except Exception as e:
            if not mutation.settled:
                # Never got past the queue
                mutation.error = e
                mutation._transition(MutationState.SETTLED)
            raise
        finally:
            if remove_cancel is not None:
                remove_cancel()

    @asynccontextmanager
    async def _serialized(
        self,
        keys: list[Key],
        timeout: Duration | None,
    ) -> AsyncIterator[None]:
        """Hold the per-key locks for ``keys``, acquired in a fixed order."""
        ordered = sorted(keys, key=repr)
        for key in ordered:
            self._lock_users[key] = self._lock_users.get(key, 0) + 1
        acquired: list[asyncio.Lock] = []
        loop = asyncio.get_running_loop()
        # One deadline covers every key of the mutation
        deadline = None if timeout is None else loop.time() + to_seconds(timeout)
        try:
            for key in ordered:
                lock = self._locks.setdefault(key, asyncio.Lock())
                if deadline is None or not lock.locked():
                    await lock.acquire()
                else:
                    remaining = max(deadline - loop.time(), 0)
                    try:
                        await asyncio.wait_for(lock.acquire(), remaining)
                    except asyncio.TimeoutError as e:
                        raise ConflictError(
                            key, f"Timed out waiting for pending mutation on {key!r}"
                        ) from e
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()
            for key in ordered:
                self._lock_users[key] -= 1
                if self._lock_users[key] == 0:
                    del self._lock_users[key]
                    self._locks.pop(key, None)

    async def _apply(self, mutation: Mutation[P, R], keys: list[Key]) -> R:
        config = mutation.config
        tokens: dict[Key, SnapshotToken] = {}
        try:
            if config.optimistic_updater is not None:
                for key in keys:
                    entry = self._cache.get(key)
                    current = entry.value if entry.has_value else None
                    next_value = config.optimistic_updater(current, mutation.payload)
                    if next_value is None:
                        continue
                    tokens[key] = self._cache.begin_optimistic(key, next_value)
            mutation._transition(MutationState.OPTIMISTIC_APPLIED)

            policy = (config.retry or self._retry).for_write(
                idempotent=config.idempotent,
                idempotency_key=config.idempotency_key,
            )
            result = await policy.run(
                lambda: config.writer(mutation.payload),
                auth=self._auth,
                label=f"mutation on {', '.join(serialize_key(k) for k in keys) or 'no keys'}",
            )
        except BaseException as e:
            mutation._transition(MutationState.ROLLING_BACK)
            if isinstance(e, Exception):
                error: BaseException = e
            else:
                token = config.cancel_token
                reason = token.reason if token is not None else None
                error = RequestCancelledError(reason or "Mutation cancelled")
            for key, token in tokens.items():
                self._cache.rollback_optimistic(key, token, error)
            mutation.error = error
            mutation._transition(MutationState.SETTLED)
            logger.warning("Mutation failed, rolled back %d keys: %s", len(tokens), e)
            raise

        mutation._transition(MutationState.COMMITTING)
        reconcile = config.reconcile or _default_reconcile
        pending = dict(tokens)
        try:
            for key, token in tokens.items():
                final = reconcile(key, token.optimistic_value, result)
                self._cache.commit_optimistic(key, token, final)
                del pending[key]
        finally:
            # A failing reconcile still must not leave snapshots behind
            for key, token in pending.items():
                self._cache.commit_optimistic(key, token, token.optimistic_value)
                self._cache.invalidate(exact(key))
            mutation.result = result
            mutation._transition(MutationState.SETTLED)

        for matcher in config.invalidate_keys:
            self._cache.invalidate(matcher if callable(matcher) else as_key(matcher))
        return result

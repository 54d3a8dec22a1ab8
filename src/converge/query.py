"""Query execution - the read path.

This module provides:
- QueryExecutor: fetch de-duplication (single-flight), staleness checks,
  generation-guarded results and background refetch for invalidated keys
- QueryObserver: the observable result handed to consumers
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections.abc import Awaitable, Callable, Generator
from typing import TYPE_CHECKING, Any, Generic, TypeVar

from converge.cache import Entry, ResourceCache
from converge.duration import parse_duration
from converge.errors import RequestCancelledError
from converge.keys import as_key, exact, serialize_key, to_predicate
from converge.retry import RetryPolicy
from converge.types import Duration, Key, KeyMatcher, QueryOptions, QueryResult, Status

if TYPE_CHECKING:
    from converge.auth import AuthProvider

T = TypeVar("T")

Fetcher = Callable[[], Awaitable[Any]]

logger = logging.getLogger(__name__)


def _value_or_raise(entry: Entry) -> Any:
    if entry.status is Status.ERROR and entry.error is not None:
        raise entry.error
    return entry.value if entry.has_value else None


class QueryExecutor:
    """Read path over a :class:`ResourceCache`."""

    def __init__(
        self,
        cache: ResourceCache,
        *,
        stale_time: Duration = 0,
        retry: RetryPolicy | None = None,
        auth: AuthProvider | None = None,
    ) -> None:
        self._cache = cache
        self._stale_time = parse_duration(stale_time)
        self._retry = retry or RetryPolicy()
        self._auth = auth
        self._in_flight: dict[Key, asyncio.Task[None]] = {}
        self._background_tasks: set[asyncio.Task[None]] = set()
        # Created but not yet running; later refetch requests join these
        self._unstarted: set[asyncio.Task[None]] = set()
        cache.bind_refetch(self._refetch_in_background)

    @property
    def cache(self) -> ResourceCache:
        return self._cache

    def is_fetching(self, key: Key) -> bool:
        task = self._in_flight.get(key)
        return task is not None and not task.done()

    def stale_time_for(self, options: QueryOptions) -> int:
        if options.stale_time is None:
            return self._stale_time
        return parse_duration(options.stale_time)

    def query(
        self,
        key: Any,
        fetcher: Fetcher,
        options: QueryOptions | None = None,
    ) -> QueryObserver[Any]:
        """Resolve ``key`` from the cache, fetching when needed."""
        return QueryObserver(self, as_key(key), fetcher, options or QueryOptions())

    async def fetch(
        self,
        key: Any,
        fetcher: Fetcher,
        options: QueryOptions | None = None,
    ) -> Any:
        """Return the value for ``key``; raises the fetch error if it failed."""
        key = as_key(key)
        self.ensure(key, fetcher, options or QueryOptions())
        return _value_or_raise(await self.wait(key))

    async def prefetch(
        self,
        key: Any,
        fetcher: Fetcher,
        options: QueryOptions | None = None,
    ) -> None:
        """Warm the cache for ``key``. Failures stay on the entry."""
        key = as_key(key)
        self.ensure(key, fetcher, options or QueryOptions())
        await self.wait(key)

    def ensure(self, key: Key, fetcher: Fetcher, options: QueryOptions) -> None:
        """Register ``fetcher`` for ``key`` and start a fetch unless fresh."""
        entry = self._cache.get(key)
        entry.fetcher = fetcher
        entry.options = options
        if not options.enabled:
            return
        if options.cancel_token is not None and options.cancel_token.cancelled:
            return
        if self.is_fetching(key):
            return  # Single-flight: attach to the running fetch
        if entry.snapshot is not None:
            return  # Refetched once the optimistic write settles
        if entry.is_fresh(self.stale_time_for(options)):
            return
        self._start_fetch(entry, fetcher, options)

    def refetch(
        self,
        key: Key,
        fetcher: Fetcher | None = None,
        options: QueryOptions | None = None,
    ) -> None:
        """Start a fetch that supersedes any in flight for ``key``."""
        entry = self._cache.get(key)
        fetcher = fetcher or entry.fetcher
        if fetcher is None:
            raise ValueError(f"No fetcher registered for {key!r}")
        if entry.snapshot is not None:
            entry.invalidated = True
            return
        self._start_fetch(entry, fetcher, options or entry.options or QueryOptions())

    async def wait(self, key: Key) -> Entry:
        """Wait until no fetch is in flight for ``key``; return its entry."""
        while True:
            task = self._in_flight.get(key)
            if task is None or task.done():
                break
            # wait() never raises the task's outcome; results live on the entry
            await asyncio.wait({task})
        return self._cache.get(key)

    def cancel(self, matcher: KeyMatcher) -> list[Key]:
        """Cancel in-flight fetches; their results are discarded."""
        predicate = to_predicate(matcher)
        cancelled: list[Key] = []
        for key, task in list(self._in_flight.items()):
            if not predicate(key) or task.done():
                continue
            del self._in_flight[key]
            entry = self._cache.peek(key)
            if entry is not None:
                entry.generation += 1
                entry.invalidated = True
                self._cache.mark(key, Status.SUCCESS if entry.has_value else Status.IDLE)
            task.cancel()
            cancelled.append(key)
            logger.debug("Cancelled fetch for %s", serialize_key(key))
        return cancelled

    async def aclose(self) -> None:
        """Cancel background fetches and wait for them to finish."""
        tasks = list(self._background_tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._in_flight.clear()

    # -------------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------------

    def _refetch_in_background(self, entry: Entry) -> None:
        """Refetch handler bound to the cache's ``invalidate``."""
        if entry.fetcher is None:
            return
        options = entry.options or QueryOptions()
        if not options.enabled:
            return
        task = self._in_flight.get(entry.key)
        if task is not None and task in self._unstarted:
            return
        logger.debug("Background refetch for %s", serialize_key(entry.key))
        self._start_fetch(entry, entry.fetcher, options)

    def _start_fetch(
        self,
        entry: Entry,
        fetcher: Fetcher,
        options: QueryOptions,
    ) -> asyncio.Task[None]:
        entry.generation += 1
        task = asyncio.get_running_loop().create_task(
            self._run_fetch(entry, fetcher, options, entry.generation)
        )
        self._in_flight[entry.key] = task
        self._background_tasks.add(task)
        self._unstarted.add(task)
        task.add_done_callback(self._background_tasks.discard)
        task.add_done_callback(lambda t, key=entry.key: self._fetch_done(key, t))
        self._cache.mark(entry.key, Status.FETCHING)
        return task

    def _fetch_done(self, key: Key, task: asyncio.Task[None]) -> None:
        self._unstarted.discard(task)
        if self._in_flight.get(key) is task:
            del self._in_flight[key]

    def _is_current(self, entry: Entry, generation: int) -> bool:
        return self._cache.peek(entry.key) is entry and entry.generation == generation

    async def _run_fetch(
        self,
        entry: Entry,
        fetcher: Fetcher,
        options: QueryOptions,
        generation: int,
    ) -> None:
        self._unstarted.discard(asyncio.current_task())  # type: ignore[arg-type]
        invalidations = entry.invalidations
        key = entry.key
        label = f"fetch {serialize_key(key)}"
        policy = options.retry or self._retry
        try:
            value = await policy.run(fetcher, auth=self._auth, label=label)
        except asyncio.CancelledError:
            if self._is_current(entry, generation):
                entry.invalidated = True
                self._cache.mark(key, Status.SUCCESS if entry.has_value else Status.IDLE)
            raise
        except Exception as e:
            if not self._is_current(entry, generation):
                logger.debug("Discarded failure of superseded %s: %s", label, e)
                return
            logger.warning("%s failed: %s", label, e)
            self._cache.mark(key, Status.ERROR, error=e)
            return

        if not self._is_current(entry, generation):
            logger.debug("Discarded result of superseded %s", label)
            return
        # Invalidated while in flight: keep the value but leave it stale
        self._cache.set(
            key, value, Status.SUCCESS, stale=entry.invalidations != invalidations
        )


class QueryObserver(Generic[T]):
    """Observable result of a query.

    Usage:
        observer = executor.query(("product", "42"), fetch_product)
        product = await observer                  # waits for the fetch
        stop = observer.subscribe(render)         # render(QueryResult)
        observer.set_key(("product", "43"))       # switch keys
        observer.close()
    """

    def __init__(
        self,
        executor: QueryExecutor,
        key: Key,
        fetcher: Fetcher,
        options: QueryOptions,
    ) -> None:
        self._executor = executor
        self._cache = executor.cache
        self._key = key
        self._fetcher = fetcher
        self._options = options
        self._listeners: dict[int, Callable[[QueryResult[T]], None]] = {}
        self._ids = itertools.count(1)
        self._unsubscribe: Callable[[], None] | None = None
        self._previous: QueryResult[T] | None = None
        self._closed = False
        self._remove_cancel: Callable[[], None] | None = None
        if options.cancel_token is not None:
            self._remove_cancel = options.cancel_token.add_callback(self._on_cancel)
        executor.ensure(key, fetcher, options)

    @property
    def key(self) -> Key:
        return self._key

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def result(self) -> QueryResult[T]:
        """Current state of the observed key."""
        entry = self._cache.peek(self._key)
        if entry is None:
            return QueryResult(key=self._key, value=None, status=Status.IDLE)
        previous = self._previous
        if (
            previous is not None
            and not entry.has_value
            and self._options.keep_previous_on_key_change
        ):
            status = entry.status
            if status is Status.IDLE:
                status = Status.FETCHING
            return QueryResult(
                key=self._key,
                value=previous.value,
                status=status,
                error=entry.error,
                updated_at=previous.updated_at,
                is_stale=True,
                is_previous_data=True,
            )
        return QueryResult(
            key=self._key,
            value=entry.value if entry.has_value else None,
            status=entry.status,
            error=entry.error,
            updated_at=entry.updated_at,
            is_stale=not entry.is_fresh(self._executor.stale_time_for(self._options)),
        )

    def subscribe(self, callback: Callable[[QueryResult[T]], None]) -> Callable[[], None]:
        """Receive a :class:`QueryResult` on every change.

        The first subscriber registers this observer with the cache, which
        keeps the entry alive and makes it eligible for background refetch.
        """
        if self._closed:
            raise RuntimeError("Observer is closed")
        sub_id = next(self._ids)
        self._listeners[sub_id] = callback
        if self._unsubscribe is None:
            self._unsubscribe = self._cache.subscribe(self._key, self._on_entry_change)

        def unsubscribe() -> None:
            if self._listeners.pop(sub_id, None) is not None and not self._listeners:
                self._detach()

        return unsubscribe

    def set_key(self, key: Any, fetcher: Fetcher | None = None) -> None:
        """Observe a different key (e.g. the next page)."""
        key = as_key(key)
        if key == self._key:
            return
        current = self.result
        if current.value is not None:
            self._previous = current
        attached = self._unsubscribe is not None
        self._detach()
        self._key = key
        if fetcher is not None:
            self._fetcher = fetcher
        if attached:
            self._unsubscribe = self._cache.subscribe(key, self._on_entry_change)
        self._executor.ensure(key, self._fetcher, self._options)
        self._emit()

    async def refetch(self) -> T | None:
        """Fetch again regardless of freshness and return the value."""
        self._executor.refetch(self._key, self._fetcher, self._options)
        return await self._wait()

    def close(self) -> None:
        """Stop observing. In-flight fetches keep running."""
        if self._closed:
            return
        self._closed = True
        self._listeners.clear()
        self._detach()
        if self._remove_cancel is not None:
            self._remove_cancel()
            self._remove_cancel = None

    def __await__(self) -> Generator[Any, None, T | None]:
        return self._wait().__await__()

    async def __aenter__(self) -> QueryObserver[T]:
        return self

    async def __aexit__(self, *args: object) -> None:
        self.close()

    # -------------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------------

    async def _wait(self) -> T | None:
        entry = await self._executor.wait(self._key)
        token = self._options.cancel_token
        if token is not None and token.cancelled:
            raise RequestCancelledError(token.reason or "Query cancelled")
        return _value_or_raise(entry)

    def _detach(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def _on_entry_change(self, entry: Entry) -> None:
        self._emit()

    def _emit(self) -> None:
        if not self._listeners:
            return
        result = self.result
        for callback in list(self._listeners.values()):
            callback(result)

    def _on_cancel(self) -> None:
        self._executor.cancel(exact(self._key))
        self.close()

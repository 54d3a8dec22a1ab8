"""Resource client - the consumer-facing entry point."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any, TypeVar

from converge.auth import AuthProvider
from converge.cache import Entry, ResourceCache
from converge.config import ClientConfig
from converge.keys import as_key, to_predicate
from converge.mutation import Mutation, MutationExecutor
from converge.query import Fetcher, QueryExecutor, QueryObserver
from converge.retry import RetryPolicy
from converge.transport.base import Transport
from converge.types import Key, KeyMatcher, MutationConfig, QueryOptions, Status

P = TypeVar("P")
R = TypeVar("R")

logger = logging.getLogger(__name__)


class ResourceClient:
    """Queries, mutations and cache control over one :class:`ResourceCache`.

    Construct one per application (or per test) and pass it to the code
    that needs it; there is no global instance.

    Usage:
        client = create_client(stale_time="1m")
        observer = client.query(("product", "42"), fetch_product)
        product = await observer
        await client.mutate(payload, MutationConfig(writer=save, ...))
    """

    def __init__(
        self,
        *,
        config: ClientConfig | None = None,
        cache: ResourceCache | None = None,
        retry: RetryPolicy | None = None,
        auth: AuthProvider | None = None,
        transport: Transport | None = None,
    ) -> None:
        self._config = config or ClientConfig()
        self._cache = cache or ResourceCache(gc_time=self._config.gc_time)
        self._retry = retry or RetryPolicy(
            max_attempts=self._config.retry_attempts,
            base_delay=self._config.retry_base_delay,
            max_delay=self._config.retry_max_delay,
        )
        self._auth = auth
        self._transport = transport
        self._queries = QueryExecutor(
            self._cache,
            stale_time=self._config.stale_time,
            retry=self._retry,
            auth=auth,
        )
        self._mutations = MutationExecutor(
            self._cache,
            retry=self._retry,
            auth=auth,
            queue_timeout=self._config.mutation_queue_timeout,
        )

    @property
    def config(self) -> ClientConfig:
        return self._config

    @property
    def cache(self) -> ResourceCache:
        return self._cache

    @property
    def retry(self) -> RetryPolicy:
        return self._retry

    @property
    def auth(self) -> AuthProvider | None:
        return self._auth

    @property
    def transport(self) -> Transport:
        if self._transport is None:
            raise RuntimeError("Client was created without a transport")
        return self._transport

    # -------------------------------------------------------------------------
    # Read path
    # -------------------------------------------------------------------------

    def query(
        self,
        key: Any,
        fetcher: Fetcher,
        options: QueryOptions | None = None,
    ) -> QueryObserver[Any]:
        """Observe ``key``; the cached value is served while refreshing."""
        return self._queries.query(key, fetcher, options)

    async def fetch(
        self,
        key: Any,
        fetcher: Fetcher,
        options: QueryOptions | None = None,
    ) -> Any:
        """Return the value for ``key`` without subscribing to it."""
        return await self._queries.fetch(key, fetcher, options)

    async def prefetch(
        self,
        key: Any,
        fetcher: Fetcher,
        options: QueryOptions | None = None,
    ) -> None:
        """Warm the cache for ``key`` (e.g. the next page)."""
        await self._queries.prefetch(key, fetcher, options)

    def refetch(self, matcher: KeyMatcher) -> list[Key]:
        """Refetch every matching key that has a registered fetcher."""
        keys = [entry.key for entry in self._cache.find(matcher) if entry.fetcher is not None]
        for key in keys:
            self._queries.refetch(key)
        return keys

    def cancel_queries(self, matcher: KeyMatcher) -> list[Key]:
        """Cancel in-flight fetches for matching keys."""
        return self._queries.cancel(to_predicate(matcher))

    # -------------------------------------------------------------------------
    # Write path
    # -------------------------------------------------------------------------

    async def mutate(self, payload: P, config: MutationConfig[P, R]) -> R:
        """Apply, write, then commit or roll back. Returns the writer's result."""
        return await self._mutations.mutate(payload, config)

    def submit(self, payload: P, config: MutationConfig[P, R]) -> Mutation[P, R]:
        """Schedule a mutation and return its awaitable record."""
        return self._mutations.submit(payload, config)

    # -------------------------------------------------------------------------
    # Cache access
    # -------------------------------------------------------------------------

    def subscribe(self, key: Any, callback: Callable[[Entry], None]) -> Callable[[], None]:
        return self._cache.subscribe(as_key(key), callback)

    def invalidate(self, matcher: KeyMatcher) -> list[Key]:
        """Mark matching keys stale; subscribed ones refetch in background."""
        if not callable(matcher):
            matcher = as_key(matcher)
        return self._cache.invalidate(matcher)

    def get_query_data(self, key: Any) -> Any | None:
        entry = self._cache.peek(as_key(key))
        if entry is None or not entry.has_value:
            return None
        return entry.value

    def set_query_data(self, key: Any, value: Any) -> Any:
        """Write a value directly. ``value`` may be an updater ``old -> new``."""
        key = as_key(key)
        if callable(value):
            value = value(self.get_query_data(key))
        self._cache.set(key, value, Status.SUCCESS)
        return value

    def clear(self) -> None:
        """Drop every cached entry."""
        self._cache.clear()

    async def aclose(self) -> None:
        """Settle submitted mutations, stop background fetches."""
        await self._mutations.aclose()
        await self._queries.aclose()
        aclose = getattr(self._transport, "aclose", None)
        if aclose is not None:
            await aclose()

    async def __aenter__(self) -> ResourceClient:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.aclose()


def create_client(
    *,
    base_url: str | None = None,
    auth: AuthProvider | None = None,
    transport: Transport | None = None,
    retry: RetryPolicy | None = None,
    **settings: Any,
) -> ResourceClient:
    """Create a resource client.

    Args:
        base_url: When given without ``transport``, an httpx-backed
            :class:`~converge.transport.http.HttpTransport` is created.
        auth: Bearer-token provider used by transports and 401 handling.
        transport: Transport used by :class:`~converge.resource.RestResource`.
        retry: Retry policy overriding the ``retry_*`` settings.
        **settings: Any :class:`ClientConfig` field.

    Returns:
        ResourceClient with its own cache.
    """
    config = ClientConfig(base_url=base_url or "", **settings)
    if transport is None and config.base_url:
        from converge.transport.http import HttpTransport

        transport = HttpTransport(
            config.base_url,
            auth=auth,
            timeout=config.request_timeout,
            headers=config.headers,
        )
    return ResourceClient(config=config, retry=retry, auth=auth, transport=transport)


__all__ = ["ResourceClient", "create_client"]

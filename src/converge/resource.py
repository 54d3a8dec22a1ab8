"""RestResource - one REST collection exposed through the cache.

Keys used by a resource named ``"customers"``::

    ("customers",)                                   every key of the resource
    ("customers", "list", "page", 1, "page_size", 20) one page
    ("customers", "detail", "42")                    one item

Writes update cached pages and the detail entry optimistically, then
invalidate the whole resource so every page converges on server state.
"""

from __future__ import annotations

import uuid
from typing import Any

from converge.client import ResourceClient
from converge.keys import make_key
from converge.query import Fetcher, QueryObserver
from converge.types import Key, MutationConfig, QueryOptions, Request


class RestResource:
    """A REST collection with list/detail queries and optimistic writes.

    Args:
        client: Client providing the cache and transport.
        name: Resource name, the first element of every key.
        path: Collection path, defaults to ``/<name>``.
        id_field: Item field holding the identifier.
        page_size: Default page size for ``list()``.
        items_field: For list responses shaped like ``{"products": [...],
            "totalCount": 3}``, the field holding the items. ``None`` when
            the server returns a bare list.
        total_field: Field of a wrapped list response holding the total item
            count, used for page metadata.
        options: Default query options for this resource.
    """

    def __init__(
        self,
        client: ResourceClient,
        name: str,
        *,
        path: str | None = None,
        id_field: str = "id",
        page_size: int = 20,
        items_field: str | None = None,
        total_field: str | None = "totalCount",
        options: QueryOptions | None = None,
    ) -> None:
        self._client = client
        self.name = name
        self.path = (path or f"/{name}").rstrip("/")
        self._id_field = id_field
        self._page_size = page_size
        self._items_field = items_field
        self._total_field = total_field
        self._options = options

    # -------------------------------------------------------------------------
    # Keys
    # -------------------------------------------------------------------------

    def all_key(self) -> Key:
        return (self.name,)

    def list_key(self, page: int = 1, page_size: int | None = None, **filters: Any) -> Key:
        return make_key(
            self.name,
            "list",
            page=page,
            page_size=page_size or self._page_size,
            **filters,
        )

    def detail_key(self, id: Any) -> Key:
        return (self.name, "detail", str(id))

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def list(
        self,
        page: int = 1,
        *,
        page_size: int | None = None,
        options: QueryOptions | None = None,
        **filters: Any,
    ) -> QueryObserver[Any]:
        size = page_size or self._page_size
        return self._client.query(
            self.list_key(page, size, **filters),
            self.list_fetcher(page, size, **filters),
            options or self._options,
        )

    async def prefetch_page(
        self,
        page: int,
        *,
        page_size: int | None = None,
        **filters: Any,
    ) -> None:
        size = page_size or self._page_size
        await self._client.prefetch(
            self.list_key(page, size, **filters),
            self.list_fetcher(page, size, **filters),
            self._options,
        )

    async def prefetch_next(
        self,
        page: int,
        *,
        page_size: int | None = None,
        **filters: Any,
    ) -> bool:
        """Prefetch ``page + 1`` if the cached ``page`` says there is one."""
        if not self.has_next_page(page, page_size, **filters):
            return False
        await self.prefetch_page(page + 1, page_size=page_size, **filters)
        return True

    # -------------------------------------------------------------------------
    # Pagination
    # -------------------------------------------------------------------------

    def total_count(
        self, page: int = 1, page_size: int | None = None, **filters: Any
    ) -> int | None:
        """Total item count reported by a cached page, if any."""
        entry = self._client.cache.peek(self.list_key(page, page_size, **filters))
        if entry is None or not entry.has_value:
            return None
        value = entry.value
        if self._total_field is None or not isinstance(value, dict):
            return None
        total = value.get(self._total_field)
        if isinstance(total, bool) or not isinstance(total, int):
            return None
        return total

    def has_next_page(
        self, page: int, page_size: int | None = None, **filters: Any
    ) -> bool:
        """False until ``page`` is cached with a total count."""
        total = self.total_count(page, page_size, **filters)
        if total is None:
            return False
        return page * (page_size or self._page_size) < total

    def has_previous_page(self, page: int) -> bool:
        return page > 1

    def get(self, id: Any, *, options: QueryOptions | None = None) -> QueryObserver[Any]:
        return self._client.query(
            self.detail_key(id), self.detail_fetcher(id), options or self._options
        )

    def list_fetcher(self, page: int, page_size: int, **filters: Any) -> Fetcher:
        params = {"page": page, "pageSize": page_size, **filters}

        async def fetch() -> Any:
            response = await self._client.transport.send(
                Request("GET", self.path, params=params)
            )
            return response.data

        return fetch

    def detail_fetcher(self, id: Any) -> Fetcher:
        async def fetch() -> Any:
            response = await self._client.transport.send(
                Request("GET", f"{self.path}/{id}")
            )
            return response.data

        return fetch

    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------

    async def create(
        self,
        payload: dict[str, Any],
        *,
        idempotency_key: str | None = None,
    ) -> Any:
        """POST a new item, shown at the top of cached pages until confirmed.

        Creates are not retried unless ``idempotency_key`` is given.
        """
        temp_id = f"optimistic-{uuid.uuid4().hex}"

        def prepend(current: Any, body: dict[str, Any]) -> Any:
            if not self._is_collection(current):
                return None
            item = {**body, self._id_field: temp_id}
            return self._with_items(current, [item, *self._items(current)])

        def reconcile(key: Key, optimistic: Any, result: Any) -> Any:
            if result is None:
                return optimistic
            return self._replace_item(optimistic, temp_id, result)

        async def writer(body: dict[str, Any]) -> Any:
            response = await self._client.transport.send(
                Request("POST", self.path, json=body, idempotency_key=idempotency_key)
            )
            return response.data

        return await self._client.mutate(
            payload,
            MutationConfig(
                writer=writer,
                target_keys=self._cached_list_keys(),
                invalidate_keys=[self.all_key()],
                optimistic_updater=prepend,
                reconcile=reconcile,
                idempotency_key=idempotency_key,
            ),
        )

    async def update(self, id: Any, changes: dict[str, Any]) -> Any:
        """PUT changes to one item; detail and cached pages update at once."""

        def merge(current: Any, body: dict[str, Any]) -> Any:
            if current is None:
                return None
            if self._is_collection(current):
                items = [
                    {**item, **body} if self._matches(item, id) else item
                    for item in self._items(current)
                ]
                return self._with_items(current, items)
            return {**current, **body}

        def reconcile(key: Key, optimistic: Any, result: Any) -> Any:
            if result is None:
                return optimistic
            if self._is_collection(optimistic):
                return self._replace_item(optimistic, id, result)
            return result

        async def writer(body: dict[str, Any]) -> Any:
            response = await self._client.transport.send(
                Request("PUT", f"{self.path}/{id}", json=body)
            )
            return response.data

        return await self._client.mutate(
            changes,
            MutationConfig(
                writer=writer,
                target_keys=[self.detail_key(id), *self._cached_list_keys()],
                invalidate_keys=[self.all_key()],
                optimistic_updater=merge,
                reconcile=reconcile,
                idempotent=True,
            ),
        )

    async def delete(self, id: Any) -> Any:
        """DELETE one item; it disappears from cached pages at once."""

        def remove(current: Any, _: Any) -> Any:
            if not self._is_collection(current):
                return None
            items = [item for item in self._items(current) if not self._matches(item, id)]
            return self._with_items(current, items)

        async def writer(_: Any) -> Any:
            response = await self._client.transport.send(
                Request("DELETE", f"{self.path}/{id}")
            )
            return response.data

        return await self._client.mutate(
            id,
            MutationConfig(
                writer=writer,
                target_keys=self._cached_list_keys(),
                invalidate_keys=[self.all_key()],
                optimistic_updater=remove,
                reconcile=lambda key, optimistic, result: optimistic,
                idempotent=True,
            ),
        )

    # -------------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------------

    def _cached_list_keys(self) -> list[Key]:
        return [
            entry.key
            for entry in self._client.cache.find((self.name, "list"))
            if entry.has_value
        ]

    def _is_collection(self, value: Any) -> bool:
        if self._items_field is None:
            return isinstance(value, list)
        return isinstance(value, dict) and isinstance(value.get(self._items_field), list)

    def _items(self, value: Any) -> list[Any]:
        if self._items_field is None:
            return list(value)
        return list(value[self._items_field])

    def _with_items(self, value: Any, items: list[Any]) -> Any:
        if self._items_field is None:
            return items
        return {**value, self._items_field: items}

    def _matches(self, item: Any, id: Any) -> bool:
        return isinstance(item, dict) and str(item.get(self._id_field)) == str(id)

    def _replace_item(self, collection: Any, id: Any, item: Any) -> Any:
        if not self._is_collection(collection):
            return collection
        items = [item if self._matches(i, id) else i for i in self._items(collection)]
        return self._with_items(collection, items)

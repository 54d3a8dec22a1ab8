"""Resource cache - keyed entries, change notification and optimistic snapshots.

The cache is the single mutable structure shared by the query and mutation
executors. Every method here is synchronous: nothing suspends mid-write, so
each operation is atomic with respect to every other cache operation on the
event loop.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from collections import deque
from collections.abc import Awaitable, Callable, Iterator
from dataclasses import dataclass
from typing import Any

from converge.duration import parse_duration
from converge.errors import ConflictError
from converge.keys import serialize_key, to_predicate
from converge.types import Duration, Key, KeyMatcher, QueryOptions, Status

logger = logging.getLogger(__name__)

Listener = Callable[["Entry"], None]
RefetchHandler = Callable[["Entry"], None]


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True, slots=True)
class SnapshotToken:
    """State captured by ``begin_optimistic``, used to roll back."""

    key: Key
    id: int
    value: Any
    had_value: bool
    updated_at: int
    optimistic_value: Any


@dataclass(slots=True)
class Entry:
    """Cache record for one key."""

    key: Key
    value: Any = None
    has_value: bool = False
    status: Status = Status.IDLE
    error: BaseException | None = None
    snapshot: SnapshotToken | None = None
    superseded: bool = False
    updated_at: int = 0
    subscriber_count: int = 0
    invalidated: bool = False
    invalidations: int = 0
    generation: int = 0
    fetcher: Callable[[], Awaitable[Any]] | None = None
    options: QueryOptions | None = None

    def is_fresh(self, stale_time_ms: int) -> bool:
        """Fresh entries are served without a refetch."""
        if self.status is not Status.SUCCESS or not self.has_value:
            return False
        if self.invalidated:
            return False
        return _now_ms() - self.updated_at < stale_time_ms


class ResourceCache:
    """In-memory keyed store of query results.

    Entries with no subscribers are evicted ``gc_time`` after they were last
    released. Eviction timers need a running event loop; entries created
    outside one are kept until ``collect()`` is called.
    """

    def __init__(self, *, gc_time: Duration = "5m") -> None:
        self._entries: dict[Key, Entry] = {}
        self._listeners: dict[Key, dict[int, Listener]] = {}
        self._queue: deque[Key] = deque()
        self._notifying = False
        self._gc_time = parse_duration(gc_time)
        self._gc_handles: dict[Key, asyncio.TimerHandle] = {}
        self._ids = itertools.count(1)
        self._refetch: RefetchHandler | None = None

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get(self, key: Key) -> Entry:
        """Return the entry for ``key``, creating an idle one if absent."""
        entry = self._entries.get(key)
        if entry is None:
            entry = Entry(key=key)
            self._entries[key] = entry
            logger.debug("Created entry %s", serialize_key(key))
            self._schedule_gc(entry)
        return entry

    def peek(self, key: Key) -> Entry | None:
        """Return the entry for ``key`` without creating it."""
        return self._entries.get(key)

    def keys(self) -> list[Key]:
        return list(self._entries)

    def find(self, matcher: KeyMatcher) -> list[Entry]:
        """Entries whose key matches a predicate or key prefix."""
        predicate = to_predicate(matcher)
        return [entry for key, entry in self._entries.items() if predicate(key)]

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[Key]:
        return iter(list(self._entries))

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def set(
        self,
        key: Key,
        value: Any,
        status: Status = Status.SUCCESS,
        *,
        error: BaseException | None = None,
        stale: bool = False,
    ) -> Entry:
        """Replace value and status, then notify subscribers.

        A write to a key with an outstanding optimistic snapshot supersedes
        it: that mutation can no longer roll the key back. ``stale`` keeps
        the entry invalidated, for values read before the last invalidation.
        """
        entry = self.get(key)
        if entry.snapshot is not None and not entry.superseded:
            logger.debug(
                "Write to %s supersedes snapshot %d",
                serialize_key(key),
                entry.snapshot.id,
            )
            entry.superseded = True
        self._write(entry, value, status, error, stale=stale)
        return entry

    def mark(
        self,
        key: Key,
        status: Status,
        *,
        error: BaseException | None = None,
    ) -> Entry:
        """Change status only; the value is kept (stale-while-error)."""
        entry = self.get(key)
        entry.status = status
        entry.error = error if status is Status.ERROR else None
        self._notify(key)
        return entry

    def subscribe(self, key: Key, callback: Listener) -> Callable[[], None]:
        """Register for change notifications on ``key``.

        Returns an idempotent function that removes the subscription.
        """
        entry = self.get(key)
        entry.subscriber_count += 1
        self._cancel_gc(key)
        sub_id = next(self._ids)
        self._listeners.setdefault(key, {})[sub_id] = callback
        active = True

        def unsubscribe() -> None:
            nonlocal active
            if not active:
                return
            active = False
            listeners = self._listeners.get(key)
            if listeners is not None:
                listeners.pop(sub_id, None)
                if not listeners:
                    del self._listeners[key]
            if self._entries.get(key) is entry:
                entry.subscriber_count -= 1
                if entry.subscriber_count == 0:
                    self._schedule_gc(entry)

        return unsubscribe

    def invalidate(self, matcher: KeyMatcher) -> list[Key]:
        """Mark matching entries stale and refetch the subscribed ones.

        ``matcher`` is a predicate or a key prefix. Values are kept. Keys
        with an outstanding optimistic snapshot are only flagged; they are
        refetched once the snapshot settles.
        """
        matched = self.find(matcher)
        for entry in matched:
            entry.invalidated = True
            entry.invalidations += 1
            if entry.snapshot is None and entry.status in (Status.SUCCESS, Status.ERROR):
                entry.status = Status.IDLE
                entry.error = None
            self._notify(entry.key)
        for entry in matched:
            if entry.subscriber_count > 0 and entry.snapshot is None:
                self._request_refetch(entry)
        if matched:
            logger.debug("Invalidated %d entries", len(matched))
        return [entry.key for entry in matched]

    # -------------------------------------------------------------------------
    # Optimistic writes
    # -------------------------------------------------------------------------

    def begin_optimistic(self, key: Key, value: Any) -> SnapshotToken:
        """Capture the current value and write ``value`` speculatively.

        Raises:
            ConflictError: another optimistic write on ``key`` is outstanding.
        """
        entry = self.get(key)
        if entry.snapshot is not None:
            raise ConflictError(key)
        token = SnapshotToken(
            key=key,
            id=next(self._ids),
            value=entry.value,
            had_value=entry.has_value,
            updated_at=entry.updated_at,
            optimistic_value=value,
        )
        # A fetch in flight now would land on top of the optimistic value
        pending = entry.invalidated or entry.status is Status.FETCHING
        entry.generation += 1
        entry.snapshot = token
        entry.superseded = False
        self._write(entry, value, Status.SUCCESS)
        entry.invalidated = pending
        logger.debug("Snapshot %d taken for %s", token.id, serialize_key(key))
        return token

    def commit_optimistic(self, key: Key, token: SnapshotToken, final_value: Any) -> bool:
        """Clear the snapshot and write the confirmed value.

        Returns False, leaving the value alone, when the token is no longer
        the active one or a newer write superseded it.
        """
        entry = self._entries.get(key)
        if entry is None or entry.snapshot is not token:
            logger.debug("Commit of inactive snapshot %d ignored", token.id)
            return False
        entry.snapshot = None
        pending = entry.invalidated
        committed = not entry.superseded
        if committed:
            self._write(entry, final_value, Status.SUCCESS)
        else:
            pending = True
            self._notify(key)
        entry.superseded = False
        entry.invalidated = pending
        if pending and entry.subscriber_count > 0:
            self._request_refetch(entry)
        return committed

    def rollback_optimistic(
        self,
        key: Key,
        token: SnapshotToken,
        error: BaseException | None = None,
    ) -> bool:
        """Restore the pre-mutation value and flag the entry as errored.

        If a newer write superseded the snapshot the value is left as is
        and no error state is recorded. Returns whether the value was
        restored.
        """
        entry = self._entries.get(key)
        if entry is None or entry.snapshot is not token:
            logger.debug("Rollback of inactive snapshot %d ignored", token.id)
            return False
        entry.snapshot = None
        restored = not entry.superseded
        entry.superseded = False
        if restored:
            entry.value = token.value
            entry.has_value = token.had_value
            entry.updated_at = token.updated_at
            entry.status = Status.ERROR
            entry.error = error
            logger.warning("Rolled back %s to snapshot %d", serialize_key(key), token.id)
        elif entry.status is Status.ERROR:
            entry.status = Status.SUCCESS if entry.has_value else Status.IDLE
            entry.error = None
        self._notify(key)
        if entry.invalidated and entry.subscriber_count > 0:
            self._request_refetch(entry)
        return restored

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def bind_refetch(self, handler: RefetchHandler | None) -> None:
        """Register the callable that performs background refetches."""
        self._refetch = handler

    def remove(self, key: Key) -> None:
        """Drop an entry and its subscriptions."""
        self._cancel_gc(key)
        self._entries.pop(key, None)
        self._listeners.pop(key, None)

    def clear(self) -> None:
        """Drop every entry; existing subscriptions are detached."""
        for handle in self._gc_handles.values():
            handle.cancel()
        self._gc_handles.clear()
        self._entries.clear()
        self._listeners.clear()
        self._queue.clear()

    def collect(self) -> list[Key]:
        """Evict every entry that is eligible right now."""
        evicted = [key for key, entry in self._entries.items() if self._evictable(entry)]
        for key in evicted:
            self.remove(key)
        return evicted

    # -------------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------------

    def _write(
        self,
        entry: Entry,
        value: Any,
        status: Status,
        error: BaseException | None = None,
        *,
        stale: bool = False,
    ) -> None:
        entry.value = value
        entry.has_value = True
        entry.status = status
        entry.error = error if status is Status.ERROR else None
        entry.updated_at = _now_ms()
        if status is Status.SUCCESS:
            entry.invalidated = stale
        self._notify(entry.key)

    def _notify(self, key: Key) -> None:
        """Deliver notifications in order; nested writes are queued."""
        self._queue.append(key)
        if self._notifying:
            return
        self._notifying = True
        try:
            while self._queue:
                current = self._queue.popleft()
                entry = self._entries.get(current)
                listeners = self._listeners.get(current)
                if entry is None or not listeners:
                    continue
                for listener in list(listeners.values()):
                    try:
                        listener(entry)
                    except Exception:
                        logger.exception(
                            "Subscriber for %s raised", serialize_key(current)
                        )
        finally:
            self._notifying = False

    def _request_refetch(self, entry: Entry) -> None:
        if self._refetch is not None:
            self._refetch(entry)

    def _evictable(self, entry: Entry) -> bool:
        return (
            entry.subscriber_count == 0
            and entry.snapshot is None
            and entry.status is not Status.FETCHING
        )

    def _schedule_gc(self, entry: Entry) -> None:
        self._cancel_gc(entry.key)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._gc_handles[entry.key] = loop.call_later(
            self._gc_time / 1000, self._collect_one, entry.key
        )

    def _cancel_gc(self, key: Key) -> None:
        handle = self._gc_handles.pop(key, None)
        if handle is not None:
            handle.cancel()

    def _collect_one(self, key: Key) -> None:
        self._gc_handles.pop(key, None)
        entry = self._entries.get(key)
        if entry is None or entry.subscriber_count > 0:
            return
        if not self._evictable(entry):
            self._schedule_gc(entry)
            return
        del self._entries[key]
        self._listeners.pop(key, None)
        logger.debug("Evicted %s", serialize_key(key))

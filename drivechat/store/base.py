"""Document store contract shared by the in-memory and MongoDB backends.

Writes are expressed as targeted field updates keyed by dotted paths
(``"unread_count.u2"``). Values may be plain data or one of the sentinels
below, which the backend resolves at write time:

- ``SERVER_TIMESTAMP``: the store's clock, never the caller's.
- ``DELETE_FIELD``: remove the field.
- ``Increment(n)``: atomic numeric increment against the stored value.

Queries return plain dicts with the document id under ``"id"``. ``watch``
turns a query into a live :class:`Subscription` that re-runs it whenever the
collection changes.
"""

import asyncio
import inspect
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Set, Tuple, Union

from drivechat.core.exceptions import PermissionDeniedError, TransientStoreError


logger = logging.getLogger(__name__)


class _Sentinel:

    def __init__(self, name: str) -> None:
        self._name = name

    def __repr__(self) -> str:
        return self._name


SERVER_TIMESTAMP = _Sentinel("SERVER_TIMESTAMP")
DELETE_FIELD = _Sentinel("DELETE_FIELD")


@dataclass(frozen=True)
class Increment:
    amount: int = 1


_MISSING = object()

FILTER_OPS = ("==", "!=", "<", "<=", ">", ">=", "in", "array_contains")


@dataclass(frozen=True)
class Filter:
    field: str
    op: str
    value: Any

    def __post_init__(self) -> None:
        if self.op not in FILTER_OPS:
            raise ValueError(f"Unsupported filter operator: {self.op}")

    def matches(self, doc: Dict[str, Any]) -> bool:
        current = get_path(doc, self.field, _MISSING)
        if current is _MISSING:
            return False
        if self.op == "==":
            return current == self.value
        if self.op == "!=":
            return current != self.value
        if self.op == "in":
            return current in self.value
        if self.op == "array_contains":
            return isinstance(current, list) and self.value in current
        try:
            if self.op == "<":
                return current < self.value
            if self.op == "<=":
                return current <= self.value
            if self.op == ">":
                return current > self.value
            return current >= self.value
        except TypeError:
            return False


def get_path(doc: Dict[str, Any], path: str, default: Any = None) -> Any:
    current: Any = doc
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return default
        current = current[part]
    return current


def set_path(doc: Dict[str, Any], path: str, value: Any) -> None:
    parts = path.split(".")
    current = doc
    for part in parts[:-1]:
        nxt = current.get(part)
        if not isinstance(nxt, dict):
            nxt = {}
            current[part] = nxt
        current = nxt
    current[parts[-1]] = value


def delete_path(doc: Dict[str, Any], path: str) -> None:
    parts = path.split(".")
    current = doc
    for part in parts[:-1]:
        current = current.get(part)
        if not isinstance(current, dict):
            return
    current.pop(parts[-1], None)


def contains_sentinel(value: Any) -> bool:
    if isinstance(value, (_Sentinel, Increment)):
        return True
    if isinstance(value, dict):
        return any(contains_sentinel(v) for v in value.values())
    return False


async def maybe_await(result: Any) -> None:
    if inspect.isawaitable(result):
        await result


Snapshot = List[Dict[str, Any]]
SnapshotCallback = Callable[[Snapshot], Union[None, Awaitable[None]]]
OrderBy = Optional[Tuple[str, bool]]


class Subscription:
    """Live query handle. Every subscription must be closed exactly once.

    The callback receives the full current result on subscribe and again
    whenever a change to the watched collection alters that result. A store
    or change-feed failure degrades to an empty result; transient failures are
    retried with capped backoff and the current state is emitted on recovery.
    """

    def __init__(
        self,
        store: "DocumentStore",
        collection: str,
        filters: Sequence[Filter],
        callback: SnapshotCallback,
        order_by: OrderBy = None,
        limit: Optional[int] = None,
    ) -> None:
        self._store = store
        self.collection = collection
        self._filters = list(filters)
        self._callback = callback
        self._order_by = order_by
        self._limit = limit
        self._lock = asyncio.Lock()
        self._listener = None
        self._retry_task: Optional[asyncio.Task] = None
        self._failures = 0
        self._emitted = False
        self._last: Optional[Snapshot] = None
        self.closed = False

    async def open(self) -> "Subscription":
        self._store._register(self)
        if await self._attach():
            await self.refresh()
        else:
            await self._emit([])
            self._schedule_retry()
        return self

    async def _attach(self) -> bool:
        try:
            self._listener = await self._store.feed.listen(self.collection, self.refresh)
        except TransientStoreError:
            logger.warning("Change feed for %s unavailable; retrying", self.collection, exc_info=True)
            return False
        return True

    async def refresh(self) -> None:
        if self.closed:
            return
        async with self._lock:
            if self.closed:
                return
            try:
                docs = await self._store.find(
                    self.collection, self._filters, order_by=self._order_by, limit=self._limit
                )
            except PermissionDeniedError:
                logger.warning("Subscription on %s denied; treating as empty", self.collection)
                await self._emit([])
                return
            except TransientStoreError:
                logger.warning("Subscription on %s failed; retrying", self.collection, exc_info=True)
                if not self._emitted:
                    await self._emit([])
                self._schedule_retry()
                return
            self._failures = 0
            await self._emit(docs)

    async def _emit(self, docs: Snapshot) -> None:
        # a change elsewhere in the collection re-runs the query with the same result
        if self._emitted and docs == self._last:
            return
        self._emitted = True
        self._last = docs
        try:
            await maybe_await(self._callback(docs))
        except Exception:
            logger.exception("Subscription callback on %s raised", self.collection)

    def _schedule_retry(self) -> None:
        if self._retry_task is not None and not self._retry_task.done():
            return
        delay = min(
            self._store.retry_base_seconds * (2 ** self._failures),
            self._store.retry_max_seconds,
        )
        self._failures += 1
        self._retry_task = asyncio.create_task(self._retry_after(delay))

    async def _retry_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        self._retry_task = None
        if self.closed:
            return
        if self._listener is None and not await self._attach():
            self._schedule_retry()
            return
        await self.refresh()

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self._retry_task is not None:
            self._retry_task.cancel()
            self._retry_task = None
        if self._listener is not None:
            await self._listener.close()
            self._listener = None
        self._store._unregister(self)

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()


class DocumentStore(ABC):

    retry_base_seconds = 1.0
    retry_max_seconds = 30.0

    def __init__(self, feed) -> None:
        self.feed = feed
        self._subscriptions: Set[Subscription] = set()

    @property
    def live_subscriptions(self) -> int:
        return len(self._subscriptions)

    def _register(self, subscription: Subscription) -> None:
        self._subscriptions.add(subscription)

    def _unregister(self, subscription: Subscription) -> None:
        self._subscriptions.discard(subscription)

    @abstractmethod
    async def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    async def set(self, collection: str, doc_id: str, data: Dict[str, Any]) -> None:
        """Create or overwrite the whole document."""

    @abstractmethod
    async def create(self, collection: str, doc_id: str, data: Dict[str, Any]) -> bool:
        """Insert only if ``doc_id`` is absent, atomically.

        Returns False and leaves the stored document untouched when it
        already exists.
        """

    @abstractmethod
    async def add(self, collection: str, data: Dict[str, Any]) -> str:
        """Insert with a store-generated id and return it."""

    @abstractmethod
    async def update(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> None:
        """Targeted update; raises NotFoundError when the document is absent."""

    @abstractmethod
    async def update_many(self, collection: str, filters: Sequence[Filter], fields: Dict[str, Any]) -> int:
        ...

    @abstractmethod
    async def delete(self, collection: str, doc_id: str) -> bool:
        ...

    @abstractmethod
    async def delete_many(self, collection: str, filters: Sequence[Filter]) -> int:
        ...

    @abstractmethod
    async def find(
        self,
        collection: str,
        filters: Sequence[Filter] = (),
        order_by: OrderBy = None,
        limit: Optional[int] = None,
    ) -> Snapshot:
        """``order_by`` is ``(field, descending)``."""

    async def ensure_index(self, collection: str, keys: List[Tuple[str, int]]) -> None:
        return

    async def watch(
        self,
        collection: str,
        filters: Sequence[Filter],
        callback: SnapshotCallback,
        order_by: OrderBy = None,
        limit: Optional[int] = None,
    ) -> Subscription:
        subscription = Subscription(self, collection, filters, callback, order_by=order_by, limit=limit)
        return await subscription.open()

    async def _notify(self, collection: str) -> None:
        try:
            await self.feed.publish(collection)
        except TransientStoreError:
            logger.warning("Change notification for %s was not published", collection, exc_info=True)

    async def close(self) -> None:
        for subscription in list(self._subscriptions):
            await subscription.close()
        await self.feed.close()

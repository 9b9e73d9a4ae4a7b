import copy
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Sequence, Tuple

from drivechat.core.exceptions import NotFoundError
from drivechat.store.base import (
    DELETE_FIELD,
    SERVER_TIMESTAMP,
    DocumentStore,
    Filter,
    Increment,
    OrderBy,
    Snapshot,
    delete_path,
    get_path,
    set_path,
)
from drivechat.utils.realtime_bus import LocalBus


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryDocumentStore(DocumentStore):
    """Process-local store for development and tests.

    Mutations never await between read and write, so increments are atomic
    with respect to other coroutines.
    """

    def __init__(self, feed=None, clock: Callable[[], datetime] = _utcnow) -> None:
        super().__init__(feed or LocalBus())
        self._clock = clock
        self._last_ts: Optional[datetime] = None
        self._seq = 0
        # collection -> id -> (insertion seq, document)
        self._collections: Dict[str, Dict[str, Tuple[int, Dict[str, Any]]]] = {}

    def _server_now(self) -> datetime:
        now = self._clock()
        if self._last_ts is not None and now < self._last_ts:
            now = self._last_ts
        self._last_ts = now
        return now

    def _resolve(self, value: Any, now: datetime) -> Any:
        if value is SERVER_TIMESTAMP:
            return now
        if isinstance(value, Increment):
            return value.amount
        if isinstance(value, dict):
            return {k: self._resolve(v, now) for k, v in value.items() if v is not DELETE_FIELD}
        return copy.deepcopy(value)

    def _apply(self, doc: Dict[str, Any], fields: Dict[str, Any], now: datetime) -> None:
        for path, value in fields.items():
            if value is DELETE_FIELD:
                delete_path(doc, path)
            elif isinstance(value, Increment):
                current = get_path(doc, path, 0)
                if not isinstance(current, (int, float)):
                    current = 0
                set_path(doc, path, current + value.amount)
            else:
                set_path(doc, path, self._resolve(value, now))

    def _table(self, collection: str) -> Dict[str, Tuple[int, Dict[str, Any]]]:
        return self._collections.setdefault(collection, {})

    @staticmethod
    def _public(doc_id: str, doc: Dict[str, Any]) -> Dict[str, Any]:
        out = copy.deepcopy(doc)
        out["id"] = doc_id
        return out

    async def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        entry = self._table(collection).get(doc_id)
        if entry is None:
            return None
        return self._public(doc_id, entry[1])

    async def set(self, collection: str, doc_id: str, data: Dict[str, Any]) -> None:
        table = self._table(collection)
        seq = table[doc_id][0] if doc_id in table else self._next_seq()
        table[doc_id] = (seq, self._resolve(data, self._server_now()))
        await self._notify(collection)

    async def create(self, collection: str, doc_id: str, data: Dict[str, Any]) -> bool:
        table = self._table(collection)
        if doc_id in table:
            return False
        table[doc_id] = (self._next_seq(), self._resolve(data, self._server_now()))
        await self._notify(collection)
        return True

    async def add(self, collection: str, data: Dict[str, Any]) -> str:
        doc_id = uuid.uuid4().hex
        self._table(collection)[doc_id] = (self._next_seq(), self._resolve(data, self._server_now()))
        await self._notify(collection)
        return doc_id

    async def update(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> None:
        entry = self._table(collection).get(doc_id)
        if entry is None:
            raise NotFoundError(collection, doc_id)
        self._apply(entry[1], fields, self._server_now())
        await self._notify(collection)

    async def update_many(self, collection: str, filters: Sequence[Filter], fields: Dict[str, Any]) -> int:
        now = self._server_now()
        count = 0
        for _, doc in self._table(collection).values():
            if all(f.matches(doc) for f in filters):
                self._apply(doc, fields, now)
                count += 1
        if count:
            await self._notify(collection)
        return count

    async def delete(self, collection: str, doc_id: str) -> bool:
        removed = self._table(collection).pop(doc_id, None) is not None
        if removed:
            await self._notify(collection)
        return removed

    async def delete_many(self, collection: str, filters: Sequence[Filter]) -> int:
        table = self._table(collection)
        doomed = [doc_id for doc_id, (_, doc) in table.items() if all(f.matches(doc) for f in filters)]
        for doc_id in doomed:
            del table[doc_id]
        if doomed:
            await self._notify(collection)
        return len(doomed)

    async def find(
        self,
        collection: str,
        filters: Sequence[Filter] = (),
        order_by: OrderBy = None,
        limit: Optional[int] = None,
    ) -> Snapshot:
        rows = [
            (seq, doc_id, doc)
            for doc_id, (seq, doc) in self._table(collection).items()
            if all(f.matches(doc) for f in filters)
        ]
        if order_by is not None:
            field, descending = order_by
            # documents without the field trail in either direction
            missing = [row for row in rows if get_path(row[2], field) is None]
            rows = [row for row in rows if get_path(row[2], field) is not None]
            rows.sort(key=lambda row: (get_path(row[2], field), row[0]), reverse=descending)
            rows.extend(missing)
        else:
            rows.sort(key=lambda row: row[0])
        if limit is not None:
            rows = rows[:limit]
        return [self._public(doc_id, doc) for _, doc_id, doc in rows]

    def _next_seq(self) -> int:
        self._seq += 1
        return self._seq

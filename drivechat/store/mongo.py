from contextlib import contextmanager
from typing import Any, Dict, List, Optional, Sequence, Tuple

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import ConnectionFailure, DuplicateKeyError, OperationFailure

from drivechat.core.exceptions import NotFoundError, PermissionDeniedError, TransientStoreError
from drivechat.store.base import (
    DELETE_FIELD,
    SERVER_TIMESTAMP,
    DocumentStore,
    Filter,
    Increment,
    OrderBy,
    Snapshot,
    contains_sentinel,
)

UNAUTHORIZED = 13

_OPERATORS = {"!=": "$ne", "<": "$lt", "<=": "$lte", ">": "$gt", ">=": "$gte", "in": "$in"}


@contextmanager
def _mongo_errors():
    try:
        yield
    except OperationFailure as exc:
        if exc.code == UNAUTHORIZED:
            raise PermissionDeniedError(str(exc)) from exc
        raise
    except ConnectionFailure as exc:
        raise TransientStoreError(str(exc)) from exc


def _flatten(path: str, value: Any, out: Dict[str, Any]) -> None:
    # Only dicts holding sentinels are split into dotted paths; a plain dict is set whole.
    if isinstance(value, dict) and contains_sentinel(value):
        for key, inner in value.items():
            _flatten(f"{path}.{key}", inner, out)
    else:
        out[path] = value


def build_update(fields: Dict[str, Any]) -> Dict[str, Dict[str, Any]]:
    flat: Dict[str, Any] = {}
    for path, value in fields.items():
        _flatten(path, value, flat)
    update: Dict[str, Dict[str, Any]] = {}
    for path, value in flat.items():
        if value is DELETE_FIELD:
            update.setdefault("$unset", {})[path] = ""
        elif value is SERVER_TIMESTAMP:
            update.setdefault("$currentDate", {})[path] = {"$type": "date"}
        elif isinstance(value, Increment):
            update.setdefault("$inc", {})[path] = value.amount
        else:
            update.setdefault("$set", {})[path] = value
    return update


def build_query(filters: Sequence[Filter]) -> Dict[str, Any]:
    clauses: List[Dict[str, Any]] = []
    for f in filters:
        if f.op in ("==", "array_contains"):
            clauses.append({f.field: f.value})
        elif f.op == "!=":
            clauses.append({f.field: {"$ne": f.value, "$exists": True}})
        else:
            clauses.append({f.field: {_OPERATORS[f.op]: f.value}})
    if not clauses:
        return {}
    if len(clauses) == 1:
        return clauses[0]
    return {"$and": clauses}


def build_replacement(data: Dict[str, Any]) -> Dict[str, Any]:
    """Aggregation expression for a whole document, evaluated by the server.

    Leaves go through ``$literal`` so strings starting with ``$`` stay data.
    """
    expr: Dict[str, Any] = {}
    for key, value in data.items():
        if value is DELETE_FIELD:
            continue
        if value is SERVER_TIMESTAMP:
            expr[key] = "$$NOW"
        elif isinstance(value, Increment):
            expr[key] = {"$literal": value.amount}
        elif isinstance(value, dict) and value:
            expr[key] = build_replacement(value)
        else:
            expr[key] = {"$literal": value}
    return expr


def build_set_pipeline(doc_id: str, data: Dict[str, Any]) -> List[Dict[str, Any]]:
    return [{"$replaceWith": {**build_replacement(data), "_id": {"$literal": doc_id}}}]


def build_create_pipeline(data: Dict[str, Any]) -> List[Dict[str, Any]]:
    # an upserted document starts out holding only _id
    fresh = {"$eq": [{"$size": {"$objectToArray": "$$ROOT"}}, 1]}
    return [{"$replaceWith": {"$cond": [fresh, {**build_replacement(data), "_id": "$_id"}, "$$ROOT"]}}]


def _public(doc: Dict[str, Any]) -> Dict[str, Any]:
    doc["id"] = str(doc.pop("_id"))
    return doc


class MongoDocumentStore(DocumentStore):

    def __init__(self, db: AsyncIOMotorDatabase, feed, client: Optional[AsyncIOMotorClient] = None) -> None:
        super().__init__(feed)
        self._db = db
        self._client = client

    @classmethod
    def connect(cls, url: str, db_name: str, feed) -> "MongoDocumentStore":
        client = AsyncIOMotorClient(url, tz_aware=True)
        return cls(client[db_name], feed, client=client)

    async def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        with _mongo_errors():
            doc = await self._db[collection].find_one({"_id": doc_id})
        return _public(doc) if doc else None

    async def set(self, collection: str, doc_id: str, data: Dict[str, Any]) -> None:
        with _mongo_errors():
            await self._db[collection].update_one({"_id": doc_id}, build_set_pipeline(doc_id, data), upsert=True)
        await self._notify(collection)

    async def create(self, collection: str, doc_id: str, data: Dict[str, Any]) -> bool:
        try:
            with _mongo_errors():
                result = await self._db[collection].update_one(
                    {"_id": doc_id}, build_create_pipeline(data), upsert=True
                )
        except DuplicateKeyError:
            # lost the insert race to a concurrent create
            return False
        if result.upserted_id is None:
            return False
        await self._notify(collection)
        return True

    async def add(self, collection: str, data: Dict[str, Any]) -> str:
        doc_id = str(ObjectId())
        fields = {k: v for k, v in data.items() if v is not DELETE_FIELD}
        with _mongo_errors():
            await self._db[collection].update_one({"_id": doc_id}, build_update(fields), upsert=True)
        await self._notify(collection)
        return doc_id

    async def update(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> None:
        with _mongo_errors():
            result = await self._db[collection].update_one({"_id": doc_id}, build_update(fields))
        if not result.matched_count:
            raise NotFoundError(collection, doc_id)
        await self._notify(collection)

    async def update_many(self, collection: str, filters: Sequence[Filter], fields: Dict[str, Any]) -> int:
        with _mongo_errors():
            result = await self._db[collection].update_many(build_query(filters), build_update(fields))
        if result.modified_count:
            await self._notify(collection)
        return result.modified_count or 0

    async def delete(self, collection: str, doc_id: str) -> bool:
        with _mongo_errors():
            result = await self._db[collection].delete_one({"_id": doc_id})
        if result.deleted_count:
            await self._notify(collection)
        return bool(result.deleted_count)

    async def delete_many(self, collection: str, filters: Sequence[Filter]) -> int:
        with _mongo_errors():
            result = await self._db[collection].delete_many(build_query(filters))
        if result.deleted_count:
            await self._notify(collection)
        return result.deleted_count or 0

    async def find(
        self,
        collection: str,
        filters: Sequence[Filter] = (),
        order_by: OrderBy = None,
        limit: Optional[int] = None,
    ) -> Snapshot:
        cursor = self._db[collection].find(build_query(filters))
        if order_by is not None:
            field, descending = order_by
            direction = DESCENDING if descending else ASCENDING
            cursor = cursor.sort([(field, direction), ("_id", direction)])
        if limit is not None:
            cursor = cursor.limit(limit)
        with _mongo_errors():
            items = await cursor.to_list(length=limit)
        return [_public(it) for it in items]

    async def ensure_index(self, collection: str, keys: List[Tuple[str, int]]) -> None:
        with _mongo_errors():
            await self._db[collection].create_index(keys)

    async def close(self) -> None:
        await super().close()
        if self._client is not None:
            self._client.close()

from typing import Any, Callable, Dict, List, Sequence

from pymongo import ASCENDING, DESCENDING

from drivechat.models.message import Message
from drivechat.store.base import SERVER_TIMESTAMP, DocumentStore, Filter, Subscription, maybe_await


DEFAULT_WINDOW = 100


class MessageRepository:

    collection = "messages"

    def __init__(self, store: DocumentStore) -> None:
        self._store = store

    async def ensure_indexes(self) -> None:
        await self._store.ensure_index(self.collection, [("conversation_id", ASCENDING), ("timestamp", DESCENDING)])
        await self._store.ensure_index(self.collection, [("receiver_id", ASCENDING), ("read", ASCENDING)])

    async def append(self, message: Dict[str, Any]) -> str:
        doc = dict(message)
        doc["timestamp"] = SERVER_TIMESTAMP
        doc.setdefault("read", False)
        doc.setdefault("edited", False)
        return await self._store.add(self.collection, doc)

    async def recent(self, conversation_id: str, limit: int = DEFAULT_WINDOW) -> List[Message]:
        docs = await self._store.find(
            self.collection,
            [Filter("conversation_id", "==", conversation_id)],
            order_by=("timestamp", True),
            limit=limit,
        )
        # newest-first from the store, oldest-first for readers
        return [Message.from_document(d) for d in reversed(docs)]

    async def subscribe(
        self,
        conversation_id: str,
        callback: Callable[[List[Message]], Any],
        window: int = DEFAULT_WINDOW,
    ) -> Subscription:
        async def deliver(docs):
            await maybe_await(callback([Message.from_document(d) for d in reversed(docs)]))

        return await self._store.watch(
            self.collection,
            [Filter("conversation_id", "==", conversation_id)],
            deliver,
            order_by=("timestamp", True),
            limit=window,
        )

    async def mark_range_read(self, conversation_id: str, receiver_id: str) -> int:
        return await self._store.update_many(
            self.collection,
            [
                Filter("conversation_id", "==", conversation_id),
                Filter("receiver_id", "==", receiver_id),
                Filter("read", "==", False),
            ],
            {"read": True},
        )

    async def search(self, conversation_ids: Sequence[str], term: str, limit: int = 20) -> List[Message]:
        if not conversation_ids or not term:
            return []
        needle = term.lower()
        docs = await self._store.find(
            self.collection,
            [Filter("conversation_id", "in", list(conversation_ids))],
            order_by=("timestamp", True),
        )
        hits: List[Message] = []
        for doc in docs:
            if needle in (doc.get("body") or "").lower():
                hits.append(Message.from_document(doc))
                if len(hits) >= limit:
                    break
        return hits

    async def delete_for_conversation(self, conversation_id: str) -> int:
        return await self._store.delete_many(self.collection, [Filter("conversation_id", "==", conversation_id)])

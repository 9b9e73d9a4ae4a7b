import logging
from typing import Any, Callable, Dict, List, Optional

from pymongo import ASCENDING, DESCENDING

from drivechat.core.exceptions import NotFoundError
from drivechat.models.conversation import Conversation, Participant, VehicleContext
from drivechat.store.base import SERVER_TIMESTAMP, DocumentStore, Filter, Increment, Subscription, maybe_await
from drivechat.utils.identity import canonical_conversation_id


logger = logging.getLogger(__name__)


class ConversationRepository:

    collection = "conversations"

    def __init__(self, store: DocumentStore) -> None:
        self._store = store

    async def ensure_indexes(self) -> None:
        await self._store.ensure_index(self.collection, [("participant_ids", ASCENDING)])
        await self._store.ensure_index(self.collection, [("updated_at", DESCENDING)])

    async def create_or_get(
        self,
        user_a: Participant,
        user_b: Participant,
        vehicle_context: Optional[VehicleContext] = None,
    ) -> str:
        if user_a.id == user_b.id:
            raise ValueError("A conversation needs two different participants")
        conversation_id = canonical_conversation_id(user_a.id, user_b.id)
        doc: Dict[str, Any] = {
            "participants": {
                p.id: {"name": p.name, "role": p.role, "last_seen": SERVER_TIMESTAMP}
                for p in (user_a, user_b)
            },
            "participant_ids": sorted([user_a.id, user_b.id]),
            "last_message": {"text": "", "sender_id": "", "timestamp": SERVER_TIMESTAMP, "type": "text"},
            "unread_count": {user_a.id: 0, user_b.id: 0},
            "created_at": SERVER_TIMESTAMP,
            "updated_at": SERVER_TIMESTAMP,
        }
        if vehicle_context is not None:
            doc["vehicle_context"] = vehicle_context.model_dump()
        if await self._store.create(self.collection, conversation_id, doc):
            logger.info("Conversation created", extra={"conversation_id": conversation_id})
        return conversation_id

    async def get(self, conversation_id: str) -> Conversation:
        doc = await self._store.get(self.collection, conversation_id)
        if not doc:
            raise NotFoundError(self.collection, conversation_id)
        return Conversation.from_document(doc)

    async def record_sent_message(self, conversation_id: str, sender_id: str, receiver_id: str, summary: Dict[str, Any]) -> None:
        await self._store.update(
            self.collection,
            conversation_id,
            {
                "last_message": {
                    "text": summary.get("text", ""),
                    "sender_id": sender_id,
                    "timestamp": SERVER_TIMESTAMP,
                    "type": summary.get("type", "text"),
                },
                "updated_at": SERVER_TIMESTAMP,
                f"unread_count.{receiver_id}": Increment(1),
            },
        )

    async def mark_read(self, conversation_id: str, user_id: str) -> None:
        await self._store.update(
            self.collection,
            conversation_id,
            {
                f"unread_count.{user_id}": 0,
                f"participants.{user_id}.last_seen": SERVER_TIMESTAMP,
            },
        )

    async def list_for_user(self, user_id: str, limit: Optional[int] = None) -> List[Conversation]:
        docs = await self._store.find(
            self.collection,
            [Filter("participant_ids", "array_contains", user_id)],
            order_by=("updated_at", True),
            limit=limit,
        )
        return [Conversation.from_document(d) for d in docs]

    async def subscribe_for_user(self, user_id: str, callback: Callable[[List[Conversation]], Any]) -> Subscription:
        async def deliver(docs):
            await maybe_await(callback([Conversation.from_document(d) for d in docs]))

        return await self._store.watch(
            self.collection,
            [Filter("participant_ids", "array_contains", user_id)],
            deliver,
            order_by=("updated_at", True),
        )

    async def delete(self, conversation_id: str) -> bool:
        return await self._store.delete(self.collection, conversation_id)

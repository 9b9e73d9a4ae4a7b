from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from drivechat.models.presence import VISIBLE_STATUSES, PresenceRecord, PresenceStatus
from drivechat.store.base import SERVER_TIMESTAMP, DocumentStore, Filter, Subscription, maybe_await


def effective_status(record: PresenceRecord, now: datetime, heartbeat_interval: float) -> PresenceStatus:
    """Stored status, unless the heartbeat has been silent for two intervals."""
    if record.status == "offline":
        return "offline"
    if record.last_seen is None:
        return "offline"
    if now - record.last_seen > timedelta(seconds=2 * heartbeat_interval):
        return "offline"
    return record.status


class PresenceRepository:

    collection = "presence"

    def __init__(self, store: DocumentStore, heartbeat_interval: float = 30.0) -> None:
        self._store = store
        self.heartbeat_interval = heartbeat_interval

    async def publish(self, user_id: str, name: str, role: Optional[str] = None) -> None:
        doc: Dict[str, Any] = {
            "user_id": user_id,
            "name": name,
            "status": "online",
            "last_seen": SERVER_TIMESTAMP,
            "connected_at": SERVER_TIMESTAMP,
        }
        if role:
            doc["role"] = role
        await self._store.set(self.collection, user_id, doc)

    async def set_status(self, user_id: str, status: PresenceStatus, **extra: Any) -> None:
        fields: Dict[str, Any] = {"status": status, "last_seen": SERVER_TIMESTAMP}
        fields.update(extra)
        await self._store.update(self.collection, user_id, fields)

    async def touch(self, user_id: str) -> None:
        await self._store.update(self.collection, user_id, {"last_seen": SERVER_TIMESTAMP})

    async def get(self, user_id: str) -> Optional[PresenceRecord]:
        doc = await self._store.get(self.collection, user_id)
        return PresenceRecord.from_document(doc) if doc else None

    async def subscribe_online_users(
        self,
        exclude_user_id: str,
        callback: Callable[[List[PresenceRecord]], Any],
    ) -> Subscription:
        async def deliver(docs):
            now = datetime.now(timezone.utc)
            users = [
                record
                for record in (PresenceRecord.from_document(d) for d in docs)
                if record.user_id != exclude_user_id
                and effective_status(record, now, self.heartbeat_interval) != "offline"
            ]
            await maybe_await(callback(users))

        return await self._store.watch(
            self.collection,
            [Filter("status", "in", list(VISIBLE_STATUSES))],
            deliver,
            order_by=("last_seen", True),
        )

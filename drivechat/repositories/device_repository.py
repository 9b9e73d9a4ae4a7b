from typing import List, Optional

from drivechat.models.device import Device
from drivechat.store.base import SERVER_TIMESTAMP, DocumentStore, Filter


class DeviceRepository:

    collection = "devices"

    def __init__(self, store: DocumentStore) -> None:
        self._store = store

    async def register(self, user_id: str, platform: str, token: str) -> Device:
        # one record per (platform, token); re-registering just refreshes it
        doc_id = f"{platform}:{token}"
        await self._store.set(
            self.collection,
            doc_id,
            {"user_id": user_id, "platform": platform, "token": token, "last_seen_at": SERVER_TIMESTAMP},
        )
        return Device(id=doc_id, user_id=user_id, platform=platform, token=token)

    async def get_tokens(self, user_id: str, platform: Optional[str] = None) -> List[Device]:
        filters = [Filter("user_id", "==", user_id)]
        if platform:
            filters.append(Filter("platform", "==", platform))
        docs = await self._store.find(self.collection, filters, limit=100)
        return [Device.model_validate(d) for d in docs]

import asyncio
import logging
from typing import Any, Dict, List, Optional

from pyfcm import FCMNotification

from drivechat.models.notification import Notification, Priority
from drivechat.repositories.device_repository import DeviceRepository
from drivechat.store.base import SERVER_TIMESTAMP, DocumentStore


logger = logging.getLogger(__name__)


class NoopPush:

    enabled = False

    async def send(self, tokens: List[str], title: str, body: str, data: Optional[Dict[str, str]] = None) -> None:
        return


class FcmPush:

    enabled = True

    def __init__(self, service_account_file: str, project_id: str) -> None:
        self._client = FCMNotification(service_account_file=service_account_file, project_id=project_id)

    async def send(self, tokens: List[str], title: str, body: str, data: Optional[Dict[str, str]] = None) -> None:
        for token in tokens:
            # pyfcm is sync
            try:
                await asyncio.to_thread(
                    self._client.notify,
                    fcm_token=token,
                    notification_title=title,
                    notification_body=body,
                    data_payload=data or {},
                )
            except Exception:
                logger.warning("FCM push to a device failed", exc_info=True)


def create_push(service_account_file: str, project_id: str):
    if service_account_file and project_id:
        return FcmPush(service_account_file, project_id)
    return NoopPush()


class NotificationDispatcher:
    """Stores a notification for the in-app inbox and pushes it to the user's devices."""

    collection = "notifications"

    def __init__(self, store: DocumentStore, push=None) -> None:
        self._store = store
        self._devices = DeviceRepository(store)
        self._push = push or NoopPush()

    async def dispatch(
        self,
        recipient_id: str,
        title: str,
        body: str,
        priority: Priority = "medium",
        action_url: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        type: str = "message",
    ) -> str:
        notification = Notification(
            user_id=recipient_id,
            type=type,
            title=title,
            body=body,
            priority=priority,
            action_url=action_url,
            metadata=metadata or {},
        )
        doc = notification.model_dump(exclude={"id", "timestamp"})
        doc["timestamp"] = SERVER_TIMESTAMP
        notification_id = await self._store.add(self.collection, doc)
        if self._push.enabled:
            tokens = await self._devices.get_tokens(recipient_id, platform="fcm")
            data = {k: str(v) for k, v in (metadata or {}).items()}
            if action_url:
                data["action_url"] = action_url
            await self._push.send([d.token for d in tokens], title, body, data)
        return notification_id

import asyncio

import pytest
from pydantic import ValidationError

from drivechat.models.notification import Notification
from drivechat.repositories.device_repository import DeviceRepository
from drivechat.utils.notifications import FcmPush, NoopPush, NotificationDispatcher, create_push


class RecordingPush:

    enabled = True

    def __init__(self):
        self.sent = []

    async def send(self, tokens, title, body, data=None):
        self.sent.append((tokens, title, body, data))


def test_create_push_needs_credentials():
    assert isinstance(create_push("", ""), NoopPush)
    assert isinstance(create_push("service-account.json", ""), NoopPush)
    assert FcmPush.enabled


def test_dispatch_stores_inbox_entry(store, real_dispatcher):
    async def scenario():
        notification_id = await real_dispatcher.dispatch(
            "u2", title="New message from Alice", body="Hi", action_url="/messages?conversation=u1_u2"
        )
        return await store.get("notifications", notification_id)

    doc = asyncio.run(scenario())
    notification = Notification.model_validate(doc)
    assert notification.user_id == "u2"
    assert notification.type == "message"
    assert notification.priority == "medium"
    assert notification.read is False
    assert notification.timestamp is not None


def test_dispatch_pushes_to_registered_devices(store):
    push = RecordingPush()
    dispatcher = NotificationDispatcher(store, push)
    devices = DeviceRepository(store)

    async def scenario():
        await devices.register("u2", "fcm", "tok-a")
        await devices.register("u2", "fcm", "tok-a")
        await devices.register("u2", "webpush", "sub-1")
        await devices.register("u1", "fcm", "tok-other")
        await dispatcher.dispatch(
            "u2",
            title="New message from Alice",
            body="Hi",
            action_url="/messages?conversation=u1_u2",
            metadata={"conversation_id": "u1_u2"},
        )

    asyncio.run(scenario())
    assert len(push.sent) == 1
    tokens, title, body, data = push.sent[0]
    assert tokens == ["tok-a"]
    assert data == {"conversation_id": "u1_u2", "action_url": "/messages?conversation=u1_u2"}


def test_dispatch_rejects_unknown_priority(store, real_dispatcher):
    async def scenario():
        with pytest.raises(ValidationError):
            await real_dispatcher.dispatch("u2", title="New message", body="Hi", priority="urgent")
        return await store.find("notifications")

    assert asyncio.run(scenario()) == []

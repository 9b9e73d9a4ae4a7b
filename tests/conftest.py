"""Shared fixtures: a fresh in-memory store and service wiring per test."""

import pytest

from drivechat.models.conversation import Participant
from drivechat.repositories.conversation_repository import ConversationRepository
from drivechat.repositories.message_repository import MessageRepository
from drivechat.repositories.presence_repository import PresenceRepository
from drivechat.repositories.typing_repository import TypingRepository
from drivechat.services.chat_service import ChatService
from drivechat.store.memory import InMemoryDocumentStore
from drivechat.utils.notifications import NotificationDispatcher


class RecordingDispatcher:
    def __init__(self, fail: bool = False):
        self.calls = []
        self.fail = fail

    async def dispatch(self, recipient_id, **payload):
        self.calls.append((recipient_id, payload))
        if self.fail:
            raise RuntimeError("push backend down")
        return "n1"


@pytest.fixture()
def store() -> InMemoryDocumentStore:
    return InMemoryDocumentStore()


@pytest.fixture()
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture()
def chat(store, dispatcher) -> ChatService:
    return ChatService(
        MessageRepository(store),
        ConversationRepository(store),
        TypingRepository(store, stale_after=6.0),
        dispatcher=dispatcher,
    )


@pytest.fixture()
def presence_repo(store) -> PresenceRepository:
    return PresenceRepository(store, heartbeat_interval=30.0)


@pytest.fixture()
def alice() -> Participant:
    return Participant(id="u1", name="Alice", role="driver")


@pytest.fixture()
def bob() -> Participant:
    return Participant(id="u2", name="Bob", role="owner")


@pytest.fixture()
def real_dispatcher(store) -> NotificationDispatcher:
    return NotificationDispatcher(store)

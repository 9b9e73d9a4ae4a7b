import asyncio
from datetime import datetime, timedelta, timezone

from drivechat.core.exceptions import PermissionDeniedError, TransientStoreError
from drivechat.repositories.message_repository import MessageRepository
from drivechat.services.chat_service import ChatService
from drivechat.store.base import Filter
from drivechat.store.memory import InMemoryDocumentStore
from drivechat.utils.realtime_bus import LocalBus


def _message(cid, body, sender="u1", receiver="u2"):
    return {
        "conversation_id": cid,
        "sender_id": sender,
        "sender_name": sender,
        "sender_role": "driver",
        "receiver_id": receiver,
        "receiver_name": receiver,
        "body": body,
        "type": "text",
    }


def test_history_is_ascending_and_windowed(store):
    repo = MessageRepository(store)

    async def scenario():
        for i in range(8):
            await repo.append(_message("u1_u2", f"m{i}"))
        await repo.append(_message("u1_u3", "elsewhere", receiver="u3"))
        return await repo.recent("u1_u2", limit=3)

    window = asyncio.run(scenario())
    # only the newest three, oldest first
    assert [m.body for m in window] == ["m5", "m6", "m7"]
    stamps = [m.timestamp for m in window]
    assert stamps == sorted(stamps)


def test_server_time_never_goes_backwards():
    start = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
    ticks = iter([start, start - timedelta(seconds=5), start + timedelta(seconds=1), start - timedelta(hours=1)])
    store = InMemoryDocumentStore(clock=lambda: next(ticks))
    repo = MessageRepository(store)

    async def scenario():
        for body in ("a", "b", "c", "d"):
            await repo.append(_message("u1_u2", body))
        return await repo.recent("u1_u2")

    history = asyncio.run(scenario())
    assert [m.body for m in history] == ["a", "b", "c", "d"]
    assert [m.timestamp for m in history] == [start, start, start + timedelta(seconds=1), start + timedelta(seconds=1)]


def test_subscription_tracks_new_messages(chat, store, alice, bob):
    snapshots = []

    async def scenario():
        cid = await chat.create_or_get_conversation(alice, bob)
        sub = await chat.subscribe_messages(cid, snapshots.append)
        await asyncio.gather(*(chat.send_message(cid, alice, bob, f"m{i}") for i in range(5)))
        await chat.send_message(cid, bob, alice, "reply")
        await store.feed.drain()
        await sub.close()
        await ChatService.wait_for_background()

    asyncio.run(scenario())
    assert snapshots[0] == []
    latest = snapshots[-1]
    assert len(latest) == 6
    assert latest[-1].body == "reply"
    stamps = [m.timestamp for m in latest]
    assert stamps == sorted(stamps)
    assert store.live_subscriptions == 0


def test_closed_subscription_stops_delivering(chat, store, alice, bob):
    snapshots = []

    async def scenario():
        cid = await chat.create_or_get_conversation(alice, bob)
        sub = await chat.subscribe_messages(cid, snapshots.append)
        await sub.close()
        await sub.close()
        await chat.send_message(cid, alice, bob, "nobody listening")
        await store.feed.drain()
        await ChatService.wait_for_background()

    asyncio.run(scenario())
    assert snapshots == [[]]
    assert store.live_subscriptions == 0


def test_many_subscriptions_all_released(chat, store, alice, bob):
    async def scenario():
        cid = await chat.create_or_get_conversation(alice, bob)
        subs = []
        for _ in range(10):
            subs.append(await chat.subscribe_messages(cid, lambda msgs: None))
            subs.append(await chat.subscribe_conversations_for_user("u1", lambda convs: None))
            subs.append(await chat.subscribe_typing(cid, "u1", lambda signals: None))
        assert store.live_subscriptions == 30
        for sub in subs:
            await sub.close()

    asyncio.run(scenario())
    assert store.live_subscriptions == 0
    assert store.feed._listeners == {}


class FlakyStore(InMemoryDocumentStore):

    retry_base_seconds = 0.01
    retry_max_seconds = 0.05

    def __init__(self, failure, feed=None):
        super().__init__(feed=feed)
        self.failure = failure
        self.failures_left = 0

    async def find(self, collection, filters=(), order_by=None, limit=None):
        if self.failures_left:
            self.failures_left -= 1
            raise self.failure("find failed")
        return await super().find(collection, filters, order_by=order_by, limit=limit)


def test_denied_query_degrades_to_empty():
    store = FlakyStore(PermissionDeniedError)
    repo = MessageRepository(store)
    snapshots = []

    async def scenario():
        await repo.append(_message("u1_u2", "hidden"))
        store.failures_left = 1
        sub = await repo.subscribe("u1_u2", snapshots.append)
        await sub.close()

    asyncio.run(scenario())
    assert snapshots == [[]]


def test_transient_failure_is_retried():
    store = FlakyStore(TransientStoreError)
    repo = MessageRepository(store)
    snapshots = []

    async def scenario():
        await repo.append(_message("u1_u2", "eventually"))
        store.failures_left = 2
        sub = await repo.subscribe("u1_u2", snapshots.append)
        for _ in range(50):
            if snapshots and snapshots[-1]:
                break
            await asyncio.sleep(0.01)
        await sub.close()

    asyncio.run(scenario())
    assert snapshots[0] == []
    assert [m.body for m in snapshots[-1]] == ["eventually"]


class RefusingFeed(LocalBus):
    """Change feed that is down for the first ``refusals`` attach attempts."""

    def __init__(self, refusals=1):
        super().__init__()
        self.refusals = refusals

    async def listen(self, collection, on_change):
        if self.refusals:
            self.refusals -= 1
            raise TransientStoreError("feed unavailable")
        return await super().listen(collection, on_change)


def test_feed_outage_degrades_to_empty_then_reattaches():
    store = FlakyStore(TransientStoreError, feed=RefusingFeed(refusals=2))
    repo = MessageRepository(store)
    snapshots = []

    async def scenario():
        await repo.append(_message("u1_u2", "before"))
        sub = await repo.subscribe("u1_u2", snapshots.append)
        assert snapshots == [[]]
        for _ in range(50):
            if snapshots[-1]:
                break
            await asyncio.sleep(0.01)
        await repo.append(_message("u1_u2", "after"))
        await store.feed.drain()
        await sub.close()

    asyncio.run(scenario())
    assert snapshots[0] == []
    assert [m.body for m in snapshots[-1]] == ["before", "after"]
    assert store.live_subscriptions == 0
    assert store.feed._listeners == {}


def test_writes_to_other_conversations_do_not_refire(chat, store, alice, bob):
    carol = alice.model_copy(update={"id": "u3", "name": "Carol"})
    snapshots = []

    async def scenario():
        cid = await chat.create_or_get_conversation(alice, bob)
        other = await chat.create_or_get_conversation(alice, carol)
        sub = await chat.subscribe_messages(cid, snapshots.append)
        for i in range(3):
            await chat.send_message(other, alice, carol, f"m{i}")
        await store.feed.drain()
        await sub.close()
        await ChatService.wait_for_background()

    asyncio.run(scenario())
    assert snapshots == [[]]


def test_callback_error_does_not_kill_subscription(store):
    repo = MessageRepository(store)
    seen = []

    def callback(messages):
        seen.append(len(messages))
        if len(seen) == 1:
            raise RuntimeError("render failed")

    async def scenario():
        sub = await repo.subscribe("u1_u2", callback)
        await repo.append(_message("u1_u2", "after the error"))
        await store.feed.drain()
        await sub.close()

    asyncio.run(scenario())
    assert seen == [0, 1]


def test_mark_range_read_only_touches_receiver(store):
    repo = MessageRepository(store)

    async def scenario():
        await repo.append(_message("u1_u2", "for bob"))
        await repo.append(_message("u1_u2", "for alice", sender="u2", receiver="u1"))
        changed = await repo.mark_range_read("u1_u2", "u2")
        unread = await store.find("messages", [Filter("read", "==", False)])
        return changed, unread

    changed, unread = asyncio.run(scenario())
    assert changed == 1
    assert [d["body"] for d in unread] == ["for alice"]

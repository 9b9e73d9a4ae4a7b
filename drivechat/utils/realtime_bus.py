import asyncio
import json
import logging
from typing import Awaitable, Callable, Dict, List, Set

import redis.asyncio as redis
from redis.exceptions import ConnectionError as RedisConnectionError

from drivechat.core.exceptions import TransientStoreError


logger = logging.getLogger(__name__)

OnChange = Callable[[], Awaitable[None]]

CHANNEL_PREFIX = "store-changes:"


class LocalBus:
    """Change feed for a single process.

    Listeners run as tasks so a write never waits on subscriber work.
    """

    enabled = False

    def __init__(self) -> None:
        self._listeners: Dict[str, List[OnChange]] = {}
        self._pending: Set[asyncio.Task] = set()

    async def publish(self, collection: str) -> None:
        for on_change in list(self._listeners.get(collection, [])):
            task = asyncio.create_task(on_change())
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

    async def listen(self, collection: str, on_change: OnChange):
        listeners = self._listeners.setdefault(collection, [])
        listeners.append(on_change)
        bus = self

        class _Sub:
            async def close(self_inner):
                try:
                    listeners.remove(on_change)
                except ValueError:
                    pass
                if not listeners:
                    bus._listeners.pop(collection, None)

        return _Sub()

    async def drain(self) -> None:
        """Wait until every scheduled listener run, including ones it triggers, is done."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def close(self) -> None:
        await self.drain()
        self._listeners.clear()


class RedisBus:
    """Change feed shared by every process pointed at the same Redis."""

    enabled = True
    read_retry_seconds = 0.5

    def __init__(self, client: redis.Redis) -> None:
        self._redis = client

    @classmethod
    def from_url(cls, url: str) -> "RedisBus":
        return cls(redis.from_url(url))

    async def publish(self, collection: str) -> None:
        try:
            await self._redis.publish(CHANNEL_PREFIX + collection, json.dumps({"collection": collection}))
        except RedisConnectionError as exc:
            raise TransientStoreError(str(exc)) from exc

    async def listen(self, collection: str, on_change: OnChange):
        channel = CHANNEL_PREFIX + collection
        bus = self
        pubsub = self._redis.pubsub()
        try:
            await pubsub.subscribe(channel)
        except RedisConnectionError as exc:
            raise TransientStoreError(str(exc)) from exc

        class _Sub:
            _running = True

            async def run(self_inner):
                # set after a failed read: changes published meanwhile were lost
                stale = False
                while self_inner._running:
                    try:
                        msg = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
                        if stale or (msg and msg.get("type") == "message"):
                            stale = False
                            await on_change()
                    except asyncio.CancelledError:
                        raise
                    except Exception:
                        logger.warning("Change feed read on %s failed", channel, exc_info=True)
                        stale = True
                        await asyncio.sleep(bus.read_retry_seconds)

            async def close(self_inner):
                self_inner._running = False
                self_inner.task.cancel()
                try:
                    await pubsub.unsubscribe(channel)
                    await pubsub.aclose()
                except RedisConnectionError:
                    logger.warning("Unsubscribe from %s failed", channel, exc_info=True)

        sub = _Sub()
        sub.task = asyncio.create_task(sub.run())
        return sub

    async def drain(self) -> None:
        return

    async def close(self) -> None:
        await self._redis.aclose()


def create_bus(redis_url: str):
    if redis_url:
        return RedisBus.from_url(redis_url)
    return LocalBus()

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, List, Optional, Set

from drivechat.core.exceptions import ChatError
from drivechat.models.typing_signal import TypingSignal
from drivechat.store.base import SERVER_TIMESTAMP, DocumentStore, Filter, Snapshot, Subscription, maybe_await
from drivechat.utils.identity import typing_signal_id


logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TypingSubscription:
    """Typing signals for one conversation minus the caller's own.

    Signals older than ``stale_after`` are dropped, and the view is re-emitted
    when a shown signal ages out, so a client that died mid-composition stops
    showing as typing without anyone deleting its record.
    """

    def __init__(
        self,
        conversation_id: str,
        exclude_user_id: str,
        callback: Callable[[List[TypingSignal]], Any],
        stale_after: float,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.conversation_id = conversation_id
        self._exclude = exclude_user_id
        self._callback = callback
        self._stale_after = timedelta(seconds=stale_after)
        self._clock = clock
        self._signals: List[TypingSignal] = []
        self._expiry: Optional[asyncio.TimerHandle] = None
        self._pending: Set[asyncio.Task] = set()
        self._inner: Optional[Subscription] = None
        self.closed = False

    async def deliver(self, docs: Snapshot) -> None:
        self._signals = [
            TypingSignal.from_document(d) for d in docs if d.get("user_id") != self._exclude
        ]
        await self._emit()

    def _fresh(self) -> List[TypingSignal]:
        cutoff = self._clock() - self._stale_after
        return [s for s in self._signals if s.timestamp is None or s.timestamp > cutoff]

    async def _emit(self) -> None:
        if self.closed:
            return
        fresh = self._fresh()
        self._arm_expiry(fresh)
        try:
            await maybe_await(self._callback(fresh))
        except Exception:
            logger.exception("Typing callback for %s raised", self.conversation_id)

    def _arm_expiry(self, fresh: List[TypingSignal]) -> None:
        if self._expiry is not None:
            self._expiry.cancel()
            self._expiry = None
        stamps = [s.timestamp for s in fresh if s.timestamp is not None]
        if not stamps:
            return
        delay = (min(stamps) + self._stale_after - self._clock()).total_seconds()
        loop = asyncio.get_running_loop()
        self._expiry = loop.call_later(max(delay, 0.0), self._expire)

    def _expire(self) -> None:
        self._expiry = None
        task = asyncio.create_task(self._emit())
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self._expiry is not None:
            self._expiry.cancel()
            self._expiry = None
        for task in list(self._pending):
            task.cancel()
        if self._inner is not None:
            await self._inner.close()

    async def __aenter__(self) -> "TypingSubscription":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()


class TypingRepository:

    collection = "typing"

    def __init__(self, store: DocumentStore, stale_after: float = 6.0) -> None:
        self._store = store
        self._stale_after = stale_after

    async def set_typing(self, conversation_id: str, user_id: str, user_name: Optional[str] = None) -> None:
        try:
            await self._store.set(
                self.collection,
                typing_signal_id(conversation_id, user_id),
                {
                    "conversation_id": conversation_id,
                    "user_id": user_id,
                    "user_name": user_name or "Unknown User",
                    "is_typing": True,
                    "timestamp": SERVER_TIMESTAMP,
                },
            )
        except ChatError:
            logger.warning("Could not set typing for %s in %s", user_id, conversation_id, exc_info=True)

    async def clear_typing(self, conversation_id: str, user_id: str) -> None:
        try:
            await self._store.delete(self.collection, typing_signal_id(conversation_id, user_id))
        except ChatError:
            logger.warning("Could not clear typing for %s in %s", user_id, conversation_id, exc_info=True)

    async def subscribe(
        self,
        conversation_id: str,
        exclude_user_id: str,
        callback: Callable[[List[TypingSignal]], Any],
    ) -> TypingSubscription:
        typing_sub = TypingSubscription(conversation_id, exclude_user_id, callback, self._stale_after)
        typing_sub._inner = await self._store.watch(
            self.collection,
            [Filter("conversation_id", "==", conversation_id), Filter("is_typing", "==", True)],
            typing_sub.deliver,
        )
        return typing_sub

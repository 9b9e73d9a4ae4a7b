"""Per-session presence tracking.

One :class:`PresenceTracker` belongs to one client session. It owns the
heartbeat task and the away timer, so stopping the session stops both.

States driven here::

    start        -> online   (heartbeat begins refreshing last_seen)
    hidden       -> away     (only if still hidden after the grace period)
    visible      -> online   (immediately; pending away timer cancelled)
    stop         -> offline  (heartbeat and timer cancelled)

``busy`` is only ever set explicitly through :meth:`PresenceTracker.set_status`.
Every write is best-effort: a failed presence update is logged and dropped.
"""

import asyncio
import logging
from typing import Any, Callable, List, Optional

from drivechat.core.exceptions import ChatError
from drivechat.models.presence import PresenceRecord, PresenceStatus
from drivechat.repositories.presence_repository import PresenceRepository
from drivechat.store.base import SERVER_TIMESTAMP, Subscription


logger = logging.getLogger(__name__)


class PresenceTracker:

    def __init__(
        self,
        repo: PresenceRepository,
        user_id: str,
        name: str,
        role: Optional[str] = None,
        heartbeat_interval: float = 30.0,
        away_grace: float = 60.0,
    ) -> None:
        self._repo = repo
        self.user_id = user_id
        self.name = name
        self.role = role
        self.heartbeat_interval = heartbeat_interval
        self.away_grace = away_grace
        self.status: PresenceStatus = "offline"
        self.hidden = False
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._away_task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._heartbeat_task is not None

    async def start(self) -> None:
        if self.running:
            return
        self.status = "online"
        self.hidden = False
        try:
            await self._repo.publish(self.user_id, self.name, self.role)
        except ChatError:
            logger.warning("Could not publish presence for %s", self.user_id, exc_info=True)
        self._heartbeat_task = asyncio.create_task(self._heartbeat())
        logger.info("Presence tracking started", extra={"user_id": self.user_id})

    async def _heartbeat(self) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                await self._repo.touch(self.user_id)
            except ChatError:
                logger.warning("Presence heartbeat for %s failed", self.user_id, exc_info=True)

    async def visibility_changed(self, hidden: bool) -> None:
        if not self.running:
            return
        self.hidden = hidden
        if hidden:
            if self._away_task is None:
                self._away_task = asyncio.create_task(self._go_away_later())
            return
        self._cancel_away()
        if self.status != "busy":
            await self._write_status("online")

    async def _go_away_later(self) -> None:
        await asyncio.sleep(self.away_grace)
        self._away_task = None
        if self.hidden and self.status == "online":
            await self._write_status("away")

    def _cancel_away(self) -> None:
        if self._away_task is not None:
            self._away_task.cancel()
            self._away_task = None

    async def set_status(self, status: PresenceStatus, current_activity: Optional[str] = None) -> None:
        if status == "offline":
            await self.stop()
            return
        extra = {"current_activity": current_activity} if current_activity is not None else {}
        await self._write_status(status, **extra)

    async def _write_status(self, status: PresenceStatus, **extra: Any) -> None:
        self.status = status
        try:
            await self._repo.set_status(self.user_id, status, **extra)
        except ChatError:
            logger.warning("Could not set presence %s for %s", status, self.user_id, exc_info=True)

    async def stop(self, publish: bool = True) -> None:
        """Cancel timers; ``publish=False`` leaves the stored record to another live session."""
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            self._heartbeat_task = None
        self._cancel_away()
        if self.status == "offline":
            return
        self.status = "offline"
        if publish:
            try:
                await self._repo.set_status(self.user_id, "offline", disconnected_at=SERVER_TIMESTAMP)
            except ChatError:
                logger.warning("Could not mark %s offline", self.user_id, exc_info=True)
        logger.info("Presence tracking stopped", extra={"user_id": self.user_id})


class PresenceService:
    """Builds trackers for sessions and serves presence reads."""

    def __init__(self, repo: PresenceRepository, heartbeat_interval: float = 30.0, away_grace: float = 60.0) -> None:
        self._repo = repo
        self.heartbeat_interval = heartbeat_interval
        self.away_grace = away_grace

    def tracker(self, user_id: str, name: str, role: Optional[str] = None) -> PresenceTracker:
        return PresenceTracker(
            self._repo,
            user_id,
            name,
            role=role,
            heartbeat_interval=self.heartbeat_interval,
            away_grace=self.away_grace,
        )

    async def start_presence(self, user_id: str, name: str, role: Optional[str] = None) -> PresenceTracker:
        tracker = self.tracker(user_id, name, role)
        await tracker.start()
        return tracker

    async def stop_presence(self, tracker: PresenceTracker) -> None:
        await tracker.stop()

    async def get(self, user_id: str) -> Optional[PresenceRecord]:
        return await self._repo.get(user_id)

    async def subscribe_online_users(
        self, exclude_user_id: str, callback: Callable[[List[PresenceRecord]], Any]
    ) -> Subscription:
        return await self._repo.subscribe_online_users(exclude_user_id, callback)

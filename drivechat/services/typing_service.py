import asyncio
from typing import Optional

from drivechat.repositories.typing_repository import TypingRepository


class TypingDebouncer:
    """Keystroke-driven typing signal for one user in one conversation.

    Every keystroke refreshes the signal and re-arms an idle timer; when the
    timer runs out, or the message is sent, the signal is cleared.
    """

    def __init__(
        self,
        repo: TypingRepository,
        conversation_id: str,
        user_id: str,
        user_name: Optional[str] = None,
        idle_seconds: float = 3.0,
    ) -> None:
        self._repo = repo
        self.conversation_id = conversation_id
        self.user_id = user_id
        self.user_name = user_name
        self.idle_seconds = idle_seconds
        self._idle_task: Optional[asyncio.Task] = None

    @property
    def active(self) -> bool:
        return self._idle_task is not None

    async def keystroke(self) -> None:
        self.cancel()
        await self._repo.set_typing(self.conversation_id, self.user_id, self.user_name)
        self._idle_task = asyncio.create_task(self._clear_when_idle())

    async def _clear_when_idle(self) -> None:
        await asyncio.sleep(self.idle_seconds)
        self._idle_task = None
        await self._repo.clear_typing(self.conversation_id, self.user_id)

    async def sent(self) -> None:
        self.cancel()
        await self._repo.clear_typing(self.conversation_id, self.user_id)

    async def close(self) -> None:
        if self.active:
            await self.sent()

    def cancel(self) -> None:
        if self._idle_task is not None:
            self._idle_task.cancel()
            self._idle_task = None

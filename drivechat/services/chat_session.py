"""One browser session on the chat socket.

The session owns everything that must be released when the socket goes
away: the presence tracker, typing debouncers and every live subscription.

Client frames (JSON objects, ``type`` selects the handler)::

    {"type": "open", "conversation_id": ...}
    {"type": "close_conversation"}
    {"type": "send", "conversation_id": ..., "body": ..., "message_type"?, "message_data"?, "client_message_id"?}
    {"type": "typing", "conversation_id": ...}
    {"type": "read", "conversation_id": ...}
    {"type": "visibility", "hidden": true | false}
    {"type": "status", "status": "online" | "away" | "busy", "current_activity"?}

Server frames: ``conversations``, ``online_users``, ``messages``, ``typing``,
``ack`` and ``error``.
"""

import json
import logging
from typing import Any, Dict, List, Optional

from fastapi import WebSocket

from drivechat.core.config import settings
from drivechat.core.exceptions import ChatError, NotFoundError, PermissionDeniedError, TransientStoreError
from drivechat.models.conversation import Conversation, Participant
from drivechat.models.message import Message, MessageData
from drivechat.services.chat_service import ChatService
from drivechat.services.presence_service import PresenceService, PresenceTracker
from drivechat.services.typing_service import TypingDebouncer


logger = logging.getLogger(__name__)


def error_code(exc: Exception) -> str:
    if isinstance(exc, NotFoundError):
        return "not_found"
    if isinstance(exc, PermissionDeniedError):
        return "permission_denied"
    if isinstance(exc, TransientStoreError):
        return "unavailable"
    return "invalid"


class ChatSession:

    def __init__(self, websocket: WebSocket, user: Dict[str, Any], chat: ChatService, presence: PresenceService) -> None:
        self._ws = websocket
        self.user_id = user["_id"]
        self.user_name = user["name"]
        self.role = user.get("role")
        self._chat = chat
        self._presence = presence
        self.tracker: Optional[PresenceTracker] = None
        self._subscriptions: List[Any] = []
        self._open_id: Optional[str] = None
        self._open_subscriptions: List[Any] = []
        self._debouncers: Dict[str, TypingDebouncer] = {}

    async def send(self, frame: Dict[str, Any]) -> None:
        await self._ws.send_text(json.dumps(frame))

    async def start(self) -> None:
        self.tracker = await self._presence.start_presence(self.user_id, self.user_name, self.role)
        self._subscriptions.append(
            await self._chat.subscribe_conversations_for_user(self.user_id, self._push_conversations)
        )
        self._subscriptions.append(
            await self._presence.subscribe_online_users(self.user_id, self._push_online_users)
        )

    async def _push_conversations(self, conversations: List[Conversation]) -> None:
        await self.send({"type": "conversations", "items": [c.model_dump(mode="json") for c in conversations]})

    async def _push_online_users(self, users) -> None:
        await self.send({"type": "online_users", "items": [u.model_dump(mode="json") for u in users]})

    async def handle(self, frame: Dict[str, Any]) -> None:
        kind = frame.get("type")
        handler = getattr(self, f"_on_{kind}", None) if isinstance(kind, str) else None
        if handler is None:
            await self.send({"type": "error", "code": "unknown_frame", "frame_type": kind})
            return
        try:
            await handler(frame)
        except (ChatError, ValueError, KeyError) as exc:
            logger.info("Frame %s from %s rejected: %s", kind, self.user_id, exc)
            await self.send(
                {
                    "type": "error",
                    "code": error_code(exc),
                    "frame_type": kind,
                    "client_message_id": frame.get("client_message_id"),
                    "detail": str(exc),
                }
            )

    async def _on_open(self, frame: Dict[str, Any]) -> None:
        conversation_id = frame["conversation_id"]
        await self._chat.get_conversation(conversation_id, self.user_id)
        await self._close_open_conversation()
        self._open_id = conversation_id

        async def on_messages(messages: List[Message]) -> None:
            await self.send(
                {
                    "type": "messages",
                    "conversation_id": conversation_id,
                    "items": [m.model_dump(mode="json") for m in messages],
                }
            )
            # an open conversation is being viewed: drain the unread marker
            if any(m.receiver_id == self.user_id and not m.read for m in messages):
                await self._chat.mark_conversation_read(conversation_id, self.user_id)

        async def on_typing(signals) -> None:
            await self.send(
                {
                    "type": "typing",
                    "conversation_id": conversation_id,
                    "users": [{"user_id": s.user_id, "user_name": s.user_name} for s in signals],
                }
            )

        self._open_subscriptions = [
            await self._chat.subscribe_messages(conversation_id, on_messages),
            await self._chat.subscribe_typing(conversation_id, self.user_id, on_typing),
        ]
        await self._chat.mark_conversation_read(conversation_id, self.user_id)

    async def _on_close_conversation(self, frame: Dict[str, Any]) -> None:
        await self._close_open_conversation()

    async def _close_open_conversation(self) -> None:
        for subscription in self._open_subscriptions:
            await subscription.close()
        self._open_subscriptions = []
        self._open_id = None

    def _debouncer(self, conversation_id: str) -> TypingDebouncer:
        debouncer = self._debouncers.get(conversation_id)
        if debouncer is None:
            debouncer = self._chat.typing_debouncer(
                conversation_id, self.user_id, self.user_name, idle_seconds=settings.TYPING_IDLE_SECONDS
            )
            self._debouncers[conversation_id] = debouncer
        return debouncer

    async def _on_typing(self, frame: Dict[str, Any]) -> None:
        conversation_id = frame["conversation_id"]
        await self._chat.get_conversation(conversation_id, self.user_id)
        await self._debouncer(conversation_id).keystroke()

    async def _on_send(self, frame: Dict[str, Any]) -> None:
        conversation_id = frame["conversation_id"]
        conversation = await self._chat.get_conversation(conversation_id, self.user_id)
        other_id = conversation.other_participant(self.user_id)
        me, other = conversation.participants[self.user_id], conversation.participants[other_id]
        message_data = frame.get("message_data")
        message_id = await self._chat.send_message(
            conversation_id,
            Participant(id=self.user_id, name=me.name, role=me.role),
            Participant(id=other_id, name=other.name, role=other.role),
            frame.get("body", ""),
            message_type=frame.get("message_type", "text"),
            message_data=MessageData.model_validate(message_data) if message_data else None,
        )
        # send_message already cleared the typing signal
        debouncer = self._debouncers.get(conversation_id)
        if debouncer is not None:
            debouncer.cancel()
        await self.send(
            {
                "type": "ack",
                "message_id": message_id,
                "conversation_id": conversation_id,
                "client_message_id": frame.get("client_message_id"),
            }
        )

    async def _on_read(self, frame: Dict[str, Any]) -> None:
        conversation_id = frame["conversation_id"]
        await self._chat.get_conversation(conversation_id, self.user_id)
        await self._chat.mark_conversation_read(conversation_id, self.user_id)

    async def _on_visibility(self, frame: Dict[str, Any]) -> None:
        await self.tracker.visibility_changed(bool(frame.get("hidden")))

    async def _on_status(self, frame: Dict[str, Any]) -> None:
        status = frame.get("status")
        if status not in ("online", "away", "busy"):
            raise ValueError(f"Unsupported status: {status}")
        await self.tracker.set_status(status, frame.get("current_activity"))

    async def close(self, last_session: bool = True) -> None:
        await self._close_open_conversation()
        for subscription in self._subscriptions:
            await subscription.close()
        self._subscriptions = []
        for debouncer in self._debouncers.values():
            await debouncer.close()
        self._debouncers.clear()
        if self.tracker is not None:
            await self.tracker.stop(publish=last_session)

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional, Set

from drivechat.core.exceptions import ChatError, PermissionDeniedError
from drivechat.models.conversation import Conversation, Participant, VehicleContext
from drivechat.models.message import MESSAGE_TYPES, Message, MessageData
from drivechat.models.typing_signal import TypingSignal
from drivechat.repositories.conversation_repository import ConversationRepository
from drivechat.repositories.message_repository import DEFAULT_WINDOW, MessageRepository
from drivechat.repositories.typing_repository import TypingRepository, TypingSubscription
from drivechat.services.typing_service import TypingDebouncer
from drivechat.store.base import Subscription
from drivechat.utils.notifications import NotificationDispatcher


logger = logging.getLogger(__name__)

# strong references to fire-and-forget notification tasks
_background: Set[asyncio.Task] = set()


class ChatService:

    def __init__(
        self,
        message_repo: MessageRepository,
        conversation_repo: ConversationRepository,
        typing_repo: TypingRepository,
        dispatcher: Optional[NotificationDispatcher] = None,
        message_window: int = DEFAULT_WINDOW,
    ) -> None:
        self._message_repo = message_repo
        self._conversation_repo = conversation_repo
        self._typing_repo = typing_repo
        self._dispatcher = dispatcher
        self._message_window = message_window

    async def create_or_get_conversation(
        self,
        user_a: Participant,
        user_b: Participant,
        vehicle_context: Optional[VehicleContext] = None,
    ) -> str:
        return await self._conversation_repo.create_or_get(user_a, user_b, vehicle_context)

    async def get_conversation(self, conversation_id: str, user_id: str) -> Conversation:
        conversation = await self._conversation_repo.get(conversation_id)
        if user_id not in conversation.participants:
            raise PermissionDeniedError(f"{user_id} is not a participant of {conversation_id}")
        return conversation

    async def send_message(
        self,
        conversation_id: str,
        sender: Participant,
        receiver: Participant,
        body: str,
        message_type: str = "text",
        message_data: Optional[MessageData] = None,
    ) -> str:
        if message_type not in MESSAGE_TYPES:
            raise ValueError(f"Unknown message type: {message_type}")
        text = (body or "").strip()
        if not text and message_type == "text":
            raise ValueError("Message content cannot be empty")
        conversation = await self.get_conversation(conversation_id, sender.id)
        if conversation.other_participant(sender.id) != receiver.id:
            raise ValueError(f"{receiver.id} is not the other participant of {conversation_id}")
        doc: Dict[str, Any] = {
            "conversation_id": conversation_id,
            "sender_id": sender.id,
            "sender_name": sender.name,
            "sender_role": sender.role,
            "receiver_id": receiver.id,
            "receiver_name": receiver.name,
            "body": text,
            "type": message_type,
        }
        if message_data is not None:
            doc["message_data"] = message_data.model_dump(exclude_none=True)
        try:
            message_id = await self._message_repo.append(doc)
            await self._conversation_repo.record_sent_message(
                conversation_id, sender.id, receiver.id, {"text": text, "type": message_type}
            )
        except ChatError:
            logger.error("Sending message in %s failed", conversation_id, exc_info=True)
            raise
        await self._typing_repo.clear_typing(conversation_id, sender.id)
        self._schedule_notification(conversation_id, sender, receiver, text, message_type)
        logger.info("Message sent", extra={"conversation_id": conversation_id, "message_id": message_id})
        return message_id

    def _schedule_notification(
        self, conversation_id: str, sender: Participant, receiver: Participant, text: str, message_type: str
    ) -> None:
        if self._dispatcher is None:
            return
        preview = text[:100] if message_type == "text" else f"Sent a {message_type}"
        task = asyncio.create_task(
            self._notify_quietly(
                receiver.id,
                title=f"New message from {sender.name}",
                body=preview,
                priority="medium",
                action_url=f"/messages?conversation={conversation_id}",
                metadata={"sender_id": sender.id, "sender_name": sender.name, "conversation_id": conversation_id},
            )
        )
        _background.add(task)
        task.add_done_callback(_background.discard)

    async def _notify_quietly(self, recipient_id: str, **payload: Any) -> None:
        try:
            await self._dispatcher.dispatch(recipient_id, **payload)
        except Exception:
            # the message is already stored; a lost notification is not a failed send
            logger.warning("Notification to %s failed", recipient_id, exc_info=True)

    @staticmethod
    async def wait_for_background() -> None:
        while _background:
            await asyncio.gather(*list(_background), return_exceptions=True)

    async def subscribe_messages(self, conversation_id: str, callback: Callable[[List[Message]], Any]) -> Subscription:
        return await self._message_repo.subscribe(conversation_id, callback, window=self._message_window)

    async def get_history(self, conversation_id: str, limit: Optional[int] = None) -> List[Message]:
        return await self._message_repo.recent(conversation_id, limit or self._message_window)

    async def subscribe_conversations_for_user(
        self, user_id: str, callback: Callable[[List[Conversation]], Any]
    ) -> Subscription:
        return await self._conversation_repo.subscribe_for_user(user_id, callback)

    async def list_conversations(self, user_id: str, limit: Optional[int] = None) -> List[Conversation]:
        return await self._conversation_repo.list_for_user(user_id, limit=limit)

    async def mark_conversation_read(self, conversation_id: str, user_id: str) -> int:
        modified = await self._message_repo.mark_range_read(conversation_id, user_id)
        await self._conversation_repo.mark_read(conversation_id, user_id)
        return modified

    async def set_typing(self, conversation_id: str, user_id: str, user_name: Optional[str] = None) -> None:
        await self._typing_repo.set_typing(conversation_id, user_id, user_name)

    async def clear_typing(self, conversation_id: str, user_id: str) -> None:
        await self._typing_repo.clear_typing(conversation_id, user_id)

    async def subscribe_typing(
        self, conversation_id: str, exclude_user_id: str, callback: Callable[[List[TypingSignal]], Any]
    ) -> TypingSubscription:
        return await self._typing_repo.subscribe(conversation_id, exclude_user_id, callback)

    def typing_debouncer(
        self, conversation_id: str, user_id: str, user_name: Optional[str] = None, idle_seconds: float = 3.0
    ) -> TypingDebouncer:
        return TypingDebouncer(self._typing_repo, conversation_id, user_id, user_name, idle_seconds=idle_seconds)

    async def start_vehicle_conversation(
        self,
        driver: Participant,
        owner: Participant,
        vehicle: VehicleContext,
        inquiry_message: Optional[str] = None,
    ) -> str:
        conversation_id = await self._conversation_repo.create_or_get(driver, owner, vehicle)
        if inquiry_message:
            await self.send_message(
                conversation_id,
                driver,
                owner,
                inquiry_message,
                message_type="vehicle_inquiry",
                message_data=MessageData(vehicle_id=vehicle.vehicle_id, vehicle_make=vehicle.vehicle_make),
            )
        return conversation_id

    async def get_conversation_stats(self, user_id: str) -> Dict[str, int]:
        conversations = await self._conversation_repo.list_for_user(user_id)
        unread = [c.unread_for(user_id) for c in conversations]
        return {
            "total_conversations": len(conversations),
            "unread_conversations": sum(1 for n in unread if n > 0),
            "total_unread_messages": sum(unread),
        }

    async def search_messages(self, user_id: str, term: str, max_results: int = 20) -> List[Message]:
        conversations = await self._conversation_repo.list_for_user(user_id)
        return await self._message_repo.search([c.id for c in conversations], term, limit=max_results)

    async def delete_conversation(self, conversation_id: str, user_id: str) -> int:
        await self.get_conversation(conversation_id, user_id)
        removed = await self._message_repo.delete_for_conversation(conversation_id)
        await self._conversation_repo.delete(conversation_id)
        logger.info("Conversation deleted", extra={"conversation_id": conversation_id, "messages": removed})
        return removed

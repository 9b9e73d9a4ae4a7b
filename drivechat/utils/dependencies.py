from typing import Any, Dict

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError

from drivechat.core.config import settings
from drivechat.database.connection import store_dependency
from drivechat.repositories.conversation_repository import ConversationRepository
from drivechat.repositories.message_repository import MessageRepository
from drivechat.repositories.presence_repository import PresenceRepository
from drivechat.repositories.typing_repository import TypingRepository
from drivechat.services.chat_service import ChatService
from drivechat.services.presence_service import PresenceService
from drivechat.store.base import DocumentStore
from drivechat.utils.notifications import NotificationDispatcher, create_push
from drivechat.utils.security import decode_access_token


oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/token")

_push = None


def get_push():
    global _push
    if _push is None:
        _push = create_push(settings.FCM_SERVICE_ACCOUNT_FILE, settings.FCM_PROJECT_ID)
    return _push


def user_from_claims(payload: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "_id": payload["sub"],
        "name": payload.get("name") or payload["sub"],
        "role": payload.get("role", "driver"),
    }


async def get_current_user(token: str = Depends(oauth2_scheme)) -> Dict[str, Any]:
    try:
        payload = decode_access_token(token)
    except JWTError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    if not payload.get("sub"):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    return user_from_claims(payload)


def build_chat_service(store: DocumentStore, push=None) -> ChatService:
    return ChatService(
        MessageRepository(store),
        ConversationRepository(store),
        TypingRepository(store, stale_after=settings.TYPING_STALE_SECONDS),
        dispatcher=NotificationDispatcher(store, push if push is not None else get_push()),
        message_window=settings.MESSAGE_WINDOW,
    )


def build_presence_service(store: DocumentStore) -> PresenceService:
    return PresenceService(
        PresenceRepository(store, heartbeat_interval=settings.PRESENCE_HEARTBEAT_SECONDS),
        heartbeat_interval=settings.PRESENCE_HEARTBEAT_SECONDS,
        away_grace=settings.PRESENCE_AWAY_GRACE_SECONDS,
    )


def get_chat_service(store: DocumentStore = Depends(store_dependency)) -> ChatService:
    return build_chat_service(store)


def get_presence_service(store: DocumentStore = Depends(store_dependency)) -> PresenceService:
    return build_presence_service(store)

import json
import logging

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect
from jose import JWTError

from drivechat.database.connection import store_dependency
from drivechat.schemas.chat import MessageList
from drivechat.services.chat_service import ChatService
from drivechat.services.chat_session import ChatSession
from drivechat.utils.dependencies import (
    build_chat_service,
    build_presence_service,
    get_chat_service,
    get_current_user,
    user_from_claims,
)
from drivechat.utils.security import decode_access_token
from drivechat.utils.websocket_manager import ConnectionManager


logger = logging.getLogger(__name__)

router = APIRouter(tags=["chat"])
manager = ConnectionManager()


@router.websocket("/ws/chat/{user_id}")
async def chat_socket(websocket: WebSocket, user_id: str, store = Depends(store_dependency)):
    # JWT via query string: ?token=...
    token = websocket.query_params.get("token")
    if not token:
        await websocket.close(code=4401)
        return
    try:
        payload = decode_access_token(token)
    except JWTError:
        await websocket.close(code=4401)
        return
    if payload.get("sub") != user_id:
        await websocket.close(code=4403)
        return

    await websocket.accept()
    session = ChatSession(websocket, user_from_claims(payload), build_chat_service(store), build_presence_service(store))
    manager.add(user_id, session)
    try:
        await session.start()
        while True:
            data = await websocket.receive_text()
            try:
                frame = json.loads(data)
            except ValueError:
                await session.send({"type": "error", "code": "invalid_json"})
                continue
            if not isinstance(frame, dict):
                await session.send({"type": "error", "code": "invalid_frame"})
                continue
            await session.handle(frame)
    except WebSocketDisconnect:
        logger.info("Chat socket closed", extra={"user_id": user_id})
    finally:
        await session.close(last_session=manager.remove(user_id, session))


@router.get("/messages/search", response_model=MessageList)
async def search_messages(q: str = Query(..., min_length=1), limit: int = Query(20, ge=1, le=100), current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    return {"items": await service.search_messages(current_user["_id"], q, max_results=limit)}

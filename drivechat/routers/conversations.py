from typing import Optional

from fastapi import APIRouter, Depends, Query

from drivechat.models.conversation import Conversation, Participant
from drivechat.schemas.chat import (
    ConversationCreate,
    ConversationCreated,
    ConversationList,
    ConversationStats,
    MessageAck,
    MessageCreate,
    MessageList,
    ReadResult,
    VehicleConversationCreate,
)
from drivechat.services.chat_service import ChatService
from drivechat.utils.dependencies import get_chat_service, get_current_user


router = APIRouter(prefix="/conversations", tags=["chat"])


def me(current_user: dict) -> Participant:
    return Participant(id=current_user["_id"], name=current_user["name"], role=current_user["role"])


def participant_of(conversation: Conversation, user_id: str) -> Participant:
    info = conversation.participants[user_id]
    return Participant(id=user_id, name=info.name, role=info.role)


@router.get("", response_model=ConversationList)
async def list_conversations(limit: Optional[int] = Query(None, ge=1, le=100), current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    items = await service.list_conversations(current_user["_id"], limit=limit)
    return {"items": items}


@router.post("", response_model=ConversationCreated)
async def create_conversation(body: ConversationCreate, current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    other = Participant(id=body.other_user_id, name=body.other_user_name, role=body.other_user_role)
    conversation_id = await service.create_or_get_conversation(me(current_user), other, body.vehicle_context)
    return {"conversation_id": conversation_id}


@router.post("/vehicle", response_model=ConversationCreated)
async def start_vehicle_conversation(body: VehicleConversationCreate, current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    driver = Participant(id=current_user["_id"], name=current_user["name"], role="driver")
    owner = Participant(id=body.owner_id, name=body.owner_name, role="owner")
    conversation_id = await service.start_vehicle_conversation(driver, owner, body.vehicle, body.inquiry_message)
    return {"conversation_id": conversation_id}


@router.get("/stats", response_model=ConversationStats)
async def conversation_stats(current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    return await service.get_conversation_stats(current_user["_id"])


@router.get("/{conversation_id}", response_model=Conversation)
async def get_conversation(conversation_id: str, current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    return await service.get_conversation(conversation_id, current_user["_id"])


@router.get("/{conversation_id}/messages", response_model=MessageList)
async def list_messages(conversation_id: str, limit: Optional[int] = Query(None, ge=1, le=200), current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    await service.get_conversation(conversation_id, current_user["_id"])
    return {"items": await service.get_history(conversation_id, limit=limit)}


@router.post("/{conversation_id}/messages", response_model=MessageAck)
async def send_message(conversation_id: str, body: MessageCreate, current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    conversation = await service.get_conversation(conversation_id, current_user["_id"])
    receiver = participant_of(conversation, conversation.other_participant(current_user["_id"]))
    message_id = await service.send_message(
        conversation_id,
        participant_of(conversation, current_user["_id"]),
        receiver,
        body.body,
        message_type=body.type,
        message_data=body.message_data,
    )
    return {"message_id": message_id, "conversation_id": conversation_id, "client_message_id": body.client_message_id}


@router.post("/{conversation_id}/read", response_model=ReadResult)
async def mark_read(conversation_id: str, current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    await service.get_conversation(conversation_id, current_user["_id"])
    count = await service.mark_conversation_read(conversation_id, current_user["_id"])
    return {"updated": count}


@router.delete("/{conversation_id}")
async def delete_conversation(conversation_id: str, current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    removed = await service.delete_conversation(conversation_id, current_user["_id"])
    return {"deleted": True, "messages": removed}

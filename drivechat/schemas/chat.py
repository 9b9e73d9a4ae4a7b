from typing import List, Optional

from pydantic import BaseModel, Field

from drivechat.models.conversation import Conversation, Role, VehicleContext
from drivechat.models.message import Message, MessageData, MessageType


class ConversationCreate(BaseModel):

    other_user_id: str
    other_user_name: str
    other_user_role: Role
    vehicle_context: Optional[VehicleContext] = None


class VehicleConversationCreate(BaseModel):

    owner_id: str
    owner_name: str
    vehicle: VehicleContext
    inquiry_message: Optional[str] = None


class MessageCreate(BaseModel):

    body: str = ""
    type: MessageType = "text"
    message_data: Optional[MessageData] = None
    client_message_id: Optional[str] = None


class MessageAck(BaseModel):

    message_id: str
    conversation_id: str
    client_message_id: Optional[str] = None


class ConversationCreated(BaseModel):

    conversation_id: str


class ConversationList(BaseModel):

    items: List[Conversation]


class MessageList(BaseModel):

    items: List[Message]


class ConversationStats(BaseModel):

    total_conversations: int
    unread_conversations: int
    total_unread_messages: int


class ReadResult(BaseModel):

    updated: int


class DeviceCreate(BaseModel):

    platform: str = Field(pattern="^(fcm|webpush)$")
    token: str = Field(min_length=1)


class PresenceOut(BaseModel):

    user_id: str
    online: bool
    status: str
    last_seen: Optional[str] = None

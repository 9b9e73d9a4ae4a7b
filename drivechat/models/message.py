from datetime import datetime
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict

from drivechat.models.conversation import Role


MessageType = Literal["text", "image", "file", "vehicle_inquiry"]
MESSAGE_TYPES = ("text", "image", "file", "vehicle_inquiry")


class MessageData(BaseModel):

    # attachments are referenced by URL only
    vehicle_id: Optional[str] = None
    vehicle_make: Optional[str] = None
    file_url: Optional[str] = None
    file_name: Optional[str] = None
    image_url: Optional[str] = None


class Message(BaseModel):

    model_config = ConfigDict(extra="ignore")

    id: str
    conversation_id: str
    sender_id: str
    sender_name: str
    sender_role: Role
    receiver_id: str
    receiver_name: str
    body: str
    type: MessageType = "text"
    message_data: Optional[MessageData] = None
    read: bool = False
    # assigned by the store at write time
    timestamp: Optional[datetime] = None
    edited: bool = False
    edited_at: Optional[datetime] = None

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "Message":
        return cls.model_validate(doc)

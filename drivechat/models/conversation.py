from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, NonNegativeInt, model_validator


Role = Literal["owner", "driver"]


class Participant(BaseModel):
    """A user joining a conversation, as supplied by the caller."""

    id: str
    name: str
    role: Role


class ParticipantInfo(BaseModel):

    name: str
    role: Role
    last_seen: Optional[datetime] = None


class LastMessage(BaseModel):

    # empty text and sender before the first message
    text: str = ""
    sender_id: str = ""
    timestamp: Optional[datetime] = None
    type: str = "text"


class VehicleContext(BaseModel):

    vehicle_id: str
    vehicle_make: str
    vehicle_plate: str


class Conversation(BaseModel):

    model_config = ConfigDict(extra="ignore")

    id: str
    participants: Dict[str, ParticipantInfo]
    participant_ids: List[str]
    last_message: LastMessage = LastMessage()
    # per-user unread counters (user_id -> count)
    unread_count: Dict[str, NonNegativeInt]
    vehicle_context: Optional[VehicleContext] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @model_validator(mode="after")
    def _check_participants(self) -> "Conversation":
        ids = set(self.participants)
        if len(ids) != 2:
            raise ValueError("a conversation has exactly two participants")
        if set(self.unread_count) != ids or set(self.participant_ids) != ids:
            raise ValueError("unread_count and participant_ids must match participants")
        return self

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "Conversation":
        return cls.model_validate(doc)

    def other_participant(self, user_id: str) -> str:
        return next(pid for pid in self.participant_ids if pid != user_id)

    def unread_for(self, user_id: str) -> int:
        return self.unread_count.get(user_id, 0)

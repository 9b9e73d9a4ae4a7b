from datetime import datetime
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict

from drivechat.models.conversation import Role


PresenceStatus = Literal["online", "away", "busy", "offline"]
VISIBLE_STATUSES = ("online", "away", "busy")


class PresenceRecord(BaseModel):

    model_config = ConfigDict(extra="ignore")

    user_id: str
    name: str
    role: Optional[Role] = None
    status: PresenceStatus
    last_seen: Optional[datetime] = None
    current_activity: Optional[str] = None
    connected_at: Optional[datetime] = None
    disconnected_at: Optional[datetime] = None

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "PresenceRecord":
        return cls.model_validate(doc)

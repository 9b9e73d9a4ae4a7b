from datetime import datetime
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, Field


Priority = Literal["low", "medium", "high", "critical"]


class Notification(BaseModel):

    id: Optional[str] = None
    user_id: str
    type: str = "message"
    title: str
    body: str
    priority: Priority = "medium"
    action_url: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    read: bool = False
    timestamp: Optional[datetime] = None

from datetime import datetime
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict


class TypingSignal(BaseModel):
    """Present while the user is composing; deleted, never flipped to false."""

    model_config = ConfigDict(extra="ignore")

    conversation_id: str
    user_id: str
    user_name: str = "Unknown User"
    is_typing: Literal[True] = True
    timestamp: Optional[datetime] = None

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "TypingSignal":
        return cls.model_validate(doc)

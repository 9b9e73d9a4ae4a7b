from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel


PushPlatform = Literal["fcm", "webpush"]


class Device(BaseModel):

    id: Optional[str] = None
    user_id: str
    platform: PushPlatform
    token: str
    last_seen_at: Optional[datetime] = None

from datetime import datetime, timezone

from fastapi import APIRouter, Depends

from drivechat.repositories.presence_repository import effective_status
from drivechat.schemas.chat import PresenceOut
from drivechat.services.presence_service import PresenceService
from drivechat.utils.dependencies import get_presence_service


router = APIRouter(prefix="/presence", tags=["chat"])


@router.get("/{user_id}", response_model=PresenceOut)
async def presence(user_id: str, service: PresenceService = Depends(get_presence_service)):
    """
    Online status. A record whose heartbeat went quiet for two intervals counts as offline.
    """
    record = await service.get(user_id)
    if record is None:
        return {"user_id": user_id, "online": False, "status": "offline", "last_seen": None}
    status = effective_status(record, datetime.now(timezone.utc), service.heartbeat_interval)
    last_seen = record.last_seen.isoformat() if record.last_seen else None
    return {"user_id": user_id, "online": status != "offline", "status": status, "last_seen": last_seen}

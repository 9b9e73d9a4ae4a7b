from fastapi import APIRouter, Depends

from drivechat.database.connection import store_dependency
from drivechat.repositories.device_repository import DeviceRepository
from drivechat.schemas.chat import DeviceCreate
from drivechat.utils.dependencies import get_current_user


router = APIRouter(prefix="/devices", tags=["push"])


@router.post("/register")
async def register_device(payload: DeviceCreate, current_user: dict = Depends(get_current_user), store = Depends(store_dependency)):
    repo = DeviceRepository(store)
    device = await repo.register(current_user["_id"], payload.platform, payload.token)
    return {"ok": True, "device": {"platform": device.platform, "token": device.token}}

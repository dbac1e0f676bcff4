from fastapi import APIRouter, Depends

from chatsync.database.connection import mongo_db_dependency
from chatsync.repositories.device_repository import DeviceRepository
from chatsync.schemas.device import DeviceRegister
from chatsync.utils.dependencies import get_current_user_id


router = APIRouter(prefix="/devices", tags=["push"])


@router.post("/register")
async def register_device(payload: DeviceRegister, user_id: str = Depends(get_current_user_id), db = Depends(mongo_db_dependency)):
    repo = DeviceRepository(db)
    doc = await repo.register(user_id, payload.platform, payload.token)
    return {"ok": True, "device": {"platform": doc["platform"], "token": doc["token"]}}

from datetime import datetime, timezone
from typing import List, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING

from chatsync.models.device import DeviceDocument, DevicePlatform


class DeviceRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["devices"]

    async def ensure_indexes(self) -> None:
        await self.collection.create_index("token", unique=True)
        await self.collection.create_index([("user_id", ASCENDING), ("platform", ASCENDING)])

    async def register(self, user_id: str, platform: DevicePlatform, token: str) -> DeviceDocument:
        # a token follows whoever signed in on the device last
        now = datetime.now(timezone.utc)
        await self.collection.update_one(
            {"token": token},
            {"$set": {"user_id": user_id, "platform": platform, "last_seen_at": now}},
            upsert=True,
        )
        return {"user_id": user_id, "platform": platform, "token": token, "last_seen_at": now}

    async def get_tokens(self, user_id: str, platform: Optional[DevicePlatform] = None) -> List[str]:
        query = {"user_id": user_id}
        if platform:
            query["platform"] = platform
        return await self.collection.distinct("token", query)

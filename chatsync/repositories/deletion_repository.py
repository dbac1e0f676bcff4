from datetime import datetime, timezone
from typing import List

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING


class DeletionRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["message_deletions"]

    async def ensure_indexes(self) -> None:
        await self.collection.create_index([("viewer_id", ASCENDING), ("message_id", ASCENDING)], unique=True)

    async def list_message_ids(self, viewer_id: str) -> List[str]:
        cur = self.collection.find({"viewer_id": viewer_id}, {"message_id": 1})
        items = await cur.to_list(length=None)
        return [it["message_id"] for it in items]

    async def create(self, message_id: str, viewer_id: str) -> bool:
        result = await self.collection.update_one(
            {"message_id": message_id, "viewer_id": viewer_id},
            {"$setOnInsert": {"created_at": datetime.now(timezone.utc)}},
            upsert=True,
        )
        return result.upserted_id is not None

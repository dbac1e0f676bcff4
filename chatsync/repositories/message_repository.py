from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING

from chatsync.models.message import MessageDocument


def _to_object_ids(ids: Iterable[str]) -> List[ObjectId]:
    return [ObjectId(i) for i in ids if ObjectId.is_valid(i)]


class MessageRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["messages"]

    async def ensure_indexes(self) -> None:
        await self.collection.create_index([("conversation_id", ASCENDING), ("created_at", DESCENDING)])
        await self.collection.create_index([("author_id", ASCENDING), ("read_at", ASCENDING)])

    async def insert_message(
        self,
        conversation_id: str,
        author_id: str,
        content: Optional[str],
        kind: str = "text",
        media_path: Optional[str] = None,
        media_type: Optional[str] = None,
        media_expires_at: Optional[datetime] = None,
    ) -> MessageDocument:
        doc: MessageDocument = {
            "conversation_id": conversation_id,
            "author_id": author_id,
            "kind": kind,
            "content": content,
            "created_at": datetime.now(timezone.utc),
            "delivered_at": None,
            "read_at": None,
            "media_path": media_path,
            "media_type": media_type,
            "media_expires_at": media_expires_at,
            "media_expired": False,
        }
        result = await self.collection.insert_one(doc)
        doc["_id"] = str(result.inserted_id)
        return doc

    async def list_for_conversation(
        self,
        conversation_id: str,
        exclude_ids: Iterable[str] = (),
        limit: int = 1000,
    ) -> List[MessageDocument]:
        query: Dict[str, Any] = {"conversation_id": conversation_id}
        excluded = _to_object_ids(exclude_ids)
        if excluded:
            query["_id"] = {"$nin": excluded}
        cur = self.collection.find(query).sort([("created_at", DESCENDING), ("_id", ASCENDING)]).limit(limit)
        items = await cur.to_list(length=limit)
        for it in items:
            it["_id"] = str(it.get("_id"))
        return items

    async def list_since(
        self,
        conversation_id: str,
        since: datetime,
        exclude_ids: Iterable[str] = (),
    ) -> List[MessageDocument]:
        # $gte: rows sharing the boundary timestamp are deduplicated by the cache
        query: Dict[str, Any] = {"conversation_id": conversation_id, "created_at": {"$gte": since}}
        excluded = _to_object_ids(exclude_ids)
        if excluded:
            query["_id"] = {"$nin": excluded}
        cur = self.collection.find(query).sort("created_at", ASCENDING)
        items = await cur.to_list(length=1000)
        for it in items:
            it["_id"] = str(it.get("_id"))
        return items

    async def get_by_ids(self, ids: Iterable[str]) -> List[MessageDocument]:
        oids = _to_object_ids(ids)
        if not oids:
            return []
        items = await self.collection.find({"_id": {"$in": oids}}).to_list(length=len(oids))
        for it in items:
            it["_id"] = str(it.get("_id"))
        return items

    async def mark_receipts(self, ids: Iterable[str], now: datetime) -> int:
        oids = _to_object_ids(ids)
        if not oids:
            return 0
        # pipeline update keeps an already-set timestamp instead of overwriting it
        result = await self.collection.update_many(
            {"_id": {"$in": oids}, "$or": [{"delivered_at": None}, {"read_at": None}]},
            [
                {
                    "$set": {
                        "delivered_at": {"$ifNull": ["$delivered_at", now]},
                        "read_at": {"$ifNull": ["$read_at", now]},
                    }
                }
            ],
        )
        return result.modified_count or 0

    async def list_unread_ids(self, conversation_id: str, reader_id: str) -> List[str]:
        cur = self.collection.find(
            {"conversation_id": conversation_id, "author_id": {"$ne": reader_id}, "read_at": None},
            {"_id": 1},
        )
        items = await cur.to_list(length=None)
        return [str(it["_id"]) for it in items]

    async def count_unread(
        self,
        conversation_ids: Iterable[str],
        viewer_id: str,
        exclude_ids: Iterable[str] = (),
    ) -> int:
        conversation_ids = list(conversation_ids)
        if not conversation_ids:
            return 0
        query: Dict[str, Any] = {
            "conversation_id": {"$in": conversation_ids},
            "author_id": {"$ne": viewer_id},
            "read_at": None,
        }
        excluded = _to_object_ids(exclude_ids)
        if excluded:
            query["_id"] = {"$nin": excluded}
        return await self.collection.count_documents(query)

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from bson import ObjectId
from bson.errors import InvalidId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING

from chatsync.models.conversation import ConversationDocument


class ConversationRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["conversations"]

    async def ensure_indexes(self) -> None:
        await self.collection.create_index([("participants", ASCENDING)])
        await self.collection.create_index([("last_message_at", DESCENDING)])

    async def get_or_create_one_to_one(self, user_a: str, user_b: str) -> ConversationDocument:
        if user_a == user_b:
            raise ValueError("A conversation needs two distinct participants")
        participants = sorted([user_a, user_b])
        existing = await self.collection.find_one({"participants": participants})
        if existing:
            existing["_id"] = str(existing.get("_id"))
            return existing
        doc: ConversationDocument = {
            "participants": participants,
            "last_message_at": datetime.now(timezone.utc),
            "last_message_preview": None,
        }
        result = await self.collection.insert_one(doc)
        doc["_id"] = str(result.inserted_id)
        return doc

    async def get(self, conversation_id: str) -> Optional[ConversationDocument]:
        if not ObjectId.is_valid(conversation_id):
            return None
        doc = await self.collection.find_one({"_id": ObjectId(conversation_id)})
        if doc:
            doc["_id"] = str(doc["_id"])
        return doc

    async def update_on_new_message(self, conversation_id: str, preview: Optional[str]) -> None:
        if not ObjectId.is_valid(conversation_id):
            return
        await self.collection.update_one(
            {"_id": ObjectId(conversation_id)},
            {"$set": {"last_message_at": datetime.now(timezone.utc), "last_message_preview": preview}},
        )

    async def list_ids_for_user(self, user_id: str) -> List[str]:
        cur = self.collection.find({"participants": user_id}, {"_id": 1})
        items = await cur.to_list(length=None)
        return [str(it["_id"]) for it in items]

    async def list_for_user(self, user_id: str, limit: int = 20, cursor: Optional[str] = None) -> Tuple[List[ConversationDocument], Optional[str]]:
        query: Dict[str, Any] = {"participants": user_id}
        if cursor:
            ts, oid = decode_cursor(cursor)
            query["$or"] = [
                {"last_message_at": {"$lt": ts}},
                {"last_message_at": ts, "_id": {"$lt": oid}},
            ]
        found = self.collection.find(query).sort([("last_message_at", DESCENDING), ("_id", DESCENDING)]).limit(limit)
        items = await found.to_list(length=limit)
        for it in items:
            it["_id"] = str(it.get("_id"))
        return items, encode_cursor(items[-1]) if items else None


def encode_cursor(conversation: ConversationDocument) -> str:
    ts_ms = int(conversation["last_message_at"].timestamp() * 1000)
    return f"{ts_ms}:{conversation['_id']}"


def decode_cursor(cursor: str) -> Tuple[datetime, ObjectId]:
    """Parse ``<last_message_at ms>:<object id hex>``."""
    try:
        ts_str, oid_hex = cursor.split(":", 1)
        return datetime.fromtimestamp(int(ts_str) / 1000.0, tz=timezone.utc), ObjectId(oid_hex)
    except (ValueError, TypeError, InvalidId) as exc:
        raise ValueError(f"Malformed cursor: {cursor}") from exc


def peer_of(conversation: ConversationDocument, user_id: str) -> Optional[str]:
    for participant in conversation.get("participants", []):
        if participant != user_id:
            return participant
    return None

import unittest
from unittest.mock import AsyncMock, MagicMock

from bson import ObjectId

from chatsync.repositories.conversation_repository import decode_cursor, encode_cursor
from chatsync.repositories.deletion_repository import DeletionRepository
from chatsync.repositories.device_repository import DeviceRepository
from chatsync.repositories.message_repository import MessageRepository

from fakes import BASE_TIME


def fake_db(collection):
    db = MagicMock()
    db.__getitem__.return_value = collection
    return db


def cursor_returning(items):
    cursor = MagicMock()
    cursor.sort.return_value = cursor
    cursor.limit.return_value = cursor
    cursor.to_list = AsyncMock(return_value=items)
    return cursor


class MessageRepositoryTests(unittest.IsolatedAsyncioTestCase):

    async def test_insert_stringifies_id(self):
        oid = ObjectId()
        collection = MagicMock()
        collection.insert_one = AsyncMock(return_value=MagicMock(inserted_id=oid))
        repo = MessageRepository(fake_db(collection))
        doc = await repo.insert_message("c1", "me", "hi")
        self.assertEqual(doc["_id"], str(oid))
        self.assertIsNone(doc["read_at"])
        self.assertFalse(doc["media_expired"])

    async def test_list_excludes_tombstones(self):
        hidden = ObjectId()
        row_id = ObjectId()
        collection = MagicMock()
        collection.find.return_value = cursor_returning([{"_id": row_id, "conversation_id": "c1"}])
        repo = MessageRepository(fake_db(collection))
        items = await repo.list_for_conversation("c1", exclude_ids=[str(hidden), "not-an-id"], limit=10)
        query = collection.find.call_args[0][0]
        self.assertEqual(query, {"conversation_id": "c1", "_id": {"$nin": [hidden]}})
        self.assertEqual(items[0]["_id"], str(row_id))

    async def test_mark_receipts_only_fills_missing_timestamps(self):
        oid = ObjectId()
        collection = MagicMock()
        collection.update_many = AsyncMock(return_value=MagicMock(modified_count=1))
        repo = MessageRepository(fake_db(collection))
        self.assertEqual(await repo.mark_receipts([str(oid)], BASE_TIME), 1)
        query, update = collection.update_many.call_args[0]
        self.assertEqual(query["_id"], {"$in": [oid]})
        self.assertEqual(update[0]["$set"]["read_at"], {"$ifNull": ["$read_at", BASE_TIME]})
        self.assertEqual(update[0]["$set"]["delivered_at"], {"$ifNull": ["$delivered_at", BASE_TIME]})

    async def test_mark_receipts_without_valid_ids_skips_write(self):
        collection = MagicMock()
        collection.update_many = AsyncMock()
        repo = MessageRepository(fake_db(collection))
        self.assertEqual(await repo.mark_receipts(["bogus"], BASE_TIME), 0)
        collection.update_many.assert_not_called()

    async def test_count_unread_without_conversations(self):
        collection = MagicMock()
        collection.count_documents = AsyncMock(return_value=7)
        repo = MessageRepository(fake_db(collection))
        self.assertEqual(await repo.count_unread([], "me"), 0)
        self.assertEqual(await repo.count_unread(["c1"], "me"), 7)
        query = collection.count_documents.call_args[0][0]
        self.assertEqual(query["author_id"], {"$ne": "me"})


class DeletionRepositoryTests(unittest.IsolatedAsyncioTestCase):

    async def test_create_reports_new_tombstones(self):
        collection = MagicMock()
        collection.update_one = AsyncMock(side_effect=[MagicMock(upserted_id=ObjectId()), MagicMock(upserted_id=None)])
        repo = DeletionRepository(fake_db(collection))
        self.assertTrue(await repo.create("m1", "me"))
        self.assertFalse(await repo.create("m1", "me"))


class ConversationCursorTests(unittest.TestCase):

    def test_cursor_points_at_last_item(self):
        oid = ObjectId()
        cursor = encode_cursor({"_id": str(oid), "last_message_at": BASE_TIME})
        self.assertEqual(decode_cursor(cursor), (BASE_TIME, oid))

    def test_malformed_cursor(self):
        for bad in ("nope", "123:not-hex", "abc:" + str(ObjectId())):
            with self.assertRaises(ValueError):
                decode_cursor(bad)


class DeviceRepositoryTests(unittest.IsolatedAsyncioTestCase):

    async def test_tokens_by_platform(self):
        collection = MagicMock()
        collection.distinct = AsyncMock(return_value=["tok-1"])
        repo = DeviceRepository(fake_db(collection))
        self.assertEqual(await repo.get_tokens("me", platform="ios"), ["tok-1"])
        collection.distinct.assert_awaited_once_with("token", {"user_id": "me", "platform": "ios"})

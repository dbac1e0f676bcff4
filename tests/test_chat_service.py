import json
import unittest

from chatsync.services.chat_service import ChatService
from chatsync.utils.realtime_bus import LocalBus

from fakes import FakeConversationRepository, FakeDeletionRepository, FakeMessageRepository, make_row


class RecordingBus(LocalBus):

    def __init__(self):
        super().__init__()
        self.published = []

    async def publish(self, channel, message):
        self.published.append((channel, json.loads(message)))
        await super().publish(channel, message)


class ChatServiceTests(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        self.messages = FakeMessageRepository()
        self.conversations = FakeConversationRepository({"c1": ["me", "partner"]})
        self.deletions = FakeDeletionRepository()
        self.bus = RecordingBus()
        self.service = ChatService(self.messages, self.conversations, self.deletions, self.bus)

    async def test_send_message_fans_out_to_conversation_and_peer(self):
        message = await self.service.send_message("c1", "me", "  hi there  ")
        self.assertEqual(message.content, "hi there")
        self.assertEqual(self.conversations.conversations["c1"]["last_message_preview"], "hi there")
        topics = [topic for topic, _ in self.bus.published]
        self.assertEqual(topics, ["conversation:c1", "user:partner"])
        frame = self.bus.published[0][1]
        self.assertEqual(frame["type"], "INSERT")
        self.assertEqual(frame["new"]["id"], message.id)

    async def test_send_message_validation(self):
        with self.assertRaises(ValueError):
            await self.service.send_message("c1", "me", "   ")
        with self.assertRaises(LookupError):
            await self.service.send_message("missing", "me", "hi")
        with self.assertRaises(PermissionError):
            await self.service.send_message("c1", "intruder", "hi")
        self.assertEqual(self.bus.published, [])

    async def test_open_conversation_is_stable(self):
        first = await self.service.open_conversation("me", "partner")
        second = await self.service.open_conversation("partner", "me")
        self.assertEqual(first["_id"], "c1")
        self.assertEqual(second["_id"], "c1")
        with self.assertRaises(ValueError):
            await self.service.open_conversation("me", "me")

    async def test_delete_for_self_hides_from_history_only_for_viewer(self):
        self.messages.rows = {"m1": make_row("m1"), "m2": make_row("m2", offset_s=1)}
        self.assertTrue(await self.service.delete_for_self("m1", "me"))
        self.assertFalse(await self.service.delete_for_self("m1", "me"))
        mine = await self.service.get_history("c1", "me")
        theirs = await self.service.get_history("c1", "partner")
        self.assertEqual([m.id for m in mine], ["m2"])
        self.assertEqual([m.id for m in theirs], ["m2", "m1"])

    async def test_mark_conversation_read_publishes_updates(self):
        self.messages.rows = {
            "m1": make_row("m1"),
            "m2": make_row("m2", author_id="me"),
        }
        ids = await self.service.mark_conversation_read("c1", "me")
        self.assertEqual(ids, ["m1"])
        self.assertEqual([(t, f["type"]) for t, f in self.bus.published], [("conversation:c1", "UPDATE")])
        self.assertIsNotNone(self.bus.published[0][1]["new"]["read_at"])
        self.assertEqual(await self.service.mark_conversation_read("c1", "me"), [])

    async def test_mark_conversation_read_requires_participant(self):
        self.messages.rows = {"m1": make_row("m1")}
        with self.assertRaises(PermissionError):
            await self.service.mark_conversation_read("c1", "mallory")
        with self.assertRaises(LookupError):
            await self.service.mark_conversation_read("missing", "me")
        self.assertIsNone(self.messages.rows["m1"]["read_at"])
        self.assertEqual(self.bus.published, [])

    async def test_count_unread(self):
        self.messages.rows = {"m1": make_row("m1"), "m2": make_row("m2", offset_s=1)}
        await self.service.delete_for_self("m2", "me")
        self.assertEqual(await self.service.count_unread("me"), 1)

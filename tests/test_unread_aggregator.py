import unittest

from chatsync.schemas.message import Message
from chatsync.services.chat_service import ChatService
from chatsync.services.unread_aggregator import UnreadAggregator
from chatsync.utils.realtime_bus import LocalBus
from chatsync.utils.realtime_channel import publish_change, user_topic

from fakes import (
    BASE_TIME,
    FakeConversationRepository,
    FakeDeletionRepository,
    FakeMessageRepository,
    event_row,
    make_row,
)


def msg(message_id, conversation_id="c2", **kwargs):
    return Message.model_validate(make_row(message_id, conversation_id=conversation_id, **kwargs))


class UnreadAggregatorTests(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        self.messages = FakeMessageRepository()
        self.conversations = FakeConversationRepository({"c1": ["me", "partner"], "c2": ["me", "other"]})
        self.deletions = FakeDeletionRepository()
        self.bus = LocalBus()
        self.chat = ChatService(self.messages, self.conversations, self.deletions, self.bus)
        self.aggregator = UnreadAggregator(
            "me", self.messages, self.conversations, self.deletions, chat_service=self.chat
        )
        self.summaries = []
        self.aggregator.add_listener(self.summaries.append)

    async def asyncTearDown(self):
        await self.aggregator.detach()

    def test_message_in_other_conversation_counts_once(self):
        self.aggregator.set_active_conversation_id("c1")
        message = msg("m1", author_id="other")
        self.assertTrue(self.aggregator.add_message(message))
        self.assertFalse(self.aggregator.add_message(message))
        self.assertEqual(self.aggregator.unread_count, 1)
        self.assertEqual(self.aggregator.last_message, message)
        self.assertEqual(self.summaries[-1].unread_count, 1)

    def test_suppressed_messages(self):
        self.aggregator.set_active_conversation_id("c1")
        self.assertFalse(self.aggregator.add_message(msg("own", author_id="me")))
        self.assertFalse(self.aggregator.add_message(msg("active", conversation_id="c1")))
        self.assertFalse(self.aggregator.add_message(msg("seen", read_at=BASE_TIME)))
        self.assertEqual(self.aggregator.unread_count, 0)

    def test_tracked_ids_are_bounded(self):
        aggregator = UnreadAggregator("me", self.messages, self.conversations, self.deletions, max_tracked_ids=2)
        for message_id in ("a", "b", "c"):
            aggregator.add_message(msg(message_id))
        self.assertEqual(list(aggregator._counted), ["b", "c"])

    async def test_fetch_recounts_from_storage(self):
        self.messages.rows = {
            r["_id"]: r for r in (
                make_row("u1", conversation_id="c1"),
                make_row("u2", conversation_id="c2", author_id="other"),
                make_row("mine", conversation_id="c1", author_id="me"),
                make_row("read", conversation_id="c1", read_at=BASE_TIME),
                make_row("gone", conversation_id="c2", author_id="other"),
                make_row("stranger", conversation_id="c9"),
            )
        }
        await self.deletions.create("gone", "me")
        self.assertEqual(await self.aggregator.fetch_unread_count(), 2)

    async def test_fetch_failure_keeps_previous_count(self):
        self.aggregator.add_message(msg("m1"))
        self.conversations.fail = True
        with self.assertLogs("chatsync.services.unread_aggregator", level="WARNING"):
            count = await self.aggregator.fetch_unread_count()
        self.assertEqual(count, 1)

    async def test_inbox_events_feed_the_counter(self):
        await self.aggregator.attach(self.bus)
        row = event_row(make_row("m1", conversation_id="c2", author_id="other"))
        await publish_change(self.bus, user_topic("me"), "INSERT", row)
        await publish_change(self.bus, user_topic("me"), "INSERT", row)
        await publish_change(self.bus, user_topic("someone"), "INSERT", event_row(make_row("m2")))
        self.assertEqual(self.aggregator.unread_count, 1)

    async def test_mark_conversation_read(self):
        self.messages.rows = {
            r["_id"]: r for r in (
                make_row("u1", conversation_id="c1"),
                make_row("u2", conversation_id="c2", author_id="other"),
            )
        }
        self.aggregator.add_message(msg("u1", conversation_id="c1"))
        count = await self.aggregator.mark_conversation_read("c1")
        self.assertEqual(count, 1)
        self.assertIsNone(self.aggregator.last_message)
        self.assertIsNotNone(self.messages.rows["u1"]["read_at"])

    def test_clear(self):
        self.aggregator.add_message(msg("m1"))
        self.aggregator.clear()
        self.assertEqual(self.aggregator.unread_count, 0)
        self.assertIsNone(self.aggregator.last_message)
        self.assertTrue(self.aggregator.add_message(msg("m1")))

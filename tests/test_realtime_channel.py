import asyncio
import json
import unittest
from unittest.mock import AsyncMock, MagicMock

from chatsync.errors import ChannelUnavailableError, EventValidationError, TransientNetworkError
from chatsync.utils.realtime_bus import ChannelState, LocalBus, RedisBus
from chatsync.utils.realtime_channel import (
    RealtimeChannel,
    conversation_topic,
    parse_change,
    publish_change,
    user_topic,
)


class RealtimeChannelTests(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        self.bus = LocalBus()
        self.topic = conversation_topic("c1")

    async def asyncTearDown(self):
        await self.bus.close()

    def test_topics(self):
        self.assertEqual(conversation_topic("c1"), "conversation:c1")
        self.assertEqual(user_topic("u1"), "user:u1")

    async def test_routes_by_type_and_event(self):
        inserts, typing, other = [], [], []
        channel = RealtimeChannel(self.bus, self.topic)
        channel.on("INSERT", inserts.append)
        channel.on("broadcast", typing.append, event="typing")
        channel.on("broadcast", other.append, event="reaction")
        await channel.subscribe()
        self.assertIs(channel.state, ChannelState.SUBSCRIBED)

        await publish_change(self.bus, self.topic, "INSERT", {"id": "m1"})
        await channel.send("typing", {"user_id": "partner"})

        self.assertEqual(inserts[0]["new"], {"id": "m1"})
        self.assertEqual(inserts[0]["table"], "messages")
        self.assertEqual(typing[0]["payload"], {"user_id": "partner"})
        self.assertEqual(other, [])
        await channel.unsubscribe()

    async def test_handler_errors_are_contained(self):
        seen = []

        def broken(frame):
            raise RuntimeError("boom")

        channel = RealtimeChannel(self.bus, self.topic).on("INSERT", broken).on("INSERT", seen.append)
        await channel.subscribe()
        with self.assertLogs("chatsync.utils.realtime_channel", level="ERROR"):
            await self.bus.publish(self.topic, json.dumps({"type": "INSERT", "new": {}}))
        self.assertEqual(len(seen), 1)
        await channel.unsubscribe()

    async def test_non_object_frames_are_dropped(self):
        seen = []
        channel = RealtimeChannel(self.bus, self.topic).on("INSERT", seen.append)
        await channel.subscribe()
        with self.assertLogs("chatsync.utils.realtime_channel", level="WARNING"):
            await self.bus.publish(self.topic, "[1, 2]")
        self.assertEqual(seen, [])
        await channel.unsubscribe()

    async def test_unsubscribe_is_idempotent(self):
        channel = RealtimeChannel(self.bus, self.topic)
        await channel.subscribe()
        await channel.unsubscribe()
        await channel.unsubscribe()
        self.assertIs(channel.state, ChannelState.CLOSED)
        self.assertEqual(self.bus.subscriber_count(self.topic), 0)
        with self.assertRaises(ChannelUnavailableError):
            await channel.subscribe()

    async def test_detached_handlers_stop_receiving(self):
        seen = []
        channel = RealtimeChannel(self.bus, self.topic).on("INSERT", seen.append)
        await channel.subscribe()
        channel.detach()
        await publish_change(self.bus, self.topic, "INSERT", {"id": "m1"})
        self.assertEqual(seen, [])
        await channel.unsubscribe()


class ParseChangeTests(unittest.TestCase):

    def test_valid_frame(self):
        frame = {
            "type": "INSERT",
            "table": "messages",
            "new": {"id": "m1", "conversation_id": "c1", "author_id": "u1", "created_at": "2024-01-01T00:00:00Z"},
        }
        message = parse_change(frame)
        self.assertEqual(message.id, "m1")
        self.assertEqual(message.kind, "text")

    def test_invalid_frames(self):
        for frame in ({"type": "DELETE", "new": {}}, {"type": "INSERT", "new": {"id": "m1"}}, {"type": "UPDATE"}):
            with self.assertRaises(EventValidationError):
                parse_change(frame)


def fake_pubsub():
    pubsub = MagicMock()
    pubsub.subscribe = AsyncMock()
    pubsub.unsubscribe = AsyncMock()
    pubsub.aclose = AsyncMock()
    return pubsub


class RedisBusTests(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        self.bus = RedisBus("redis://localhost:6379/0", connect_timeout=0.01)
        self.bus._redis = MagicMock()

    async def test_reconnect_closes_previous_pubsub(self):
        first, second = fake_pubsub(), fake_pubsub()
        self.bus._redis.pubsub.side_effect = [first, second]

        async def on_message(data):
            pass

        sub = await self.bus.subscribe("conversation:c1", on_message)
        await sub.connect()
        first.aclose.assert_awaited_once()
        second.subscribe.assert_awaited_once_with("conversation:c1")
        self.assertIs(sub.state, ChannelState.SUBSCRIBED)

        await sub.cancel()
        second.aclose.assert_awaited_once()
        self.assertIs(sub.state, ChannelState.CLOSED)

    async def test_subscribe_timeout_releases_pubsub(self):
        pubsub = fake_pubsub()

        async def hang(channel):
            await asyncio.Event().wait()

        pubsub.subscribe = AsyncMock(side_effect=hang)
        self.bus._redis.pubsub.return_value = pubsub

        async def on_message(data):
            pass

        with self.assertRaises(TransientNetworkError):
            await self.bus.subscribe("conversation:c1", on_message)
        pubsub.aclose.assert_awaited_once()

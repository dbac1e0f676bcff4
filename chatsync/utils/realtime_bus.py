import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable, Dict, List

import redis.asyncio as redis
from redis.exceptions import RedisError

from chatsync.config import settings
from chatsync.errors import TransientNetworkError


logger = logging.getLogger(__name__)

OnMessage = Callable[[str], Awaitable[None]]


class ChannelState(str, Enum):

    SUBSCRIBED = "SUBSCRIBED"
    SUBSCRIBING = "SUBSCRIBING"
    CHANNEL_ERROR = "CHANNEL_ERROR"
    TIMED_OUT = "TIMED_OUT"
    CLOSED = "CLOSED"


class LocalBus:
    """In-process fanout used when no Redis is configured."""

    distributed = False

    def __init__(self) -> None:
        self._subscribers: Dict[str, List["_LocalSubscription"]] = {}

    async def publish(self, channel: str, message: str) -> None:
        for sub in list(self._subscribers.get(channel, [])):
            await sub.deliver(message)

    async def subscribe(self, channel: str, on_message: OnMessage) -> "_LocalSubscription":
        sub = _LocalSubscription(self, channel, on_message)
        self._subscribers.setdefault(channel, []).append(sub)
        return sub

    def subscriber_count(self, channel: str) -> int:
        return len(self._subscribers.get(channel, []))

    def _remove(self, sub: "_LocalSubscription") -> None:
        subs = self._subscribers.get(sub.channel)
        if subs is None:
            return
        try:
            subs.remove(sub)
        except ValueError:
            pass
        if not subs:
            del self._subscribers[sub.channel]

    async def close(self) -> None:
        for subs in list(self._subscribers.values()):
            for sub in list(subs):
                await sub.cancel()


class _LocalSubscription:

    def __init__(self, bus: LocalBus, channel: str, on_message: OnMessage) -> None:
        self._bus = bus
        self.channel = channel
        self._on_message = on_message
        self._stopped = asyncio.Event()
        self.state = ChannelState.SUBSCRIBED

    async def deliver(self, message: str) -> None:
        if self.state is not ChannelState.SUBSCRIBED:
            return
        try:
            await self._on_message(message)
        except Exception:
            logger.exception("handler failed on %s", self.channel)

    async def run(self) -> None:
        await self._stopped.wait()

    async def cancel(self) -> None:
        self.state = ChannelState.CLOSED
        self._bus._remove(self)
        self._stopped.set()


class RedisBus:

    distributed = True

    def __init__(self, url: str, retry_delay: float = 0.5, max_retry_delay: float = 10.0, connect_timeout: float = 5.0) -> None:
        self._redis = redis.from_url(url)
        self._connect_timeout = connect_timeout
        self._retry_delay = retry_delay
        self._max_retry_delay = max_retry_delay

    async def publish(self, channel: str, message: str) -> None:
        await self._redis.publish(channel, message)

    async def subscribe(self, channel: str, on_message: OnMessage) -> "_RedisSubscription":
        sub = _RedisSubscription(self, channel, on_message)
        try:
            await asyncio.wait_for(sub.connect(), self._connect_timeout)
        except asyncio.TimeoutError as exc:
            await sub.close_pubsub()
            sub.state = ChannelState.TIMED_OUT
            raise TransientNetworkError(f"subscribe to {channel} timed out") from exc
        return sub

    async def close(self) -> None:
        await self._redis.aclose()


class _RedisSubscription:

    def __init__(self, bus: RedisBus, channel: str, on_message: OnMessage) -> None:
        self._bus = bus
        self.channel = channel
        self._on_message = on_message
        self._pubsub = None
        self._running = True
        self.state = ChannelState.SUBSCRIBING

    async def connect(self) -> None:
        self.state = ChannelState.SUBSCRIBING
        await self.close_pubsub()
        self._pubsub = self._bus._redis.pubsub()
        await self._pubsub.subscribe(self.channel)
        self.state = ChannelState.SUBSCRIBED

    async def run(self) -> None:
        delay = self._bus._retry_delay
        while self._running:
            try:
                if self.state is not ChannelState.SUBSCRIBED:
                    await self.connect()
                    logger.info("resubscribed to %s", self.channel)
                    delay = self._bus._retry_delay
                msg = await self._pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
            except (RedisError, ConnectionError) as exc:
                if not self._running:
                    break
                self.state = ChannelState.CHANNEL_ERROR
                logger.warning("channel %s errored, retrying in %.1fs: %s", self.channel, delay, exc)
                await asyncio.sleep(delay)
                delay = min(delay * 2, self._bus._max_retry_delay)
                continue
            if msg and msg.get("type") == "message":
                data = msg.get("data")
                if isinstance(data, bytes):
                    data = data.decode("utf-8")
                try:
                    await self._on_message(data)
                except Exception:
                    logger.exception("handler failed on %s", self.channel)

    async def close_pubsub(self) -> None:
        pubsub, self._pubsub = self._pubsub, None
        if pubsub is None:
            return
        try:
            await pubsub.unsubscribe(self.channel)
        except (RedisError, ConnectionError) as exc:
            logger.debug("unsubscribe from %s failed: %s", self.channel, exc)
        try:
            await pubsub.aclose()
        except (RedisError, ConnectionError) as exc:
            logger.debug("closing pubsub for %s failed: %s", self.channel, exc)

    async def cancel(self) -> None:
        self._running = False
        self.state = ChannelState.CLOSED
        await self.close_pubsub()


_bus = None


async def get_bus():
    global _bus
    if _bus is not None:
        return _bus
    if settings.REDIS_URL:
        _bus = RedisBus(settings.REDIS_URL)
        logger.info("realtime bus: redis")
    else:
        _bus = LocalBus()
        logger.info("realtime bus: in-process")
    return _bus


async def close_bus() -> None:
    global _bus
    if _bus is None:
        return
    await _bus.close()
    _bus = None

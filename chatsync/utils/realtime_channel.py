import asyncio
import json
import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

from pydantic import ValidationError

from chatsync.errors import TRANSIENT_ERRORS, ChannelUnavailableError, EventValidationError
from chatsync.schemas.message import Message
from chatsync.schemas.realtime import BroadcastEvent, ChangeEvent
from chatsync.utils.realtime_bus import ChannelState


logger = logging.getLogger(__name__)

Handler = Callable[[Dict[str, Any]], None]


def conversation_topic(conversation_id: str) -> str:
    return f"conversation:{conversation_id}"


def user_topic(user_id: str) -> str:
    return f"user:{user_id}"


async def publish_change(bus, topic: str, change_type: str, row: Dict[str, Any]) -> None:
    frame = ChangeEvent(type=change_type, new=row)
    await bus.publish(topic, frame.model_dump_json())


def parse_change(frame: Dict[str, Any]) -> Message:
    try:
        return Message.model_validate(ChangeEvent.model_validate(frame).new)
    except ValidationError as exc:
        raise EventValidationError(f"{exc.error_count()} invalid field(s) in {frame.get('type')} event") from exc


class RealtimeChannel:
    """A topic subscription that routes frames to handlers by type and event.

    Handlers are plain callables receiving the decoded frame. Frames that are
    not JSON objects are dropped with a warning.
    """

    def __init__(self, bus, topic: str) -> None:
        self._bus = bus
        self.topic = topic
        self._handlers: List[Tuple[str, Optional[str], Handler]] = []
        self._subscription = None
        self._task: Optional[asyncio.Task] = None
        self._closed = False

    @property
    def state(self) -> ChannelState:
        if self._closed:
            return ChannelState.CLOSED
        if self._subscription is None:
            return ChannelState.SUBSCRIBING
        return self._subscription.state

    @property
    def is_live(self) -> bool:
        return self.state is ChannelState.SUBSCRIBED

    def on(self, kind: str, handler: Handler, event: Optional[str] = None) -> "RealtimeChannel":
        self._handlers.append((kind, event, handler))
        return self

    async def subscribe(self) -> "RealtimeChannel":
        if self._closed:
            raise ChannelUnavailableError(f"channel {self.topic} already closed")
        if self._subscription is not None:
            return self
        try:
            self._subscription = await self._bus.subscribe(self.topic, self._dispatch)
        except TRANSIENT_ERRORS as exc:
            raise ChannelUnavailableError(f"could not subscribe to {self.topic}") from exc
        self._task = asyncio.create_task(self._subscription.run())
        return self

    async def send(self, event: str, payload: Dict[str, Any]) -> None:
        frame = BroadcastEvent(event=event, payload=payload)
        await self._bus.publish(self.topic, frame.model_dump_json())

    def detach(self) -> None:
        self._handlers.clear()

    async def unsubscribe(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.detach()
        if self._subscription is not None:
            await self._subscription.cancel()
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _dispatch(self, raw: str) -> None:
        try:
            frame = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("dropping non-JSON frame on %s", self.topic)
            return
        if not isinstance(frame, dict):
            logger.warning("dropping non-object frame on %s", self.topic)
            return
        kind = frame.get("type")
        event = frame.get("event")
        for handler_kind, handler_event, handler in list(self._handlers):
            if handler_kind != kind:
                continue
            if handler_event is not None and handler_event != event:
                continue
            try:
                handler(frame)
            except Exception:
                logger.exception("%s handler failed on %s", kind, self.topic)

import asyncio
import logging
import time
from typing import Any, Callable, Dict, Optional

from pydantic import ValidationError

from chatsync.schemas.realtime import TypingEvent
from chatsync.utils.realtime_channel import RealtimeChannel


logger = logging.getLogger(__name__)

TYPING_EVENT = "typing"
DEFAULT_TYPING_TIMEOUT_MS = 3000

CallLater = Callable[[float, Callable[[], None]], Any]


class TypingPresence:
    """Ephemeral partner-typing flag driven by broadcasts on the conversation channel.

    Each broadcast from the partner restarts the countdown. Nothing is
    persisted and ``send_typing_event`` does not throttle.
    """

    def __init__(
        self,
        channel: RealtimeChannel,
        self_id: str,
        timeout_ms: int = DEFAULT_TYPING_TIMEOUT_MS,
        call_later: Optional[CallLater] = None,
        clock: Callable[[], float] = time.monotonic,
        on_change: Optional[Callable[[bool], None]] = None,
    ) -> None:
        self._channel = channel
        self.self_id = self_id
        self.timeout_ms = timeout_ms
        self._call_later = call_later
        self._clock = clock
        self._on_change = on_change
        self._timer = None
        self.partner_typing = False
        self.is_focused = True
        # peer id -> last broadcast time
        self.last_seen: Dict[str, float] = {}
        channel.on("broadcast", self._on_broadcast, event=TYPING_EVENT)

    async def send_typing_event(self, self_id: Optional[str] = None) -> None:
        event = TypingEvent(user_id=self_id or self.self_id, sent_at_ms=int(time.time() * 1000))
        await self._channel.send(TYPING_EVENT, event.model_dump())

    def set_focused(self, focused: bool) -> None:
        self.is_focused = focused
        if not focused:
            self.clear()

    def clear(self) -> None:
        self._cancel_timer()
        self._set(False)

    def close(self) -> None:
        self.is_focused = False
        self.clear()

    def _on_broadcast(self, frame: Dict[str, Any]) -> None:
        try:
            event = TypingEvent.model_validate(frame.get("payload"))
        except ValidationError as exc:
            logger.warning("dropping malformed typing payload on %s: %s", self._channel.topic, exc.errors())
            return
        if event.user_id == self.self_id or not self.is_focused:
            return
        self.last_seen[event.user_id] = self._clock()
        self._set(True)
        self._cancel_timer()
        self._timer = self._schedule(self.timeout_ms / 1000.0, self._expire)

    def _expire(self) -> None:
        self._timer = None
        self._set(False)

    def _schedule(self, delay: float, callback: Callable[[], None]):
        if self._call_later is not None:
            return self._call_later(delay, callback)
        return asyncio.get_running_loop().call_later(delay, callback)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _set(self, value: bool) -> None:
        if self.partner_typing == value:
            return
        self.partner_typing = value
        if self._on_change is not None:
            self._on_change(value)

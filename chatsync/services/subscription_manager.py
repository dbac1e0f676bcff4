import asyncio
import logging
from datetime import datetime, timezone
from functools import partial
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

from pydantic import ValidationError

from chatsync.errors import (
    TRANSIENT_ERRORS,
    ChannelUnavailableError,
    EventValidationError,
    LoadState,
    ReceiptResult,
    TransientNetworkError,
)
from chatsync.repositories.message_repository import MessageRepository
from chatsync.schemas.message import Message
from chatsync.services.deletion_filter import DeletionFilter
from chatsync.services.message_cache import MessageCache
from chatsync.services.receipt_reconciler import ReceiptReconciler
from chatsync.utils.realtime_channel import RealtimeChannel, conversation_topic, parse_change


logger = logging.getLogger(__name__)


class SubscriptionManager:
    """Owns one focused conversation: its cache, its channel and its receipts.

    ``initialize()`` loads tombstones, fetches history without the tombstoned
    ids, subscribes to the conversation channel, catches up on rows committed
    while the channel was connecting, and only then reports READY. Change
    events that arrive before READY are buffered and replayed through the same
    dedup path as live ones.

    Handlers are bound to a generation; ``teardown()`` bumps it before any
    await, so a late event can never touch a discarded cache.
    """

    def __init__(
        self,
        conversation_id: str,
        viewer_id: str,
        *,
        bus,
        messages: MessageRepository,
        deletions: DeletionFilter,
        cache: Optional[MessageCache] = None,
        reconciler: Optional[ReceiptReconciler] = None,
        aggregator=None,
        history_limit: int = 1000,
        on_change: Optional[Callable[["SubscriptionManager"], None]] = None,
        on_new_message: Optional[Callable[[Message], None]] = None,
    ) -> None:
        self.conversation_id = conversation_id
        self.viewer_id = viewer_id
        self._messages = messages
        self.deletions = deletions
        self.cache = cache if cache is not None else MessageCache(conversation_id)
        if reconciler is None:
            reconciler = ReceiptReconciler(messages, self.cache, viewer_id)
        self.reconciler = reconciler
        self._aggregator = aggregator
        self._history_limit = history_limit
        self._on_change = on_change
        self._on_new_message = on_new_message

        self.state = LoadState.IDLE
        self.error: Optional[Exception] = None
        self.is_focused = False
        self._generation = 0
        self._loaded = False
        self._buffer: List[Tuple[str, Dict[str, Any]]] = []
        self._tasks: Set[asyncio.Task] = set()

        self.channel = RealtimeChannel(bus, conversation_topic(conversation_id))
        self.channel.on("INSERT", partial(self._on_event, "INSERT", self._generation))
        self.channel.on("UPDATE", partial(self._on_event, "UPDATE", self._generation))

    @property
    def is_live(self) -> bool:
        return self._loaded and self.channel.is_live

    def messages(self) -> List[Message]:
        return self.cache.snapshot()

    async def initialize(self) -> LoadState:
        if self.state in (LoadState.LOADING, LoadState.READY, LoadState.CLOSED):
            return self.state
        generation = self._generation
        started_at = datetime.now(timezone.utc)
        self.state = LoadState.LOADING
        self.error = None
        self._loaded = False
        self._notify()

        hidden = await self.deletions.load()
        if self._stale(generation):
            return self.state

        try:
            rows = await self._messages.list_for_conversation(
                self.conversation_id, exclude_ids=hidden, limit=self._history_limit
            )
        except TRANSIENT_ERRORS as exc:
            logger.warning("history fetch failed for %s: %s", self.conversation_id, exc)
            if not self._stale(generation):
                self.state = LoadState.ERROR
                self.error = TransientNetworkError(f"Could not load conversation {self.conversation_id}")
                self.error.__cause__ = exc
                self._notify()
            return self.state
        if self._stale(generation):
            return self.state
        self.cache.load(self.deletions.apply(self._validate_rows(rows)))

        try:
            await self.channel.subscribe()
        except ChannelUnavailableError as exc:
            logger.error("channel for %s unavailable: %s", self.conversation_id, exc)
            if not self._stale(generation):
                self.state = LoadState.ERROR
                self.error = exc
                self._notify()
            raise
        if self._stale(generation):
            return self.state

        head = self.cache.head
        await self._catch_up(generation, head.created_at if head else started_at, hidden)
        if self._stale(generation):
            return self.state

        self._loaded = True
        self.state = LoadState.READY
        buffered, self._buffer = self._buffer, []
        for kind, frame in buffered:
            self._apply(kind, frame)
        logger.info(
            "conversation %s ready with %d message(s), %d replayed",
            self.conversation_id, len(self.cache), len(buffered),
        )
        self._notify()
        if self.is_focused:
            self._schedule_receipts(self.reconciler.pending_ids())
        return self.state

    async def retry(self) -> LoadState:
        if self.state is not LoadState.ERROR:
            return self.state
        self.state = LoadState.IDLE
        return await self.initialize()

    def set_focused(self, focused: bool) -> None:
        was_focused, self.is_focused = self.is_focused, focused
        if focused and not was_focused and self._loaded:
            self._schedule_receipts(self.reconciler.pending_ids())

    async def mark_visible(self, message_ids: Iterable[str]) -> ReceiptResult:
        result = await self.reconciler.on_messages_become_visible(message_ids, self.is_focused)
        if result.updated_ids:
            self._notify()
        return result

    def hide_message(self, message_id: str) -> bool:
        self.deletions.hide(message_id)
        removed = self.cache.remove(message_id)
        if removed:
            self._notify()
        return removed

    async def wait_for_receipts(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def teardown(self) -> None:
        if self.state is LoadState.CLOSED:
            return
        self._generation += 1
        self.state = LoadState.CLOSED
        self._loaded = False
        self._buffer.clear()
        self.reconciler.close()
        self.channel.detach()
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()
        await self.channel.unsubscribe()
        logger.debug("conversation %s torn down", self.conversation_id)

    def _stale(self, generation: int) -> bool:
        return generation != self._generation

    def _on_event(self, kind: str, generation: int, frame: Dict[str, Any]) -> None:
        if self._stale(generation):
            return
        if not self._loaded:
            self._buffer.append((kind, frame))
            return
        self._apply(kind, frame)

    def _apply(self, kind: str, frame: Dict[str, Any]) -> None:
        message = self._parse(frame)
        if message is None:
            return
        if kind == "INSERT":
            self._insert(message)
        elif self.cache.merge(message) is not None:
            self._notify()

    async def _catch_up(self, generation: int, since: datetime, hidden: Iterable[str]) -> None:
        try:
            rows = await self._messages.list_since(self.conversation_id, since, exclude_ids=hidden)
        except TRANSIENT_ERRORS as exc:
            logger.warning("catch-up fetch failed for %s: %s", self.conversation_id, exc)
            return
        if self._stale(generation):
            return
        for message in self._validate_rows(rows):
            self._insert(message)

    def _insert(self, message: Message) -> bool:
        if message.conversation_id != self.conversation_id:
            logger.warning("dropping message %s for conversation %s", message.id, message.conversation_id)
            return False
        if self.deletions.is_hidden(message.id) or not self.cache.insert(message):
            return False
        if message.is_peer_authored(self.viewer_id):
            if self._aggregator is not None:
                self._aggregator.add_message(message)
            if self._on_new_message is not None:
                self._on_new_message(message)
            if self.is_focused:
                self._schedule_receipts([message.id])
        self._notify()
        return True

    def _schedule_receipts(self, message_ids: List[str]) -> None:
        if not message_ids:
            return
        task = asyncio.create_task(self.reconciler.on_messages_become_visible(message_ids, self.is_focused))
        self._tasks.add(task)
        task.add_done_callback(self._receipts_done)

    def _receipts_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("receipt task failed for %s", self.conversation_id, exc_info=exc)
            return
        if task.result().updated_ids and self.state is not LoadState.CLOSED:
            self._notify()

    def _parse(self, frame: Dict[str, Any]) -> Optional[Message]:
        try:
            return parse_change(frame)
        except EventValidationError as exc:
            logger.warning("dropping malformed change event on %s: %s", self.conversation_id, exc)
            return None

    def _validate_rows(self, rows: Iterable[Dict[str, Any]]) -> List[Message]:
        messages = []
        for row in rows:
            try:
                messages.append(Message.model_validate(row))
            except ValidationError as exc:
                logger.warning("dropping malformed row in %s: %s", self.conversation_id, exc.errors())
        return messages

    def _notify(self) -> None:
        if self._on_change is not None:
            self._on_change(self)

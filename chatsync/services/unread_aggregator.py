import logging
from collections import OrderedDict
from typing import Any, Callable, Dict, List, Optional

from chatsync.errors import TRANSIENT_ERRORS, EventValidationError
from chatsync.repositories.conversation_repository import ConversationRepository
from chatsync.repositories.deletion_repository import DeletionRepository
from chatsync.repositories.message_repository import MessageRepository
from chatsync.schemas.message import Message
from chatsync.schemas.unread import UnreadSummary
from chatsync.utils.realtime_channel import RealtimeChannel, parse_change, user_topic


logger = logging.getLogger(__name__)

Listener = Callable[[UnreadSummary], None]


class UnreadAggregator:
    """Single per-user owner of the cross-conversation unread counter."""

    def __init__(
        self,
        user_id: str,
        messages: MessageRepository,
        conversations: ConversationRepository,
        deletions: DeletionRepository,
        chat_service=None,
        max_tracked_ids: int = 1024,
    ) -> None:
        self.user_id = user_id
        self._messages = messages
        self._conversations = conversations
        self._deletions = deletions
        self._chat_service = chat_service
        self.unread_count = 0
        self.last_message: Optional[Message] = None
        self.active_conversation_id: Optional[str] = None
        self._counted: "OrderedDict[str, None]" = OrderedDict()
        self._max_tracked_ids = max_tracked_ids
        self._listeners: List[Listener] = []
        self._channel: Optional[RealtimeChannel] = None

    def summary(self) -> UnreadSummary:
        return UnreadSummary(
            unread_count=self.unread_count,
            last_message=self.last_message,
            active_conversation_id=self.active_conversation_id,
        )

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def add_message(self, message: Message) -> bool:
        if message.author_id == self.user_id:
            return False
        # the focused conversation is handled by the receipt reconciler
        if message.conversation_id == self.active_conversation_id:
            return False
        if message.read_at is not None or message.id in self._counted:
            return False
        self._track(message.id)
        self.unread_count += 1
        self.last_message = message
        self._notify()
        return True

    def set_active_conversation_id(self, conversation_id: Optional[str]) -> None:
        if self.active_conversation_id == conversation_id:
            return
        self.active_conversation_id = conversation_id
        self._notify()

    async def fetch_unread_count(self) -> int:
        try:
            conversation_ids = await self._conversations.list_ids_for_user(self.user_id)
            hidden = await self._deletions.list_message_ids(self.user_id)
            count = await self._messages.count_unread(conversation_ids, self.user_id, exclude_ids=hidden)
        except TRANSIENT_ERRORS as exc:
            logger.warning("unread recount failed for %s, keeping %d: %s", self.user_id, self.unread_count, exc)
            return self.unread_count
        self.unread_count = max(0, count)
        self._notify()
        return self.unread_count

    async def mark_conversation_read(self, conversation_id: str) -> int:
        if self._chat_service is None:
            raise RuntimeError("mark_conversation_read needs a chat service")
        try:
            await self._chat_service.mark_conversation_read(conversation_id, self.user_id)
        except TRANSIENT_ERRORS as exc:
            logger.warning("marking %s read failed: %s", conversation_id, exc)
            return self.unread_count
        if self.last_message is not None and self.last_message.conversation_id == conversation_id:
            self.last_message = None
        return await self.fetch_unread_count()

    def clear(self) -> None:
        self.unread_count = 0
        self.last_message = None
        self.active_conversation_id = None
        self._counted.clear()
        self._notify()

    async def attach(self, bus) -> None:
        if self._channel is not None:
            return
        channel = RealtimeChannel(bus, user_topic(self.user_id)).on("INSERT", self._on_insert)
        self._channel = channel
        await channel.subscribe()

    async def detach(self) -> None:
        if self._channel is None:
            return
        channel, self._channel = self._channel, None
        await channel.unsubscribe()

    def _on_insert(self, frame: Dict[str, Any]) -> None:
        try:
            message = parse_change(frame)
        except EventValidationError as exc:
            logger.warning("dropping malformed inbox event for %s: %s", self.user_id, exc)
            return
        self.add_message(message)

    def _track(self, message_id: str) -> None:
        self._counted[message_id] = None
        while len(self._counted) > self._max_tracked_ids:
            self._counted.popitem(last=False)

    def _notify(self) -> None:
        summary = self.summary()
        for listener in list(self._listeners):
            listener(summary)

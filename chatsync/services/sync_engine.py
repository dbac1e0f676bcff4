import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set

from chatsync.errors import LoadState, ReceiptResult
from chatsync.repositories.conversation_repository import ConversationRepository
from chatsync.repositories.deletion_repository import DeletionRepository
from chatsync.repositories.device_repository import DeviceRepository
from chatsync.repositories.message_repository import MessageRepository
from chatsync.schemas.app_config import AppConfig
from chatsync.schemas.message import Message
from chatsync.schemas.unread import UnreadSummary
from chatsync.services.badge_sync import BadgeSync
from chatsync.services.chat_service import ChatService
from chatsync.services.deletion_filter import DeletionFilter
from chatsync.services.message_cache import MessageCache
from chatsync.services.receipt_reconciler import ReceiptReconciler
from chatsync.services.subscription_manager import SubscriptionManager
from chatsync.services.typing_presence import TypingPresence
from chatsync.services.unread_aggregator import UnreadAggregator


logger = logging.getLogger(__name__)

Emit = Callable[[Dict[str, Any]], Awaitable[None]]


class SyncEngine:
    """Per-user wiring of the sync components, driven by focus transitions.

    At most one conversation is focused at a time. ``emit`` receives JSON-ready
    frames for the client: ``snapshot``, ``typing`` and ``unread``.
    """

    def __init__(
        self,
        user_id: str,
        *,
        bus,
        messages: MessageRepository,
        conversations: ConversationRepository,
        deletions: DeletionRepository,
        devices: DeviceRepository,
        chat_service: ChatService,
        badge_api,
        config: Optional[AppConfig] = None,
        emit: Optional[Emit] = None,
        call_later=None,
    ) -> None:
        self.user_id = user_id
        self._bus = bus
        self._messages = messages
        self._deletions = deletions
        self._chat_service = chat_service
        self.config = config if config is not None else AppConfig()
        self._emit = emit
        self._call_later = call_later
        self.foreground = True
        self.manager: Optional[SubscriptionManager] = None
        self.typing: Optional[TypingPresence] = None
        self._tasks: Set[asyncio.Task] = set()

        self.aggregator = UnreadAggregator(user_id, messages, conversations, deletions, chat_service=chat_service)
        self.badge = BadgeSync(user_id, devices, badge_api, enabled=self.config.badge_enabled)
        self.aggregator.add_listener(self._on_unread_changed)

    async def start(self) -> UnreadSummary:
        await self.aggregator.attach(self._bus)
        await self.aggregator.fetch_unread_count()
        return self.aggregator.summary()

    async def focus(self, conversation_id: str) -> SubscriptionManager:
        if self.manager is not None and self.manager.conversation_id == conversation_id:
            return self.manager
        await self._chat_service.require_participant(conversation_id, self.user_id)
        await self.unfocus(refresh=False)
        self.aggregator.set_active_conversation_id(conversation_id)

        cache = MessageCache(conversation_id)
        reconciler = ReceiptReconciler(
            self._messages, cache, self.user_id, on_written=self._on_receipts_written
        )
        manager = SubscriptionManager(
            conversation_id,
            self.user_id,
            bus=self._bus,
            messages=self._messages,
            deletions=DeletionFilter(self._deletions, self.user_id),
            cache=cache,
            reconciler=reconciler,
            aggregator=self.aggregator,
            history_limit=self.config.history_limit,
            on_change=self._on_cache_changed,
            on_new_message=self._on_new_message,
        )
        typing = TypingPresence(
            manager.channel,
            self.user_id,
            timeout_ms=self.config.typing_timeout_ms,
            call_later=self._call_later,
            on_change=self._on_typing_changed,
        )
        manager.set_focused(self.foreground)
        typing.set_focused(self.foreground)
        self.manager, self.typing = manager, typing
        await manager.initialize()
        return manager

    async def unfocus(self, refresh: bool = True) -> None:
        manager, typing = self.manager, self.typing
        self.manager, self.typing = None, None
        if typing is not None:
            typing.close()
        if manager is not None:
            await manager.teardown()
            self.aggregator.set_active_conversation_id(None)
        if refresh:
            await self.aggregator.fetch_unread_count()

    async def set_foreground(self, foreground: bool) -> None:
        self.foreground = foreground
        if self.manager is not None:
            self.manager.set_focused(foreground)
        if self.typing is not None:
            self.typing.set_focused(foreground)
        if foreground:
            await self.aggregator.fetch_unread_count()

    async def retry(self) -> Optional[LoadState]:
        if self.manager is None:
            return None
        return await self.manager.retry()

    async def mark_visible(self, message_ids: Iterable[str]) -> ReceiptResult:
        if self.manager is None:
            return ReceiptResult()
        return await self.manager.mark_visible(message_ids)

    async def send_typing(self) -> None:
        if self.typing is None:
            return
        await self.typing.send_typing_event(self.user_id)

    async def delete_for_self(self, message_id: str) -> bool:
        await self._chat_service.delete_for_self(message_id, self.user_id)
        if self.manager is not None:
            return self.manager.hide_message(message_id)
        return False

    async def close(self) -> None:
        await self.unfocus(refresh=False)
        await self.aggregator.detach()
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()

    async def wait_idle(self) -> None:
        if self.manager is not None:
            await self.manager.wait_for_receipts()
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _on_receipts_written(self, message_ids: List[str]) -> None:
        await self._chat_service.publish_receipts(message_ids)
        await self.aggregator.fetch_unread_count()

    def _on_cache_changed(self, manager: SubscriptionManager) -> None:
        if manager is not self.manager:
            return
        self._send({
            "type": "snapshot",
            "conversation_id": manager.conversation_id,
            "state": manager.state.value,
            "messages": [m.to_row() for m in manager.messages()],
        })

    def _on_new_message(self, message: Message) -> None:
        # the partner stopped typing once their message lands
        if self.typing is not None:
            self.typing.clear()

    def _on_typing_changed(self, partner_typing: bool) -> None:
        self._send({"type": "typing", "partner_typing": partner_typing})

    def _on_unread_changed(self, summary: UnreadSummary) -> None:
        self._spawn(self.badge.sync_unread(summary.unread_count))
        self._send({"type": "unread", **summary.model_dump(mode="json")})

    def _send(self, frame: Dict[str, Any]) -> None:
        if self._emit is not None:
            self._spawn(self._emit(frame))

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("engine task failed for %s", self.user_id, exc_info=task.exception())

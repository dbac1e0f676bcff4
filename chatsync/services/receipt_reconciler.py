import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable, Iterable, List, Optional, Set

from chatsync.errors import TRANSIENT_ERRORS, ReceiptResult
from chatsync.repositories.message_repository import MessageRepository
from chatsync.services.message_cache import MessageCache


logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]
OnWritten = Callable[[List[str]], Awaitable[None]]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ReceiptReconciler:
    """Marks peer-authored messages delivered and read, once, while focused.

    Delivered and read are written together with one timestamp at view time;
    there is no separate delivered-on-arrival write.
    """

    def __init__(
        self,
        repository: MessageRepository,
        cache: MessageCache,
        viewer_id: str,
        clock: Clock = utcnow,
        on_written: Optional[OnWritten] = None,
    ) -> None:
        self._repository = repository
        self._cache = cache
        self.viewer_id = viewer_id
        self._clock = clock
        self._on_written = on_written
        self._in_flight: Set[str] = set()
        self._closed = False

    def pending_ids(self, message_ids: Optional[Iterable[str]] = None) -> List[str]:
        if message_ids is None:
            candidates = self._cache.ids()
        else:
            candidates = message_ids
        pending: List[str] = []
        seen: Set[str] = set()
        for message_id in candidates:
            if message_id in seen or message_id in self._in_flight:
                continue
            seen.add(message_id)
            message = self._cache.get(message_id)
            if message is None or not message.is_peer_authored(self.viewer_id):
                continue
            if message.has_receipts:
                continue
            pending.append(message_id)
        return pending

    async def on_messages_become_visible(self, message_ids: Iterable[str], is_focused: bool) -> ReceiptResult:
        if not is_focused or self._closed:
            return ReceiptResult()
        pending = self.pending_ids(message_ids)
        if not pending:
            return ReceiptResult()

        now = self._clock()
        self._in_flight.update(pending)
        try:
            await self._repository.mark_receipts(pending, now)
        except TRANSIENT_ERRORS as exc:
            logger.warning("receipt write failed for %d message(s): %s", len(pending), exc)
            return ReceiptResult(error=exc)
        finally:
            self._in_flight.difference_update(pending)

        if not self._closed:
            self._cache.apply_receipts(pending, now)
        if self._on_written is not None:
            try:
                await self._on_written(pending)
            except TRANSIENT_ERRORS as exc:
                logger.warning("receipt fanout failed: %s", exc)
        return ReceiptResult(updated_ids=tuple(pending))

    def close(self) -> None:
        self._closed = True

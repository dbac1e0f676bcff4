import logging
from typing import FrozenSet, Iterable, List, Set

from chatsync.errors import TRANSIENT_ERRORS
from chatsync.repositories.deletion_repository import DeletionRepository
from chatsync.schemas.message import Message


logger = logging.getLogger(__name__)


class DeletionFilter:
    """Per-viewer tombstones, fetched once per cache initialization.

    Deletions made from another session while the conversation is open are
    not seen until the next ``load()``.
    """

    def __init__(self, repository: DeletionRepository, viewer_id: str) -> None:
        self._repository = repository
        self.viewer_id = viewer_id
        self._hidden: Set[str] = set()
        self.loaded = False

    @property
    def hidden_ids(self) -> FrozenSet[str]:
        return frozenset(self._hidden)

    def __contains__(self, message_id: object) -> bool:
        return message_id in self._hidden

    def is_hidden(self, message_id: str) -> bool:
        return message_id in self._hidden

    async def load(self) -> FrozenSet[str]:
        try:
            ids = await self._repository.list_message_ids(self.viewer_id)
        except TRANSIENT_ERRORS as exc:
            # fail open: tombstones re-apply on the next load
            logger.warning("tombstone fetch failed for viewer %s, continuing without: %s", self.viewer_id, exc)
            ids = []
        self._hidden = set(ids)
        self.loaded = True
        return self.hidden_ids

    def hide(self, message_id: str) -> None:
        self._hidden.add(message_id)

    def apply(self, messages: Iterable[Message]) -> List[Message]:
        return [m for m in messages if m.id not in self._hidden]

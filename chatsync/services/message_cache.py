from bisect import bisect_left
from datetime import datetime
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

from chatsync.schemas.message import Message


SortKey = Tuple[float, str]


def sort_key(message: Message) -> SortKey:
    # newest first, ties by id ascending
    return (-message.created_at.timestamp(), message.id)


class MessageCache:
    """Ordered, deduplicated view of one conversation's messages."""

    def __init__(self, conversation_id: str) -> None:
        self.conversation_id = conversation_id
        self._keys: List[SortKey] = []
        self._messages: List[Message] = []
        self._by_id: Dict[str, Message] = {}

    def __len__(self) -> int:
        return len(self._messages)

    def __contains__(self, message_id: object) -> bool:
        return message_id in self._by_id

    def __iter__(self) -> Iterator[Message]:
        return iter(list(self._messages))

    @property
    def head(self) -> Optional[Message]:
        return self._messages[0] if self._messages else None

    def get(self, message_id: str) -> Optional[Message]:
        return self._by_id.get(message_id)

    def snapshot(self) -> List[Message]:
        return list(self._messages)

    def ids(self) -> List[str]:
        return [m.id for m in self._messages]

    def load(self, messages: Iterable[Message]) -> None:
        self._keys.clear()
        self._messages.clear()
        self._by_id.clear()
        for message in messages:
            self.insert(message)

    def insert(self, message: Message) -> bool:
        if message.id in self._by_id or message.conversation_id != self.conversation_id:
            return False
        key = sort_key(message)
        index = bisect_left(self._keys, key)
        self._keys.insert(index, key)
        self._messages.insert(index, message)
        self._by_id[message.id] = message
        return True

    def remove(self, message_id: str) -> bool:
        message = self._by_id.pop(message_id, None)
        if message is None:
            return False
        index = bisect_left(self._keys, sort_key(message))
        del self._keys[index]
        del self._messages[index]
        return True

    def merge(self, incoming: Message) -> Optional[Message]:
        """Fold the mutable fields of ``incoming`` into the cached copy.

        Receipts only move from null to set and ``media_expired`` only from
        False to True; every other field keeps the cached value. Returns the
        updated message, or None when the id is unknown or nothing changed.
        """
        current = self._by_id.get(incoming.id)
        if current is None:
            return None
        delivered_at = current.delivered_at or incoming.delivered_at
        read_at = current.read_at or incoming.read_at
        if read_at is not None and delivered_at is None:
            delivered_at = read_at
        changes: Dict[str, object] = {}
        if delivered_at != current.delivered_at:
            changes["delivered_at"] = delivered_at
        if read_at != current.read_at:
            changes["read_at"] = read_at
        if incoming.media_expired and not current.media_expired:
            changes["media_expired"] = True
            changes["media_path"] = None
        if not changes:
            return None
        return self._replace(current.model_copy(update=changes))

    def apply_receipts(self, message_ids: Iterable[str], now: datetime) -> List[str]:
        updated = []
        for message_id in message_ids:
            current = self._by_id.get(message_id)
            if current is None:
                continue
            stamped = current.model_copy(update={"delivered_at": now, "read_at": now})
            if self.merge(stamped) is not None:
                updated.append(message_id)
        return updated

    def _replace(self, message: Message) -> Message:
        index = bisect_left(self._keys, sort_key(message))
        self._messages[index] = message
        self._by_id[message.id] = message
        return message

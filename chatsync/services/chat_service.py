import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from chatsync.repositories.conversation_repository import ConversationRepository, peer_of
from chatsync.repositories.deletion_repository import DeletionRepository
from chatsync.repositories.message_repository import MessageRepository
from chatsync.schemas.message import Message
from chatsync.utils.realtime_channel import conversation_topic, publish_change, user_topic


logger = logging.getLogger(__name__)

MEDIA_PREVIEWS = {"image": "Sent an image", "video": "Sent a video"}


class ChatService:

    def __init__(
        self,
        message_repo: MessageRepository,
        conversation_repo: ConversationRepository,
        deletion_repo: DeletionRepository,
        bus,
    ) -> None:
        self._message_repo = message_repo
        self._conversation_repo = conversation_repo
        self._deletion_repo = deletion_repo
        self._bus = bus

    async def open_conversation(self, user_id: str, peer_id: str) -> Dict[str, Any]:
        return await self._conversation_repo.get_or_create_one_to_one(user_id, peer_id)

    async def send_message(self, conversation_id: str, author_id: str, content: str) -> Message:
        if not content or not content.strip():
            raise ValueError("Message content cannot be empty")
        conversation = await self.require_participant(conversation_id, author_id)
        doc = await self._message_repo.insert_message(conversation_id, author_id, content.strip())
        message = Message.model_validate(doc)
        await self._conversation_repo.update_on_new_message(conversation_id, message.content[:200])
        await self._fan_out_insert(message, peer_of(conversation, author_id))
        return message

    async def send_media_message(self, conversation_id: str, author_id: str, media_path: str, media_type: str) -> Message:
        if media_type not in MEDIA_PREVIEWS:
            raise ValueError(f"Unsupported media type: {media_type}")
        conversation = await self.require_participant(conversation_id, author_id)
        doc = await self._message_repo.insert_message(
            conversation_id,
            author_id,
            MEDIA_PREVIEWS[media_type],
            kind=media_type,
            media_path=media_path,
            media_type=media_type,
        )
        message = Message.model_validate(doc)
        await self._conversation_repo.update_on_new_message(conversation_id, message.content)
        await self._fan_out_insert(message, peer_of(conversation, author_id))
        return message

    async def delete_for_self(self, message_id: str, viewer_id: str) -> bool:
        return await self._deletion_repo.create(message_id, viewer_id)

    async def mark_conversation_read(self, conversation_id: str, reader_id: str) -> List[str]:
        await self.require_participant(conversation_id, reader_id)
        ids = await self._message_repo.list_unread_ids(conversation_id, reader_id)
        if not ids:
            return []
        await self._message_repo.mark_receipts(ids, datetime.now(timezone.utc))
        await self.publish_receipts(ids)
        logger.info("marked %d message(s) read in %s for %s", len(ids), conversation_id, reader_id)
        return ids

    async def publish_receipts(self, message_ids: Iterable[str]) -> None:
        rows = await self._message_repo.get_by_ids(message_ids)
        for row in rows:
            message = Message.model_validate(row)
            await publish_change(self._bus, conversation_topic(message.conversation_id), "UPDATE", message.to_row())

    async def get_history(self, conversation_id: str, viewer_id: str, limit: int = 1000) -> List[Message]:
        await self.require_participant(conversation_id, viewer_id)
        hidden = await self._deletion_repo.list_message_ids(viewer_id)
        rows = await self._message_repo.list_for_conversation(conversation_id, exclude_ids=hidden, limit=limit)
        return [Message.model_validate(row) for row in rows]

    async def list_conversations(self, user_id: str, limit: int = 20, cursor: Optional[str] = None) -> Tuple[List[Dict[str, Any]], Optional[str]]:
        return await self._conversation_repo.list_for_user(user_id, limit=limit, cursor=cursor)

    async def count_unread(self, user_id: str) -> int:
        conversation_ids = await self._conversation_repo.list_ids_for_user(user_id)
        hidden = await self._deletion_repo.list_message_ids(user_id)
        return await self._message_repo.count_unread(conversation_ids, user_id, exclude_ids=hidden)

    async def require_participant(self, conversation_id: str, user_id: str) -> Dict[str, Any]:
        conversation = await self._conversation_repo.get(conversation_id)
        if conversation is None:
            raise LookupError(f"Conversation {conversation_id} not found")
        if user_id not in conversation.get("participants", []):
            raise PermissionError(f"{user_id} is not a participant of {conversation_id}")
        return conversation

    async def _fan_out_insert(self, message: Message, peer_id: Optional[str]) -> None:
        row = message.to_row()
        await publish_change(self._bus, conversation_topic(message.conversation_id), "INSERT", row)
        if peer_id:
            await publish_change(self._bus, user_topic(peer_id), "INSERT", row)

from fastapi import Depends, Header, HTTPException

from chatsync.database.connection import mongo_db_dependency
from chatsync.repositories.conversation_repository import ConversationRepository
from chatsync.repositories.deletion_repository import DeletionRepository
from chatsync.repositories.message_repository import MessageRepository
from chatsync.services.chat_service import ChatService
from chatsync.utils.realtime_bus import get_bus


async def get_current_user_id(x_user_id: str = Header(default="")) -> str:
    # sessions are verified upstream; the gateway forwards the user id
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing user id")
    return x_user_id


async def get_chat_service(db = Depends(mongo_db_dependency)) -> ChatService:
    bus = await get_bus()
    return ChatService(MessageRepository(db), ConversationRepository(db), DeletionRepository(db), bus)

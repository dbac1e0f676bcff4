from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from chatsync.services.chat_service import ChatService
from chatsync.utils.app_config import app_config
from chatsync.utils.dependencies import get_chat_service, get_current_user_id


router = APIRouter(prefix="/conversations", tags=["chat"])


@router.get("")
async def list_conversations(limit: int = Query(20, ge=1, le=100), cursor: Optional[str] = None, user_id: str = Depends(get_current_user_id), service: ChatService = Depends(get_chat_service)):
    try:
        items, next_cursor = await service.list_conversations(user_id, limit=limit, cursor=cursor)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return {"items": items, "next_cursor": next_cursor}


@router.post("/{peer_id}")
async def open_conversation(peer_id: str, user_id: str = Depends(get_current_user_id), service: ChatService = Depends(get_chat_service)):
    try:
        conversation = await service.open_conversation(user_id, peer_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return {"conversation": conversation}


@router.get("/{conversation_id}/messages")
async def list_messages(conversation_id: str, user_id: str = Depends(get_current_user_id), service: ChatService = Depends(get_chat_service)):
    try:
        messages = await service.get_history(conversation_id, user_id, limit=app_config.current().history_limit)
    except LookupError:
        raise HTTPException(status_code=404, detail="Conversation not found")
    except PermissionError:
        raise HTTPException(status_code=403, detail="Not a participant")
    return {"items": [m.to_row() for m in messages]}

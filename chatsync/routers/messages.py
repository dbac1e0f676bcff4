from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile

from chatsync.database.connection import mongo_db_dependency
from chatsync.schemas.message import MarkRead, MessageCreate
from chatsync.services.chat_service import ChatService
from chatsync.services.media_upload import MediaUploadPipeline
from chatsync.utils.app_config import app_config
from chatsync.utils.dependencies import get_chat_service, get_current_user_id
from chatsync.utils.media_store import MediaStore


router = APIRouter(prefix="/messages", tags=["chat"])


@router.post("")
async def send_message(body: MessageCreate, user_id: str = Depends(get_current_user_id), service: ChatService = Depends(get_chat_service)):
    try:
        message = await service.send_message(body.conversation_id, user_id, body.content)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except LookupError:
        raise HTTPException(status_code=404, detail="Conversation not found")
    except PermissionError:
        raise HTTPException(status_code=403, detail="Not a participant")
    return {"message": message.to_row()}


@router.post("/media")
async def upload_media(
    conversation_id: str = Form(...),
    media_type: str = Form(...),
    file: UploadFile = File(...),
    user_id: str = Depends(get_current_user_id),
    service: ChatService = Depends(get_chat_service),
    db = Depends(mongo_db_dependency),
):
    pipeline = MediaUploadPipeline(MediaStore(db, app_config.current().media_bucket), service)
    data = await file.read()
    try:
        result = await pipeline.upload_media(
            conversation_id, user_id, data, media_type, file.content_type or "application/octet-stream"
        )
    except LookupError:
        raise HTTPException(status_code=404, detail="Conversation not found")
    except PermissionError:
        raise HTTPException(status_code=403, detail="Not a participant")
    if not result.ok:
        raise HTTPException(status_code=502 if result.path else 400, detail=str(result.error))
    return {"ok": True, "path": result.path, "message_id": result.message_id}


@router.delete("/{message_id}")
async def delete_for_self(message_id: str, user_id: str = Depends(get_current_user_id), service: ChatService = Depends(get_chat_service)):
    created = await service.delete_for_self(message_id, user_id)
    return {"deleted": True, "created": created}


@router.post("/read")
async def mark_read(body: MarkRead, user_id: str = Depends(get_current_user_id), service: ChatService = Depends(get_chat_service)):
    try:
        ids = await service.mark_conversation_read(body.conversation_id, user_id)
    except LookupError:
        raise HTTPException(status_code=404, detail="Conversation not found")
    except PermissionError:
        raise HTTPException(status_code=403, detail="Not a participant")
    return {"updated": len(ids)}


@router.get("/unread")
async def get_unread(user_id: str = Depends(get_current_user_id), service: ChatService = Depends(get_chat_service)):
    return {"unread_count": await service.count_unread(user_id)}

import logging

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from chatsync.database.connection import mongo_db_dependency
from chatsync.errors import ChannelUnavailableError
from chatsync.repositories.conversation_repository import ConversationRepository
from chatsync.repositories.deletion_repository import DeletionRepository
from chatsync.repositories.device_repository import DeviceRepository
from chatsync.repositories.message_repository import MessageRepository
from chatsync.schemas.realtime import ClientCommand
from chatsync.services.chat_service import ChatService
from chatsync.services.sync_engine import SyncEngine
from chatsync.utils.app_config import app_config
from chatsync.utils.notifications import get_badge_api
from chatsync.utils.realtime_bus import get_bus


logger = logging.getLogger(__name__)

router = APIRouter(tags=["sync"])


async def build_engine(user_id: str, db, websocket: WebSocket) -> SyncEngine:
    bus = await get_bus()
    messages = MessageRepository(db)
    conversations = ConversationRepository(db)
    deletions = DeletionRepository(db)
    return SyncEngine(
        user_id,
        bus=bus,
        messages=messages,
        conversations=conversations,
        deletions=deletions,
        devices=DeviceRepository(db),
        chat_service=ChatService(messages, conversations, deletions, bus),
        badge_api=await get_badge_api(),
        config=app_config.current(),
        emit=websocket.send_json,
    )


async def handle_command(engine: SyncEngine, command: ClientCommand) -> None:
    if command.type == "focus":
        if not command.conversation_id:
            raise ValueError("focus needs conversation_id")
        await engine.focus(command.conversation_id)
    elif command.type == "unfocus":
        await engine.unfocus()
    elif command.type == "visible":
        await engine.mark_visible(command.message_ids)
    elif command.type == "typing":
        await engine.send_typing()
    elif command.type == "foreground":
        await engine.set_foreground(bool(command.value))
    elif command.type == "delete":
        if not command.message_id:
            raise ValueError("delete needs message_id")
        await engine.delete_for_self(command.message_id)
    elif command.type == "retry":
        await engine.retry()
    elif command.type == "mark_read":
        if not command.conversation_id:
            raise ValueError("mark_read needs conversation_id")
        await engine.aggregator.mark_conversation_read(command.conversation_id)


@router.websocket("/ws/sync/{user_id}")
async def sync_socket(websocket: WebSocket, user_id: str, db = Depends(mongo_db_dependency)):
    await websocket.accept()
    engine = await build_engine(user_id, db, websocket)
    try:
        await engine.start()
        while True:
            try:
                command = ClientCommand.model_validate(await websocket.receive_json())
                await handle_command(engine, command)
            except (ValidationError, ValueError) as exc:
                # undecodable text frames land here too
                logger.warning("bad sync command from %s: %s", user_id, exc)
                await websocket.send_json({"type": "error", "detail": "Invalid command payload"})
            except LookupError:
                await websocket.send_json({"type": "error", "detail": "Conversation not found"})
            except PermissionError:
                logger.warning("%s tried to open a conversation they are not part of", user_id)
                await websocket.send_json({"type": "error", "detail": "Not a participant"})
            except ChannelUnavailableError:
                await websocket.send_json({"type": "error", "detail": "Conversation channel unavailable"})
    except WebSocketDisconnect:
        logger.info("sync socket closed for %s", user_id)
    finally:
        await engine.close()

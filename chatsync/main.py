from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI

from chatsync.config import settings
from chatsync.database.connection import close_mongo_connection, connect_to_mongo, get_database
from chatsync.log import configure_logging
from chatsync.repositories.conversation_repository import ConversationRepository
from chatsync.repositories.deletion_repository import DeletionRepository
from chatsync.repositories.device_repository import DeviceRepository
from chatsync.repositories.message_repository import MessageRepository
from chatsync.routers.conversations import router as conversations_router
from chatsync.routers.devices import router as devices_router
from chatsync.routers.messages import router as messages_router
from chatsync.routers.sync import router as sync_router
from chatsync.utils.app_config import app_config
from chatsync.utils.dependencies import get_current_user_id
from chatsync.utils.realtime_bus import close_bus


@asynccontextmanager
async def lifespan(app: FastAPI):

    configure_logging()
    await connect_to_mongo()
    db = get_database()
    for repo in (MessageRepository(db), DeletionRepository(db), ConversationRepository(db), DeviceRepository(db)):
        await repo.ensure_indexes()
    await app_config.preload(db)
    try:
        yield
    finally:
        await close_bus()
        await close_mongo_connection()


app = FastAPI(title=settings.APP_NAME, version=settings.VERSION, lifespan=lifespan)


app.include_router(conversations_router)
app.include_router(messages_router)
app.include_router(devices_router)
app.include_router(sync_router)


@app.get("/")
async def root():

    db = get_database()
    collections = await db.list_collection_names()
    return {"message": "chatsync is running", "collections": collections}


@app.post("/config/reload")
async def reload_app_config(user_id: str = Depends(get_current_user_id)):
    app_config.invalidate()
    config = await app_config.preload(get_database())
    return {"config": config.model_dump()}

import logging
import secrets
import time
from typing import Optional

from chatsync.errors import TRANSIENT_ERRORS, TransientNetworkError, UploadError, UploadResult
from chatsync.services.chat_service import ChatService
from chatsync.utils.media_store import MediaStore


logger = logging.getLogger(__name__)

EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/png": "png",
    "image/gif": "gif",
    "image/webp": "webp",
    "video/mp4": "mp4",
    "video/quicktime": "mov",
    "video/webm": "webm",
}
DEFAULT_EXTENSIONS = {"image": "jpg", "video": "mp4"}


def build_media_path(conversation_id: str, ext: str, now_ms: Optional[int] = None, token: Optional[str] = None) -> str:
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    if token is None:
        token = secrets.token_hex(3)
    return f"{conversation_id}/{now_ms}_{token}.{ext}"


class MediaUploadPipeline:
    """Uploads a media asset, then inserts the message row pointing at it."""

    def __init__(self, media_store: MediaStore, chat_service: ChatService) -> None:
        self._media_store = media_store
        self._chat_service = chat_service

    async def upload_media(
        self,
        conversation_id: str,
        author_id: str,
        data: bytes,
        media_type: str,
        content_type: str,
    ) -> UploadResult:
        if media_type not in DEFAULT_EXTENSIONS:
            return UploadResult(error=UploadError(f"Unsupported media type: {media_type}"))
        if not data:
            return UploadResult(error=UploadError("Empty upload"))

        await self._chat_service.require_participant(conversation_id, author_id)

        ext = EXTENSIONS.get(content_type, DEFAULT_EXTENSIONS[media_type])
        path = build_media_path(conversation_id, ext)
        try:
            await self._media_store.upload_bytes(path, data, content_type)
        except TRANSIENT_ERRORS as exc:
            logger.warning("media upload to %s failed: %s", path, exc)
            return UploadResult(error=UploadError(f"Failed to upload {media_type}"))

        try:
            message = await self._chat_service.send_media_message(conversation_id, author_id, path, media_type)
        except TRANSIENT_ERRORS as exc:
            logger.warning("media row insert for %s failed: %s", path, exc)
            await self._discard(path)
            return UploadResult(path=path, error=TransientNetworkError(str(exc)))
        logger.info("media %s uploaded to %s as message %s", media_type, path, message.id)
        return UploadResult(path=path, message_id=message.id)

    async def _discard(self, path: str) -> None:
        try:
            await self._media_store.delete(path)
        except TRANSIENT_ERRORS as exc:
            logger.error("could not remove orphaned media %s: %s", path, exc)

import logging
import time
from typing import Optional

from motor.motor_asyncio import AsyncIOMotorDatabase

from pydantic import ValidationError

from chatsync.errors import TRANSIENT_ERRORS
from chatsync.schemas.app_config import AppConfig


logger = logging.getLogger(__name__)


class AppConfigStore:
    """Process-wide cache of the ``app_config`` row.

    ``current()`` never does I/O: it returns the last loaded snapshot, or the
    defaults before the first ``preload()`` and after ``invalidate()``.
    """

    def __init__(self) -> None:
        self._snapshot = AppConfig()
        self._loaded_at: Optional[float] = None

    @property
    def loaded(self) -> bool:
        return self._loaded_at is not None

    def age_seconds(self) -> Optional[float]:
        if self._loaded_at is None:
            return None
        return time.monotonic() - self._loaded_at

    async def preload(self, db: AsyncIOMotorDatabase) -> AppConfig:
        try:
            doc = await db["app_config"].find_one({})
        except TRANSIENT_ERRORS as exc:
            logger.warning("app config fetch failed, keeping current snapshot: %s", exc)
            return self._snapshot
        if doc is None:
            logger.info("no app_config row, using defaults")
            self._snapshot = AppConfig()
        else:
            doc.pop("_id", None)
            try:
                self._snapshot = AppConfig.model_validate(doc)
            except ValidationError as exc:
                logger.warning("invalid app_config row, keeping current snapshot: %s", exc.errors())
                return self._snapshot
        self._loaded_at = time.monotonic()
        return self._snapshot

    def invalidate(self) -> None:
        self._snapshot = AppConfig()
        self._loaded_at = None

    def current(self) -> AppConfig:
        return self._snapshot


app_config = AppConfigStore()

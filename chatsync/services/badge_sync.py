import logging
from typing import Optional

from chatsync.errors import TRANSIENT_ERRORS
from chatsync.repositories.device_repository import DeviceRepository


logger = logging.getLogger(__name__)

BADGE_PLATFORM = "ios"


class BadgeSync:
    """Writes new matches + unread messages to the app icon badge.

    Best effort: only iOS devices carry a badge, and a failed write is logged
    and forgotten.
    """

    def __init__(self, user_id: str, devices: DeviceRepository, badge_api, enabled: bool = True) -> None:
        self.user_id = user_id
        self._devices = devices
        self._badge_api = badge_api
        self.enabled = enabled
        self.new_matches = 0
        self.last_synced: Optional[int] = None

    async def sync_badge_count(self, new_matches: int, unread: int) -> int:
        total = max(0, new_matches + unread)
        if not self.enabled or not getattr(self._badge_api, "enabled", False):
            return total
        if total == self.last_synced:
            return total
        try:
            tokens = await self._devices.get_tokens(self.user_id, platform=BADGE_PLATFORM)
        except TRANSIENT_ERRORS as exc:
            logger.warning("badge device lookup failed for %s: %s", self.user_id, exc)
            return total
        if not tokens:
            return total
        try:
            await self._badge_api.set_badge(tokens, total)
        except Exception:
            logger.exception("failed to set badge count for %s", self.user_id)
            return total
        self.last_synced = total
        return total

    async def sync_unread(self, unread: int) -> int:
        return await self.sync_badge_count(self.new_matches, unread)

    async def clear_badge(self) -> int:
        self.new_matches = 0
        return await self.sync_badge_count(0, 0)

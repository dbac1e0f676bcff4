import asyncio
import logging
from typing import List

from pyfcm import FCMNotification

from chatsync.config import settings


logger = logging.getLogger(__name__)


class NoopBadgeApi:

    enabled = False

    async def set_badge(self, tokens: List[str], count: int) -> int:
        return 0


class FcmBadgeApi:
    """Sets the iOS app icon badge through an APNs override on FCM."""

    enabled = True

    def __init__(self, service_account_file: str, project_id: str) -> None:
        self._client = FCMNotification(service_account_file=service_account_file, project_id=project_id)

    async def set_badge(self, tokens: List[str], count: int) -> int:
        sent = 0
        for token in tokens:
            # pyfcm is sync
            await asyncio.to_thread(self._notify, token, count)
            sent += 1
        return sent

    def _notify(self, token: str, count: int) -> None:
        self._client.notify(
            fcm_token=token,
            apns_config={
                "headers": {"apns-push-type": "background", "apns-priority": "5"},
                "payload": {"aps": {"badge": count, "content-available": 1}},
            },
        )


_badge_api = None


async def get_badge_api():
    global _badge_api
    if _badge_api is not None:
        return _badge_api
    if settings.FCM_SERVICE_ACCOUNT_FILE and settings.FCM_PROJECT_ID:
        _badge_api = FcmBadgeApi(settings.FCM_SERVICE_ACCOUNT_FILE, settings.FCM_PROJECT_ID)
    else:
        logger.info("FCM not configured, badge updates disabled")
        _badge_api = NoopBadgeApi()
    return _badge_api

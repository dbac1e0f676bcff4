from datetime import datetime
from typing import Literal, TypedDict


DevicePlatform = Literal["ios", "android", "webpush"]


class DeviceDocument(TypedDict, total=False):
    _id: str
    user_id: str
    platform: DevicePlatform
    token: str
    last_seen_at: datetime

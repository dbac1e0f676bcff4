from pydantic import BaseModel, Field

from chatsync.models.device import DevicePlatform


class DeviceRegister(BaseModel):

    platform: DevicePlatform
    token: str = Field(min_length=1)

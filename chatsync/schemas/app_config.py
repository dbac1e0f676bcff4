from pydantic import BaseModel, ConfigDict, Field


class AppConfig(BaseModel):

    model_config = ConfigDict(frozen=True, extra="ignore")

    typing_timeout_ms: int = Field(default=3000, gt=0)
    history_limit: int = Field(default=1000, gt=0)
    badge_enabled: bool = True
    media_bucket: str = "chat_media"

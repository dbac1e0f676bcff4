from datetime import datetime, timezone
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class Message(BaseModel):

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    id: str = Field(alias="_id", min_length=1)
    conversation_id: str = Field(min_length=1)
    author_id: str = Field(min_length=1)
    kind: Literal["text", "image", "video"] = "text"
    content: Optional[str] = None
    created_at: datetime
    delivered_at: Optional[datetime] = None
    read_at: Optional[datetime] = None
    media_path: Optional[str] = None
    media_type: Optional[Literal["image", "video"]] = None
    media_expires_at: Optional[datetime] = None
    media_expired: bool = False

    @field_validator("id", "conversation_id", "author_id", mode="before")
    @classmethod
    def _stringify_ids(cls, value: Any) -> Any:
        # ObjectId straight from motor
        if value is not None and not isinstance(value, str):
            return str(value)
        return value

    @field_validator("created_at", "delivered_at", "read_at", "media_expires_at")
    @classmethod
    def _assume_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @model_validator(mode="before")
    @classmethod
    def _normalize_row(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        row = dict(data)
        if row.get("read_at") is not None and row.get("delivered_at") is None:
            row["delivered_at"] = row["read_at"]
        if not row.get("kind") and row.get("media_type"):
            row["kind"] = row["media_type"]
        return row

    @property
    def has_receipts(self) -> bool:
        return self.delivered_at is not None and self.read_at is not None

    def is_peer_authored(self, viewer_id: str) -> bool:
        return self.author_id != viewer_id

    def to_row(self) -> dict:
        return self.model_dump(mode="json")


class MessageCreate(BaseModel):

    conversation_id: str
    content: str = Field(min_length=1, max_length=4000)


class MarkRead(BaseModel):

    conversation_id: str

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class ChangeEvent(BaseModel):
    """Row change frame published on a conversation or user topic."""

    type: Literal["INSERT", "UPDATE"]
    table: str = "messages"
    new: Dict[str, Any]


class BroadcastEvent(BaseModel):
    """Ephemeral frame, never persisted."""

    type: Literal["broadcast"] = "broadcast"
    event: str
    payload: Dict[str, Any] = Field(default_factory=dict)


class TypingEvent(BaseModel):

    model_config = ConfigDict(frozen=True)

    user_id: str = Field(min_length=1)
    sent_at_ms: Optional[int] = None


class ClientCommand(BaseModel):
    """Frame sent by a client over the sync socket."""

    type: Literal["focus", "unfocus", "visible", "typing", "foreground", "delete", "retry", "mark_read"]
    conversation_id: Optional[str] = None
    message_ids: List[str] = Field(default_factory=list)
    message_id: Optional[str] = None
    value: Optional[bool] = None

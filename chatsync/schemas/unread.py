from typing import Optional

from pydantic import BaseModel, Field

from chatsync.schemas.message import Message


class UnreadSummary(BaseModel):

    unread_count: int = Field(default=0, ge=0)
    last_message: Optional[Message] = None
    active_conversation_id: Optional[str] = None

from datetime import datetime
from typing import Literal, Optional, TypedDict


MessageKind = Literal["text", "image", "video"]


class MessageDocument(TypedDict, total=False):
    _id: str
    conversation_id: str
    author_id: str
    kind: MessageKind
    content: Optional[str]
    created_at: datetime
    # receipts, set together at view time
    delivered_at: Optional[datetime]
    read_at: Optional[datetime]
    # media pointer, null once media_expired is set
    media_path: Optional[str]
    media_type: Optional[Literal["image", "video"]]
    media_expires_at: Optional[datetime]
    media_expired: bool

from datetime import datetime
from typing import List, Optional, TypedDict


class ConversationDocument(TypedDict, total=False):
    _id: str
    # sorted pair of linked partners
    participants: List[str]
    last_message_at: datetime
    last_message_preview: Optional[str]

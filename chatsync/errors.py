from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Tuple

from pymongo.errors import PyMongoError
from redis.exceptions import RedisError


class ChatSyncError(Exception):
    pass


class TransientNetworkError(ChatSyncError):
    """Fetch, update or connect failure that is worth retrying."""


class EventValidationError(ChatSyncError):
    """A realtime payload did not match the expected schema."""


class ChannelUnavailableError(ChatSyncError):
    """The realtime channel for a conversation could not be created."""


class UploadError(ChatSyncError):
    pass


# Collaborator failures the engine turns into typed results instead of crashing.
TRANSIENT_ERRORS = (PyMongoError, RedisError, ConnectionError, TransientNetworkError)


class LoadState(str, Enum):

    IDLE = "idle"
    LOADING = "loading"
    READY = "ready"
    ERROR = "error"
    CLOSED = "closed"


@dataclass(frozen=True)
class ReceiptResult:

    updated_ids: Tuple[str, ...] = ()
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class UploadResult:

    path: Optional[str] = None
    message_id: Optional[str] = None
    error: Optional[Exception] = field(default=None)

    @property
    def ok(self) -> bool:
        return self.error is None

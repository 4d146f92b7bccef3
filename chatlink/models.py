"""Data models and schemas for chatlink."""

import logging
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

logger = logging.getLogger(__name__)


class MessageType(str, Enum):
    """Message content types."""

    TEXT = "text"
    IMAGE = "image"
    FILE = "file"
    SYSTEM = "system"


class MessageStatus(str, Enum):
    """Delivery status of a message."""

    SENDING = "sending"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"


class ConnectionState(str, Enum):
    """Transport connection state."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    ERROR = "error"


class Sender(BaseModel):
    """Author of a message."""

    id: str
    name: str
    avatar: Optional[str] = None


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str) and value:
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            logger.warning(f"Invalid timestamp {value!r}, using current time")
    return datetime.now(timezone.utc)


class Message(BaseModel):
    """A chat message. Identity is ``id``."""

    # Accept camelCase keys from HTTP payloads as well as field names
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str
    type: MessageType = MessageType.TEXT
    content: str = ""
    sender: Sender
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    status: Optional[MessageStatus] = None
    is_own: bool = False
    metadata: Optional[dict[str, Any]] = None

    @classmethod
    def from_event_data(cls, data: dict[str, Any]) -> "Message":
        """
        Build a Message from the payload of a ``chat.message.sent`` event.

        Args:
            data: The ``data`` field of the inbound envelope

        Returns:
            Parsed Message with status ``delivered``
        """
        msg_id = data.get("id") or f"ws-{int(time.time() * 1000)}"
        content = data.get("message") or data.get("content") or ""

        try:
            msg_type = MessageType(data.get("type") or MessageType.TEXT)
        except ValueError:
            logger.debug(f"Unknown message type {data.get('type')!r}, treating as text")
            msg_type = MessageType.TEXT

        sender = Sender(
            id=data.get("sender_id") or data.get("user_id") or "unknown",
            name=data.get("sender_name") or "User",
            avatar=data.get("sender_avatar"),
        )

        return cls(
            id=msg_id,
            type=msg_type,
            content=content,
            sender=sender,
            timestamp=_parse_timestamp(data.get("timestamp")),
            status=MessageStatus.DELIVERED,
            is_own=False,
            metadata=data.get("metadata"),
        )

    def to_command_data(self) -> dict[str, Any]:
        """Payload of an outbound ``chat.message.sent`` command."""
        return {
            "id": self.id,
            "message": self.content,
            "content": self.content,
            "type": self.type.value,
            "timestamp": self.timestamp.isoformat(),
            "sender_id": self.sender.id,
            "sender_name": self.sender.name,
        }


class PaginationState(BaseModel):
    """Snapshot of the message window's cursors and flags."""

    model_config = ConfigDict(frozen=True)

    window_size: int
    load_more_threshold: int
    oldest_id: Optional[str] = None
    newest_id: Optional[str] = None
    has_more_older: bool = True
    has_more_newer: bool = False
    is_loading_older: bool = False
    is_loading_newer: bool = False
    total_count: int = 0


class Config(BaseModel):
    """Configuration model."""

    # Endpoints
    ws_url: str = "ws://localhost:8080"
    http_url: Optional[str] = None
    api_key: Optional[str] = None

    # Identity
    user_id: Optional[str] = None
    user_name: str = "You"
    tenant_id: Optional[str] = None
    project_id: Optional[str] = None

    # Message window settings
    window_size: int = 200
    load_more_threshold: int = 20

    # Reconnect settings
    max_reconnect_attempts: int = 5
    initial_backoff_sec: float = 1.0
    max_backoff_sec: float = 30.0

    # Timing
    ping_interval_sec: float = 30.0
    connect_timeout_sec: float = 10.0
    http_timeout_sec: float = 10.0

"""
Wire envelope model and newline-delimited JSON codec.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ValidationError

from chatlink.transport.exceptions import ProtocolError

logger = logging.getLogger(__name__)

SUBSCRIBED_EVENTS = (
    "chat.message.sent",
    "chat.streaming",
    "user.joined",
    "user.left",
    "typing.start",
    "typing.stop",
)


class EnvelopeType(str, Enum):
    """Frame types."""

    SUBSCRIBE = "subscribe"
    UNSUBSCRIBE = "unsubscribe"
    COMMAND = "command"
    EVENT = "event"
    PING = "ping"
    PONG = "pong"
    ERROR = "error"


class Envelope(BaseModel):
    """A single wire frame."""

    id: Optional[str] = None
    type: EnvelopeType
    action: Optional[str] = None
    tenant_id: Optional[str] = None
    project_id: Optional[str] = None
    user_id: Optional[str] = None
    data: Optional[Any] = None
    error: Optional[str] = None
    timestamp: Optional[str] = None


@dataclass
class DecodedFrame:
    """Result of decoding one socket message."""

    envelopes: list[Envelope] = field(default_factory=list)
    errors: list[ProtocolError] = field(default_factory=list)


def encode(envelope: Envelope) -> str:
    """Serialize an envelope to a single JSON line."""
    return envelope.model_dump_json(exclude_none=True)


def decode(frame: str) -> DecodedFrame:
    """
    Decode a socket message into envelopes.

    A message may carry several newline-delimited JSON objects. Each line is
    decoded on its own; a bad line is reported in ``errors`` and the others
    are still returned.

    Args:
        frame: Raw text of the socket message

    Returns:
        DecodedFrame with envelopes in textual order and one error per bad line
    """
    result = DecodedFrame()

    for line_no, line in enumerate(frame.split("\n"), start=1):
        line = line.strip()
        if not line:
            continue

        try:
            result.envelopes.append(Envelope.model_validate_json(line))
        except ValidationError as e:
            logger.warning(f"Failed to decode frame line {line_no}: {e.error_count()} error(s)")
            result.errors.append(
                ProtocolError(f"Malformed frame line {line_no}: {e}", line_no=line_no, raw=line)
            )

    return result


def ping() -> Envelope:
    """Keepalive frame."""
    return Envelope(type=EnvelopeType.PING)


def subscribe_envelope(
    events=SUBSCRIBED_EVENTS,
    tenant_id: Optional[str] = None,
    project_id: Optional[str] = None,
) -> Envelope:
    """Frame subscribing to the given event names."""
    return Envelope(
        type=EnvelopeType.SUBSCRIBE,
        data={
            "tenant_id": tenant_id,
            "project_id": project_id,
            "events": list(events),
        },
    )

"""
Realtime websocket transport with robust reconnection logic.
"""

from chatlink.transport.client import ChatTransport
from chatlink.transport.envelope import (
    SUBSCRIBED_EVENTS,
    DecodedFrame,
    Envelope,
    EnvelopeType,
    decode,
    encode,
)
from chatlink.transport.http import HTTPChatService
from chatlink.transport.reconnect import ReconnectionManager
from chatlink.transport.websocket import ChatWebSocket
from chatlink.transport.exceptions import (
    ChatLinkError,
    AuthError,
    TransportError,
    ConnectionLostError,
    MaxReconnectAttemptsError,
    ProtocolError,
    ServerError,
    LoadError,
    SendError,
    NotConnectedError,
    HTTPServiceError,
)

__all__ = [
    "ChatTransport",
    "ChatWebSocket",
    "HTTPChatService",
    "ReconnectionManager",
    "SUBSCRIBED_EVENTS",
    "DecodedFrame",
    "Envelope",
    "EnvelopeType",
    "decode",
    "encode",
    "ChatLinkError",
    "AuthError",
    "TransportError",
    "ConnectionLostError",
    "MaxReconnectAttemptsError",
    "ProtocolError",
    "ServerError",
    "LoadError",
    "SendError",
    "NotConnectedError",
    "HTTPServiceError",
]

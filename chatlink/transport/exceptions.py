"""
Custom exceptions for the chatlink transport and message window.
"""

from typing import Optional


class ChatLinkError(Exception):
    """Base exception for all chatlink errors."""
    pass


class AuthError(ChatLinkError):
    """No auth token available, or the token fetch failed."""
    pass


class TransportError(ChatLinkError):
    """Socket-level failure (error event or abnormal close)."""
    pass


class ConnectionLostError(TransportError):
    """WebSocket connection was lost after it had been opened."""

    def __init__(self, message: str, code: Optional[int] = None):
        super().__init__(message)
        self.code = code


class MaxReconnectAttemptsError(TransportError):
    """Maximum reconnection attempts exceeded."""
    pass


class ProtocolError(ChatLinkError):
    """A line of an inbound frame could not be decoded."""

    def __init__(self, message: str, line_no: int = 0, raw: str = ""):
        super().__init__(message)
        self.line_no = line_no
        self.raw = raw


class ServerError(ChatLinkError):
    """Failure reported by the server in an ``error`` frame."""
    pass


class LoadError(ChatLinkError):
    """History fetch failed; the window was left unchanged."""
    pass


class SendError(ChatLinkError):
    """A message could not be sent."""
    pass


class NotConnectedError(SendError):
    """send() was called while the transport is not connected."""
    pass


class HTTPServiceError(ChatLinkError):
    """HTTP chat service returned an error or could not be reached."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status

"""Shared fixtures: an in-memory socket and a manually driven backoff timer."""

import asyncio
import json
from datetime import datetime, timedelta, timezone

import pytest

from chatlink.models import Message, Sender
from chatlink.transport.client import ChatTransport
from chatlink.transport.exceptions import ConnectionLostError, TransportError
from chatlink.transport.reconnect import ReconnectionManager


class FakeSocket:
    """Socket double; the test decides when it opens, fails or closes."""

    def __init__(self, mode: str):
        self.on_open = None
        self.on_message = None
        self.on_close = None
        self.on_error = None
        self.mode = mode
        self.url = None
        self.sent = []
        self.closed = False

    async def open(self, url: str) -> None:
        self.url = url
        if self.mode == "open":
            await self.on_open()
        elif self.mode == "fail":
            self.closed = True
            await self.on_error(TransportError("connection refused"))

    async def send(self, text: str) -> None:
        if self.closed:
            raise ConnectionLostError("WebSocket is not open")
        self.sent.append(text)

    async def close(self) -> None:
        self.closed = True

    # Test drivers

    async def accept(self) -> None:
        await self.on_open()

    async def receive(self, *frames) -> None:
        """Deliver one socket message made of the given dicts, one per line."""
        text = "\n".join(f if isinstance(f, str) else json.dumps(f) for f in frames)
        await self.on_message(text)

    async def server_close(self, code: int, reason: str = "") -> None:
        self.closed = True
        await self.on_close(code, reason)

    async def server_error(self) -> None:
        self.closed = True
        await self.on_error(ConnectionLostError("connection reset"))

    def sent_frames(self):
        return [json.loads(text) for text in self.sent]


class FakeSocketFactory:
    """Creates FakeSockets; ``mode`` applies to sockets created afterwards."""

    def __init__(self):
        self.mode = "open"
        self.sockets = []

    def __call__(self) -> FakeSocket:
        socket = FakeSocket(self.mode)
        self.sockets.append(socket)
        return socket

    @property
    def last(self) -> FakeSocket:
        return self.sockets[-1]


class FakeTimerHandle:
    def __init__(self):
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class RecordingReconnectionManager(ReconnectionManager):
    """Backoff policy whose timers only fire when the test says so."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.scheduled = []

    def schedule(self, delay, callback):
        handle = FakeTimerHandle()
        self.scheduled.append((delay, callback, handle))
        return handle

    @property
    def delays(self):
        return [delay for delay, _, _ in self.scheduled]

    async def fire(self) -> None:
        """Run the most recent timer callback and let the reconnect settle."""
        _, callback, handle = self.scheduled[-1]
        assert not handle.cancelled
        callback()
        for _ in range(5):
            await asyncio.sleep(0)


class Recorder:
    """Collects connection states and errors reported by a transport."""

    def __init__(self, transport: ChatTransport):
        self.states = []
        self.errors = []
        transport.on_connection_change(self.states.append)
        transport.on_error(self.errors.append)


def make_message(msg_id: str, minutes: int = 0, **kwargs) -> Message:
    base = datetime(2024, 1, 1, tzinfo=timezone.utc)
    kwargs.setdefault("content", f"message {msg_id}")
    kwargs.setdefault("sender", Sender(id="u1", name="Alice"))
    return Message(id=msg_id, timestamp=base + timedelta(minutes=minutes), **kwargs)


async def static_token():
    return "secret-token"


@pytest.fixture
def socket_factory():
    return FakeSocketFactory()


@pytest.fixture
def manager():
    return RecordingReconnectionManager(initial_backoff=1.0, max_backoff=30.0, max_attempts=5)


@pytest.fixture
def transport(socket_factory, manager):
    return ChatTransport(
        base_url="ws://chat.test/",
        get_auth_token=static_token,
        user_id="me",
        tenant_id="t1",
        project_id="p1",
        ping_interval=3600,
        reconnection_manager=manager,
        socket_factory=socket_factory,
    )


@pytest.fixture
def recorder(transport):
    return Recorder(transport)


@pytest.fixture
def message_factory():
    return make_message

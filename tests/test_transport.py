"""Tests for the chat transport state machine."""

import asyncio

import pytest

from chatlink.models import Config, ConnectionState, MessageType, Sender
from chatlink.transport.client import ChatTransport
from chatlink.transport.envelope import Envelope, EnvelopeType
from chatlink.transport.exceptions import (
    AuthError,
    ConnectionLostError,
    MaxReconnectAttemptsError,
    NotConnectedError,
    ProtocolError,
    ServerError,
    TransportError,
)

from conftest import Recorder, make_message


def event(action, **data):
    return {"type": "event", "action": action, "data": data}


@pytest.mark.asyncio
async def test_connect_subscribes_and_reports_connected(transport, socket_factory, recorder):
    await transport.connect()

    assert transport.is_connected()
    assert transport.get_connection_state() == ConnectionState.CONNECTED
    assert recorder.states == [ConnectionState.CONNECTING, ConnectionState.CONNECTED]

    socket = socket_factory.last
    assert socket.url == "ws://chat.test/ws?token=secret-token"

    frames = socket.sent_frames()
    assert frames[0]["type"] == "subscribe"
    assert frames[0]["data"]["tenant_id"] == "t1"
    assert "typing.start" in frames[0]["data"]["events"]

    await transport.disconnect()


@pytest.mark.asyncio
async def test_connect_is_noop_while_connected(transport, socket_factory):
    await transport.connect()
    await transport.connect()

    assert len(socket_factory.sockets) == 1
    await transport.disconnect()


@pytest.mark.asyncio
async def test_normal_close_does_not_reconnect(transport, socket_factory, manager, recorder):
    await transport.connect()

    await socket_factory.last.server_close(1000, "bye")

    assert transport.state == ConnectionState.DISCONNECTED
    assert manager.scheduled == []
    assert recorder.errors == []


@pytest.mark.asyncio
async def test_abnormal_close_backs_off_then_gives_up(transport, socket_factory, manager, recorder):
    await transport.connect()
    socket_factory.mode = "fail"

    await socket_factory.last.server_close(1006)
    assert transport.state == ConnectionState.RECONNECTING
    assert manager.delays == [1.0]

    for expected in (2.0, 4.0, 8.0, 16.0):
        await manager.fire()
        assert transport.state == ConnectionState.RECONNECTING
        assert manager.delays[-1] == expected

    # The fifth reconnect attempt fails and the policy is exhausted
    await manager.fire()

    assert transport.state == ConnectionState.DISCONNECTED
    assert manager.delays == [1.0, 2.0, 4.0, 8.0, 16.0]
    assert isinstance(recorder.errors[-1], MaxReconnectAttemptsError)
    assert ConnectionState.ERROR not in recorder.states
    assert transport.total_reconnects == 5


@pytest.mark.asyncio
async def test_repeated_drops_with_successful_reopen_keep_connecting(
    transport, socket_factory, manager, recorder
):
    await transport.connect()

    for _ in range(4):
        await socket_factory.last.server_close(1006)
        assert transport.state == ConnectionState.RECONNECTING
        await manager.fire()
        assert transport.state == ConnectionState.CONNECTED

    # Each successful open resets the backoff
    assert manager.delays == [1.0, 1.0, 1.0, 1.0]
    assert ConnectionState.DISCONNECTED not in recorder.states
    assert len(socket_factory.sockets) == 5

    await transport.disconnect()


@pytest.mark.asyncio
async def test_reconnect_attempts_closed_before_open_state_sequence(
    transport, socket_factory, manager, recorder
):
    await transport.connect()
    socket_factory.mode = "pending"

    await socket_factory.last.server_close(1006)
    for _ in range(3):
        await manager.fire()
        assert transport.state == ConnectionState.CONNECTING
        await socket_factory.last.server_close(1006)
        assert transport.state == ConnectionState.RECONNECTING
    await manager.fire()

    assert recorder.states == [
        ConnectionState.CONNECTING,
        ConnectionState.CONNECTED,
        ConnectionState.RECONNECTING,
        ConnectionState.CONNECTING,
        ConnectionState.RECONNECTING,
        ConnectionState.CONNECTING,
        ConnectionState.RECONNECTING,
        ConnectionState.CONNECTING,
        ConnectionState.RECONNECTING,
        ConnectionState.CONNECTING,
    ]
    assert manager.delays == [1.0, 2.0, 4.0, 8.0]
    assert all(isinstance(e, TransportError) for e in recorder.errors)
    assert len(recorder.errors) == 3

    await transport.disconnect()


@pytest.mark.asyncio
async def test_disconnect_cancels_in_flight_reconnect(socket_factory, manager):
    calls = []
    release = asyncio.Event()

    async def token_after_first():
        calls.append(1)
        if len(calls) > 1:
            await release.wait()
        return "tok"

    transport = ChatTransport(
        "ws://chat.test",
        token_after_first,
        reconnection_manager=manager,
        socket_factory=socket_factory,
    )
    await transport.connect()
    await socket_factory.last.server_close(1006)

    await manager.fire()
    task = transport._reconnect_task
    assert task is not None and not task.done()

    await transport.disconnect()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert task.cancelled()
    assert transport._reconnect_task is None
    assert transport.state == ConnectionState.DISCONNECTED
    assert len(socket_factory.sockets) == 1


@pytest.mark.asyncio
async def test_socket_error_while_connected_reconnects(transport, socket_factory, manager, recorder):
    await transport.connect()

    await socket_factory.last.server_error()

    assert transport.state == ConnectionState.RECONNECTING
    assert isinstance(recorder.errors[0], ConnectionLostError)
    assert manager.delays == [1.0]


@pytest.mark.asyncio
async def test_initial_connect_failure_settles_in_error(transport, socket_factory, manager, recorder):
    socket_factory.mode = "fail"

    await transport.connect()

    assert transport.state == ConnectionState.ERROR
    assert isinstance(recorder.errors[0], TransportError)
    assert manager.scheduled == []


@pytest.mark.asyncio
async def test_close_before_open_is_a_failed_attempt(transport, socket_factory, recorder):
    socket_factory.mode = "pending"
    await transport.connect()
    assert transport.state == ConnectionState.CONNECTING

    await socket_factory.last.server_close(1006)

    assert transport.state == ConnectionState.ERROR
    assert isinstance(recorder.errors[0], TransportError)


@pytest.mark.asyncio
async def test_missing_token_is_not_retried(socket_factory, manager):
    async def no_token():
        return None

    transport = ChatTransport(
        "ws://chat.test",
        no_token,
        reconnection_manager=manager,
        socket_factory=socket_factory,
    )
    recorder = Recorder(transport)

    await transport.connect()

    assert transport.state == ConnectionState.ERROR
    assert isinstance(recorder.errors[0], AuthError)
    assert socket_factory.sockets == []
    assert manager.scheduled == []


@pytest.mark.asyncio
async def test_token_provider_failure_is_auth_error(socket_factory):
    async def broken_token():
        raise RuntimeError("vault unavailable")

    transport = ChatTransport("ws://chat.test", broken_token, socket_factory=socket_factory)
    recorder = Recorder(transport)

    await transport.connect()

    assert transport.state == ConnectionState.ERROR
    assert isinstance(recorder.errors[0], AuthError)
    assert "vault unavailable" in str(recorder.errors[0])


@pytest.mark.asyncio
async def test_disconnect_is_idempotent(transport, recorder):
    await transport.connect()

    await transport.disconnect()
    await transport.disconnect()
    await transport.close()

    assert transport.state == ConnectionState.DISCONNECTED
    assert recorder.states.count(ConnectionState.DISCONNECTED) == 1


@pytest.mark.asyncio
async def test_disconnect_cancels_pending_reconnect(transport, socket_factory, manager):
    await transport.connect()
    await socket_factory.last.server_close(1006)

    await transport.disconnect()

    _, _, handle = manager.scheduled[-1]
    assert handle.cancelled
    assert transport.state == ConnectionState.DISCONNECTED
    assert manager.attempts == 0


@pytest.mark.asyncio
async def test_disconnect_while_fetching_token(socket_factory, manager):
    release = asyncio.Event()

    async def slow_token():
        await release.wait()
        return "late-token"

    transport = ChatTransport(
        "ws://chat.test",
        slow_token,
        reconnection_manager=manager,
        socket_factory=socket_factory,
    )

    task = asyncio.create_task(transport.connect())
    await asyncio.sleep(0)
    assert transport.state == ConnectionState.CONNECTING

    await transport.disconnect()
    release.set()
    await task

    assert transport.state == ConnectionState.DISCONNECTED
    assert socket_factory.sockets == []


@pytest.mark.asyncio
async def test_callbacks_from_released_socket_are_ignored(transport, socket_factory):
    received = []
    transport.on_message("chat.message.sent", received.append)
    await transport.connect()
    old = socket_factory.last

    await transport.disconnect()
    await old.receive(event("chat.message.sent", id="m1"))
    await old.server_close(1006)

    assert received == []
    assert transport.state == ConnectionState.DISCONNECTED


@pytest.mark.asyncio
async def test_dispatch_in_order_and_isolates_handler_errors(transport, socket_factory, recorder):
    seen = []

    def broken(envelope):
        raise ValueError("handler bug")

    async def collect(envelope):
        seen.append(envelope.data["id"])

    transport.on_message("chat.message.sent", broken)
    transport.on_message("chat.message.sent", collect)
    await transport.connect()

    await socket_factory.last.receive(
        event("chat.message.sent", id="m1"),
        {"type": "pong"},
        event("chat.message.sent", id="m2"),
        event("user.joined", user_id="u9"),
    )

    assert seen == ["m1", "m2"]
    assert recorder.errors == []
    assert transport.is_connected()

    await transport.disconnect()


@pytest.mark.asyncio
async def test_malformed_line_reported_and_siblings_dispatched(transport, socket_factory, recorder):
    seen = []
    transport.on_message("typing.start", lambda envelope: seen.append(envelope.data["user_id"]))
    await transport.connect()

    await socket_factory.last.receive(
        "{broken",
        event("typing.start", user_id="u2"),
    )

    assert seen == ["u2"]
    assert len(recorder.errors) == 1
    assert isinstance(recorder.errors[0], ProtocolError)
    assert recorder.errors[0].line_no == 1

    await transport.disconnect()


@pytest.mark.asyncio
async def test_server_error_frame_keeps_connection(transport, socket_factory, recorder):
    await transport.connect()

    await socket_factory.last.receive({"type": "error", "error": "rate limited"})

    assert isinstance(recorder.errors[0], ServerError)
    assert "rate limited" in str(recorder.errors[0])
    assert transport.state == ConnectionState.CONNECTED

    await transport.disconnect()


@pytest.mark.asyncio
async def test_handler_disconnect_stops_remaining_envelopes(transport, socket_factory):
    seen = []

    async def stop_on_first(envelope):
        seen.append(envelope.data["id"])
        await transport.disconnect()

    transport.on_message("chat.message.sent", stop_on_first)
    await transport.connect()

    await socket_factory.last.receive(
        event("chat.message.sent", id="m1"),
        event("chat.message.sent", id="m2"),
    )

    assert seen == ["m1"]
    assert transport.state == ConnectionState.DISCONNECTED


@pytest.mark.asyncio
async def test_send_requires_connection(transport):
    with pytest.raises(NotConnectedError):
        await transport.send(Envelope(type=EnvelopeType.PING))

    # Typing indicators are dropped silently while offline
    await transport.send_typing_indicator(True)


@pytest.mark.asyncio
async def test_send_message_command(transport, socket_factory):
    await transport.connect()
    message = make_message("m1", type=MessageType.TEXT, sender=Sender(id="me", name="You"))

    await transport.send_message(message)
    await transport.send_typing_indicator(False)

    frames = socket_factory.last.sent_frames()
    command = frames[1]
    assert command["type"] == "command"
    assert command["action"] == "chat.message.sent"
    assert command["user_id"] == "me"
    assert command["project_id"] == "p1"
    assert command["data"]["message"] == "message m1"
    assert frames[2] == {
        "type": "command",
        "action": "typing.stop",
        "tenant_id": "t1",
        "project_id": "p1",
        "user_id": "me",
        "data": {"user_id": "me"},
    }

    await transport.disconnect()


@pytest.mark.asyncio
async def test_subscribe_connects_when_needed(transport, socket_factory):
    await transport.subscribe()

    assert transport.is_connected()
    assert [f["type"] for f in socket_factory.last.sent_frames()] == ["subscribe"]

    await transport.subscribe()
    assert [f["type"] for f in socket_factory.last.sent_frames()] == ["subscribe", "subscribe"]

    await transport.disconnect()


@pytest.mark.asyncio
async def test_subscribe_raises_when_connect_fails(transport, socket_factory):
    socket_factory.mode = "fail"

    with pytest.raises(NotConnectedError):
        await transport.subscribe()


@pytest.mark.asyncio
async def test_keepalive_sends_ping(socket_factory):
    transport = ChatTransport(
        "ws://chat.test",
        lambda: asyncio.sleep(0, result="tok"),
        ping_interval=0.01,
        socket_factory=socket_factory,
    )
    await transport.connect()

    await asyncio.sleep(0.05)

    types = [f["type"] for f in socket_factory.last.sent_frames()]
    assert types[0] == "subscribe"
    assert "ping" in types

    await transport.disconnect()


@pytest.mark.asyncio
async def test_from_config():
    config = Config(ws_url="ws://example.test", user_id="me", max_reconnect_attempts=2)

    transport = ChatTransport.from_config(config, lambda: asyncio.sleep(0, result="tok"))

    assert transport.state == ConnectionState.DISCONNECTED
    assert transport.is_connected() is False
    assert transport.total_reconnects == 0

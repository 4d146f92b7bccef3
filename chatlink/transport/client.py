"""
Chat transport: one logical websocket connection with reconnection logic.
"""

import asyncio
import inspect
import logging
from functools import partial
from typing import Optional, Callable, Awaitable, Dict, List, Any, Iterable
from urllib.parse import urlencode

from chatlink.models import Config, ConnectionState, Message
from chatlink.transport.envelope import (
    SUBSCRIBED_EVENTS,
    Envelope,
    EnvelopeType,
    decode,
    encode,
    ping,
    subscribe_envelope,
)
from chatlink.transport.exceptions import (
    AuthError,
    ChatLinkError,
    ConnectionLostError,
    MaxReconnectAttemptsError,
    NotConnectedError,
    SendError,
    ServerError,
    TransportError,
)
from chatlink.transport.reconnect import ReconnectionManager
from chatlink.transport.websocket import ChatWebSocket

logger = logging.getLogger(__name__)

NORMAL_CLOSURE = 1000

Handler = Callable[..., Any]


class ChatTransport:
    """
    Chat transport with robust reconnection logic.

    Owns at most one live socket. Connection state changes, decoded events
    and errors are reported to registered handlers; handlers may be plain
    functions or coroutine functions.
    """

    def __init__(
        self,
        base_url: str,
        get_auth_token: Callable[[], Awaitable[Optional[str]]],
        user_id: Optional[str] = None,
        tenant_id: Optional[str] = None,
        project_id: Optional[str] = None,
        ping_interval: float = 30.0,
        reconnection_manager: Optional[ReconnectionManager] = None,
        socket_factory: Optional[Callable[[], ChatWebSocket]] = None,
        subscribe_events: Iterable[str] = SUBSCRIBED_EVENTS,
    ):
        """
        Initialize the transport.

        Args:
            base_url: WebSocket server base URL (``/ws`` is appended)
            get_auth_token: Coroutine function returning a bearer token or None
            user_id: Id of the local user, stamped on outbound commands
            tenant_id: Tenant scope for commands and subscriptions
            project_id: Project scope for commands and subscriptions
            ping_interval: Seconds between keepalive pings
            reconnection_manager: Backoff policy (default 1s..30s, 5 attempts)
            socket_factory: Callable returning a fresh, unopened socket
            subscribe_events: Event names sent in the automatic subscribe
        """
        self._base_url = base_url.rstrip("/")
        self._get_auth_token = get_auth_token
        self._user_id = user_id
        self._tenant_id = tenant_id
        self._project_id = project_id
        self._ping_interval = ping_interval
        self._reconnection_manager = reconnection_manager or ReconnectionManager()
        self._socket_factory = socket_factory or ChatWebSocket
        self._subscribe_events = tuple(subscribe_events)

        self._state = ConnectionState.DISCONNECTED
        self._socket: Optional[ChatWebSocket] = None
        self._generation = 0
        self._keepalive_task: Optional[asyncio.Task] = None
        self._reconnect_timer: Optional[asyncio.TimerHandle] = None
        self._reconnect_task: Optional[asyncio.Task] = None

        self._message_handlers: Dict[str, List[Handler]] = {}
        self._connection_handlers: List[Handler] = []
        self._error_handlers: List[Handler] = []

        # Statistics
        self._total_reconnects = 0

    @classmethod
    def from_config(
        cls,
        config: Config,
        get_auth_token: Callable[[], Awaitable[Optional[str]]],
    ) -> "ChatTransport":
        """Build a transport from a loaded Config."""
        return cls(
            base_url=config.ws_url,
            get_auth_token=get_auth_token,
            user_id=config.user_id,
            tenant_id=config.tenant_id,
            project_id=config.project_id,
            ping_interval=config.ping_interval_sec,
            reconnection_manager=ReconnectionManager(
                initial_backoff=config.initial_backoff_sec,
                max_backoff=config.max_backoff_sec,
                max_attempts=config.max_reconnect_attempts,
            ),
            socket_factory=partial(ChatWebSocket, timeout=config.connect_timeout_sec),
        )

    # Registration

    def on_message(self, action: str, handler: Handler) -> None:
        """Register a handler for ``event`` frames with the given action."""
        self._message_handlers.setdefault(action, []).append(handler)
        logger.debug(f"Registered handler for {action}")

    def on_connection_change(self, handler: Handler) -> None:
        """Register a handler called with each new ConnectionState."""
        self._connection_handlers.append(handler)

    def on_error(self, handler: Handler) -> None:
        """Register a handler called with each ChatLinkError."""
        self._error_handlers.append(handler)

    # Connection lifecycle

    async def connect(self) -> None:
        """
        Open the connection.

        No-op if already connecting or connected. Failures are reported
        through error handlers and the ERROR state, never raised.
        """
        if self._state in (ConnectionState.CONNECTING, ConnectionState.CONNECTED):
            return

        self._cancel_reconnect_timer()
        self._generation += 1
        generation = self._generation

        await self._set_state(ConnectionState.CONNECTING)
        if generation != self._generation:
            return

        try:
            token = await self._get_auth_token()
        except Exception as e:
            if generation == self._generation:
                await self._fail_auth(AuthError(f"Failed to get auth token: {e}"))
            return

        if generation != self._generation:
            logger.debug("Connect attempt superseded while fetching token")
            return

        if not token:
            await self._fail_auth(AuthError("No authentication token available"))
            return

        socket = self._socket_factory()
        socket.on_open = partial(self._handle_open, generation)
        socket.on_message = partial(self._handle_message, generation)
        socket.on_close = partial(self._handle_close, generation)
        socket.on_error = partial(self._handle_error, generation)
        self._socket = socket

        await socket.open(self._build_url(token))

    async def disconnect(self) -> None:
        """Close the connection and cancel all timers. Safe to call repeatedly."""
        self._generation += 1
        self._cancel_reconnect_timer()
        self._stop_keepalive()
        self._reconnection_manager.reset()
        self._cancel_reconnect_task()

        socket = self._socket
        self._socket = None
        if socket is not None:
            await socket.close()

        await self._set_state(ConnectionState.DISCONNECTED)

    async def close(self) -> None:
        """Alias for disconnect()."""
        await self.disconnect()

    # Sending

    async def send(self, envelope: Envelope) -> None:
        """
        Send one envelope.

        Raises:
            NotConnectedError: If the transport is not connected
            SendError: If the socket rejected the frame
        """
        if not self.is_connected():
            raise NotConnectedError("WebSocket not connected")

        try:
            await self._socket.send(encode(envelope))
        except ConnectionLostError as e:
            raise SendError(f"Failed to send {envelope.type.value} frame: {e}") from e

    async def send_message(self, message: Message) -> None:
        """Send a chat message as a ``chat.message.sent`` command."""
        await self.send(self._command("chat.message.sent", message.to_command_data()))

    async def send_typing_indicator(self, is_typing: bool) -> None:
        """Send typing.start/typing.stop. Skipped while disconnected."""
        if not self.is_connected():
            return

        action = "typing.start" if is_typing else "typing.stop"
        await self.send(self._command(action, {"user_id": self._user_id}))

    async def subscribe(self) -> None:
        """
        Subscribe to the configured event set, connecting first if needed.

        Raises:
            NotConnectedError: If the connection could not be established
        """
        if not self.is_connected():
            await self.connect()
            # Entering CONNECTED subscribes on its own
            if not self.is_connected():
                raise NotConnectedError("WebSocket not connected")
            return

        await self._send_subscribe()

    # State

    def is_connected(self) -> bool:
        """Check if currently connected."""
        return (
            self._state == ConnectionState.CONNECTED
            and self._socket is not None
            and not self._socket.closed
        )

    def get_connection_state(self) -> ConnectionState:
        return self._state

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def total_reconnects(self) -> int:
        """Get total number of scheduled reconnections."""
        return self._total_reconnects

    # Socket callbacks

    async def _handle_open(self, generation: int) -> None:
        if generation != self._generation:
            return

        logger.info("WebSocket connected")
        self._state = ConnectionState.CONNECTED
        self._reconnection_manager.reset()

        try:
            await self._send_subscribe()
        except ChatLinkError as e:
            logger.error(f"Failed to subscribe: {e}")
            await self._notify_error_handlers(e)

        if generation != self._generation:
            return

        self._start_keepalive(generation)
        await self._notify_connection_handlers()

    async def _handle_message(self, generation: int, text: str) -> None:
        if generation != self._generation:
            return

        decoded = decode(text)
        for error in decoded.errors:
            await self._notify_error_handlers(error)

        for envelope in decoded.envelopes:
            if generation != self._generation:
                # A handler tore the connection down
                return

            if envelope.type == EnvelopeType.EVENT and envelope.action:
                await self._dispatch(envelope.action, envelope)
            elif envelope.type == EnvelopeType.PONG:
                logger.debug("Received PONG")
            elif envelope.type == EnvelopeType.ERROR:
                logger.error(f"Server error: {envelope.error}")
                await self._notify_error_handlers(
                    ServerError(envelope.error or "Unknown server error")
                )
            else:
                logger.debug(f"Ignoring {envelope.type.value} frame")

    async def _handle_close(self, generation: int, code: int, reason: str = "") -> None:
        if generation != self._generation:
            return

        logger.info(f"WebSocket disconnected (code={code}, reason={reason!r})")
        was_connected = self._state == ConnectionState.CONNECTED
        self._release_socket()

        if not was_connected:
            await self._handle_failed_attempt(
                TransportError(f"WebSocket closed before open (code={code})")
            )
        elif code == NORMAL_CLOSURE:
            await self._set_state(ConnectionState.DISCONNECTED)
        else:
            await self._schedule_reconnect()

    async def _handle_error(self, generation: int, error: ChatLinkError) -> None:
        if generation != self._generation:
            return

        logger.error(f"WebSocket error: {error}")
        was_connected = self._state == ConnectionState.CONNECTED
        socket = self._release_socket()
        if socket is not None:
            await socket.close()

        if was_connected:
            await self._notify_error_handlers(error)
            await self._schedule_reconnect()
        else:
            await self._handle_failed_attempt(error)

    # Reconnection

    async def _handle_failed_attempt(self, error: ChatLinkError) -> None:
        """A connect attempt failed before the socket opened."""
        if self._reconnection_manager.attempts == 0:
            # Initial connect failures are not retried
            await self._set_state(ConnectionState.ERROR)
            await self._notify_error_handlers(error)
            return

        # Still reconnecting: report the error and take the next backoff step
        generation = self._generation
        await self._notify_error_handlers(error)
        if generation == self._generation and self._state == ConnectionState.CONNECTING:
            await self._schedule_reconnect()

    async def _schedule_reconnect(self) -> None:
        delay = self._reconnection_manager.next_delay()
        if delay is None:
            logger.error("Max reconnection attempts reached")
            await self._set_state(ConnectionState.DISCONNECTED)
            await self._notify_error_handlers(
                MaxReconnectAttemptsError(
                    f"Failed to reconnect after {self._reconnection_manager.attempts} attempts"
                )
            )
            return

        self._total_reconnects += 1
        await self._set_state(ConnectionState.RECONNECTING)
        if self._state != ConnectionState.RECONNECTING:
            return

        self._reconnect_timer = self._reconnection_manager.schedule(
            delay, self._on_reconnect_timer
        )

    def _on_reconnect_timer(self) -> None:
        self._reconnect_timer = None
        if self._state != ConnectionState.RECONNECTING:
            return
        self._reconnect_task = asyncio.create_task(self.connect())

    def _cancel_reconnect_timer(self) -> None:
        if self._reconnect_timer is not None:
            self._reconnect_timer.cancel()
            self._reconnect_timer = None

    def _cancel_reconnect_task(self) -> None:
        task = self._reconnect_task
        self._reconnect_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _fail_auth(self, error: AuthError) -> None:
        logger.error(f"Authentication failed: {error}")
        self._reconnection_manager.reset()
        await self._set_state(ConnectionState.ERROR)
        await self._notify_error_handlers(error)

    # Keepalive

    def _start_keepalive(self, generation: int) -> None:
        self._stop_keepalive()
        self._keepalive_task = asyncio.create_task(self._keepalive(generation))

    def _stop_keepalive(self) -> None:
        task = self._keepalive_task
        self._keepalive_task = None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _keepalive(self, generation: int) -> None:
        while generation == self._generation:
            await asyncio.sleep(self._ping_interval)
            if generation != self._generation or not self.is_connected():
                return
            try:
                await self.send(ping())
                logger.debug("Sent PING")
            except ChatLinkError as e:
                logger.warning(f"Keepalive ping failed: {e}")

    # Helpers

    def _release_socket(self) -> Optional[ChatWebSocket]:
        """Detach the current socket; later callbacks from it are ignored."""
        self._generation += 1
        self._stop_keepalive()
        socket = self._socket
        self._socket = None
        return socket

    def _build_url(self, token: str) -> str:
        return f"{self._base_url}/ws?{urlencode({'token': token})}"

    def _command(self, action: str, data: Dict[str, Any]) -> Envelope:
        return Envelope(
            type=EnvelopeType.COMMAND,
            action=action,
            tenant_id=self._tenant_id,
            project_id=self._project_id,
            user_id=self._user_id,
            data=data,
        )

    async def _send_subscribe(self) -> None:
        await self.send(
            subscribe_envelope(
                self._subscribe_events,
                tenant_id=self._tenant_id,
                project_id=self._project_id,
            )
        )

    async def _set_state(self, state: ConnectionState) -> None:
        if state == self._state:
            return
        logger.debug(f"Connection state {self._state.value} -> {state.value}")
        self._state = state
        await self._notify_connection_handlers()

    async def _dispatch(self, action: str, envelope: Envelope) -> None:
        """Dispatch an event to every handler registered for its action."""
        handlers = list(self._message_handlers.get(action, ()))
        if not handlers:
            logger.debug(f"No handlers for {action}")
        for handler in handlers:
            await self._invoke(handler, envelope, label=f"message handler for {action}")

    async def _notify_connection_handlers(self) -> None:
        state = self._state
        for handler in list(self._connection_handlers):
            await self._invoke(handler, state, label="connection handler")

    async def _notify_error_handlers(self, error: ChatLinkError) -> None:
        for handler in list(self._error_handlers):
            await self._invoke(handler, error, label="error handler")

    @staticmethod
    async def _invoke(handler: Handler, *args, label: str) -> None:
        try:
            result = handler(*args)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(f"Error in {label}: {e}", exc_info=True)

"""Chat session wiring the transport, the message window and the HTTP service."""

import inspect
import logging
import uuid
from typing import Any, Awaitable, Callable, Optional

from chatlink.models import Config, Message, MessageStatus, MessageType, Sender
from chatlink.registry import CallbackRegistry
from chatlink.transport.client import ChatTransport
from chatlink.transport.envelope import Envelope
from chatlink.transport.exceptions import ChatLinkError, LoadError
from chatlink.transport.http import HTTPChatService
from chatlink.window import MessageWindow

logger = logging.getLogger(__name__)


class ChatSession:
    """
    One conversation: live events flow from the transport into the window,
    local sends go out over the websocket with an HTTP fallback.
    """

    def __init__(
        self,
        transport: ChatTransport,
        window: MessageWindow,
        http: Optional[HTTPChatService] = None,
        registry: Optional[CallbackRegistry] = None,
        user_id: Optional[str] = None,
        user_name: str = "You",
    ):
        self.transport = transport
        self.window = window
        self.http = http
        self.registry = registry or CallbackRegistry()
        self.user_id = user_id
        self.user_name = user_name

        self.typing_users: dict[str, str] = {}
        self.participants: set[str] = set()
        self._message_listeners: list[Callable[[Message], Any]] = []

        # Register event handlers
        transport.on_message("chat.message.sent", self._handle_incoming_message)
        transport.on_message("typing.start", self._handle_typing_start)
        transport.on_message("typing.stop", self._handle_typing_stop)
        transport.on_message("user.joined", self._handle_user_joined)
        transport.on_message("user.left", self._handle_user_left)
        transport.on_message("chat.streaming", self._handle_streaming)

        logger.info(f"Initialized ChatSession for user {user_id}")

    @classmethod
    def from_config(
        cls,
        config: Config,
        get_auth_token: Callable[[], Awaitable[Optional[str]]],
    ) -> "ChatSession":
        """Build a session, with HTTP history loading when ``http_url`` is set."""
        transport = ChatTransport.from_config(config, get_auth_token)
        http = HTTPChatService.from_config(config) if config.http_url else None

        window = MessageWindow(
            window_size=config.window_size,
            load_more_threshold=config.load_more_threshold,
            on_load_older=http.load_older if http else None,
            on_load_newer=http.load_newer if http else None,
            on_initial_load=http.load_initial if http else None,
        )

        return cls(
            transport=transport,
            window=window,
            http=http,
            user_id=config.user_id,
            user_name=config.user_name,
        )

    def on_message(self, listener: Callable[[Message], Any]) -> None:
        """Register a listener called for each live message added to the window."""
        self._message_listeners.append(listener)

    async def start(self) -> None:
        """Load the latest history page, then connect."""
        try:
            await self.window.load_initial_messages()
        except LoadError as e:
            logger.warning(f"Starting without history: {e}")

        await self.transport.connect()

    async def stop(self) -> None:
        """Disconnect and drop transient presence state."""
        await self.transport.disconnect()
        self.typing_users.clear()
        self.participants.clear()

    async def send_text(self, text: str) -> Optional[Message]:
        """
        Send a text message from the local user.

        The message enters the window as ``sending`` and ends as ``sent`` or
        ``failed``.

        Returns:
            The message with its final status, or None for blank text
        """
        if not text.strip():
            return None

        message = Message(
            id=f"msg-{uuid.uuid4().hex}",
            type=MessageType.TEXT,
            content=text,
            sender=Sender(id=self.user_id or "me", name=self.user_name),
            status=MessageStatus.SENDING,
            is_own=True,
        )
        self.window.add_message(message)

        status = MessageStatus.FAILED
        try:
            if self.transport.is_connected():
                await self.transport.send_message(message)
                status = MessageStatus.SENT
            elif self.http is not None:
                # Fallback to HTTP
                await self.http.send_message(message)
                status = MessageStatus.SENT
            else:
                logger.warning(f"Not connected and no HTTP fallback, message {message.id} not sent")
        except ChatLinkError as e:
            logger.error(f"Error sending message {message.id}: {e}")

        self.window.update_message(message.id, status=status)
        return message.model_copy(update={"status": status})

    async def set_typing(self, is_typing: bool) -> None:
        try:
            await self.transport.send_typing_indicator(is_typing)
        except ChatLinkError as e:
            logger.debug(f"Typing indicator not sent: {e}")

    async def load_older(self) -> int:
        """Scroll-driven older page load; failures are logged, not raised."""
        try:
            return await self.window.load_older_messages()
        except LoadError as e:
            logger.warning(str(e))
            return 0

    async def load_newer(self) -> int:
        """Scroll-driven newer page load; failures are logged, not raised."""
        try:
            return await self.window.load_newer_messages()
        except LoadError as e:
            logger.warning(str(e))
            return 0

    # Event handlers

    def _is_own(self, data: dict[str, Any]) -> bool:
        if self.user_id is None:
            return False
        return data.get("sender_id") == self.user_id or data.get("user_id") == self.user_id

    async def _handle_incoming_message(self, envelope: Envelope) -> None:
        """Handle incoming chat message."""
        data = envelope.data
        if not isinstance(data, dict):
            return

        # Skip own messages echoed back by the server
        if self._is_own(data):
            return

        message = Message.from_event_data(data)
        if not message.content.strip():
            return

        # Remove the sender from typing users once their message arrives
        self.typing_users.pop(message.sender.id, None)

        if not self.window.add_message(message):
            return

        logger.debug(f"Received message {message.id} from {message.sender.name}")
        for listener in list(self._message_listeners):
            try:
                result = listener(message)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Error in message listener: {e}", exc_info=True)

    def _handle_typing_start(self, envelope: Envelope) -> None:
        data = envelope.data
        if not isinstance(data, dict) or not data.get("user_id"):
            return
        if data["user_id"] == self.user_id:
            return
        self.typing_users[data["user_id"]] = data.get("user_name") or "User"

    def _handle_typing_stop(self, envelope: Envelope) -> None:
        data = envelope.data
        if not isinstance(data, dict):
            return
        self.typing_users.pop(data.get("user_id"), None)

    def _handle_user_joined(self, envelope: Envelope) -> None:
        data = envelope.data
        if isinstance(data, dict) and data.get("user_id"):
            self.participants.add(data["user_id"])
            logger.info(f"User joined: {data['user_id']}")

    def _handle_user_left(self, envelope: Envelope) -> None:
        data = envelope.data
        if isinstance(data, dict) and data.get("user_id"):
            self.participants.discard(data["user_id"])
            self.typing_users.pop(data["user_id"], None)
            logger.info(f"User left: {data['user_id']}")

    def _handle_streaming(self, envelope: Envelope) -> None:
        data = envelope.data
        if not isinstance(data, dict) or not data.get("id"):
            return
        self.registry.call(data["id"], bool(data.get("streaming")))

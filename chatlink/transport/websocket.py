"""
WebSocket connection to the chat server.
"""

import aiohttp
import asyncio
import contextlib
import logging
from typing import Optional, Callable, Awaitable, Any

from chatlink.transport.exceptions import (
    ConnectionLostError,
    TransportError,
)

logger = logging.getLogger(__name__)

ABNORMAL_CLOSURE = 1006

Callback = Optional[Callable[..., Awaitable[Any]]]


class ChatWebSocket:
    """
    Socket primitive used by the transport.

    Events are reported through the async callbacks ``on_open()``,
    ``on_message(text)``, ``on_close(code, reason)`` and ``on_error(exc)``.
    A connection produces at most one of ``on_close``/``on_error`` as its
    terminal event. Closing locally via close() produces neither.
    """

    def __init__(self, timeout: float = 10.0):
        self.on_open: Callback = None
        self.on_message: Callback = None
        self.on_close: Callback = None
        self.on_error: Callback = None

        self._timeout = timeout
        self._session: Optional[aiohttp.ClientSession] = None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._closed = False

    async def open(self, url: str) -> None:
        """
        Establish the WebSocket connection and start reading.

        Failures are reported through ``on_error`` rather than raised.

        Args:
            url: Server URL including the auth token query
        """
        logger.info(f"Connecting to {url.split('?', 1)[0]}")

        self._session = aiohttp.ClientSession()
        try:
            self._ws = await asyncio.wait_for(
                self._session.ws_connect(url),
                timeout=self._timeout,
            )
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            closed_locally = self._closed
            self._closed = True
            await self._close_session()
            if not closed_locally:
                error = TransportError(f"WebSocket connection failed: {e or 'timeout'}")
                await self._emit(self.on_error, error)
            return

        if self._closed:
            # close() ran while the handshake was in flight
            await self._ws.close()
            await self._close_session()
            return

        await self._emit(self.on_open)

        if not self._closed:
            self._reader_task = asyncio.create_task(self._read_loop())

    async def _read_loop(self) -> None:
        """Read messages until the connection ends."""
        code: Optional[int] = None
        reason = ""

        try:
            while not self._closed:
                msg = await self._ws.receive()

                if msg.type == aiohttp.WSMsgType.TEXT:
                    await self._emit(self.on_message, msg.data)
                elif msg.type == aiohttp.WSMsgType.BINARY:
                    await self._emit(self.on_message, msg.data.decode("utf-8", errors="replace"))
                elif msg.type == aiohttp.WSMsgType.CLOSE:
                    code = msg.data
                    reason = msg.extra or ""
                    break
                elif msg.type in (aiohttp.WSMsgType.CLOSING, aiohttp.WSMsgType.CLOSED):
                    code = self._ws.close_code
                    break
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    logger.error(f"WebSocket error: {self._ws.exception()}")
                    await self._terminate()
                    await self._emit(
                        self.on_error,
                        ConnectionLostError(f"WebSocket error: {self._ws.exception()}"),
                    )
                    return
                else:
                    logger.warning(f"Unexpected message type: {msg.type}")

        except (aiohttp.ClientError, OSError) as e:
            logger.error(f"Error receiving message: {e}")
            if not self._closed:
                await self._terminate()
                await self._emit(
                    self.on_error,
                    ConnectionLostError(f"Error receiving message: {e}"),
                )
            return

        if self._closed:
            return

        await self._terminate()
        if code is None:
            code = ABNORMAL_CLOSURE
        logger.warning(f"WebSocket closed by server (code={code}, reason={reason!r})")
        await self._emit(self.on_close, code, reason)

    async def send(self, text: str) -> None:
        """Send one text frame."""
        if self._closed or self._ws is None:
            raise ConnectionLostError("WebSocket is not open")

        try:
            await self._ws.send_str(text)
        except Exception as e:
            logger.error(f"Failed to send message: {e}")
            raise ConnectionLostError(f"Failed to send message: {e}")

    async def close(self) -> None:
        """Close the WebSocket connection."""
        if self._closed:
            return

        self._closed = True

        if self._ws is None:
            # Handshake still in flight; open() cleans up when it returns
            return

        task = self._reader_task
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        await self._terminate()
        logger.info("WebSocket connection closed")

    async def _terminate(self) -> None:
        self._closed = True

        try:
            if self._ws is not None and not self._ws.closed:
                await self._ws.close()
        except Exception as e:
            logger.warning(f"Error closing WebSocket: {e}")

        await self._close_session()

    async def _close_session(self) -> None:
        try:
            if self._session is not None and not self._session.closed:
                await self._session.close()
        except Exception as e:
            logger.warning(f"Error closing session: {e}")

    @staticmethod
    async def _emit(callback: Callback, *args) -> None:
        if callback is not None:
            await callback(*args)

    @property
    def closed(self) -> bool:
        """Check if connection is closed."""
        return self._closed

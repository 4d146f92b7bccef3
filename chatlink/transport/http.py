"""
HTTP API for message history, sending and bulk storage.
"""

import aiohttp
import asyncio
from typing import Optional, Dict, Any, List, Tuple
import logging

from chatlink.models import Config, Message
from chatlink.transport.exceptions import HTTPServiceError

logger = logging.getLogger(__name__)


class HTTPChatService:
    """
    REST client for the chat backend.

    Its load_older/load_newer/load_initial methods match the loader
    signatures expected by MessageWindow.
    """

    def __init__(
        self,
        base_url: str,
        user_id: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: float = 10.0,
    ):
        self._base_url = base_url.rstrip("/")
        self._user_id = user_id
        self._api_key = api_key
        self._timeout = aiohttp.ClientTimeout(total=timeout)

    @classmethod
    def from_config(cls, config: Config) -> "HTTPChatService":
        if not config.http_url:
            raise ValueError("http_url is not configured")
        return cls(
            base_url=config.http_url,
            user_id=config.user_id,
            api_key=config.api_key,
            timeout=config.http_timeout_sec,
        )

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        body: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """
        Perform one request and return the decoded JSON body (None if empty).

        Raises:
            HTTPServiceError: On a non-2xx status or network error
        """
        url = f"{self._base_url}{path}"

        try:
            async with aiohttp.ClientSession(timeout=self._timeout) as session:
                async with session.request(
                    method, url, params=params, json=body, headers=self._headers()
                ) as response:
                    if response.status >= 400:
                        try:
                            error_data = await response.json(content_type=None)
                        except ValueError:
                            error_data = None
                        message = None
                        if isinstance(error_data, dict):
                            message = error_data.get("message")
                        raise HTTPServiceError(
                            message or f"HTTP {response.status}: {response.reason}",
                            status=response.status,
                        )

                    text = await response.text()
                    if not text.strip():
                        return None
                    return await response.json(content_type=None)

        except aiohttp.ClientError as e:
            raise HTTPServiceError(f"Network error: {e}")
        except asyncio.TimeoutError:
            raise HTTPServiceError("Request timed out")

    async def load_messages(
        self,
        user_id: Optional[str] = None,
        limit: int = 50,
        before: Optional[str] = None,
        after: Optional[str] = None,
    ) -> Tuple[List[Message], Optional[int]]:
        """
        Fetch a page of messages in ascending timestamp order.

        Args:
            user_id: Conversation owner (defaults to the service's user)
            limit: Maximum number of messages
            before: Only messages older than this id
            after: Only messages newer than this id

        Returns:
            Parsed messages and the total count if the server reported one
        """
        params: Dict[str, Any] = {"limit": limit}
        user_id = user_id or self._user_id
        if user_id:
            params["userId"] = user_id
        if before:
            params["before"] = before
        if after:
            params["after"] = after

        data = await self._request("GET", "/chat/messages", params=params)

        total = None
        if isinstance(data, dict):
            total = data.get("totalCount")
            if total is None:
                total = data.get("total")
            raw_messages = data.get("messages") or []
        else:
            raw_messages = data or []

        messages = [Message.model_validate(raw) for raw in raw_messages]
        logger.debug(f"Loaded {len(messages)} messages (before={before}, after={after})")
        return messages, total

    async def load_older(self, before_id: str, limit: int) -> List[Message]:
        messages, _ = await self.load_messages(limit=limit, before=before_id)
        return messages

    async def load_newer(self, after_id: str, limit: int) -> List[Message]:
        messages, _ = await self.load_messages(limit=limit, after=after_id)
        return messages

    async def load_initial(self, limit: int) -> Tuple[List[Message], int]:
        messages, total = await self.load_messages(limit=limit)
        return messages, total if total is not None else len(messages)

    async def save_messages(self, messages: List[Message], user_id: Optional[str] = None) -> None:
        """Store messages in bulk."""
        await self._request(
            "POST",
            "/chat/messages",
            body={
                "userId": user_id or self._user_id,
                "messages": [m.model_dump(mode="json", by_alias=True) for m in messages],
            },
        )
        logger.info(f"Saved {len(messages)} messages")

    async def delete_messages(self, message_ids: List[str], user_id: Optional[str] = None) -> None:
        """Delete messages by id."""
        await self._request(
            "DELETE",
            "/chat/messages",
            body={"userId": user_id or self._user_id, "messageIds": list(message_ids)},
        )
        logger.info(f"Deleted {len(message_ids)} messages")

    async def send_message(self, message: Message, user_id: Optional[str] = None) -> Message:
        """
        Send a message over HTTP.

        Returns:
            The message as stored by the server (the input if the reply is empty)
        """
        data = await self._request(
            "POST",
            "/chat/send",
            body={
                "userId": user_id or self._user_id,
                "message": message.model_dump(mode="json", by_alias=True),
            },
        )
        if not data:
            return message
        return Message.model_validate(data)

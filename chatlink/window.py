"""Sliding window of messages with bidirectional cursor pagination."""

import logging
from typing import Any, Awaitable, Callable, Iterable, Iterator, List, Optional, Tuple

from chatlink.models import Message, PaginationState
from chatlink.transport.exceptions import LoadError

logger = logging.getLogger(__name__)

PageLoader = Callable[[str, int], Awaitable[List[Message]]]
InitialLoader = Callable[[int], Awaitable[Tuple[List[Message], int]]]


class MessageWindow:
    """
    Keeps at most ``window_size`` messages of a conversation in memory.

    Live messages are appended at the newest end. ``load_older_messages`` and
    ``load_newer_messages`` extend the window through injected loaders and
    trim the opposite end when the window overflows, so a user scrolling up
    keeps the page just fetched and gives up the newest messages instead.

    Usage:
        window = MessageWindow(window_size=200, on_load_older=service.load_older)
        window.add_message(message)
        await window.load_older_messages()
    """

    def __init__(
        self,
        window_size: int = 200,
        load_more_threshold: int = 20,
        initial_messages: Iterable[Message] = (),
        on_load_older: Optional[PageLoader] = None,
        on_load_newer: Optional[PageLoader] = None,
        on_initial_load: Optional[InitialLoader] = None,
        has_more_older: bool = True,
        has_more_newer: bool = False,
    ):
        if window_size < 1:
            raise ValueError("window_size must be at least 1")

        self.window_size = window_size
        self.load_more_threshold = load_more_threshold
        self.on_load_older = on_load_older
        self.on_load_newer = on_load_newer
        self.on_initial_load = on_initial_load

        self._messages: List[Message] = []
        self._ids: set[str] = set()
        self._has_more_older = has_more_older
        # Set when the window was opened somewhere other than the latest page
        self._has_more_newer = has_more_newer
        self._is_loading_older = False
        self._is_loading_newer = False
        self._total_count = 0
        # Bumped by clear_messages() so in-flight loads can detect a reset
        self._epoch = 0

        initial = self._unique(initial_messages)
        if len(initial) > window_size:
            initial = initial[-window_size:]
        self._replace(initial)
        self._total_count = len(initial)

    # Read access

    @property
    def messages(self) -> Tuple[Message, ...]:
        return tuple(self._messages)

    @property
    def pagination(self) -> PaginationState:
        return PaginationState(
            window_size=self.window_size,
            load_more_threshold=self.load_more_threshold,
            oldest_id=self._messages[0].id if self._messages else None,
            newest_id=self._messages[-1].id if self._messages else None,
            has_more_older=self._has_more_older,
            has_more_newer=self._has_more_newer,
            is_loading_older=self._is_loading_older,
            is_loading_newer=self._is_loading_newer,
            total_count=max(self._total_count, len(self._messages)),
        )

    def get_message(self, message_id: str) -> Optional[Message]:
        for message in self._messages:
            if message.id == message_id:
                return message
        return None

    def is_near_top(self, index: int) -> bool:
        """True when a visible index is close enough to the oldest end to prefetch."""
        return index < self.load_more_threshold

    def is_near_bottom(self, index: int) -> bool:
        """True when a visible index is close enough to the newest end to prefetch."""
        return index >= len(self._messages) - self.load_more_threshold

    def __len__(self) -> int:
        return len(self._messages)

    def __contains__(self, message_id: object) -> bool:
        return message_id in self._ids

    def __iter__(self) -> Iterator[Message]:
        return iter(list(self._messages))

    # Live additions

    def add_message(self, message: Message) -> bool:
        """
        Append a message at the newest end.

        Returns:
            False if a message with the same id is already in the window
        """
        if message.id in self._ids:
            logger.debug(f"Ignoring duplicate message {message.id}")
            return False

        self._messages.append(message)
        self._ids.add(message.id)
        self._total_count += 1
        self._trim_front()
        return True

    def add_messages(self, messages: Iterable[Message]) -> int:
        """
        Append a batch at the newest end with a single trim pass.

        Returns:
            Number of messages actually added
        """
        fresh = [m for m in self._unique(messages) if m.id not in self._ids]
        if not fresh:
            return 0

        self._messages.extend(fresh)
        self._ids.update(m.id for m in fresh)
        self._total_count += len(fresh)
        self._trim_front()
        return len(fresh)

    # Pagination

    async def load_older_messages(self) -> int:
        """
        Fetch the page before the oldest message and prepend it.

        No-op when there is nothing older, a load is already running, no
        loader is configured or the window is empty.

        Returns:
            Number of messages prepended

        Raises:
            LoadError: If the loader failed; the window is unchanged
        """
        if not self._has_more_older or self._is_loading_older or self.on_load_older is None:
            return 0
        if not self._messages:
            return 0

        oldest_id = self._messages[0].id
        epoch = self._epoch
        self._is_loading_older = True

        try:
            older = list(await self.on_load_older(oldest_id, self.window_size))
        except Exception as e:
            logger.error(f"Error loading older messages: {e}", exc_info=True)
            if epoch == self._epoch:
                self._is_loading_older = False
            raise LoadError(f"Failed to load messages before {oldest_id}: {e}") from e

        if epoch != self._epoch:
            logger.debug("Discarding older page loaded before the window was cleared")
            return 0

        self._is_loading_older = False

        if not older:
            self._has_more_older = False
            return 0

        fresh = [m for m in self._unique(older) if m.id not in self._ids]
        self._messages[:0] = fresh
        self._ids.update(m.id for m in fresh)
        trimmed = self._trim_back()
        self._has_more_older = len(older) >= self.window_size

        logger.debug(
            f"Loaded {len(older)} older messages "
            f"(added={len(fresh)}, trimmed={trimmed}, window={len(self._messages)})"
        )
        return len(fresh)

    async def load_newer_messages(self) -> int:
        """
        Fetch the page after the newest message and append it.

        Returns:
            Number of messages appended

        Raises:
            LoadError: If the loader failed; the window is unchanged
        """
        if not self._has_more_newer or self._is_loading_newer or self.on_load_newer is None:
            return 0
        if not self._messages:
            return 0

        newest_id = self._messages[-1].id
        epoch = self._epoch
        self._is_loading_newer = True

        try:
            newer = list(await self.on_load_newer(newest_id, self.window_size))
        except Exception as e:
            logger.error(f"Error loading newer messages: {e}", exc_info=True)
            if epoch == self._epoch:
                self._is_loading_newer = False
            raise LoadError(f"Failed to load messages after {newest_id}: {e}") from e

        if epoch != self._epoch:
            logger.debug("Discarding newer page loaded before the window was cleared")
            return 0

        self._is_loading_newer = False

        if not newer:
            self._has_more_newer = False
            return 0

        fresh = [m for m in self._unique(newer) if m.id not in self._ids]
        self._messages.extend(fresh)
        self._ids.update(m.id for m in fresh)
        trimmed = self._trim_front()
        self._has_more_newer = len(newer) >= self.window_size

        logger.debug(
            f"Loaded {len(newer)} newer messages "
            f"(added={len(fresh)}, trimmed={trimmed}, window={len(self._messages)})"
        )
        return len(fresh)

    async def load_initial_messages(self) -> int:
        """
        Replace the window with the latest page from ``on_initial_load``.

        Returns:
            Number of messages in the window afterwards

        Raises:
            LoadError: If the loader failed; the window is unchanged
        """
        if self.on_initial_load is None:
            return len(self._messages)

        epoch = self._epoch
        try:
            messages, total_count = await self.on_initial_load(self.window_size)
        except Exception as e:
            logger.error(f"Error loading initial messages: {e}", exc_info=True)
            raise LoadError(f"Failed to load initial messages: {e}") from e

        if epoch != self._epoch:
            logger.debug("Discarding initial page loaded before the window was cleared")
            return len(self._messages)

        page = self._unique(messages)
        self._has_more_older = len(page) >= self.window_size or total_count > len(page)
        self._has_more_newer = False
        if len(page) > self.window_size:
            page = page[-self.window_size:]
        self._replace(page)
        self._total_count = max(total_count, len(page))

        logger.info(f"Loaded {len(page)} initial messages (total={total_count})")
        return len(page)

    # Mutation

    def update_message(self, message_id: str, **changes: Any) -> bool:
        """
        Merge fields into a message. The id itself cannot be changed.

        Returns:
            False if no message has that id

        Raises:
            ValidationError: If a changed field has the wrong type; the window is unchanged
        """
        changes.pop("id", None)
        for index, message in enumerate(self._messages):
            if message.id == message_id:
                # Re-validate so updated fields keep their declared types
                self._messages[index] = Message.model_validate({**message.model_dump(), **changes})
                return True
        return False

    def remove_message(self, message_id: str) -> bool:
        """Remove a message if present. Pagination flags are left alone."""
        if message_id not in self._ids:
            return False
        self._messages = [m for m in self._messages if m.id != message_id]
        self._ids.discard(message_id)
        return True

    def clear_messages(self) -> None:
        """Empty the window and reset all cursors and flags."""
        self._epoch += 1
        self._replace([])
        self._has_more_older = True
        self._has_more_newer = False
        self._is_loading_older = False
        self._is_loading_newer = False
        self._total_count = 0

    # Helpers

    def _replace(self, messages: List[Message]) -> None:
        self._messages = list(messages)
        self._ids = {m.id for m in self._messages}

    def _trim_front(self) -> int:
        """Evict the oldest messages beyond capacity."""
        overflow = len(self._messages) - self.window_size
        if overflow <= 0:
            return 0
        for message in self._messages[:overflow]:
            self._ids.discard(message.id)
        del self._messages[:overflow]
        self._has_more_older = True
        return overflow

    def _trim_back(self) -> int:
        """Evict the newest messages beyond capacity."""
        overflow = len(self._messages) - self.window_size
        if overflow <= 0:
            return 0
        for message in self._messages[-overflow:]:
            self._ids.discard(message.id)
        del self._messages[-overflow:]
        self._has_more_newer = True
        return overflow

    @staticmethod
    def _unique(messages: Iterable[Message]) -> List[Message]:
        seen: set[str] = set()
        unique = []
        for message in messages:
            if message.id not in seen:
                seen.add(message.id)
                unique.append(message)
        return unique

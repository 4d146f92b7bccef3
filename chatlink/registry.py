"""Callback registry addressed by string ids."""

import logging
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)


class CallbackRegistry:
    """
    Maps string ids to live callables.

    Lets serialized payloads (which can only carry an id) reach a callback
    owned by the session. One registry per session; nothing is process-wide.
    """

    def __init__(self):
        self._callbacks: Dict[str, Callable[..., Any]] = {}

    def register(self, callback_id: str, callback: Callable[..., Any]) -> Callable[[], None]:
        """
        Register a callback, replacing any previous one with the same id.

        Returns:
            Function that unregisters this callback
        """
        self._callbacks[callback_id] = callback

        def unregister() -> None:
            # Only remove if it was not replaced in the meantime
            if self._callbacks.get(callback_id) is callback:
                del self._callbacks[callback_id]

        return unregister

    def get(self, callback_id: str) -> Optional[Callable[..., Any]]:
        return self._callbacks.get(callback_id)

    def has(self, callback_id: str) -> bool:
        return callback_id in self._callbacks

    def call(self, callback_id: str, *args: Any) -> bool:
        """
        Invoke the callback registered under callback_id.

        Returns:
            True if a callback was found and called
        """
        callback = self._callbacks.get(callback_id)
        if callback is None:
            logger.debug(f"No callback registered for {callback_id}")
            return False
        callback(*args)
        return True

    def clear(self) -> None:
        self._callbacks.clear()

    def __len__(self) -> int:
        return len(self._callbacks)

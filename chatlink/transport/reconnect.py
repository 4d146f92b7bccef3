"""
Reconnection policy with exponential backoff.
"""

import asyncio
import logging
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class ReconnectionManager:
    """
    Manages reconnection attempts with exponential backoff.

    Implements the strategy:
    - 1s → 2s → 4s → 8s → 16s → 30s (max)
    - Give up after max_attempts consecutive attempts
    - Reset counter on successful connection
    """

    def __init__(
        self,
        initial_backoff: float = 1.0,
        max_backoff: float = 30.0,
        max_attempts: int = 5,
    ):
        """
        Initialize reconnection manager.

        Args:
            initial_backoff: Initial backoff time in seconds
            max_backoff: Maximum backoff time in seconds
            max_attempts: Maximum number of reconnection attempts (0 = unlimited)
        """
        self._initial_backoff = initial_backoff
        self._max_backoff = max_backoff
        self._max_attempts = max_attempts

        self._attempts = 0
        self._current_backoff = initial_backoff

    def next_delay(self) -> Optional[float]:
        """
        Claim the next reconnection attempt.

        Returns:
            Delay in seconds before the attempt, or None if max attempts exceeded
        """
        if self.exhausted:
            logger.error(
                f"Max reconnection attempts ({self._max_attempts}) exceeded"
            )
            return None

        self._attempts += 1
        delay = self._current_backoff

        logger.info(
            f"Reconnection attempt {self._attempts}"
            + (f"/{self._max_attempts}" if self._max_attempts > 0 else "")
            + f" in {delay:.1f}s"
        )

        # Increase backoff for next attempt (exponential)
        self._current_backoff = min(
            self._current_backoff * 2.0,
            self._max_backoff,
        )

        return delay

    def schedule(self, delay: float, callback: Callable[[], None]) -> asyncio.TimerHandle:
        """Run callback on the current event loop after delay seconds."""
        loop = asyncio.get_running_loop()
        return loop.call_later(delay, callback)

    def reset(self) -> None:
        """Reset reconnection state after successful connection."""
        if self._attempts > 0:
            logger.info(
                f"Connection established after {self._attempts} attempts, "
                "resetting reconnection state"
            )

        self._attempts = 0
        self._current_backoff = self._initial_backoff

    @property
    def attempts(self) -> int:
        """Get the number of reconnection attempts."""
        return self._attempts

    @property
    def current_backoff(self) -> float:
        """Get the delay the next attempt would use."""
        return self._current_backoff

    @property
    def exhausted(self) -> bool:
        """True once no further attempt may be scheduled."""
        return self._max_attempts > 0 and self._attempts >= self._max_attempts

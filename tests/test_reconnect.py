"""Tests for the reconnection backoff policy."""

import asyncio

import pytest

from chatlink.transport.reconnect import ReconnectionManager


def test_backoff_doubles_until_attempts_exhausted():
    manager = ReconnectionManager(initial_backoff=1.0, max_backoff=30.0, max_attempts=5)

    delays = [manager.next_delay() for _ in range(5)]

    assert delays == [1.0, 2.0, 4.0, 8.0, 16.0]
    assert manager.attempts == 5
    assert manager.exhausted is True
    assert manager.next_delay() is None
    assert manager.attempts == 5


def test_backoff_is_capped():
    manager = ReconnectionManager(initial_backoff=1.0, max_backoff=30.0, max_attempts=10)

    delays = [manager.next_delay() for _ in range(8)]

    assert delays == [1.0, 2.0, 4.0, 8.0, 16.0, 30.0, 30.0, 30.0]


def test_unlimited_attempts():
    manager = ReconnectionManager(max_attempts=0)

    for _ in range(50):
        assert manager.next_delay() is not None
    assert manager.exhausted is False


def test_reset_restores_floor():
    manager = ReconnectionManager()
    manager.next_delay()
    manager.next_delay()

    manager.reset()

    assert manager.attempts == 0
    assert manager.current_backoff == 1.0
    assert manager.next_delay() == 1.0


@pytest.mark.asyncio
async def test_schedule_runs_callback_on_loop():
    manager = ReconnectionManager()
    fired = asyncio.Event()

    handle = manager.schedule(0.01, fired.set)

    await asyncio.wait_for(fired.wait(), timeout=1.0)
    assert isinstance(handle, asyncio.TimerHandle)

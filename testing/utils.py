"""Fixtures and utilities for testing."""
from __future__ import annotations

import asyncio
from typing import Callable


async def wait_until(
    condition: Callable[[], bool],
    timeout: float = 5,
    interval: float = 0.001,
) -> None:
    """Wait for `condition()` to be true.

    Raises:
        asyncio.TimeoutError: If the condition is not true within `timeout`
            seconds.
    """

    async def _poll() -> None:
        while not condition():
            await asyncio.sleep(interval)

    await asyncio.wait_for(_poll(), timeout)


async def settle(iterations: int = 20) -> None:
    """Yield to the event loop so pending callbacks run."""
    for _ in range(iterations):
        await asyncio.sleep(0)

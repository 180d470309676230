"""Fixtures and utilities for testing."""
from __future__ import annotations

import asyncio
import socket
from typing import Callable


def open_port() -> int:
    """Return open port.

    Source: https://stackoverflow.com/questions/2838244
    """
    s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    s.bind(('', 0))
    s.listen(1)
    port = s.getsockname()[1]
    s.close()
    return port


async def wait_until(
    predicate: Callable[[], bool],
    timeout: float = 1.0,
    interval: float = 0.001,
) -> None:
    """Yield to the event loop until `predicate()` is true.

    Raises:
        AssertionError: If the predicate is still false after `timeout`
            seconds.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError('Timed out waiting for condition.')
        await asyncio.sleep(interval)

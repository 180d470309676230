"""Spawn asyncio background tasks that log and surface their failures."""
from __future__ import annotations

import asyncio
import logging
import traceback
from typing import Any
from typing import Callable
from typing import Coroutine

logger = logging.getLogger(__name__)


class SafeTaskExitError(Exception):
    """Exception that can be raised inside a task to safely exit it."""

    pass


async def _execute_and_log_traceback(
    coro: Callable[..., Coroutine[Any, Any, None]],
    *args: Any,
    **kwargs: Any,
) -> None:
    try:
        await coro(*args, **kwargs)
    except Exception:
        logger.error(traceback.format_exc())
        raise


def log_on_error(task: asyncio.Task[Any]) -> None:
    """Task callback that logs an unexpected task exception."""
    if task.cancelled():
        return
    exception = task.exception()
    if exception is not None and not isinstance(
        exception,
        SafeTaskExitError,
    ):
        logger.error(
            f'Exception in background task (name="{task.get_name()}"): '
            f'{exception!r}',
        )


def spawn_guarded_background_task(
    coro: Callable[..., Coroutine[Any, Any, None]],
    *args: Any,
    name: str | None = None,
    **kwargs: Any,
) -> asyncio.Task[Any]:
    """Run a coroutine safely in the background.

    Launches the coroutine as an asyncio task with a done callback,
    [`log_on_error()`][peerfetch.utils.tasks.log_on_error], that ensures
    exceptions raised inside the task are logged. Otherwise, background tasks
    that are never awaited may fail silently and leave the program hanging.

    Tasks can raise
    [`SafeTaskExitError`][peerfetch.utils.tasks.SafeTaskExitError] to signal
    the task is finished without it being reported as an error.

    Args:
        coro: Coroutine to run as task.
        args: Positional arguments for the coroutine.
        name: Optional name for the task.
        kwargs: Keyword arguments for the coroutine.

    Returns:
        Asyncio task handle.
    """
    task = asyncio.create_task(
        _execute_and_log_traceback(coro, *args, **kwargs),
        name=name,
    )
    task.add_done_callback(log_on_error)
    return task

"""Spawn asyncio background tasks which report their errors."""
from __future__ import annotations

import asyncio
import logging
import traceback
from typing import Any
from typing import Callable
from typing import Coroutine

logger = logging.getLogger(__name__)

ErrorCallback = Callable[[BaseException], None]


async def _execute_and_log_traceback(
    coro: Callable[..., Coroutine[Any, Any, None]],
    *args: Any,
    **kwargs: Any,
) -> None:
    """Execute a coroutine and log any tracebacks.

    Catches any exceptions raised by the coroutine, logs the traceback,
    and re-raises the exception.
    """
    try:
        await coro(*args, **kwargs)
    except Exception:
        logger.error(traceback.format_exc())
        raise


def report_error(on_error: ErrorCallback | None) -> Callable[..., None]:
    """Create a task callback which passes the task exception to `on_error`.

    Cancelled tasks and tasks that complete normally are ignored.
    """

    def _callback(task: asyncio.Task[Any]) -> None:
        if task.cancelled() or task.exception() is None:
            return
        exception = task.exception()
        assert exception is not None
        logger.error(
            f'Exception in background task (name="{task.get_name()}"): '
            f'{exception!r}',
        )
        if on_error is not None:
            on_error(exception)

    return _callback


def spawn_background_task(
    coro: Callable[..., Coroutine[Any, Any, None]],
    *args: Any,
    name: str | None = None,
    on_error: ErrorCallback | None = None,
    **kwargs: Any,
) -> asyncio.Task[Any]:
    """Run a coroutine in the background and report its failure.

    Background tasks that are never awaited silently lose their exceptions
    which makes a session hang with no notice of the cause. Tasks created
    here log the traceback and hand the exception to `on_error` instead.

    Args:
        coro: Coroutine to run as task.
        args: Positional arguments for the coroutine.
        name: Optional name of the task.
        on_error: Callback invoked with the exception if the task fails.
        kwargs: Keyword arguments for the coroutine.

    Returns:
        Asyncio task handle.
    """
    task = asyncio.create_task(
        _execute_and_log_traceback(coro, *args, **kwargs),
        name=name,
    )
    task.add_done_callback(report_error(on_error))
    return task

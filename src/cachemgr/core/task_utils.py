"""Done-callback and teardown helpers for background tasks."""

from __future__ import annotations

import asyncio
from typing import Any

from cachemgr.core.logging import CacheMgrLogger


def log_task_exception(task: asyncio.Task[Any], logger: CacheMgrLogger, event: str) -> None:
    """Log ``event`` at error level if ``task`` died with an exception."""
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error(
            event,
            error=str(exc),
            error_type=type(exc).__name__,
            task_name=task.get_name(),
        )


async def cancel_and_wait(task: asyncio.Task[Any] | None) -> None:
    """Cancel a background task and wait until it has unwound."""
    if task is None or task.done():
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass

"""Core utility functions shared across modules."""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Optional, Set

LOGGER = logging.getLogger(__name__)

# The loop only keeps weak references to tasks.
_BACKGROUND_TASKS: Set[asyncio.Future] = set()


def fire_and_forget(result: Awaitable[Any] | Any, *, label: str) -> Optional[asyncio.Task]:
    """Schedule ``result`` when it is awaitable and log any exception it raises.

    Listener callbacks may be plain functions or coroutines. Plain return
    values are ignored. Scheduled tasks are referenced until they finish.
    """

    if not inspect.isawaitable(result):
        return None

    task = asyncio.ensure_future(result)
    _BACKGROUND_TASKS.add(task)

    def _done(completed: asyncio.Future) -> None:
        _BACKGROUND_TASKS.discard(completed)
        if completed.cancelled():
            return
        exc = completed.exception()
        if exc is not None:
            LOGGER.error("%s listener failed: %s", label, exc, exc_info=exc)

    task.add_done_callback(_done)
    return task


def pending_background_tasks() -> int:
    """Number of scheduled listener tasks that have not finished yet."""
    return len(_BACKGROUND_TASKS)

"""Timeout wrapping and fire-and-forget task spawning."""

import asyncio
from collections.abc import Awaitable, Coroutine
from typing import Any, TypeVar

import structlog

from schoolmatch.core.errors import TimeoutFailure

logger = structlog.get_logger()

T = TypeVar("T")

# Strong references so the event loop does not garbage-collect running tasks
_background_tasks: set[asyncio.Task] = set()


async def with_timeout(
    awaitable: Awaitable[T],
    seconds: float,
    *,
    operation: str,
    primary: bool = False,
) -> T:
    """Await ``awaitable`` for at most ``seconds``; raise TimeoutFailure otherwise."""
    try:
        return await asyncio.wait_for(awaitable, timeout=seconds)
    except asyncio.TimeoutError as exc:
        logger.warning("operation_timeout", operation=operation, seconds=seconds, primary=primary)
        raise TimeoutFailure(operation, seconds, primary=primary) from exc


async def _guarded(coro: Coroutine[Any, Any, Any], name: str) -> None:
    try:
        await coro
    except asyncio.CancelledError:
        logger.info("background_task_cancelled", task=name)
        raise
    except Exception as e:
        logger.error("background_task_failed", task=name, error=str(e), exc_info=True)


def spawn_background(coro: Coroutine[Any, Any, Any], *, name: str) -> asyncio.Task:
    """Run ``coro`` concurrently; the caller does not await the result.

    Errors are caught and logged here so they never reach the spawning call.
    """
    task = asyncio.create_task(_guarded(coro, name), name=name)
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    return task


def pending_background_tasks() -> int:
    return len(_background_tasks)


async def drain_background_tasks(timeout: float = 30.0) -> None:
    """Wait for outstanding background tasks (shutdown and tests)."""
    if not _background_tasks:
        return
    done, pending = await asyncio.wait(list(_background_tasks), timeout=timeout)
    if pending:
        logger.warning("background_tasks_still_running", count=len(pending))

import asyncio

import pytest

from schoolmatch.core.concurrency import drain_background_tasks, pending_background_tasks, spawn_background, with_timeout
from schoolmatch.core.errors import TimeoutFailure


@pytest.mark.asyncio
async def test_with_timeout_returns_result():
    async def quick():
        return 42

    assert await with_timeout(quick(), 1, operation="quick") == 42


@pytest.mark.asyncio
async def test_with_timeout_raises_timeout_failure():
    with pytest.raises(TimeoutFailure) as exc_info:
        await with_timeout(asyncio.sleep(1), 0.01, operation="slow_write", primary=True)

    assert exc_info.value.operation == "slow_write"
    assert exc_info.value.primary is True
    assert "slow_write timed out" in exc_info.value.message


@pytest.mark.asyncio
async def test_background_errors_are_contained():
    ran = []

    async def boom():
        ran.append(True)
        raise RuntimeError("background failure")

    task = spawn_background(boom(), name="boom")
    await drain_background_tasks()

    assert ran == [True]
    assert task.done()
    assert task.exception() is None
    assert pending_background_tasks() == 0

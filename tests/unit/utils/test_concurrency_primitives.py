from __future__ import annotations

import asyncio

import pytest

from patchpilot.utils import BackgroundLoop, BoundedSemaphore, CancellationToken


def test_cancellation_token() -> None:
    token = CancellationToken()
    token.raise_if_cancelled()
    token.cancel()
    assert token.is_cancelled
    with pytest.raises(asyncio.CancelledError):
        token.raise_if_cancelled()


def test_bounded_semaphore_tracks_usage() -> None:
    async def scenario() -> dict[str, int]:
        semaphore = BoundedSemaphore(2)
        async with semaphore.permit():
            inside = semaphore.snapshot()
        assert semaphore.in_use == 0
        return inside

    assert asyncio.run(scenario()) == {"limit": 2, "in_use": 1, "available": 1}

    with pytest.raises(ValueError):
        BoundedSemaphore(0)
    with pytest.raises(RuntimeError):
        BoundedSemaphore(1).release()


def test_background_loop_runs_submitted_coroutines() -> None:
    async def double(value: int) -> int:
        await asyncio.sleep(0)
        return value * 2

    loop = BackgroundLoop(name="test-loop")
    loop.start()
    try:
        assert loop.submit(double(21)).result(timeout=5) == 42
    finally:
        loop.stop(timeout=5)
    assert not loop.running

    coroutine = double(1)
    with pytest.raises(RuntimeError, match="not running"):
        loop.submit(coroutine)

import asyncio

import pytest

from src.utils.periodic import PeriodicTask


@pytest.mark.asyncio
async def test_loop_survives_callback_errors_and_stops() -> None:
    calls = 0
    reached = asyncio.Event()

    async def callback() -> None:
        nonlocal calls
        calls += 1
        if calls == 1:
            raise RuntimeError("first run fails")
        if calls >= 3:
            reached.set()

    task = PeriodicTask("test_cleanup", 0.01, callback)
    task.start()
    task.start()
    assert task.running

    await asyncio.wait_for(reached.wait(), timeout=2)
    await task.stop()

    assert not task.running
    assert calls >= 3


@pytest.mark.asyncio
async def test_run_once_accepts_sync_callback() -> None:
    seen: list[int] = []
    task = PeriodicTask("sync", 60, lambda: seen.append(1))

    await task.run_once()
    await task.stop()

    assert seen == [1]


def test_interval_must_be_positive() -> None:
    with pytest.raises(ValueError):
        PeriodicTask("bad", 0, lambda: None)

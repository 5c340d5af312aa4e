from __future__ import annotations

import asyncio

import pytest

from compintel.maintenance import MaintenanceLoop


@pytest.mark.asyncio
async def test_failing_run_does_not_stop_the_loop(caplog) -> None:
    calls: list[int] = []

    def sweep() -> int:
        calls.append(len(calls))
        if len(calls) == 1:
            raise RuntimeError("sweep crashed")
        return 0

    loop = MaintenanceLoop()
    loop.add("flaky", 0.01, sweep)
    loop.start()
    try:
        for _ in range(100):
            if len(calls) >= 3:
                break
            await asyncio.sleep(0.01)
    finally:
        await loop.stop()

    assert len(calls) >= 3
    assert "maintenance.task.failed name=flaky" in caplog.text
    assert loop.running is False


@pytest.mark.asyncio
async def test_async_tasks_are_awaited_and_run_once_bypasses_schedule() -> None:
    seen: list[str] = []

    async def purge() -> int:
        seen.append("purge")
        return 2

    loop = MaintenanceLoop()
    loop.add("purge", 3600, purge)

    assert await loop.run_once("purge") == 2
    assert seen == ["purge"]
    with pytest.raises(KeyError):
        await loop.run_once("missing")


def test_interval_must_be_positive() -> None:
    with pytest.raises(ValueError):
        MaintenanceLoop().add("bad", 0, lambda: None)

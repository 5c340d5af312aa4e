"""Periodic background sweeps (embedding cache expiry, terminal job eviction)."""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable, List

from .observability import MetricsRecorder

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class MaintenanceTask:
    name: str
    interval: float
    fn: Callable[[], Any | Awaitable[Any]]


class MaintenanceLoop:
    """Run each registered task on its own asyncio task at a fixed interval.

    A failing run is logged and the loop keeps going; only :meth:`stop` ends it.
    """

    def __init__(
        self,
        tasks: Iterable[MaintenanceTask] = (),
        *,
        metrics: MetricsRecorder | None = None,
    ) -> None:
        self._tasks: List[MaintenanceTask] = list(tasks)
        self._metrics = metrics
        self._runners: List[asyncio.Task] = []

    def add(self, name: str, interval: float, fn: Callable[[], Any | Awaitable[Any]]) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        self._tasks.append(MaintenanceTask(name, interval, fn))

    @property
    def running(self) -> bool:
        return bool(self._runners)

    def start(self) -> None:
        if self._runners:
            return
        for task in self._tasks:
            runner = asyncio.create_task(self._run_forever(task))
            runner.set_name(f"maintenance-{task.name}")
            self._runners.append(runner)
        logger.info("maintenance.start tasks=%s", ",".join(task.name for task in self._tasks) or None)

    async def stop(self) -> None:
        for runner in self._runners:
            runner.cancel()
        for runner in self._runners:
            try:
                await runner
            except asyncio.CancelledError:
                pass
        self._runners.clear()

    async def run_once(self, name: str) -> Any:
        """Execute one named task immediately, outside its schedule."""

        for task in self._tasks:
            if task.name == name:
                return await self._execute(task)
        raise KeyError(name)

    # Internal helpers -------------------------------------------------

    async def _run_forever(self, task: MaintenanceTask) -> None:
        while True:
            await asyncio.sleep(task.interval)
            try:
                await self._execute(task)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("maintenance.task.failed name=%s", task.name)
                if self._metrics:
                    self._metrics.increment("maintenance.failure", task=task.name)

    async def _execute(self, task: MaintenanceTask) -> Any:
        start = time.perf_counter()
        result = task.fn()
        if inspect.isawaitable(result):
            result = await result
        if self._metrics:
            self._metrics.record_timing("maintenance.run", time.perf_counter() - start, task=task.name)
        logger.debug("maintenance.task.done name=%s result=%s", task.name, result)
        return result


__all__ = ["MaintenanceLoop", "MaintenanceTask"]

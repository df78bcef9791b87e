from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, Awaitable, Callable, Protocol


LOGGER = logging.getLogger(__name__)

ScheduledCall = Callable[[], Awaitable[Any]]


class Scheduler(Protocol):
    def every(self, interval_sec: float, fn: ScheduledCall, *, name: str | None = None) -> None: ...


class AsyncioScheduler:
    """Runs registered coroutine functions on a fixed cadence inside one event loop."""

    def __init__(self, *, sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep):
        self._sleep = sleep
        self._tasks: list[asyncio.Task[None]] = []

    async def _loop(self, interval_sec: float, fn: ScheduledCall, name: str) -> None:
        while True:
            await self._sleep(interval_sec)
            try:
                await fn()
            except asyncio.CancelledError:
                raise
            except Exception:
                LOGGER.exception("Scheduled call failed: name=%s", name)

    def every(self, interval_sec: float, fn: ScheduledCall, *, name: str | None = None) -> None:
        if interval_sec <= 0:
            raise ValueError("interval_sec must be positive.")
        label = name or getattr(fn, "__qualname__", "scheduled")
        task = asyncio.create_task(self._loop(interval_sec, fn, label), name=f"schedule-{label}")
        self._tasks.append(task)
        LOGGER.info("Scheduled call registered: name=%s interval=%.1fs", label, interval_sec)

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks.clear()

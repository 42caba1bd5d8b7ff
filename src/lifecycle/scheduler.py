"""Cancellable asyncio timers: a one-shot delayed task and a repeating task.

Both must be cancelled on teardown so no callback outlives the table it uses.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable

import structlog

logger = structlog.get_logger()

AsyncCallback = Callable[[], Awaitable[None]]


class DelayedTask:
    """Run an async callback once after a delay, unless cancelled first."""

    def __init__(self, delay_s: float, callback: AsyncCallback, *, name: str = "delayed") -> None:
        self._delay_s = delay_s
        self._callback = callback
        self._name = name
        self._task: asyncio.Task[None] | None = None

    @property
    def name(self) -> str:
        return self._name

    @property
    def pending(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name=self._name)

    def cancel(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def wait(self) -> None:
        """Wait for completion or cancellation. Never raises CancelledError of the task."""
        if self._task is None:
            return
        try:
            await self._task
        except asyncio.CancelledError:
            if not self._task.cancelled():
                raise

    async def _run(self) -> None:
        await asyncio.sleep(self._delay_s)
        try:
            await self._callback()
        except Exception:
            logger.exception("delayed_task_failed", task=self._name)


class RepeatingTask:
    """Run an async callback every interval until stopped.

    A failing run is logged and the schedule continues with the next one.
    """

    def __init__(
        self,
        interval_s: float,
        callback: AsyncCallback,
        *,
        name: str = "repeating",
        run_immediately: bool = False,
    ) -> None:
        self._interval_s = interval_s
        self._callback = callback
        self._name = name
        self._run_immediately = run_immediately
        self._task: asyncio.Task[None] | None = None
        self.runs = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name=self._name)
        logger.info("repeating_task_started", task=self._name, interval_s=self._interval_s)

    async def stop(self) -> None:
        """Cancel the timer and wait for the loop to exit."""
        if self._task is None:
            return
        task, self._task = self._task, None
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("repeating_task_stopped", task=self._name, runs=self.runs)

    async def _loop(self) -> None:
        if not self._run_immediately:
            await asyncio.sleep(self._interval_s)
        while True:
            try:
                await self._callback()
            except Exception:
                logger.exception("repeating_task_failed", task=self._name)
            self.runs += 1
            await asyncio.sleep(self._interval_s)

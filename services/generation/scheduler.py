"""Asyncio timers and background units of work."""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable
from typing import Any

from shared.utils import setup_logging

Callback = Callable[[], Awaitable[Any] | Any]


class ScheduledTask:
    """Handle to a repeating or one-shot timer.

    ``cancel()`` never interrupts a callback that is already running: a pending
    sleep is cancelled immediately, while a running callback is allowed to
    finish and the timer exits afterwards.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self.task: asyncio.Task | None = None
        self._cancelled = False
        self._running_callback = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def done(self) -> bool:
        return self.task is not None and self.task.done()

    def cancel(self) -> None:
        self._cancelled = True
        if self.task is not None and not self.task.done() and not self._running_callback:
            self.task.cancel()

    async def wait(self) -> None:
        if self.task is None:
            return
        try:
            await self.task
        except asyncio.CancelledError:
            if not self.task.cancelled():
                raise


class Scheduler:
    """Fixed-delay timers, one-shot deadlines and fire-and-forget work on one event loop."""

    def __init__(self, name: str = "generation-scheduler") -> None:
        self.logger = setup_logging(name)
        self._timers: set[ScheduledTask] = set()
        self._tasks: set[asyncio.Task] = set()

    async def _invoke(self, handle: ScheduledTask, callback: Callback) -> None:
        handle._running_callback = True
        try:
            result = callback()
            if inspect.isawaitable(result):
                await result
        except asyncio.CancelledError:
            raise
        except Exception:  # noqa: BLE001
            self.logger.exception(f"Scheduled callback {handle.name} failed")
        finally:
            handle._running_callback = False

    def schedule_with_fixed_delay(
        self,
        callback: Callback,
        initial_delay: float,
        interval: float,
        name: str = "timer",
    ) -> ScheduledTask:
        """Run `callback` after `initial_delay`, then `interval` after each run completes."""
        handle = ScheduledTask(name)

        async def runner() -> None:
            await asyncio.sleep(initial_delay)
            while not handle.cancelled:
                await self._invoke(handle, callback)
                if handle.cancelled:
                    break
                await asyncio.sleep(interval)

        return self._start(handle, runner())

    def schedule_once(self, callback: Callback, delay: float, name: str = "deadline") -> ScheduledTask:
        """Run `callback` once after `delay` unless cancelled first."""
        handle = ScheduledTask(name)

        async def runner() -> None:
            await asyncio.sleep(delay)
            if not handle.cancelled:
                await self._invoke(handle, callback)

        return self._start(handle, runner())

    def _start(self, handle: ScheduledTask, coro: Awaitable[None]) -> ScheduledTask:
        handle.task = asyncio.get_running_loop().create_task(coro, name=handle.name)
        self._timers.add(handle)
        handle.task.add_done_callback(lambda _task: self._timers.discard(handle))
        return handle

    def spawn(self, coro: Awaitable[Any], name: str = "work") -> asyncio.Task:
        """Run a coroutine as an independent unit of work; failures are logged."""
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._task_finished)
        return task

    def _task_finished(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self.logger.error(f"Background task {task.get_name()} failed: {exc}", exc_info=exc)

    @property
    def active_timers(self) -> int:
        return sum(1 for handle in self._timers if not handle.done)

    async def drain(self) -> None:
        """Wait for all spawned units of work to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel timers and outstanding work."""
        for handle in list(self._timers):
            handle.cancel()
            if handle.task is not None and not handle.task.done():
                handle.task.cancel()
        for task in list(self._tasks):
            task.cancel()
        pending = [h.task for h in self._timers if h.task is not None] + list(self._tasks)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._timers.clear()
        self._tasks.clear()

from __future__ import annotations
"""
rfidtunnel/timers.py
--------------------
Cancellable periodic timers on the running asyncio loop.

    timers = AsyncioTimers()
    h = timers.schedule(5.0, refresh)    # refresh() may be sync or async
    timers.cancel(h)

TimerSlot keeps at most one live timer per purpose: starting it again cancels
the previous one first, so a restart never leaves two pollers running.
"""

import asyncio
import inspect
import logging
from typing import Any, Callable, Optional, Protocol

log = logging.getLogger("tunnel.timers")

TimerCallback = Callable[[], Any]


class Timers(Protocol):
    def schedule(self, interval: float, callback: TimerCallback, name: str = "timer") -> Any: ...
    def cancel(self, handle: Any) -> None: ...


def _cancel_task(t: asyncio.Task | None) -> None:
    """Cancel a task if it's still running; ignore if already finished."""
    if t and not t.done():
        t.cancel()


class AsyncioTimers:
    """Each schedule() is one asyncio.Task that sleeps, fires, and repeats."""

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()

    def schedule(self, interval: float, callback: TimerCallback, name: str = "timer") -> asyncio.Task:
        period = max(0.01, float(interval))
        task = asyncio.get_running_loop().create_task(self._run(period, callback, name), name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def cancel(self, handle: asyncio.Task | None) -> None:
        _cancel_task(handle)

    def cancel_all(self) -> None:
        for t in list(self._tasks):
            _cancel_task(t)

    @property
    def active(self) -> int:
        return sum(1 for t in self._tasks if not t.done())

    @staticmethod
    async def _run(period: float, callback: TimerCallback, name: str) -> None:
        while True:
            await asyncio.sleep(period)
            try:
                result = callback()
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception:
                log.exception("timer_callback_failed", extra={"timer": name})


class TimerSlot:
    """One named purpose (status poll, refresh tick, ...) -> at most one live timer."""

    def __init__(self, timers: Timers, name: str):
        self.timers = timers
        self.name = name
        self._handle: Optional[Any] = None

    def start(self, interval: float, callback: TimerCallback) -> None:
        self.stop()
        self._handle = self.timers.schedule(interval, callback, name=self.name)

    def stop(self) -> None:
        if self._handle is not None:
            self.timers.cancel(self._handle)
            self._handle = None

    @property
    def running(self) -> bool:
        return self._handle is not None

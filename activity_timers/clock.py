"""Clocks and cooperative timers.

Everything that needs the current instant takes a ``Clock``; everything that
needs a callback later takes a ``Scheduler``. ``ManualClock`` is both, driven
by virtual time, so tests never sleep.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Protocol


class Clock(Protocol):
    def now(self) -> datetime: ...


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle: ...


class SystemClock:
    """Wall-clock time in UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class AsyncioScheduler:
    """Schedules callbacks on an asyncio event loop.

    ``asyncio.TimerHandle.cancel()`` is synchronous, so a cancelled callback
    never runs.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        self._loop = loop

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        loop = self._loop or asyncio.get_running_loop()
        return loop.call_later(delay, callback)


class _ManualHandle:
    def __init__(self, callback: Callable[[], None]) -> None:
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualClock:
    """A virtual clock that is also a scheduler.

    Time only moves when ``advance`` or ``set`` is called; due callbacks fire
    in deadline order as time passes them.
    """

    def __init__(self, start: datetime | None = None) -> None:
        self._now = start or datetime(2025, 1, 25, 10, 0, 0, tzinfo=timezone.utc)
        self._queue: list[tuple[datetime, int, _ManualHandle]] = []
        self._counter = itertools.count()

    def now(self) -> datetime:
        return self._now

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        handle = _ManualHandle(callback)
        deadline = self._now + timedelta(seconds=delay)
        heapq.heappush(self._queue, (deadline, next(self._counter), handle))
        return handle

    def advance(self, seconds: float) -> None:
        """Move time forward, firing every callback that falls due."""
        target = self._now + timedelta(seconds=seconds)
        while self._queue and self._queue[0][0] <= target:
            deadline, _, handle = heapq.heappop(self._queue)
            if handle.cancelled:
                continue
            self._now = max(self._now, deadline)
            handle.callback()
        self._now = target

    def set(self, instant: datetime) -> None:
        """Jump to an arbitrary instant without firing callbacks.

        Moving backwards simulates clock skew.
        """
        self._now = instant

    @property
    def pending(self) -> int:
        """Number of scheduled, not yet cancelled callbacks."""
        return sum(1 for _, _, handle in self._queue if not handle.cancelled)


class PeriodicTimer:
    """Repeating callback on top of a one-shot scheduler.

    After ``cancel()`` returns the callback never runs again, even if a fire
    was already queued.
    """

    def __init__(self, scheduler: Scheduler, interval: float, callback: Callable[[], None]) -> None:
        if interval <= 0:
            raise ValueError(f"interval must be positive, got {interval}")
        self._scheduler = scheduler
        self._interval = interval
        self._callback = callback
        self._handle: TimerHandle | None = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._schedule()

    def cancel(self) -> None:
        self._running = False
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _schedule(self) -> None:
        self._handle = self._scheduler.call_later(self._interval, self._fire)

    def _fire(self) -> None:
        if not self._running:
            return
        self._handle = None
        try:
            self._callback()
        finally:
            # The callback may have cancelled us, or cancelled and restarted us
            if self._running and self._handle is None:
                self._schedule()

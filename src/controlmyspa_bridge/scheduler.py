"""Named, cancellable timers on the bridge's event loop.

All delayed and periodic work (credential renewal, periodic refresh, command
confirmation) goes through a :class:`Scheduler` so that it can be listed,
cancelled on shutdown, and driven by virtual time in tests.

Scheduling a name that is already pending replaces the earlier timer. A timer
callback that raises is logged and ends only that timer's run; periodic timers
keep their schedule.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import override

from controlmyspa_bridge.correlation import event_context
from controlmyspa_bridge.logging_abstraction import get_logger

logger = get_logger(__name__)

type TimerCallback = Callable[[], Awaitable[None]]


async def _run_guarded(name: str, callback: TimerCallback) -> None:
    with event_context("timer"):
        try:
            await callback()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("scheduler: timer '%s' failed", name)


class Scheduler(ABC):
    lp: str = "scheduler:"

    @abstractmethod
    def time(self) -> float:
        """Current time in seconds on this scheduler's clock."""

    @abstractmethod
    def call_later(self, name: str, delay: float, callback: TimerCallback) -> None:
        """Run ``callback`` once after ``delay`` seconds."""

    @abstractmethod
    def call_every(self, name: str, interval: float, callback: TimerCallback) -> None:
        """Run ``callback`` every ``interval`` seconds, first run after one interval."""

    @abstractmethod
    def cancel(self, name: str) -> bool:
        """Cancel a pending timer. Returns False when nothing by that name was pending."""

    @abstractmethod
    def pending(self) -> list[str]:
        """Names of timers that have not fired yet (periodic timers stay listed)."""

    def cancel_all(self) -> None:
        for name in self.pending():
            _ = self.cancel(name)


class AsyncioScheduler(Scheduler):
    """Scheduler backed by ``loop.call_later``."""

    def __init__(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        self._loop: asyncio.AbstractEventLoop | None = loop
        self._handles: dict[str, asyncio.TimerHandle] = {}
        self._intervals: dict[str, float] = {}
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    @override
    def time(self) -> float:
        return self.loop.time()

    def _arm(self, name: str, delay: float, callback: TimerCallback) -> None:
        self._handles[name] = self.loop.call_later(max(0.0, delay), self._fire, name, callback)

    def _fire(self, name: str, callback: TimerCallback) -> None:
        _ = self._handles.pop(name, None)
        interval = self._intervals.get(name)
        if interval is not None:
            self._arm(name, interval, callback)
        task = self.loop.create_task(_run_guarded(name, callback), name=f"timer:{name}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    @override
    def call_later(self, name: str, delay: float, callback: TimerCallback) -> None:
        _ = self.cancel(name)
        logger.debug("%s arming '%s' in %.1fs", self.lp, name, delay)
        self._arm(name, delay, callback)

    @override
    def call_every(self, name: str, interval: float, callback: TimerCallback) -> None:
        if interval <= 0:
            msg = f"interval must be positive, got {interval}"
            raise ValueError(msg)
        _ = self.cancel(name)
        logger.debug("%s arming periodic '%s' every %.1fs", self.lp, name, interval)
        self._intervals[name] = interval
        self._arm(name, interval, callback)

    @override
    def cancel(self, name: str) -> bool:
        _ = self._intervals.pop(name, None)
        handle = self._handles.pop(name, None)
        if handle is None:
            return False
        handle.cancel()
        logger.debug("%s cancelled '%s'", self.lp, name)
        return True

    @override
    def pending(self) -> list[str]:
        return sorted(self._handles)

    @override
    def cancel_all(self) -> None:
        super().cancel_all()
        for task in list(self._tasks):
            if not task.done():
                _ = task.cancel()


@dataclass(order=True)
class _VirtualTimer:
    due: float
    seq: int
    name: str = field(compare=False)
    callback: TimerCallback = field(compare=False)
    interval: float | None = field(default=None, compare=False)
    cancelled: bool = field(default=False, compare=False)


class VirtualScheduler(Scheduler):
    """Deterministic scheduler whose clock only moves when told to.

    Callbacks run inline, in due order, while :meth:`advance` walks the clock
    forward. Timers armed by a callback fire in the same call if they fall
    inside the window.
    """

    def __init__(self, start: float = 0.0) -> None:
        self.now: float = start
        self._heap: list[_VirtualTimer] = []
        self._live: dict[str, _VirtualTimer] = {}
        self._seq = itertools.count()

    @override
    def time(self) -> float:
        return self.now

    def _push(self, name: str, delay: float, callback: TimerCallback, interval: float | None) -> None:
        _ = self.cancel(name)
        timer = _VirtualTimer(self.now + max(0.0, delay), next(self._seq), name, callback, interval)
        self._live[name] = timer
        heapq.heappush(self._heap, timer)

    @override
    def call_later(self, name: str, delay: float, callback: TimerCallback) -> None:
        self._push(name, delay, callback, None)

    @override
    def call_every(self, name: str, interval: float, callback: TimerCallback) -> None:
        if interval <= 0:
            msg = f"interval must be positive, got {interval}"
            raise ValueError(msg)
        self._push(name, interval, callback, interval)

    @override
    def cancel(self, name: str) -> bool:
        timer = self._live.pop(name, None)
        if timer is None:
            return False
        timer.cancelled = True
        return True

    @override
    def pending(self) -> list[str]:
        return sorted(self._live)

    def due_in(self, name: str) -> float | None:
        """Seconds until ``name`` fires, or None when it is not pending."""
        timer = self._live.get(name)
        return None if timer is None else timer.due - self.now

    async def advance(self, seconds: float) -> None:
        """Move the clock forward, running every timer that falls due."""
        target = self.now + seconds
        while self._heap and self._heap[0].due <= target:
            timer = heapq.heappop(self._heap)
            if timer.cancelled:
                continue
            self.now = timer.due
            if timer.interval is not None:
                due = timer.due + timer.interval
                nxt = _VirtualTimer(due, next(self._seq), timer.name, timer.callback, timer.interval)
                self._live[timer.name] = nxt
                heapq.heappush(self._heap, nxt)
            else:
                _ = self._live.pop(timer.name, None)
            await _run_guarded(timer.name, timer.callback)
        self.now = target

"""Cancellable timers owned by a console session.

Every periodic or delayed job (health poll, statistics poll, update-status
poll, scheduled reloads) is started through a Scheduler and yields a
TimerHandle. Whoever starts a timer owns its handle and must cancel it on
teardown. ``ManualScheduler`` drives the same callbacks on virtual time.
"""

import asyncio
import inspect
import itertools
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, List, Optional, Union

import structlog

logger = structlog.get_logger(__name__)

TimerCallback = Callable[[], Union[None, Awaitable[None]]]


async def _invoke(callback: TimerCallback, name: str) -> None:
    """Run a timer callback to completion; failures are logged, not raised."""
    try:
        result = callback()
        if inspect.isawaitable(result):
            await result
    except asyncio.CancelledError:
        raise
    except Exception as e:
        logger.error("Timer callback failed", timer=name, error=str(e), exc_info=True)


class TimerHandle:
    """Handle to a scheduled timer."""

    def __init__(self, name: str, periodic: bool = False):
        self.name = name
        self.periodic = periodic
        self._cancelled = False
        self._fired = False
        self._task: Optional[asyncio.Task] = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def active(self) -> bool:
        """True while the timer can still fire."""
        if self._cancelled:
            return False
        return self.periodic or not self._fired

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        # A callback may cancel its own timer; in that case let it finish
        # instead of interrupting it at its next await.
        if self._task is not None and self._task is not _current_task():
            self._task.cancel()

    def __repr__(self) -> str:
        state = "cancelled" if self._cancelled else ("active" if self.active else "fired")
        return f"<TimerHandle {self.name} {state}>"


def _current_task() -> Optional[asyncio.Task]:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None


class Scheduler(ABC):
    """Source of time and timers for a console session."""

    @abstractmethod
    def now(self) -> datetime:
        """Current time as an aware UTC datetime."""

    @abstractmethod
    def call_later(self, delay: float, callback: TimerCallback, name: str = "timer") -> TimerHandle:
        """Run ``callback`` once after ``delay`` seconds."""

    @abstractmethod
    def call_every(self, interval: float, callback: TimerCallback, name: str = "timer") -> TimerHandle:
        """Run ``callback`` every ``interval`` seconds.

        The next interval starts only after the callback has completed, so a
        timer never overlaps with itself.
        """


class AsyncioScheduler(Scheduler):
    """Scheduler backed by the running asyncio event loop."""

    def __init__(self):
        self._handles: List[TimerHandle] = []

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def call_later(self, delay: float, callback: TimerCallback, name: str = "timer") -> TimerHandle:
        handle = TimerHandle(name)
        handle._task = asyncio.get_running_loop().create_task(self._run_later(handle, delay, callback))
        self._track(handle)
        return handle

    def call_every(self, interval: float, callback: TimerCallback, name: str = "timer") -> TimerHandle:
        if interval <= 0:
            raise ValueError("interval must be positive")
        handle = TimerHandle(name, periodic=True)
        handle._task = asyncio.get_running_loop().create_task(self._run_every(handle, interval, callback))
        self._track(handle)
        return handle

    def cancel_all(self) -> None:
        for handle in self._handles:
            handle.cancel()
        self._handles = []

    def _track(self, handle: TimerHandle) -> None:
        self._handles = [h for h in self._handles if h.active]
        self._handles.append(handle)

    async def _run_later(self, handle: TimerHandle, delay: float, callback: TimerCallback) -> None:
        await asyncio.sleep(delay)
        if handle.cancelled:
            return
        handle._fired = True
        await _invoke(callback, handle.name)

    async def _run_every(self, handle: TimerHandle, interval: float, callback: TimerCallback) -> None:
        while not handle.cancelled:
            await asyncio.sleep(interval)
            if handle.cancelled:
                break
            await _invoke(callback, handle.name)


@dataclass
class _VirtualTimer:
    due: float
    seq: int
    callback: TimerCallback
    handle: TimerHandle
    interval: Optional[float] = None


class ManualScheduler(Scheduler):
    """Scheduler on virtual time; ``advance()`` fires due timers in order."""

    def __init__(self, start: Optional[datetime] = None):
        self._start = start or datetime(2025, 1, 1, tzinfo=timezone.utc)
        self._elapsed = 0.0
        self._timers: List[_VirtualTimer] = []
        self._seq = itertools.count()

    def now(self) -> datetime:
        return self._start + timedelta(seconds=self._elapsed)

    @property
    def elapsed(self) -> float:
        return self._elapsed

    def call_later(self, delay: float, callback: TimerCallback, name: str = "timer") -> TimerHandle:
        handle = TimerHandle(name)
        self._timers.append(_VirtualTimer(self._elapsed + delay, next(self._seq), callback, handle))
        return handle

    def call_every(self, interval: float, callback: TimerCallback, name: str = "timer") -> TimerHandle:
        if interval <= 0:
            raise ValueError("interval must be positive")
        handle = TimerHandle(name, periodic=True)
        self._timers.append(
            _VirtualTimer(self._elapsed + interval, next(self._seq), callback, handle, interval)
        )
        return handle

    def pending(self) -> List[TimerHandle]:
        """Handles that can still fire."""
        return [t.handle for t in self._timers if t.handle.active]

    def pending_names(self) -> List[str]:
        return [h.name for h in self.pending()]

    async def advance(self, seconds: float) -> None:
        """Move virtual time forward, running every timer that falls due."""
        target = self._elapsed + seconds
        while True:
            due = [t for t in self._timers if t.handle.active and t.due <= target]
            if not due:
                break
            timer = min(due, key=lambda t: (t.due, t.seq))
            self._elapsed = max(self._elapsed, timer.due)
            if timer.interval is None:
                timer.handle._fired = True
            else:
                timer.due += timer.interval
                timer.seq = next(self._seq)
            await _invoke(timer.callback, timer.handle.name)
        self._elapsed = target
        self._timers = [t for t in self._timers if t.handle.active]

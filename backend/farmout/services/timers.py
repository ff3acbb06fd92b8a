"""Clock, delayed callbacks and offer-window arithmetic.

The scheduler never sleeps. Each wait (offer timeout, spacing between offers,
waiting for the offer window to open) is a single callback registered with a
``TimerService``. Production uses the running asyncio loop; tests and replays
use ``ManualTimerService`` and move simulated time forward explicitly.
Blocking collaborator work (a remote ranking call) goes through
``run_blocking`` so the loop keeps firing other jobs' timers meanwhile.
"""
from __future__ import annotations

import asyncio
import heapq
import itertools
import math
from collections import deque
from datetime import datetime, time, timedelta, timezone, tzinfo
from typing import Any, Callable, Deque, List, Optional, Protocol, Tuple


Callback = Callable[[], None]
BlockingDone = Callable[[Any, Optional[BaseException]], None]


class TimerHandle(Protocol):
    def cancel(self) -> None:
        ...


class TimerService(Protocol):
    def now(self) -> datetime:
        ...

    def call_at(self, when: datetime, callback: Callback) -> TimerHandle:
        ...

    def run_blocking(self, fn: Callable[[], Any], on_done: BlockingDone) -> None:
        ...


def _complete(fn: Callable[[], Any], on_done: BlockingDone) -> None:
    try:
        result = fn()
    except Exception as exc:
        on_done(None, exc)
        return
    on_done(result, None)


class ManualTimerHandle:
    def __init__(self, when: datetime, callback: Callback) -> None:
        self.when = when
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualTimerService:
    """Simulated clock: callbacks fire only when time is advanced past them."""

    def __init__(self, start: Optional[datetime] = None) -> None:
        start = start or datetime.now(timezone.utc)
        if start.tzinfo is None:
            start = start.replace(tzinfo=timezone.utc)
        self._now = start
        self._queue: List[Tuple[datetime, int, ManualTimerHandle]] = []
        self._sequence = itertools.count()
        self.hold_blocking = False
        self._blocking: Deque[Tuple[Callable[[], Any], BlockingDone]] = deque()

    def now(self) -> datetime:
        return self._now

    def call_at(self, when: datetime, callback: Callback) -> ManualTimerHandle:
        handle = ManualTimerHandle(when, callback)
        heapq.heappush(self._queue, (when, next(self._sequence), handle))
        return handle

    def run_blocking(self, fn: Callable[[], Any], on_done: BlockingDone) -> None:
        """Run ``fn`` inline, or park it until ``finish_blocking`` while ``hold_blocking`` is set."""
        if self.hold_blocking:
            self._blocking.append((fn, on_done))
            return
        _complete(fn, on_done)

    def finish_blocking(self) -> int:
        finished = 0
        while self._blocking:
            fn, on_done = self._blocking.popleft()
            _complete(fn, on_done)
            finished += 1
        return finished

    def pending_count(self) -> int:
        return sum(1 for _, _, handle in self._queue if not handle.cancelled)

    def next_deadline(self) -> Optional[datetime]:
        live = [when for when, _, handle in self._queue if not handle.cancelled]
        return min(live) if live else None

    def advance(self, seconds: float) -> int:
        return self.advance_to(self._now + timedelta(seconds=seconds))

    def advance_to(self, when: datetime) -> int:
        """Move the clock to ``when`` firing due callbacks in deadline order.

        Returns the number of callbacks that fired.
        """
        fired = 0
        while self._queue and self._queue[0][0] <= when:
            deadline, _, handle = heapq.heappop(self._queue)
            if handle.cancelled:
                continue
            self._now = max(self._now, deadline)
            handle.cancelled = True
            handle.callback()
            fired += 1
        self._now = max(self._now, when)
        return fired


class AsyncioTimerService:
    """Wall-clock timers on the running event loop."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def call_at(self, when: datetime, callback: Callback) -> asyncio.TimerHandle:
        delay = max(0.0, (when - self.now()).total_seconds())
        loop = asyncio.get_running_loop()
        return loop.call_later(delay, callback)

    def run_blocking(self, fn: Callable[[], Any], on_done: BlockingDone) -> None:
        """Run ``fn`` in the default executor; ``on_done`` is called back on the loop."""
        loop = asyncio.get_running_loop()
        future = loop.run_in_executor(None, fn)

        def finished(done: "asyncio.Future[Any]") -> None:
            if done.cancelled():
                on_done(None, asyncio.CancelledError())
                return
            error = done.exception()
            on_done(None if error else done.result(), error)

        future.add_done_callback(finished)


# ==================== Offer window ====================

def _minutes_of_day(moment: datetime) -> int:
    return moment.hour * 60 + moment.minute


def is_within_window(now: datetime, start: Tuple[int, int], end: Tuple[int, int], tz: tzinfo) -> bool:
    """True when ``now`` (local to ``tz``) falls inside the inclusive ``start``-``end`` window.

    A window whose end is earlier than its start spans midnight.
    """
    current = _minutes_of_day(now.astimezone(tz))
    start_minutes = start[0] * 60 + start[1]
    end_minutes = end[0] * 60 + end[1]
    if start_minutes <= end_minutes:
        return start_minutes <= current <= end_minutes
    return current >= start_minutes or current <= end_minutes


def next_window_open(now: datetime, start: Tuple[int, int], tz: tzinfo) -> datetime:
    """Next moment strictly after ``now`` at which the window opens."""
    local_now = now.astimezone(tz)
    candidate = datetime.combine(local_now.date(), time(start[0], start[1]), tzinfo=tz)
    if candidate <= local_now:
        candidate = datetime.combine(local_now.date() + timedelta(days=1), time(start[0], start[1]), tzinfo=tz)
    return candidate.astimezone(timezone.utc)


def format_countdown(seconds: Optional[float]) -> str:
    if seconds is None or not math.isfinite(seconds) or seconds <= 0:
        return "now"
    total = int(math.ceil(seconds))
    minutes, remainder = divmod(total, 60)
    if minutes <= 0:
        return f"{remainder}s"
    if minutes >= 60:
        hours, minutes = divmod(minutes, 60)
        return f"{hours}h {minutes:02d}m"
    return f"{minutes}m {remainder:02d}s"


def format_minutes(minutes: int) -> str:
    return f"{minutes} minute{'' if minutes == 1 else 's'}"

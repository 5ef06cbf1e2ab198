"""Main-thread event channel with timers."""

from __future__ import annotations

import heapq
import itertools
import logging
import queue
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable

from queries.shared.exceptions import FatalChannelLoss

_log = logging.getLogger(__name__)

DEFAULT_CHANNEL_SIZE = 1024
# How long a background producer waits for room before the channel counts as lost.
POST_TIMEOUT_SECS = 30.0


@dataclass(order=True, slots=True)
class _Timer:
    due: float
    seq: int
    message: Any = field(compare=False)
    interval: float | None = field(compare=False, default=None)
    cancelled: bool = field(compare=False, default=False)


class TimerHandle:
    """Returned by ``call_later``/``call_every``; cancel it to stop the timer."""

    __slots__ = ("_timer",)

    def __init__(self, timer: _Timer) -> None:
        self._timer = timer

    def cancel(self) -> None:
        self._timer.cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._timer.cancelled


class EventLoop:
    """Bounded FIFO channel drained on the main thread.

    Any thread may ``post``; only the thread running ``run_once``/
    ``run_pending``/``run_until`` dispatches, so the handler never runs
    concurrently with itself. Due timers post their message into the same
    channel, keeping timer and user events in one FIFO order.
    """

    def __init__(
        self,
        handler: Callable[[Any], None] | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        maxsize: int = DEFAULT_CHANNEL_SIZE,
    ) -> None:
        self._handler = handler
        self._clock = clock
        self._queue: queue.Queue[Any] = queue.Queue(maxsize=maxsize)
        self._timers: list[_Timer] = []
        self._timer_lock = threading.Lock()
        self._seq = itertools.count()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def now(self) -> float:
        return self._clock()

    def set_handler(self, handler: Callable[[Any], None]) -> None:
        self._handler = handler

    def post(self, message: Any) -> None:
        if self._closed:
            raise FatalChannelLoss("Event channel is closed")
        try:
            self._queue.put(message, timeout=POST_TIMEOUT_SECS)
        except queue.Full as exc:
            raise FatalChannelLoss("Event channel is full") from exc

    def call_later(self, delay: float, message: Any) -> TimerHandle:
        return self._add_timer(delay, message, None)

    def call_every(self, interval: float, message: Any) -> TimerHandle:
        if interval <= 0:
            raise ValueError("Timer interval must be positive")
        return self._add_timer(interval, message, interval)

    def _add_timer(self, delay: float, message: Any, interval: float | None) -> TimerHandle:
        timer = _Timer(self._clock() + delay, next(self._seq), message, interval)
        with self._timer_lock:
            heapq.heappush(self._timers, timer)
        return TimerHandle(timer)

    def _fire_due_timers(self) -> None:
        now = self._clock()
        due: list[_Timer] = []
        with self._timer_lock:
            while self._timers and self._timers[0].due <= now:
                timer = heapq.heappop(self._timers)
                if timer.cancelled:
                    continue
                due.append(timer)
                if timer.interval is not None:
                    timer.due += timer.interval
                    # A stalled loop does not replay every missed tick.
                    if timer.due <= now:
                        timer.due = now + timer.interval
                    heapq.heappush(self._timers, timer)
        for timer in due:
            self.post(timer.message)

    def _next_timer_delay(self) -> float | None:
        with self._timer_lock:
            while self._timers and self._timers[0].cancelled:
                heapq.heappop(self._timers)
            if not self._timers:
                return None
            return max(self._timers[0].due - self._clock(), 0.0)

    def _dispatch(self, message: Any) -> None:
        if self._handler is None:
            raise FatalChannelLoss("Event channel has no consumer")
        self._handler(message)

    def run_once(self, timeout: float = 0.0) -> bool:
        """Dispatch at most one message, waiting up to ``timeout`` seconds for it."""
        self._fire_due_timers()
        wait = timeout
        delay = self._next_timer_delay()
        if delay is not None:
            wait = min(wait, delay)
        try:
            message = self._queue.get(timeout=wait) if wait > 0 else self._queue.get_nowait()
        except queue.Empty:
            self._fire_due_timers()
            try:
                message = self._queue.get_nowait()
            except queue.Empty:
                return False
        self._dispatch(message)
        return True

    def run_pending(self) -> int:
        """Dispatch every message that is already queued, without waiting."""
        self._fire_due_timers()
        handled = 0
        while True:
            try:
                message = self._queue.get_nowait()
            except queue.Empty:
                return handled
            self._dispatch(message)
            handled += 1

    def run_until(self, predicate: Callable[[], bool], timeout: float, poll: float = 0.05) -> bool:
        """Dispatch messages until ``predicate`` holds or ``timeout`` elapses."""
        deadline = time.monotonic() + timeout
        while not predicate():
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return predicate()
            self.run_once(min(poll, remaining))
        return True

    def close(self) -> None:
        self._closed = True
        with self._timer_lock:
            self._timers.clear()
        _log.debug("Event channel closed")

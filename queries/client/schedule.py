"""Scheduled re-execution: a one-second clock and NOTIFY-triggered runs."""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Any, Callable, Union

from queries.sql.notify import parse_filter, payload_matches

from .events import ScheduleTick
from .loop import EventLoop, TimerHandle

_log = logging.getLogger(__name__)

CLOCK_PERIOD_SECS = 1.0


@dataclass(frozen=True, slots=True)
class Off:
    pass


@dataclass(frozen=True, slots=True)
class Interval:
    interval_secs: int
    elapsed: int = 0


@dataclass(frozen=True, slots=True)
class Notification:
    channel: str
    filter_json: str | None = None
    selection_path: tuple[int, ...] | None = None


QuerySchedule = Union[Off, Interval, Notification]


class Scheduler:
    """Drives automatic re-execution for one controller.

    ``Interval`` counts one-second ticks delivered through the event loop and
    calls ``on_interval`` every ``interval_secs`` ticks. ``Notification``
    subscribes through ``listen`` and calls ``on_notification`` with the
    selection path for every payload that satisfies the filter. The
    controller decides whether a fire turns into an execution.
    """

    def __init__(
        self,
        loop: EventLoop,
        *,
        on_interval: Callable[[], None],
        on_notification: Callable[[tuple[int, ...] | None], None],
        listen: Callable[[str], None],
        unlisten: Callable[[str], None],
    ) -> None:
        self._loop = loop
        self._on_interval = on_interval
        self._on_notification = on_notification
        self._listen = listen
        self._unlisten = unlisten
        self._state: QuerySchedule = Off()
        self._timer: TimerHandle | None = None
        self._filter: dict[str, Any] | None = None
        self._generation = 0

    @property
    def state(self) -> QuerySchedule:
        return self._state

    def set(self, schedule: QuerySchedule) -> None:
        """Switch to ``schedule``; the previous schedule is always stopped first.

        Raises ValueError for a non-positive interval or a malformed filter,
        leaving the scheduler Off.
        """
        self.stop()
        if isinstance(schedule, Interval):
            if schedule.interval_secs < 1:
                raise ValueError("Schedule interval must be at least one second")
            self._generation += 1
            self._state = Interval(schedule.interval_secs, 0)
            self._timer = self._loop.call_every(CLOCK_PERIOD_SECS, ScheduleTick(self._generation))
        elif isinstance(schedule, Notification):
            filter_value = parse_filter(schedule.filter_json)
            self._listen(schedule.channel)
            self._filter = filter_value
            self._state = schedule
        _log.debug("Schedule set to %s", self._state)

    def stop(self) -> None:
        """Cancel timers, UNLISTEN, and forget the selection."""
        previous = self._state
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if isinstance(previous, Notification):
            self._unlisten(previous.channel)
        self._filter = None
        self._state = Off()

    def tick(self, generation: int) -> None:
        state = self._state
        if generation != self._generation or not isinstance(state, Interval):
            return
        elapsed = state.elapsed + 1
        if elapsed >= state.interval_secs:
            self._state = replace(state, elapsed=0)
            self._on_interval()
        else:
            self._state = replace(state, elapsed=elapsed)

    def notify(self, channel: str, payload: str) -> None:
        state = self._state
        if not isinstance(state, Notification) or channel != state.channel:
            return
        if not payload_matches(self._filter, payload):
            _log.debug("Notification on %s ignored by filter", channel)
            return
        self._on_notification(state.selection_path)

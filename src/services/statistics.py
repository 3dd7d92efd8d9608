"""
Statistics for EatLock.

Aggregates are derived, non-sensitive numbers: counts per category, summed
prevented calories and the current logging streak. Only these aggregates
are ever cached; plaintext content is discarded as soon as a record has
been tallied.

The StatisticsCache coalesces concurrent requests for the same window onto
one in-flight computation and drops cached windows when a record inside
them changes.
"""

from __future__ import annotations

import asyncio
from collections import Counter, OrderedDict
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, date, datetime, timedelta, tzinfo
from types import MappingProxyType

import structlog

from src.models.action_log import LogType
from src.models.time_range import TimeRange
from src.services.events import RecordChange

logger = structlog.get_logger(__name__)

StatsComputation = Callable[[TimeRange], Awaitable["ActionLogStats"]]


@dataclass(frozen=True)
class ActionLogStats:
    """
    Aggregate over the readable records of one time window.

    Records whose ciphertext failed authentication are excluded from every
    total and counted in ``unreadable_logs`` instead.
    ``category_counts`` is a read-only view; cached results are shared.
    """

    total_logs: int = 0
    category_counts: Mapping[LogType, int] = field(default_factory=lambda: MappingProxyType({}))
    total_prevented_calories: int = 0
    consecutive_days: int = 0
    unreadable_logs: int = 0

    @property
    def success_logs(self) -> int:
        return self.category_counts.get(LogType.SUCCESS, 0)

    @property
    def success_rate(self) -> float:
        if self.total_logs == 0:
            return 0.0
        return self.success_logs / self.total_logs

    def count(self, category: LogType) -> int:
        return self.category_counts.get(category, 0)


class StatsAccumulator:
    """
    Tallies records one at a time.

    Usage:
        acc = StatsAccumulator(tz=UTC)
        acc.add(LogType.SUCCESS, 200, created_at)
        stats = acc.build(anchor_day=date.today())
    """

    def __init__(self, tz: tzinfo = UTC) -> None:
        self._tz = tz
        self._categories: Counter[LogType] = Counter()
        self._calories = 0
        self._days: set[date] = set()
        self._unreadable = 0

    def add(self, category: LogType, prevented_calories: int | None, created_at: datetime) -> None:
        self._categories[category] += 1
        self._calories += prevented_calories or 0
        self._days.add(created_at.astimezone(self._tz).date())

    def add_unreadable(self) -> None:
        self._unreadable += 1

    def build(self, anchor_day: date) -> ActionLogStats:
        return ActionLogStats(
            total_logs=sum(self._categories.values()),
            category_counts=MappingProxyType(
                {category: self._categories[category] for category in LogType}
            ),
            total_prevented_calories=self._calories,
            consecutive_days=consecutive_days(self._days, anchor_day),
            unreadable_logs=self._unreadable,
        )


def consecutive_days(days: Iterable[date], anchor_day: date) -> int:
    """Count days with at least one log, walking back from anchor_day."""
    logged = set(days)
    streak = 0
    current = anchor_day
    while current in logged:
        streak += 1
        try:
            current -= timedelta(days=1)
        except OverflowError:
            break
    return streak


def anchor_day_for(time_range: TimeRange, today: date, tz: tzinfo = UTC) -> date:
    """
    The day a streak is counted back from: today, or the window's last day
    when the window ends before today.
    """
    last_moment = time_range.end - timedelta(microseconds=1)
    try:
        last_day = last_moment.astimezone(tz).date()
    except OverflowError:
        return today
    return min(today, last_day)


# =============================================================================
# Cache
# =============================================================================

class _Flight:
    """One in-flight computation; ``current`` drops to False on invalidation."""

    __slots__ = ("task", "current")

    def __init__(self, task: asyncio.Task[ActionLogStats]) -> None:
        self.task = task
        self.current = True


class StatisticsCache:
    """
    Bounded LRU of ActionLogStats keyed by TimeRange.

    - At most one computation per window runs at a time; concurrent
      requests await the same task
    - A computation overlapped by an invalidation of its window still
      answers the callers already waiting on it, but is never cached, and
      callers arriving after the invalidation start a fresh computation
    - A failed computation is not cached; every waiter sees the error

    Args:
        compute: Coroutine function producing stats for a window
        max_entries: LRU bound
    """

    DEFAULT_MAX_ENTRIES = 64

    def __init__(self, compute: StatsComputation, max_entries: int = DEFAULT_MAX_ENTRIES) -> None:
        self._compute = compute
        self._max_entries = max_entries
        self._entries: OrderedDict[TimeRange, ActionLogStats] = OrderedDict()
        self._in_flight: dict[TimeRange, _Flight] = {}
        self._lock = asyncio.Lock()
        self.computations = 0

    async def get(self, time_range: TimeRange) -> ActionLogStats:
        async with self._lock:
            cached = self._entries.get(time_range)
            if cached is not None:
                self._entries.move_to_end(time_range)
                return cached

            flight = self._in_flight.get(time_range)
            if flight is None:
                flight = self._start(time_range)

        return await asyncio.shield(flight.task)

    def _start(self, time_range: TimeRange) -> _Flight:
        self.computations += 1
        task = asyncio.ensure_future(self._compute(time_range))
        flight = _Flight(task)
        self._in_flight[time_range] = flight
        task.add_done_callback(lambda t: self._finish(time_range, flight))
        return flight

    def _finish(self, time_range: TimeRange, flight: _Flight) -> None:
        if self._in_flight.get(time_range) is flight:
            del self._in_flight[time_range]

        task = flight.task
        if task.cancelled():
            return
        if task.exception() is not None:
            logger.warning(
                "stats_computation_failed",
                error=type(task.exception()).__name__,
            )
            return
        if not flight.current:
            logger.debug("stats_result_discarded_stale")
            return

        self._entries[time_range] = task.result()
        self._entries.move_to_end(time_range)
        while len(self._entries) > self._max_entries:
            self._entries.popitem(last=False)

    def invalidate(self, change: RecordChange) -> None:
        """
        Drop every cached or in-flight window containing the changed record.

        Synchronous and free of awaits, so it cannot interleave with get().
        """
        if not change.affects_statistics:
            return
        self.invalidate_moment(change.created_at)

    def invalidate_moment(self, moment: datetime) -> None:
        for time_range in [r for r in self._entries if r.contains(moment)]:
            del self._entries[time_range]
        for time_range in [r for r in self._in_flight if r.contains(moment)]:
            self._in_flight.pop(time_range).current = False

    def clear(self) -> None:
        self._entries.clear()
        for flight in self._in_flight.values():
            flight.current = False
        self._in_flight.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, time_range: object) -> bool:
        return time_range in self._entries


__all__ = [
    "ActionLogStats",
    "StatisticsCache",
    "StatsAccumulator",
    "StatsComputation",
    "anchor_day_for",
    "consecutive_days",
]

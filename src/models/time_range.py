"""
Time windows used for range queries and statistics.

A TimeRange is half-open: ``start <= t < end``. Both bounds are
timezone-aware; naive datetimes are treated as UTC.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, date, datetime, time, timedelta, tzinfo


def _aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


@dataclass(frozen=True)
class TimeRange:
    """Half-open time window, hashable so it can key a cache."""

    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        object.__setattr__(self, "start", _aware(self.start).astimezone(UTC))
        object.__setattr__(self, "end", _aware(self.end).astimezone(UTC))
        if self.end < self.start:
            raise ValueError("TimeRange end must not be before start")

    def contains(self, moment: datetime) -> bool:
        return self.start <= _aware(moment) < self.end

    @classmethod
    def all_time(cls) -> TimeRange:
        return cls(datetime.min.replace(tzinfo=UTC), datetime.max.replace(tzinfo=UTC))

    @classmethod
    def for_day(cls, day: date, tz: tzinfo = UTC) -> TimeRange:
        """The calendar day ``day`` in timezone ``tz``."""
        start = datetime.combine(day, time.min, tzinfo=tz)
        return cls(start, start + timedelta(days=1))

    @classmethod
    def last_days(cls, days: int, now: datetime, tz: tzinfo = UTC) -> TimeRange:
        """The ``days`` calendar days ending with (and including) today."""
        if days < 1:
            raise ValueError("days must be at least 1")
        today = _aware(now).astimezone(tz).date()
        first = today - timedelta(days=days - 1)
        return cls(
            datetime.combine(first, time.min, tzinfo=tz),
            datetime.combine(today + timedelta(days=1), time.min, tzinfo=tz),
        )


__all__ = ["TimeRange"]

"""Calendar-day arithmetic in the fixed reference timezone.

A day bucket covers ``[local midnight, next local midnight)``.  Ranges handed
in by callers may use either an exclusive end (next midnight) or an inclusive
end (``23:59:59.999``); both resolve to the same list of days.  Naive
datetimes are treated as UTC.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo


@dataclass(frozen=True)
class DayRange:
    """One calendar day in the reference timezone.

    Attributes:
        day:   The local calendar date.
        start: Local midnight at the start of ``day`` (tz-aware).
        end:   Local midnight of the following day (tz-aware, exclusive).
    """

    day: date
    start: datetime
    end: datetime


def as_aware(ts: datetime) -> datetime:
    """Treat naive timestamps as UTC."""
    return ts if ts.tzinfo is not None else ts.replace(tzinfo=timezone.utc)


def local_date(ts: datetime, tz: ZoneInfo) -> date:
    """Return the calendar date of ``ts`` in ``tz``."""
    return as_aware(ts).astimezone(tz).date()


def day_range(day: date, tz: ZoneInfo) -> DayRange:
    """Build the bucket boundaries for ``day``."""
    start = datetime.combine(day, time.min, tzinfo=tz)
    end = datetime.combine(day + timedelta(days=1), time.min, tzinfo=tz)
    return DayRange(day=day, start=start, end=end)


def today(now: datetime, tz: ZoneInfo) -> date:
    return local_date(now, tz)


def days_in_range(start: datetime, end: datetime, tz: ZoneInfo) -> list[date]:
    """List every calendar day touched by ``[start, end]``, oldest first.

    An ``end`` that falls exactly on local midnight is treated as exclusive.

    Raises:
        ValueError: If ``end`` precedes ``start``.
    """
    start, end = as_aware(start), as_aware(end)
    if end < start:
        raise ValueError(f"Range end {end.isoformat()} precedes start {start.isoformat()}")

    first = local_date(start, tz)
    local_end = end.astimezone(tz)
    last = local_end.date()
    if end > start and local_end.time() == time.min:
        last -= timedelta(days=1)
    if last < first:
        last = first

    return [first + timedelta(days=i) for i in range((last - first).days + 1)]


def split_days(start: datetime, end: datetime, tz: ZoneInfo) -> list[DayRange]:
    """Decompose a range into single-day ranges, oldest first."""
    return [day_range(d, tz) for d in days_in_range(start, end, tz)]


def is_single_day(start: datetime, end: datetime, tz: ZoneInfo) -> bool:
    return len(days_in_range(start, end, tz)) == 1


def lookback_days(reference: date, count: int) -> list[date]:
    """The ``count`` days before ``reference`` (exclusive), oldest first."""
    return [reference - timedelta(days=count - i) for i in range(count)]

"""Tests for calendar-day arithmetic in the reference timezone."""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone

import pytest

from src.activity_sync.days import (
    day_range,
    days_in_range,
    is_single_day,
    local_date,
    lookback_days,
    split_days,
)
from src.activity_sync.tests.conftest import TZ, local


class TestDayRange:
    def test_bucket_spans_local_midnight_to_midnight(self) -> None:
        dr = day_range(date(2026, 3, 9), TZ)
        assert dr.start == local(date(2026, 3, 9))
        assert dr.end == local(date(2026, 3, 10))
        # Bangkok is UTC+7: local midnight is 17:00 UTC the previous day
        assert dr.start.astimezone(timezone.utc) == datetime(2026, 3, 8, 17, 0, tzinfo=timezone.utc)

    def test_local_date_crosses_utc_boundary(self) -> None:
        ts = datetime(2026, 3, 8, 18, 30, tzinfo=timezone.utc)
        assert local_date(ts, TZ) == date(2026, 3, 9)

    def test_naive_timestamp_treated_as_utc(self) -> None:
        assert local_date(datetime(2026, 3, 8, 18, 30), TZ) == date(2026, 3, 9)


class TestDaysInRange:
    def test_exclusive_midnight_end(self) -> None:
        days = days_in_range(local(date(2026, 3, 9)), local(date(2026, 3, 12)), TZ)
        assert days == [date(2026, 3, 9), date(2026, 3, 10), date(2026, 3, 11)]

    def test_inclusive_end_resolves_to_same_days(self) -> None:
        end = local(date(2026, 3, 12)) - timedelta(milliseconds=1)
        days = days_in_range(local(date(2026, 3, 9)), end, TZ)
        assert days == [date(2026, 3, 9), date(2026, 3, 10), date(2026, 3, 11)]

    def test_partial_day_counts_once(self) -> None:
        days = days_in_range(local(date(2026, 3, 9), 8), local(date(2026, 3, 9), 17), TZ)
        assert days == [date(2026, 3, 9)]

    def test_zero_length_range_is_one_day(self) -> None:
        ts = local(date(2026, 3, 9))
        assert days_in_range(ts, ts, TZ) == [date(2026, 3, 9)]

    def test_reversed_range_raises(self) -> None:
        with pytest.raises(ValueError, match="precedes"):
            days_in_range(local(date(2026, 3, 9)), local(date(2026, 3, 8)), TZ)

    def test_month_boundary(self) -> None:
        days = days_in_range(local(date(2026, 2, 27)), local(date(2026, 3, 2)), TZ)
        assert days == [date(2026, 2, 27), date(2026, 2, 28), date(2026, 3, 1)]


class TestSplitting:
    def test_split_days_are_contiguous(self) -> None:
        ranges = split_days(local(date(2026, 3, 1)), local(date(2026, 3, 5)), TZ)
        assert [r.day for r in ranges] == [date(2026, 3, d) for d in range(1, 5)]
        for prev, nxt in zip(ranges, ranges[1:]):
            assert prev.end == nxt.start

    def test_is_single_day(self) -> None:
        assert is_single_day(local(date(2026, 3, 9)), local(date(2026, 3, 10)), TZ)
        assert not is_single_day(local(date(2026, 3, 9)), local(date(2026, 3, 10), 1), TZ)


class TestLookback:
    def test_ends_yesterday_oldest_first(self) -> None:
        days = lookback_days(date(2026, 3, 11), 3)
        assert days == [date(2026, 3, 8), date(2026, 3, 9), date(2026, 3, 10)]

    def test_thirty_day_window(self) -> None:
        days = lookback_days(date(2026, 3, 11), 30)
        assert len(days) == 30
        assert days[0] == date(2026, 2, 9)
        assert days[-1] == date(2026, 3, 10)

    def test_zero_days(self) -> None:
        assert lookback_days(date(2026, 3, 11), 0) == []

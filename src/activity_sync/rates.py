"""Deals-per-hour derived from deal counts and measured activity time.

A rate built on an incomplete time sum is rendered as pending (``None``),
never as zero and never extrapolated.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Mapping

from src.activity_sync.errors import IncompleteData
from src.activity_sync.metric_cache import DayBucketedMetricCache

logger = logging.getLogger("leaderboard.activity_sync.rates")


@dataclass
class SubjectRate:
    """Productivity reading for one subject.

    Attributes:
        subject_id:       Upstream user id.
        deals:            Deal count over the range.
        measured_seconds: Summed activity time, None while data is incomplete.
        deals_per_hour:   Rate rounded to 2 decimals, None while pending.
        degraded:         True when the time sum includes legacy-averaged days.
    """

    subject_id: str
    deals: int
    measured_seconds: int | None
    deals_per_hour: float | None
    degraded: bool = False

    @property
    def pending(self) -> bool:
        return self.measured_seconds is None


def deals_per_hour(deals: int, seconds: int | None, min_seconds: int = 300) -> float | None:
    """Compute deals per hour.

    Args:
        deals:       Number of deals.
        seconds:     Measured seconds, or None when the sum is incomplete.
        min_seconds: Below this much measured time the rate is 0.0.

    Returns:
        Rate rounded to 2 decimals, or None if ``seconds`` is None.
    """
    if seconds is None:
        return None
    if seconds <= 0 or seconds < min_seconds:
        return 0.0
    return round(deals / (seconds / 3600.0), 2)


async def compute_rates(
    cache: DayBucketedMetricCache,
    deal_counts: Mapping[str, int],
    start: datetime,
    end: datetime,
    min_seconds: int = 300,
) -> dict[str, SubjectRate]:
    """Compute deals per hour for every subject in ``deal_counts``.

    Subjects whose buckets are incomplete come back pending; the other
    subjects still get their rate.
    """
    subject_ids = [str(s) for s in deal_counts]
    if not subject_ids:
        return {}

    degraded: set[str] = set()
    try:
        result = await cache.get_metric(subject_ids, start, end)
        seconds: dict[str, int] = result.seconds
        degraded = result.degraded
    except IncompleteData as exc:
        logger.info("%d subject(s) pending until their buckets are synced", len(exc.missing))
        seconds = exc.complete

    rates: dict[str, SubjectRate] = {}
    for subject_id, deals in deal_counts.items():
        sid = str(subject_id)
        measured = seconds.get(sid)
        rates[sid] = SubjectRate(
            subject_id=sid,
            deals=int(deals),
            measured_seconds=measured,
            deals_per_hour=deals_per_hour(int(deals), measured, min_seconds),
            degraded=sid in degraded,
        )
    return rates

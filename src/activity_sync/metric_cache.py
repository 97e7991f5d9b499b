"""Day-bucketed cache of measured seconds per subject.

The upstream's multi-day aggregates are not additive, so the cache only ever
stores single calendar days and derives every range by summing them:

    get_metric(A, Mon..Wed) == bucket(A, Mon) + bucket(A, Tue) + bucket(A, Wed)

If any day in the range has no bucket, the read fails with IncompleteData
rather than returning an under-counted total.  Old multi-day rows written
before day bucketing existed are read through an averaging fallback and
flagged as degraded.

Reads are memoized per (subject, first day, last day) with an asymmetric TTL:
zero readings expire after ``zero_ttl_s`` so a not-yet-synced day does not
stick as "0 seconds", non-zero readings after ``nonzero_ttl_s``.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from functools import partial
from typing import Iterable
from zoneinfo import ZoneInfo

from src.activity_sync.adapters.adversus import AdversusClient
from src.activity_sync.base import MetricBucket, MetricResult, SyncReport
from src.activity_sync.clock import SYSTEM_CLOCK, Clock
from src.activity_sync.config_loader import SyncConfig
from src.activity_sync.days import day_range, days_in_range, split_days
from src.activity_sync.days import today as local_today
from src.activity_sync.errors import IncompleteData
from src.activity_sync.store import MetricStore

logger = logging.getLogger("leaderboard.activity_sync.metric_cache")


@dataclass
class _MemoEntry:
    seconds: int
    degraded: bool
    expires_at: float


def _normalize(subject_ids: Iterable[object]) -> list[str]:
    """Stringify and de-duplicate ids, keeping first-seen order."""
    return list(dict.fromkeys(str(s) for s in subject_ids))


class DayBucketedMetricCache:
    """Read and sync day buckets of measured seconds.

    Usage::

        cache = DayBucketedMetricCache.from_config(store, client, get_sync_config())
        await cache.sync_metric(["101", "102"], month_start, now)
        try:
            result = await cache.get_metric(["101", "102"], month_start, now)
        except IncompleteData as exc:
            ...  # render the affected rates as pending
    """

    def __init__(
        self,
        store: MetricStore,
        client: AdversusClient,
        *,
        tz: ZoneInfo,
        clock: Clock = SYSTEM_CLOCK,
        zero_ttl_s: float = 10.0,
        nonzero_ttl_s: float = 120.0,
        inter_day_delay_s: float = 2.0,
    ) -> None:
        """Initialize the cache.

        Args:
            store:             Bucket persistence.
            client:            Upstream client (all calls go through its gateway).
            tz:                Reference timezone defining calendar days.
            clock:             Time source.
            zero_ttl_s:        Memo TTL for zero readings.
            nonzero_ttl_s:     Memo TTL for non-zero readings.
            inter_day_delay_s: Pause between upstream calls in multi-day syncs.
        """
        self._store = store
        self._client = client
        self._tz = tz
        self._clock = clock
        self._zero_ttl_s = zero_ttl_s
        self._nonzero_ttl_s = nonzero_ttl_s
        self._inter_day_delay_s = inter_day_delay_s
        self._memo: dict[tuple[str, date, date], _MemoEntry] = {}
        # bumped by invalidate(); a read only memoizes if nothing it covers moved
        self._epoch = 0
        self._day_generations: dict[date, int] = defaultdict(int)
        self._ongoing: dict[tuple[date, frozenset[str]], asyncio.Future[int]] = {}

    @classmethod
    def from_config(
        cls,
        store: MetricStore,
        client: AdversusClient,
        config: SyncConfig,
        clock: Clock = SYSTEM_CLOCK,
    ) -> "DayBucketedMetricCache":
        return cls(
            store,
            client,
            tz=config.tz,
            clock=clock,
            zero_ttl_s=config.cache.zero_ttl_s,
            nonzero_ttl_s=config.cache.nonzero_ttl_s,
            inter_day_delay_s=config.scheduler.backfill.inter_day_delay_s,
        )

    @property
    def tz(self) -> ZoneInfo:
        return self._tz

    def today(self) -> date:
        return local_today(self._clock.now(), self._tz)

    @property
    def syncs_in_flight(self) -> int:
        return len(self._ongoing)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_metric(
        self, subject_ids: Iterable[object], start: datetime, end: datetime
    ) -> MetricResult:
        """Sum day buckets over ``[start, end]`` for each subject.

        Args:
            subject_ids: Subjects to read.
            start:       Range start.
            end:         Range end (inclusive, or exclusive at local midnight).

        Returns:
            MetricResult with seconds per subject; ``degraded`` lists subjects
            whose total includes legacy-averaged days.

        Raises:
            IncompleteData: If any subject lacks a usable bucket for any day.
                            Fully covered subjects are carried on the exception.
        """
        subjects = _normalize(subject_ids)
        days = days_in_range(start, end, self._tz)
        first, last = days[0], days[-1]
        result = MetricResult()

        now = self._clock.monotonic()
        pending: list[str] = []
        for sid in subjects:
            memo = self._memo.get((sid, first, last))
            if memo is not None and memo.expires_at > now:
                result.seconds[sid] = memo.seconds
                if memo.degraded:
                    result.degraded.add(sid)
            else:
                pending.append(sid)

        if not pending:
            return result

        generation = self._generation(days)
        buckets = await self._store.fetch_buckets(
            pending, day_range(first, self._tz).start, day_range(last, self._tz).end
        )
        memoizable = self._generation(days) == generation
        if not memoizable:
            logger.debug("Buckets for %s..%s changed during read; not memoizing", first, last)

        day_values: dict[str, dict[date, int]] = defaultdict(dict)
        legacy: dict[str, list[tuple[MetricBucket, list[date]]]] = defaultdict(list)
        for bucket in buckets:
            covered = days_in_range(bucket.period_start, bucket.period_end, self._tz)
            if len(covered) == 1:
                values = day_values[bucket.subject_id]
                values[covered[0]] = max(values.get(covered[0], 0), bucket.measured_seconds)
            else:
                legacy[bucket.subject_id].append((bucket, covered))

        missing: dict[str, list[date]] = {}
        for sid in pending:
            total = 0.0
            degraded = False
            absent: list[date] = []
            for day in days:
                if day in day_values[sid]:
                    total += day_values[sid][day]
                    continue
                share = self._legacy_share(legacy[sid], day)
                if share is None:
                    absent.append(day)
                else:
                    total += share
                    degraded = True

            if absent:
                missing[sid] = absent
                continue

            seconds = int(round(total))
            result.seconds[sid] = seconds
            if degraded:
                result.degraded.add(sid)
            if memoizable:
                self._remember(sid, first, last, seconds, degraded)

        if missing:
            logger.info(
                "Incomplete buckets for %d subject(s) over %s..%s", len(missing), first, last
            )
            raise IncompleteData(missing, complete=dict(result.seconds))

        if result.degraded:
            logger.info(
                "Serving legacy-averaged values for %d subject(s) over %s..%s",
                len(result.degraded), first, last,
            )
        return result

    @staticmethod
    def _legacy_share(
        candidates: list[tuple[MetricBucket, list[date]]], day: date
    ) -> float | None:
        """Even per-day share of the freshest legacy bucket covering ``day``."""
        covering = [(b, covered) for b, covered in candidates if day in covered]
        if not covering:
            return None
        bucket, covered = max(
            covering, key=lambda item: item[0].synced_at.timestamp() if item[0].synced_at else 0.0
        )
        return bucket.measured_seconds / len(covered)

    def _generation(self, days: list[date]) -> tuple[int, int]:
        return self._epoch, sum(self._day_generations.get(d, 0) for d in days)

    def _remember(self, sid: str, first: date, last: date, seconds: int, degraded: bool) -> None:
        ttl = self._zero_ttl_s if seconds == 0 else self._nonzero_ttl_s
        self._memo[(sid, first, last)] = _MemoEntry(
            seconds=seconds, degraded=degraded, expires_at=self._clock.monotonic() + ttl
        )

    def invalidate(self, subject_ids: Iterable[str] | None = None, day: date | None = None) -> None:
        """Drop memoized readings for the subjects whose range covers ``day``.

        With no arguments the whole memo is cleared.
        """
        if day is None:
            self._epoch += 1
        else:
            self._day_generations[day] += 1
        if subject_ids is None and day is None:
            self._memo.clear()
            return
        wanted = set(subject_ids) if subject_ids is not None else None
        stale = [
            key for key in self._memo
            if (wanted is None or key[0] in wanted)
            and (day is None or key[1] <= day <= key[2])
        ]
        for key in stale:
            del self._memo[key]

    async def day_is_complete(self, subject_ids: Iterable[object], day: date) -> bool:
        """True if every given subject already has a bucket for ``day``."""
        subjects = _normalize(subject_ids)
        dr = day_range(day, self._tz)
        have = await self._store.subjects_with_bucket(subjects, dr.start, dr.end)
        return set(subjects) <= have

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def sync_metric(
        self, subject_ids: Iterable[object], start: datetime, end: datetime
    ) -> SyncReport:
        """Fetch and store buckets for every day in ``[start, end]``.

        Each day is its own batched upstream call; a failed day is recorded on
        the report and the remaining days still sync.

        Returns:
            SyncReport listing synced days and per-day failures.
        """
        subjects = _normalize(subject_ids)
        ranges = split_days(start, end, self._tz)
        report = SyncReport()
        if len(ranges) > 1:
            logger.info(
                "Splitting %s..%s into %d single-day syncs", ranges[0].day, ranges[-1].day, len(ranges)
            )

        for index, dr in enumerate(ranges):
            if index > 0:
                await self._clock.sleep(self._inter_day_delay_s)
            try:
                report.buckets_written += await self.sync_day(subjects, dr.day)
                report.days_synced.append(dr.day)
            except Exception as exc:
                logger.warning("Sync failed for %s: %s", dr.day, exc)
                report.failures[dr.day] = str(exc)

        return report

    async def sync_day(self, subject_ids: Iterable[object], day: date) -> int:
        """Sync one calendar day for the given subjects.

        Concurrent callers asking for the same (day, subjects) share the
        in-flight sync instead of issuing a second upstream call.

        Returns:
            Number of buckets written.

        Raises:
            UpstreamRateLimited / UpstreamError: From the upstream fetch.
        """
        subjects = frozenset(_normalize(subject_ids))
        key = (day, subjects)
        future = self._ongoing.get(key)
        if future is None:
            future = asyncio.ensure_future(self._sync_single_day(sorted(subjects), day))
            self._ongoing[key] = future
            future.add_done_callback(partial(self._forget, key))
        else:
            logger.info("Sync for %s already in flight; awaiting it", day)
        return await asyncio.shield(future)

    def _forget(self, key: tuple[date, frozenset[str]], future: asyncio.Future[int]) -> None:
        if self._ongoing.get(key) is future:
            del self._ongoing[key]

    async def _sync_single_day(self, subjects: list[str], day: date) -> int:
        if not subjects:
            return 0
        dr = day_range(day, self._tz)
        seconds = await self._client.fetch_day_activity(dr.start, dr.end - timedelta(milliseconds=1))

        synced_at = self._clock.now()
        buckets = [
            MetricBucket(
                subject_id=sid,
                period_start=dr.start,
                period_end=dr.end,
                measured_seconds=max(seconds.get(sid, 0), 0),
                synced_at=synced_at,
            )
            for sid in subjects
        ]
        today_start = day_range(self.today(), self._tz).start
        written = await self._store.upsert_buckets(buckets, today_start)
        self.invalidate(subjects, day)

        logger.info(
            "Synced %s: %d subject(s), %d with activity, %ds total",
            day, len(subjects), sum(1 for b in buckets if b.measured_seconds), sum(b.measured_seconds for b in buckets),
        )
        return written

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    async def cleanup_legacy_buckets(self) -> int:
        """Delete multi-day legacy rows; they will be re-synced per day."""
        deleted = await self._store.delete_legacy_buckets()
        self.invalidate()
        logger.info("Deleted %d legacy multi-day bucket(s)", deleted)
        return deleted

    async def reset(self) -> int:
        """Administrative reset: delete every bucket."""
        deleted = await self._store.reset()
        self.invalidate()
        logger.warning("Metric store reset: %d bucket(s) deleted", deleted)
        return deleted

"""Persistence for day buckets.

Merge policy (applied atomically inside the store, never as an application
read-then-write):

    bucket day >= today  →  stored = incoming        (today is still accumulating)
    bucket day <  today  →  stored = max(stored, incoming)

so a short or partial fetch can never shrink a finished historical day, and
overlapping writers (backfill + recurring pass) cannot race into a lower value.

Two implementations share that contract:
    PostgresMetricStore — asyncpg, ``INSERT ... ON CONFLICT DO UPDATE`` with a
                          CASE/GREATEST expression.
    InMemoryMetricStore — process-local dict guarded by an asyncio lock; used
                          for tests and single-process development runs.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Iterable, Sequence

import asyncpg

from src.activity_sync.base import MetricBucket

logger = logging.getLogger("leaderboard.activity_sync.store")

TABLE = "activity_day_buckets"

#: Anything longer than this cannot be a single calendar day, DST included.
LEGACY_MIN_SPAN = timedelta(hours=26)

UPSERT_SQL = f"""
    INSERT INTO {TABLE} (subject_id, period_start, period_end, measured_seconds, synced_at)
    VALUES ($1, $2, $3, $4, $5)
    ON CONFLICT (subject_id, period_start, period_end) DO UPDATE SET
        measured_seconds = CASE
            WHEN {TABLE}.period_start >= $6 THEN EXCLUDED.measured_seconds
            ELSE GREATEST({TABLE}.measured_seconds, EXCLUDED.measured_seconds)
        END,
        synced_at = EXCLUDED.synced_at
"""


def merge_seconds(stored: int | None, incoming: int, is_current_day: bool) -> int:
    """Apply the merge policy to one value.

    Args:
        stored:         Existing value, or None if no row exists.
        incoming:       Freshly fetched value.
        is_current_day: True when the bucket's day is today or later.
    """
    if stored is None or is_current_day:
        return incoming
    return max(stored, incoming)


def _utc(ts: datetime) -> datetime:
    return ts if ts.tzinfo is not None else ts.replace(tzinfo=timezone.utc)


class MetricStore(ABC):
    """Storage contract for day buckets."""

    @abstractmethod
    async def upsert_buckets(self, buckets: Sequence[MetricBucket], today_start: datetime) -> int:
        """Write buckets through the merge policy.

        Args:
            buckets:     Rows to write (single-day periods only).
            today_start: Local midnight of the current day; buckets starting at
                         or after it are replaced, older ones merged by max.

        Returns:
            Number of rows written.
        """

    @abstractmethod
    async def fetch_buckets(
        self, subject_ids: Iterable[str], start: datetime, end: datetime
    ) -> list[MetricBucket]:
        """Return every bucket for the subjects that overlaps ``[start, end)``."""

    @abstractmethod
    async def subjects_with_bucket(
        self, subject_ids: Iterable[str], period_start: datetime, period_end: datetime
    ) -> set[str]:
        """Return the subjects that have a bucket with exactly this period."""

    @abstractmethod
    async def delete_legacy_buckets(self) -> int:
        """Delete rows spanning more than one day; return how many."""

    @abstractmethod
    async def reset(self) -> int:
        """Delete every row (administrative reset); return how many."""


class InMemoryMetricStore(MetricStore):
    """Process-local store with the same merge semantics as Postgres.

    All mutations run under one asyncio lock, so an upsert is atomic with
    respect to every other coroutine in the process.
    """

    def __init__(self) -> None:
        self._rows: dict[tuple[str, datetime, datetime], MetricBucket] = {}
        self._lock = asyncio.Lock()

    async def upsert_buckets(self, buckets: Sequence[MetricBucket], today_start: datetime) -> int:
        today_start = _utc(today_start)
        async with self._lock:
            for bucket in buckets:
                key = (bucket.subject_id, _utc(bucket.period_start), _utc(bucket.period_end))
                existing = self._rows.get(key)
                value = merge_seconds(
                    existing.measured_seconds if existing else None,
                    bucket.measured_seconds,
                    is_current_day=key[1] >= today_start,
                )
                self._rows[key] = MetricBucket(
                    subject_id=bucket.subject_id,
                    period_start=key[1],
                    period_end=key[2],
                    measured_seconds=value,
                    synced_at=bucket.synced_at,
                )
        return len(buckets)

    async def fetch_buckets(
        self, subject_ids: Iterable[str], start: datetime, end: datetime
    ) -> list[MetricBucket]:
        wanted = set(subject_ids)
        start, end = _utc(start), _utc(end)
        return sorted(
            (
                b for (sid, p_start, p_end), b in self._rows.items()
                if sid in wanted and p_start < end and p_end > start
            ),
            key=lambda b: (b.subject_id, b.period_start),
        )

    async def subjects_with_bucket(
        self, subject_ids: Iterable[str], period_start: datetime, period_end: datetime
    ) -> set[str]:
        p_start, p_end = _utc(period_start), _utc(period_end)
        return {sid for sid in subject_ids if (sid, p_start, p_end) in self._rows}

    async def delete_legacy_buckets(self) -> int:
        async with self._lock:
            legacy = [k for k in self._rows if k[2] - k[1] > LEGACY_MIN_SPAN]
            for key in legacy:
                del self._rows[key]
        return len(legacy)

    async def reset(self) -> int:
        async with self._lock:
            count = len(self._rows)
            self._rows.clear()
        return count

    async def insert_raw(self, bucket: MetricBucket) -> None:
        """Write a row verbatim, bypassing the merge policy.

        Only for seeding legacy multi-day rows in tests and imports.
        """
        async with self._lock:
            key = (bucket.subject_id, _utc(bucket.period_start), _utc(bucket.period_end))
            self._rows[key] = bucket

    def __len__(self) -> int:
        return len(self._rows)


class PostgresMetricStore(MetricStore):
    """asyncpg-backed store; the merge policy lives in ``UPSERT_SQL``."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def upsert_buckets(self, buckets: Sequence[MetricBucket], today_start: datetime) -> int:
        if not buckets:
            return 0
        now = datetime.now(timezone.utc)
        args = [
            (
                b.subject_id,
                _utc(b.period_start),
                _utc(b.period_end),
                int(b.measured_seconds),
                b.synced_at or now,
                _utc(today_start),
            )
            for b in buckets
        ]
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                await conn.executemany(UPSERT_SQL, args)
        logger.debug("Upserted %d day bucket(s)", len(args))
        return len(args)

    async def fetch_buckets(
        self, subject_ids: Iterable[str], start: datetime, end: datetime
    ) -> list[MetricBucket]:
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT subject_id, period_start, period_end, measured_seconds, synced_at
                FROM {TABLE}
                WHERE subject_id = ANY($1::text[])
                  AND period_start < $3
                  AND period_end > $2
                ORDER BY subject_id, period_start
                """,
                list(subject_ids),
                _utc(start),
                _utc(end),
            )
        return [
            MetricBucket(
                subject_id=r["subject_id"],
                period_start=r["period_start"],
                period_end=r["period_end"],
                measured_seconds=int(r["measured_seconds"]),
                synced_at=r["synced_at"],
            )
            for r in rows
        ]

    async def subjects_with_bucket(
        self, subject_ids: Iterable[str], period_start: datetime, period_end: datetime
    ) -> set[str]:
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT DISTINCT subject_id FROM {TABLE}
                WHERE subject_id = ANY($1::text[])
                  AND period_start = $2
                  AND period_end = $3
                """,
                list(subject_ids),
                _utc(period_start),
                _utc(period_end),
            )
        return {r["subject_id"] for r in rows}

    async def delete_legacy_buckets(self) -> int:
        async with self._pool.acquire() as conn:
            status = await conn.execute(
                f"DELETE FROM {TABLE} WHERE period_end - period_start > $1",
                LEGACY_MIN_SPAN,
            )
        return _affected(status)

    async def reset(self) -> int:
        async with self._pool.acquire() as conn:
            status = await conn.execute(f"DELETE FROM {TABLE}")
        return _affected(status)


def _affected(status: str) -> int:
    """Parse the row count out of an asyncpg status string ("DELETE 12")."""
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (ValueError, AttributeError):
        return 0

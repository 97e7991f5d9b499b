"""Historical backfill of day buckets.

Walks the lookback window (default 30 days ending yesterday) oldest to
newest, one upstream call per day.  Designed to:
- Resume for free: a day is skipped when every subject in the *current*
  subject set already has a bucket for it, so a re-run only fetches what is
  missing (including days a newly added subject has never seen)
- Respect the upstream rate limit (fixed delay after each upstream day sync)
- Keep going past failed days, recording them on the run

Usage::

    backfill = HistoricalBackfill(cache, subject_provider)
    run = await backfill.run()
    print(backfill.progress())
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import date
from typing import Awaitable, Callable

from src.activity_sync.clock import SYSTEM_CLOCK, Clock
from src.activity_sync.config_loader import SyncConfig
from src.activity_sync.days import lookback_days
from src.activity_sync.metric_cache import DayBucketedMetricCache
from src.activity_sync.sync.run import SyncRun, SyncStage

logger = logging.getLogger("leaderboard.activity_sync.sync.backfill")

SubjectProvider = Callable[[], Awaitable[list[str]]]


@dataclass
class BackfillProgress:
    """Progress snapshot of the current (or last) backfill.

    Attributes:
        stage:                    Stage of the underlying run.
        completed_days:           Days processed (synced, skipped, or failed).
        total_days:               Days in the lookback window.
        current_day:              Day in progress, None between days.
        estimated_time_remaining: Seconds, from the average pace so far; None
                                  until the first day finishes.
        errors:                   Number of failed days.
    """

    stage: SyncStage
    completed_days: int
    total_days: int
    current_day: date | None
    estimated_time_remaining: float | None
    errors: int = 0

    @property
    def pct_complete(self) -> float:
        if self.total_days == 0:
            return 100.0
        return round(self.completed_days / self.total_days * 100, 1)

    def to_dict(self) -> dict:
        return {
            "stage": self.stage.value,
            "completed_days": self.completed_days,
            "total_days": self.total_days,
            "current_day": self.current_day.isoformat() if self.current_day else None,
            "estimated_time_remaining": self.estimated_time_remaining,
            "pct_complete": self.pct_complete,
            "errors": self.errors,
        }


class HistoricalBackfill:
    """Fill the lookback window with single-day buckets.

    At most one run is active; a second ``run()`` call awaits the active one.
    """

    def __init__(
        self,
        cache: DayBucketedMetricCache,
        subjects: SubjectProvider,
        *,
        lookback: int = 30,
        inter_day_delay_s: float = 2.0,
        clock: Clock = SYSTEM_CLOCK,
    ) -> None:
        """Initialize the backfill.

        Args:
            cache:             Metric cache the days are synced through.
            subjects:          Async callable returning the current subject ids;
                               called once per day.
            lookback:          Number of days before today to cover.
            inter_day_delay_s: Pause after each upstream day sync.
            clock:             Time source.
        """
        self._cache = cache
        self._subjects = subjects
        self._lookback = lookback
        self._delay_s = inter_day_delay_s
        self._clock = clock
        self._run: SyncRun | None = None
        self._started_mono: float | None = None
        self._task: asyncio.Future[SyncRun] | None = None

    @classmethod
    def from_config(
        cls,
        cache: DayBucketedMetricCache,
        subjects: SubjectProvider,
        config: SyncConfig,
        clock: Clock = SYSTEM_CLOCK,
    ) -> "HistoricalBackfill":
        bf = config.scheduler.backfill
        return cls(
            cache,
            subjects,
            lookback=bf.lookback_days,
            inter_day_delay_s=bf.inter_day_delay_s,
            clock=clock,
        )

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def last_run(self) -> SyncRun | None:
        return self._run

    def start(self) -> bool:
        """Start a backfill in the background.

        Returns:
            False if a backfill was already running (nothing new started).
        """
        if self.is_running:
            return False
        self._task = asyncio.ensure_future(self._execute())
        return True

    async def run(self) -> SyncRun:
        """Start a backfill, or await the one already running."""
        if not self.start():
            logger.info("Backfill already running; awaiting it")
        return await asyncio.shield(self._task)

    def cancel(self) -> None:
        if self.is_running:
            self._task.cancel()

    def progress(self) -> BackfillProgress | None:
        run = self._run
        if run is None:
            return None

        eta: float | None = None
        if run.is_finished:
            eta = 0.0
        elif run.completed_units and self._started_mono is not None:
            elapsed = self._clock.monotonic() - self._started_mono
            eta = round(elapsed / run.completed_units * (run.total_units - run.completed_units), 1)

        return BackfillProgress(
            stage=run.stage,
            completed_days=run.completed_units,
            total_days=run.total_units,
            current_day=date.fromisoformat(run.current_unit) if run.current_unit else None,
            estimated_time_remaining=eta,
            errors=len(run.errors),
        )

    async def _execute(self) -> SyncRun:
        run = SyncRun(kind="backfill", start_time=self._clock.now())
        self._run = run
        self._started_mono = self._clock.monotonic()

        try:
            days = lookback_days(self._cache.today(), self._lookback)
            run.total_units = len(days)
            run.stage = SyncStage.FETCHING_SUBJECTS
            logger.info("Backfill starting: %d day(s) from %s", len(days), days[0] if days else "-")

            synced = skipped = 0
            for day in days:
                run.current_unit = day.isoformat()
                try:
                    subject_ids = await self._subjects()
                    run.stage = SyncStage.SYNCING
                    if not subject_ids or await self._cache.day_is_complete(subject_ids, day):
                        skipped += 1
                        logger.debug("Backfill: %s already complete, skipping", day)
                    else:
                        try:
                            await self._cache.sync_day(subject_ids, day)
                            synced += 1
                        finally:
                            await self._clock.sleep(self._delay_s)
                except Exception as exc:
                    logger.warning("Backfill error on %s: %s", day, exc)
                    run.record_error(day.isoformat(), str(exc))
                run.completed_units += 1

            run.stage = SyncStage.COMPLETE
            logger.info(
                "Backfill complete: %d synced, %d skipped, %d failed",
                synced, skipped, len(run.errors),
            )
        except Exception as exc:
            logger.exception("Backfill aborted: %s", exc)
            run.stage = SyncStage.ERROR
            run.record_error(run.current_unit or "backfill", str(exc))
        finally:
            run.current_unit = None
            run.finished_at = self._clock.now()

        return run

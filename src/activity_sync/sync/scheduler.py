"""Recurring sync pass and the engine's operational surface.

Every ``interval_s`` (default 15 s) the scheduler runs one pass with four
steps, always in this order:

1. deals mirror      (injected async callable)
2. messages mirror   (injected async callable)
3. subject directory (refreshes the current subject set)
4. today's bucket    (one batched upstream call for all current subjects,
                     at most once per ``metric_refresh_interval_s`` unless
                     the day or the subject set changed)

A failing step is logged and recorded on the run; the following steps still
run.  The engine reports ready once a pass has finished with no step errors,
and stays ready afterwards.

The historical backfill is started alongside the loop and runs independently.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from datetime import date, datetime
from typing import Any, Awaitable, Callable, Iterable

from src.activity_sync.adapters.adversus import AdversusClient
from src.activity_sync.base import DirectoryStatus, MetricResult
from src.activity_sync.clock import SYSTEM_CLOCK, Clock
from src.activity_sync.config_loader import SyncConfig
from src.activity_sync.errors import UpstreamRateLimited
from src.activity_sync.metric_cache import DayBucketedMetricCache
from src.activity_sync.sync.backfill import HistoricalBackfill
from src.activity_sync.sync.run import SyncRun, SyncStage

logger = logging.getLogger("leaderboard.activity_sync.sync.scheduler")

Step = Callable[[], Awaitable[Any]]


class SyncScheduler:
    """Drive the recurring pass and the historical backfill.

    Usage::

        scheduler = SyncScheduler.from_config(
            cache, client, get_sync_config(),
            deals_sync=deals_mirror.sync,
            messages_sync=messages_mirror.sync,
        )
        await scheduler.start()
        ...
        status = scheduler.get_status()
        await scheduler.stop()
    """

    def __init__(
        self,
        cache: DayBucketedMetricCache,
        client: AdversusClient,
        *,
        deals_sync: Step | None = None,
        messages_sync: Step | None = None,
        interval_s: float = 15.0,
        metric_refresh_interval_s: float = 120.0,
        backfill_enabled: bool = True,
        lookback_days: int = 30,
        inter_day_delay_s: float = 2.0,
        clock: Clock = SYSTEM_CLOCK,
    ) -> None:
        """Initialize the scheduler.

        Args:
            cache:             Day-bucketed metric cache.
            client:            Upstream client (subject directory).
            deals_sync:        Async callable mirroring deals; skipped if None.
            messages_sync:     Async callable mirroring messages; skipped if None.
            interval_s:        Pause between recurring passes.
            metric_refresh_interval_s:
                               Minimum age of today's bucket before it is
                               re-fetched; 0 re-fetches on every pass.
            backfill_enabled:  Start a historical backfill on ``start()``.
            lookback_days:     Backfill window length.
            inter_day_delay_s: Backfill pause after each upstream day sync.
            clock:             Time source.
        """
        self._cache = cache
        self._client = client
        self._deals_sync = deals_sync
        self._messages_sync = messages_sync
        self._interval_s = interval_s
        self._metric_refresh_interval_s = metric_refresh_interval_s
        self._backfill_enabled = backfill_enabled
        self._clock = clock

        self.backfill = HistoricalBackfill(
            cache,
            self.current_subject_ids,
            lookback=lookback_days,
            inter_day_delay_s=inter_day_delay_s,
            clock=clock,
        )

        self._subject_ids: list[str] | None = None
        self._ready = False
        self._last_sync_time: datetime | None = None
        self._last_run: SyncRun | None = None
        self._recurring: asyncio.Future[SyncRun] | None = None
        self._today_synced: tuple[date, frozenset[str], float] | None = None
        self._loop_task: asyncio.Task | None = None
        self._backfill_task: asyncio.Task | None = None

    @classmethod
    def from_config(
        cls,
        cache: DayBucketedMetricCache,
        client: AdversusClient,
        config: SyncConfig,
        *,
        deals_sync: Step | None = None,
        messages_sync: Step | None = None,
        clock: Clock = SYSTEM_CLOCK,
    ) -> "SyncScheduler":
        sched = config.scheduler
        return cls(
            cache,
            client,
            deals_sync=deals_sync,
            messages_sync=messages_sync,
            interval_s=sched.recurring_interval_s,
            metric_refresh_interval_s=sched.metric_refresh_interval_s,
            backfill_enabled=sched.backfill.enabled,
            lookback_days=sched.backfill.lookback_days,
            inter_day_delay_s=sched.backfill.inter_day_delay_s,
            clock=clock,
        )

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def is_ready(self) -> bool:
        return self._ready

    @property
    def is_running(self) -> bool:
        recurring = self._recurring is not None and not self._recurring.done()
        return recurring or self.backfill.is_running

    @property
    def last_sync_time(self) -> datetime | None:
        return self._last_sync_time

    @property
    def last_run(self) -> SyncRun | None:
        return self._last_run

    async def current_subject_ids(self) -> list[str]:
        """The most recent subject set, fetching the directory if none is known yet."""
        if self._subject_ids is None:
            await self._refresh_subjects()
        return list(self._subject_ids or [])

    def get_status(self) -> dict:
        progress = self.backfill.progress()
        return {
            "is_running": self.is_running,
            "is_ready": self._ready,
            "last_sync_time": self._last_sync_time.isoformat() if self._last_sync_time else None,
            "subject_count": len(self._subject_ids) if self._subject_ids is not None else None,
            "recurring": self._last_run.to_dict() if self._last_run else None,
            "historical_progress": progress.to_dict() if progress else None,
        }

    async def get_metric(
        self, subject_ids: Iterable[object], start: datetime, end: datetime
    ) -> MetricResult:
        """Ranged read; see ``DayBucketedMetricCache.get_metric``."""
        return await self._cache.get_metric(subject_ids, start, end)

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    async def trigger_sync(self) -> SyncRun:
        """Run one recurring pass now, or await the pass already running."""
        if self._recurring is None or self._recurring.done():
            self._recurring = asyncio.ensure_future(self._run_recurring())
        else:
            logger.info("Recurring pass already running; awaiting it")
        return await asyncio.shield(self._recurring)

    async def trigger_backfill(self) -> SyncRun:
        """Run the historical backfill now, or await the one already running."""
        return await self.backfill.run()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the recurring loop and (if enabled) the initial backfill."""
        if self._loop_task is not None and not self._loop_task.done():
            logger.debug("Scheduler already started")
            return
        self._loop_task = asyncio.create_task(self._loop(), name="activity-sync-recurring")
        if self._backfill_enabled:
            self._backfill_task = asyncio.create_task(
                self.trigger_backfill(), name="activity-sync-backfill"
            )
        logger.info(
            "Scheduler started (every %.0fs, backfill %s)",
            self._interval_s, "on" if self._backfill_enabled else "off",
        )

    async def stop(self) -> None:
        """Cancel the loop, any running pass, and the backfill."""
        tasks = [t for t in (self._loop_task, self._backfill_task, self._recurring) if t is not None]
        self.backfill.cancel()
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._loop_task = self._backfill_task = None
        logger.info("Scheduler stopped")

    async def _loop(self) -> None:
        while True:
            try:
                await self.trigger_sync()
            except Exception as exc:
                logger.exception("Recurring pass crashed: %s", exc)
            await self._clock.sleep(self._interval_s)

    # ------------------------------------------------------------------
    # Recurring pass
    # ------------------------------------------------------------------

    async def _run_recurring(self) -> SyncRun:
        steps: list[tuple[str, Step]] = [
            ("deals", self._sync_deals),
            ("messages", self._sync_messages),
            ("subjects", self._refresh_subjects),
            ("today", self._sync_today),
        ]
        run = SyncRun(kind="recurring", total_units=len(steps), start_time=self._clock.now())
        self._last_run = run

        try:
            for name, step in steps:
                run.current_unit = name
                run.stage = SyncStage.FETCHING_SUBJECTS if name == "subjects" else SyncStage.SYNCING
                try:
                    await step()
                except Exception as exc:
                    logger.warning("Recurring step '%s' failed: %s", name, exc)
                    run.record_error(name, str(exc))
                run.completed_units += 1
            run.stage = SyncStage.COMPLETE
        except Exception as exc:
            logger.exception("Recurring pass aborted: %s", exc)
            run.stage = SyncStage.ERROR
            run.record_error(run.current_unit or "pass", str(exc))
        finally:
            run.current_unit = None
            run.finished_at = self._clock.now()
            self._last_sync_time = run.finished_at

        if run.stage is SyncStage.COMPLETE and not run.errors and not self._ready:
            self._ready = True
            logger.info("First clean recurring pass finished; engine ready")
        elif run.errors:
            logger.info("Recurring pass finished with %d step error(s)", len(run.errors))
        return run

    async def _sync_deals(self) -> None:
        if self._deals_sync is not None:
            await self._deals_sync()

    async def _sync_messages(self) -> None:
        if self._messages_sync is not None:
            await self._messages_sync()

    async def _refresh_subjects(self) -> None:
        result = await self._client.list_subjects()
        if result.status is DirectoryStatus.RATE_LIMITED:
            raise UpstreamRateLimited("/users")
        self._subject_ids = [s.subject_id for s in result.data]
        if result.from_fallback:
            logger.info("Subject set from fallback (%d subjects)", len(self._subject_ids))

    async def _sync_today(self) -> None:
        subject_ids = await self.current_subject_ids()
        if not subject_ids:
            logger.debug("No subjects known; nothing to sync for today")
            return

        day = self._cache.today()
        subjects = frozenset(subject_ids)
        now = self._clock.monotonic()
        if self._today_synced is not None:
            synced_day, synced_subjects, synced_at = self._today_synced
            if (
                synced_day == day
                and synced_subjects == subjects
                and now - synced_at < self._metric_refresh_interval_s
            ):
                logger.debug("Today's bucket refreshed %.0fs ago; skipping", now - synced_at)
                return

        await self._cache.sync_day(subject_ids, day)
        self._today_synced = (day, subjects, now)

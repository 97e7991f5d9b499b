"""Tests for the recurring pass, readiness, and scheduler lifecycle."""

from __future__ import annotations

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from src.activity_sync.base import DirectoryStatus
from src.activity_sync.metric_cache import DayBucketedMetricCache
from src.activity_sync.sync.run import SyncStage
from src.activity_sync.sync.scheduler import SyncScheduler
from src.activity_sync.tests.conftest import TODAY, FakeClock, ScriptedActivityClient, local


@pytest.fixture
def order() -> list[str]:
    return []


@pytest.fixture
def scheduler(
    cache: DayBucketedMetricCache,
    upstream: ScriptedActivityClient,
    clock: FakeClock,
    order: list[str],
) -> SyncScheduler:
    return SyncScheduler(
        cache,
        upstream,  # type: ignore[arg-type]
        deals_sync=AsyncMock(side_effect=lambda: order.append("deals")),
        messages_sync=AsyncMock(side_effect=lambda: order.append("messages")),
        backfill_enabled=False,
        lookback_days=3,
        inter_day_delay_s=0,
        clock=clock,
    )


class TestRecurringPass:
    @pytest.mark.asyncio
    async def test_steps_run_in_order_and_sync_today(
        self, scheduler: SyncScheduler, cache: DayBucketedMetricCache,
        upstream: ScriptedActivityClient, order: list[str],
    ) -> None:
        upstream.activity[TODAY] = {"A": 1200, "B": 600}
        run = await scheduler.trigger_sync()

        assert run.stage is SyncStage.COMPLETE
        assert run.errors == []
        assert run.completed_units == run.total_units == 4
        assert order == ["deals", "messages"]
        assert upstream.days_fetched() == [TODAY]
        result = await scheduler.get_metric(["A", "B"], local(TODAY), local(TODAY + timedelta(days=1)))
        assert result.seconds == {"A": 1200, "B": 600}

    @pytest.mark.asyncio
    async def test_failing_step_does_not_stop_later_steps(
        self, scheduler: SyncScheduler, cache: DayBucketedMetricCache
    ) -> None:
        scheduler._deals_sync = AsyncMock(side_effect=RuntimeError("deals API down"))
        run = await scheduler.trigger_sync()

        assert run.stage is SyncStage.COMPLETE
        assert [(e.unit, e.message) for e in run.errors] == [("deals", "deals API down")]
        assert await cache.day_is_complete(["A", "B"], TODAY)

    @pytest.mark.asyncio
    async def test_rate_limited_directory_is_a_step_error(
        self, scheduler: SyncScheduler, upstream: ScriptedActivityClient
    ) -> None:
        upstream.directory_status = DirectoryStatus.RATE_LIMITED
        run = await scheduler.trigger_sync()

        assert [e.unit for e in run.errors] == ["subjects", "today"]
        assert upstream.calls == []
        assert not scheduler.is_ready

    @pytest.mark.asyncio
    async def test_stale_subject_set_survives_throttled_refresh(
        self, scheduler: SyncScheduler, upstream: ScriptedActivityClient
    ) -> None:
        await scheduler.trigger_sync()
        upstream.directory_status = DirectoryStatus.RATE_LIMITED

        run = await scheduler.trigger_sync()
        assert [e.unit for e in run.errors] == ["subjects"]
        assert await scheduler.current_subject_ids() == ["A", "B"]

    @pytest.mark.asyncio
    async def test_concurrent_triggers_share_one_pass(
        self, scheduler: SyncScheduler, upstream: ScriptedActivityClient, order: list[str]
    ) -> None:
        upstream.gate = asyncio.Event()
        first = asyncio.create_task(scheduler.trigger_sync())
        second = asyncio.create_task(scheduler.trigger_sync())
        for _ in range(3):
            await asyncio.sleep(0)
        assert scheduler.is_running

        upstream.gate.set()
        run_a, run_b = await asyncio.gather(first, second)
        assert run_a is run_b
        assert order == ["deals", "messages"]
        assert len(upstream.calls) == 1


class TestReadiness:
    @pytest.mark.asyncio
    async def test_ready_after_first_clean_pass(self, scheduler: SyncScheduler) -> None:
        assert not scheduler.is_ready
        await scheduler.trigger_sync()
        assert scheduler.is_ready

    @pytest.mark.asyncio
    async def test_pass_with_errors_does_not_set_ready(self, scheduler: SyncScheduler) -> None:
        scheduler._messages_sync = AsyncMock(side_effect=RuntimeError("boom"))
        await scheduler.trigger_sync()
        assert not scheduler.is_ready

        scheduler._messages_sync = AsyncMock()
        await scheduler.trigger_sync()
        assert scheduler.is_ready

    @pytest.mark.asyncio
    async def test_ready_is_never_unset(self, scheduler: SyncScheduler) -> None:
        await scheduler.trigger_sync()
        scheduler._deals_sync = AsyncMock(side_effect=RuntimeError("boom"))
        await scheduler.trigger_sync()
        assert scheduler.is_ready


class TestTodayRefresh:
    @pytest.mark.asyncio
    async def test_today_refetched_only_after_refresh_interval(
        self, scheduler: SyncScheduler, upstream: ScriptedActivityClient, clock: FakeClock
    ) -> None:
        for _ in range(8):
            run = await scheduler.trigger_sync()
            assert run.errors == []
            clock.advance(15)
        assert len(upstream.calls) == 1
        assert scheduler.is_ready

        await scheduler.trigger_sync()
        assert len(upstream.calls) == 2

    @pytest.mark.asyncio
    async def test_new_subject_forces_refresh(
        self, scheduler: SyncScheduler, upstream: ScriptedActivityClient, clock: FakeClock
    ) -> None:
        await scheduler.trigger_sync()
        upstream.subjects.append("C")
        clock.advance(15)

        await scheduler.trigger_sync()
        assert len(upstream.calls) == 2
        assert await scheduler._cache.day_is_complete(["A", "B", "C"], TODAY)

    @pytest.mark.asyncio
    async def test_failed_refresh_is_retried_next_pass(
        self, scheduler: SyncScheduler, upstream: ScriptedActivityClient
    ) -> None:
        upstream.failures[TODAY] = RuntimeError("report timed out")
        run = await scheduler.trigger_sync()
        assert [e.unit for e in run.errors] == ["today"]

        del upstream.failures[TODAY]
        run = await scheduler.trigger_sync()
        assert run.errors == []
        assert len(upstream.calls) == 2


class TestStatus:
    @pytest.mark.asyncio
    async def test_status_before_and_after_a_pass(self, scheduler: SyncScheduler) -> None:
        status = scheduler.get_status()
        assert status["is_running"] is False
        assert status["is_ready"] is False
        assert status["last_sync_time"] is None
        assert status["recurring"] is None
        assert status["historical_progress"] is None

        await scheduler.trigger_sync()
        status = scheduler.get_status()
        assert status["is_ready"] is True
        assert status["last_sync_time"] is not None
        assert status["subject_count"] == 2
        assert status["recurring"]["stage"] == "complete"

    @pytest.mark.asyncio
    async def test_backfill_progress_in_status(
        self, scheduler: SyncScheduler, cache: DayBucketedMetricCache
    ) -> None:
        run = await scheduler.trigger_backfill()
        assert run.stage is SyncStage.COMPLETE

        progress = scheduler.get_status()["historical_progress"]
        assert progress["total_days"] == 3
        assert progress["completed_days"] == 3
        assert await cache.day_is_complete(["A", "B"], TODAY - timedelta(days=1))


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_runs_passes_and_stop_cancels(
        self, scheduler: SyncScheduler, clock: FakeClock
    ) -> None:
        await scheduler.start()
        for _ in range(20):
            await asyncio.sleep(0)
        await scheduler.stop()

        assert scheduler.is_ready
        assert 15.0 in clock.sleeps
        assert not scheduler.is_running

    @pytest.mark.asyncio
    async def test_start_launches_backfill(
        self, cache: DayBucketedMetricCache, upstream: ScriptedActivityClient, clock: FakeClock
    ) -> None:
        scheduler = SyncScheduler(
            cache, upstream, backfill_enabled=True, lookback_days=2,  # type: ignore[arg-type]
            inter_day_delay_s=0, clock=clock,
        )
        await scheduler.start()
        await scheduler.trigger_backfill()
        await scheduler.stop()

        for days_back in (1, 2):
            assert await cache.day_is_complete(["A", "B"], TODAY - timedelta(days=days_back))

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self, scheduler: SyncScheduler) -> None:
        await scheduler.start()
        loop_task = scheduler._loop_task
        await scheduler.start()
        assert scheduler._loop_task is loop_task
        await scheduler.stop()

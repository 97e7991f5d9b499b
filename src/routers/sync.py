"""Operational endpoints for the activity sync engine."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from fastapi import APIRouter, HTTPException, Query

from src.activity_sync.days import as_aware
from src.activity_sync.rates import compute_rates
from src.dependencies import Engine
from src.models.sync import (
    AdminActionRead,
    BackfillTriggerRead,
    GroupsRead,
    MetricRead,
    RatesRead,
    SubjectRateRead,
    SyncRunRead,
    SyncStatusRead,
)

router = APIRouter(prefix="/sync", tags=["sync"])
logger = logging.getLogger("leaderboard.routers.sync")


def _parse_deals(raw: list[str]) -> dict[str, int]:
    """Parse ``subject_id:count`` pairs."""
    counts: dict[str, int] = {}
    for item in raw:
        subject_id, sep, count = item.partition(":")
        if not sep or not subject_id.strip():
            raise HTTPException(status_code=422, detail=f"Expected 'subject_id:count', got {item!r}")
        try:
            counts[subject_id.strip()] = int(count)
        except ValueError:
            raise HTTPException(status_code=422, detail=f"Deal count must be an integer: {item!r}")
    return counts


def _checked_range(start: datetime, end: datetime) -> tuple[datetime, datetime]:
    """Read naive timestamps as UTC and reject reversed ranges."""
    start, end = as_aware(start), as_aware(end)
    if end < start:
        raise HTTPException(status_code=422, detail="end must not precede start")
    return start, end


@router.get("/status", response_model=SyncStatusRead)
async def sync_status(engine: Engine) -> Any:
    return engine.scheduler.get_status()


@router.post("/trigger", response_model=SyncRunRead)
async def trigger_sync(engine: Engine) -> Any:
    """Run one recurring pass now (or join the one in progress) and return it."""
    run = await engine.scheduler.trigger_sync()
    return run.to_dict()


@router.post("/backfill", response_model=BackfillTriggerRead, status_code=202)
async def trigger_backfill(engine: Engine) -> Any:
    """Start the historical backfill in the background.

    Already-complete days are skipped, so re-triggering resumes.
    """
    backfill = engine.scheduler.backfill
    started = backfill.start()
    if not started:
        logger.info("Backfill trigger ignored; a run is already in progress")
    progress = backfill.progress()
    return {"started": started, "progress": progress.to_dict() if progress else None}


@router.get("/metric", response_model=MetricRead)
async def get_metric(
    engine: Engine,
    subject_ids: list[str] = Query(...),
    start: datetime = Query(...),
    end: datetime = Query(...),
) -> Any:
    """Measured seconds per subject over ``[start, end]``.

    Responds 409 when any requested day is not synced yet.
    """
    start, end = _checked_range(start, end)
    result = await engine.scheduler.get_metric(subject_ids, start, end)
    return {
        "start": start,
        "end": end,
        "seconds": result.seconds,
        "degraded": sorted(result.degraded),
    }


@router.get("/rates", response_model=RatesRead)
async def get_rates(
    engine: Engine,
    start: datetime = Query(...),
    end: datetime = Query(...),
    deals: list[str] = Query(..., description="subject_id:count pairs"),
) -> Any:
    """Deals per hour; subjects with incomplete buckets come back pending."""
    start, end = _checked_range(start, end)
    rates = await compute_rates(
        engine.cache,
        _parse_deals(deals),
        start,
        end,
        min_seconds=engine.config.rates.min_measured_seconds,
    )
    return {
        "start": start,
        "end": end,
        "rates": [
            SubjectRateRead(
                subject_id=r.subject_id,
                deals=r.deals,
                measured_seconds=r.measured_seconds,
                deals_per_hour=r.deals_per_hour,
                pending=r.pending,
                degraded=r.degraded,
            )
            for r in rates.values()
        ],
    }


@router.get("/groups", response_model=GroupsRead)
async def list_groups(engine: Engine) -> Any:
    """Upstream group directory, served from the fallback while throttled."""
    result = await engine.client.list_groups()
    return {
        "status": result.status.value,
        "from_fallback": result.from_fallback,
        "age_seconds": result.age_seconds,
        "groups": [{"group_id": g.group_id, "name": g.name} for g in result.data],
    }


# ---------- Administration ----------

@router.post("/admin/cleanup-legacy", response_model=AdminActionRead)
async def cleanup_legacy_buckets(engine: Engine) -> Any:
    """Delete multi-day rows left from before day bucketing.

    The affected days read as incomplete until the backfill re-syncs them.
    """
    deleted = await engine.cache.cleanup_legacy_buckets()
    return {"action": "cleanup-legacy", "deleted": deleted}


@router.post("/admin/reset", response_model=AdminActionRead)
async def reset_buckets(engine: Engine, confirm: bool = Query(False)) -> Any:
    """Delete every stored bucket. Requires ``confirm=true``."""
    if not confirm:
        raise HTTPException(status_code=400, detail="Pass confirm=true to delete every bucket")
    deleted = await engine.cache.reset()
    logger.warning("Bucket store reset through the admin endpoint (%d deleted)", deleted)
    return {"action": "reset", "deleted": deleted}

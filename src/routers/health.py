"""Health check endpoint: public, no auth required."""

from __future__ import annotations

import logging

from fastapi import APIRouter

from src.dependencies import AppSettings, Engine
from src.models.base import utc_now
from src.services.database import get_pool

router = APIRouter(tags=["system"])
logger = logging.getLogger("leaderboard.health")


@router.get("/health")
async def health_check(engine: Engine, settings: AppSettings) -> dict:
    """Liveness probe. Returns 200 if the API process is up.

    Also reports sync readiness and, when Postgres backs the store, a
    lightweight DB connectivity check.
    """
    database = "in-memory"
    db_ok = True
    if engine.owns_pool:
        db_ok = False
        try:
            pool = get_pool()
            async with pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
            db_ok = True
        except Exception as exc:
            logger.warning("Health check DB probe failed: %s", exc)
        database = "connected" if db_ok else "unreachable"

    ready = engine.scheduler.is_ready
    return {
        "status": "healthy" if db_ok and ready else "degraded",
        "version": settings.app_version,
        "environment": settings.environment,
        "database": database,
        "sync_ready": ready,
        "timestamp": utc_now().isoformat(),
    }

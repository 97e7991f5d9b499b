"""Postgres access for the activity sync engine.

Owns the module-level ``asyncpg`` pool, the schema bootstrap, and the
default audit sink that writes one row per upstream call to
``api_requests``.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import asyncpg

from src.activity_sync.base import AuditRecord
from src.activity_sync.store import TABLE as BUCKET_TABLE
from src.config import Settings, get_settings

logger = logging.getLogger("leaderboard.db")

# Module-level connection pool, initialized once at app startup
_pool: asyncpg.Pool | None = None

SCHEMA_SQL = f"""
CREATE TABLE IF NOT EXISTS {BUCKET_TABLE} (
    subject_id       TEXT        NOT NULL,
    period_start     TIMESTAMPTZ NOT NULL,
    period_end       TIMESTAMPTZ NOT NULL,
    measured_seconds INTEGER     NOT NULL DEFAULT 0 CHECK (measured_seconds >= 0),
    synced_at        TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    PRIMARY KEY (subject_id, period_start, period_end)
);

CREATE INDEX IF NOT EXISTS {BUCKET_TABLE}_period_idx
    ON {BUCKET_TABLE} (period_start, period_end);

CREATE TABLE IF NOT EXISTS api_requests (
    id            BIGSERIAL   PRIMARY KEY,
    endpoint      TEXT        NOT NULL,
    method        TEXT        NOT NULL,
    status_code   INTEGER,
    response_time INTEGER     NOT NULL,
    created_at    TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
"""


async def init_pool(settings: Settings | None = None) -> asyncpg.Pool:
    """Create the asyncpg connection pool. Call once at app startup."""
    global _pool
    s = settings or get_settings()
    _pool = await asyncpg.create_pool(
        s.database_url,
        min_size=s.db_pool_min_size,
        max_size=s.db_pool_max_size,
        command_timeout=30,
    )
    logger.info("Database pool initialized (min=%d, max=%d)", s.db_pool_min_size, s.db_pool_max_size)
    return _pool


async def close_pool() -> None:
    """Drain the pool. Call at app shutdown."""
    global _pool
    if _pool:
        await _pool.close()
        _pool = None
        logger.info("Database pool closed")


def get_pool() -> asyncpg.Pool:
    if _pool is None:
        raise RuntimeError("Database pool not initialized; call init_pool() first")
    return _pool


@asynccontextmanager
async def get_connection() -> AsyncGenerator[asyncpg.Connection, None]:
    """Acquire a pooled connection inside a transaction.

    Usage::

        async with get_connection() as conn:
            rows = await conn.fetch("SELECT * FROM activity_day_buckets WHERE subject_id = $1", sid)
    """
    pool = get_pool()
    async with pool.acquire() as conn:
        async with conn.transaction():
            yield conn


async def ensure_schema() -> None:
    """Create the bucket and audit tables if they do not exist."""
    async with get_connection() as conn:
        await conn.execute(SCHEMA_SQL)
    logger.info("Schema ensured (%s, api_requests)", BUCKET_TABLE)


async def record_api_request(record: AuditRecord) -> None:
    """Audit sink: persist one upstream call to ``api_requests``."""
    pool = get_pool()
    async with pool.acquire() as conn:
        await conn.execute(
            """
            INSERT INTO api_requests (endpoint, method, status_code, response_time, created_at)
            VALUES ($1, $2, $3, $4, $5)
            """,
            record.endpoint,
            record.method,
            record.status,
            record.latency_ms,
            record.at,
        )

"""Assemble the activity sync engine from settings.

One gateway, one client, one store, one cache, and one scheduler per
process; ``build_engine`` wires them and ``ActivityEngine.aclose`` tears
them down in reverse order.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

import httpx

from src.activity_sync.adapters.adversus import AdversusClient
from src.activity_sync.clock import SYSTEM_CLOCK, Clock
from src.activity_sync.config_loader import SyncConfig, get_sync_config, load_sync_config
from src.activity_sync.gateway import RateLimitedGateway
from src.activity_sync.metric_cache import DayBucketedMetricCache
from src.activity_sync.store import InMemoryMetricStore, MetricStore, PostgresMetricStore
from src.activity_sync.sync.scheduler import Step, SyncScheduler
from src.config import Settings
from src.services.database import close_pool, ensure_schema, init_pool, record_api_request

logger = logging.getLogger("leaderboard.engine")


@dataclass
class ActivityEngine:
    """Every long-lived component of the sync engine."""

    config: SyncConfig
    gateway: RateLimitedGateway
    client: AdversusClient
    store: MetricStore
    cache: DayBucketedMetricCache
    scheduler: SyncScheduler
    owns_pool: bool = False

    async def aclose(self) -> None:
        await self.scheduler.stop()
        await self.gateway.aclose()
        if self.owns_pool:
            await close_pool()


def _resolve_config(settings: Settings) -> SyncConfig:
    if settings.sync_config_path:
        return load_sync_config(Path(settings.sync_config_path))
    return get_sync_config()


async def build_engine(
    settings: Settings,
    config: SyncConfig | None = None,
    *,
    store: MetricStore | None = None,
    http_client: httpx.AsyncClient | None = None,
    clock: Clock = SYSTEM_CLOCK,
    deals_sync: Step | None = None,
    messages_sync: Step | None = None,
) -> ActivityEngine:
    """Build the engine.

    Args:
        settings:      Environment settings (credentials, database URL).
        config:        Sync config; loaded from disk when None.
        store:         Bucket store override. By default Postgres when
                       ``database_url`` is set, in-memory otherwise.
        http_client:   Optional httpx client for the gateway (for testing).
        clock:         Time source shared by every component.
        deals_sync:    Deals mirror step for the recurring pass.
        messages_sync: Messages mirror step for the recurring pass.

    Returns:
        A fully wired ActivityEngine (scheduler not started).
    """
    config = config or _resolve_config(settings)
    owns_pool = False
    audit_sink = None

    if store is None:
        if settings.database_url:
            pool = await init_pool(settings)
            owns_pool = True
            await ensure_schema()
            store = PostgresMetricStore(pool)
            audit_sink = record_api_request
        else:
            logger.warning("DATABASE_URL not set; using in-memory bucket store")
            store = InMemoryMetricStore()

    gateway = RateLimitedGateway.from_config(
        config,
        base_url=settings.adversus_base_url,
        username=settings.adversus_username,
        password=settings.adversus_password,
        clock=clock,
        audit_sink=audit_sink,
        http_client=http_client,
    )
    client = AdversusClient.from_config(gateway, config)
    cache = DayBucketedMetricCache.from_config(store, client, config, clock=clock)
    scheduler = SyncScheduler.from_config(
        cache,
        client,
        config,
        deals_sync=deals_sync,
        messages_sync=messages_sync,
        clock=clock,
    )
    logger.info(
        "Engine built: %s store, tz=%s, refresh every %.0fs",
        type(store).__name__, config.timezone, config.scheduler.recurring_interval_s,
    )
    return ActivityEngine(
        config=config,
        gateway=gateway,
        client=client,
        store=store,
        cache=cache,
        scheduler=scheduler,
        owns_pool=owns_pool,
    )

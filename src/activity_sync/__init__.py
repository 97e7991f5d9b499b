"""Leaderboard activity sync engine.

Mirrors the CRM's per-agent activity time into a day-granular local cache
and derives deals-per-hour from it, without tripping the upstream's rate
limit or ever reporting a rate built on an incomplete time sum.

Subpackages:
    adapters/ — Upstream API client (Adversus)
    sync/     — Recurring pass, historical backfill, run state

Core modules:
    base          — Canonical data models (subjects, buckets, tagged results)
    gateway       — Rate-limited, audited gateway for every upstream call
    store         — Day bucket persistence with the atomic merge policy
    metric_cache  — Day-bucketed ranged reads and per-day syncs
    rates         — Deals-per-hour from deal counts and measured seconds
    config_loader — Load/validate/hot-reload sync_config.yaml
"""

from src.activity_sync.base import (
    DirectoryResult,
    DirectoryStatus,
    Group,
    MetricBucket,
    MetricResult,
    Subject,
    SyncReport,
)
from src.activity_sync.config_loader import SyncConfig, get_sync_config
from src.activity_sync.errors import (
    ActivitySyncError,
    IncompleteData,
    UpstreamError,
    UpstreamRateLimited,
)

__all__ = [
    "Subject",
    "Group",
    "DirectoryStatus",
    "DirectoryResult",
    "MetricBucket",
    "MetricResult",
    "SyncReport",
    "SyncConfig",
    "get_sync_config",
    "ActivitySyncError",
    "UpstreamRateLimited",
    "UpstreamError",
    "IncompleteData",
]

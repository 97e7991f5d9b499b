"""Pydantic models for the sync engine's operational endpoints."""

from __future__ import annotations

from datetime import date, datetime

from pydantic import Field

from src.models.base import LeaderboardBase


# ---------- Runs / status ----------

class UnitErrorRead(LeaderboardBase):
    unit: str
    message: str


class SyncRunRead(LeaderboardBase):
    kind: str
    stage: str
    total_units: int
    completed_units: int
    current_unit: str | None = None
    errors: list[UnitErrorRead] = Field(default_factory=list)
    start_time: datetime | None = None
    finished_at: datetime | None = None


class BackfillProgressRead(LeaderboardBase):
    stage: str
    completed_days: int
    total_days: int
    current_day: date | None = None
    estimated_time_remaining: float | None = None
    pct_complete: float
    errors: int = 0


class SyncStatusRead(LeaderboardBase):
    is_running: bool
    is_ready: bool
    last_sync_time: datetime | None = None
    subject_count: int | None = None
    recurring: SyncRunRead | None = None
    historical_progress: BackfillProgressRead | None = None


class BackfillTriggerRead(LeaderboardBase):
    started: bool
    progress: BackfillProgressRead | None = None


# ---------- Metric / rates ----------

class MetricRead(LeaderboardBase):
    start: datetime
    end: datetime
    seconds: dict[str, int]
    degraded: list[str] = Field(default_factory=list)


class IncompleteRead(LeaderboardBase):
    detail: str
    missing: dict[str, list[date]]
    complete: dict[str, int] = Field(default_factory=dict)


class SubjectRateRead(LeaderboardBase):
    subject_id: str
    deals: int
    measured_seconds: int | None = None
    deals_per_hour: float | None = None
    pending: bool
    degraded: bool = False


class RatesRead(LeaderboardBase):
    start: datetime
    end: datetime
    rates: list[SubjectRateRead]


# ---------- Directory / administration ----------

class GroupRead(LeaderboardBase):
    group_id: str
    name: str | None = None


class GroupsRead(LeaderboardBase):
    status: str
    from_fallback: bool = False
    age_seconds: float | None = None
    groups: list[GroupRead] = Field(default_factory=list)


class AdminActionRead(LeaderboardBase):
    action: str
    deleted: int

"""Shared fixtures, a fake clock, and a scripted upstream for sync engine tests."""

from __future__ import annotations

import asyncio
from datetime import date, datetime, timedelta, timezone
from typing import Callable
from zoneinfo import ZoneInfo

import httpx
import pytest

from src.activity_sync.base import DirectoryResult, DirectoryStatus, Subject
from src.activity_sync.clock import Clock
from src.activity_sync.config_loader import SyncConfig, load_sync_config
from src.activity_sync.days import local_date
from src.activity_sync.gateway import RateLimitedGateway
from src.activity_sync.metric_cache import DayBucketedMetricCache
from src.activity_sync.store import InMemoryMetricStore

TZ = ZoneInfo("Asia/Bangkok")

# 2026-03-11 10:00 in Bangkok
TEST_NOW = datetime(2026, 3, 11, 3, 0, tzinfo=timezone.utc)
TODAY = date(2026, 3, 11)
BASE_URL = "https://api.test/v1"


def local(day: date, hour: int = 0, minute: int = 0) -> datetime:
    """A tz-aware timestamp on ``day`` in the reference timezone."""
    return datetime(day.year, day.month, day.day, hour, minute, tzinfo=TZ)


# ---------------------------------------------------------------------------
# Time
# ---------------------------------------------------------------------------


class FakeClock(Clock):
    """Clock whose sleeps advance virtual time instead of waiting.

    ``sleep`` still yields to the event loop so concurrent coroutines
    interleave the way they would in production.
    """

    def __init__(self, start: datetime = TEST_NOW) -> None:
        self._start = start
        self._elapsed = 0.0
        self.sleeps: list[float] = []

    def monotonic(self) -> float:
        return self._elapsed

    def now(self) -> datetime:
        return self._start + timedelta(seconds=self._elapsed)

    def advance(self, seconds: float) -> None:
        self._elapsed += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        if seconds > 0:
            self._elapsed += seconds
        await asyncio.sleep(0)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------


@pytest.fixture
def sync_config() -> SyncConfig:
    """Load the real bundled sync config for tests."""
    return load_sync_config()


# ---------------------------------------------------------------------------
# Upstream doubles
# ---------------------------------------------------------------------------


def make_gateway(
    handler: Callable[[httpx.Request], object],
    clock: FakeClock,
    **kwargs: object,
) -> RateLimitedGateway:
    """Gateway wired to an httpx.MockTransport handler."""
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return RateLimitedGateway(BASE_URL, "user", "secret", clock=clock, http_client=client, **kwargs)


class ScriptedActivityClient:
    """Stand-in for AdversusClient with per-day scripted activity.

    Attributes:
        activity: local date → {subject_id: seconds} returned for that day.
        failures: local date → exception raised when that day is fetched.
        calls:    (start, end) of every fetch_day_activity call, in order.
    """

    def __init__(self, subjects: list[str] | None = None) -> None:
        self.activity: dict[date, dict[str, int]] = {}
        self.failures: dict[date, Exception] = {}
        self.calls: list[tuple[datetime, datetime]] = []
        self.subjects = list(subjects or [])
        self.directory_status = DirectoryStatus.OK
        self.gate: asyncio.Event | None = None

    async def fetch_day_activity(
        self, start: datetime, end: datetime, subject_id: str | None = None
    ) -> dict[str, int]:
        self.calls.append((start, end))
        if self.gate is not None:
            await self.gate.wait()
        day = local_date(start, TZ)
        if day in self.failures:
            raise self.failures[day]
        return dict(self.activity.get(day, {}))

    async def list_subjects(self) -> DirectoryResult[Subject]:
        if self.directory_status is DirectoryStatus.RATE_LIMITED:
            return DirectoryResult(status=DirectoryStatus.RATE_LIMITED)
        data = [Subject(subject_id=s) for s in self.subjects]
        return DirectoryResult(
            status=DirectoryStatus.OK if data else DirectoryStatus.EMPTY, data=data
        )

    def days_fetched(self) -> list[date]:
        return [local_date(start, TZ) for start, _ in self.calls]


@pytest.fixture
def store() -> InMemoryMetricStore:
    return InMemoryMetricStore()


@pytest.fixture
def upstream() -> ScriptedActivityClient:
    return ScriptedActivityClient(subjects=["A", "B"])


@pytest.fixture
def cache(
    store: InMemoryMetricStore, upstream: ScriptedActivityClient, clock: FakeClock
) -> DayBucketedMetricCache:
    return DayBucketedMetricCache(store, upstream, tz=TZ, clock=clock)  # type: ignore[arg-type]

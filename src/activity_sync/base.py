"""Canonical data models for the activity sync engine.

These types are shared by the gateway, the upstream client, the metric store,
the metric cache, and the scheduler.  The upstream's own JSON never travels
past the client module; everything downstream speaks these dataclasses.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Generic, TypeVar

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Directory data (subjects, groups)
# ---------------------------------------------------------------------------


@dataclass
class Subject:
    """An agent whose upstream activity time is tracked.

    Attributes:
        subject_id: Upstream user id, normalized to a string.
        name:       Display name, if the upstream sent one.
        active:     False for users the upstream reports as inactive.
        group_id:   Upstream group membership, if any.
        raw:        Original directory entry for diagnostics.
    """

    subject_id: str
    name: str | None = None
    active: bool = True
    group_id: str | None = None
    raw: dict = field(default_factory=dict, repr=False)


@dataclass
class Group:
    """An upstream user group (team)."""

    group_id: str
    name: str | None = None
    raw: dict = field(default_factory=dict, repr=False)


class DirectoryStatus(str, Enum):
    """Outcome tag for directory reads.

    ``RATE_LIMITED`` means the upstream throttled us and no fresh-enough
    fallback existed; it is deliberately distinct from ``EMPTY``, which means
    the upstream answered and genuinely had nothing.
    """

    OK = "ok"
    RATE_LIMITED = "rate_limited"
    EMPTY = "empty"


@dataclass
class DirectoryResult(Generic[T]):
    """Tagged result of a directory read.

    Attributes:
        status:        OK / RATE_LIMITED / EMPTY.
        data:          Entries (empty unless status is OK).
        from_fallback: True when ``data`` came from the fallback cache.
        age_seconds:   Age of fallback data, None for fresh reads.
    """

    status: DirectoryStatus
    data: list[T] = field(default_factory=list)
    from_fallback: bool = False
    age_seconds: float | None = None

    @property
    def ok(self) -> bool:
        return self.status is DirectoryStatus.OK


# ---------------------------------------------------------------------------
# Metric storage
# ---------------------------------------------------------------------------


@dataclass
class MetricBucket:
    """Measured seconds for one subject over one stored period.

    Granular buckets cover exactly one calendar day.  Anything longer is a
    legacy row that is only ever read (via averaging), never written.
    """

    subject_id: str
    period_start: datetime
    period_end: datetime
    measured_seconds: int
    synced_at: datetime | None = None


@dataclass
class MetricResult:
    """Ranged read result.

    Attributes:
        seconds:  subject_id → summed measured seconds over the range.
        degraded: Subjects whose value includes legacy-averaged days.  These
                  readings are lower-confidence, not wrong.
    """

    seconds: dict[str, int] = field(default_factory=dict)
    degraded: set[str] = field(default_factory=set)

    def is_degraded(self, subject_id: str) -> bool:
        return subject_id in self.degraded


@dataclass
class SyncReport:
    """What a ``sync_metric`` call actually wrote.

    Attributes:
        days_synced: Days whose upstream fetch + upsert succeeded.
        failures:    day → error message for days that failed.
        buckets_written: Total rows passed to the store.
    """

    days_synced: list[date] = field(default_factory=list)
    failures: dict[date, str] = field(default_factory=dict)
    buckets_written: int = 0

    @property
    def ok(self) -> bool:
        return not self.failures


# ---------------------------------------------------------------------------
# Gateway audit
# ---------------------------------------------------------------------------


@dataclass
class AuditRecord:
    """One upstream call, as reported to the audit sink.

    Attributes:
        endpoint:   Path relative to the upstream base URL.
        method:     HTTP method.
        status:     HTTP status, or None if the request never got a response.
        latency_ms: Wall time spent on the wire (excludes admission wait).
        at:         UTC timestamp when the request was sent.
    """

    endpoint: str
    method: str
    status: int | None
    latency_ms: int
    at: datetime

"""Adversus REST API client.

Thin, typed wrappers over the endpoints the sync engine consumes.  All I/O
goes through the shared ``RateLimitedGateway``; this module never opens its
own HTTP connection.

API base: https://api.adversus.dk/v1 (basic auth)

Endpoints used:
    GET  /users                      — Subject directory (paginated)
    GET  /groups                     — Group directory (paginated)
    POST /workforce/buildReport      — Per-user session durations for a window
                                       (JSON array or NDJSON)
    GET  /users/{id}/loginTime       — Legacy per-user login time (deprecated)
"""

from __future__ import annotations

import json
import logging
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Callable, TypeVar

from src.activity_sync.base import DirectoryResult, DirectoryStatus, Group, Subject
from src.activity_sync.config_loader import SyncConfig
from src.activity_sync.errors import UpstreamRateLimited
from src.activity_sync.gateway import RateLimitedGateway

logger = logging.getLogger("leaderboard.activity_sync.adversus")

T = TypeVar("T")

SUBJECTS_SLOT = "subjects"
GROUPS_SLOT = "groups"


def _iso(ts: datetime) -> str:
    """Render a timestamp the way the upstream expects (UTC, ms, trailing Z)."""
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _safe_float(value: object) -> float:
    try:
        return float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return 0.0


class AdversusClient:
    """Typed access to the Adversus endpoints used by the sync engine."""

    def __init__(
        self,
        gateway: RateLimitedGateway,
        page_size: int = 1000,
        max_pages: int = 10,
    ) -> None:
        """Initialize the client.

        Args:
            gateway:   Shared rate-limited gateway.
            page_size: Directory page size.
            max_pages: Hard cap on directory pages fetched per listing.
        """
        self._gateway = gateway
        self._page_size = page_size
        self._max_pages = max_pages

    @classmethod
    def from_config(cls, gateway: RateLimitedGateway, config: SyncConfig) -> "AdversusClient":
        return cls(gateway, page_size=config.gateway.page_size, max_pages=config.gateway.max_pages)

    # ------------------------------------------------------------------
    # Directories
    # ------------------------------------------------------------------

    async def list_subjects(self) -> DirectoryResult[Subject]:
        """Fetch the full subject (user) directory.

        Returns:
            OK with fresh or fallback data, EMPTY if the upstream has no users,
            RATE_LIMITED if throttled with no usable fallback.

        Raises:
            UpstreamError: On non-429 upstream failures.
        """
        return await self._list_directory("/users", "users", SUBJECTS_SLOT, self._parse_subject)

    async def list_groups(self) -> DirectoryResult[Group]:
        """Fetch the full group directory.  Same semantics as list_subjects()."""
        return await self._list_directory("/groups", "groups", GROUPS_SLOT, self._parse_group)

    async def _list_directory(
        self,
        endpoint: str,
        key: str,
        slot: str,
        parse: Callable[[dict], T | None],
    ) -> DirectoryResult[T]:
        try:
            entries = await self._paginate(endpoint, key)
        except UpstreamRateLimited:
            fallback = self._gateway.fallback.get(slot)
            if fallback is None:
                logger.warning("%s directory throttled and no fresh fallback; exhausted", key)
                return DirectoryResult(status=DirectoryStatus.RATE_LIMITED)
            data, age = fallback
            logger.info("%s directory throttled; serving fallback (%.0fs old)", key, age)
            return DirectoryResult(
                status=DirectoryStatus.OK if data else DirectoryStatus.EMPTY,
                data=list(data),
                from_fallback=True,
                age_seconds=age,
            )

        items = [item for item in (parse(e) for e in entries) if item is not None]
        self._gateway.fallback.store(slot, items)
        logger.info("Fetched %d %s from upstream", len(items), key)
        return DirectoryResult(
            status=DirectoryStatus.OK if items else DirectoryStatus.EMPTY,
            data=items,
        )

    async def _paginate(self, endpoint: str, key: str) -> list[dict]:
        """Walk ``meta.pagination`` until the last page or ``max_pages``."""
        entries: list[dict] = []
        page = 1
        page_count = 1
        while page <= page_count:
            response = await self._gateway.request(
                endpoint,
                params={"page": page, "pageSize": self._page_size, "includeMeta": "true"},
            )
            if isinstance(response, list):
                entries.extend(response)
                break

            response = response or {}
            entries.extend(response.get(key) or [])
            pagination = (response.get("meta") or {}).get("pagination") or {}
            page_count = int(pagination.get("pageCount") or 1)
            if page >= self._max_pages and page < page_count:
                logger.warning(
                    "%s: stopped at %d of %d pages to respect the rate limit",
                    endpoint, page, page_count,
                )
                break
            page += 1
        return entries

    @staticmethod
    def _parse_subject(entry: dict) -> Subject | None:
        subject_id = entry.get("id")
        if subject_id is None:
            return None
        group_id = entry.get("groupId")
        return Subject(
            subject_id=str(subject_id),
            name=entry.get("displayName") or entry.get("name"),
            active=bool(entry.get("active", True)),
            group_id=str(group_id) if group_id is not None else None,
            raw=entry,
        )

    @staticmethod
    def _parse_group(entry: dict) -> Group | None:
        group_id = entry.get("id")
        if group_id is None:
            return None
        return Group(group_id=str(group_id), name=entry.get("name"), raw=entry)

    # ------------------------------------------------------------------
    # Activity
    # ------------------------------------------------------------------

    async def fetch_day_activity(
        self,
        start: datetime,
        end: datetime,
        subject_id: str | None = None,
    ) -> dict[str, int]:
        """Fetch measured seconds per subject for one window.

        The workforce report returns one record per session; durations are
        summed per user.  Callers pass single-day windows only; the upstream's
        multi-day totals are not additive and are never stored.

        Args:
            start:      Window start.
            end:        Window end (inclusive).
            subject_id: Restrict the report to one user (default: all users).

        Returns:
            subject_id → whole seconds.  Subjects without sessions are absent.
        """
        body: dict[str, Any] = {"start": _iso(start), "end": _iso(end)}
        if subject_id is not None:
            body["userId"] = int(subject_id) if str(subject_id).isdigit() else subject_id

        response = await self._gateway.request("/workforce/buildReport", method="POST", body=body)
        return self._sum_durations(response)

    @staticmethod
    def _sum_durations(response: Any) -> dict[str, int]:
        if response is None:
            return {}
        if isinstance(response, dict):
            records = response.get("data") if isinstance(response.get("data"), list) else [response]
        else:
            records = response

        totals: dict[str, float] = defaultdict(float)
        for record in records:
            if not isinstance(record, dict):
                continue
            user = record.get("userid", record.get("userId"))
            if user is None:
                continue
            totals[str(user)] += max(_safe_float(record.get("duration")), 0.0)

        return {user: int(round(seconds)) for user, seconds in totals.items()}

    async def fetch_login_seconds(self, subject_id: str, start: datetime, end: datetime) -> int:
        """Legacy per-user login time (deprecated upstream endpoint).

        Only used for diagnostics; the metric cache never writes from it.
        """
        logger.debug("Using deprecated loginTime endpoint for subject %s", subject_id)
        filters = {"timestamp": {"$gt": _iso(start), "$lt": _iso(end)}}
        response = await self._gateway.request(
            f"/users/{subject_id}/loginTime",
            params={"filters": json.dumps(filters)},
        )
        return int(_safe_float((response or {}).get("loginSeconds")))

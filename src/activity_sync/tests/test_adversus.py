"""Tests for the Adversus client: directories, pagination, activity reports."""

from __future__ import annotations

import json
from datetime import date, datetime, timezone

import httpx
import pytest

from src.activity_sync.adapters.adversus import AdversusClient, _iso
from src.activity_sync.base import DirectoryStatus
from src.activity_sync.tests.conftest import FakeClock, local, make_gateway


def _users_page(ids: list[int], page_count: int = 1) -> dict:
    return {
        "users": [{"id": i, "displayName": f"Agent {i}", "active": True} for i in ids],
        "meta": {"pagination": {"pageCount": page_count}},
    }


class TestDirectories:
    @pytest.mark.asyncio
    async def test_list_subjects_follows_pagination(self, clock: FakeClock) -> None:
        pages = {"1": _users_page([1, 2], page_count=2), "2": _users_page([3], page_count=2)}
        seen_pages: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            page = request.url.params["page"]
            seen_pages.append(page)
            assert request.url.params["pageSize"] == "1000"
            return httpx.Response(200, json=pages[page])

        client = AdversusClient(make_gateway(handler, clock))
        result = await client.list_subjects()

        assert result.status is DirectoryStatus.OK
        assert [s.subject_id for s in result.data] == ["1", "2", "3"]
        assert result.data[0].name == "Agent 1"
        assert seen_pages == ["1", "2"]

    @pytest.mark.asyncio
    async def test_pagination_capped_at_max_pages(self, clock: FakeClock) -> None:
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            return httpx.Response(200, json=_users_page([calls], page_count=50))

        client = AdversusClient(make_gateway(handler, clock), max_pages=3)
        result = await client.list_subjects()
        assert calls == 3
        assert len(result.data) == 3

    @pytest.mark.asyncio
    async def test_plain_list_response(self, clock: FakeClock) -> None:
        client = AdversusClient(
            make_gateway(lambda r: httpx.Response(200, json=[{"id": 7, "name": "Sales"}]), clock)
        )
        result = await client.list_groups()
        assert result.ok
        assert result.data[0].group_id == "7"
        assert result.data[0].name == "Sales"

    @pytest.mark.asyncio
    async def test_entries_without_id_are_skipped(self, clock: FakeClock) -> None:
        body = {"users": [{"id": 1}, {"displayName": "ghost"}], "meta": {"pagination": {"pageCount": 1}}}
        client = AdversusClient(make_gateway(lambda r: httpx.Response(200, json=body), clock))
        result = await client.list_subjects()
        assert [s.subject_id for s in result.data] == ["1"]

    @pytest.mark.asyncio
    async def test_empty_directory_is_empty_not_rate_limited(self, clock: FakeClock) -> None:
        client = AdversusClient(make_gateway(lambda r: httpx.Response(200, json=_users_page([])), clock))
        result = await client.list_subjects()
        assert result.status is DirectoryStatus.EMPTY
        assert result.data == []

    @pytest.mark.asyncio
    async def test_throttled_with_fresh_fallback(self, clock: FakeClock) -> None:
        responses = iter([httpx.Response(200, json=_users_page([1, 2])), httpx.Response(429)])
        client = AdversusClient(make_gateway(lambda r: next(responses), clock))

        await client.list_subjects()
        result = await client.list_subjects()

        assert result.status is DirectoryStatus.OK
        assert result.from_fallback
        assert [s.subject_id for s in result.data] == ["1", "2"]
        assert result.age_seconds is not None and result.age_seconds <= 300

    @pytest.mark.asyncio
    async def test_throttled_with_stale_fallback(self, clock: FakeClock) -> None:
        responses = iter([httpx.Response(200, json=_users_page([1])), httpx.Response(429)])
        client = AdversusClient(make_gateway(lambda r: next(responses), clock))

        await client.list_subjects()
        clock.advance(600)
        result = await client.list_subjects()

        assert result.status is DirectoryStatus.RATE_LIMITED
        assert result.data == []

    @pytest.mark.asyncio
    async def test_throttled_without_fallback(self, clock: FakeClock) -> None:
        client = AdversusClient(make_gateway(lambda r: httpx.Response(429), clock))
        result = await client.list_groups()
        assert result.status is DirectoryStatus.RATE_LIMITED


class TestDayActivity:
    @pytest.mark.asyncio
    async def test_sums_durations_per_user_from_ndjson(self, clock: FakeClock) -> None:
        bodies: list[dict] = []
        ndjson = "\n".join(
            json.dumps(r)
            for r in [
                {"userid": 101, "duration": 1200},
                {"userid": 101, "duration": 2400.4},
                {"userId": 102, "duration": 1800},
                {"duration": 999},
            ]
        )

        def handler(request: httpx.Request) -> httpx.Response:
            bodies.append(json.loads(request.content))
            return httpx.Response(200, text=ndjson)

        client = AdversusClient(make_gateway(handler, clock))
        start = local(date(2026, 3, 9))
        seconds = await client.fetch_day_activity(start, local(date(2026, 3, 9), 23, 59))

        assert seconds == {"101": 3600, "102": 1800}
        assert bodies[0]["start"] == "2026-03-08T17:00:00.000Z"
        assert "userId" not in bodies[0]

    @pytest.mark.asyncio
    async def test_json_array_and_single_user_filter(self, clock: FakeClock) -> None:
        bodies: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            bodies.append(json.loads(request.content))
            return httpx.Response(200, json=[{"userid": 5, "duration": -30}, {"userid": 5, "duration": 90}])

        client = AdversusClient(make_gateway(handler, clock))
        seconds = await client.fetch_day_activity(
            local(date(2026, 3, 9)), local(date(2026, 3, 10)), subject_id="5"
        )
        assert seconds == {"5": 90}
        assert bodies[0]["userId"] == 5

    @pytest.mark.asyncio
    async def test_empty_report(self, clock: FakeClock) -> None:
        client = AdversusClient(make_gateway(lambda r: httpx.Response(200, text=""), clock))
        assert await client.fetch_day_activity(local(date(2026, 3, 9)), local(date(2026, 3, 10))) == {}

    @pytest.mark.asyncio
    async def test_legacy_login_time(self, clock: FakeClock) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"loginSeconds": "5400"})

        client = AdversusClient(make_gateway(handler, clock))
        seconds = await client.fetch_login_seconds(
            "42", local(date(2026, 3, 9)), local(date(2026, 3, 10))
        )
        assert seconds == 5400
        assert seen[0].url.path.endswith("/users/42/loginTime")
        filters = json.loads(seen[0].url.params["filters"])
        assert set(filters["timestamp"]) == {"$gt", "$lt"}


def test_iso_renders_utc_with_millis() -> None:
    assert _iso(datetime(2026, 3, 9, 5, 6, 7, tzinfo=timezone.utc)) == "2026-03-09T05:06:07.000Z"
    assert _iso(datetime(2026, 3, 9, 5, 6, 7)) == "2026-03-09T05:06:07.000Z"

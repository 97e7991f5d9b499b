"""Rate-limited gateway to the upstream CRM API.

Every upstream call in the process goes through one ``RateLimitedGateway``.
Admission control, evaluated before each call:

1. at most ``max_concurrent`` requests in flight (default 2);
2. at least ``min_interval`` between consecutive request starts (default 3 s);
3. no request starts while a 429 cooldown is running.

On HTTP 429 the gateway sleeps according to its ``BackoffPolicy`` and, once
the policy's attempts are used up, raises ``UpstreamRateLimited``.  The
default policy makes a single attempt: retrying into a throttled endpoint
only makes the throttling worse, so the decision belongs to the caller.

The gateway also keeps a small fallback cache for read-mostly directory
responses (subjects, groups) so callers can ride out a short throttle.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

import httpx

from src.activity_sync.base import AuditRecord
from src.activity_sync.clock import SYSTEM_CLOCK, Clock
from src.activity_sync.config_loader import SyncConfig
from src.activity_sync.errors import UpstreamError, UpstreamRateLimited

logger = logging.getLogger("leaderboard.activity_sync.gateway")

AuditSink = Callable[[AuditRecord], Awaitable[None]]


@dataclass
class GatewayBudget:
    """Mutable admission state owned by one gateway.

    Attributes:
        last_request_time:    Monotonic time the most recent request started.
        active_request_count: Requests currently on the wire.
        cooldown_until:       Monotonic time before which nothing may start.
    """

    last_request_time: float | None = None
    active_request_count: int = 0
    cooldown_until: float = 0.0


@dataclass
class BackoffPolicy:
    """How the gateway reacts to HTTP 429.

    Attributes:
        max_attempts: Total attempts per call, including the first one.
        delays:       Cooldown (seconds) after the n-th throttled attempt;
                      the last entry repeats if attempts outnumber delays.
    """

    max_attempts: int = 1
    delays: list[float] = field(default_factory=lambda: [10.0])

    def delay_for(self, attempt: int) -> float:
        """Cooldown after the given 1-based attempt."""
        if not self.delays:
            return 0.0
        return self.delays[min(attempt, len(self.delays)) - 1]

    @classmethod
    def from_config(cls, config: SyncConfig) -> "BackoffPolicy":
        bo = config.gateway.backoff
        return cls(max_attempts=bo.max_attempts, delays=[d / 1000.0 for d in bo.delays_ms])


@dataclass
class _FallbackEntry:
    data: Any
    stored_at: float


class FallbackCache:
    """Last successful full response per named directory resource.

    Entries older than ``max_age_s`` are treated as absent.
    """

    def __init__(self, max_age_s: float, clock: Clock = SYSTEM_CLOCK) -> None:
        self._max_age_s = max_age_s
        self._clock = clock
        self._entries: dict[str, _FallbackEntry] = {}

    def store(self, name: str, data: Any) -> None:
        self._entries[name] = _FallbackEntry(data=data, stored_at=self._clock.monotonic())

    def age(self, name: str) -> float | None:
        entry = self._entries.get(name)
        if entry is None:
            return None
        return self._clock.monotonic() - entry.stored_at

    def get(self, name: str) -> tuple[Any, float] | None:
        """Return ``(data, age_seconds)`` if a fresh-enough entry exists."""
        entry = self._entries.get(name)
        if entry is None:
            return None
        age = self._clock.monotonic() - entry.stored_at
        if age > self._max_age_s:
            logger.info("Fallback '%s' is %.0fs old (max %.0fs); not usable", name, age, self._max_age_s)
            return None
        return entry.data, age


def parse_body(response: httpx.Response) -> Any:
    """Decode a JSON or newline-delimited JSON response body.

    Returns None for an empty body and a list of objects for NDJSON.
    Unparseable NDJSON lines are skipped with a warning.
    """
    text = response.text.strip()
    if not text:
        return None
    try:
        return json.loads(text)
    except ValueError:
        pass

    records: list[Any] = []
    for line in text.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            records.append(json.loads(line))
        except ValueError:
            logger.warning("Skipping unparseable NDJSON line: %.100s", line)
    return records


async def _log_audit(record: AuditRecord) -> None:
    logger.debug(
        "upstream %s %s → %s in %dms",
        record.method,
        record.endpoint,
        record.status if record.status is not None else "no response",
        record.latency_ms,
    )


class RateLimitedGateway:
    """Serialize and pace all calls to the upstream API.

    Usage::

        gateway = RateLimitedGateway.from_config(
            get_sync_config(),
            base_url=settings.adversus_base_url,
            username=settings.adversus_username,
            password=settings.adversus_password,
        )
        report = await gateway.request(
            "/workforce/buildReport", method="POST", body={"start": ..., "end": ...}
        )
    """

    def __init__(
        self,
        base_url: str,
        username: str = "",
        password: str = "",
        *,
        min_interval_s: float = 3.0,
        max_concurrent: int = 2,
        backoff: BackoffPolicy | None = None,
        timeout_s: float = 30.0,
        fallback_max_age_s: float = 300.0,
        clock: Clock = SYSTEM_CLOCK,
        audit_sink: AuditSink | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the gateway.

        Args:
            base_url:           Upstream API root, e.g. https://api.adversus.dk/v1.
            username:           Basic-auth username.
            password:           Basic-auth password.
            min_interval_s:     Minimum spacing between request starts.
            max_concurrent:     Maximum requests in flight.
            backoff:            429 policy (default: one attempt, 10 s cooldown).
            timeout_s:          Per-request timeout.
            fallback_max_age_s: Max age of usable directory fallback data.
            clock:              Time source (injectable for tests).
            audit_sink:         Async callback receiving one AuditRecord per call.
            http_client:        Optional pre-configured httpx client (for testing).
        """
        self._base_url = base_url.rstrip("/")
        self._auth = httpx.BasicAuth(username, password)
        self._min_interval_s = min_interval_s
        self._max_concurrent = max_concurrent
        self._backoff = backoff or BackoffPolicy()
        self._clock = clock
        self._audit_sink = audit_sink or _log_audit
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            timeout=timeout_s,
            headers={"Content-Type": "application/json", "Accept": "application/json"},
        )
        self._budget = GatewayBudget()
        self._cond = asyncio.Condition()
        self.fallback = FallbackCache(fallback_max_age_s, clock)

    @classmethod
    def from_config(
        cls,
        config: SyncConfig,
        base_url: str,
        username: str = "",
        password: str = "",
        **kwargs: Any,
    ) -> "RateLimitedGateway":
        gw = config.gateway
        return cls(
            base_url,
            username,
            password,
            min_interval_s=gw.min_interval_s,
            max_concurrent=gw.max_concurrent,
            backoff=BackoffPolicy.from_config(config),
            timeout_s=gw.request_timeout_s,
            fallback_max_age_s=gw.fallback_max_age_s,
            **kwargs,
        )

    @property
    def budget(self) -> GatewayBudget:
        return self._budget

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def request(
        self,
        endpoint: str,
        method: str = "GET",
        params: dict[str, Any] | None = None,
        body: Any = None,
    ) -> Any:
        """Send one upstream request through admission control.

        Args:
            endpoint: Path relative to the base URL (e.g. "/users").
            method:   HTTP method.
            params:   Query parameters.
            body:     JSON body for POST/PUT.

        Returns:
            Parsed JSON (or a list of records for NDJSON), None for empty bodies.

        Raises:
            UpstreamRateLimited: 429 after the backoff policy is exhausted.
            UpstreamError:       Any other non-2xx response or transport failure.
        """
        method = method.upper()
        attempt = 0
        while True:
            attempt += 1
            response = await self._send_admitted(endpoint, method, params, body)

            if response.status_code == 429:
                delay = self._backoff.delay_for(attempt)
                logger.warning(
                    "Upstream throttled %s %s (attempt %d/%d); cooling down %.1fs",
                    method, endpoint, attempt, self._backoff.max_attempts, delay,
                )
                await self._start_cooldown(delay)
                if attempt < self._backoff.max_attempts:
                    continue
                raise UpstreamRateLimited(endpoint, attempt)

            if not 200 <= response.status_code < 300:
                logger.error("Upstream error %s %s → %d", method, endpoint, response.status_code)
                raise UpstreamError(endpoint, response.status_code, response.text)

            return parse_body(response)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    # ------------------------------------------------------------------
    # Admission control
    # ------------------------------------------------------------------

    def _spacing_delay(self) -> float:
        now = self._clock.monotonic()
        wait = self._budget.cooldown_until - now
        if self._budget.last_request_time is not None:
            wait = max(wait, self._budget.last_request_time + self._min_interval_s - now)
        return wait

    async def _admit(self) -> None:
        """Block until a request may start, then reserve a slot."""
        async with self._cond:
            while True:
                if self._budget.active_request_count >= self._max_concurrent:
                    await self._cond.wait()
                    continue

                delay = self._spacing_delay()
                if delay <= 0:
                    self._budget.active_request_count += 1
                    self._budget.last_request_time = self._clock.monotonic()
                    return

                # Sleep without holding the lock so releases can get in.
                self._cond.release()
                try:
                    await self._clock.sleep(delay)
                finally:
                    await self._cond.acquire()

    async def _release(self) -> None:
        async with self._cond:
            self._budget.active_request_count -= 1
            self._cond.notify_all()

    async def _start_cooldown(self, delay: float) -> None:
        async with self._cond:
            until = self._clock.monotonic() + delay
            self._budget.cooldown_until = max(self._budget.cooldown_until, until)
        await self._clock.sleep(delay)

    async def _send_admitted(
        self,
        endpoint: str,
        method: str,
        params: dict[str, Any] | None,
        body: Any,
    ) -> httpx.Response:
        await self._admit()
        sent_at = self._clock.now()
        started = self._clock.monotonic()
        status: int | None = None
        try:
            response = await self._client.request(
                method,
                f"{self._base_url}/{endpoint.lstrip('/')}",
                params=params,
                json=body,
                auth=self._auth,
            )
            status = response.status_code
            return response
        except httpx.HTTPError as exc:
            logger.error("Upstream transport failure %s %s: %s", method, endpoint, exc)
            raise UpstreamError(endpoint, None, str(exc)) from exc
        finally:
            await self._release()
            await self._audit(
                AuditRecord(
                    endpoint=endpoint,
                    method=method,
                    status=status,
                    latency_ms=int((self._clock.monotonic() - started) * 1000),
                    at=sent_at,
                )
            )

    async def _audit(self, record: AuditRecord) -> None:
        try:
            await self._audit_sink(record)
        except Exception as exc:
            logger.warning("Audit sink failed for %s %s: %s", record.method, record.endpoint, exc)

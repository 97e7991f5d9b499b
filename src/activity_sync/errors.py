"""Exception types for the activity sync engine.

Degraded (legacy-averaged) readings are not an error; they are flagged on
``MetricResult.degraded`` instead.
"""

from __future__ import annotations

from datetime import date


class ActivitySyncError(Exception):
    """Base exception for all sync engine errors."""


class UpstreamRateLimited(ActivitySyncError):
    """The upstream answered HTTP 429 and the backoff policy was exhausted.

    The gateway has already slept through its cooldown when this is raised.
    Callers decide whether to substitute fallback data or give up; they must
    not retry in a tight loop.
    """

    def __init__(self, endpoint: str, attempts: int = 1) -> None:
        super().__init__(f"Upstream rate limit exceeded on {endpoint} after {attempts} attempt(s)")
        self.endpoint = endpoint
        self.attempts = attempts


class UpstreamError(ActivitySyncError):
    """Any non-429 upstream failure.

    Attributes:
        status: HTTP status code, or None for transport failures (timeouts,
                connection errors).
        body:   Response body (truncated) or the transport error message.
    """

    def __init__(self, endpoint: str, status: int | None, body: str = "") -> None:
        label = status if status is not None else "transport"
        super().__init__(f"Upstream error on {endpoint}: {label} {body[:200]}".rstrip())
        self.endpoint = endpoint
        self.status = status
        self.body = body


class IncompleteData(ActivitySyncError):
    """A ranged read found fewer day buckets than days requested.

    Never approximate around this: a derived rate built on an under-counted
    sum must render as pending.

    Attributes:
        missing:  subject_id → days with no usable bucket.
        complete: Readings for the subjects that were fully covered.
    """

    def __init__(
        self,
        missing: dict[str, list[date]],
        complete: dict[str, int] | None = None,
    ) -> None:
        summary = ", ".join(
            f"{subject}: {len(days)} day(s)" for subject, days in sorted(missing.items())
        )
        super().__init__(f"Incomplete day buckets ({summary})")
        self.missing = missing
        self.complete = complete or {}

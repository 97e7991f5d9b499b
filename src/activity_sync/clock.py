"""Time source used by the gateway, cache, and scheduler.

Everything that waits or compares timestamps goes through a Clock so tests
can drive time forward without real sleeps.
"""

from __future__ import annotations

import asyncio
import time
from datetime import datetime, timezone


class Clock:
    """Wall clock + monotonic clock + sleep, backed by the real event loop."""

    def monotonic(self) -> float:
        return time.monotonic()

    def now(self) -> datetime:
        """Current UTC time (timezone-aware)."""
        return datetime.now(timezone.utc)

    async def sleep(self, seconds: float) -> None:
        if seconds > 0:
            await asyncio.sleep(seconds)
        else:
            await asyncio.sleep(0)


SYSTEM_CLOCK = Clock()

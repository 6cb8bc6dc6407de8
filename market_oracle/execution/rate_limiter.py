# execution/rate_limiter.py - MARKET ORACLE - TIER BUDGET GUARD - 2026 v1.1
# Patch vs v1.0:
# - Throttle: minimum spacing between outbound requests (serialized)
# - snapshot() for stats endpoints
# - Injectable clock (tests drive time explicitly)

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from market_oracle.data.models import Tier
from market_oracle.utils.logging import log_exec

Clock = Callable[[], float]
Sleeper = Callable[[float], Awaitable[Any]]


@dataclass
class RateLimitWindow:
    """Fixed window counter. `count` never exceeds `limit`."""
    limit: int
    window_start: float = 0.0
    count: int = 0


class RateLimiter:
    """
    Per-tier request budget over a rolling fixed window.
    try_acquire() never blocks: it says yes (and counts) or no (and leaves state alone).
    """

    def __init__(self, tier: Tier, limit: int, window_sec: float = 60.0, clock: Optional[Clock] = None):
        self.tier = Tier(tier)
        self.window_sec = float(window_sec)
        self._clock = clock or time.monotonic
        self.window = RateLimitWindow(limit=int(limit), window_start=self._clock(), count=0)
        self.denied = 0

    def _roll(self, now: float) -> None:
        if now - self.window.window_start >= self.window_sec:
            self.window.window_start = now
            self.window.count = 0

    def try_acquire(self) -> bool:
        now = self._clock()
        self._roll(now)
        if self.window.count < self.window.limit:
            self.window.count += 1
            return True
        self.denied += 1
        log_exec.debug(
            f"RATE LIMIT DENY | tier={self.tier.value} count={self.window.count}/{self.window.limit}"
        )
        return False

    def remaining(self) -> int:
        self._roll(self._clock())
        return max(0, self.window.limit - self.window.count)

    def reset_in(self) -> float:
        now = self._clock()
        return max(0.0, self.window_sec - (now - self.window.window_start))

    def snapshot(self) -> Dict[str, Any]:
        return {
            "tier": self.tier.value,
            "limit": self.window.limit,
            "count": self.window.count,
            "remaining": self.remaining(),
            "reset_in_sec": round(self.reset_in(), 3),
            "denied": self.denied,
        }


class Throttle:
    """Keeps at least `min_interval` seconds between consecutive outbound requests."""

    def __init__(self, min_interval: float, clock: Optional[Clock] = None, sleep: Optional[Sleeper] = None):
        self.min_interval = max(0.0, float(min_interval))
        self._clock = clock or time.monotonic
        self._sleep = sleep or asyncio.sleep
        self._lock = asyncio.Lock()
        self._last_ts: Optional[float] = None

    async def wait(self) -> float:
        """Returns the seconds actually waited."""
        async with self._lock:
            waited = 0.0
            if self._last_ts is not None and self.min_interval > 0:
                elapsed = self._clock() - self._last_ts
                if elapsed < self.min_interval:
                    waited = self.min_interval - elapsed
                    log_exec.debug(f"THROTTLE | waiting {waited:.2f}s")
                    await self._sleep(waited)
            self._last_ts = self._clock()
            return waited

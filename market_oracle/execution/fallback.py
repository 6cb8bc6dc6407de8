# execution/fallback.py - MARKET ORACLE - DEGRADATION LADDER - 2026 v1.2
# Patch vs v1.1:
# - allow(): retry rungs never reach upstream unless the breaker lets them
# Patch vs v1.0:
# - Ordered policy table instead of nested try/except
# - Each rung returns a value or NOT_APPLICABLE; the chain re-raises the last error
# - Retry rungs feed their own failure into the remaining rungs
# - Per-rung served counters for stats

from __future__ import annotations

import asyncio
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional, Sequence, Tuple

from market_oracle.data.models import CacheEntry, Tier
from market_oracle.execution.errors import MarketDataError, NetworkOrTimeout, NotFound, RateLimited
from market_oracle.utils.logging import log_exec


class _NotApplicable:
    def __repr__(self) -> str:
        return "NOT_APPLICABLE"


NOT_APPLICABLE = _NotApplicable()

Attempt = Callable[[Tier, float], Awaitable[Any]]


@dataclass
class FallbackContext:
    """Everything a rung may look at or call for one failed request."""
    endpoint: str
    cache_key: str
    tier: Tier
    error: MarketDataError
    attempt: Attempt
    acquire: Callable[[Tier], bool]
    stale: Callable[[], Optional[CacheEntry]]
    record_failure: Callable[[], None]
    allow: Callable[[], bool] = lambda: True
    retry_timeout: float = 15.0
    retry_delay: float = 3.0
    synthesize: Optional[Callable[[], Any]] = None
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep
    served_by: Optional[str] = None
    notes: List[str] = field(default_factory=list)


Strategy = Callable[[FallbackContext], Awaitable[Any]]


async def _retry(ctx: FallbackContext, tier: Tier, timeout: float) -> Any:
    try:
        return await ctx.attempt(tier, timeout)
    except NotFound:
        raise
    except MarketDataError as e:
        ctx.error = e
        ctx.tier = tier
        return NOT_APPLICABLE


async def switch_tier(ctx: FallbackContext) -> Any:
    """Rate limited on one tier: one retry on the other tier, if it has budget."""
    if not isinstance(ctx.error, RateLimited):
        return NOT_APPLICABLE
    if not ctx.allow():
        ctx.notes.append("breaker closed to retries")
        return NOT_APPLICABLE

    other = ctx.error.tier.other
    if not ctx.acquire(other):
        if ctx.error.upstream:
            # both tiers exhausted
            ctx.record_failure()
        ctx.notes.append(f"{other.value} tier unavailable")
        return NOT_APPLICABLE

    log_exec.warning(f"TIER SWITCH | {ctx.error.tier.value} -> {other.value} for {ctx.endpoint}")
    out = await _retry(ctx, other, ctx.retry_timeout)
    if out is NOT_APPLICABLE and isinstance(ctx.error, RateLimited) and ctx.error.upstream:
        ctx.record_failure()
    return out


async def retry_after_delay(ctx: FallbackContext) -> Any:
    """Network/timeout: wait a fixed delay and retry once with a longer timeout."""
    if not isinstance(ctx.error, NetworkOrTimeout):
        return NOT_APPLICABLE
    if not ctx.allow():
        ctx.notes.append("breaker closed to retries")
        return NOT_APPLICABLE
    if not ctx.acquire(ctx.tier):
        ctx.notes.append("no budget for retry")
        return NOT_APPLICABLE
    log_exec.warning(f"RETRY | {ctx.endpoint} in {ctx.retry_delay:.1f}s (timeout={ctx.retry_timeout:.0f}s)")
    await ctx.sleep(ctx.retry_delay)
    if not ctx.allow():
        ctx.notes.append("breaker opened during retry delay")
        return NOT_APPLICABLE
    return await _retry(ctx, ctx.tier, ctx.retry_timeout)


async def serve_stale(ctx: FallbackContext) -> Any:
    entry = ctx.stale()
    if entry is None:
        return NOT_APPLICABLE
    log_exec.warning(f"STALE SERVED | {ctx.cache_key} after {ctx.error.__class__.__name__}")
    return entry.data


async def synthesize(ctx: FallbackContext) -> Any:
    if ctx.synthesize is None:
        return NOT_APPLICABLE
    log_exec.warning(f"SYNTHETIC SERVED | {ctx.cache_key} after {ctx.error.__class__.__name__}")
    return ctx.synthesize()


DEFAULT_LADDER: Tuple[Tuple[str, Strategy], ...] = (
    ("switch_tier", switch_tier),
    ("retry_after_delay", retry_after_delay),
    ("serve_stale", serve_stale),
    ("synthesize", synthesize),
)


class FallbackChain:
    """Runs rungs in order; first value wins, otherwise the (latest) typed error propagates."""

    def __init__(self, ladder: Sequence[Tuple[str, Strategy]] = DEFAULT_LADDER):
        self.ladder = tuple(ladder)
        self.served: Counter = Counter()
        self.exhausted = 0

    async def run(self, ctx: FallbackContext) -> Any:
        for name, rung in self.ladder:
            out = await rung(ctx)
            if out is not NOT_APPLICABLE:
                ctx.served_by = name
                self.served[name] += 1
                return out
        self.exhausted += 1
        log_exec.error(f"FALLBACK EXHAUSTED | {ctx.endpoint}: {ctx.error}")
        raise ctx.error

    def stats(self):
        return {"served": dict(self.served), "exhausted": self.exhausted}

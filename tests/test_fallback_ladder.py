import pytest

from market_oracle.data.models import CacheEntry, EndpointClass, Tier
from market_oracle.execution.errors import (
    NetworkOrTimeout,
    NotFound,
    RateLimited,
    UpstreamError,
)
from market_oracle.execution.fallback import (
    NOT_APPLICABLE,
    FallbackChain,
    FallbackContext,
    retry_after_delay,
    serve_stale,
    switch_tier,
    synthesize,
)


class Harness:
    def __init__(self, clock, attempt_results=None, budget=None, stale=None, synth=None):
        self.clock = clock
        self.attempts = []
        self.attempt_results = list(attempt_results or [])
        self.budget = budget if budget is not None else {Tier.PUBLIC: True, Tier.PRO: True}
        self.stale_entry = stale
        self.failures = 0
        self.synth = synth

    async def attempt(self, tier, timeout):
        self.attempts.append((tier, timeout))
        r = self.attempt_results.pop(0)
        if isinstance(r, BaseException):
            raise r
        return r

    def acquire(self, tier):
        return self.budget.get(tier, False)

    def record_failure(self):
        self.failures += 1

    def ctx(self, error, tier=Tier.PUBLIC):
        return FallbackContext(
            endpoint="/coins/bitcoin",
            cache_key="coin_bitcoin",
            tier=tier,
            error=error,
            attempt=self.attempt,
            acquire=self.acquire,
            stale=lambda: self.stale_entry,
            record_failure=self.record_failure,
            retry_timeout=15.0,
            retry_delay=3.0,
            synthesize=self.synth,
            sleep=self.clock.sleep,
        )


class TestRungs:
    @pytest.mark.asyncio
    async def test_switch_tier_retries_on_other_tier(self, clock):
        h = Harness(clock, attempt_results=[{"ok": True}])
        out = await switch_tier(h.ctx(RateLimited(Tier.PRO)))
        assert out == {"ok": True}
        assert h.attempts == [(Tier.PUBLIC, 15.0)]

    @pytest.mark.asyncio
    async def test_switch_tier_without_budget_counts_failure(self, clock):
        h = Harness(clock, budget={Tier.PUBLIC: True, Tier.PRO: False})
        out = await switch_tier(h.ctx(RateLimited(Tier.PUBLIC)))
        assert out is NOT_APPLICABLE
        assert h.failures == 1

    @pytest.mark.asyncio
    async def test_local_saturation_is_not_a_breaker_failure(self, clock):
        h = Harness(clock, budget={Tier.PRO: False})
        out = await switch_tier(h.ctx(RateLimited(Tier.PUBLIC, upstream=False)))
        assert out is NOT_APPLICABLE
        assert h.failures == 0

    @pytest.mark.asyncio
    async def test_switch_tier_ignores_other_errors(self, clock):
        h = Harness(clock)
        assert await switch_tier(h.ctx(UpstreamError(500))) is NOT_APPLICABLE
        assert h.attempts == []

    @pytest.mark.asyncio
    async def test_retry_waits_fixed_delay_with_longer_timeout(self, clock):
        h = Harness(clock, attempt_results=[[1, 2, 3]])
        out = await retry_after_delay(h.ctx(NetworkOrTimeout("timeout")))
        assert out == [1, 2, 3]
        assert clock.sleeps == [3.0]
        assert h.attempts == [(Tier.PUBLIC, 15.0)]

    @pytest.mark.asyncio
    async def test_failed_retry_hands_new_error_down_the_ladder(self, clock):
        h = Harness(clock, attempt_results=[UpstreamError(502)])
        ctx = h.ctx(NetworkOrTimeout("reset"))
        assert await retry_after_delay(ctx) is NOT_APPLICABLE
        assert isinstance(ctx.error, UpstreamError)

    @pytest.mark.asyncio
    async def test_retry_not_found_propagates(self, clock):
        h = Harness(clock, attempt_results=[NotFound("gone")])
        with pytest.raises(NotFound):
            await retry_after_delay(h.ctx(NetworkOrTimeout("timeout")))

    @pytest.mark.asyncio
    async def test_serve_stale(self, clock):
        entry = CacheEntry(data={"old": True}, timestamp=0.0, endpoint_class=EndpointClass.COINS)
        h = Harness(clock, stale=entry)
        assert await serve_stale(h.ctx(UpstreamError(500))) == {"old": True}
        assert await serve_stale(Harness(clock).ctx(UpstreamError(500))) is NOT_APPLICABLE

    @pytest.mark.asyncio
    async def test_synthesize(self, clock):
        h = Harness(clock, synth=lambda: {"bids": [], "asks": []})
        assert await synthesize(h.ctx(UpstreamError(500))) == {"bids": [], "asks": []}
        assert await synthesize(Harness(clock).ctx(UpstreamError(500))) is NOT_APPLICABLE


class TestFallbackChain:
    @pytest.mark.asyncio
    async def test_first_applicable_rung_wins(self, clock):
        entry = CacheEntry(data="stale", timestamp=0.0, endpoint_class=EndpointClass.COINS)
        h = Harness(clock, stale=entry, synth=lambda: "synthetic")
        chain = FallbackChain()
        ctx = h.ctx(UpstreamError(500))
        assert await chain.run(ctx) == "stale"
        assert ctx.served_by == "serve_stale"
        assert chain.stats()["served"] == {"serve_stale": 1}

    @pytest.mark.asyncio
    async def test_exhausted_chain_raises_latest_error(self, clock):
        h = Harness(clock, attempt_results=[UpstreamError(503)])
        chain = FallbackChain()
        with pytest.raises(UpstreamError) as exc:
            await chain.run(h.ctx(NetworkOrTimeout("timeout")))
        assert exc.value.status == 503
        assert chain.exhausted == 1


class TestBreakerGate:
    @pytest.mark.asyncio
    async def test_no_tier_switch_when_breaker_refuses(self, clock):
        h = Harness(clock, attempt_results=[{"ok": True}])
        ctx = h.ctx(RateLimited(Tier.PRO))
        ctx.allow = lambda: False
        assert await switch_tier(ctx) is NOT_APPLICABLE
        assert h.attempts == []
        assert h.failures == 0

    @pytest.mark.asyncio
    async def test_no_delayed_retry_when_breaker_refuses(self, clock):
        h = Harness(clock, attempt_results=[{"ok": True}])
        ctx = h.ctx(NetworkOrTimeout("timeout"))
        ctx.allow = lambda: False
        assert await retry_after_delay(ctx) is NOT_APPLICABLE
        assert h.attempts == []
        assert clock.sleeps == []

    @pytest.mark.asyncio
    async def test_breaker_opening_during_delay_cancels_retry(self, clock):
        h = Harness(clock, attempt_results=[{"ok": True}])
        ctx = h.ctx(NetworkOrTimeout("timeout"))
        ctx.allow = lambda: not clock.sleeps
        assert await retry_after_delay(ctx) is NOT_APPLICABLE
        assert clock.sleeps == [3.0]
        assert h.attempts == []

    @pytest.mark.asyncio
    async def test_refused_retry_falls_through_to_stale(self, clock):
        entry = CacheEntry(data="stale", timestamp=0.0, endpoint_class=EndpointClass.TICKERS)
        h = Harness(clock, attempt_results=[{"ok": True}], stale=entry)
        ctx = h.ctx(NetworkOrTimeout("timeout"))
        ctx.allow = lambda: False
        assert await FallbackChain().run(ctx) == "stale"
        assert h.attempts == []

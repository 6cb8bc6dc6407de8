import asyncio
from typing import Any, Dict, List, Optional, Tuple

import pytest

from market_oracle.brain.persistence import MemoryKeyValueStore
from market_oracle.config.settings import Config
from market_oracle.data.models import Tier
from market_oracle.data.oracle import MarketDataOracle
from market_oracle.execution.errors import NotFound


class FakeClock:
    """Monotonic + wall clock driven by the test. sleep() advances time and yields once."""

    def __init__(self, start: float = 1_000.0, wall_start: float = 1_700_000_000.0):
        self.now = float(start)
        self.wall = float(wall_start)
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def wall_clock(self) -> float:
        return self.wall

    def advance(self, seconds: float) -> None:
        self.now += seconds
        self.wall += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.advance(seconds)
        await asyncio.sleep(0)


class FakeTransport:
    """
    Scriptable upstream.

    routes[endpoint] -> value, exception instance, or callable(params, tier) returning/raising.
    queue(endpoint, *responses) -> consumed in order before falling back to routes.
    Unknown endpoints raise NotFound.
    """

    def __init__(self):
        self.routes: Dict[str, Any] = {}
        self._queues: Dict[str, List[Any]] = {}
        self.calls: List[Tuple[str, Dict[str, Any], Tier, Optional[float]]] = []
        self.closed = False

    def route(self, endpoint: str, response: Any) -> "FakeTransport":
        self.routes[endpoint] = response
        return self

    def queue(self, endpoint: str, *responses: Any) -> "FakeTransport":
        self._queues.setdefault(endpoint, []).extend(responses)
        return self

    def calls_to(self, endpoint: str) -> List[Tuple[str, Dict[str, Any], Tier, Optional[float]]]:
        return [c for c in self.calls if c[0] == endpoint]

    async def fetch(self, endpoint, params=None, *, tier=Tier.PUBLIC, timeout=None):
        self.calls.append((endpoint, dict(params or {}), tier, timeout))
        await asyncio.sleep(0)

        q = self._queues.get(endpoint)
        if q:
            resp = q.pop(0)
        elif endpoint in self.routes:
            resp = self.routes[endpoint]
        else:
            raise NotFound(f"no route for {endpoint}", endpoint=endpoint)

        if isinstance(resp, BaseException):
            raise resp
        if callable(resp):
            return resp(dict(params or {}), tier)
        return resp

    async def close(self):
        self.closed = True


def market_row(coin_id: str, symbol: str, price: float, rank: int = 1) -> Dict[str, Any]:
    return {
        "id": coin_id,
        "symbol": symbol,
        "name": coin_id.title(),
        "image": f"https://img.example/{coin_id}.png",
        "current_price": price,
        "market_cap": price * 1_000_000,
        "market_cap_rank": rank,
        "total_volume": price * 10_000,
        "price_change_percentage_24h": 1.5,
    }


def coin_detail(coin_id: str, symbol: str, price: float) -> Dict[str, Any]:
    return {
        "id": coin_id,
        "symbol": symbol,
        "name": coin_id.title(),
        "image": {"large": f"https://img.example/{coin_id}.png"},
        "market_cap_rank": 2,
        "market_data": {
            "current_price": {"usd": price},
            "market_cap": {"usd": price * 1_000_000},
            "total_volume": {"usd": price * 10_000},
            "price_change_percentage_24h": -0.8,
        },
    }


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def store() -> MemoryKeyValueStore:
    return MemoryKeyValueStore()


@pytest.fixture
def config() -> Config:
    """Fast config: no throttle spacing, tiny batch window."""
    return Config(
        THROTTLE_DELAY_SEC=0.0,
        BATCH_DELAY_SEC=0.01,
        PUBLIC_RATE_LIMIT=100,
        PRO_RATE_LIMIT=100,
    )


@pytest.fixture
def make_oracle(transport, store, clock):
    def _make(cfg: Optional[Config] = None) -> MarketDataOracle:
        return MarketDataOracle(
            cfg or Config(THROTTLE_DELAY_SEC=0.0, BATCH_DELAY_SEC=0.01, PUBLIC_RATE_LIMIT=100, PRO_RATE_LIMIT=100),
            transport=transport,
            store=store,
            clock=clock,
            wall_clock=clock.wall_clock,
            sleep=clock.sleep,
        )

    return _make


@pytest.fixture
def oracle(make_oracle, config) -> MarketDataOracle:
    return make_oracle(config)

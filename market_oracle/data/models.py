# data/models.py - MARKET ORACLE - SHARED DATA SHAPES - 2026 v1.0

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any


class Tier(str, Enum):
    """Upstream access tier. Each tier has its own rate budget."""
    PUBLIC = "public"
    PRO = "pro"

    @property
    def other(self) -> "Tier":
        return Tier.PRO if self is Tier.PUBLIC else Tier.PUBLIC


class EndpointClass(str, Enum):
    """Endpoint families sharing cache lifetimes (and optionally a breaker)."""
    COINS = "coins"
    MARKETS = "markets"
    TICKERS = "tickers"
    ORDERBOOK = "orderbook"
    PRICE = "price"
    HISTORY = "history"
    SEARCH = "search"


def classify_endpoint(endpoint: str) -> EndpointClass:
    """
    Map an endpoint path onto its EndpointClass.
    Order matters: '/coins/markets' and '/coins/{id}/tickers' also contain 'coins'.
    """
    e = str(endpoint or "").lower()
    if "coins/markets" in e:
        return EndpointClass.MARKETS
    if "tickers" in e:
        return EndpointClass.TICKERS
    if "orderbook" in e:
        return EndpointClass.ORDERBOOK
    if "market_chart" in e:
        return EndpointClass.HISTORY
    if "search" in e:
        return EndpointClass.SEARCH
    if "price" in e:
        return EndpointClass.PRICE
    if "coins" in e:
        return EndpointClass.COINS
    return EndpointClass.MARKETS


@dataclass
class CacheEntry:
    data: Any
    timestamp: float
    endpoint_class: EndpointClass

    def age(self, now: float) -> float:
        return max(0.0, float(now) - float(self.timestamp))

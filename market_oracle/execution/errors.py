# execution/errors.py - MARKET ORACLE - TYPED FAILURE TAXONOMY - 2026 v1.0

from __future__ import annotations

from typing import Optional

from market_oracle.data.models import Tier


class MarketDataError(Exception):
    """Base for every failure surfaced by the oracle."""

    #: does this failure count against the circuit breaker
    counts_as_failure: bool = True

    def __init__(self, message: str = "", *, endpoint: Optional[str] = None):
        super().__init__(message or self.__class__.__name__)
        self.endpoint = endpoint


class NotFound(MarketDataError):
    """Upstream answered cleanly that the resource does not exist."""
    counts_as_failure = False


class RateLimited(MarketDataError):
    """Tier budget exhausted, locally or as reported by upstream (429/403)."""
    counts_as_failure = False

    def __init__(
        self,
        tier: Tier,
        message: str = "",
        *,
        endpoint: Optional[str] = None,
        upstream: bool = True,
    ):
        super().__init__(message or f"rate limited on {Tier(tier).value} tier", endpoint=endpoint)
        self.tier = Tier(tier)
        # False when the local budget said no and the request never left the process
        self.upstream = bool(upstream)


class NetworkOrTimeout(MarketDataError):
    """Connection failure or per-attempt timeout."""


class UpstreamError(MarketDataError):
    """Non-2xx (other than 404/403/429) or an undecodable body."""

    def __init__(self, status: int = 0, message: str = "", *, endpoint: Optional[str] = None):
        super().__init__(message or f"upstream error status={status}", endpoint=endpoint)
        self.status = int(status or 0)


class Unresolvable(MarketDataError):
    """Symbol could not be mapped to a provider id."""
    counts_as_failure = False

    def __init__(self, symbol: str, message: str = ""):
        super().__init__(message or f"cannot resolve symbol '{symbol}'")
        self.symbol = symbol


class Unavailable(MarketDataError):
    """Breaker open (or upstream disabled) and nothing usable cached."""
    counts_as_failure = False


__all__ = [
    "MarketDataError",
    "NotFound",
    "RateLimited",
    "NetworkOrTimeout",
    "UpstreamError",
    "Unresolvable",
    "Unavailable",
]

# execution module
from .circuit_breaker import CircuitBreaker, CircuitBreakerRegistry, CircuitState
from .coalescer import RequestBatcher, RequestCoalescer, request_key
from .errors import (
    MarketDataError,
    NetworkOrTimeout,
    NotFound,
    RateLimited,
    Unavailable,
    Unresolvable,
    UpstreamError,
)
from .rate_limiter import RateLimiter, Throttle

__all__ = [
    "CircuitBreaker",
    "CircuitBreakerRegistry",
    "CircuitState",
    "RequestBatcher",
    "RequestCoalescer",
    "request_key",
    "MarketDataError",
    "NetworkOrTimeout",
    "NotFound",
    "RateLimited",
    "Unavailable",
    "Unresolvable",
    "UpstreamError",
    "RateLimiter",
    "Throttle",
]

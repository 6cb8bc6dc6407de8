# config/settings.py - MARKET ORACLE - UPSTREAM GOVERNOR SETTINGS - 2026 v1.2
# Patch vs v1.1:
# - Adds API_DISABLED kill switch (cache-only mode)
# - Adds PER_ENDPOINT_BREAKERS switch (default: one shared breaker)
# - Adds HISTORY + SEARCH cache classes
# - from_env(): .env + MARKET_ORACLE_* overrides

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields
from typing import Dict, Optional, Tuple

from dotenv import load_dotenv

from market_oracle.data.models import EndpointClass

ENV_PREFIX = "MARKET_ORACLE_"

MINUTE = 60.0
HOUR = 60.0 * MINUTE
DAY = 24.0 * HOUR


def _default_durations() -> Dict[EndpointClass, Tuple[float, float]]:
    # (fresh_sec, stale_sec)
    return {
        EndpointClass.COINS: (30 * MINUTE, 4 * HOUR),
        EndpointClass.MARKETS: (15 * MINUTE, 1 * HOUR),
        EndpointClass.TICKERS: (5 * MINUTE, 30 * MINUTE),
        EndpointClass.ORDERBOOK: (1 * MINUTE, 10 * MINUTE),
        EndpointClass.PRICE: (5 * MINUTE, 30 * MINUTE),
        EndpointClass.HISTORY: (15 * MINUTE, 1 * HOUR),
        EndpointClass.SEARCH: (30 * MINUTE, 4 * HOUR),
    }


@dataclass
class Config:
    """
    UPSTREAM GOVERNOR - baseline settings.
    Defaults follow the free public tier of a CoinGecko-shaped API.
    """

    # === UPSTREAM ===
    PUBLIC_BASE_URL: str = "https://api.coingecko.com/api/v3"
    PRO_BASE_URL: str = "https://pro-api.coingecko.com/api/v3"
    API_KEY: str = ""
    API_DISABLED: bool = False

    # === RATE BUDGETS (requests per window) ===
    PUBLIC_RATE_LIMIT: int = 10
    PRO_RATE_LIMIT: int = 30
    RATE_WINDOW_SEC: float = 60.0
    THROTTLE_DELAY_SEC: float = 0.5

    # === TIMEOUTS & RETRY ===
    REQUEST_TIMEOUT_SEC: float = 10.0
    RETRY_TIMEOUT_SEC: float = 15.0
    RETRY_DELAY_SEC: float = 3.0
    RATE_LIMIT_WAIT_SEC: float = 2.0

    # === CIRCUIT BREAKER ===
    BREAKER_FAILURE_THRESHOLD: int = 3
    BREAKER_RESET_TIMEOUT_SEC: float = 300.0
    PER_ENDPOINT_BREAKERS: bool = False

    # === BATCHING ===
    BATCH_DELAY_SEC: float = 0.1
    BATCH_MAX_IDS: int = 50

    # === SYMBOL RESOLUTION ===
    SYMBOL_SNAPSHOT_KEY: str = "coingecko_symbol_map"
    SYMBOL_TTL_SEC: float = 7 * DAY
    SYMBOL_BULK_LIMIT: int = 100
    SNAPSHOT_PATH: str = "~/.market_oracle.brain.lz4"

    # === CACHE LIFETIMES ===
    CACHE_DURATIONS: Dict[EndpointClass, Tuple[float, float]] = field(default_factory=_default_durations)

    # === LOGGING ===
    LOGGING_LEVEL: str = "INFO"
    LOG_FILE: str = ""

    # === METADATA ===
    CONFIG_VERSION: str = "upstream-governor-2026-v1.2"

    def __post_init__(self):
        if self.PUBLIC_RATE_LIMIT < 1:
            raise ValueError("PUBLIC_RATE_LIMIT must be >= 1.")
        if self.PRO_RATE_LIMIT < 1:
            raise ValueError("PRO_RATE_LIMIT must be >= 1.")
        if self.RATE_WINDOW_SEC <= 0:
            raise ValueError("RATE_WINDOW_SEC must be > 0.")
        if self.THROTTLE_DELAY_SEC < 0:
            raise ValueError("THROTTLE_DELAY_SEC must be >= 0.")
        if self.REQUEST_TIMEOUT_SEC <= 0 or self.RETRY_TIMEOUT_SEC <= 0:
            raise ValueError("Request timeouts must be > 0.")
        if self.BREAKER_FAILURE_THRESHOLD < 1:
            raise ValueError("BREAKER_FAILURE_THRESHOLD must be >= 1.")
        if self.BREAKER_RESET_TIMEOUT_SEC < 0:
            raise ValueError("BREAKER_RESET_TIMEOUT_SEC must be >= 0.")
        if self.BATCH_DELAY_SEC < 0:
            raise ValueError("BATCH_DELAY_SEC must be >= 0.")
        if self.BATCH_MAX_IDS < 1:
            raise ValueError("BATCH_MAX_IDS must be >= 1.")
        if self.SYMBOL_TTL_SEC <= 0:
            raise ValueError("SYMBOL_TTL_SEC must be > 0.")

        # Fill missing classes from the defaults so lookups never KeyError
        merged = _default_durations()
        for k, v in (self.CACHE_DURATIONS or {}).items():
            merged[EndpointClass(k)] = (float(v[0]), float(v[1]))
        for cls, (fresh, stale) in merged.items():
            if fresh < 0:
                raise ValueError(f"Fresh duration for {cls.value} must be >= 0.")
            if stale < fresh:
                raise ValueError(f"Stale duration for {cls.value} must be >= fresh duration.")
        self.CACHE_DURATIONS = merged

    @property
    def has_api_key(self) -> bool:
        return bool((self.API_KEY or "").strip())

    @property
    def snapshot_path(self) -> str:
        return os.path.expanduser(self.SNAPSHOT_PATH)

    @classmethod
    def from_env(cls, dotenv_path: Optional[str] = None, **overrides) -> "Config":
        """
        Build a Config from .env / process environment.
        Every scalar field can be overridden with MARKET_ORACLE_<FIELD>.
        """
        load_dotenv(dotenv_path)

        kwargs = {}
        for f in fields(cls):
            if f.name == "CACHE_DURATIONS":
                continue
            raw = os.getenv(ENV_PREFIX + f.name)
            if raw is None:
                continue
            kwargs[f.name] = _coerce(raw, f.default)

        # Common alias used by dashboards
        if "API_KEY" not in kwargs and os.getenv("COINGECKO_API_KEY"):
            kwargs["API_KEY"] = os.getenv("COINGECKO_API_KEY", "")

        kwargs.update(overrides)
        return cls(**kwargs)


def _coerce(raw: str, default):
    s = str(raw).strip()
    if isinstance(default, bool):
        return s.lower() in ("1", "true", "yes", "on")
    if isinstance(default, int):
        return int(float(s))
    if isinstance(default, float):
        return float(s)
    return s

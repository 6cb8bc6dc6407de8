# data/cache.py - MARKET ORACLE - RESPONSE TRUTH CACHE - 2026 v1.1
# Patch vs v1.0:
# - Two-horizon reads: get() honours fresh duration, get_stale() the longer stale one
# - get_any(): expired-but-present read for cache-only (API disabled) mode
# - Monotonic-safe age (no wall-clock jump poison)
# - stats(): entries per endpoint class + hit/miss counters

from __future__ import annotations

import time
from typing import Any, Callable, Dict, Optional, Tuple

from market_oracle.data.models import CacheEntry, EndpointClass, classify_endpoint
from market_oracle.utils.logging import log_data

Clock = Callable[[], float]


class CacheStore:
    """
    Keyed response cache with per-endpoint-class fresh and stale durations.
    Entries are overwritten on refresh and only removed by reset().
    """

    def __init__(
        self,
        durations: Dict[EndpointClass, Tuple[float, float]],
        clock: Optional[Clock] = None,
    ):
        for cls, (fresh, stale) in durations.items():
            if stale < fresh:
                raise ValueError(f"stale < fresh for {cls}")
        self.durations = dict(durations)
        self._clock = clock or time.monotonic
        self._entries: Dict[str, CacheEntry] = {}

        self.fresh_hits = 0
        self.stale_hits = 0
        self.misses = 0

    # ---------- helpers ----------

    def _fresh_for(self, cls: EndpointClass) -> float:
        return float(self.durations.get(cls, self.durations[EndpointClass.MARKETS])[0])

    def _stale_for(self, cls: EndpointClass) -> float:
        return float(self.durations.get(cls, self.durations[EndpointClass.MARKETS])[1])

    # ---------- reads ----------

    def get(self, key: str) -> Optional[CacheEntry]:
        e = self._entries.get(key)
        if e is None:
            self.misses += 1
            return None
        if e.age(self._clock()) < self._fresh_for(e.endpoint_class):
            self.fresh_hits += 1
            log_data.debug(f"CACHE HIT | {key}")
            return e
        self.misses += 1
        return None

    def get_stale(self, key: str) -> Optional[CacheEntry]:
        e = self._entries.get(key)
        if e is None:
            return None
        if e.age(self._clock()) < self._stale_for(e.endpoint_class):
            self.stale_hits += 1
            return e
        return None

    def get_any(self, key: str) -> Optional[CacheEntry]:
        return self._entries.get(key)

    def is_fresh(self, key: str) -> bool:
        """Fresh check without touching hit/miss counters."""
        e = self._entries.get(key)
        return e is not None and e.age(self._clock()) < self._fresh_for(e.endpoint_class)

    def age(self, key: str) -> Optional[float]:
        e = self._entries.get(key)
        return None if e is None else e.age(self._clock())

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    # ---------- writes ----------

    def put(self, key: str, data: Any, endpoint_class: Optional[EndpointClass] = None) -> CacheEntry:
        cls = EndpointClass(endpoint_class) if endpoint_class is not None else classify_endpoint(key)
        e = CacheEntry(data=data, timestamp=self._clock(), endpoint_class=cls)
        self._entries[key] = e
        return e

    def reset(self) -> int:
        n = len(self._entries)
        self._entries.clear()
        self.fresh_hits = 0
        self.stale_hits = 0
        self.misses = 0
        log_data.info(f"CACHE RESET | dropped {n} entries")
        return n

    # ---------- telemetry ----------

    def stats(self) -> Dict[str, Any]:
        now = self._clock()
        per_class: Dict[str, Dict[str, int]] = {}
        for e in self._entries.values():
            bucket = per_class.setdefault(e.endpoint_class.value, {"entries": 0, "fresh": 0, "stale": 0, "expired": 0})
            bucket["entries"] += 1
            age = e.age(now)
            if age < self._fresh_for(e.endpoint_class):
                bucket["fresh"] += 1
            elif age < self._stale_for(e.endpoint_class):
                bucket["stale"] += 1
            else:
                bucket["expired"] += 1
        return {
            "entries": len(self._entries),
            "by_class": per_class,
            "fresh_hits": self.fresh_hits,
            "stale_hits": self.stale_hits,
            "misses": self.misses,
        }

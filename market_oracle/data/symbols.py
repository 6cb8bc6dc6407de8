# data/symbols.py - MARKET ORACLE - SYMBOL -> PROVIDER ID LAW - 2026 v1.2
# Patch vs v1.1:
# - Conservative provider-id check: allow-list + known ids only (hyphen alone is NOT an id)
# - Search step prefers exact id, then exact symbol, then first hit
# - Snapshot {timestamp, symbols} persisted only when the map changed
# - Fetcher failures during resolution are logged and the next step runs

from __future__ import annotations

import time
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set

from market_oracle.utils.logging import log_data

# Highest-volume symbols: resolution never goes fully blind before the first network call.
STATIC_SYMBOLS: Dict[str, str] = {
    "btc": "bitcoin",
    "xbt": "bitcoin",
    "eth": "ethereum",
    "usdt": "tether",
    "usdc": "usd-coin",
    "bnb": "binancecoin",
    "xrp": "ripple",
    "sol": "solana",
    "ada": "cardano",
    "doge": "dogecoin",
    "dot": "polkadot",
}

# Provider ids accepted verbatim even before the map knows them.
KNOWN_PROVIDER_IDS: Set[str] = {
    "bitcoin",
    "ethereum",
    "tether",
    "usd-coin",
    "binancecoin",
    "ripple",
    "solana",
    "cardano",
    "dogecoin",
    "polkadot",
    "avalanche-2",
    "matic-network",
    "chainlink",
    "litecoin",
    "tron",
    "shiba-inu",
    "wrapped-bitcoin",
    "staked-ether",
}

FetchMarkets = Callable[[int], Awaitable[List[Dict[str, Any]]]]
SearchCoins = Callable[[str], Awaitable[List[Dict[str, Any]]]]


def _norm(text: Any) -> str:
    return str(text or "").strip().lower()


class SymbolResolver:
    """
    Maps human symbols ("BTC") onto provider ids ("bitcoin").

    resolve() order, first hit wins:
      1. input is already a provider id (allow-list / static ids / learned ids)
      2. static table
      3. learned map
      4. bulk market-list fetch, then recheck
      5. provider search: exact id, exact symbol, else first result
    Returns None when every step misses.
    """

    def __init__(
        self,
        store: Any,
        *,
        snapshot_key: str = "coingecko_symbol_map",
        ttl_sec: float = 7 * 24 * 3600.0,
        bulk_limit: int = 100,
        fetch_markets: Optional[FetchMarkets] = None,
        search: Optional[SearchCoins] = None,
        wall_clock: Optional[Callable[[], float]] = None,
    ):
        self.store = store
        self.snapshot_key = snapshot_key
        self.ttl_sec = float(ttl_sec)
        self.bulk_limit = int(bulk_limit)
        self.fetch_markets = fetch_markets
        self.search = search
        self._wall = wall_clock or time.time

        self._map: Dict[str, str] = dict(STATIC_SYMBOLS)
        self._ids: Set[str] = set(STATIC_SYMBOLS.values())
        self._dirty = False
        self.loaded_from_snapshot = False

        # telemetry
        self.hits_static = 0
        self.hits_learned = 0
        self.bulk_fetches = 0
        self.searches = 0
        self.unresolved = 0

    # ---------- map maintenance ----------

    def is_provider_id(self, text: str) -> bool:
        t = _norm(text)
        return bool(t) and (t in KNOWN_PROVIDER_IDS or t in self._ids)

    def learn(self, symbol: str, provider_id: str) -> bool:
        s = _norm(symbol)
        pid = _norm(provider_id)
        if not s or not pid:
            return False
        self._ids.add(pid)
        # static table is authoritative for its symbols
        if s in STATIC_SYMBOLS:
            return False
        if self._map.get(s) == pid:
            return False
        # first (highest market cap) mapping wins for ambiguous symbols
        if s in self._map:
            return False
        self._map[s] = pid
        self._dirty = True
        return True

    def learn_coins(self, coins: Iterable[Any]) -> int:
        n = 0
        for c in coins or []:
            if not isinstance(c, dict):
                continue
            if self.learn(c.get("symbol", ""), c.get("id", "")):
                n += 1
        if n:
            log_data.debug(f"SYMBOL MAP LEARNED | +{n} (size={len(self._map)})")
        return n

    def lookup(self, text: str) -> Optional[str]:
        """Offline lookup: id passthrough, static table, learned map. No network."""
        t = _norm(text)
        if not t:
            return None
        if self.is_provider_id(t):
            return t
        if t in STATIC_SYMBOLS:
            return STATIC_SYMBOLS[t]
        return self._map.get(t)

    def mapping(self) -> Dict[str, str]:
        return dict(self._map)

    # ---------- resolution ----------

    async def resolve(self, text: str) -> Optional[str]:
        t = _norm(text)
        if not t:
            return None

        # 1) already a provider id
        if self.is_provider_id(t):
            return t

        # 2) static table
        if t in STATIC_SYMBOLS:
            self.hits_static += 1
            return STATIC_SYMBOLS[t]

        # 3) learned map
        pid = self._map.get(t)
        if pid:
            self.hits_learned += 1
            return pid

        try:
            # 4) bulk list, then recheck
            if self.fetch_markets is not None:
                self.bulk_fetches += 1
                try:
                    coins = await self.fetch_markets(self.bulk_limit)
                    self.learn_coins(coins)
                except Exception as e:
                    log_data.warning(f"SYMBOL BULK FETCH FAILED | {t}: {e}")
                pid = self.lookup(t)
                if pid:
                    return pid

            # 5) search
            if self.search is not None:
                self.searches += 1
                try:
                    results = await self.search(t)
                except Exception as e:
                    log_data.warning(f"SYMBOL SEARCH FAILED | {t}: {e}")
                    results = []
                pid = self._pick_search_result(t, results)
                if pid:
                    self._ids.add(pid)
                    self.learn(t, pid)
                    return pid
        finally:
            await self.persist_if_dirty()

        self.unresolved += 1
        log_data.info(f"SYMBOL UNRESOLVED | {t}")
        return None

    @staticmethod
    def _pick_search_result(t: str, results: Any) -> Optional[str]:
        hits = [r for r in (results or []) if isinstance(r, dict) and r.get("id")]
        if not hits:
            return None
        for r in hits:
            if _norm(r.get("id")) == t:
                return _norm(r.get("id"))
        for r in hits:
            if _norm(r.get("symbol")) == t:
                return _norm(r.get("id"))
        return _norm(hits[0].get("id"))

    # ---------- snapshot ----------

    async def load(self) -> bool:
        """Restore a snapshot younger than the TTL; otherwise keep the static seed."""
        try:
            snap = await self.store.get(self.snapshot_key)
        except Exception as e:
            log_data.warning(f"SYMBOL SNAPSHOT READ FAILED | {e}")
            return False

        if not isinstance(snap, dict):
            return False
        ts = snap.get("timestamp")
        symbols = snap.get("symbols")
        try:
            age = self._wall() - float(ts)
        except (TypeError, ValueError):
            return False
        if not isinstance(symbols, dict) or age < 0 or age >= self.ttl_sec:
            log_data.info(f"SYMBOL SNAPSHOT EXPIRED | age={age:.0f}s, reseeding static table")
            return False

        restored = 0
        for s, pid in symbols.items():
            s2, pid2 = _norm(s), _norm(pid)
            if not s2 or not pid2:
                continue
            self._ids.add(pid2)
            if s2 in STATIC_SYMBOLS:
                continue
            self._map[s2] = pid2
            restored += 1
        self.loaded_from_snapshot = True
        log_data.info(f"SYMBOL MAP RESTORED | {restored} learned symbols (age={age:.0f}s)")
        return True

    async def persist(self) -> None:
        snap = {"timestamp": float(self._wall()), "symbols": dict(self._map)}
        try:
            await self.store.set(self.snapshot_key, snap)
            self._dirty = False
        except Exception as e:
            log_data.error(f"SYMBOL SNAPSHOT WRITE FAILED | {e}")

    async def persist_if_dirty(self) -> bool:
        if not self._dirty:
            return False
        await self.persist()
        return True

    def stats(self) -> Dict[str, Any]:
        return {
            "symbols": len(self._map),
            "known_ids": len(self._ids),
            "loaded_from_snapshot": self.loaded_from_snapshot,
            "dirty": self._dirty,
            "hits_static": self.hits_static,
            "hits_learned": self.hits_learned,
            "bulk_fetches": self.bulk_fetches,
            "searches": self.searches,
            "unresolved": self.unresolved,
        }

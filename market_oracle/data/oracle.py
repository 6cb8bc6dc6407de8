# data/oracle.py - MARKET ORACLE - UPSTREAM GOVERNOR - 2026 v1.5
# Patch vs v1.4:
# - Fallback retries only while the breaker is CLOSED (HALF_OPEN trial = one upstream call)
# - HALF_OPEN trial released when the request ends without an upstream verdict
# Patch vs v1.3:
# - One composition root owns cache, limiters, breakers, coalescer, batcher, symbol map
# - request(): coalesce -> fresh cache -> breaker -> tier -> throttle -> fetch -> fallback ladder
# - API_DISABLED: cache-only mode (any cached entry, else Unavailable)
# - Orderbook never blanks: ticker-derived book, else deterministic synthetic book
# - Batched coin lookups warm per-coin cache only from fresh batch responses

from __future__ import annotations

import asyncio
import time
from collections import Counter
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

import pandas as pd

from market_oracle.brain.persistence import FileKeyValueStore, KeyValueStore
from market_oracle.config.settings import Config
from market_oracle.data.cache import CacheStore
from market_oracle.data.fallback import (
    filter_pair_tickers,
    history_frame,
    split_pair,
    synthetic_orderbook,
    tickers_to_orderbook,
)
from market_oracle.data.models import EndpointClass, Tier, classify_endpoint
from market_oracle.data.symbols import SymbolResolver
from market_oracle.data.transport import HttpTransport
from market_oracle.execution.circuit_breaker import CircuitBreaker, CircuitBreakerRegistry, CircuitState
from market_oracle.execution.coalescer import RequestBatcher, RequestCoalescer, request_key
from market_oracle.execution.errors import (
    MarketDataError,
    NotFound,
    RateLimited,
    Unavailable,
    Unresolvable,
    UpstreamError,
)
from market_oracle.execution.fallback import FallbackChain, FallbackContext
from market_oracle.execution.rate_limiter import RateLimiter, Throttle
from market_oracle.utils.logging import log_core, log_data

VS_CURRENCY = "usd"
PLACEHOLDER_ICON = "/placeholder.svg"
QUOTE_ASSETS = ("USDT", "USD", "BTC", "ETH")
USD_LIKE = {"usd", "usdt", ""}

COIN_DETAIL_PARAMS = {
    "localization": "false",
    "tickers": "false",
    "market_data": "true",
    "community_data": "false",
    "developer_data": "false",
}


def _safe_float(x, default: float = 0.0) -> float:
    try:
        v = float(x)
        return default if v != v else v
    except Exception:
        return default


def _usd(v: Any) -> float:
    if isinstance(v, dict):
        return _safe_float(v.get(VS_CURRENCY), 0.0)
    return _safe_float(v, 0.0)


def normalize_coin(raw: Any) -> Dict[str, Any]:
    """
    Flatten a /coins/{id} document (market_data.* keyed by currency) into the
    /coins/markets row shape. Rows already in that shape pass through.
    """
    if not isinstance(raw, dict):
        raise UpstreamError(0, "coin payload is not an object")

    md = raw.get("market_data")
    if not isinstance(md, dict):
        out = dict(raw)
        out["id"] = str(raw.get("id", "")).lower()
        out["symbol"] = str(raw.get("symbol", "")).lower()
        out["current_price"] = _safe_float(raw.get("current_price"), 0.0)
        return out

    image = raw.get("image")
    if isinstance(image, dict):
        image = image.get("large") or image.get("small") or image.get("thumb") or ""

    return {
        "id": str(raw.get("id", "")).lower(),
        "symbol": str(raw.get("symbol", "")).lower(),
        "name": raw.get("name", ""),
        "image": image or "",
        "current_price": _usd(md.get("current_price")),
        "market_cap": _usd(md.get("market_cap")),
        "market_cap_rank": raw.get("market_cap_rank") or md.get("market_cap_rank"),
        "total_volume": _usd(md.get("total_volume")),
        "price_change_percentage_24h": _safe_float(md.get("price_change_percentage_24h"), 0.0),
    }


class MarketDataOracle:
    """
    UPSTREAM GOVERNOR

    Mediates every call to a CoinGecko-shaped market-data API: serve from cache,
    join or batch with other callers, respect tier budgets and the circuit
    breaker, retry once, then degrade to stale or synthetic data.
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        *,
        transport: Any = None,
        store: Optional[KeyValueStore] = None,
        clock: Optional[Callable[[], float]] = None,
        wall_clock: Optional[Callable[[], float]] = None,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
    ):
        self.config = config or Config()
        cfg = self.config

        self._clock = clock or time.monotonic
        self._sleep = sleep or asyncio.sleep

        self.transport = transport or HttpTransport(
            cfg.PUBLIC_BASE_URL,
            cfg.PRO_BASE_URL,
            cfg.API_KEY,
            default_timeout=cfg.REQUEST_TIMEOUT_SEC,
        )
        self.store = store if store is not None else FileKeyValueStore(cfg.snapshot_path)

        self.cache = CacheStore(cfg.CACHE_DURATIONS, clock=self._clock)
        self.limiters: Dict[Tier, RateLimiter] = {
            Tier.PUBLIC: RateLimiter(Tier.PUBLIC, cfg.PUBLIC_RATE_LIMIT, cfg.RATE_WINDOW_SEC, clock=self._clock),
            Tier.PRO: RateLimiter(Tier.PRO, cfg.PRO_RATE_LIMIT, cfg.RATE_WINDOW_SEC, clock=self._clock),
        }
        self.throttle = Throttle(cfg.THROTTLE_DELAY_SEC, clock=self._clock, sleep=self._sleep)
        self.breakers = CircuitBreakerRegistry(
            cfg.BREAKER_FAILURE_THRESHOLD,
            cfg.BREAKER_RESET_TIMEOUT_SEC,
            per_endpoint=cfg.PER_ENDPOINT_BREAKERS,
            clock=self._clock,
        )
        self.coalescer = RequestCoalescer()
        self.batcher = RequestBatcher(
            self._fetch_coins_many,
            self._fetch_coin_one,
            delay=cfg.BATCH_DELAY_SEC,
            max_batch=cfg.BATCH_MAX_IDS,
            sleep=self._sleep,
        )
        self.fallbacks = FallbackChain()
        self.symbols = SymbolResolver(
            self.store,
            snapshot_key=cfg.SYMBOL_SNAPSHOT_KEY,
            ttl_sec=cfg.SYMBOL_TTL_SEC,
            bulk_limit=cfg.SYMBOL_BULK_LIMIT,
            fetch_markets=self.get_top_coins,
            search=self.search_coins,
            wall_clock=wall_clock,
        )

        # telemetry
        self.requests_total = 0
        self.network_calls: Counter = Counter()
        self.synthetic_served = 0
        self.stale_served_open_circuit = 0
        self._started = False

    # ---------- lifecycle ----------

    async def start(self) -> "MarketDataOracle":
        if not self._started:
            await self.symbols.load()
            self._started = True
            log_core.info(
                f"ORACLE STARTED | pro_key={self.config.has_api_key} "
                f"api_disabled={self.config.API_DISABLED} symbols={len(self.symbols.mapping())}"
            )
        return self

    async def close(self) -> None:
        try:
            await self.symbols.persist_if_dirty()
        finally:
            await self.batcher.close()
            close = getattr(self.transport, "close", None)
            if close is not None:
                await close()
            log_core.info("ORACLE CLOSED")

    async def __aenter__(self) -> "MarketDataOracle":
        return await self.start()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # ---------- generic request pipeline ----------

    def breaker_for(self, endpoint_class: EndpointClass) -> CircuitBreaker:
        return self.breakers.get(endpoint_class)

    async def request(
        self,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        *,
        cache_key: Optional[str] = None,
        endpoint_class: Optional[EndpointClass] = None,
        prefer_pro: bool = False,
        essential: bool = False,
        transform: Optional[Callable[[Any], Any]] = None,
        synthesize: Optional[Callable[[], Any]] = None,
    ) -> Any:
        """
        Fetch `endpoint` through the full resilience pipeline.

        Args:
            endpoint: path relative to the API base, e.g. "/coins/markets"
            params: query parameters
            cache_key: cache identity (defaults to endpoint + params)
            endpoint_class: cache lifetime family (defaults to classify_endpoint)
            prefer_pro: use the pro tier when a key exists and it has budget
            essential: bypass the circuit breaker check
            transform: applied to a successful raw response before caching
            synthesize: last-resort placeholder factory (result is never cached)

        Raises:
            NotFound, RateLimited, NetworkOrTimeout, UpstreamError, Unavailable
        """
        params = dict(params or {})
        cls = EndpointClass(endpoint_class) if endpoint_class is not None else classify_endpoint(endpoint)
        key = cache_key or request_key(endpoint, params)
        self.requests_total += 1

        if self.config.API_DISABLED:
            entry = self.cache.get_any(key)
            if entry is not None:
                return entry.data
            raise Unavailable("upstream API disabled and nothing cached", endpoint=endpoint)

        return await self.coalescer.run(
            f"{key}|{request_key(endpoint, params)}",
            lambda: self._pipeline(endpoint, params, key, cls, prefer_pro, essential, transform, synthesize),
        )

    async def _pipeline(
        self,
        endpoint: str,
        params: Dict[str, Any],
        key: str,
        cls: EndpointClass,
        prefer_pro: bool,
        essential: bool,
        transform: Optional[Callable[[Any], Any]],
        synthesize: Optional[Callable[[], Any]],
    ) -> Any:
        entry = self.cache.get(key)
        if entry is not None:
            return entry.data

        breaker = self.breakers.get(cls)
        if not essential and not breaker.allow_request():
            stale = self.cache.get_stale(key)
            if stale is not None:
                self.stale_served_open_circuit += 1
                log_data.warning(f"STALE SERVED | {key} (circuit {breaker.name} open)")
                return stale.data
            raise Unavailable(f"circuit {breaker.name} open, no usable cache for {key}", endpoint=endpoint)

        # this request carries the single HALF_OPEN trial
        holds_trial = not essential and breaker.current is CircuitState.HALF_OPEN

        async def attempt(tier: Tier, timeout: float) -> Any:
            return await self._attempt(endpoint, params, key, cls, breaker, tier, timeout, transform)

        def may_retry() -> bool:
            # retries only while closed; a HALF_OPEN trial gets exactly one upstream call
            return essential or breaker.current is CircuitState.CLOSED

        tier: Optional[Tier] = None
        try:
            tier = await self._select_tier(endpoint, prefer_pro)
            return await attempt(tier, self.config.REQUEST_TIMEOUT_SEC)
        except NotFound:
            raise
        except MarketDataError as e:
            ctx = FallbackContext(
                endpoint=endpoint,
                cache_key=key,
                tier=getattr(e, "tier", None) or tier or Tier.PUBLIC,
                error=e,
                attempt=attempt,
                acquire=self._acquire,
                stale=lambda: self.cache.get_stale(key),
                record_failure=breaker.record_failure,
                allow=may_retry,
                retry_timeout=self.config.RETRY_TIMEOUT_SEC,
                retry_delay=self.config.RETRY_DELAY_SEC,
                synthesize=synthesize,
                sleep=self._sleep,
            )
            out = await self.fallbacks.run(ctx)
            if ctx.served_by == "synthesize":
                self.synthetic_served += 1
            return out
        finally:
            # no-op once a success or failure was recorded (state left HALF_OPEN)
            if holds_trial:
                breaker.release_trial()

    def _acquire(self, tier: Tier) -> bool:
        if tier is Tier.PRO and not self.config.has_api_key:
            return False
        return self.limiters[tier].try_acquire()

    async def _select_tier(self, endpoint: str, prefer_pro: bool) -> Tier:
        if prefer_pro and self._acquire(Tier.PRO):
            return Tier.PRO
        if self._acquire(Tier.PUBLIC):
            return Tier.PUBLIC

        wait = self.config.RATE_LIMIT_WAIT_SEC
        log_data.warning(f"PUBLIC TIER SATURATED | waiting {wait:.1f}s before {endpoint}")
        await self._sleep(wait)
        if self._acquire(Tier.PUBLIC):
            return Tier.PUBLIC
        raise RateLimited(Tier.PUBLIC, "public tier budget exhausted", endpoint=endpoint, upstream=False)

    async def _attempt(
        self,
        endpoint: str,
        params: Dict[str, Any],
        key: str,
        cls: EndpointClass,
        breaker: CircuitBreaker,
        tier: Tier,
        timeout: float,
        transform: Optional[Callable[[Any], Any]],
    ) -> Any:
        await self.throttle.wait()
        self.network_calls[tier.value] += 1
        try:
            raw = await self.transport.fetch(endpoint, params, tier=tier, timeout=timeout)
        except MarketDataError as e:
            if e.counts_as_failure:
                breaker.record_failure()
            raise
        except Exception as e:
            breaker.record_failure()
            raise UpstreamError(0, f"{e.__class__.__name__}: {e}", endpoint=endpoint) from e

        breaker.record_success()
        data = transform(raw) if transform is not None else raw
        self.cache.put(key, data, cls)
        return data

    # ---------- market list / search ----------

    async def get_top_coins(self, limit: int = 100) -> List[Dict[str, Any]]:
        """Top coins by market cap. Feeds the symbol map."""
        limit = max(1, min(250, int(limit)))
        coins = await self.request(
            "/coins/markets",
            {
                "vs_currency": VS_CURRENCY,
                "order": "market_cap_desc",
                "per_page": limit,
                "page": 1,
                "sparkline": False,
                "price_change_percentage": "24h",
            },
            cache_key=f"markets_top_{limit}",
            endpoint_class=EndpointClass.MARKETS,
            prefer_pro=True,
            essential=True,
        )
        coins = list(coins or [])
        if self.symbols.learn_coins(coins):
            await self.symbols.persist_if_dirty()
        return coins

    async def search_coins(self, query: str) -> List[Dict[str, Any]]:
        q = str(query or "").strip()
        if not q:
            return []
        coins = await self.request(
            "/search",
            {"query": q},
            cache_key=f"search_{q.lower()}",
            endpoint_class=EndpointClass.SEARCH,
            transform=lambda raw: list((raw or {}).get("coins") or []) if isinstance(raw, dict) else [],
        )
        coins = list(coins or [])
        self.symbols.learn_coins(coins)
        return coins

    # ---------- single coin (batched) ----------

    async def _resolve(self, symbol_or_id: str) -> str:
        pid = await self.symbols.resolve(symbol_or_id)
        if not pid:
            raise Unresolvable(str(symbol_or_id))
        return pid

    async def _fetch_coin_one(self, coin_id: str) -> Dict[str, Any]:
        return await self.request(
            f"/coins/{coin_id}",
            COIN_DETAIL_PARAMS,
            cache_key=f"coin_{coin_id}",
            endpoint_class=EndpointClass.COINS,
            prefer_pro=True,
            transform=normalize_coin,
        )

    async def _fetch_coins_many(self, coin_ids: Iterable[str]) -> Dict[str, Dict[str, Any]]:
        ids = sorted(set(coin_ids))
        batch_key = f"coins_batch_{','.join(ids)}"
        rows = await self.request(
            "/coins/markets",
            {
                "vs_currency": VS_CURRENCY,
                "ids": ",".join(ids),
                "order": "market_cap_desc",
                "per_page": len(ids),
                "page": 1,
                "sparkline": False,
                "price_change_percentage": "24h",
            },
            cache_key=batch_key,
            endpoint_class=EndpointClass.COINS,
            prefer_pro=True,
        )
        warm = self.cache.is_fresh(batch_key)
        out: Dict[str, Dict[str, Any]] = {}
        for row in rows or []:
            if not isinstance(row, dict) or not row.get("id"):
                continue
            coin = normalize_coin(row)
            out[coin["id"]] = coin
            if warm:
                self.cache.put(f"coin_{coin['id']}", coin, EndpointClass.COINS)
        self.symbols.learn_coins(out.values())
        return out

    async def get_coin(self, symbol_or_id: str) -> Dict[str, Any]:
        """
        One coin's metadata by symbol ("ETH") or provider id ("ethereum").
        Concurrent lookups inside the batch window share one upstream call.
        """
        pid = await self._resolve(symbol_or_id)
        key = f"coin_{pid}"

        entry = self.cache.get(key)
        if entry is not None:
            return entry.data

        if self.config.API_DISABLED:
            any_entry = self.cache.get_any(key)
            if any_entry is not None:
                return any_entry.data
            raise Unavailable(f"upstream API disabled, no cached coin {pid}")

        try:
            coin = await self.batcher.submit(pid)
        except NotFound:
            raise
        except MarketDataError:
            stale = self.cache.get_stale(key)
            if stale is not None:
                log_data.warning(f"STALE SERVED | {key} after batch failure")
                return stale.data
            raise

        if coin is None:
            raise NotFound(f"no market data for {pid}")
        return coin

    async def get_coins_by_symbols(self, symbols: Iterable[str]) -> Dict[str, Dict[str, Any]]:
        """Concurrent get_coin; keyed by lowercased input, misses omitted."""
        wanted = list(dict.fromkeys(str(s).strip().lower() for s in symbols or [] if str(s).strip()))
        results = await asyncio.gather(*(self.get_coin(s) for s in wanted), return_exceptions=True)
        out: Dict[str, Dict[str, Any]] = {}
        for s, r in zip(wanted, results):
            if isinstance(r, MarketDataError):
                log_data.debug(f"COIN SKIPPED | {s}: {r}")
                continue
            if isinstance(r, BaseException):
                raise r
            out[s] = r
        return out

    async def get_current_price(self, base: str, quote: str = "usd") -> float:
        coin = await self.get_coin(base)
        price = _safe_float(coin.get("current_price"), 0.0)
        q = str(quote or "").strip().lower()
        if q in USD_LIKE:
            return price
        quote_coin = await self.get_coin(q)
        qp = _safe_float(quote_coin.get("current_price"), 0.0)
        return price / qp if qp > 0 else 0.0

    async def get_coin_icon_url(self, symbol: str) -> str:
        try:
            coin = await self.get_coin(symbol)
        except MarketDataError as e:
            log_data.debug(f"ICON FALLBACK | {symbol}: {e}")
            return PLACEHOLDER_ICON
        return coin.get("image") or PLACEHOLDER_ICON

    # ---------- tickers / orderbook ----------

    async def get_coin_tickers(
        self,
        symbol_or_id: str,
        exchange_ids: Optional[Iterable[str]] = None,
    ) -> Dict[str, Any]:
        pid = await self._resolve(symbol_or_id)
        venues = [str(x).strip().lower() for x in exchange_ids or [] if str(x).strip()]
        params = {"exchange_ids": ",".join(venues)} if venues else {}
        return await self.request(
            f"/coins/{pid}/tickers",
            params,
            cache_key=f"tickers_{pid}_{'_'.join(venues)}",
            endpoint_class=EndpointClass.TICKERS,
        )

    async def get_orderbook(self, pair: str, exchange_id: str = "binance", depth: int = 10) -> Dict[str, Any]:
        """
        Orderbook approximation for 'BASE/QUOTE' built from venue tickers.
        Never raises for upstream trouble: falls back to a synthetic book.
        """
        base, quote = split_pair(pair)
        depth = max(1, int(depth))
        venue = str(exchange_id or "binance").strip().lower()
        canonical = f"{base}/{quote}"

        if not base or not quote:
            log_data.warning(f"ORDERBOOK INVALID PAIR | {pair!r}, using synthetic book")
            self.synthetic_served += 1
            return synthetic_orderbook(canonical, depth)

        def build(raw: Any) -> Dict[str, Any]:
            tickers = (raw or {}).get("tickers") if isinstance(raw, dict) else None
            matched = filter_pair_tickers(tickers or [], base, quote, venue)
            if not matched:
                raise NotFound(f"no {canonical} tickers on {venue}")
            return tickers_to_orderbook(matched, depth, seed_text=f"{canonical}:{venue}")

        try:
            pid = await self._resolve(base)
            return await self.request(
                f"/coins/{pid}/tickers",
                {"exchange_ids": venue},
                cache_key=f"orderbook_{canonical}_{venue}_{depth}".lower(),
                endpoint_class=EndpointClass.ORDERBOOK,
                transform=build,
                synthesize=lambda: synthetic_orderbook(canonical, depth),
            )
        except (NotFound, Unresolvable, Unavailable) as e:
            log_data.warning(f"SYNTHETIC SERVED | orderbook {canonical}@{venue}: {e}")
            self.synthetic_served += 1
            return synthetic_orderbook(canonical, depth)

    # ---------- history ----------

    async def get_historical_prices(
        self,
        symbol_or_id: str,
        days: int = 7,
        interval: str = "daily",
    ) -> Dict[str, Any]:
        pid = await self._resolve(symbol_or_id)
        return await self.request(
            f"/coins/{pid}/market_chart",
            {"vs_currency": VS_CURRENCY, "days": int(days), "interval": interval},
            cache_key=f"historical_{pid}_{int(days)}_{interval}",
            endpoint_class=EndpointClass.HISTORY,
        )

    async def get_history_frame(self, symbol_or_id: str, days: int = 7, interval: str = "daily") -> pd.DataFrame:
        return history_frame(await self.get_historical_prices(symbol_or_id, days, interval))

    # ---------- trading pairs ----------

    async def get_trading_pairs(self, exchange_id: str = "binance", limit: int = 20) -> List[Dict[str, Any]]:
        coins = await self.get_top_coins(limit)
        by_symbol = {str(c.get("symbol", "")).upper(): _safe_float(c.get("current_price"), 0.0) for c in coins}

        pairs: List[Dict[str, Any]] = []
        for coin in coins:
            base = str(coin.get("symbol", "")).upper()
            if not base:
                continue
            usd_price = _safe_float(coin.get("current_price"), 0.0)
            change = _safe_float(coin.get("price_change_percentage_24h"), 0.0)
            volume_m = _safe_float(coin.get("total_volume") or coin.get("market_cap"), 0.0) / 1_000_000

            for quote in QUOTE_ASSETS:
                if base == quote:
                    continue
                if quote in ("USDT", "USD"):
                    price = usd_price
                else:
                    qp = by_symbol.get(quote, 0.0)
                    if qp <= 0:
                        continue
                    price = usd_price / qp
                pairs.append({
                    "symbol": f"{base}/{quote}",
                    "base_asset": base,
                    "quote_asset": quote,
                    "price": price,
                    "change_24h": f"{change:+.2f}%",
                    "volume_24h": f"{volume_m:.2f}m",
                    "exchange_id": exchange_id,
                    "price_decimals": 2 if price >= 1 else 8,
                    "quantity_decimals": 8,
                })
        return pairs

    # ---------- admin ----------

    def reset_cache(self) -> int:
        """Drop every cached response. The symbol map survives."""
        return self.cache.reset()

    def reset_circuits(self) -> int:
        return self.breakers.reset_all()

    def get_stats(self) -> Dict[str, Any]:
        return {
            "cache": self.cache.stats(),
            "rate_limits": {t.value: lim.snapshot() for t, lim in self.limiters.items()},
            "network_calls": dict(self.network_calls),
            "requests_total": self.requests_total,
            "circuits": self.breakers.snapshot_all(),
            "coalescer": self.coalescer.stats(),
            "batcher": self.batcher.stats(),
            "symbols": self.symbols.stats(),
            "fallbacks": self.fallbacks.stats(),
            "synthetic_served": self.synthetic_served,
            "stale_served_open_circuit": self.stale_served_open_circuit,
            "api_disabled": self.config.API_DISABLED,
            "pro_tier_configured": self.config.has_api_key,
        }

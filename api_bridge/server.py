# api_bridge/server.py - MARKET ORACLE HTTP BRIDGE - 2026 v1.1
# Exposes the oracle's caller-facing operations to the dashboard frontend.
# Typed oracle failures map onto HTTP status codes; orderbook never fails.

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from market_oracle.config.settings import Config
from market_oracle.data.oracle import MarketDataOracle
from market_oracle.execution.errors import (
    MarketDataError,
    NotFound,
    RateLimited,
    Unavailable,
    Unresolvable,
)
from market_oracle.utils.logging import log_core, setup_logging

load_dotenv()

app = FastAPI(
    title="Market Oracle API Bridge",
    description="Cached, rate-aware market data for the trading dashboard",
    version="1.1.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://127.0.0.1:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ============== Global State ==============

@dataclass
class BridgeState:
    oracle: Optional[MarketDataOracle] = None
    owns_oracle: bool = False
    startup_time: Optional[float] = None

    # Logs (for the frontend)
    logs: List[Dict[str, Any]] = field(default_factory=list)


bridge_state = BridgeState()

MAX_LOGS = 200


def add_log(level: str, message: str):
    """Keep a short ring of bridge events for /api/logs."""
    bridge_state.logs.append({
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "level": level,
        "message": message,
    })
    if len(bridge_state.logs) > MAX_LOGS:
        bridge_state.logs = bridge_state.logs[-MAX_LOGS:]


def get_oracle() -> MarketDataOracle:
    if bridge_state.oracle is None:
        raise HTTPException(status_code=503, detail="Oracle not started")
    return bridge_state.oracle


def _http_error(e: MarketDataError) -> HTTPException:
    if isinstance(e, (NotFound, Unresolvable)):
        status = 404
    elif isinstance(e, RateLimited):
        status = 429
    elif isinstance(e, Unavailable):
        status = 503
    else:
        status = 502
    add_log("warning", f"{e.__class__.__name__}: {e}")
    return HTTPException(status_code=status, detail=f"{e.__class__.__name__}: {e}")


# ============== Pydantic Models ==============

class PriceResponse(BaseModel):
    base: str
    quote: str
    price: float


class OrderbookResponse(BaseModel):
    pair: str
    exchange_id: str
    bids: List[List[str]] = Field(default_factory=list)
    asks: List[List[str]] = Field(default_factory=list)


class ResetResponse(BaseModel):
    success: bool = True
    cleared: int = 0


# ============== Routes ==============

@app.get("/")
async def root():
    return {
        "name": "Market Oracle API Bridge",
        "version": app.version,
        "running": bridge_state.oracle is not None,
    }


@app.get("/api/status")
async def get_status():
    oracle = get_oracle()
    stats = oracle.get_stats()
    return {
        "started_at": bridge_state.startup_time,
        "api_disabled": stats["api_disabled"],
        "pro_tier_configured": stats["pro_tier_configured"],
        "circuits": {name: c["state"] for name, c in stats["circuits"].items()},
        "cache_entries": stats["cache"]["entries"],
    }


@app.get("/api/market/top")
async def top_coins(limit: int = Query(100, ge=1, le=250)):
    try:
        return await get_oracle().get_top_coins(limit)
    except MarketDataError as e:
        raise _http_error(e)


@app.get("/api/market/coin/{symbol}")
async def coin(symbol: str):
    try:
        return await get_oracle().get_coin(symbol)
    except MarketDataError as e:
        raise _http_error(e)


@app.get("/api/market/coins")
async def coins_by_symbols(symbols: str = Query(..., description="comma separated symbols or ids")):
    wanted = [s for s in symbols.split(",") if s.strip()]
    return await get_oracle().get_coins_by_symbols(wanted)


@app.get("/api/market/price/{base}", response_model=PriceResponse)
async def price(base: str, quote: str = "usd"):
    try:
        p = await get_oracle().get_current_price(base, quote)
    except MarketDataError as e:
        raise _http_error(e)
    return PriceResponse(base=base.upper(), quote=quote.upper(), price=p)


@app.get("/api/market/tickers/{symbol}")
async def tickers(symbol: str, exchange_ids: Optional[str] = None):
    venues = [v for v in (exchange_ids or "").split(",") if v.strip()]
    try:
        return await get_oracle().get_coin_tickers(symbol, venues)
    except MarketDataError as e:
        raise _http_error(e)


@app.get("/api/market/orderbook", response_model=OrderbookResponse)
async def orderbook(
    pair: str = Query(..., description="BASE/QUOTE, e.g. BTC/USDT"),
    exchange_id: str = "binance",
    depth: int = Query(10, ge=1, le=100),
):
    try:
        book = await get_oracle().get_orderbook(pair, exchange_id, depth)
    except MarketDataError as e:
        raise _http_error(e)
    return OrderbookResponse(pair=pair.upper(), exchange_id=exchange_id, bids=book["bids"], asks=book["asks"])


@app.get("/api/market/history/{symbol}")
async def history(symbol: str, days: int = Query(7, ge=1, le=365), interval: str = "daily"):
    try:
        return await get_oracle().get_historical_prices(symbol, days, interval)
    except MarketDataError as e:
        raise _http_error(e)


@app.get("/api/market/search")
async def search(q: str = Query(..., min_length=1)):
    try:
        return await get_oracle().search_coins(q)
    except MarketDataError as e:
        raise _http_error(e)


@app.get("/api/market/icon/{symbol}")
async def icon(symbol: str):
    return {"symbol": symbol.upper(), "url": await get_oracle().get_coin_icon_url(symbol)}


@app.get("/api/market/pairs")
async def trading_pairs(exchange_id: str = "binance", limit: int = Query(20, ge=1, le=100)):
    try:
        return await get_oracle().get_trading_pairs(exchange_id, limit)
    except MarketDataError as e:
        raise _http_error(e)


@app.get("/api/market/stats")
async def stats():
    return get_oracle().get_stats()


@app.post("/api/market/cache/reset", response_model=ResetResponse)
async def reset_cache():
    n = get_oracle().reset_cache()
    add_log("info", f"Cache reset ({n} entries)")
    return ResetResponse(cleared=n)


@app.post("/api/market/circuits/reset", response_model=ResetResponse)
async def reset_circuits():
    n = get_oracle().reset_circuits()
    add_log("warning", f"Circuits reset ({n})")
    return ResetResponse(cleared=n)


@app.get("/api/logs")
async def get_logs(limit: int = 100):
    return {"logs": bridge_state.logs[-limit:]}


@app.delete("/api/logs")
async def clear_logs():
    bridge_state.logs = []
    return {"success": True}


# ============== Startup/Shutdown ==============

@app.on_event("startup")
async def startup_event():
    if bridge_state.oracle is None:
        config = Config.from_env()
        setup_logging(config.LOGGING_LEVEL, config.LOG_FILE or None)
        bridge_state.oracle = MarketDataOracle(config)
        bridge_state.owns_oracle = True
    await bridge_state.oracle.start()
    bridge_state.startup_time = datetime.now(timezone.utc).timestamp()
    log_core.info("API BRIDGE STARTED")
    add_log("info", "API Bridge started")


@app.on_event("shutdown")
async def shutdown_event():
    add_log("info", "API Bridge shutting down")
    if bridge_state.oracle is not None and bridge_state.owns_oracle:
        await bridge_state.oracle.close()
        bridge_state.oracle = None
        bridge_state.owns_oracle = False
    log_core.info("API BRIDGE STOPPED")


# ============== Main ==============

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)

# data/fallback.py - MARKET ORACLE - SYNTHETIC & DERIVED BOOKS - 2026 v1.1
# Patch vs v1.0:
# - Deterministic synthetic books: quantities from a numpy Generator seeded by the pair
# - tickers_to_orderbook(): median ticker price as the reference level
# - history_frame(): market_chart payload -> pandas DataFrame

from __future__ import annotations

import zlib
from typing import Any, Dict, List, Optional, Sequence

import numpy as np
import pandas as pd

# Reference prices for synthetic books (USD)
REFERENCE_PRICES: Dict[str, float] = {
    "BTC": 84000.0,
    "XBT": 84000.0,
    "ETH": 3500.0,
    "SOL": 175.0,
    "XRP": 0.48,
    "ADA": 0.38,
    "DOT": 5.8,
    "AVAX": 25.0,
    "MATIC": 0.54,
    "LINK": 15.0,
    "DOGE": 0.08,
}
DEFAULT_REFERENCE_PRICE = 100.0

LEVEL_STEP = 0.001  # 0.1% per level
QTY_MIN = 0.1
QTY_SPAN = 2.0


def _safe_float(x, default: float = 0.0) -> float:
    try:
        v = float(x)
        return default if v != v else v
    except Exception:
        return default


def split_pair(pair: str) -> tuple:
    """'btc/usdt' -> ('BTC', 'USDT'); missing quote -> ('BTC', '')."""
    s = str(pair or "").strip().upper().replace("-", "/").replace("_", "/")
    if "/" not in s:
        return s, ""
    base, _, quote = s.partition("/")
    return base.strip(), quote.strip()


def _seed_for(text: str) -> int:
    return zlib.crc32(str(text or "").upper().encode("utf-8")) & 0xFFFFFFFF


def _fmt_price(p: float) -> str:
    return f"{p:.2f}" if p >= 1.0 else f"{p:.6f}"


def _build_book(reference: float, depth: int, seed: int) -> Dict[str, List[List[str]]]:
    depth = max(0, int(depth))
    rng = np.random.default_rng(seed)
    qty = rng.random(2 * depth) * QTY_SPAN + QTY_MIN
    steps = (np.arange(depth) + 1) * LEVEL_STEP

    bid_px = np.maximum(reference * (1.0 - steps), 0.0)
    ask_px = reference * (1.0 + steps)

    bids = [[_fmt_price(float(p)), f"{float(q):.8f}"] for p, q in zip(bid_px, qty[:depth])]
    asks = [[_fmt_price(float(p)), f"{float(q):.8f}"] for p, q in zip(ask_px, qty[depth:])]

    bids.sort(key=lambda lv: float(lv[0]), reverse=True)
    asks.sort(key=lambda lv: float(lv[0]))
    return {"bids": bids, "asks": asks}


def reference_price(pair: str) -> float:
    base, _ = split_pair(pair)
    return REFERENCE_PRICES.get(base, DEFAULT_REFERENCE_PRICE)


def synthetic_orderbook(pair: str, depth: int = 10) -> Dict[str, List[List[str]]]:
    """
    Plausible placeholder book, same shape as a real one.
    Identical inputs always give identical output.
    """
    return _build_book(reference_price(pair), depth, _seed_for(pair))


def tickers_to_orderbook(
    tickers: Sequence[Dict[str, Any]],
    depth: int = 10,
    seed_text: str = "",
) -> Dict[str, List[List[str]]]:
    """
    Approximate a book from venue tickers: levels spread 0.1% apart around
    the median 'last' price.
    """
    prices = sorted(_safe_float(t.get("last"), 0.0) for t in tickers or [] if isinstance(t, dict))
    prices = [p for p in prices if p > 0]
    median = prices[len(prices) // 2] if prices else 0.0
    return _build_book(median, depth, _seed_for(seed_text or f"{median:.8f}"))


def filter_pair_tickers(
    tickers: Sequence[Dict[str, Any]],
    base: str,
    quote: str,
    exchange_id: str = "",
) -> List[Dict[str, Any]]:
    """Keep tickers matching base/quote. Kraken lists BTC as XBT."""
    b = str(base or "").lower()
    q = str(quote or "").lower()
    kraken = str(exchange_id or "").lower() == "kraken"
    out = []
    for t in tickers or []:
        if not isinstance(t, dict):
            continue
        tb = str(t.get("base", "")).lower()
        tq = str(t.get("target", "")).lower()
        base_ok = tb == b or (kraken and b == "btc" and tb == "xbt")
        if base_ok and tq == q:
            out.append(t)
    return out


def history_frame(payload: Optional[Dict[str, Any]]) -> pd.DataFrame:
    """
    market_chart payload -> DataFrame indexed by UTC timestamp.
    Columns: price, market_cap, volume (missing series become NaN).
    """
    payload = payload or {}
    series = {
        "price": payload.get("prices") or [],
        "market_cap": payload.get("market_caps") or [],
        "volume": payload.get("total_volumes") or [],
    }
    frames = []
    for name, rows in series.items():
        if not rows:
            continue
        df = pd.DataFrame(rows, columns=["ts", name])
        frames.append(df.set_index("ts"))

    if not frames:
        return pd.DataFrame(columns=["price", "market_cap", "volume"], index=pd.DatetimeIndex([], tz="UTC"))

    out = pd.concat(frames, axis=1)
    out = out.reindex(columns=["price", "market_cap", "volume"])
    out.index = pd.to_datetime(out.index, unit="ms", utc=True)
    out.index.name = "timestamp"
    return out.sort_index()

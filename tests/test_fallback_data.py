import pandas as pd
import pytest

from market_oracle.data.fallback import (
    DEFAULT_REFERENCE_PRICE,
    filter_pair_tickers,
    history_frame,
    reference_price,
    split_pair,
    synthetic_orderbook,
    tickers_to_orderbook,
)


@pytest.mark.parametrize(
    "pair, expected",
    [
        ("btc/usdt", ("BTC", "USDT")),
        ("ETH-USD", ("ETH", "USD")),
        ("sol_usdc", ("SOL", "USDC")),
        ("BTC", ("BTC", "")),
    ],
)
def test_split_pair(pair, expected):
    assert split_pair(pair) == expected


class TestSyntheticOrderbook:
    def test_deterministic(self):
        assert synthetic_orderbook("BTC/USDT", 10) == synthetic_orderbook("BTC/USDT", 10)

    def test_different_pairs_differ(self):
        assert synthetic_orderbook("BTC/USDT", 5)["bids"] != synthetic_orderbook("BTC/USD", 5)["bids"]

    def test_shape_and_ordering(self):
        book = synthetic_orderbook("ETH/USDT", 10)
        bids = [float(p) for p, _ in book["bids"]]
        asks = [float(p) for p, _ in book["asks"]]
        assert len(bids) == len(asks) == 10
        assert bids == sorted(bids, reverse=True)
        assert asks == sorted(asks)
        assert bids[0] < 3500.0 < asks[0]
        for _, qty in book["bids"] + book["asks"]:
            assert 0.1 <= float(qty) <= 2.1

    def test_small_prices_keep_six_decimals(self):
        book = synthetic_orderbook("DOGE/USDT", 1)
        assert book["bids"][0][0] == "0.079920"

    def test_unknown_base_uses_default_reference(self):
        assert reference_price("ZZZ/USDT") == DEFAULT_REFERENCE_PRICE


class TestTickerBooks:
    def test_median_last_price_is_the_reference(self):
        tickers = [{"last": 10.0}, {"last": 30.0}, {"last": 20.0}, {"last": None}]
        book = tickers_to_orderbook(tickers, depth=1, seed_text="X/USDT:binance")
        assert book["bids"][0][0] == "19.98"
        assert book["asks"][0][0] == "20.02"

    def test_filter_by_pair(self):
        tickers = [
            {"base": "ETH", "target": "USDT", "last": 1},
            {"base": "ETH", "target": "BTC", "last": 2},
            {"base": "SOL", "target": "USDT", "last": 3},
        ]
        assert filter_pair_tickers(tickers, "eth", "usdt") == [tickers[0]]

    def test_kraken_xbt_counts_as_btc(self):
        tickers = [{"base": "XBT", "target": "USD", "last": 1}]
        assert filter_pair_tickers(tickers, "BTC", "USD", "kraken") == tickers
        assert filter_pair_tickers(tickers, "BTC", "USD", "binance") == []


class TestHistoryFrame:
    def test_columns_and_utc_index(self):
        df = history_frame({
            "prices": [[1700086400000, 2.0], [1700000000000, 1.0]],
            "total_volumes": [[1700000000000, 10.0], [1700086400000, 20.0]],
        })
        assert list(df.columns) == ["price", "market_cap", "volume"]
        assert df["price"].tolist() == [1.0, 2.0]
        assert df["market_cap"].isna().all()
        assert str(df.index.tz) == "UTC"
        assert df.index[0] == pd.Timestamp(1700000000000, unit="ms", tz="UTC")

    def test_empty_payload(self):
        df = history_frame(None)
        assert df.empty
        assert list(df.columns) == ["price", "market_cap", "volume"]

#!/usr/bin/env python3
import tempfile
import threading
import unittest
from pathlib import Path

import numpy as np
import pandas as pd

from algoscan.errors import StoreError
from algoscan.features.market.price_cache import PriceCache, PriceSeries
from algoscan.features.market.schema import insert_metric_rows
from algoscan.features.market.store import MetricStore
from algoscan.features.signals.triggers import (
    Trigger,
    TriggerFetcher,
    group_by_symbol,
    split_range,
    triggers_from_frame,
)
from algoscan.features.algoql.parser import compile_expression

MINUTE = 60_000
T0 = 1_704_067_200_000


def _ts(minute: int) -> int:
    return T0 + minute * MINUTE


def _rows():
    rows = []
    for m in range(10):
        for symbol, close in (("BTC", 40_000.0), ("ETH", 2_000.0), ("MT", 1.0)):
            rows.append(
                {
                    "ts": _ts(m),
                    "symbol": symbol,
                    "exchange": "bin",
                    "c": close + m,
                    "oi_chg_1m": float(m),
                }
            )
    rows.append({"ts": _ts(3), "symbol": "ETH", "exchange": "byb", "c": 2_001.0, "oi_chg_1m": 7.0})
    return rows


class MetricStoreTests(unittest.TestCase):
    def setUp(self):
        repo_root = Path(__file__).resolve().parent
        data_dir = repo_root / "data"
        data_dir.mkdir(parents=True, exist_ok=True)
        self._tmpdir = tempfile.TemporaryDirectory(dir=data_dir)
        self.db_path = Path(self._tmpdir.name) / "metrics.db"
        insert_metric_rows(self.db_path, _rows())
        self.store = MetricStore(self.db_path)

    def tearDown(self):
        self._tmpdir.cleanup()

    def test_list_symbols_excludes_market_total(self):
        self.assertEqual(self.store.list_symbols(), ["BTC", "ETH"])
        self.assertEqual(self.store.list_symbols(exclude=()), ["BTC", "ETH", "MT"])
        self.assertEqual(self.store.list_symbols(exchange="byb"), ["ETH"])

    def test_list_columns(self):
        columns = self.store.list_columns()
        self.assertEqual(columns[:3], ["ts", "symbol", "exchange"])
        self.assertIn("oi_chg_1m", columns)
        self.assertIn("lqs_chg_10m", columns)

    def test_time_bounds(self):
        self.assertEqual(self.store.time_bounds(), (_ts(0), _ts(9)))
        self.assertEqual(self.store.time_bounds("ETH", "byb"), (_ts(3), _ts(3)))
        self.assertEqual(self.store.time_bounds("XRP"), (None, None))

    def test_fetch_series_is_ts_ascending_and_inclusive(self):
        df = self.store.fetch_series("ETH", "bin", _ts(2), _ts(5))
        self.assertEqual(list(df.columns), ["ts", "c"])
        self.assertEqual(df["ts"].tolist(), [_ts(m) for m in range(2, 6)])
        self.assertEqual(df["c"].tolist(), [2_002.0, 2_003.0, 2_004.0, 2_005.0])

    def test_fetch_frame_skips_market_total_unless_named(self):
        df = self.store.fetch_frame(["bin"], ["oi_chg_1m"], _ts(0), _ts(9))
        self.assertNotIn("MT", set(df["symbol"]))
        self.assertEqual(len(df), 20)

        only_mt = self.store.fetch_frame(["bin"], ["oi_chg_1m"], _ts(0), _ts(9), symbols=["MT"])
        self.assertEqual(set(only_mt["symbol"]), {"MT"})

        empty = self.store.fetch_frame(["bin"], ["oi_chg_1m"], _ts(0), _ts(9), symbols=[])
        self.assertTrue(empty.empty)
        self.assertEqual(list(empty.columns), ["ts", "symbol", "exchange", "oi_chg_1m"])

    def test_unknown_columns_are_rejected(self):
        with self.assertRaises(ValueError):
            self.store.fetch_series("ETH", "bin", _ts(0), _ts(1), columns=("ts", "c; DROP TABLE perp_metrics"))

    def test_missing_database_raises_store_error(self):
        store = MetricStore(Path(self._tmpdir.name) / "missing.db")
        with self.assertRaises(StoreError) as ctx:
            store.list_symbols()
        self.assertIn("missing.db", str(ctx.exception))


class CountingStore:
    def __init__(self, store):
        self.store = store
        self.calls = 0
        self._lock = threading.Lock()

    def fetch_series(self, *args, **kwargs):
        with self._lock:
            self.calls += 1
        return self.store.fetch_series(*args, **kwargs)


class PriceCacheTests(unittest.TestCase):
    def setUp(self):
        repo_root = Path(__file__).resolve().parent
        data_dir = repo_root / "data"
        data_dir.mkdir(parents=True, exist_ok=True)
        self._tmpdir = tempfile.TemporaryDirectory(dir=data_dir)
        self.db_path = Path(self._tmpdir.name) / "metrics.db"
        insert_metric_rows(self.db_path, _rows())
        self.store = CountingStore(MetricStore(self.db_path))

    def tearDown(self):
        self._tmpdir.cleanup()

    def test_buckets_are_fetched_once(self):
        cache = PriceCache(self.store, bucket_minutes=5)
        first = cache.series("ETH", "bin", _ts(0), _ts(9))
        calls_after_first = self.store.calls
        second = cache.series("ETH", "bin", _ts(2), _ts(7))

        self.assertEqual(len(first), 10)
        self.assertEqual(second.ts.tolist(), [_ts(m) for m in range(2, 8)])
        self.assertEqual(self.store.calls, calls_after_first)
        self.assertGreaterEqual(len(cache), 2)

    def test_disabled_cache_reads_through(self):
        cache = PriceCache(self.store, enabled=False)
        cache.series("ETH", "bin", _ts(0), _ts(9))
        cache.series("ETH", "bin", _ts(0), _ts(9))
        self.assertEqual(self.store.calls, 2)
        self.assertEqual(len(cache), 0)

    def test_load_many_on_an_executor(self):
        cache = PriceCache(self.store, bucket_minutes=1440)
        fetcher = TriggerFetcher(MetricStore(self.db_path), row_cap=100, fetch_workers=2)
        try:
            loaded = cache.load_many({("ETH", "bin"): (_ts(0), _ts(9)), ("BTC", "bin"): (_ts(2), _ts(4))}, executor=fetcher.pool)
        finally:
            fetcher.close()
        self.assertEqual(set(loaded), {("ETH", "bin"), ("BTC", "bin")})
        self.assertEqual(float(loaded[("BTC", "bin")].close[0]), 40_002.0)
        self.assertEqual(loaded[("BTC", "bin")].ts.tolist(), [_ts(2), _ts(3), _ts(4)])
        self.assertEqual(len(loaded[("ETH", "bin")]), 10)

    def test_price_series_sorts_and_is_read_only(self):
        series = PriceSeries.from_arrays([3, 1, 2, 2], [30.0, 10.0, 20.0, 21.0])
        self.assertEqual(series.ts.tolist(), [1, 2, 3])
        self.assertEqual(series.close[0], 10.0)
        with self.assertRaises(ValueError):
            series.close[0] = 1.0
        with self.assertRaises(ValueError):
            PriceSeries.from_arrays([1, 2], [1.0])
        self.assertTrue(PriceSeries.from_frame(pd.DataFrame()).empty)


class TriggerTests(unittest.TestCase):
    def test_triggers_from_frame_are_distinct_and_sorted(self):
        frame = pd.DataFrame(
            {
                "ts": [_ts(2), _ts(1), _ts(2)],
                "symbol": ["ETH", "BTC", "ETH"],
                "exchange": ["bin", "bin", "bin"],
            }
        )
        self.assertEqual(
            triggers_from_frame(frame),
            [Trigger(_ts(1), "BTC", "bin"), Trigger(_ts(2), "ETH", "bin")],
        )
        self.assertEqual(triggers_from_frame(frame.iloc[0:0]), [])

    def test_group_by_symbol(self):
        grouped = group_by_symbol([Trigger(1, "ETH", "bin"), Trigger(2, "BTC", "bin"), Trigger(3, "ETH", "byb")])
        self.assertEqual(sorted(grouped), ["BTC", "ETH"])
        self.assertEqual(len(grouped["ETH"]), 2)

    def test_split_range_covers_inclusive_range(self):
        chunks = split_range(_ts(0), _ts(10), 4)
        self.assertEqual(chunks[0][0], _ts(0))
        self.assertEqual(chunks[-1][1], _ts(10))
        for (_, hi), (lo, _) in zip(chunks, chunks[1:]):
            self.assertEqual(lo, hi + 1)
        self.assertEqual(split_range(_ts(5), _ts(1), 4), [])

    def test_fetcher_batches_and_expressions(self):
        data_dir = Path(__file__).resolve().parent / "data"
        data_dir.mkdir(parents=True, exist_ok=True)
        with tempfile.TemporaryDirectory(dir=data_dir) as tmp:
            db_path = Path(tmp) / "metrics.db"
            insert_metric_rows(db_path, _rows())
            with TriggerFetcher(MetricStore(db_path), row_cap=100, fetch_workers=3) as fetcher:
                frame = fetcher.fetch_batches(["bin", "byb"], ["oi_chg_1m"], _ts(0), _ts(9), batch_minutes=3)
                expr_triggers = fetcher.fetch_expression(compile_expression("ALL;Long;bin_oi_chg_1m>7 OR byb_oi_chg_1m>5"))
                many = fetcher.fetch_many(
                    [compile_expression("ETH;Long;bin_oi_chg_1m>8"), compile_expression("BTC;Long;bin_oi_chg_1m>8")]
                )

        self.assertEqual(len(frame), 21)
        self.assertTrue(np.all(np.diff(frame["ts"].to_numpy()) >= 0))
        self.assertEqual(
            expr_triggers,
            [
                Trigger(_ts(3), "ETH", "byb"),
                Trigger(_ts(8), "BTC", "bin"),
                Trigger(_ts(8), "ETH", "bin"),
                Trigger(_ts(9), "BTC", "bin"),
                Trigger(_ts(9), "ETH", "bin"),
            ],
        )
        self.assertEqual([len(t) for t in many], [1, 1])


if __name__ == "__main__":
    unittest.main()

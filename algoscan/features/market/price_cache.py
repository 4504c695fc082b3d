from __future__ import annotations

import logging
import threading
from concurrent.futures import Executor
from dataclasses import dataclass
from typing import Mapping, Optional, Sequence

import numpy as np
import pandas as pd

from .store import MetricStore

logger = logging.getLogger(__name__)

MINUTE_MS = 60_000


def _frozen(values: np.ndarray) -> np.ndarray:
    values.setflags(write=False)
    return values


@dataclass(frozen=True, eq=False)
class PriceSeries:
    """
    Close prices for one (symbol, exchange), ts ascending.

    Both arrays are read-only so a series can be shared between threads.
    """
    ts: np.ndarray
    close: np.ndarray

    def __len__(self) -> int:
        return int(self.ts.shape[0])

    @property
    def empty(self) -> bool:
        return len(self) == 0

    @classmethod
    def from_arrays(cls, ts: Sequence[int] | np.ndarray, close: Sequence[float] | np.ndarray) -> "PriceSeries":
        ts_arr = np.asarray(ts, dtype=np.int64)
        close_arr = np.asarray(close, dtype=np.float64)
        if ts_arr.shape != close_arr.shape:
            raise ValueError("ts and close must have the same length")
        if ts_arr.size > 1 and np.any(np.diff(ts_arr) <= 0):
            order = np.argsort(ts_arr, kind="mergesort")
            ts_arr, close_arr = ts_arr[order], close_arr[order]
            keep = np.concatenate(([True], np.diff(ts_arr) > 0))
            ts_arr, close_arr = ts_arr[keep], close_arr[keep]
        return cls(ts=_frozen(ts_arr.copy()), close=_frozen(close_arr.copy()))

    @classmethod
    def from_frame(cls, frame: pd.DataFrame, price_column: str = "c") -> "PriceSeries":
        if frame is None or frame.empty:
            return EMPTY_SERIES
        return cls.from_arrays(frame["ts"].to_numpy(), frame[price_column].to_numpy())

    @classmethod
    def concat(cls, parts: Sequence["PriceSeries"]) -> "PriceSeries":
        parts = [p for p in parts if not p.empty]
        if not parts:
            return EMPTY_SERIES
        if len(parts) == 1:
            return parts[0]
        return cls.from_arrays(
            np.concatenate([p.ts for p in parts]),
            np.concatenate([p.close for p in parts]),
        )

    def between(self, start_ts: int, end_ts: int) -> "PriceSeries":
        """Slice with start_ts <= ts <= end_ts (views, still read-only)."""
        lo = int(np.searchsorted(self.ts, start_ts, side="left"))
        hi = int(np.searchsorted(self.ts, end_ts, side="right"))
        if lo == 0 and hi == len(self):
            return self
        return PriceSeries(ts=self.ts[lo:hi], close=self.close[lo:hi])


EMPTY_SERIES = PriceSeries(
    ts=_frozen(np.empty(0, dtype=np.int64)),
    close=_frozen(np.empty(0, dtype=np.float64)),
)


class PriceCache:
    """
    Shared read-through cache of close prices keyed by (symbol, exchange, bucket).

    A bucket spans ``bucket_minutes`` of wall-clock time aligned to the epoch.
    Populated entries are never replaced or mutated, so readers do not lock.
    Population takes a per-key lock so two workers never fetch the same
    bucket twice while different buckets load in parallel.
    """

    def __init__(self, store: MetricStore, bucket_minutes: int = 1440, enabled: bool = True):
        if bucket_minutes <= 0:
            raise ValueError("bucket_minutes must be positive")
        self.store = store
        self.bucket_ms = int(bucket_minutes) * MINUTE_MS
        self.enabled = enabled
        self._entries: dict[tuple[str, str, int], PriceSeries] = {}
        self._key_locks: dict[tuple[str, str, int], threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def bucket_of(self, ts: int) -> int:
        return int(ts) // self.bucket_ms

    def _lock_for(self, key: tuple[str, str, int]) -> threading.Lock:
        with self._locks_guard:
            lock = self._key_locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._key_locks[key] = lock
            return lock

    def _load_bucket(self, symbol: str, exchange: str, bucket: int) -> PriceSeries:
        start = bucket * self.bucket_ms
        end = start + self.bucket_ms - 1
        frame = self.store.fetch_series(symbol, exchange, start, end, columns=("ts", "c"))
        return PriceSeries.from_frame(frame)

    def get_bucket(self, symbol: str, exchange: str, bucket: int) -> PriceSeries:
        key = (symbol, exchange, int(bucket))
        entry = self._entries.get(key)
        if entry is not None:
            return entry
        with self._lock_for(key):
            entry = self._entries.get(key)
            if entry is None:
                entry = self._load_bucket(symbol, exchange, int(bucket))
                self._entries[key] = entry
                logger.debug("Cached %d prices for %s/%s bucket %d", len(entry), symbol, exchange, bucket)
        return entry

    def series(self, symbol: str, exchange: str, start_ts: int, end_ts: int) -> PriceSeries:
        """Close prices for start_ts <= ts <= end_ts."""
        if end_ts < start_ts:
            return EMPTY_SERIES
        if not self.enabled:
            frame = self.store.fetch_series(symbol, exchange, int(start_ts), int(end_ts), columns=("ts", "c"))
            return PriceSeries.from_frame(frame)

        buckets = range(self.bucket_of(start_ts), self.bucket_of(end_ts) + 1)
        parts = [self.get_bucket(symbol, exchange, b) for b in buckets]
        return PriceSeries.concat(parts).between(int(start_ts), int(end_ts))

    def load_many(
        self,
        ranges: Mapping[tuple[str, str], tuple[int, int]],
        executor: Optional[Executor] = None,
    ) -> dict[tuple[str, str], PriceSeries]:
        """
        Price series for several (symbol, exchange) pairs, each over its own
        inclusive (start_ts, end_ts) range.

        When an executor (the fetch pool) is given the loads run on it.
        """
        if executor is None:
            return {k: self.series(k[0], k[1], lo, hi) for k, (lo, hi) in ranges.items()}
        futures = {k: executor.submit(self.series, k[0], k[1], lo, hi) for k, (lo, hi) in ranges.items()}
        return {k: f.result() for k, f in futures.items()}

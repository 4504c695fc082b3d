from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Iterable, Optional, Sequence

import pandas as pd

from algoscan.features.algoql.compiler import compile_query
from algoscan.features.algoql.parser import SignalExpression
from algoscan.features.market.store import MetricStore

logger = logging.getLogger(__name__)

MINUTE_MS = 60_000


@dataclass(frozen=True, order=True)
class Trigger:
    """A (ts, symbol, exchange) at which a signal fired. Orders by ts first."""
    ts: int
    symbol: str
    exchange: str


def triggers_from_frame(frame: pd.DataFrame) -> list[Trigger]:
    """Distinct triggers from rows carrying ts/symbol/exchange, ts-sorted."""
    if frame is None or frame.empty:
        return []
    keys = frame[["ts", "symbol", "exchange"]].drop_duplicates()
    out = [
        Trigger(int(ts), str(symbol), str(exchange))
        for ts, symbol, exchange in keys.itertuples(index=False, name=None)
    ]
    out.sort()
    return out


def group_by_symbol(triggers: Iterable[Trigger]) -> dict[str, list[Trigger]]:
    grouped: dict[str, list[Trigger]] = {}
    for t in triggers:
        grouped.setdefault(t.symbol, []).append(t)
    return grouped


def split_range(start_ts: int, end_ts: int, batch_minutes: int) -> list[tuple[int, int]]:
    """Inclusive [start, end] chunks of at most batch_minutes each."""
    if end_ts < start_ts:
        return []
    step = max(1, int(batch_minutes)) * MINUTE_MS
    chunks = []
    lo = int(start_ts)
    while lo <= end_ts:
        hi = min(lo + step - 1, int(end_ts))
        chunks.append((lo, hi))
        lo = hi + 1
    return chunks


class TriggerFetcher:
    """
    Runs store reads on a bounded fetch pool.

    The pool is separate from the evaluation pool so store concurrency stays
    capped no matter how many candidates are being evaluated.
    """

    def __init__(self, store: MetricStore, *, row_cap: int, fetch_workers: int = 8):
        self.store = store
        self.row_cap = int(row_cap)
        self.pool = ThreadPoolExecutor(max_workers=max(1, int(fetch_workers)), thread_name_prefix="fetch")

    def close(self) -> None:
        self.pool.shutdown(wait=True)

    def __enter__(self) -> "TriggerFetcher":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def fetch_expression(
        self,
        expr: SignalExpression,
        start_ts: Optional[int] = None,
        end_ts: Optional[int] = None,
    ) -> list[Trigger]:
        query = compile_query(expr, row_cap=self.row_cap, start_ts=start_ts, end_ts=end_ts)
        return triggers_from_frame(self.store.fetch_matching(query))

    def fetch_many(
        self,
        exprs: Sequence[SignalExpression],
        start_ts: Optional[int] = None,
        end_ts: Optional[int] = None,
    ) -> list[list[Trigger]]:
        """Trigger lists for several expressions, in input order."""
        futures = [self.pool.submit(self.fetch_expression, e, start_ts, end_ts) for e in exprs]
        return [f.result() for f in futures]

    def fetch_batches(
        self,
        exchanges: Sequence[str],
        columns: Sequence[str],
        start_ts: int,
        end_ts: int,
        *,
        batch_minutes: int,
        symbols: Optional[Sequence[str]] = None,
    ) -> pd.DataFrame:
        """
        Bulk metric rows for a range, read in parallel time chunks and
        concatenated back in ts order.
        """
        chunks = split_range(start_ts, end_ts, batch_minutes)
        logger.info("Fetching %d batch(es) of %d minutes for %s", len(chunks), batch_minutes, ",".join(exchanges))
        futures = [
            self.pool.submit(self.store.fetch_frame, exchanges, columns, lo, hi, symbols)
            for lo, hi in chunks
        ]
        frames = [f.result() for f in futures]
        frames = [f for f in frames if not f.empty]
        if not frames:
            value_cols = [c for c in columns if c not in ("ts", "symbol", "exchange")]
            return pd.DataFrame(columns=["ts", "symbol", "exchange", *value_cols])
        return pd.concat(frames, ignore_index=True)

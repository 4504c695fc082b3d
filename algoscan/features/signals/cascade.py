"""
Temporal cascade matching for multi-leg (combo) signals.

Given one ts-sorted trigger list per leg, keep the first-leg triggers for which
leg 2 fires strictly later and within the window, then leg 3 strictly after
that leg-2 trigger and within the window of it, and so on. Each step uses a
sorted-index lookup (numpy.searchsorted) instead of scanning.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional, Sequence

import numpy as np

from algoscan.features.market.schema import MARKET_TOTAL_SYMBOL
from .triggers import MINUTE_MS, Trigger, group_by_symbol

_NO_MATCH = np.iinfo(np.int64).max


@dataclass(frozen=True)
class CascadeMatch:
    chain: tuple[Trigger, ...]

    @property
    def origin(self) -> Trigger:
        return self.chain[0]

    @property
    def final(self) -> Trigger:
        return self.chain[-1]

    def trade_symbol(self, broadcast_symbols: Iterable[str] = (MARKET_TOTAL_SYMBOL,)) -> str:
        """Last tradeable symbol in the chain; market-wide legs do not count."""
        broadcast = set(broadcast_symbols)
        for trig in reversed(self.chain):
            if trig.symbol not in broadcast:
                return trig.symbol
        return self.final.symbol

    def trade_trigger(self, broadcast_symbols: Iterable[str] = (MARKET_TOTAL_SYMBOL,)) -> Trigger:
        """Trigger a trade is simulated from: final leg's time, trade symbol."""
        return Trigger(self.final.ts, self.trade_symbol(broadcast_symbols), self.final.exchange)


@dataclass(frozen=True)
class _Pool:
    ts: np.ndarray
    triggers: tuple[Trigger, ...]


def _pool(triggers: Sequence[Trigger]) -> _Pool:
    ordered = tuple(sorted(triggers))
    return _Pool(ts=np.fromiter((t.ts for t in ordered), dtype=np.int64, count=len(ordered)), triggers=ordered)


class _LegIndex:
    def __init__(self, triggers: Sequence[Trigger]):
        self.all = _pool(triggers)
        self.by_symbol = {sym: _pool(items) for sym, items in group_by_symbol(self.all.triggers).items()}


def _earliest_in_window(pool: _Pool, after: np.ndarray, window_ms: int) -> tuple[np.ndarray, np.ndarray]:
    """For each ts in ``after``: (ts of first pool entry in (ts, ts + window], its index)."""
    n = len(pool.triggers)
    pos = np.searchsorted(pool.ts, after, side="right")
    found = pos < n
    cand = np.full(after.shape, _NO_MATCH, dtype=np.int64)
    cand[found] = pool.ts[pos[found]]
    cand[cand > after + window_ms] = _NO_MATCH
    return cand, pos


def _advance(
    current: list[CascadeMatch],
    index: _LegIndex,
    window_ms: int,
    match_by_symbol: bool,
    broadcast: frozenset[str],
) -> list[CascadeMatch]:
    # chains are keyed by their tradeable symbol; market-wide legs do not change it
    groups: dict[Optional[str], list[int]] = {}
    for i, m in enumerate(current):
        key = m.trade_symbol(broadcast) if match_by_symbol else None
        groups.setdefault(key, []).append(i)

    advanced: list[Optional[CascadeMatch]] = [None] * len(current)
    for key, members in groups.items():
        if key is None or key in broadcast:
            pools = [index.all]
        else:
            pools = [index.by_symbol.get(key)] + [index.by_symbol.get(b) for b in sorted(broadcast)]
        after = np.fromiter((current[i].final.ts for i in members), dtype=np.int64, count=len(members))

        best_ts = np.full(after.shape, _NO_MATCH, dtype=np.int64)
        best: list[Optional[Trigger]] = [None] * len(members)
        for pool in pools:
            if pool is None or not pool.triggers:
                continue
            cand, pos = _earliest_in_window(pool, after, window_ms)
            better = cand < best_ts
            for j in np.flatnonzero(better):
                best_ts[j] = cand[j]
                best[j] = pool.triggers[int(pos[j])]

        for j, i in enumerate(members):
            if best[j] is not None:
                advanced[i] = CascadeMatch(current[i].chain + (best[j],))

    return [m for m in advanced if m is not None]


def cascade_match(
    legs: Sequence[Sequence[Trigger]],
    window_minutes: float,
    *,
    match_by_symbol: bool = True,
    broadcast_symbols: Iterable[str] = (MARKET_TOTAL_SYMBOL,),
) -> list[CascadeMatch]:
    """
    Chain leg triggers in order within a time window.

    Args:
        legs: One trigger list per leg (at least two)
        window_minutes: Max gap between consecutive legs
        match_by_symbol: Only advance through the same symbol's triggers.
            Triggers on a broadcast symbol (market totals) chain with any
            symbol and leave the chain on its tradeable symbol. With False
            every trigger of the next leg is eligible.
        broadcast_symbols: Market-wide pseudo symbols

    Returns:
        One CascadeMatch per surviving first-leg trigger, in first-leg order.
        Consecutive chain entries satisfy prev.ts < next.ts <= prev.ts + window.
    """
    if len(legs) < 2:
        raise ValueError("cascade_match needs at least two legs")
    window_ms = int(round(float(window_minutes) * MINUTE_MS))
    if window_ms <= 0:
        raise ValueError("window_minutes must be positive")

    broadcast = frozenset(broadcast_symbols)
    current = [CascadeMatch((t,)) for t in sorted(legs[0])]
    for leg in legs[1:]:
        if not current or not leg:
            return []
        current = _advance(current, _LegIndex(leg), window_ms, match_by_symbol, broadcast)
    return current

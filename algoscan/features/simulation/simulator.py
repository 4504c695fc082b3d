"""
Trade simulation.

Each trigger walks a small state machine:

    SIGNALED -> ENTERED -> TP_HIT | SL_HIT | TIMEOUT -> CLOSED
    SIGNALED -> DROPPED   (no bar within one trade window after the trigger,
                           or no bar in the exit window)

Entry is the first close strictly after the trigger bar. A trigger whose next
bar is more than one trade window away is stale and dropped. Exits are checked on
closes only, over (entry_ts, entry_ts + trade_window]. Take-profit is checked
before stop-loss on the same bar. TP/SL exits fill at their level; a timeout
closes at the last in-window close with whatever move was realised.

Close-only evaluation understates intrabar TP/SL hits compared with real
execution.
"""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Mapping, Optional, Sequence

import numpy as np

from algoscan.features.algoql.parser import Direction
from algoscan.features.market.price_cache import PriceSeries
from algoscan.features.signals.triggers import MINUTE_MS, Trigger

PROFIT_FACTOR_CAP = 999.0


class ExitType(str, Enum):
    TP = "TP"
    SL = "SL"
    TIMEOUT = "TIMEOUT"


class TradeState(str, Enum):
    SIGNALED = "SIGNALED"
    ENTERED = "ENTERED"
    TP_HIT = "TP_HIT"
    SL_HIT = "SL_HIT"
    TIMEOUT = "TIMEOUT"
    CLOSED = "CLOSED"
    DROPPED = "DROPPED"


_EXIT_FOR_STATE = {
    TradeState.TP_HIT: ExitType.TP,
    TradeState.SL_HIT: ExitType.SL,
    TradeState.TIMEOUT: ExitType.TIMEOUT,
}


@dataclass(frozen=True)
class TradeScheme:
    """
    Exit rules for one simulation pass.

    Attributes:
        take_profit_pct: Take-profit distance in percent (1.5 = 1.5%)
        stop_loss_pct: Stop-loss distance in percent
        trade_window_minutes: Max holding time before a timeout exit
        position_value: Notional per trade in dollars
    """
    take_profit_pct: float
    stop_loss_pct: float
    trade_window_minutes: int = 30
    position_value: float = 1000.0

    def __post_init__(self) -> None:
        if self.take_profit_pct <= 0 or self.stop_loss_pct <= 0:
            raise ValueError("take_profit_pct and stop_loss_pct must be positive")
        if self.trade_window_minutes <= 0:
            raise ValueError("trade_window_minutes must be positive")

    @property
    def risk_ratio(self) -> float:
        return self.stop_loss_pct / self.take_profit_pct

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class SimulatedTrade:
    symbol: str
    exchange: str
    entry_ts: int
    entry_price: float
    exit_ts: int
    exit_price: float
    exit_type: ExitType
    pnl: float

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["exit_type"] = self.exit_type.value
        return d


@dataclass(frozen=True)
class TradeStats:
    trade_count: int = 0
    wins: int = 0
    losses: int = 0
    timeouts: int = 0
    win_rate: float = 0.0
    timeout_rate: float = 0.0
    gross_profit: float = 0.0
    gross_loss: float = 0.0
    profit_factor: float = 0.0
    net_pnl: float = 0.0
    avg_pnl: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def profit_factor(gross_profit: float, gross_loss: float) -> float:
    """gross_profit / gross_loss, capped at PROFIT_FACTOR_CAP; 0 when both are 0."""
    if gross_loss <= 0:
        return PROFIT_FACTOR_CAP if gross_profit > 0 else 0.0
    pf = gross_profit / gross_loss
    if math.isinf(pf):
        return PROFIT_FACTOR_CAP
    return min(pf, PROFIT_FACTOR_CAP)


def compute_stats(trades: Sequence[SimulatedTrade]) -> TradeStats:
    if not trades:
        return TradeStats()

    pnls = np.array([t.pnl for t in trades], dtype=np.float64)
    count = len(trades)
    wins = int(np.count_nonzero(pnls > 0))
    losses = int(np.count_nonzero(pnls < 0))
    timeouts = sum(1 for t in trades if t.exit_type is ExitType.TIMEOUT)
    gross_profit = float(pnls[pnls > 0].sum())
    gross_loss = float(-pnls[pnls < 0].sum())
    net = float(pnls.sum())

    return TradeStats(
        trade_count=count,
        wins=wins,
        losses=losses,
        timeouts=timeouts,
        win_rate=wins / count * 100.0,
        timeout_rate=timeouts / count * 100.0,
        gross_profit=gross_profit,
        gross_loss=gross_loss,
        profit_factor=profit_factor(gross_profit, gross_loss),
        net_pnl=net,
        avg_pnl=net / count,
    )


# =============================================================================
# Replay
# =============================================================================

def _first_index(mask: np.ndarray) -> Optional[int]:
    hits = np.flatnonzero(mask)
    return int(hits[0]) if hits.size else None


def replay_trigger(
    trigger: Trigger,
    series: PriceSeries,
    scheme: TradeScheme,
    direction: Direction,
) -> tuple[TradeState, Optional[SimulatedTrade]]:
    """
    Run one trigger through the state machine.

    Returns:
        (terminal state, trade). The state is CLOSED with a trade, or DROPPED
        with None.
    """
    state = TradeState.SIGNALED
    if series is None or series.empty:
        return TradeState.DROPPED, None

    entry_idx = int(np.searchsorted(series.ts, trigger.ts, side="right"))
    if entry_idx >= len(series):
        return TradeState.DROPPED, None
    entry_ts = int(series.ts[entry_idx])
    entry_price = float(series.close[entry_idx])
    window_ms = int(scheme.trade_window_minutes) * MINUTE_MS
    if entry_ts - trigger.ts > window_ms or not entry_price > 0:
        return TradeState.DROPPED, None
    state = TradeState.ENTERED

    window_end = entry_ts + window_ms
    stop = int(np.searchsorted(series.ts, window_end, side="right"))
    ts = series.ts[entry_idx + 1:stop]
    closes = series.close[entry_idx + 1:stop]
    valid = closes > 0
    if not valid.any():
        return TradeState.DROPPED, None

    sign = direction.sign
    tp = scheme.take_profit_pct / 100.0
    sl = scheme.stop_loss_pct / 100.0
    with np.errstate(invalid="ignore"):
        moves = (closes - entry_price) / entry_price * sign

    tp_idx = _first_index(valid & (moves >= tp))
    sl_idx = _first_index(valid & (moves <= -sl))

    if tp_idx is not None and (sl_idx is None or tp_idx <= sl_idx):
        state = TradeState.TP_HIT
        exit_idx = tp_idx
        exit_price = entry_price * (1 + sign * tp)
        pnl = tp * scheme.position_value
    elif sl_idx is not None:
        state = TradeState.SL_HIT
        exit_idx = sl_idx
        exit_price = entry_price * (1 - sign * sl)
        pnl = -sl * scheme.position_value
    else:
        state = TradeState.TIMEOUT
        exit_idx = int(np.flatnonzero(valid)[-1])
        exit_price = float(closes[exit_idx])
        pnl = float(moves[exit_idx]) * scheme.position_value

    trade = SimulatedTrade(
        symbol=trigger.symbol,
        exchange=trigger.exchange,
        entry_ts=entry_ts,
        entry_price=entry_price,
        exit_ts=int(ts[exit_idx]),
        exit_price=float(exit_price),
        exit_type=_EXIT_FOR_STATE[state],
        pnl=float(pnl),
    )
    return TradeState.CLOSED, trade


def simulate(
    triggers: Sequence[Trigger],
    scheme: TradeScheme,
    direction: Direction,
    prices: Mapping[tuple[str, str], PriceSeries],
    *,
    price_exchange: Optional[str] = None,
) -> list[SimulatedTrade]:
    """
    Simulate one trade per trigger. Pure: no I/O, no shared state.

    Args:
        triggers: Signal firings (any order)
        scheme: TP/SL/window/position settings
        direction: Long or Short
        prices: (symbol, exchange) -> PriceSeries
        price_exchange: Price every trade off this exchange instead of the
            trigger's own exchange

    Returns:
        Trades in trigger order. Triggers without forward data are skipped.
    """
    trades: list[SimulatedTrade] = []
    for trig in sorted(triggers):
        key = (trig.symbol, price_exchange or trig.exchange)
        series = prices.get(key)
        state, trade = replay_trigger(trig, series, scheme, direction)
        if state is TradeState.CLOSED and trade is not None:
            trades.append(trade)
    return trades

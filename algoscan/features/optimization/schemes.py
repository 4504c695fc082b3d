"""
Take-profit / stop-loss grid search for one candidate.

Pairs are evaluated conservative-first: highest stop-loss to take-profit
ratio first. With ``prune_conservative`` enabled, a candidate whose first
(most conservative) pair misses the minimum profit factor is abandoned without
simulating the rest. That is a speed heuristic and can miss a candidate whose
only viable scheme is a less conservative one, so it is off by default.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from itertools import product
from typing import Any, Mapping, Optional, Sequence

from algoscan.features.algoql.parser import Direction
from algoscan.features.market.price_cache import PriceSeries
from algoscan.features.signals.triggers import Trigger
from algoscan.features.simulation.simulator import (
    SimulatedTrade,
    TradeScheme,
    TradeStats,
    compute_stats,
    simulate,
)

SCORE_FORMULA = "Score = (WinRate/100 * 30) + (PF * 40) + (min(trades/maxTrades, 1) * 30)"


# =============================================================================
# Configuration
# =============================================================================

@dataclass(frozen=True)
class TradeSettings:
    """
    Scheme grid shared by every candidate of a run.

    Attributes:
        take_profit_pcts: Take-profit levels in percent
        stop_loss_pcts: Stop-loss levels in percent
        trade_window_minutes: Holding time before timeout
        position_value: Notional per trade in dollars
    """
    take_profit_pcts: tuple[float, ...] = (1.0, 1.5, 1.9)
    stop_loss_pcts: tuple[float, ...] = (0.2, 0.4, 0.6)
    trade_window_minutes: int = 30
    position_value: float = 1000.0

    def schemes(self) -> list[TradeScheme]:
        """Every (tp, sl) pair, conservative-first."""
        grid = [
            TradeScheme(
                take_profit_pct=float(tp),
                stop_loss_pct=float(sl),
                trade_window_minutes=int(self.trade_window_minutes),
                position_value=float(self.position_value),
            )
            for tp, sl in product(self.take_profit_pcts, self.stop_loss_pcts)
        ]
        return order_schemes(grid)

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["take_profit_pcts"] = list(self.take_profit_pcts)
        d["stop_loss_pcts"] = list(self.stop_loss_pcts)
        return d


@dataclass(frozen=True)
class ResultConstraints:
    """
    Filters a (candidate, scheme) result must pass to be kept.

    Attributes:
        min_trades: Minimum simulated trades
        max_trades: Maximum simulated trades (also the score's saturation point)
        min_profit_factor: Minimum profit factor
    """
    min_trades: int = 100
    max_trades: int = 1500
    min_profit_factor: float = 3.0

    def trade_count_ok(self, count: int) -> bool:
        return self.min_trades <= count <= self.max_trades

    def passes(self, stats: TradeStats) -> bool:
        return self.trade_count_ok(stats.trade_count) and stats.profit_factor >= self.min_profit_factor

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def order_schemes(schemes: Sequence[TradeScheme]) -> list[TradeScheme]:
    """Sort by descending stop_loss/take_profit ratio. Ties keep input order."""
    return sorted(schemes, key=lambda s: -s.risk_ratio)


def composite_score(stats: TradeStats, max_trades: int) -> float:
    volume = min(stats.trade_count / max_trades, 1.0) if max_trades > 0 else 0.0
    return 30.0 * (stats.win_rate / 100.0) + 40.0 * stats.profit_factor + 30.0 * volume


# =============================================================================
# Search
# =============================================================================

@dataclass
class SchemeEvaluation:
    scheme: TradeScheme
    stats: TradeStats
    passed: bool
    score: Optional[float] = None
    trades: list[SimulatedTrade] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "scheme": self.scheme.to_dict(),
            "stats": self.stats.to_dict(),
            "passed": self.passed,
            "score": self.score,
        }


@dataclass
class SchemeSearch:
    best: Optional[SchemeEvaluation]
    evaluations: list[SchemeEvaluation]
    pruned: bool = False

    @property
    def simulated(self) -> int:
        return len(self.evaluations)


def optimize_schemes(
    triggers: Sequence[Trigger],
    direction: Direction,
    prices: Mapping[tuple[str, str], PriceSeries],
    settings: TradeSettings,
    constraints: ResultConstraints,
    *,
    prune_conservative: bool = False,
    price_exchange: Optional[str] = None,
    keep_trades: bool = False,
) -> SchemeSearch:
    """
    Simulate every scheme of the grid and keep the best-scoring qualifier.

    Args:
        triggers: Trade triggers of one candidate
        direction: Trade direction
        prices: (symbol, exchange) -> PriceSeries covering the triggers
        settings: Scheme grid
        constraints: Trade-count and profit-factor filters
        prune_conservative: Stop after the first scheme if it misses min PF
        price_exchange: Price trades off a single exchange
        keep_trades: Retain individual trades on the best evaluation

    Returns:
        SchemeSearch; ``best`` is None when no scheme qualified.
    """
    evaluations: list[SchemeEvaluation] = []
    best: Optional[SchemeEvaluation] = None
    pruned = False

    for i, scheme in enumerate(settings.schemes()):
        trades = simulate(triggers, scheme, direction, prices, price_exchange=price_exchange)
        stats = compute_stats(trades)
        passed = constraints.passes(stats)
        evaluation = SchemeEvaluation(
            scheme=scheme,
            stats=stats,
            passed=passed,
            score=composite_score(stats, constraints.max_trades) if passed else None,
            trades=trades if keep_trades else [],
        )
        evaluations.append(evaluation)

        if passed and (best is None or evaluation.score > best.score):
            best = evaluation

        if prune_conservative and i == 0 and stats.profit_factor < constraints.min_profit_factor:
            pruned = True
            break

    for evaluation in evaluations:
        if evaluation is not best:
            evaluation.trades = []
    return SchemeSearch(best=best, evaluations=evaluations, pruned=pruned)

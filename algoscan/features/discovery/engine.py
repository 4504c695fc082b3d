"""
Discovery engine: brute-force scans, combo (cascade) tests and single
expression backtests.

Pipeline per candidate:

    triggers -> (cascade match for combos) -> scheme grid search -> result

Concurrency:
- store reads go through the fetch pool owned by TriggerFetcher,
- candidate evaluations run on a separate bounded evaluation pool; at most
  ``2 * eval_workers`` evaluations are queued at any time,
- close prices are shared through a PriceCache,
- per-run counters live on a RunAccumulator, never at module level.

A drain request (SIGINT/SIGTERM through DrainController) stops new
evaluations from being scheduled; in-flight ones finish and the run returns
what it has. Store errors are fatal and propagate.
"""

from __future__ import annotations

import logging
import math
import signal
import threading
import time
from collections import Counter
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from itertools import product
from typing import Any, Callable, Iterable, Iterator, Optional, Sequence, TypeVar

from algoscan.config import Settings
from algoscan.errors import ConfigError, StoreError
from algoscan.features.algoql.parser import ALL_SYMBOLS, Direction, compile_expression, format_expression
from algoscan.features.market.price_cache import PriceCache, PriceSeries
from algoscan.features.market.store import MetricStore
from algoscan.features.optimization.schemes import (
    ResultConstraints,
    TradeSettings,
    optimize_schemes,
)
from algoscan.features.signals.cascade import cascade_match
from algoscan.features.signals.triggers import MINUTE_MS, Trigger, TriggerFetcher
from algoscan.features.simulation.simulator import SimulatedTrade, TradeScheme, TradeStats
from .candidates import (
    Candidate,
    candidate_triggers,
    count_matches,
    generate_candidates,
    passes_prefilter,
)
from .legs import LegVariant, expand_leg

logger = logging.getLogger(__name__)

T = TypeVar("T")
ProgressCallback = Callable[[int, int, str], None]


# =============================================================================
# Results and accounting
# =============================================================================

class Outcome(str, Enum):
    PASSED = "passed"
    INSUFFICIENT_DATA = "insufficient_data"
    NO_SCHEME = "no_scheme"
    PRUNED = "pruned"


@dataclass(frozen=True)
class BacktestResult:
    """
    Best scheme for one candidate or combo.

    Attributes:
        description: Candidate/combo label (legs joined with ' + ')
        direction: Trade direction
        legs: Leg labels in cascade order
        scheme: Winning TP/SL scheme
        stats: Aggregate trade stats under that scheme
        score: Composite score
        trades: Individual trades, only when audit output was requested
        details: Extra identification (exchange, metric, threshold, ...)
    """
    description: str
    direction: Direction
    legs: tuple[str, ...]
    scheme: TradeScheme
    stats: TradeStats
    score: float
    trades: tuple[SimulatedTrade, ...] = ()
    details: dict[str, Any] = field(default_factory=dict, compare=False)


class RunAccumulator:
    """Counters and results for one run. Safe to update from worker threads."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.tested = 0
        self.outcomes: Counter[str] = Counter()
        self.results: list[BacktestResult] = []

    def record(self, outcome: Outcome, result: Optional[BacktestResult] = None) -> None:
        with self._lock:
            self.tested += 1
            self.outcomes[outcome.value] += 1
            if outcome is Outcome.PASSED and result is not None:
                self.results.append(result)

    @property
    def passed(self) -> int:
        return self.outcomes.get(Outcome.PASSED.value, 0)

    def outcome_counts(self) -> dict[str, int]:
        return {o.value: int(self.outcomes.get(o.value, 0)) for o in Outcome}


class DrainController:
    """Graceful-stop flag shared between signal handlers and the scheduler."""

    def __init__(self) -> None:
        self._event = threading.Event()

    @property
    def draining(self) -> bool:
        return self._event.is_set()

    def request(self, reason: str = "drain requested") -> None:
        if not self._event.is_set():
            logger.warning("%s; finishing in-flight evaluations and scheduling no new ones", reason)
        self._event.set()

    @contextmanager
    def handle_signals(self) -> Iterator["DrainController"]:
        """
        Route SIGINT/SIGTERM to ``request`` while the block runs.

        A second SIGINT falls through to KeyboardInterrupt. Outside the main
        thread signal handlers cannot be installed and this is a no-op.
        """
        if threading.current_thread() is not threading.main_thread():
            yield self
            return

        def _handler(signum, frame):
            if signum == signal.SIGINT and self.draining:
                raise KeyboardInterrupt
            self.request(f"Received {signal.Signals(signum).name}")

        previous = {sig: signal.signal(sig, _handler) for sig in (signal.SIGINT, signal.SIGTERM)}
        try:
            yield self
        finally:
            for sig, handler in previous.items():
                signal.signal(sig, handler)


@dataclass
class RunSummary:
    script: str
    config: dict[str, Any]
    accumulator: RunAccumulator
    started_at: datetime
    duration_seconds: float = 0.0
    total_candidates: int = 0
    drained: bool = False
    symbols_label: str = ALL_SYMBOLS
    evaluations: list[dict[str, Any]] = field(default_factory=list)

    @property
    def results(self) -> list[BacktestResult]:
        return self.accumulator.results


# =============================================================================
# Configuration
# =============================================================================

DEFAULT_METRICS: tuple[str, ...] = (
    "oi_chg_1m", "oi_chg_5m", "oi_chg_10m",
    "pfr_chg_1m", "pfr_chg_5m", "pfr_chg_10m",
    "lsr_chg_1m", "lsr_chg_5m", "lsr_chg_10m",
    "rsi60_chg_1m", "rsi60_chg_5m", "rsi60_chg_10m",
    "tbv_chg_1m", "tbv_chg_5m", "tbv_chg_10m",
    "tsv_chg_1m", "tsv_chg_5m", "tsv_chg_10m",
    "lql_chg_1m", "lql_chg_5m", "lql_chg_10m",
    "lqs_chg_1m", "lqs_chg_5m", "lqs_chg_10m",
)

DEFAULT_MAGNITUDES: tuple[float, ...] = (0.5, 1.5, 2.5, 5, 10, 30, 60, 100)
DEFAULT_COMBO_MAGNITUDES: tuple[float, ...] = (0.2, 0.4, 0.7, 1.2, 5, 35, 100)
DEFAULT_COMBO_TRADE = TradeSettings(
    take_profit_pcts=(0.6, 1.3, 1.5),
    stop_loss_pcts=(0.3, 0.5, 0.8),
    trade_window_minutes=60,
    position_value=1000.0,
)
DEFAULT_COMBO_CONSTRAINTS = ResultConstraints(min_trades=90, max_trades=1200, min_profit_factor=2.0)


@dataclass(frozen=True)
class RuntimeOptions:
    """Process-level knobs (from Settings), separate from what a run tests."""
    fetch_workers: int = 8
    eval_workers: int = 8
    row_cap: int = 10000
    batch_size_minutes: int = 1440
    price_cache_bucket_minutes: int = 1440
    enable_price_cache: bool = True

    @classmethod
    def from_settings(cls, settings: Settings) -> "RuntimeOptions":
        return cls(
            fetch_workers=settings.fetch_workers,
            eval_workers=settings.eval_workers,
            row_cap=settings.query_row_cap,
            batch_size_minutes=settings.batch_size_minutes,
            price_cache_bucket_minutes=settings.price_cache_bucket_minutes,
            enable_price_cache=settings.enable_price_cache,
        )


def _symbols_to_json(symbols: str | tuple[str, ...]) -> str | list[str]:
    return symbols if isinstance(symbols, str) else list(symbols)


@dataclass(frozen=True)
class BruteConfig:
    """
    Brute-force single-parameter scan.

    Attributes:
        directions: Directions to test
        exchanges: Exchanges whose rows generate triggers
        metrics: Change columns to scan (e.g. 'oi_chg_1m')
        magnitudes: Threshold magnitudes in percent
        symbols: 'ALL' or explicit symbols
        trade: Scheme grid
        constraints: Result filters
        start_ts / end_ts: Range in epoch ms (None = whole store)
        prune_conservative: Enable conservative-first pruning
        price_exchange: Price trades off one exchange (None = trigger's own)
        include_trades: Keep individual trades for audit output
    """
    directions: tuple[Direction, ...] = (Direction.LONG, Direction.SHORT)
    exchanges: tuple[str, ...] = ("bin",)
    metrics: tuple[str, ...] = DEFAULT_METRICS
    magnitudes: tuple[float, ...] = DEFAULT_MAGNITUDES
    symbols: str | tuple[str, ...] = ALL_SYMBOLS
    trade: TradeSettings = field(default_factory=TradeSettings)
    constraints: ResultConstraints = field(default_factory=ResultConstraints)
    start_ts: Optional[int] = None
    end_ts: Optional[int] = None
    prune_conservative: bool = False
    price_exchange: Optional[str] = None
    include_trades: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "directions": [d.value for d in self.directions],
            "exchanges": list(self.exchanges),
            "metrics": list(self.metrics),
            "magnitudes": list(self.magnitudes),
            "symbols": _symbols_to_json(self.symbols),
            "trade": self.trade.to_dict(),
            "constraints": self.constraints.to_dict(),
            "start_ts": self.start_ts,
            "end_ts": self.end_ts,
            "prune_conservative": self.prune_conservative,
            "price_exchange": self.price_exchange,
            "include_trades": self.include_trades,
        }


@dataclass(frozen=True)
class ComboConfig:
    """
    Combo test: 2-4 legs that must fire in order within the cascade window.

    Legs are AlgoQL text or five-part templates (see legs.py). Every
    combination of leg variants is tested.
    """
    legs: tuple[str, ...]
    directions: tuple[Direction, ...] = (Direction.SHORT,)
    cascade_window_minutes: float = 30
    trade: TradeSettings = field(default_factory=lambda: DEFAULT_COMBO_TRADE)
    constraints: ResultConstraints = field(default_factory=lambda: DEFAULT_COMBO_CONSTRAINTS)
    metrics: tuple[str, ...] = DEFAULT_METRICS
    magnitudes: tuple[float, ...] = DEFAULT_COMBO_MAGNITUDES
    trade_symbols: str | tuple[str, ...] = ALL_SYMBOLS
    match_by_symbol: bool = True
    price_exchange: Optional[str] = "bin"
    start_ts: Optional[int] = None
    end_ts: Optional[int] = None
    prune_conservative: bool = False
    include_trades: bool = False

    def __post_init__(self) -> None:
        if not 2 <= len(self.legs) <= 4:
            raise ConfigError(f"A combo needs 2-4 legs, got {len(self.legs)}")
        if self.cascade_window_minutes <= 0:
            raise ConfigError("cascade_window_minutes must be positive")

    def to_dict(self) -> dict[str, Any]:
        return {
            "legs": list(self.legs),
            "directions": [d.value for d in self.directions],
            "cascade_window_minutes": self.cascade_window_minutes,
            "trade": self.trade.to_dict(),
            "constraints": self.constraints.to_dict(),
            "metrics": list(self.metrics),
            "magnitudes": list(self.magnitudes),
            "trade_symbols": _symbols_to_json(self.trade_symbols),
            "match_by_symbol": self.match_by_symbol,
            "price_exchange": self.price_exchange,
            "start_ts": self.start_ts,
            "end_ts": self.end_ts,
            "prune_conservative": self.prune_conservative,
            "include_trades": self.include_trades,
        }


@dataclass(frozen=True)
class BacktestConfig:
    """Backtest of one AlgoQL expression across the scheme grid."""
    expression: str
    trade: TradeSettings = field(default_factory=TradeSettings)
    constraints: ResultConstraints = field(
        default_factory=lambda: ResultConstraints(min_trades=1, max_trades=1_000_000, min_profit_factor=0.0)
    )
    start_ts: Optional[int] = None
    end_ts: Optional[int] = None
    row_cap: Optional[int] = None
    price_exchange: Optional[str] = None
    include_trades: bool = False

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["trade"] = self.trade.to_dict()
        d["constraints"] = self.constraints.to_dict()
        return d


# =============================================================================
# Shared helpers
# =============================================================================

def _run_bounded(
    items: Iterable[T],
    evaluate: Callable[[T], list[tuple[Outcome, Optional[BacktestResult]]]],
    *,
    workers: int,
    accumulator: RunAccumulator,
    drain: DrainController,
    total: int,
    progress_callback: Optional[ProgressCallback] = None,
) -> bool:
    """
    Evaluate items on a bounded pool, feeding outcomes into the accumulator.

    Returns True when the run stopped early because of a drain request.
    """
    max_in_flight = max(1, workers) * 2
    iterator = iter(items)
    exhausted = False
    done_count = 0
    in_flight: set = set()

    with ThreadPoolExecutor(max_workers=max(1, workers), thread_name_prefix="eval") as pool:
        try:
            while True:
                while not exhausted and not drain.draining and len(in_flight) < max_in_flight:
                    try:
                        item = next(iterator)
                    except StopIteration:
                        exhausted = True
                        break
                    in_flight.add(pool.submit(evaluate, item))

                if not in_flight:
                    break

                finished, in_flight = wait(in_flight, return_when=FIRST_COMPLETED)
                for fut in finished:
                    for outcome, result in fut.result():
                        accumulator.record(outcome, result)
                    done_count += 1
                    if progress_callback:
                        progress_callback(done_count, total, f"{accumulator.passed} passed")
        except BaseException:
            for fut in in_flight:
                fut.cancel()
            raise

    return drain.draining and not exhausted


def _resolve_range(store: MetricStore, start_ts: Optional[int], end_ts: Optional[int]) -> tuple[Optional[int], Optional[int]]:
    if start_ts is not None and end_ts is not None:
        return int(start_ts), int(end_ts)
    lo, hi = store.time_bounds()
    if lo is None:
        return None, None
    return (int(start_ts) if start_ts is not None else lo), (int(end_ts) if end_ts is not None else hi)


def _load_prices(
    cache: PriceCache,
    fetcher: TriggerFetcher,
    triggers: Sequence[Trigger],
    trade_window_minutes: int,
    price_exchange: Optional[str],
) -> dict[tuple[str, str], PriceSeries]:
    """
    Close prices covering each trigger's entry and exit window.

    The simulator only enters within one trade window of the trigger, so
    trigger + 2 windows covers every entry and exit bar.
    """
    reach = 2 * int(trade_window_minutes) * MINUTE_MS
    ranges: dict[tuple[str, str], list[int]] = {}
    for t in triggers:
        key = (t.symbol, price_exchange or t.exchange)
        lo_hi = ranges.get(key)
        if lo_hi is None:
            ranges[key] = [t.ts, t.ts]
        else:
            lo_hi[0] = min(lo_hi[0], t.ts)
            lo_hi[1] = max(lo_hi[1], t.ts)

    return cache.load_many({key: (lo, hi + reach) for key, (lo, hi) in ranges.items()}, executor=fetcher.pool)


@dataclass
class _Context:
    store: MetricStore
    fetcher: TriggerFetcher
    cache: PriceCache


def _optimize(
    ctx: _Context,
    triggers: Sequence[Trigger],
    direction: Direction,
    legs: tuple[str, ...],
    *,
    trade: TradeSettings,
    constraints: ResultConstraints,
    prune_conservative: bool,
    price_exchange: Optional[str],
    include_trades: bool,
    details: dict[str, Any],
) -> tuple[Outcome, Optional[BacktestResult]]:
    prices = _load_prices(ctx.cache, ctx.fetcher, triggers, trade.trade_window_minutes, price_exchange)
    search = optimize_schemes(
        triggers,
        direction,
        prices,
        trade,
        constraints,
        prune_conservative=prune_conservative,
        price_exchange=price_exchange,
        keep_trades=include_trades,
    )
    if search.best is None:
        return (Outcome.PRUNED if search.pruned else Outcome.NO_SCHEME), None

    best = search.best
    result = BacktestResult(
        description=" + ".join(legs),
        direction=direction,
        legs=legs,
        scheme=best.scheme,
        stats=best.stats,
        score=float(best.score or 0.0),
        trades=tuple(best.trades),
        details=details,
    )
    return Outcome.PASSED, result


def _make_context(store: MetricStore, runtime: RuntimeOptions) -> _Context:
    fetcher = TriggerFetcher(store, row_cap=runtime.row_cap, fetch_workers=runtime.fetch_workers)
    cache = PriceCache(store, bucket_minutes=runtime.price_cache_bucket_minutes, enabled=runtime.enable_price_cache)
    return _Context(store=store, fetcher=fetcher, cache=cache)


# =============================================================================
# Brute-force scan
# =============================================================================

def run_brute(
    store: MetricStore,
    config: BruteConfig,
    *,
    runtime: Optional[RuntimeOptions] = None,
    drain: Optional[DrainController] = None,
    progress_callback: Optional[ProgressCallback] = None,
) -> RunSummary:
    """
    Scan every single-parameter candidate.

    Args:
        store: Metric store
        config: What to scan
        runtime: Worker pools, row cap, batching
        drain: Shared drain flag (a private one is used if omitted)
        progress_callback: Optional callback(current, total, status_msg)

    Returns:
        RunSummary with one result per passing candidate
    """
    runtime = runtime or RuntimeOptions()
    drain = drain or DrainController()
    started = datetime.now(timezone.utc)
    t0 = time.monotonic()
    accumulator = RunAccumulator()

    candidates = generate_candidates(config.directions, config.exchanges, config.metrics, config.magnitudes)
    summary = RunSummary(
        script="brute",
        config=config.to_dict(),
        accumulator=accumulator,
        started_at=started,
        total_candidates=len(candidates),
        symbols_label=ALL_SYMBOLS if config.symbols == ALL_SYMBOLS else ",".join(config.symbols),
    )

    ctx = _make_context(store, runtime)
    try:
        start_ts, end_ts = _resolve_range(store, config.start_ts, config.end_ts)
        if start_ts is None:
            logger.warning("Metric store is empty; nothing to scan")
            for _ in candidates:
                accumulator.record(Outcome.INSUFFICIENT_DATA)
            summary.duration_seconds = time.monotonic() - t0
            return summary

        symbols = None if config.symbols == ALL_SYMBOLS else list(config.symbols)
        frame = ctx.fetcher.fetch_batches(
            config.exchanges,
            list(dict.fromkeys(config.metrics)),
            start_ts,
            end_ts,
            batch_minutes=runtime.batch_size_minutes,
            symbols=symbols,
        )
        logger.info("Loaded %d metric rows; evaluating %d candidates", len(frame), len(candidates))

        def evaluate(candidate: Candidate) -> list[tuple[Outcome, Optional[BacktestResult]]]:
            count = count_matches(candidate, frame)
            if not passes_prefilter(count, config.constraints):
                return [(Outcome.INSUFFICIENT_DATA, None)]
            triggers = candidate_triggers(candidate, frame)
            try:
                return [
                    _optimize(
                        ctx,
                        triggers,
                        candidate.direction,
                        (candidate.label,),
                        trade=config.trade,
                        constraints=config.constraints,
                        prune_conservative=config.prune_conservative,
                        price_exchange=config.price_exchange,
                        include_trades=config.include_trades,
                        details={**candidate.to_dict(), "matching_rows": count},
                    )
                ]
            except StoreError as exc:
                logger.error("Store error while evaluating %s (%s): %s", candidate.label, candidate.direction.value, exc)
                raise

        summary.drained = _run_bounded(
            candidates,
            evaluate,
            workers=runtime.eval_workers,
            accumulator=accumulator,
            drain=drain,
            total=len(candidates),
            progress_callback=progress_callback,
        )
    finally:
        ctx.fetcher.close()

    summary.duration_seconds = time.monotonic() - t0
    logger.info(
        "Brute scan done: %d tested, %d passed in %.1fs",
        accumulator.tested,
        accumulator.passed,
        summary.duration_seconds,
    )
    return summary


# =============================================================================
# Combo (cascade) test
# =============================================================================

def expand_combo_legs(
    store: MetricStore,
    config: ComboConfig,
) -> list[list[LegVariant]]:
    symbols_cache: list[list[str]] = []

    def list_symbols() -> list[str]:
        if not symbols_cache:
            symbols_cache.append(store.list_symbols())
        return symbols_cache[0]

    expanded = []
    for leg in config.legs:
        variants = expand_leg(
            leg,
            metrics=config.metrics,
            magnitudes=config.magnitudes,
            list_symbols=list_symbols,
        )
        if not variants:
            raise ConfigError(f"Leg {leg!r} expanded to nothing")
        expanded.append(variants)
    return expanded


def run_combo(
    store: MetricStore,
    config: ComboConfig,
    *,
    runtime: Optional[RuntimeOptions] = None,
    drain: Optional[DrainController] = None,
    progress_callback: Optional[ProgressCallback] = None,
) -> RunSummary:
    """
    Test every combination of leg variants.

    Each combination is cascade-matched; trades are simulated from the final
    leg's trigger on the chain's trade symbol. Combinations whose matched
    trigger count falls outside [min_trades, max_trades] are not simulated.
    """
    runtime = runtime or RuntimeOptions()
    drain = drain or DrainController()
    started = datetime.now(timezone.utc)
    t0 = time.monotonic()
    accumulator = RunAccumulator()

    leg_variants = expand_combo_legs(store, config)
    total = math.prod(len(v) for v in leg_variants)
    summary = RunSummary(
        script="combo",
        config=config.to_dict(),
        accumulator=accumulator,
        started_at=started,
        total_candidates=total * len(config.directions),
        symbols_label=ALL_SYMBOLS if config.trade_symbols == ALL_SYMBOLS else ",".join(config.trade_symbols),
    )
    trade_symbols = None if config.trade_symbols == ALL_SYMBOLS else set(config.trade_symbols)

    ctx = _make_context(store, runtime)
    try:
        start_ts, end_ts = _resolve_range(store, config.start_ts, config.end_ts)

        unique: dict[str, LegVariant] = {}
        for variants in leg_variants:
            for v in variants:
                unique.setdefault(v.label, v)
        logger.info("Fetching triggers for %d leg variant(s); %d combination(s) to test", len(unique), total)
        if start_ts is None:
            lists = [[] for _ in unique]
        else:
            lists = ctx.fetcher.fetch_many([v.expression for v in unique.values()], start_ts, end_ts)
        triggers_by_label = dict(zip(unique.keys(), lists))

        def evaluate(combo: tuple[LegVariant, ...]) -> list[tuple[Outcome, Optional[BacktestResult]]]:
            legs = tuple(v.label for v in combo)
            matches = cascade_match(
                [triggers_by_label[label] for label in legs],
                config.cascade_window_minutes,
                match_by_symbol=config.match_by_symbol,
            )
            trade_triggers = sorted({m.trade_trigger() for m in matches})
            if trade_symbols is not None:
                trade_triggers = [t for t in trade_triggers if t.symbol in trade_symbols]
            if not config.constraints.trade_count_ok(len(trade_triggers)):
                return [(Outcome.INSUFFICIENT_DATA, None) for _ in config.directions]

            out = []
            for direction in config.directions:
                try:
                    out.append(
                        _optimize(
                            ctx,
                            trade_triggers,
                            direction,
                            legs,
                            trade=config.trade,
                            constraints=config.constraints,
                            prune_conservative=config.prune_conservative,
                            price_exchange=config.price_exchange,
                            include_trades=config.include_trades,
                            details={"cascade_matches": len(matches)},
                        )
                    )
                except StoreError as exc:
                    logger.error("Store error while evaluating combo %s (%s): %s", " + ".join(legs), direction.value, exc)
                    raise
            return out

        summary.drained = _run_bounded(
            product(*leg_variants),
            evaluate,
            workers=runtime.eval_workers,
            accumulator=accumulator,
            drain=drain,
            total=total,
            progress_callback=progress_callback,
        )
    finally:
        ctx.fetcher.close()

    summary.duration_seconds = time.monotonic() - t0
    logger.info(
        "Combo test done: %d tested, %d passed in %.1fs",
        accumulator.tested,
        accumulator.passed,
        summary.duration_seconds,
    )
    return summary


# =============================================================================
# Single expression backtest
# =============================================================================

def run_expression_backtest(
    store: MetricStore,
    config: BacktestConfig,
    *,
    runtime: Optional[RuntimeOptions] = None,
    progress_callback: Optional[ProgressCallback] = None,
) -> RunSummary:
    """
    Backtest one AlgoQL expression over the whole scheme grid.

    Every simulated scheme is kept on ``summary.evaluations``; the best
    qualifying one becomes the single result.

    Raises:
        ParseError: If the expression does not compile
        StoreError: If the store cannot be read
    """
    runtime = runtime or RuntimeOptions()
    expr = compile_expression(config.expression)
    started = datetime.now(timezone.utc)
    t0 = time.monotonic()
    accumulator = RunAccumulator()
    summary = RunSummary(
        script="backtest",
        config=config.to_dict(),
        accumulator=accumulator,
        started_at=started,
        total_candidates=1,
        symbols_label=expr.symbols_label,
    )

    if config.row_cap is not None:
        runtime = RuntimeOptions(**{**asdict(runtime), "row_cap": int(config.row_cap)})
    ctx = _make_context(store, runtime)
    try:
        if progress_callback:
            progress_callback(0, 1, "Fetching triggers")
        start_ts, end_ts = _resolve_range(store, config.start_ts, config.end_ts)
        triggers = [] if start_ts is None else ctx.fetcher.fetch_expression(expr, start_ts, end_ts)
        logger.info("Expression %s fired %d time(s)", format_expression(expr), len(triggers))

        label = format_expression(expr).split(";", 2)[2]
        prices = _load_prices(ctx.cache, ctx.fetcher, triggers, config.trade.trade_window_minutes, config.price_exchange)
        search = optimize_schemes(
            triggers,
            expr.direction,
            prices,
            config.trade,
            config.constraints,
            price_exchange=config.price_exchange,
            keep_trades=config.include_trades,
        )
        summary.evaluations = [e.to_dict() for e in search.evaluations]
        if search.best is None:
            outcome = Outcome.INSUFFICIENT_DATA if not triggers else Outcome.NO_SCHEME
            accumulator.record(outcome)
        else:
            best = search.best
            accumulator.record(
                Outcome.PASSED,
                BacktestResult(
                    description=label,
                    direction=expr.direction,
                    legs=(label,),
                    scheme=best.scheme,
                    stats=best.stats,
                    score=float(best.score or 0.0),
                    trades=tuple(best.trades),
                    details={"triggers": len(triggers)},
                ),
            )
        if progress_callback:
            progress_callback(1, 1, "Backtest complete")
    finally:
        ctx.fetcher.close()

    summary.duration_seconds = time.monotonic() - t0
    return summary

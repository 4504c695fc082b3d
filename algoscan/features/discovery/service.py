from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Optional

import pandas as pd

from algoscan.errors import ConfigError
from algoscan.features.algoql.parser import ALL_SYMBOLS
from algoscan.features.market.schema import EXCHANGES
from algoscan.features.market.store import MetricStore
from algoscan.features.optimization.schemes import ResultConstraints, TradeSettings
from algoscan.features.report.reporter import ReportSettings, build_report
from .candidates import parse_directions, split_metric
from .engine import (
    BacktestConfig,
    BruteConfig,
    ComboConfig,
    DEFAULT_COMBO_CONSTRAINTS,
    DEFAULT_COMBO_MAGNITUDES,
    DEFAULT_COMBO_TRADE,
    DEFAULT_METRICS,
    DrainController,
    RuntimeOptions,
    RunSummary,
    run_brute,
    run_combo,
    run_expression_backtest,
)

ProgressFn = Callable[[int, int, Optional[str]], None]
LogFn = Callable[[str, str], None]


# =============================================================================
# Payload parsing
# =============================================================================

def _parse_ts(value: Any) -> Optional[int]:
    """Epoch milliseconds from an int/float (ms) or anything pandas can parse."""
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return int(value)
    ts = pd.Timestamp(value)
    if ts.tzinfo is None:
        ts = ts.tz_localize("UTC")
    return int(ts.value // 1_000_000)


def _float_tuple(values: Any, name: str) -> tuple[float, ...]:
    if isinstance(values, (int, float)):
        values = [values]
    out = tuple(float(v) for v in (values or []))
    if not out:
        raise ConfigError(f"{name} must not be empty")
    return out


def _symbols(value: Any) -> str | tuple[str, ...]:
    if value is None or (isinstance(value, str) and value.strip().upper() in (ALL_SYMBOLS, "")):
        return ALL_SYMBOLS
    if isinstance(value, str):
        value = value.split(",")
    symbols = tuple(str(s).strip().upper() for s in value if str(s).strip())
    if not symbols:
        raise ConfigError("symbols must not be empty")
    return symbols


def _exchanges(value: Any) -> tuple[str, ...]:
    if isinstance(value, str):
        value = list(EXCHANGES) if value.lower() == "all" else [value]
    out = tuple(str(v).strip().lower() for v in (value or []))
    unknown = [e for e in out if e not in EXCHANGES]
    if not out or unknown:
        raise ConfigError(f"exchanges must be a non-empty subset of {list(EXCHANGES)}, got {list(out)}")
    return out


def trade_settings_from_payload(payload: dict[str, Any], defaults: TradeSettings) -> TradeSettings:
    d = payload or {}
    settings = TradeSettings(
        take_profit_pcts=_float_tuple(d.get("take_profit_pcts", defaults.take_profit_pcts), "take_profit_pcts"),
        stop_loss_pcts=_float_tuple(d.get("stop_loss_pcts", defaults.stop_loss_pcts), "stop_loss_pcts"),
        trade_window_minutes=int(d.get("trade_window_minutes", defaults.trade_window_minutes)),
        position_value=float(d.get("position_value", defaults.position_value)),
    )
    if any(v <= 0 for v in settings.take_profit_pcts + settings.stop_loss_pcts):
        raise ConfigError("take-profit and stop-loss levels must be positive")
    if settings.trade_window_minutes <= 0 or settings.position_value <= 0:
        raise ConfigError("trade_window_minutes and position_value must be positive")
    return settings


def constraints_from_payload(payload: dict[str, Any], defaults: ResultConstraints) -> ResultConstraints:
    d = payload or {}
    constraints = ResultConstraints(
        min_trades=int(d.get("min_trades", defaults.min_trades)),
        max_trades=int(d.get("max_trades", defaults.max_trades)),
        min_profit_factor=float(d.get("min_profit_factor", defaults.min_profit_factor)),
    )
    if constraints.min_trades < 0 or constraints.max_trades < constraints.min_trades:
        raise ConfigError("constraints need 0 <= min_trades <= max_trades")
    return constraints


def report_settings_from_payload(payload: dict[str, Any]) -> ReportSettings:
    d = (payload or {}).get("output") or {}
    return ReportSettings(
        sort_by=str(d.get("sort_by", "profit_factor")),
        top_results=int(d.get("top_results", 20)),
        list_results=int(d.get("list_results", 40)),
    )


def _wrap(builder: Callable[[dict[str, Any]], Any], payload: dict[str, Any]) -> Any:
    try:
        return builder(payload or {})
    except ConfigError:
        raise
    except (KeyError, TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid configuration: {exc}") from exc


def brute_config_from_payload(payload: dict[str, Any]) -> BruteConfig:
    def build(p: dict[str, Any]) -> BruteConfig:
        defaults = BruteConfig()
        metrics = tuple(p.get("metrics") or defaults.metrics)
        for m in metrics:
            split_metric(m)
        return BruteConfig(
            directions=parse_directions(p.get("directions", "Both")),
            exchanges=_exchanges(p.get("exchanges", defaults.exchanges)),
            metrics=metrics,
            magnitudes=_float_tuple(p.get("magnitudes", defaults.magnitudes), "magnitudes"),
            symbols=_symbols(p.get("symbols")),
            trade=trade_settings_from_payload(p.get("trade") or {}, defaults.trade),
            constraints=constraints_from_payload(p.get("constraints") or {}, defaults.constraints),
            start_ts=_parse_ts(p.get("start_ts")),
            end_ts=_parse_ts(p.get("end_ts")),
            prune_conservative=bool(p.get("prune_conservative", False)),
            price_exchange=p.get("price_exchange"),
            include_trades=bool(p.get("include_trades", False)),
        )

    return _wrap(build, payload)


def combo_config_from_payload(payload: dict[str, Any]) -> ComboConfig:
    def build(p: dict[str, Any]) -> ComboConfig:
        legs = tuple(str(leg) for leg in (p.get("legs") or []) if str(leg).strip())
        return ComboConfig(
            legs=legs,
            directions=parse_directions(p.get("directions", "Short")),
            cascade_window_minutes=float(p.get("cascade_window_minutes", 30)),
            trade=trade_settings_from_payload(p.get("trade") or {}, DEFAULT_COMBO_TRADE),
            constraints=constraints_from_payload(p.get("constraints") or {}, DEFAULT_COMBO_CONSTRAINTS),
            metrics=tuple(p.get("metrics") or DEFAULT_METRICS),
            magnitudes=_float_tuple(p.get("magnitudes", DEFAULT_COMBO_MAGNITUDES), "magnitudes"),
            trade_symbols=_symbols(p.get("trade_symbols")),
            match_by_symbol=bool(p.get("match_by_symbol", True)),
            price_exchange=p.get("price_exchange", "bin"),
            start_ts=_parse_ts(p.get("start_ts")),
            end_ts=_parse_ts(p.get("end_ts")),
            prune_conservative=bool(p.get("prune_conservative", False)),
            include_trades=bool(p.get("include_trades", False)),
        )

    return _wrap(build, payload)


def backtest_config_from_payload(payload: dict[str, Any]) -> BacktestConfig:
    def build(p: dict[str, Any]) -> BacktestConfig:
        expression = p.get("expression")
        if not expression:
            raise ConfigError("expression is required")
        defaults = BacktestConfig(expression=str(expression))
        row_cap = p.get("row_cap")
        return BacktestConfig(
            expression=str(expression),
            trade=trade_settings_from_payload(p.get("trade") or {}, defaults.trade),
            constraints=constraints_from_payload(p.get("constraints") or {}, defaults.constraints),
            start_ts=_parse_ts(p.get("start_ts")),
            end_ts=_parse_ts(p.get("end_ts")),
            row_cap=int(row_cap) if row_cap is not None else None,
            price_exchange=p.get("price_exchange"),
            include_trades=bool(p.get("include_trades", False)),
        )

    return _wrap(build, payload)


# =============================================================================
# Services
# =============================================================================

def _noop_progress(current: int, total: int, message: Optional[str]) -> None:
    return None


def _noop_log(level: str, message: str) -> None:
    return None


def _throttled(report_progress: ProgressFn) -> Callable[[int, int, str], None]:
    def _progress(current: int, total: int, message: str) -> None:
        step = max(1, total // 100)
        if current == total or current % step == 0:
            report_progress(int(current), int(total), message)

    return _progress


@dataclass(frozen=True)
class BruteService:
    store: MetricStore
    runtime: RuntimeOptions = RuntimeOptions()

    def run(
        self,
        payload: dict[str, Any],
        *,
        report_progress: ProgressFn = _noop_progress,
        log: LogFn = _noop_log,
        drain: Optional[DrainController] = None,
    ) -> dict[str, Any]:
        config = brute_config_from_payload(payload)
        report_settings = report_settings_from_payload(payload)
        log("info", f"Starting brute scan over {len(config.metrics)} metric(s) on {','.join(config.exchanges)}")
        summary = run_brute(
            self.store,
            config,
            runtime=self.runtime,
            drain=drain,
            progress_callback=_throttled(report_progress),
        )
        return _finish(summary, report_settings, log)


@dataclass(frozen=True)
class ComboService:
    store: MetricStore
    runtime: RuntimeOptions = RuntimeOptions()

    def run(
        self,
        payload: dict[str, Any],
        *,
        report_progress: ProgressFn = _noop_progress,
        log: LogFn = _noop_log,
        drain: Optional[DrainController] = None,
    ) -> dict[str, Any]:
        config = combo_config_from_payload(payload)
        report_settings = report_settings_from_payload(payload)
        log("info", f"Starting combo test with {len(config.legs)} legs, window {config.cascade_window_minutes}m")
        summary = run_combo(
            self.store,
            config,
            runtime=self.runtime,
            drain=drain,
            progress_callback=_throttled(report_progress),
        )
        return _finish(summary, report_settings, log)


@dataclass(frozen=True)
class BacktestService:
    store: MetricStore
    runtime: RuntimeOptions = RuntimeOptions()

    def run(
        self,
        payload: dict[str, Any],
        *,
        report_progress: ProgressFn = _noop_progress,
        log: LogFn = _noop_log,
    ) -> dict[str, Any]:
        config = backtest_config_from_payload(payload)
        report_settings = report_settings_from_payload(payload)
        summary = run_expression_backtest(
            self.store,
            config,
            runtime=self.runtime,
            progress_callback=report_progress,
        )
        return _finish(summary, report_settings, log)


def _finish(summary: RunSummary, report_settings: ReportSettings, log: LogFn) -> dict[str, Any]:
    report = build_report(summary, report_settings)
    log("info", report["summary"]["overview"])
    return report

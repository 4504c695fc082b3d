"""CLI entry point: python -m algoscan.cli brute|combo|backtest|validate."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Optional

from algoscan.config import Settings, get_settings
from algoscan.errors import AlgoscanError, ConfigError
from algoscan.features.algoql.parser import compile_expression, pretty_print, validate_algoql
from algoscan.features.discovery.engine import DrainController, RuntimeOptions
from algoscan.features.discovery.service import BacktestService, BruteService, ComboService
from algoscan.features.market.store import MetricStore
from algoscan.features.report.reporter import render_summary, write_report

logger = logging.getLogger("algoscan")

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str) -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)


def _load_payload(config_path: Optional[str]) -> dict[str, Any]:
    if not config_path:
        return {}
    path = Path(config_path).expanduser()
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise ConfigError(f"Cannot read config file {path}: {exc}") from exc
    except ValueError as exc:
        raise ConfigError(f"Config file {path} is not valid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise ConfigError(f"Config file {path} must contain a JSON object")
    return payload


def _log(level: str, message: str) -> None:
    logger.log(getattr(logging, level.upper(), logging.INFO), message)


def _progress(current: int, total: int, message: Optional[str] = None) -> None:
    logger.info("Progress %d/%d %s", current, total, message or "")


def _finish(report: dict[str, Any], args: argparse.Namespace, settings: Settings, prefix: str) -> int:
    print(render_summary(report, top_k=args.top))
    if not args.no_write:
        out_dir = Path(args.out_dir).expanduser() if args.out_dir else settings.report_dir
        path = write_report(report, out_dir, prefix)
        print(f"Report: {path}")
    return 0


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def cmd_brute(args: argparse.Namespace, settings: Settings) -> int:
    """Brute-force scan of single-parameter candidates."""
    payload = _load_payload(args.config)
    service = BruteService(MetricStore(settings.metrics_db_path), runtime=RuntimeOptions.from_settings(settings))
    drain = DrainController()
    with drain.handle_signals():
        report = service.run(payload, report_progress=_progress, log=_log, drain=drain)
    return _finish(report, args, settings, "brute")


def cmd_combo(args: argparse.Namespace, settings: Settings) -> int:
    """Cascade test of 2-4 legs."""
    payload = _load_payload(args.config)
    if args.leg:
        payload["legs"] = list(args.leg)
    if args.window is not None:
        payload["cascade_window_minutes"] = args.window
    service = ComboService(MetricStore(settings.metrics_db_path), runtime=RuntimeOptions.from_settings(settings))
    drain = DrainController()
    with drain.handle_signals():
        report = service.run(payload, report_progress=_progress, log=_log, drain=drain)
    return _finish(report, args, settings, "combo")


def cmd_backtest(args: argparse.Namespace, settings: Settings) -> int:
    """Backtest one AlgoQL expression over the scheme grid."""
    payload = _load_payload(args.config)
    if args.expression:
        payload["expression"] = args.expression
    if args.include_trades:
        payload["include_trades"] = True
    service = BacktestService(MetricStore(settings.metrics_db_path), runtime=RuntimeOptions.from_settings(settings))
    report = service.run(payload, report_progress=_progress, log=_log)
    return _finish(report, args, settings, "backtest")


def cmd_validate(args: argparse.Namespace, settings: Settings) -> int:
    ok, reason = validate_algoql(args.expression)
    if not ok:
        print(f"Invalid: {reason}")
        return 1
    print(pretty_print(compile_expression(args.expression)))
    return 0


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------

def _add_run_options(p: argparse.ArgumentParser) -> None:
    p.add_argument("--config", help="Path to a JSON run configuration")
    p.add_argument("--out-dir", default=None, help="Report directory (default: REPORT_DIR)")
    p.add_argument("--no-write", action="store_true", help="Print the summary without writing a report")
    p.add_argument("--top", type=int, default=None, help="Rows per top list in the console summary")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="algoscan",
        description="Signal discovery and backtesting over perp metrics",
    )
    parser.add_argument("--log-level", default=None, help="Overrides LOG_LEVEL")
    sub = parser.add_subparsers(dest="command", required=True)

    p_brute = sub.add_parser("brute", help="Brute-force single-parameter scan")
    _add_run_options(p_brute)
    p_brute.set_defaults(func=cmd_brute)

    p_combo = sub.add_parser("combo", help="Cascade combo test")
    _add_run_options(p_combo)
    p_combo.add_argument("--leg", action="append", help="Leg as AlgoQL or a 5-part template (repeat 2-4 times)")
    p_combo.add_argument("--window", type=float, default=None, help="Cascade window in minutes")
    p_combo.set_defaults(func=cmd_combo)

    p_bt = sub.add_parser("backtest", help="Backtest one AlgoQL expression")
    _add_run_options(p_bt)
    p_bt.add_argument("expression", nargs="?", default=None, help="AlgoQL text (overrides the config file)")
    p_bt.add_argument("--include-trades", action="store_true", help="Keep individual trades in the report")
    p_bt.set_defaults(func=cmd_backtest)

    p_val = sub.add_parser("validate", help="Check and pretty-print an AlgoQL expression")
    p_val.add_argument("expression", help="AlgoQL text")
    p_val.set_defaults(func=cmd_validate)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    configure_logging(args.log_level or settings.log_level)

    try:
        return int(args.func(args, settings))
    except AlgoscanError as exc:
        logger.error("%s", exc)
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("Interrupted", file=sys.stderr)
        return 130


if __name__ == "__main__":
    raise SystemExit(main())

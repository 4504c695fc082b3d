"""
Ranking, formatting and JSON reports.

One-line result format:

    SYMBOLS;DIRECTION;<leg>[ + <leg>]|TP<tp>%|SL<sl>%|Tr<n>|WR<wr>%|PF<pf>|NET$<pnl>

    ALL;Long;bin_oi_chg_1m>5|TP1.5%|SL0.8%|Tr120|WR61%|PF3.42|NET$1834
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional, Sequence

from algoscan.errors import ConfigError, ReportWriteError
from algoscan.features.discovery.engine import BacktestResult, RunSummary
from algoscan.features.optimization.schemes import SCORE_FORMULA
from algoscan.utils import format_number

logger = logging.getLogger(__name__)

SORT_KEYS = {
    "profit_factor": lambda r: (r.stats.profit_factor, r.stats.net_pnl, r.score),
    "net_pnl": lambda r: (r.stats.net_pnl, r.stats.profit_factor, r.score),
}


@dataclass(frozen=True)
class ReportSettings:
    """
    Attributes:
        sort_by: 'profit_factor' or 'net_pnl'
        top_results: Entries in each console/summary top list
        list_results: Entries in the report's results array
    """
    sort_by: str = "profit_factor"
    top_results: int = 20
    list_results: int = 40

    def __post_init__(self) -> None:
        if self.sort_by not in SORT_KEYS:
            raise ConfigError(f"sort_by must be one of {sorted(SORT_KEYS)}, got {self.sort_by!r}")
        if self.top_results < 0 or self.list_results < 0:
            raise ConfigError("top_results and list_results must be non-negative")


def rank_results(results: Sequence[BacktestResult], sort_by: str = "profit_factor") -> list[BacktestResult]:
    """Descending by the sort key; ties fall back to the other metric, then score."""
    try:
        key = SORT_KEYS[sort_by]
    except KeyError as exc:
        raise ConfigError(f"Unknown sort key: {sort_by!r}") from exc
    return sorted(results, key=key, reverse=True)


def rank_by_win_rate(results: Sequence[BacktestResult]) -> list[BacktestResult]:
    return sorted(results, key=lambda r: (r.stats.win_rate, r.stats.profit_factor), reverse=True)


def format_result(result: BacktestResult, symbols_label: str) -> str:
    s = result.stats
    legs = " + ".join(result.legs)
    return (
        f"{symbols_label};{result.direction.value};{legs}"
        f"|TP{format_number(result.scheme.take_profit_pct)}%"
        f"|SL{format_number(result.scheme.stop_loss_pct)}%"
        f"|Tr{s.trade_count}"
        f"|WR{round(s.win_rate)}%"
        f"|PF{s.profit_factor:.2f}"
        f"|NET${round(s.net_pnl)}"
    )


def _round(value: float, digits: int = 2) -> float:
    return round(float(value), digits)


def result_to_dict(result: BacktestResult, symbols_label: str) -> dict[str, Any]:
    s = result.stats
    out: dict[str, Any] = {
        "algo": format_result(result, symbols_label),
        "description": result.description,
        "direction": result.direction.value,
        "legs": list(result.legs),
        "tradeScheme": {
            "tp": result.scheme.take_profit_pct,
            "sl": result.scheme.stop_loss_pct,
            "tradeWindow": result.scheme.trade_window_minutes,
            "posVal": result.scheme.position_value,
        },
        "stats": {
            "tradeCount": s.trade_count,
            "wins": s.wins,
            "losses": s.losses,
            "timeouts": s.timeouts,
            "winRate": _round(s.win_rate),
            "timeoutRate": _round(s.timeout_rate),
            "profitFactor": _round(s.profit_factor),
            "netPnl": _round(s.net_pnl),
            "avgPnl": _round(s.avg_pnl),
        },
        "score": _round(result.score),
    }
    if result.details:
        out["details"] = dict(result.details)
    if result.trades:
        out["trades"] = [t.to_dict() for t in result.trades]
    return out


def build_report(summary: RunSummary, settings: ReportSettings) -> dict[str, Any]:
    """
    Assemble the JSON report for a finished run.

    Returns:
        {"metadata": ..., "summary": ..., "results": [...]}
    """
    acc = summary.accumulator
    ranked = rank_results(acc.results, settings.sort_by)
    label = summary.symbols_label

    overview = (
        f"{summary.script}: tested {acc.tested} of {summary.total_candidates} candidate(s), "
        f"{acc.passed} passed all filters"
    )
    if summary.drained:
        overview += " (run drained early)"

    report: dict[str, Any] = {
        "metadata": {
            "script": summary.script,
            "timestamp": summary.started_at.isoformat(),
            "runtimeSeconds": _round(summary.duration_seconds, 3),
            "config": summary.config,
            "candidatesTotal": summary.total_candidates,
            "candidatesTested": acc.tested,
            "candidatesPassed": acc.passed,
            "outcomes": acc.outcome_counts(),
            "drained": summary.drained,
        },
        "summary": {
            "overview": overview,
            "scoreFormula": SCORE_FORMULA,
            "sortedBy": settings.sort_by,
            "topByWinRate": [format_result(r, label) for r in rank_by_win_rate(ranked)[: settings.top_results]],
            "topByProfitFactor": [
                format_result(r, label) for r in rank_results(ranked, "profit_factor")[: settings.top_results]
            ],
        },
        "results": [result_to_dict(r, label) for r in ranked[: settings.list_results]],
    }
    if summary.evaluations:
        report["evaluations"] = summary.evaluations
    return report


def report_filename(prefix: str, when: Optional[datetime] = None) -> str:
    """``<prefix>_YYYY-MM-DD_HH-MMutc.json``"""
    when = when or datetime.now(timezone.utc)
    if when.tzinfo is not None:
        when = when.astimezone(timezone.utc)
    return f"{prefix}_{when.strftime('%Y-%m-%d_%H-%M')}utc.json"


def write_report(
    report: dict[str, Any],
    out_dir: str | Path,
    prefix: str,
    when: Optional[datetime] = None,
) -> Path:
    """
    Write a report to ``out_dir``.

    Raises:
        ReportWriteError: On any filesystem or serialization failure
    """
    path = Path(out_dir) / report_filename(prefix, when)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        payload = json.dumps(report, indent=2, default=str)
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(payload, encoding="utf-8")
        tmp.replace(path)
    except (OSError, TypeError, ValueError) as exc:
        raise ReportWriteError(f"Failed to write report to {path}: {exc}") from exc
    logger.info("Report written to %s", path)
    return path


def latest_report(out_dir: str | Path) -> Optional[Path]:
    directory = Path(out_dir)
    if not directory.is_dir():
        return None
    reports = sorted(directory.glob("*utc.json"), key=lambda p: p.stat().st_mtime)
    return reports[-1] if reports else None


def render_summary(report: dict[str, Any], top_k: Optional[int] = None) -> str:
    """Console text mirroring the report's top lists."""
    meta = report.get("metadata") or {}
    summ = report.get("summary") or {}
    by_wr = list(summ.get("topByWinRate") or [])
    by_pf = list(summ.get("topByProfitFactor") or [])
    if top_k is not None:
        by_wr, by_pf = by_wr[:top_k], by_pf[:top_k]

    bar = "=" * 70
    lines = [
        bar,
        f"{str(meta.get('script', '')).upper()} RESULTS",
        bar,
        summ.get("overview", ""),
        f"Runtime: {meta.get('runtimeSeconds', 0)}s | Outcomes: {meta.get('outcomes', {})}",
        summ.get("scoreFormula", ""),
    ]
    for title, rows in (("Top by win rate", by_wr), ("Top by profit factor", by_pf)):
        lines.append("")
        lines.append(f"{title}:")
        lines.append("-" * 70)
        if not rows:
            lines.append("  (no qualifying results)")
        for i, row in enumerate(rows, start=1):
            lines.append(f"{i:>3}. {row}")
    lines.append(bar)
    return "\n".join(lines)

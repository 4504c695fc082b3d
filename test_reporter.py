#!/usr/bin/env python3
import json
import os
import tempfile
import time
import unittest
from datetime import datetime, timezone
from pathlib import Path

from algoscan.errors import ConfigError, ReportWriteError
from algoscan.features.algoql.parser import Direction
from algoscan.features.discovery.engine import BacktestResult, Outcome, RunAccumulator, RunSummary
from algoscan.features.report.reporter import (
    ReportSettings,
    build_report,
    format_result,
    latest_report,
    rank_by_win_rate,
    rank_results,
    render_summary,
    report_filename,
    write_report,
)
from algoscan.features.simulation.simulator import TradeScheme, TradeStats


def _result(label: str, *, pf: float, net: float, wr: float = 50.0, trades: int = 120) -> BacktestResult:
    return BacktestResult(
        description=label,
        direction=Direction.LONG,
        legs=(label,),
        scheme=TradeScheme(1.5, 0.8),
        stats=TradeStats(trade_count=trades, wins=int(trades * wr / 100), win_rate=wr, profit_factor=pf, net_pnl=net),
        score=10.0,
    )


def _summary(results) -> RunSummary:
    acc = RunAccumulator()
    for r in results:
        acc.record(Outcome.PASSED, r)
    acc.record(Outcome.INSUFFICIENT_DATA)
    return RunSummary(
        script="brute",
        config={"exchanges": ["bin"]},
        accumulator=acc,
        started_at=datetime(2024, 3, 5, 14, 7, tzinfo=timezone.utc),
        duration_seconds=1.23456,
        total_candidates=len(results) + 1,
    )


class FormatTests(unittest.TestCase):
    def test_one_line_format(self):
        result = _result("bin_oi_chg_1m>5", pf=3.421, net=1834.4, wr=61.0)
        self.assertEqual(
            format_result(result, "ALL"),
            "ALL;Long;bin_oi_chg_1m>5|TP1.5%|SL0.8%|Tr120|WR61%|PF3.42|NET$1834",
        )

    def test_combo_legs_are_joined(self):
        result = BacktestResult(
            description="a + b",
            direction=Direction.SHORT,
            legs=("MT_bin_rsi1_chg_1m<30", "bin_oi_chg_1m>5"),
            scheme=TradeScheme(0.6, 0.3),
            stats=TradeStats(trade_count=90, win_rate=70.0, profit_factor=2.5, net_pnl=-12.6),
            score=1.0,
        )
        self.assertEqual(
            format_result(result, "BTC,ETH"),
            "BTC,ETH;Short;MT_bin_rsi1_chg_1m<30 + bin_oi_chg_1m>5|TP0.6%|SL0.3%|Tr90|WR70%|PF2.50|NET$-13",
        )


class RankingTests(unittest.TestCase):
    def setUp(self):
        self.a = _result("a", pf=5.0, net=100.0, wr=40.0)
        self.b = _result("b", pf=3.0, net=900.0, wr=80.0)
        self.c = _result("c", pf=5.0, net=200.0, wr=60.0)

    def test_rank_by_profit_factor_then_net(self):
        self.assertEqual([r.description for r in rank_results([self.a, self.b, self.c])], ["c", "a", "b"])

    def test_rank_by_net_pnl(self):
        self.assertEqual([r.description for r in rank_results([self.a, self.b, self.c], "net_pnl")], ["b", "c", "a"])

    def test_rank_by_win_rate(self):
        self.assertEqual([r.description for r in rank_by_win_rate([self.a, self.b, self.c])], ["b", "c", "a"])

    def test_unknown_sort_key(self):
        with self.assertRaises(ConfigError):
            rank_results([], "sharpe")
        with self.assertRaises(ConfigError):
            ReportSettings(sort_by="sharpe")
        with self.assertRaises(ConfigError):
            ReportSettings(top_results=-1)


class ReportTests(unittest.TestCase):
    def setUp(self):
        repo_root = Path(__file__).resolve().parent
        data_dir = repo_root / "data"
        data_dir.mkdir(parents=True, exist_ok=True)
        self._tmpdir = tempfile.TemporaryDirectory(dir=data_dir)
        self.out_dir = Path(self._tmpdir.name) / "reports"

    def tearDown(self):
        self._tmpdir.cleanup()

    def test_build_report_layout(self):
        results = [_result(f"r{i}", pf=float(i + 1), net=float(i)) for i in range(5)]
        report = build_report(_summary(results), ReportSettings(top_results=2, list_results=3))

        meta = report["metadata"]
        self.assertEqual(meta["script"], "brute")
        self.assertEqual(meta["candidatesTotal"], 6)
        self.assertEqual(meta["candidatesTested"], 6)
        self.assertEqual(meta["candidatesPassed"], 5)
        self.assertEqual(meta["outcomes"]["insufficient_data"], 1)
        self.assertEqual(meta["runtimeSeconds"], 1.235)
        self.assertFalse(meta["drained"])

        summary = report["summary"]
        self.assertIn("tested 6 of 6", summary["overview"])
        self.assertTrue(summary["scoreFormula"].startswith("Score ="))
        self.assertEqual(len(summary["topByProfitFactor"]), 2)
        self.assertTrue(summary["topByProfitFactor"][0].startswith("ALL;Long;r4|"))

        self.assertEqual([r["description"] for r in report["results"]], ["r4", "r3", "r2"])
        first = report["results"][0]
        self.assertEqual(first["tradeScheme"], {"tp": 1.5, "sl": 0.8, "tradeWindow": 30, "posVal": 1000.0})
        self.assertNotIn("trades", first)
        self.assertNotIn("evaluations", report)

    def test_report_filename(self):
        when = datetime(2024, 3, 5, 14, 7, 59, tzinfo=timezone.utc)
        self.assertEqual(report_filename("brute", when), "brute_2024-03-05_14-07utc.json")

    def test_write_and_find_latest(self):
        self.assertIsNone(latest_report(self.out_dir))
        report = build_report(_summary([_result("x", pf=4.0, net=10.0)]), ReportSettings())

        older = write_report(report, self.out_dir, "brute", datetime(2024, 1, 1, tzinfo=timezone.utc))
        newer = write_report(report, self.out_dir, "combo", datetime(2024, 1, 2, tzinfo=timezone.utc))
        past = time.time() - 60
        os.utime(older, (past, past))

        self.assertEqual(json.loads(newer.read_text(encoding="utf-8"))["metadata"]["script"], "brute")
        self.assertEqual(latest_report(self.out_dir), newer)
        self.assertEqual(list(self.out_dir.glob("*.tmp")), [])

    def test_write_failure_raises(self):
        blocker = Path(self._tmpdir.name) / "not_a_dir"
        blocker.write_text("x", encoding="utf-8")
        with self.assertRaises(ReportWriteError):
            write_report({"metadata": {}}, blocker, "brute")

    def test_render_summary(self):
        report = build_report(_summary([_result("bin_oi_chg_1m>5", pf=4.0, net=10.0)]), ReportSettings())
        text = render_summary(report, top_k=5)
        self.assertIn("BRUTE RESULTS", text)
        self.assertIn("  1. ALL;Long;bin_oi_chg_1m>5|", text)

        empty = render_summary(build_report(_summary([]), ReportSettings()))
        self.assertIn("(no qualifying results)", empty)


if __name__ == "__main__":
    unittest.main()

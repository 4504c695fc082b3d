#!/usr/bin/env python3
import unittest

import pandas as pd

from algoscan.errors import ConfigError, ParseError
from algoscan.features.algoql.parser import Direction
from algoscan.features.discovery.candidates import (
    Candidate,
    candidate_triggers,
    count_matches,
    generate_candidates,
    parse_directions,
    passes_prefilter,
    split_metric,
)
from algoscan.features.discovery.legs import expand_leg, expand_leg_template, is_leg_template
from algoscan.features.optimization.schemes import ResultConstraints
from algoscan.features.signals.triggers import Trigger


def _no_symbols():
    raise AssertionError("symbol listing should not be needed")


class CandidateGenerationTests(unittest.TestCase):
    def test_long_candidates_use_momentum_and_reversion(self):
        cands = generate_candidates((Direction.LONG,), ("bin",), ("oi_chg_1m",), (5,))
        self.assertEqual([c.label for c in cands], ["bin_oi_chg_1m>5", "bin_oi_chg_1m<-5"])

    def test_short_candidates_mirror_long(self):
        cands = generate_candidates((Direction.SHORT,), ("bin",), ("oi_chg_1m",), (2.5,))
        self.assertEqual([c.label for c in cands], ["bin_oi_chg_1m<2.5", "bin_oi_chg_1m>-2.5"])

    def test_cartesian_product_size(self):
        cands = generate_candidates(
            (Direction.LONG, Direction.SHORT),
            ("bin", "byb"),
            ("oi_chg_1m", "v_chg_5m", "pfr_chg_10m"),
            (0.5, 5, 30),
        )
        self.assertEqual(len(cands), 2 * 2 * 3 * 3 * 2)
        self.assertEqual(len(set(cands)), len(cands))

    def test_unknown_metric(self):
        with self.assertRaises(ConfigError):
            generate_candidates((Direction.LONG,), ("bin",), ("oi_chg_2m",), (5,))
        with self.assertRaises(ConfigError):
            split_metric("foo_chg_1m")
        self.assertEqual(split_metric("rsi60_chg_10m"), ("rsi60", "10m"))

    def test_candidate_expression(self):
        cand = Candidate(Direction.LONG, "bin", "oi_chg_1m", ">", 5.0)
        expr = cand.expression(("ETH",))
        self.assertEqual(expr.symbols, ("ETH",))
        self.assertEqual(expr.conditions[0].column, "oi_chg_1m")
        self.assertEqual(cand.to_dict()["direction"], "Long")

    def test_parse_directions(self):
        self.assertEqual(parse_directions("Both"), (Direction.LONG, Direction.SHORT))
        self.assertEqual(parse_directions("Short"), (Direction.SHORT,))
        self.assertEqual(parse_directions(["Long", "Long"]), (Direction.LONG,))
        with self.assertRaises(ConfigError):
            parse_directions("Sideways")
        with self.assertRaises(ConfigError):
            parse_directions([])


class PrefilterTests(unittest.TestCase):
    def test_prefilter_bounds_are_twice_the_trade_limits(self):
        constraints = ResultConstraints(min_trades=10, max_trades=50)
        self.assertFalse(passes_prefilter(19, constraints))
        self.assertTrue(passes_prefilter(20, constraints))
        self.assertTrue(passes_prefilter(100, constraints))
        self.assertFalse(passes_prefilter(101, constraints))

    def test_matching_rows_and_triggers(self):
        frame = pd.DataFrame(
            {
                "ts": [1, 1, 2, 3],
                "symbol": ["ETH", "ETH", "BTC", "ETH"],
                "exchange": ["bin", "byb", "bin", "bin"],
                "oi_chg_1m": [6.0, 9.0, float("nan"), -7.0],
            }
        )
        up = Candidate(Direction.LONG, "bin", "oi_chg_1m", ">", 5.0)
        down = Candidate(Direction.LONG, "bin", "oi_chg_1m", "<", -5.0)
        missing = Candidate(Direction.LONG, "bin", "v_chg_1m", ">", 5.0)

        self.assertEqual(count_matches(up, frame), 1)
        self.assertEqual(candidate_triggers(up, frame), [Trigger(1, "ETH", "bin")])
        self.assertEqual(candidate_triggers(down, frame), [Trigger(3, "ETH", "bin")])
        self.assertEqual(count_matches(missing, frame), 0)


class LegTemplateTests(unittest.TestCase):
    def test_market_total_leg_with_value_list(self):
        variants = expand_leg_template(
            "MT; bin; rsi1_chg_1m; <; [30,50]",
            metrics=(),
            magnitudes=(),
            list_symbols=_no_symbols,
        )
        self.assertEqual([v.label for v in variants], ["MT_bin_rsi1_chg_1m<30", "MT_bin_rsi1_chg_1m<50"])
        cond = variants[0].expression.conditions[0]
        self.assertEqual(cond.threshold, -30.0)
        self.assertEqual(cond.operator, "<")
        self.assertEqual(variants[0].expression.symbols, ("MT",))

    def test_both_signs_across_exchanges(self):
        variants = expand_leg_template(
            "[BTC,ETH]; All; [oi_chg_1m]; <>; 2",
            metrics=(),
            magnitudes=(),
            list_symbols=_no_symbols,
        )
        self.assertEqual(len(variants), 2 * 3 * 1 * 2)
        labels = {v.label for v in variants}
        self.assertIn("BTC_okx_oi_chg_1m>2", labels)
        self.assertIn("ETH_byb_oi_chg_1m<2", labels)

    def test_placeholders_use_run_lists(self):
        variants = expand_leg_template(
            "All; bin; [params]; >; [corePerc]",
            metrics=("oi_chg_1m", "v_chg_5m"),
            magnitudes=(1, 2),
            list_symbols=lambda: ["BTC", "ETH"],
        )
        self.assertEqual(len(variants), 2 * 2 * 2)
        self.assertTrue(all(v.expression.conditions[0].threshold > 0 for v in variants))

    def test_bad_templates(self):
        bad = [
            "ETH; bin; oi_chg_1m; =; 5",
            "ETH; ftx; oi_chg_1m; >; 5",
            "ETH; bin; oi_chg_7m; >; 5",
            "ETH; bin; oi_chg_1m; >; five",
        ]
        for text in bad:
            with self.subTest(text=text):
                with self.assertRaises(ParseError):
                    expand_leg_template(text, metrics=(), magnitudes=(), list_symbols=_no_symbols)

    def test_algoql_leg_is_one_variant(self):
        self.assertFalse(is_leg_template("ETH;Long;bin_oi_chg_1m>5"))
        (variant,) = expand_leg("ETH;Long;bin_oi_chg_1m>5", metrics=(), magnitudes=(), list_symbols=_no_symbols)
        self.assertEqual(variant.label, "ETH_bin_oi_chg_1m>5")

        (variant,) = expand_leg("ALL;Long;bin_oi_chg_1m>5", metrics=(), magnitudes=(), list_symbols=_no_symbols)
        self.assertEqual(variant.label, "bin_oi_chg_1m>5")

    def test_template_leg_dispatch(self):
        self.assertTrue(is_leg_template("MT; bin; rsi1_chg_1m; <; 30"))
        variants = expand_leg("MT; bin; rsi1_chg_1m; <; 30", metrics=(), magnitudes=(), list_symbols=_no_symbols)
        self.assertEqual(len(variants), 1)


if __name__ == "__main__":
    unittest.main()

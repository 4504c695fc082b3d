#!/usr/bin/env python3
import unittest

from algoscan.errors import ParseError
from algoscan.features.algoql.parser import (
    ALL_SYMBOLS,
    Direction,
    compile_expression,
    format_expression,
    pretty_print,
    validate_algoql,
)


class AlgoQLParserTests(unittest.TestCase):
    def test_parses_all_symbols_with_mixed_logic(self):
        expr = compile_expression("ALL;Long;bin_oi_chg_1m>5 AND bin_v_chg_5m>=20 OR byb_oi_chg_1m>5")
        self.assertEqual(expr.symbols, ALL_SYMBOLS)
        self.assertTrue(expr.all_symbols)
        self.assertIs(expr.direction, Direction.LONG)
        self.assertEqual(len(expr.conditions), 3)
        self.assertEqual([c.logic for c in expr.conditions], ["AND", "OR", None])
        self.assertEqual(expr.exchanges, ("bin", "byb"))

        first = expr.conditions[0]
        self.assertEqual(first.scope, "bin")
        self.assertEqual(first.metric, "oi")
        self.assertEqual(first.horizon, "1m")
        self.assertEqual(first.operator, ">")
        self.assertEqual(first.threshold, 5.0)
        self.assertEqual(first.column, "oi_chg_1m")

    def test_symbol_list_and_symbol_reference(self):
        expr = compile_expression("BTC, eth;Short;okx_pfr_chg_10m<-3 AND symbolBTC_c_chg_1m<-0.5")
        self.assertEqual(expr.symbols, ("BTC", "ETH"))
        self.assertIs(expr.direction, Direction.SHORT)
        self.assertEqual(len(expr.exchange_conditions), 1)
        refs = expr.symbol_references
        self.assertEqual(len(refs), 1)
        self.assertTrue(refs[0].is_symbol_ref)
        self.assertEqual(refs[0].scope, "BTC")
        self.assertEqual(refs[0].threshold, -0.5)
        self.assertEqual(expr.exchanges, ("okx",))
        self.assertEqual(expr.symbols_label, "BTC,ETH")

    def test_missing_logic_token_defaults_to_and(self):
        expr = compile_expression("ALL;Long;bin_oi_chg_1m>5 bin_v_chg_1m>1")
        self.assertEqual(expr.conditions[0].logic, "AND")

    def test_case_and_whitespace_are_normalised(self):
        expr = compile_expression(" all ; Long ; BIN_OI_CHG_1M > 5 ")
        self.assertEqual(format_expression(expr), "ALL;Long;bin_oi_chg_1m>5")

    def test_format_expression_is_canonical(self):
        text = "ALL;Long;bin_oi_chg_1m>5 AND bin_v_chg_5m>=20 OR byb_oi_chg_1m>5.5"
        self.assertEqual(format_expression(compile_expression(text)), text)

    def test_compiling_twice_gives_equal_expressions(self):
        text = "BTC,ETH;Short;okx_pfr_chg_10m<-3 OR bin_oi_chg_1m>5 AND symbolMT_v_chg_1m>2"
        first = compile_expression(text)
        second = compile_expression(text)
        self.assertEqual(first, second)
        self.assertEqual(hash(first), hash(second))
        self.assertEqual(format_expression(first), format_expression(second))

    def test_source_text_is_kept(self):
        expr = compile_expression("  ALL;Long;bin_oi_chg_1m>5 ")
        self.assertEqual(expr.text, "ALL;Long;bin_oi_chg_1m>5")
        self.assertEqual(expr, compile_expression("all;long;BIN_OI_CHG_1M>5"))

    def test_malformed_input_raises_parse_error(self):
        bad = [
            "",
            "   ",
            "ALL;Long",
            "ALL;Long;bin_oi_chg_1m>5;extra",
            "ALL;Sideways;bin_oi_chg_1m>5",
            "ALL;Long;nothing useful here",
            "ALL;Long;bin_foo_chg_1m>5",
            " ;Long;bin_oi_chg_1m>5",
        ]
        for text in bad:
            with self.subTest(text=text):
                with self.assertRaises(ParseError):
                    compile_expression(text)

    def test_non_string_is_rejected(self):
        with self.assertRaises(ParseError):
            compile_expression(None)  # type: ignore[arg-type]

    def test_parse_error_is_a_value_error(self):
        with self.assertRaises(ValueError):
            compile_expression("ALL;Long")

    def test_validate_reports_reason(self):
        ok, reason = validate_algoql("ALL;Long;bin_oi_chg_1m>5")
        self.assertTrue(ok)
        self.assertIsNone(reason)

        ok, reason = validate_algoql("ALL;Up;bin_oi_chg_1m>5")
        self.assertFalse(ok)
        self.assertIn("direction", reason)

    def test_direction_helpers(self):
        self.assertEqual(Direction.LONG.sign, 1)
        self.assertEqual(Direction.SHORT.sign, -1)
        self.assertEqual(Direction.LONG.natural_operator, ">")
        self.assertEqual(Direction.SHORT.natural_operator, "<")
        self.assertIs(Direction.parse("Short"), Direction.SHORT)

    def test_pretty_print_lists_conditions(self):
        text = pretty_print(compile_expression("ETH;Long;bin_oi_chg_1m>5 OR symbolMT_v_chg_5m>2"))
        self.assertIn("Symbols:   ETH", text)
        self.assertIn("bin_oi_chg_1m>5  [exchange]", text)
        self.assertIn("symbolMT_v_chg_5m>2  [symbol ref]", text)
        self.assertIn("OR", text)


if __name__ == "__main__":
    unittest.main()

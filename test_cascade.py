#!/usr/bin/env python3
import unittest

from algoscan.features.signals.cascade import cascade_match
from algoscan.features.signals.triggers import Trigger

MINUTE = 60_000


def t(minute: float, symbol: str = "ETH", exchange: str = "bin") -> Trigger:
    return Trigger(int(minute * MINUTE), symbol, exchange)


class CascadeMatchTests(unittest.TestCase):
    def test_two_legs_within_window(self):
        matches = cascade_match([[t(0)], [t(10)]], 30)
        self.assertEqual(len(matches), 1)
        self.assertEqual(matches[0].chain, (t(0), t(10)))
        self.assertEqual(matches[0].origin, t(0))
        self.assertEqual(matches[0].final, t(10))

    def test_second_leg_outside_window_is_dropped(self):
        self.assertEqual(cascade_match([[t(0)], [t(45)]], 30), [])

    def test_window_bound_is_inclusive(self):
        self.assertEqual(len(cascade_match([[t(0)], [t(30)]], 30)), 1)
        self.assertEqual(cascade_match([[t(0)], [t(30.5)]], 30), [])

    def test_next_leg_must_fire_strictly_later(self):
        self.assertEqual(cascade_match([[t(5)], [t(5)]], 30), [])
        self.assertEqual(cascade_match([[t(5)], [t(1)]], 30), [])

    def test_earliest_qualifying_trigger_is_chained(self):
        matches = cascade_match([[t(0)], [t(20), t(5), t(25)]], 30)
        self.assertEqual(matches[0].final, t(5))

    def test_three_legs_measure_window_from_previous_leg(self):
        self.assertEqual(len(cascade_match([[t(0)], [t(10)], [t(35)]], 30)), 1)
        self.assertEqual(cascade_match([[t(0)], [t(10)], [t(45)]], 30), [])

    def test_chain_is_not_retried_with_a_later_middle_leg(self):
        # leg 2 picks 5, leg 3 must then be within 30 of 5, not of 25
        self.assertEqual(cascade_match([[t(0)], [t(5), t(25)], [t(50)]], 30), [])

    def test_matching_is_per_symbol_by_default(self):
        legs = [[t(0, "ETH")], [t(5, "BTC")]]
        self.assertEqual(cascade_match(legs, 30), [])
        crossed = cascade_match(legs, 30, match_by_symbol=False)
        self.assertEqual(len(crossed), 1)
        self.assertEqual(crossed[0].final.symbol, "BTC")

    def test_symbols_advance_independently(self):
        legs = [
            [t(0, "ETH"), t(0, "BTC")],
            [t(5, "BTC"), t(50, "ETH")],
        ]
        matches = cascade_match(legs, 30)
        self.assertEqual([m.origin.symbol for m in matches], ["BTC"])

    def test_market_total_leg_chains_with_any_symbol(self):
        mt_first = cascade_match([[t(0, "MT")], [t(5, "ETH")]], 30)
        self.assertEqual(len(mt_first), 1)
        self.assertEqual(mt_first[0].trade_trigger(), t(5, "ETH"))

        mt_last = cascade_match([[t(0, "ETH")], [t(5, "MT")]], 30)
        self.assertEqual(len(mt_last), 1)
        self.assertEqual(mt_last[0].trade_symbol(), "ETH")
        self.assertEqual(mt_last[0].trade_trigger(), t(5, "ETH"))

    def test_market_total_leg_keeps_the_chain_on_its_symbol(self):
        self.assertEqual(cascade_match([[t(0, "ETH")], [t(5, "MT")], [t(10, "BTC")]], 30), [])

        matches = cascade_match([[t(0, "ETH")], [t(5, "MT")], [t(8, "BTC"), t(10, "ETH")]], 30)
        self.assertEqual(len(matches), 1)
        self.assertEqual(matches[0].final, t(10, "ETH"))
        self.assertEqual(matches[0].trade_trigger(), t(10, "ETH"))

    def test_market_total_only_chain_picks_up_any_symbol(self):
        matches = cascade_match([[t(0, "MT")], [t(5, "MT")], [t(10, "BTC")]], 30)
        self.assertEqual(len(matches), 1)
        self.assertEqual(matches[0].trade_symbol(), "BTC")

    def test_rerun_on_same_inputs_gives_same_matches(self):
        legs = [
            [t(0, "ETH"), t(0, "BTC"), t(40, "ETH")],
            [t(5, "MT"), t(12, "BTC"), t(50, "ETH")],
            [t(20, "ETH"), t(30, "BTC"), t(60, "ETH")],
        ]
        first = cascade_match(legs, 30)
        second = cascade_match(legs, 30)
        self.assertEqual(first, second)
        self.assertEqual([m.origin for m in first], [t(0, "BTC"), t(0, "ETH"), t(40, "ETH")])

    def test_output_follows_first_leg_order(self):
        matches = cascade_match([[t(20), t(0)], [t(5), t(25)]], 30)
        self.assertEqual([m.origin for m in matches], [t(0), t(20)])

    def test_empty_leg_short_circuits(self):
        self.assertEqual(cascade_match([[t(0)], []], 30), [])
        self.assertEqual(cascade_match([[], [t(5)]], 30), [])

    def test_invalid_arguments(self):
        with self.assertRaises(ValueError):
            cascade_match([[t(0)]], 30)
        with self.assertRaises(ValueError):
            cascade_match([[t(0)], [t(5)]], 0)


if __name__ == "__main__":
    unittest.main()

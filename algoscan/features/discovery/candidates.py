"""
Brute-force single-parameter candidates.

Every (direction, exchange, metric, magnitude) yields two candidates: the
direction's natural operator at +magnitude (momentum) and the flipped
operator at -magnitude (mean reversion). Long: ``> +m`` and ``< -m``.
Short: ``< +m`` and ``> -m``.
"""

from __future__ import annotations

import re
from dataclasses import asdict, dataclass
from typing import Any, Iterable, Sequence

import pandas as pd

from algoscan.errors import ConfigError
from algoscan.features.algoql.parser import ALL_SYMBOLS, Condition, Direction, SignalExpression
from algoscan.features.market.schema import CHANGE_COLUMNS
from algoscan.features.optimization.schemes import ResultConstraints
from algoscan.features.signals.triggers import Trigger, triggers_from_frame
from algoscan.utils import flip_operator, format_number, vectorized_cmp

_METRIC_RE = re.compile(r"^([a-z0-9]+)_chg_(1m|5m|10m)$")


@dataclass(frozen=True)
class Candidate:
    direction: Direction
    exchange: str
    metric: str
    operator: str
    threshold: float

    @property
    def condition(self) -> Condition:
        field_name, horizon = split_metric(self.metric)
        return Condition(
            scope=self.exchange,
            metric=field_name,
            horizon=horizon,
            operator=self.operator,
            threshold=self.threshold,
        )

    @property
    def label(self) -> str:
        return f"{self.exchange}_{self.metric}{self.operator}{format_number(self.threshold)}"

    def expression(self, symbols: Sequence[str] | str = ALL_SYMBOLS) -> SignalExpression:
        scope = ALL_SYMBOLS if symbols == ALL_SYMBOLS else tuple(symbols)
        return SignalExpression(symbols=scope, direction=self.direction, conditions=(self.condition,))

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["direction"] = self.direction.value
        return d


def split_metric(metric: str) -> tuple[str, str]:
    """'oi_chg_1m' -> ('oi', '1m')"""
    match = _METRIC_RE.match(metric)
    if not match or metric not in CHANGE_COLUMNS:
        raise ConfigError(f"Unknown metric column: {metric!r}")
    return match.group(1), match.group(2)


def parse_directions(value: str | Iterable[str]) -> tuple[Direction, ...]:
    """'Long' | 'Short' | 'Both' or an explicit list."""
    if isinstance(value, str):
        if value == "Both":
            return (Direction.LONG, Direction.SHORT)
        value = [value]
    out = []
    for v in value:
        try:
            out.append(Direction(v))
        except ValueError as exc:
            raise ConfigError(f"Invalid direction: {v!r}") from exc
    if not out:
        raise ConfigError("At least one direction is required")
    return tuple(dict.fromkeys(out))


def generate_candidates(
    directions: Sequence[Direction],
    exchanges: Sequence[str],
    metrics: Sequence[str],
    magnitudes: Sequence[float],
) -> list[Candidate]:
    for metric in metrics:
        split_metric(metric)

    candidates: list[Candidate] = []
    for direction in directions:
        natural = direction.natural_operator
        for exchange in exchanges:
            for metric in metrics:
                for magnitude in magnitudes:
                    m = abs(float(magnitude))
                    candidates.append(Candidate(direction, exchange, metric, natural, m))
                    candidates.append(Candidate(direction, exchange, metric, flip_operator(natural), -m))
    return candidates


# =============================================================================
# Evaluation against a batch frame
# =============================================================================

def match_mask(candidate: Candidate, frame: pd.DataFrame) -> pd.Series:
    if frame.empty or candidate.metric not in frame.columns:
        return pd.Series(False, index=frame.index)
    return (frame["exchange"] == candidate.exchange) & vectorized_cmp(
        frame[candidate.metric], candidate.threshold, candidate.operator
    )


def count_matches(candidate: Candidate, frame: pd.DataFrame) -> int:
    return int(match_mask(candidate, frame).sum())


def passes_prefilter(count: int, constraints: ResultConstraints) -> bool:
    """Cheap rejection before any simulation: 2*min_trades <= rows <= 2*max_trades."""
    return 2 * constraints.min_trades <= count <= 2 * constraints.max_trades


def candidate_triggers(candidate: Candidate, frame: pd.DataFrame) -> list[Trigger]:
    return triggers_from_frame(frame[match_mask(candidate, frame)])

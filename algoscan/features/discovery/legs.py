"""
Combo legs.

A combo leg is either plain AlgoQL text (``ETH;Long;bin_oi_chg_1m>5``) or a
five-part template that expands into many single-condition variants:

    SYMBOL; EXCHANGE; PARAM; OP; VALUES

    MT; bin; rsi1_chg_1m; <; [30,50]
    [BTC,ETH]; All; [params]; <>; [corePerc]

- SYMBOL: a symbol, ``[A,B]`` or ``All`` (every symbol in the store except MT)
- EXCHANGE: an exchange, ``[bin,byb]`` or ``All``
- PARAM: a change column, ``[a,b]`` or ``[params]`` (the run's metric list)
- OP: ``>``, ``<`` or ``<>`` (both signs)
- VALUES: a number, ``[1,2]`` or ``[corePerc]`` (the run's magnitudes)

The sign of each value follows the operator: ``<`` thresholds are negative,
``>`` positive, ``<>`` yields both.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional, Sequence

from algoscan.errors import ConfigError, ParseError
from algoscan.features.algoql.parser import (
    Condition,
    Direction,
    SignalExpression,
    compile_expression,
    format_expression,
)
from algoscan.features.market.schema import EXCHANGES
from algoscan.utils import format_number
from .candidates import split_metric


@dataclass(frozen=True)
class LegVariant:
    """One concrete leg: the expression to fetch plus its display label."""
    expression: SignalExpression
    label: str


def _bracket_list(token: str) -> Optional[list[str]]:
    token = token.strip()
    if token.startswith("[") and token.endswith("]"):
        return [t.strip() for t in token[1:-1].split(",") if t.strip()]
    return None


def _parse_float(token: str) -> float:
    try:
        return float(token)
    except ValueError as exc:
        raise ParseError(f"Invalid leg value: {token!r}") from exc


def is_leg_template(text: str) -> bool:
    return isinstance(text, str) and len(text.split(";")) == 5


def expand_leg_template(
    text: str,
    *,
    metrics: Sequence[str],
    magnitudes: Sequence[float],
    list_symbols: Callable[[], list[str]],
    direction: Direction = Direction.LONG,
) -> list[LegVariant]:
    """
    Expand a five-part leg template into single-condition variants.

    ``list_symbols`` is only called when the template asks for All symbols.
    The direction is carried on the generated expressions but does not change
    which rows match.
    """
    parts = [p.strip() for p in text.split(";")]
    if len(parts) != 5:
        raise ParseError(f"Leg template must have 5 ';'-separated parts, got {len(parts)}: {text!r}")
    sym_tok, ex_tok, param_tok, op, value_tok = parts

    if sym_tok.lower() == "all":
        symbols = list(list_symbols())
    else:
        symbols = _bracket_list(sym_tok) or [sym_tok]
    symbols = [s.upper() for s in symbols if s]
    if not symbols:
        raise ParseError(f"No symbols in leg template {text!r}")

    if ex_tok.lower() == "all":
        exchanges = list(EXCHANGES)
    else:
        exchanges = [e.lower() for e in (_bracket_list(ex_tok) or [ex_tok])]
    unknown = [e for e in exchanges if e not in EXCHANGES]
    if unknown:
        raise ParseError(f"Unknown exchange(s) {unknown} in leg template {text!r}")

    if param_tok == "[params]":
        params = list(metrics)
    else:
        params = _bracket_list(param_tok) or [param_tok]
    for p in params:
        try:
            split_metric(p)
        except ConfigError as exc:
            raise ParseError(str(exc)) from exc

    if op not in (">", "<", "<>"):
        raise ParseError(f"Leg operator must be '>', '<' or '<>', got {op!r}")

    if value_tok == "[corePerc]":
        raw_values = [float(v) for v in magnitudes]
    else:
        raw_values = [_parse_float(v) for v in (_bracket_list(value_tok) or [value_tok])]
    if not raw_values:
        raise ParseError(f"No values in leg template {text!r}")

    if op == "<>":
        values = [s * abs(v) for v in raw_values for s in (1, -1)]
    elif op == "<":
        values = [-abs(v) for v in raw_values]
    else:
        values = [abs(v) for v in raw_values]

    variants: list[LegVariant] = []
    for symbol in symbols:
        for exchange in exchanges:
            for param in params:
                field_name, horizon = split_metric(param)
                for value in values:
                    operator = "<" if value < 0 else ">"
                    cond = Condition(
                        scope=exchange,
                        metric=field_name,
                        horizon=horizon,
                        operator=operator,
                        threshold=value,
                    )
                    expr = SignalExpression(symbols=(symbol,), direction=direction, conditions=(cond,))
                    label = f"{symbol}_{exchange}_{param}{operator}{format_number(abs(value))}"
                    variants.append(LegVariant(expression=expr, label=label))
    return variants


def expand_leg(
    text: str,
    *,
    metrics: Sequence[str],
    magnitudes: Sequence[float],
    list_symbols: Callable[[], list[str]],
    direction: Direction = Direction.LONG,
) -> list[LegVariant]:
    """A leg as AlgoQL (one variant) or as a template (many)."""
    if is_leg_template(text):
        return expand_leg_template(
            text,
            metrics=metrics,
            magnitudes=magnitudes,
            list_symbols=list_symbols,
            direction=direction,
        )
    expr = compile_expression(text)
    label = format_expression(expr).split(";", 2)[2]
    if not expr.all_symbols:
        label = f"{expr.symbols_label}_{label}"
    return [LegVariant(expression=expr, label=label)]

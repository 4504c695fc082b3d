"""
AlgoQL parsing.

AlgoQL is the compact signal language used across the scanner, the combo
tester and the HTTP API:

    SYMBOLS;DIRECTION;CONDITIONS

    ALL;Long;bin_oi_chg_1m>5 AND bin_v_chg_5m>=20 OR byb_oi_chg_1m>5
    BTC,ETH;Short;okx_pfr_chg_10m<-3 AND symbolBTC_c_chg_1m<-0.5

This module turns text into a ``SignalExpression``, an immutable intermediate
representation. Turning that representation into a store query lives in
``compiler.py`` so both halves can be tested separately.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Tuple, Union

from algoscan.errors import ParseError
from algoscan.features.market.schema import CHANGE_FIELDS, EXCHANGES, HORIZONS, change_column
from algoscan.utils import format_number


# =============================================================================
# Types
# =============================================================================

class Direction(str, Enum):
    LONG = "Long"
    SHORT = "Short"

    @property
    def sign(self) -> int:
        return 1 if self is Direction.LONG else -1

    @property
    def natural_operator(self) -> str:
        """Operator a momentum signal uses for this direction ('>' Long, '<' Short)."""
        return ">" if self is Direction.LONG else "<"

    @classmethod
    def parse(cls, value: str) -> "Direction":
        for member in cls:
            if member.value == value:
                return member
        raise ParseError(f"Invalid direction: {value!r} (expected 'Long' or 'Short')")


ALL_SYMBOLS = "ALL"
SymbolScope = Union[str, Tuple[str, ...]]


@dataclass(frozen=True)
class Condition:
    """
    One atomic predicate, e.g. ``bin_oi_chg_1m>5``.

    Attributes:
        scope: Exchange code, or the referenced symbol when is_symbol_ref
        metric: Percent-change field (c, v, oi, pfr, ...)
        horizon: 1m, 5m or 10m
        operator: One of >, <, >=, <=, =
        threshold: Numeric threshold in percent
        is_symbol_ref: Compare another symbol's row at the same timestamp
        logic: AND/OR token that followed this predicate in the text, if any
    """
    scope: str
    metric: str
    horizon: str
    operator: str
    threshold: float
    is_symbol_ref: bool = False
    logic: Optional[str] = field(default=None, compare=False)

    @property
    def column(self) -> str:
        return change_column(self.metric, self.horizon)

    @property
    def token(self) -> str:
        prefix = f"symbol{self.scope}" if self.is_symbol_ref else self.scope
        return f"{prefix}_{self.column}{self.operator}{format_number(self.threshold)}"


@dataclass(frozen=True)
class SignalExpression:
    """Parsed AlgoQL. ``text`` is the source as written; empty for generated expressions."""
    symbols: SymbolScope
    direction: Direction
    conditions: Tuple[Condition, ...]
    text: str = field(default="", compare=False)

    @property
    def all_symbols(self) -> bool:
        return self.symbols == ALL_SYMBOLS

    @property
    def exchange_conditions(self) -> Tuple[Condition, ...]:
        return tuple(c for c in self.conditions if not c.is_symbol_ref)

    @property
    def symbol_references(self) -> Tuple[Condition, ...]:
        return tuple(c for c in self.conditions if c.is_symbol_ref)

    @property
    def exchanges(self) -> Tuple[str, ...]:
        seen: list[str] = []
        for c in self.exchange_conditions:
            if c.scope not in seen:
                seen.append(c.scope)
        return tuple(seen)

    @property
    def symbols_label(self) -> str:
        return ALL_SYMBOLS if self.all_symbols else ",".join(self.symbols)


# =============================================================================
# Grammar
# =============================================================================

_CONDITION_RE = re.compile(
    r"(bin|byb|okx|symbol[A-Z0-9]+)_([a-z0-9]+)_chg_(1m|5m|10m)\s*(>=|<=|>|<|=)\s*(-?\d+(?:\.\d*)?)",
    re.IGNORECASE,
)
_LOGIC_RE = re.compile(r"\b(AND|OR)\b", re.IGNORECASE)


def _parse_symbols(part: str) -> SymbolScope:
    if part.strip().upper() == ALL_SYMBOLS:
        return ALL_SYMBOLS
    symbols = tuple(s.strip().upper() for s in part.split(",") if s.strip())
    if not symbols:
        raise ParseError("No symbols specified")
    return symbols


def _build_condition(match: re.Match, logic: Optional[str]) -> Condition:
    scope, metric, horizon, operator, value = match.groups()
    metric = metric.lower()
    if metric not in CHANGE_FIELDS:
        raise ParseError(f"Unknown metric {metric!r} in {match.group(0)!r}")

    is_symbol_ref = scope.lower().startswith("symbol")
    if is_symbol_ref:
        scope = scope[len("symbol"):].upper()
    else:
        scope = scope.lower()
        if scope not in EXCHANGES:  # pragma: no cover - the regex already restricts this
            raise ParseError(f"Unknown exchange {scope!r}")

    horizon = horizon.lower()
    if horizon not in HORIZONS:  # pragma: no cover
        raise ParseError(f"Unknown horizon {horizon!r}")

    return Condition(
        scope=scope,
        metric=metric,
        horizon=horizon,
        operator=operator,
        threshold=float(value),
        is_symbol_ref=is_symbol_ref,
        logic=logic,
    )


def _parse_conditions(part: str) -> Tuple[Condition, ...]:
    matches = list(_CONDITION_RE.finditer(part))
    if not matches:
        raise ParseError(f"No valid conditions found in {part.strip()!r}")

    conditions = []
    for i, match in enumerate(matches):
        logic = None
        if i + 1 < len(matches):
            between = part[match.end():matches[i + 1].start()]
            found = _LOGIC_RE.search(between)
            logic = found.group(1).upper() if found else "AND"
        conditions.append(_build_condition(match, logic))
    return tuple(conditions)


# =============================================================================
# Public API
# =============================================================================

def compile_expression(text: str) -> SignalExpression:
    """
    Parse AlgoQL text into a SignalExpression.

    Args:
        text: ``SYMBOLS;DIRECTION;CONDITIONS``

    Returns:
        Immutable SignalExpression

    Raises:
        ParseError: On any malformed input. Nothing partial is ever returned.
    """
    if not isinstance(text, str) or not text.strip():
        raise ParseError("AlgoQL must be a non-empty string")

    parts = [p.strip() for p in text.split(";")]
    if len(parts) != 3:
        raise ParseError(f"AlgoQL must have 3 ';'-separated parts (SYMBOLS;DIRECTION;CONDITIONS), got {len(parts)}")

    symbols_part, direction_part, conditions_part = parts
    symbols = _parse_symbols(symbols_part)
    direction = Direction.parse(direction_part)
    conditions = _parse_conditions(conditions_part)
    return SignalExpression(symbols=symbols, direction=direction, conditions=conditions, text=text.strip())


def validate_algoql(text: str) -> Tuple[bool, Optional[str]]:
    """Pre-flight check. Returns (valid, reason)."""
    try:
        compile_expression(text)
    except ParseError as exc:
        return False, str(exc)
    return True, None


def format_expression(expr: SignalExpression) -> str:
    """Canonical AlgoQL text for an expression."""
    pieces: list[str] = []
    for i, cond in enumerate(expr.conditions):
        pieces.append(cond.token)
        if i + 1 < len(expr.conditions):
            pieces.append(cond.logic or "AND")
    return f"{expr.symbols_label};{expr.direction.value};{' '.join(pieces)}"


def pretty_print(expr: SignalExpression) -> str:
    lines = [
        f"Symbols:   {expr.symbols_label}",
        f"Direction: {expr.direction.value}",
        "Conditions:",
    ]
    for i, cond in enumerate(expr.conditions, start=1):
        kind = "symbol ref" if cond.is_symbol_ref else "exchange"
        lines.append(f"  {i}. {cond.token}  [{kind}]")
        if cond.logic and i < len(expr.conditions):
            lines.append(f"     {cond.logic}")
    return "\n".join(lines)

"""
Compile a SignalExpression into a metric-store query.

The combination rule is exchange-partitioned and easy to misread:

- conditions on the same exchange are AND-ed into one group,
- groups for different exchanges are OR-ed (a row only ever belongs to one
  exchange, so it qualifies when its own exchange's group holds),
- symbol-reference conditions are AND-ed on top, each evaluated against the
  referenced symbol's rows at the same ``ts``. Any exchange's row may satisfy
  them unless ``same_exchange_refs`` pins the reference to the row's exchange.

The AND/OR tokens written in the text are kept on the conditions for display
only. ``partition_by_exchange`` is the single place this rule is implemented;
both the SQL builder and the in-memory evaluator go through it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from algoscan.features.market.schema import MARKET_TOTAL_SYMBOL, METRICS_TABLE
from algoscan.utils import vectorized_cmp
from .parser import Condition, SignalExpression


_PLACEHOLDERS = {"qmark": "?", "format": "%s"}


@dataclass(frozen=True)
class ExchangeGroup:
    exchange: str
    conditions: Tuple[Condition, ...]


@dataclass(frozen=True)
class SymbolJoin:
    alias: str
    symbol: str
    conditions: Tuple[Condition, ...]


def partition_by_exchange(conditions: Sequence[Condition]) -> Tuple[ExchangeGroup, ...]:
    """
    Group exchange-scoped conditions by exchange, in order of first appearance.

    Symbol-reference conditions are not part of any group.
    """
    order: list[str] = []
    grouped: dict[str, list[Condition]] = {}
    for cond in conditions:
        if cond.is_symbol_ref:
            continue
        if cond.scope not in grouped:
            order.append(cond.scope)
            grouped[cond.scope] = []
        grouped[cond.scope].append(cond)
    return tuple(ExchangeGroup(exchange=ex, conditions=tuple(grouped[ex])) for ex in order)


def plan_symbol_joins(conditions: Sequence[Condition]) -> Tuple[SymbolJoin, ...]:
    """One join per referenced symbol, aliased mt1, mt2, ... in order of first appearance."""
    order: list[str] = []
    grouped: dict[str, list[Condition]] = {}
    for cond in conditions:
        if not cond.is_symbol_ref:
            continue
        if cond.scope not in grouped:
            order.append(cond.scope)
            grouped[cond.scope] = []
        grouped[cond.scope].append(cond)
    return tuple(
        SymbolJoin(alias=f"mt{i}", symbol=sym, conditions=tuple(grouped[sym]))
        for i, sym in enumerate(order, start=1)
    )


@dataclass(frozen=True)
class CompiledQuery:
    """
    Store query for one expression.

    ``symbols`` is None for ALL (every symbol except the market-total pseudo
    symbol). ``row_cap`` bounds how many matching rows later stages see.
    """
    expression: SignalExpression
    symbols: Optional[Tuple[str, ...]]
    groups: Tuple[ExchangeGroup, ...]
    joins: Tuple[SymbolJoin, ...]
    row_cap: int
    start_ts: Optional[int] = None
    end_ts: Optional[int] = None
    columns: Tuple[str, ...] = field(default=("ts", "symbol", "exchange"))
    same_exchange_refs: bool = False

    def where_clause(self, placeholder: str = "?") -> Tuple[str, list[Any]]:
        clauses: list[str] = []
        params: list[Any] = []

        if self.symbols is None:
            clauses.append(f"pm.symbol <> {placeholder}")
            params.append(MARKET_TOTAL_SYMBOL)
        else:
            marks = ", ".join([placeholder] * len(self.symbols))
            clauses.append(f"pm.symbol IN ({marks})")
            params.extend(self.symbols)

        if self.groups:
            group_sql: list[str] = []
            for group in self.groups:
                parts = [f"pm.exchange = {placeholder}"]
                params.append(group.exchange)
                for cond in group.conditions:
                    parts.append(f"pm.{cond.column} {cond.operator} {placeholder}")
                    params.append(cond.threshold)
                group_sql.append("(" + " AND ".join(parts) + ")")
            clauses.append("(" + " OR ".join(group_sql) + ")")

        for join in self.joins:
            for cond in join.conditions:
                clauses.append(f"{join.alias}.{cond.column} {cond.operator} {placeholder}")
                params.append(cond.threshold)

        if self.start_ts is not None:
            clauses.append(f"pm.ts >= {placeholder}")
            params.append(int(self.start_ts))
        if self.end_ts is not None:
            clauses.append(f"pm.ts <= {placeholder}")
            params.append(int(self.end_ts))

        return " AND ".join(clauses), params

    def to_sql(self, paramstyle: str = "qmark") -> Tuple[str, list[Any]]:
        """
        Render SQL and its bound parameters.

        Args:
            paramstyle: 'qmark' for sqlite3, 'format' for psycopg2

        Returns:
            (sql, params)
        """
        try:
            ph = _PLACEHOLDERS[paramstyle]
        except KeyError as exc:
            raise ValueError(f"Unsupported paramstyle: {paramstyle!r}") from exc

        select_cols = ", ".join(f"pm.{c}" for c in self.columns)
        # a ts-only join yields one row per referenced exchange
        distinct = "DISTINCT " if self.joins else ""
        lines = [f"SELECT {distinct}{select_cols}", f"FROM {METRICS_TABLE} pm"]
        params: list[Any] = []
        for join in self.joins:
            on = f"pm.ts = {join.alias}.ts AND {join.alias}.symbol = {ph}"
            if self.same_exchange_refs:
                on += f" AND {join.alias}.exchange = pm.exchange"
            lines.append(f"LEFT JOIN {METRICS_TABLE} {join.alias} ON {on}")
            params.append(join.symbol)

        where_sql, where_params = self.where_clause(ph)
        lines.append(f"WHERE {where_sql}")
        params.extend(where_params)

        lines.append("ORDER BY pm.ts ASC, pm.symbol ASC, pm.exchange ASC")
        lines.append(f"LIMIT {ph}")
        params.append(int(self.row_cap))
        return "\n".join(lines), params


def compile_query(
    expr: SignalExpression,
    *,
    row_cap: int,
    start_ts: Optional[int] = None,
    end_ts: Optional[int] = None,
    columns: Sequence[str] = ("ts", "symbol", "exchange"),
    same_exchange_refs: bool = False,
) -> CompiledQuery:
    if int(row_cap) <= 0:
        raise ValueError("row_cap must be positive")
    return CompiledQuery(
        expression=expr,
        symbols=None if expr.all_symbols else tuple(expr.symbols),
        groups=partition_by_exchange(expr.conditions),
        joins=plan_symbol_joins(expr.conditions),
        row_cap=int(row_cap),
        start_ts=start_ts,
        end_ts=end_ts,
        columns=tuple(columns),
        same_exchange_refs=same_exchange_refs,
    )


# =============================================================================
# In-memory evaluation
# =============================================================================

def evaluate_groups(groups: Sequence[ExchangeGroup], frame: pd.DataFrame) -> pd.Series:
    """
    Exchange-partitioned mask over a metric frame.

    A row passes when the group for its own exchange holds. With no groups at
    all (only symbol references) every row passes.
    """
    if not groups:
        return pd.Series(True, index=frame.index)

    mask = pd.Series(False, index=frame.index)
    for group in groups:
        group_mask = frame["exchange"] == group.exchange
        for cond in group.conditions:
            group_mask &= vectorized_cmp(frame[cond.column], cond.threshold, cond.operator)
        mask |= group_mask
    return mask


def evaluate_query(query: CompiledQuery, frame: pd.DataFrame) -> pd.DataFrame:
    """
    Evaluate a compiled query against an in-memory frame of metric rows.

    ``frame`` must hold the rows of every referenced symbol as well. Returns
    the matching rows in the same order and cap the SQL version applies.
    """
    if frame.empty:
        return frame.iloc[0:0]

    if query.symbols is None:
        mask = frame["symbol"] != MARKET_TOTAL_SYMBOL
    else:
        mask = frame["symbol"].isin(query.symbols)
    mask &= evaluate_groups(query.groups, frame)
    if query.start_ts is not None:
        mask &= frame["ts"] >= int(query.start_ts)
    if query.end_ts is not None:
        mask &= frame["ts"] <= int(query.end_ts)

    for join in query.joins:
        ref = frame[frame["symbol"] == join.symbol]
        ref_mask = pd.Series(True, index=ref.index)
        for cond in join.conditions:
            ref_mask &= vectorized_cmp(ref[cond.column], cond.threshold, cond.operator)
        if query.same_exchange_refs:
            passing = set(zip(ref.loc[ref_mask, "ts"].to_numpy(np.int64), ref.loc[ref_mask, "exchange"]))
            keys = zip(frame["ts"].to_numpy(np.int64), frame["exchange"])
            mask &= pd.Series([k in passing for k in keys], index=frame.index)
        else:
            mask &= frame["ts"].isin(ref.loc[ref_mask, "ts"])

    out = frame[mask].sort_values(["ts", "symbol", "exchange"], kind="mergesort")
    return out.head(query.row_cap)

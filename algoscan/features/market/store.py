from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterator, Optional, Sequence

import pandas as pd

from algoscan.db.pg import is_postgres_url, pg_conn, pg_fetchall
from algoscan.errors import StoreError
from algoscan.features.algoql.compiler import CompiledQuery
from .schema import ALL_COLUMNS, MARKET_TOTAL_SYMBOL, METRICS_TABLE, DbRef

logger = logging.getLogger(__name__)


@contextmanager
def _sqlite_readonly(db_path: Path) -> Iterator[sqlite3.Connection]:
    if not db_path.exists():
        raise StoreError("Metric database not found", path=str(db_path))
    conn = sqlite3.connect(f"file:{db_path}?mode=ro", uri=True, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    try:
        yield conn
    finally:
        conn.close()


def _check_columns(columns: Sequence[str]) -> None:
    unknown = [c for c in columns if c not in ALL_COLUMNS]
    if unknown:
        raise ValueError(f"Unknown metric columns: {unknown}")


@dataclass(frozen=True)
class MetricStore:
    """
    Read-only access to the ``perp_metrics`` table.

    Every method opens its own connection, so one store can be shared by the
    fetch worker pool. Driver errors surface as StoreError with the symbol /
    exchange that was being read.
    """
    db_ref: DbRef

    @property
    def is_postgres(self) -> bool:
        return is_postgres_url(self.db_ref)

    @property
    def placeholder(self) -> str:
        return "%s" if self.is_postgres else "?"

    def _fetch(self, sql: str, params: Sequence[Any], **context: Any) -> list[tuple]:
        try:
            if self.is_postgres:
                with pg_conn(str(self.db_ref)) as conn:
                    rows = pg_fetchall(conn, sql, list(params))
            else:
                with _sqlite_readonly(Path(self.db_ref)) as conn:
                    rows = conn.execute(sql, list(params)).fetchall()
        except StoreError:
            raise
        except Exception as exc:
            logger.error("Metric store query failed: %s", exc)
            raise StoreError(f"Metric store query failed: {exc}", **context) from exc
        return [tuple(r) for r in rows]

    def _frame(self, rows: list[tuple], columns: Sequence[str]) -> pd.DataFrame:
        df = pd.DataFrame(rows, columns=list(columns))
        if "ts" in df.columns:
            df["ts"] = df["ts"].astype("int64")
        for col in df.columns:
            if col not in ("ts", "symbol", "exchange"):
                df[col] = pd.to_numeric(df[col], errors="coerce")
        return df

    # -------------------------------------------------------------------------
    # Catalog
    # -------------------------------------------------------------------------

    def list_symbols(
        self,
        exchange: Optional[str] = None,
        exclude: Sequence[str] = (MARKET_TOTAL_SYMBOL,),
    ) -> list[str]:
        ph = self.placeholder
        sql = f"SELECT DISTINCT symbol FROM {METRICS_TABLE}"
        params: list[Any] = []
        if exchange:
            sql += f" WHERE exchange = {ph}"
            params.append(exchange)
        sql += " ORDER BY symbol"
        rows = self._fetch(sql, params, exchange=exchange)
        excluded = set(exclude)
        return [str(r[0]) for r in rows if str(r[0]) not in excluded]

    def list_columns(self) -> list[str]:
        if self.is_postgres:
            rows = self._fetch(
                "SELECT column_name FROM information_schema.columns "
                "WHERE table_name = %s ORDER BY ordinal_position",
                [METRICS_TABLE],
            )
            return [str(r[0]) for r in rows]
        rows = self._fetch(f"PRAGMA table_info({METRICS_TABLE})", [])
        return [str(r[1]) for r in rows]

    def time_bounds(
        self,
        symbol: Optional[str] = None,
        exchange: Optional[str] = None,
    ) -> tuple[Optional[int], Optional[int]]:
        ph = self.placeholder
        clauses: list[str] = []
        params: list[Any] = []
        if symbol:
            clauses.append(f"symbol = {ph}")
            params.append(symbol)
        if exchange:
            clauses.append(f"exchange = {ph}")
            params.append(exchange)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self._fetch(
            f"SELECT MIN(ts), MAX(ts) FROM {METRICS_TABLE}{where}",
            params,
            symbol=symbol,
            exchange=exchange,
        )
        if not rows or rows[0][0] is None:
            return None, None
        return int(rows[0][0]), int(rows[0][1])

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def fetch_series(
        self,
        symbol: str,
        exchange: str,
        start_ts: int,
        end_ts: int,
        columns: Sequence[str] = ("ts", "c"),
    ) -> pd.DataFrame:
        """Rows for one (symbol, exchange) with start_ts <= ts <= end_ts, ts ascending."""
        _check_columns(columns)
        ph = self.placeholder
        sql = (
            f"SELECT {', '.join(columns)} FROM {METRICS_TABLE} "
            f"WHERE symbol = {ph} AND exchange = {ph} AND ts >= {ph} AND ts <= {ph} "
            "ORDER BY ts ASC"
        )
        rows = self._fetch(sql, [symbol, exchange, int(start_ts), int(end_ts)], symbol=symbol, exchange=exchange)
        return self._frame(rows, columns)

    def fetch_matching(self, query: CompiledQuery) -> pd.DataFrame:
        """Rows matching a compiled AlgoQL query, ts ascending, at most query.row_cap."""
        sql, params = query.to_sql("format" if self.is_postgres else "qmark")
        expr = query.expression
        rows = self._fetch(
            sql,
            params,
            symbols=expr.symbols_label,
            exchanges=",".join(expr.exchanges) or None,
        )
        if len(rows) >= query.row_cap:
            logger.warning("Query hit the row cap (%d) for %s; later rows were not read", query.row_cap, expr.symbols_label)
        return self._frame(rows, query.columns)

    def fetch_frame(
        self,
        exchanges: Sequence[str],
        columns: Sequence[str],
        start_ts: int,
        end_ts: int,
        symbols: Optional[Sequence[str]] = None,
    ) -> pd.DataFrame:
        """
        Bulk read used by the scanner: key columns plus ``columns`` for the given
        exchanges (and symbols, when given) over [start_ts, end_ts].
        """
        value_cols = [c for c in columns if c not in ("ts", "symbol", "exchange")]
        all_cols = ["ts", "symbol", "exchange", *value_cols]
        _check_columns(all_cols)
        if not exchanges:
            return pd.DataFrame(columns=all_cols)

        ph = self.placeholder
        clauses = [f"exchange IN ({', '.join([ph] * len(exchanges))})", f"ts >= {ph}", f"ts <= {ph}"]
        params: list[Any] = [*exchanges, int(start_ts), int(end_ts)]
        if symbols is not None:
            if not symbols:
                return pd.DataFrame(columns=all_cols)
            clauses.append(f"symbol IN ({', '.join([ph] * len(symbols))})")
            params.extend(symbols)
        else:
            clauses.append(f"symbol <> {ph}")
            params.append(MARKET_TOTAL_SYMBOL)

        sql = (
            f"SELECT {', '.join(all_cols)} FROM {METRICS_TABLE} "
            f"WHERE {' AND '.join(clauses)} ORDER BY ts ASC, symbol ASC, exchange ASC"
        )
        rows = self._fetch(sql, params, exchanges=",".join(exchanges), start_ts=start_ts, end_ts=end_ts)
        return self._frame(rows, all_cols)

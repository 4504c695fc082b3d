"""
Layout of the ``perp_metrics`` table.

The table is produced upstream by the collectors and the percent-change
calculator; this package only reads it. ``init_metrics_db`` and
``insert_metric_rows`` exist for local fixtures and tests.
"""

from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterable, Iterator, Optional

import pandas as pd

from algoscan.db.pg import is_postgres_url, pg_conn

DbRef = str | Path

METRICS_TABLE = "perp_metrics"

EXCHANGES: tuple[str, ...] = ("bin", "byb", "okx")
HORIZONS: tuple[str, ...] = ("1m", "5m", "10m")

# raw field -> human name
RAW_FIELDS: dict[str, str] = {
    "o": "open",
    "h": "high",
    "l": "low",
    "c": "close",
    "v": "volume",
    "oi": "openInterest",
    "pfr": "fundingRate",
    "lsr": "longShortRatio",
    "rsi1": "rsiFast",
    "rsi60": "rsiSlow",
    "tbv": "takerBuyVol",
    "tsv": "takerSellVol",
    "lql": "liquidationLong",
    "lqs": "liquidationShort",
}

CHANGE_FIELDS: tuple[str, ...] = ("c", "v", "oi", "pfr", "lsr", "rsi1", "rsi60", "tbv", "tsv", "lql", "lqs")

# Pseudo symbol holding market-wide totals; never traded.
MARKET_TOTAL_SYMBOL = "MT"


def change_column(metric: str, horizon: str) -> str:
    return f"{metric}_chg_{horizon}"


CHANGE_COLUMNS: tuple[str, ...] = tuple(change_column(f, h) for f in CHANGE_FIELDS for h in HORIZONS)
KEY_COLUMNS: tuple[str, ...] = ("ts", "symbol", "exchange")
ALL_COLUMNS: tuple[str, ...] = KEY_COLUMNS + tuple(RAW_FIELDS) + CHANGE_COLUMNS


@contextmanager
def sqlite_conn(db_path: DbRef) -> Iterator[sqlite3.Connection]:
    conn = sqlite3.connect(str(db_path), check_same_thread=False)
    conn.row_factory = sqlite3.Row
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def _create_table_sql(real_type: str, int_type: str) -> str:
    value_cols = ",\n".join(f"    {name} {real_type}" for name in tuple(RAW_FIELDS) + CHANGE_COLUMNS)
    return (
        f"CREATE TABLE IF NOT EXISTS {METRICS_TABLE} (\n"
        f"    ts {int_type} NOT NULL,\n"
        "    symbol TEXT NOT NULL,\n"
        "    exchange TEXT NOT NULL,\n"
        f"{value_cols},\n"
        "    PRIMARY KEY (ts, symbol, exchange)\n"
        ")"
    )


_INDEX_SQL = f"CREATE INDEX IF NOT EXISTS idx_perp_metrics_lookup ON {METRICS_TABLE}(symbol, exchange, ts)"


def init_metrics_db(db_path: DbRef) -> DbRef:
    if is_postgres_url(db_path):
        with pg_conn(str(db_path)) as conn:
            cur = conn.cursor()
            cur.execute(_create_table_sql("DOUBLE PRECISION", "BIGINT"))
            cur.execute(_INDEX_SQL)
        return str(db_path)

    path = Path(db_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with sqlite_conn(path) as conn:
        conn.execute(_create_table_sql("REAL", "INTEGER"))
        conn.execute(_INDEX_SQL)
    return path


def insert_metric_rows(db_path: DbRef, rows: pd.DataFrame | Iterable[dict]) -> int:
    """
    Insert metric rows. Missing value columns are stored as NULL.

    Args:
        db_path: SQLite path or Postgres URL
        rows: DataFrame or iterable of dicts with at least ts/symbol/exchange

    Returns:
        Number of rows written
    """
    frame = rows if isinstance(rows, pd.DataFrame) else pd.DataFrame(list(rows))
    if frame.empty:
        return 0
    missing = [k for k in KEY_COLUMNS if k not in frame.columns]
    if missing:
        raise ValueError(f"Metric rows missing key columns: {missing}")

    columns = [c for c in ALL_COLUMNS if c in frame.columns]
    values = [
        tuple(_to_db_value(row[c]) for c in columns)
        for row in frame[columns].to_dict(orient="records")
    ]

    init_metrics_db(db_path)
    col_sql = ", ".join(columns)
    if is_postgres_url(db_path):
        placeholders = ", ".join(["%s"] * len(columns))
        updates = ", ".join(f"{c} = EXCLUDED.{c}" for c in columns if c not in KEY_COLUMNS)
        sql = (
            f"INSERT INTO {METRICS_TABLE} ({col_sql}) VALUES ({placeholders}) "
            f"ON CONFLICT (ts, symbol, exchange) DO UPDATE SET {updates}"
        )
        with pg_conn(str(db_path)) as conn:
            conn.cursor().executemany(sql, values)
        return len(values)

    placeholders = ", ".join(["?"] * len(columns))
    with sqlite_conn(db_path) as conn:
        conn.executemany(f"INSERT OR REPLACE INTO {METRICS_TABLE} ({col_sql}) VALUES ({placeholders})", values)
    return len(values)


def _to_db_value(value: object) -> Optional[object]:
    if value is None:
        return None
    if isinstance(value, float) and pd.isna(value):
        return None
    if hasattr(value, "item"):
        # numpy scalar
        return value.item()
    return value

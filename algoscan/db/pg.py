from __future__ import annotations

from contextlib import contextmanager
import logging
import os
import time
from typing import Any, Iterator

logger = logging.getLogger(__name__)


def is_postgres_url(value: Any) -> bool:
    if not isinstance(value, str):
        return False
    v = value.strip().lower()
    return v.startswith("postgres://") or v.startswith("postgresql://")


@contextmanager
def pg_conn(database_url: str) -> Iterator[Any]:
    """
    Read-mostly Postgres connection context manager.

    psycopg2 is imported lazily so SQLite-only deployments never need it.
    Connection attempts are retried PG_CONNECT_RETRIES times.
    """
    try:
        import psycopg2  # type: ignore
        from psycopg2.extras import DictCursor  # type: ignore
    except ImportError as exc:  # pragma: no cover
        raise RuntimeError("Postgres support requires psycopg2-binary") from exc

    retries = max(1, int(os.getenv("PG_CONNECT_RETRIES", "8")))
    delay_seconds = float(os.getenv("PG_CONNECT_DELAY_SECONDS", "1.0"))
    connect_timeout = int(os.getenv("PG_CONNECT_TIMEOUT", "5"))

    conn = None
    for attempt in range(retries):
        try:
            conn = psycopg2.connect(
                str(database_url),
                cursor_factory=DictCursor,
                connect_timeout=connect_timeout,
            )
            break
        except psycopg2.OperationalError as exc:
            if attempt >= retries - 1:
                raise
            logger.warning("Postgres connect failed (attempt %d/%d): %s", attempt + 1, retries, exc)
            time.sleep(delay_seconds)
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def pg_fetchall(conn: Any, sql: str, params: tuple[Any, ...] | list[Any] | None = None) -> list[Any]:
    cur = conn.cursor()
    try:
        cur.execute(sql, params or ())
        return cur.fetchall()
    finally:
        cur.close()

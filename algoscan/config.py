from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


def _repo_root() -> Path:
    return Path(__file__).resolve().parents[1]


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "t", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return int(value)


def _env_path(name: str, default: Path) -> Path:
    value = os.getenv(name)
    if not value:
        return default
    return Path(value).expanduser()


@dataclass(frozen=True)
class Settings:
    database_url: str | None
    redis_url: str | None

    metrics_db_path: str | Path
    report_dir: Path

    fetch_workers: int
    eval_workers: int
    query_row_cap: int
    batch_size_minutes: int
    price_cache_bucket_minutes: int
    enable_price_cache: bool

    log_level: str


def get_settings() -> Settings:
    repo_root = _repo_root()
    database_url = os.getenv("DATABASE_URL")
    redis_url = os.getenv("REDIS_URL")

    data_dir = repo_root / "data"
    if not database_url:
        data_dir.mkdir(parents=True, exist_ok=True)

    if database_url:
        metrics_db_path: str | Path = os.getenv("METRICS_DATABASE_URL") or database_url
    else:
        metrics_db_path = _env_path("METRICS_DB_PATH", data_dir / "perp_metrics.db")

    return Settings(
        database_url=database_url,
        redis_url=redis_url,
        metrics_db_path=metrics_db_path,
        report_dir=_env_path("REPORT_DIR", data_dir / "reports"),
        fetch_workers=max(1, _env_int("FETCH_WORKERS", 8)),
        eval_workers=max(1, _env_int("EVAL_WORKERS", 8)),
        query_row_cap=max(1, _env_int("QUERY_ROW_CAP", 10000)),
        batch_size_minutes=max(1, _env_int("BATCH_SIZE_MINUTES", 1440)),
        price_cache_bucket_minutes=max(1, _env_int("PRICE_CACHE_BUCKET_MINUTES", 1440)),
        enable_price_cache=_env_bool("ENABLE_PRICE_CACHE", True),
        log_level=(os.getenv("LOG_LEVEL") or "INFO").upper(),
    )

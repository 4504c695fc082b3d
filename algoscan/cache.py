from __future__ import annotations

import json
import logging
from typing import Any, Optional

logger = logging.getLogger(__name__)


def get_redis_client(redis_url: str | None):
    """Redis client for REDIS_URL, or None when caching is not configured."""
    if not redis_url:
        return None
    try:
        import redis  # type: ignore
    except ImportError:  # pragma: no cover
        logger.warning("REDIS_URL is set but the redis package is not installed; caching disabled")
        return None
    return redis.Redis.from_url(str(redis_url), decode_responses=True)


def redis_get_json(client, key: str) -> Optional[Any]:
    if client is None:
        return None
    try:
        raw = client.get(key)
    except Exception as exc:
        # cache misses never fail a request
        logger.warning("Redis GET %s failed: %s", key, exc)
        return None
    if not raw:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        logger.warning("Discarding non-JSON cache entry %s", key)
        return None


def redis_set_json(client, key: str, value: Any, *, ttl_seconds: int) -> None:
    if client is None:
        return
    try:
        client.setex(key, int(ttl_seconds), json.dumps(value, default=str))
    except Exception as exc:
        logger.warning("Redis SETEX %s failed: %s", key, exc)

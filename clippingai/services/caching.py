"""
Redis-backed JSON cache for provider responses.

Caching is optional: without REDIS_URL every lookup misses and every write is
dropped, so callers never need to branch on whether Redis is configured.
"""
from __future__ import annotations

import hashlib
import json
import logging
from typing import Any

import redis

from ..core.config import get_settings

logger = logging.getLogger(__name__)

CACHE_KEY_PREFIX = "clippingai:cache:"


def make_cache_key(namespace: str, params: dict[str, Any]) -> str:
    """Stable key for a request: the namespace plus a digest of its canonical JSON."""
    canonical = json.dumps(params, sort_keys=True, separators=(",", ":"), default=str)
    digest = hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:32]
    return f"{CACHE_KEY_PREFIX}{namespace}:{digest}"


def _open_client(redis_url: str | None = None) -> redis.Redis | None:
    url = redis_url if redis_url is not None else get_settings().REDIS_URL
    if not url:
        return None
    return redis.from_url(
        str(url),
        decode_responses=True,
        socket_timeout=5,
        socket_connect_timeout=5,
    )


def _read(client: redis.Redis, key: str) -> Any:
    raw = client.get(key)
    return None if raw is None else json.loads(raw)


def _write(client: redis.Redis, key: str, value: Any, ttl: int | None) -> None:
    client.set(key, json.dumps(value), ex=ttl)


async def cached_get(
    key: str,
    set_value: Any | None = None,
    ttl: int | None = None,
    *,
    redis_url: str | None = None,
) -> Any:
    """
    Read or write one cache entry.

        hit = await cached_get(key)
        await cached_get(key, set_value=payload, ttl=3600)

    Reads return the decoded value or None. Writes return ``set_value``.
    Redis failures are logged and treated as a miss. ``redis_url`` overrides
    REDIS_URL; an empty string disables the cache.
    """
    client = _open_client(redis_url)
    if client is None:
        return set_value

    try:
        if set_value is None:
            return _read(client, key)
        _write(client, key, set_value, ttl)
        return set_value
    except (redis.RedisError, ValueError) as e:
        logger.warning("Cache unavailable for %s: %s", key, e)
        return None if set_value is None else set_value
    finally:
        client.close()

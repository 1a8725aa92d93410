"""Redis-backed key/value cache with an in-process fallback.

The resolver memoises confident resolutions here, keyed by the normalised
input text, and a finished sync clears them. Redis is optional: when it is
disabled or unreachable every call transparently uses a bounded in-memory
dictionary, so a single-process deployment behaves the same way.
"""

from __future__ import annotations

import asyncio
import fnmatch
import hashlib
import json
import time
from typing import Any, Optional

import redis.asyncio as redis
from loguru import logger

from delivery_locations.core.config import settings

REDIS_OP_TIMEOUT_SEC = 0.1

_redis_client: Optional[redis.Redis] = None
_redis_checked: bool = False

# {key: (value, expiry_timestamp)}; expiry 0 means no expiry
_memory_cache: dict[str, tuple[Any, float]] = {}
_memory_cache_max_size: int = 5000


async def get_redis_client() -> Optional[redis.Redis]:
    """Connect once; afterwards return the client or None if Redis is unavailable."""
    global _redis_client, _redis_checked

    if not settings.REDIS_ENABLED:
        return None
    if _redis_checked:
        return _redis_client

    _redis_checked = True
    client = redis.Redis(
        host=settings.REDIS_HOST,
        port=settings.REDIS_PORT,
        db=settings.REDIS_DB,
        password=settings.REDIS_PASSWORD,
        decode_responses=True,
        socket_connect_timeout=0.5,
        socket_timeout=0.5,
    )
    try:
        await asyncio.wait_for(client.ping(), timeout=0.5)
    except (redis.RedisError, OSError, asyncio.TimeoutError) as exc:
        logger.bind(error=str(exc)).warning("redis_unavailable_using_memory_cache")
        await client.aclose()
        return None
    _redis_client = client
    logger.info("redis_connected")
    return _redis_client


async def close_redis_client() -> None:
    """Close the Redis connection and forget the availability check."""
    global _redis_client, _redis_checked
    if _redis_client is not None:
        await _redis_client.aclose()
    _redis_client = None
    _redis_checked = False


def reset_memory_cache() -> None:
    _memory_cache.clear()


def generate_cache_key(prefix: str, value: str) -> str:
    """Namespace a free-text value under ``prefix``; long values are hashed."""
    if len(value) > 120:
        value = hashlib.sha256(value.encode("utf-8")).hexdigest()
    return f"{prefix}:{value}"


def _get_memory_cache(key: str) -> Optional[Any]:
    entry = _memory_cache.get(key)
    if entry is None:
        return None
    value, expiry = entry
    if expiry > 0 and time.time() > expiry:
        del _memory_cache[key]
        return None
    return value


def _set_memory_cache(key: str, value: Any, ttl: int) -> None:
    if len(_memory_cache) >= _memory_cache_max_size:
        # drop the oldest 10%
        for stale_key in list(_memory_cache.keys())[: _memory_cache_max_size // 10]:
            del _memory_cache[stale_key]
    expiry = time.time() + ttl if ttl > 0 else 0
    _memory_cache[key] = (value, expiry)


async def get_cache(key: str) -> Optional[Any]:
    """Get a JSON value from Redis, falling back to memory."""
    client = await get_redis_client()
    if client is not None:
        try:
            raw = await asyncio.wait_for(client.get(key), timeout=REDIS_OP_TIMEOUT_SEC)
            if raw:
                return json.loads(raw)
        except (redis.RedisError, asyncio.TimeoutError, ValueError) as exc:
            logger.bind(key=key, error=str(exc)).debug("redis_get_failed")
    return _get_memory_cache(key)


async def set_cache(key: str, value: Any, ttl: int) -> None:
    """Store a JSON-serialisable value in Redis (when available) and in memory."""
    client = await get_redis_client()
    if client is not None:
        try:
            await client.setex(key, ttl, json.dumps(value, ensure_ascii=False))
        except (redis.RedisError, asyncio.TimeoutError) as exc:
            logger.bind(key=key, error=str(exc)).debug("redis_set_failed")
    _set_memory_cache(key, value, ttl)


async def delete_cache(key: str) -> bool:
    deleted = False
    client = await get_redis_client()
    if client is not None:
        try:
            deleted = bool(await client.delete(key))
        except redis.RedisError as exc:
            logger.bind(key=key, error=str(exc)).debug("redis_delete_failed")
    if _memory_cache.pop(key, None) is not None:
        deleted = True
    return deleted


async def clear_cache_pattern(pattern: str) -> int:
    """Delete every key matching a glob pattern from Redis and memory."""
    deleted_count = 0
    client = await get_redis_client()
    if client is not None:
        try:
            keys = [key async for key in client.scan_iter(match=pattern)]
            if keys:
                deleted_count += await client.delete(*keys)
        except redis.RedisError as exc:
            logger.bind(pattern=pattern, error=str(exc)).warning("redis_clear_failed")

    for key in [k for k in _memory_cache if fnmatch.fnmatch(k, pattern)]:
        del _memory_cache[key]
        deleted_count += 1
    return deleted_count

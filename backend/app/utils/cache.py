"""Redis caching utilities for read-only ledger views.

Lineage and history reads are cached per organisation and invalidated
after every mutation of the batches they cover.  Redis is optional at
runtime: any RedisError degrades to an uncached read.
"""

import functools
import hashlib
import json
import logging
from datetime import date, datetime
from typing import Callable, Optional

import redis.asyncio as redis
from app.config import settings
from app.tenancy import _tenant_ctx

logger = logging.getLogger(__name__)

# Global Redis connection pool
_redis_client: Optional[redis.Redis] = None


async def get_redis() -> redis.Redis:
    """Get or create Redis client connection."""
    global _redis_client
    if _redis_client is None:
        _redis_client = redis.from_url(
            settings.redis_url,
            encoding="utf-8",
            decode_responses=True,
            max_connections=50,
        )
    return _redis_client


async def close_redis():
    """Close Redis connection (call on app shutdown)."""
    global _redis_client
    if _redis_client:
        await _redis_client.aclose()
        _redis_client = None


def cache_key(*args, **kwargs) -> str:
    """Generate a deterministic hash from arguments."""
    if not args and not kwargs:
        return "default"

    key_data = json.dumps({"args": args, "kwargs": kwargs}, sort_keys=True)
    return hashlib.md5(key_data.encode()).hexdigest()


def scoped_key(key: str) -> str:
    """Prefix `key` with the current organisation, if there is one."""
    org_id = _tenant_ctx.get()
    return f"t:{org_id}:{key}" if org_id else key


def cached(
    ttl: int = 300,
    prefix: str = "cache",
    key_builder: Optional[Callable] = None,
):
    """Decorator to cache JSON-serialisable results in Redis.

    Args:
        ttl: Time-to-live in seconds (default: 300 = 5 minutes)
        prefix: Cache key prefix for namespacing
        key_builder: Custom function to build cache key from args/kwargs

    Example:
        @cached(ttl=120, prefix="ancestry", key_builder=lambda batch_id, **_: batch_id)
        async def get_ancestry(batch_id: str, db: AsyncSession, ...):
            ...

    Cache keys: t:{org_id}:{prefix}:{key}
    """

    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            if key_builder:
                key = scoped_key(f"{prefix}:{key_builder(*args, **kwargs)}")
            else:
                # Only simple kwargs go into the key; injected sessions and
                # actors are skipped
                cache_kwargs = {}
                for k, v in kwargs.items():
                    if k.startswith("_"):
                        continue
                    if isinstance(v, (int, str, bool, float, type(None))):
                        cache_kwargs[k] = v
                    elif isinstance(v, (date, datetime)):
                        cache_kwargs[k] = v.isoformat()
                key = scoped_key(f"{prefix}:{func.__name__}:{cache_key(**cache_kwargs)}")

            try:
                redis_client = await get_redis()
                cached_value = await redis_client.get(key)
                if cached_value:
                    logger.debug(f"Cache HIT: {key}")
                    return json.loads(cached_value)
                logger.debug(f"Cache MISS: {key}")
            except redis.RedisError as e:
                logger.warning(f"Redis error (falling back to uncached): {e}")
                return await func(*args, **kwargs)

            result = await func(*args, **kwargs)

            if hasattr(result, "model_dump"):
                serialized = result.model_dump(mode="json")
            elif isinstance(result, list) and result and hasattr(result[0], "model_dump"):
                serialized = [item.model_dump(mode="json") for item in result]
            else:
                serialized = result

            try:
                await redis_client.setex(key, ttl, json.dumps(serialized, default=str))
            except redis.RedisError as e:
                logger.warning(f"Redis error (result not cached): {e}")
            return result

        return wrapper

    return decorator


async def invalidate_cache(pattern: str):
    """Invalidate cache keys matching a pattern, scoped to the current organisation.

    Example:
        await invalidate_cache(f"ancestry:*")  # Clears this org's lineage caches
    """
    scoped_pattern = scoped_key(pattern)
    try:
        redis_client = await get_redis()
        keys = []
        async for key in redis_client.scan_iter(match=scoped_pattern):
            keys.append(key)

        if keys:
            await redis_client.delete(*keys)
            logger.info(f"Invalidated {len(keys)} cache keys matching {scoped_pattern}")
    except redis.RedisError as e:
        logger.warning(f"Failed to invalidate cache: {e}")

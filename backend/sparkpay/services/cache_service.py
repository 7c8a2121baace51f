"""
Redis cache for ticket availability reads.

Snapshots are stored per ticket and day under "availability:{ticket_id}:{date}"
as JSON. The booking page polls every slot of a day, so serving the snapshot
from Redis saves re-aggregating the buckets on each poll.

Any path that moves capacity (checkout, webhook, sync, cancel, sweep) drops
every snapshot; REDIS_CACHE_TTL bounds staleness if a drop is missed.

The cache is advisory. Reservations always run their conditional UPDATE
against the database, so a stale snapshot can make a slot look free but can
never make it double-sold. Every Redis error fails open to the database.
"""

import json
import time
from datetime import date
from typing import Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from sparkpay.core.config import get_settings
from sparkpay.core.logging import get_logger

logger = get_logger(__name__)
settings = get_settings()

AVAILABILITY_PREFIX = "availability:"
INVALIDATE_BATCH = 200

_client: Optional[redis.Redis] = None
# Monotonic deadline before which no reconnect is attempted
_retry_after: float = 0.0


async def get_redis() -> Optional[redis.Redis]:
    """
    Return the shared client, connecting lazily.

    None means "no cache": Redis is disabled, or the last connection attempt
    failed less than REDIS_RETRY_COOLDOWN_SECONDS ago. Request paths never
    wait on a dead Redis for more than one short connect timeout per cooldown.
    """
    global _client, _retry_after

    if not settings.REDIS_ENABLED:
        return None
    if _client is not None:
        return _client
    if time.monotonic() < _retry_after:
        return None

    candidate = redis.from_url(
        settings.REDIS_URL,
        encoding="utf-8",
        decode_responses=True,
        socket_connect_timeout=2,
        socket_timeout=2,
        health_check_interval=30,
    )
    try:
        await candidate.ping()
    except (RedisError, OSError) as e:
        _retry_after = time.monotonic() + settings.REDIS_RETRY_COOLDOWN_SECONDS
        logger.warning(
            "redis_connect_failed",
            error=str(e),
            retry_in_seconds=settings.REDIS_RETRY_COOLDOWN_SECONDS,
        )
        await candidate.aclose()
        return None

    _client = candidate
    logger.info("redis_connected", url=settings.REDIS_URL)
    return _client


def _drop_client(error: Exception, operation: str) -> None:
    """Forget a client that just failed so the next call goes through the cooldown."""
    global _client, _retry_after
    logger.warning("cache_operation_failed", operation=operation, error=str(error))
    _client = None
    _retry_after = time.monotonic() + settings.REDIS_RETRY_COOLDOWN_SECONDS


async def close_redis() -> None:
    global _client
    if _client is not None:
        await _client.aclose()
        _client = None


def _availability_key(ticket_id: int, day: date) -> str:
    return f"{AVAILABILITY_PREFIX}{ticket_id}:{day.isoformat()}"


async def get_cached_availability(ticket_id: int, day: date) -> Optional[dict]:
    client = await get_redis()
    if client is None:
        return None

    key = _availability_key(ticket_id, day)
    try:
        raw = await client.get(key)
    except (RedisError, OSError) as e:
        _drop_client(e, "get")
        return None

    if raw is None:
        logger.debug("cache_miss", key=key)
        return None
    logger.debug("cache_hit", key=key)
    return json.loads(raw)


async def set_cached_availability(ticket_id: int, day: date, data: dict) -> None:
    client = await get_redis()
    if client is None:
        return

    key = _availability_key(ticket_id, day)
    try:
        await client.set(key, json.dumps(data, default=str), ex=settings.REDIS_CACHE_TTL)
    except (RedisError, OSError) as e:
        _drop_client(e, "set")


async def invalidate_availability_cache() -> int:
    """
    Drop every availability snapshot and return how many keys were removed.

    Keys are collected with SCAN and unlinked in batches so a large keyspace
    neither blocks Redis nor costs one round trip per key.
    """
    client = await get_redis()
    if client is None:
        return 0

    removed = 0
    batch: list[str] = []
    try:
        async for key in client.scan_iter(match=f"{AVAILABILITY_PREFIX}*", count=INVALIDATE_BATCH):
            batch.append(key)
            if len(batch) >= INVALIDATE_BATCH:
                removed += await client.unlink(*batch)
                batch.clear()
        if batch:
            removed += await client.unlink(*batch)
    except (RedisError, OSError) as e:
        _drop_client(e, "invalidate")
        return removed

    logger.debug("availability_cache_invalidated", keys_removed=removed)
    return removed


async def get_cache_stats() -> dict:
    """Cache state for the health endpoint."""
    if not settings.REDIS_ENABLED:
        return {"status": "disabled"}

    client = await get_redis()
    if client is None:
        return {"status": "unavailable"}

    try:
        info = await client.info("stats")
    except (RedisError, OSError) as e:
        _drop_client(e, "info")
        return {"status": "error", "error": str(e)}

    hits = info.get("keyspace_hits", 0)
    misses = info.get("keyspace_misses", 0)
    return {
        "status": "connected",
        "hits": hits,
        "misses": misses,
        "hit_rate": round(hits / max(hits + misses, 1) * 100, 2),
    }

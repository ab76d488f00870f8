"""Redis-based idempotency keys and short-lived poll locks."""

import logging

import redis.asyncio as aioredis

from unitpay.core.config import settings

logger = logging.getLogger(__name__)

_redis: aioredis.Redis | None = None


async def get_redis() -> aioredis.Redis:
    global _redis
    if _redis is None:
        _redis = aioredis.from_url(settings.redis_url, decode_responses=True)
    return _redis


async def check_idempotency(key: str, ttl: int = 300) -> bool:
    """Return True if this is the first call with this key (proceed).

    Return False if a duplicate (skip).
    """
    try:
        r = await get_redis()
        was_set = await r.set(f"idempotent:{key}", "1", nx=True, ex=ttl)
        return bool(was_set)
    except Exception:
        logger.exception("Idempotency check failed for key=%s, allowing through", key)
        return True


async def clear_idempotency(key: str) -> None:
    """Forget a key so the next delivery with it is processed."""
    try:
        r = await get_redis()
        await r.delete(f"idempotent:{key}")
    except Exception:
        logger.exception("Failed to clear idempotency key=%s", key)


async def acquire_poll_lock(intent_id: int, ttl: int | None = None) -> bool:
    """Claim the single live poller slot for an intent.

    Returns False while another poller holds the slot.
    """
    ttl = ttl or settings.poll_lock_ttl_seconds
    try:
        r = await get_redis()
        was_set = await r.set(f"poll:intent:{intent_id}", "1", nx=True, ex=ttl)
        return bool(was_set)
    except Exception:
        logger.exception("Poll lock failed for intent=%s, allowing through", intent_id)
        return True


async def release_poll_lock(intent_id: int) -> None:
    try:
        r = await get_redis()
        await r.delete(f"poll:intent:{intent_id}")
    except Exception:
        logger.exception("Failed to release poll lock for intent=%s", intent_id)

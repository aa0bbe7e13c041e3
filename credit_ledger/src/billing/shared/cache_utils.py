"""
Cache Utilities for Billing

The only cached value is each user's next grant expiry. It decides whether a
balance read should run a lazy expiration sweep first. Balances themselves
are always read from the ledger store.

All helpers fail open: on a Redis error they log a warning and behave as a
cache miss, because the balance calculator excludes expired grants anyway.
"""

import logging
from datetime import datetime
from typing import Optional

from credit_ledger.core.conf import settings

logger = logging.getLogger(__name__)


def _next_expiry_key(user_id: str) -> str:
    return f"{settings.REDIS_KEY_PREFIX}:next_expiry:{user_id}"


async def get_cached_next_expiry(user_id: str) -> Optional[datetime]:
    """
    Read the cached next expiry for a user.

    Returns:
        The cached datetime, or None on a miss or when Redis is unavailable
    """
    from credit_ledger.database.redis import redis_client

    if redis_client is None:
        return None

    try:
        value = await redis_client.get(_next_expiry_key(user_id))
    except Exception as e:
        logger.warning(f"[CACHE] Failed to read next expiry for {user_id}: {e}")
        return None

    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        logger.warning(f"[CACHE] Discarding unparseable next expiry for {user_id}: {value!r}")
        return None


async def set_cached_next_expiry(user_id: str, next_expiry: Optional[datetime]) -> bool:
    """
    Store (or clear, when next_expiry is None) a user's next expiry.

    Returns:
        True if the cache was updated, False on error or when Redis is disabled
    """
    from credit_ledger.database.redis import redis_client

    if redis_client is None:
        return False

    try:
        key = _next_expiry_key(user_id)
        if next_expiry is None:
            await redis_client.delete(key)
        else:
            await redis_client.set(key, next_expiry.isoformat(), ex=settings.EXPIRY_CACHE_TTL_SECONDS)
        return True
    except Exception as e:
        logger.warning(f"[CACHE] Failed to store next expiry for {user_id}: {e}")
        return False


async def invalidate_next_expiry(user_id: str) -> bool:
    """
    Drop the cached next expiry, e.g. after a new expiring grant.

    Returns:
        True if the cache was invalidated, False on error
    """
    return await set_cached_next_expiry(user_id, None)


async def is_sweep_due(user_id: str, as_of: datetime) -> bool:
    """True when the cached next expiry for the user has passed."""
    next_expiry = await get_cached_next_expiry(user_id)
    return next_expiry is not None and next_expiry <= as_of

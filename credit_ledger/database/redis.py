"""
Redis client

Only used as a hint cache (each user's next grant expiry). The ledger never
reads balances from Redis; when Redis is not configured, ``redis_client`` is
None and every caller treats the cache as a miss.
"""

import logging

from redis.asyncio import Redis

from credit_ledger.core.conf import settings

logger = logging.getLogger(__name__)


class RedisCli(Redis):
    """Redis client with key prefixing helpers."""

    def key(self, *parts: str) -> str:
        return ':'.join((settings.REDIS_KEY_PREFIX, *parts))

    async def delete_prefix(self, prefix: str) -> None:
        """Delete every key under a prefix."""
        keys = [key async for key in self.scan_iter(match=f'{self.key(prefix)}*')]
        if keys:
            await self.delete(*keys)


def create_redis_client(url: str | None) -> RedisCli | None:
    if not url:
        return None
    return RedisCli.from_url(
        url,
        socket_timeout=settings.REDIS_TIMEOUT,
        socket_connect_timeout=settings.REDIS_TIMEOUT,
        decode_responses=True,
    )


redis_client = create_redis_client(settings.REDIS_URL)

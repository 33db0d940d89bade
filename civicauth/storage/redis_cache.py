from __future__ import annotations

import json
from typing import Optional, Set

import redis.asyncio as aioredis

from civicauth.logging import get_logger

logger = get_logger(__name__)


class RedisCache:
    """Redis-backed TTL store shared by every service instance.

    Implements the same interface as ``MemoryTTLStore``; Redis expires keys on
    its own so :meth:`purge_expired` only has index members to look after.
    """

    _POP_SCRIPT = """
local value = redis.call('GET', KEYS[1])
if value then
    redis.call('DEL', KEYS[1])
end
return value
"""

    def __init__(
        self, redis_url: str, *, socket_timeout: float = 5.0, prefix: str = "civicauth"
    ):
        self.redis_url = redis_url
        self.prefix = prefix
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def _key(self, key: str) -> str:
        return f"{self.prefix}:{key}"

    def _index_key(self, index: str) -> str:
        return f"{self.prefix}:index:{index}"

    @staticmethod
    def _decode(raw: Optional[str]) -> Optional[dict]:
        if raw is None:
            return None
        try:
            value = json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            logger.warning("redis_cache_corrupt_value")
            return None
        return value if isinstance(value, dict) else None

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        from redis import Redis

        # A short-lived sync client keeps the async client off the startup loop.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def get(self, key: str) -> Optional[dict]:
        return self._decode(await self.client.get(self._key(key)))

    async def set(self, key: str, value: dict, ttl_seconds: int) -> None:
        await self.client.set(self._key(key), json.dumps(value), ex=max(1, int(ttl_seconds)))

    async def pop(self, key: str) -> Optional[dict]:
        """Atomically read and delete ``key`` so a value is consumed only once."""
        full_key = self._key(key)
        try:
            raw = await self.client.getdel(full_key)
        except AttributeError:
            # redis-py without GETDEL support
            raw = await self.client.eval(self._POP_SCRIPT, 1, full_key)
        return self._decode(raw)

    async def delete(self, key: str) -> bool:
        return bool(await self.client.delete(self._key(key)))

    async def index_add(self, index: str, member: str, ttl_seconds: int) -> None:
        index_key = self._index_key(index)
        pipe = self.client.pipeline()
        pipe.sadd(index_key, member)
        pipe.expire(index_key, max(1, int(ttl_seconds)))
        await pipe.execute()

    async def index_members(self, index: str) -> Set[str]:
        return set(await self.client.smembers(self._index_key(index)))

    async def index_remove(self, index: str, *members: str) -> None:
        if members:
            await self.client.srem(self._index_key(index), *members)

    async def purge_expired(self) -> int:
        # Index entries whose record expired are pruned lazily by the services.
        return 0

    async def close(self) -> None:
        """Close the connection pool on shutdown."""
        await self.client.close()
        await self.client.connection_pool.disconnect()

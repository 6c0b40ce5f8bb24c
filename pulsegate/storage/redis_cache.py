from __future__ import annotations

from typing import Any, Awaitable, List, Optional, Set

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from pulsegate.logging import get_logger
from pulsegate.storage.errors import StoreError

logger = get_logger(__name__)


class RedisStore:
    """Redis-backed key-value store for sessions, challenges and audit events."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # INCR and set the window TTL on the first hit; repairs a key that lost its TTL
    _INCR_WITH_TTL_SCRIPT = """
local count = redis.call('INCR', KEYS[1])
local ttl = tonumber(ARGV[1])
if count == 1 or redis.call('TTL', KEYS[1]) == -1 then
  redis.call('EXPIRE', KEYS[1], ttl)
end
return count
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._incr_with_ttl = self.client.register_script(self._INCR_WITH_TTL_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async client is not bound to a temporary loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def _run(self, command: str, awaitable: Awaitable[Any]) -> Any:
        try:
            return await awaitable
        except RedisError as exc:
            logger.warning("redis_command_failed", command=command, error=str(exc))
            raise StoreError(f"redis {command} failed", {"command": command}) from exc

    async def get(self, key: str) -> Optional[str]:
        return await self._run("get", self.client.get(key))

    async def set(
        self, key: str, value: str, *, ttl: Optional[int] = None, nx: bool = False
    ) -> bool:
        ex = max(1, int(ttl)) if ttl is not None else None
        result = await self._run("set", self.client.set(key, value, ex=ex, nx=nx))
        return bool(result)

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(await self._run("delete", self.client.delete(*keys)))

    async def exists(self, key: str) -> bool:
        return bool(await self._run("exists", self.client.exists(key)))

    async def incr(self, key: str, *, ttl: Optional[int] = None) -> int:
        if ttl is None:
            return int(await self._run("incr", self.client.incr(key)))
        result = await self._run(
            "incr", self._incr_with_ttl(keys=[key], args=[max(1, int(ttl))])
        )
        return int(result)

    async def expire(self, key: str, ttl: int) -> bool:
        return bool(await self._run("expire", self.client.expire(key, max(1, int(ttl)))))

    async def ttl(self, key: str) -> int:
        return int(await self._run("ttl", self.client.ttl(key)))

    async def keys(self, pattern: str) -> List[str]:
        found: List[str] = []
        try:
            async for key in self.client.scan_iter(match=pattern, count=500):
                found.append(key)
        except RedisError as exc:
            logger.warning("redis_command_failed", command="scan", error=str(exc))
            raise StoreError("redis scan failed", {"command": "scan"}) from exc
        return found

    async def zadd(self, key: str, member: str, score: float) -> int:
        return int(await self._run("zadd", self.client.zadd(key, {member: score})))

    async def zrange(self, key: str, start: int, stop: int) -> List[str]:
        return list(await self._run("zrange", self.client.zrange(key, start, stop)))

    async def zrevrange(self, key: str, start: int, stop: int) -> List[str]:
        return list(await self._run("zrevrange", self.client.zrevrange(key, start, stop)))

    async def zrevrangebyscore(
        self, key: str, max_score: float, min_score: float
    ) -> List[str]:
        upper = "+inf" if max_score == float("inf") else max_score
        lower = "-inf" if min_score == float("-inf") else min_score
        return list(
            await self._run(
                "zrevrangebyscore", self.client.zrevrangebyscore(key, upper, lower)
            )
        )

    async def zremrangebyrank(self, key: str, start: int, stop: int) -> int:
        return int(
            await self._run("zremrangebyrank", self.client.zremrangebyrank(key, start, stop))
        )

    async def zcard(self, key: str) -> int:
        return int(await self._run("zcard", self.client.zcard(key)))

    async def sadd(self, key: str, *members: str) -> int:
        if not members:
            return 0
        return int(await self._run("sadd", self.client.sadd(key, *members)))

    async def smembers(self, key: str) -> Set[str]:
        return set(await self._run("smembers", self.client.smembers(key)))

    async def srem(self, key: str, *members: str) -> int:
        if not members:
            return 0
        return int(await self._run("srem", self.client.srem(key, *members)))

    async def publish(self, channel: str, message: str) -> int:
        return int(await self._run("publish", self.client.publish(channel, message)))

    async def ping(self) -> bool:
        return bool(await self._run("ping", self.client.ping()))

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()

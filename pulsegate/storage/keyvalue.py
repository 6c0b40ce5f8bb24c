from __future__ import annotations

from typing import List, Optional, Protocol, Set


class KeyValueStore(Protocol):
    """Shared key-value store holding every piece of trust state.

    Implementations raise ``StoreError`` when the backend is unreachable;
    callers decide whether that fails open or closed.
    """

    async def get(self, key: str) -> Optional[str]: ...

    async def set(
        self, key: str, value: str, *, ttl: Optional[int] = None, nx: bool = False
    ) -> bool: ...

    async def delete(self, *keys: str) -> int: ...

    async def exists(self, key: str) -> bool: ...

    async def incr(self, key: str, *, ttl: Optional[int] = None) -> int:
        """Atomically increment ``key``; ``ttl`` is applied when the key is new."""
        ...

    async def expire(self, key: str, ttl: int) -> bool: ...

    async def ttl(self, key: str) -> int:
        """Remaining seconds, -1 when the key has no expiry, -2 when missing."""
        ...

    async def keys(self, pattern: str) -> List[str]: ...

    async def zadd(self, key: str, member: str, score: float) -> int: ...

    async def zrange(self, key: str, start: int, stop: int) -> List[str]: ...

    async def zrevrange(self, key: str, start: int, stop: int) -> List[str]: ...

    async def zrevrangebyscore(
        self, key: str, max_score: float, min_score: float
    ) -> List[str]: ...

    async def zremrangebyrank(self, key: str, start: int, stop: int) -> int: ...

    async def zcard(self, key: str) -> int: ...

    async def sadd(self, key: str, *members: str) -> int: ...

    async def smembers(self, key: str) -> Set[str]: ...

    async def srem(self, key: str, *members: str) -> int: ...

    async def publish(self, channel: str, message: str) -> int: ...

    async def ping(self) -> bool: ...

    async def close(self) -> None: ...

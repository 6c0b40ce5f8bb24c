from __future__ import annotations

import fnmatch
import threading
from typing import Any, Callable, Dict, List, Optional, Set

from pulsegate.logging import get_logger
from pulsegate.storage.common import Clock, utc_now


class MemoryStore:
    """In-process key-value store used for tests and Redis-less development.

    Mirrors the subset of Redis semantics the services rely on: TTLs,
    atomic increments, conditional set, sorted sets, sets and pub/sub.
    """

    def __init__(self, *, clock: Optional[Clock] = None) -> None:
        self.logger = get_logger(__name__)
        self._clock = clock or utc_now
        self._values: Dict[str, Any] = {}
        self._expiry: Dict[str, float] = {}
        self._subscribers: Dict[str, List[Callable[[str], None]]] = {}
        self._data_lock = threading.RLock()

    def _now(self) -> float:
        return self._clock().timestamp()

    def _purge(self, key: str) -> None:
        deadline = self._expiry.get(key)
        if deadline is not None and deadline <= self._now():
            self._values.pop(key, None)
            self._expiry.pop(key, None)

    def _live(self, key: str) -> Any:
        self._purge(key)
        return self._values.get(key)

    def _typed(self, key: str, kind: type) -> Any:
        value = self._live(key)
        if value is None:
            value = kind()
            self._values[key] = value
        elif not isinstance(value, kind):
            raise TypeError(f"WRONGTYPE operation against key {key!r}")
        return value

    def _drop_if_empty(self, key: str) -> None:
        if key in self._values and not self._values[key]:
            self._values.pop(key, None)
            self._expiry.pop(key, None)

    async def get(self, key: str) -> Optional[str]:
        with self._data_lock:
            value = self._live(key)
            if value is None:
                return None
            if not isinstance(value, str):
                raise TypeError(f"WRONGTYPE operation against key {key!r}")
            return value

    async def set(
        self, key: str, value: str, *, ttl: Optional[int] = None, nx: bool = False
    ) -> bool:
        with self._data_lock:
            if nx and self._live(key) is not None:
                return False
            self._values[key] = value
            if ttl is not None:
                self._expiry[key] = self._now() + max(1, int(ttl))
            else:
                self._expiry.pop(key, None)
            return True

    async def delete(self, *keys: str) -> int:
        removed = 0
        with self._data_lock:
            for key in keys:
                if self._live(key) is not None:
                    removed += 1
                self._values.pop(key, None)
                self._expiry.pop(key, None)
        return removed

    async def exists(self, key: str) -> bool:
        with self._data_lock:
            return self._live(key) is not None

    async def incr(self, key: str, *, ttl: Optional[int] = None) -> int:
        with self._data_lock:
            current = self._live(key)
            count = int(current or 0) + 1
            self._values[key] = str(count)
            if ttl is not None and (count == 1 or key not in self._expiry):
                self._expiry[key] = self._now() + max(1, int(ttl))
            return count

    async def expire(self, key: str, ttl: int) -> bool:
        with self._data_lock:
            if self._live(key) is None:
                return False
            self._expiry[key] = self._now() + max(1, int(ttl))
            return True

    async def ttl(self, key: str) -> int:
        with self._data_lock:
            if self._live(key) is None:
                return -2
            deadline = self._expiry.get(key)
            if deadline is None:
                return -1
            return max(0, int(round(deadline - self._now())))

    async def keys(self, pattern: str) -> List[str]:
        with self._data_lock:
            for key in list(self._values):
                self._purge(key)
            return [key for key in self._values if fnmatch.fnmatchcase(key, pattern)]

    async def zadd(self, key: str, member: str, score: float) -> int:
        with self._data_lock:
            zset = self._typed(key, dict)
            added = 0 if member in zset else 1
            zset[member] = float(score)
            return added

    def _ordered(self, key: str, *, reverse: bool = False) -> List[str]:
        zset = self._live(key) or {}
        ordered = sorted(zset.items(), key=lambda item: (item[1], item[0]))
        if reverse:
            ordered.reverse()
        return [member for member, _ in ordered]

    @staticmethod
    def _slice(items: List[str], start: int, stop: int) -> List[str]:
        length = len(items)
        if start < 0:
            start = max(length + start, 0)
        if stop < 0:
            stop = length + stop
        if start > stop or start >= length:
            return []
        return items[start : stop + 1]

    async def zrange(self, key: str, start: int, stop: int) -> List[str]:
        with self._data_lock:
            return self._slice(self._ordered(key), start, stop)

    async def zrevrange(self, key: str, start: int, stop: int) -> List[str]:
        with self._data_lock:
            return self._slice(self._ordered(key, reverse=True), start, stop)

    async def zrevrangebyscore(
        self, key: str, max_score: float, min_score: float
    ) -> List[str]:
        with self._data_lock:
            zset = self._live(key) or {}
            return [
                member
                for member in self._ordered(key, reverse=True)
                if min_score <= zset[member] <= max_score
            ]

    async def zremrangebyrank(self, key: str, start: int, stop: int) -> int:
        with self._data_lock:
            doomed = self._slice(self._ordered(key), start, stop)
            zset = self._live(key) or {}
            for member in doomed:
                zset.pop(member, None)
            self._drop_if_empty(key)
            return len(doomed)

    async def zcard(self, key: str) -> int:
        with self._data_lock:
            return len(self._live(key) or {})

    async def sadd(self, key: str, *members: str) -> int:
        with self._data_lock:
            members_set = self._typed(key, set)
            before = len(members_set)
            members_set.update(members)
            return len(members_set) - before

    async def smembers(self, key: str) -> Set[str]:
        with self._data_lock:
            return set(self._live(key) or set())

    async def srem(self, key: str, *members: str) -> int:
        with self._data_lock:
            members_set = self._live(key)
            if not members_set:
                return 0
            removed = 0
            for member in members:
                if member in members_set:
                    members_set.discard(member)
                    removed += 1
            self._drop_if_empty(key)
            return removed

    def subscribe(self, channel: str, callback: Callable[[str], None]) -> None:
        with self._data_lock:
            self._subscribers.setdefault(channel, []).append(callback)

    async def publish(self, channel: str, message: str) -> int:
        with self._data_lock:
            receivers = list(self._subscribers.get(channel, []))
        for callback in receivers:
            callback(message)
        return len(receivers)

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None

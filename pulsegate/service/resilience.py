from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from pulsegate.logging import get_logger
from pulsegate.service.errors import CircuitOpenError, DependencyUnavailable
from pulsegate.storage.errors import StoreError
from pulsegate.storage.keyvalue import KeyValueStore

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass
class RateLimitResult:
    allowed: bool
    count: int
    limit: int
    remaining: int
    retry_after: int = 0

    def headers(self) -> Dict[str, str]:
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
        }
        if not self.allowed:
            headers["Retry-After"] = str(self.retry_after)
        return headers


class RateLimiter:
    """Fixed-window counter per ``(identity, operation)``.

    The first hit in a window creates the counter with the window as its TTL;
    the ``limit + 1``-th hit is denied with the remaining TTL as retry-after.
    Store failures fail open.
    """

    DEFAULT_WINDOW_SECONDS = 60

    def __init__(self, store: KeyValueStore) -> None:
        self.store = store

    @staticmethod
    def _key(identity: str, operation: str) -> str:
        return f"rate-limit:{identity}:{operation}"

    async def allow(
        self, identity: str, operation: str, limit: int, window_seconds: int
    ) -> RateLimitResult:
        if limit <= 0:
            return RateLimitResult(allowed=True, count=0, limit=limit, remaining=0)
        if window_seconds <= 0:
            logger.warning(
                "rate_limit_invalid_window",
                operation=operation,
                window_seconds=window_seconds,
                message="Invalid rate limit window_seconds; defaulting to 60 seconds",
            )
            window_seconds = self.DEFAULT_WINDOW_SECONDS
        key = self._key(identity, operation)
        try:
            count = await self.store.incr(key, ttl=window_seconds)
            if count <= limit:
                return RateLimitResult(
                    allowed=True, count=count, limit=limit, remaining=limit - count
                )
            retry_after = await self.store.ttl(key)
        except StoreError as exc:
            logger.warning("rate_limit_store_unavailable", operation=operation, error=str(exc))
            return RateLimitResult(allowed=True, count=0, limit=limit, remaining=limit)
        logger.info("rate_limit_exceeded", operation=operation, count=count, limit=limit)
        return RateLimitResult(
            allowed=False,
            count=count,
            limit=limit,
            remaining=0,
            retry_after=retry_after if retry_after > 0 else window_seconds,
        )

    async def reset(self, identity: str, operation: str) -> None:
        try:
            await self.store.delete(self._key(identity, operation))
        except StoreError as exc:
            logger.warning("rate_limit_reset_failed", operation=operation, error=str(exc))


class BreakerState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class BreakerConfig:
    failure_threshold: int = 5
    reset_timeout: float = 60.0
    call_timeout: float = 10.0


class CircuitBreaker:
    """CLOSED -> OPEN after ``failure_threshold`` consecutive failures.

    While OPEN every call is rejected without touching the dependency. Once
    ``reset_timeout`` has passed the breaker goes HALF_OPEN and admits exactly
    one trial call; its outcome closes or reopens the breaker. Each call is
    bounded by ``call_timeout`` and a timeout counts as a failure.
    """

    def __init__(
        self,
        name: str,
        config: Optional[BreakerConfig] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.config = config or BreakerConfig()
        self._clock = clock
        self.state = BreakerState.CLOSED
        self.failure_count = 0
        self.last_failure_time: Optional[float] = None
        self._trial_in_flight = False

    def _admit(self) -> None:
        if self.state == BreakerState.CLOSED:
            return
        if self.state == BreakerState.OPEN:
            elapsed = self._clock() - (self.last_failure_time or 0.0)
            if elapsed < self.config.reset_timeout:
                raise CircuitOpenError(self.name, retry_after=self.config.reset_timeout - elapsed)
            self.state = BreakerState.HALF_OPEN
            logger.info("circuit_half_open", operation=self.name)
        if self._trial_in_flight:
            raise CircuitOpenError(self.name)
        self._trial_in_flight = True

    def _on_success(self) -> None:
        if self.state != BreakerState.CLOSED:
            logger.info("circuit_closed", operation=self.name)
        self.state = BreakerState.CLOSED
        self.failure_count = 0
        self._trial_in_flight = False

    def _on_failure(self, error: BaseException) -> None:
        self.failure_count += 1
        self.last_failure_time = self._clock()
        was_trial = self.state == BreakerState.HALF_OPEN
        self._trial_in_flight = False
        if was_trial or self.failure_count >= self.config.failure_threshold:
            self.state = BreakerState.OPEN
            logger.warning(
                "circuit_opened",
                operation=self.name,
                failure_count=self.failure_count,
                error=str(error) or type(error).__name__,
            )

    async def call(self, operation: Callable[[], Awaitable[T]]) -> T:
        self._admit()
        try:
            result = await asyncio.wait_for(operation(), timeout=self.config.call_timeout)
        except asyncio.TimeoutError as exc:
            self._on_failure(exc)
            raise DependencyUnavailable(
                f"{self.name} timed out", detail={"operation": self.name}
            ) from exc
        except asyncio.CancelledError:
            self._trial_in_flight = False
            raise
        except Exception as exc:
            self._on_failure(exc)
            raise
        self._on_success()
        return result

    def reset(self) -> None:
        self.state = BreakerState.CLOSED
        self.failure_count = 0
        self.last_failure_time = None
        self._trial_in_flight = False

    def snapshot(self) -> Dict[str, Any]:
        return {
            "operation": self.name,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "last_failure_time": self.last_failure_time,
        }


class BreakerRegistry:
    """One breaker per operation identifier, created on first use."""

    def __init__(
        self,
        default_config: Optional[BreakerConfig] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.default_config = default_config or BreakerConfig()
        self._clock = clock
        self._breakers: Dict[str, CircuitBreaker] = {}

    def get(self, operation: str, config: Optional[BreakerConfig] = None) -> CircuitBreaker:
        breaker = self._breakers.get(operation)
        if breaker is None:
            breaker = CircuitBreaker(operation, config or self.default_config, clock=self._clock)
            self._breakers[operation] = breaker
        return breaker

    def reset(self, operation: str) -> None:
        breaker = self._breakers.get(operation)
        if breaker is not None:
            breaker.reset()

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        return {name: breaker.snapshot() for name, breaker in self._breakers.items()}


def with_circuit_breaker(
    registry: BreakerRegistry,
    operation: str,
    fn: Callable[..., Awaitable[T]],
    config: Optional[BreakerConfig] = None,
) -> Callable[..., Awaitable[T]]:
    """Wrap ``fn`` so every call goes through the breaker for ``operation``."""
    breaker = registry.get(operation, config)

    async def guarded(*args: Any, **kwargs: Any) -> T:
        return await breaker.call(lambda: fn(*args, **kwargs))

    guarded.__name__ = getattr(fn, "__name__", operation)
    guarded.__wrapped__ = fn  # type: ignore[attr-defined]
    return guarded

import asyncio
import inspect
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("ENCRYPTION_KEY", "test-encryption-key-for-testing-only-0123456789")
os.environ.setdefault("ENCRYPTION_SALT", "test-encryption-salt")
os.environ.setdefault("HASH_SALT", "test-hash-salt")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/1")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from pulsegate.config import Settings  # noqa: E402
from pulsegate.service.aliases import GroupAliasService  # noqa: E402
from pulsegate.service.audit import SecurityAuditLog  # noqa: E402
from pulsegate.service.challenges import ChallengeService  # noqa: E402
from pulsegate.service.crypto import AesGcmCrypto, build_code_hasher  # noqa: E402
from pulsegate.service.rbac import RbacAuthority  # noqa: E402
from pulsegate.service.resilience import (  # noqa: E402
    BreakerConfig,
    BreakerRegistry,
    RateLimiter,
)
from pulsegate.service.runtime import reset_runtime_for_tests  # noqa: E402
from pulsegate.service.second_factor import SecondFactorService  # noqa: E402
from pulsegate.service.sessions import SessionStore  # noqa: E402
from pulsegate.storage.memory import MemoryStore  # noqa: E402


class FakeClock:
    """Manually advanced wall clock with a matching monotonic reading."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 1, 5, 12, 0, 0, tzinfo=timezone.utc)
        self._monotonic = 1000.0

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)
        self._monotonic += seconds

    def monotonic(self) -> float:
        return self._monotonic


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return Settings(
        test_mode=True,
        encryption_key="unit-test-encryption-key-0123456789abcdef",
        encryption_salt="unit-test-salt",
        hash_salt="unit-test-hash-salt",
    )


@pytest.fixture
def store(clock):
    return MemoryStore(clock=clock)


@pytest.fixture
def crypto(settings):
    return AesGcmCrypto(settings.encryption_key, settings.encryption_salt, settings.hash_salt)


@pytest.fixture
def audit(store, crypto, settings, clock):
    return SecurityAuditLog(store, crypto, settings, clock=clock)


@pytest.fixture
def aliases(store, crypto, settings):
    return GroupAliasService(store, crypto, settings)


@pytest.fixture
def sessions(store, crypto, settings, aliases, clock):
    return SessionStore(store, crypto, settings, alias_resolver=aliases, clock=clock)


@pytest.fixture
def challenges(store, crypto, settings, clock):
    return ChallengeService(
        store, crypto, settings, hasher=build_code_hasher(fast=True), clock=clock
    )


@pytest.fixture
def second_factor(store, crypto, settings, audit, clock):
    return SecondFactorService(store, crypto, settings, audit=audit, clock=clock)


@pytest.fixture
def rbac():
    return RbacAuthority()


@pytest.fixture
def rate_limiter(store):
    return RateLimiter(store)


@pytest.fixture
def breakers(clock):
    return BreakerRegistry(
        BreakerConfig(failure_threshold=5, reset_timeout=30.0, call_timeout=1.0),
        clock=clock.monotonic,
    )


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")

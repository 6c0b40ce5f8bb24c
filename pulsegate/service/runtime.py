from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from pulsegate.config import get_settings, reset_settings_cache
from pulsegate.logging import get_logger
from pulsegate.service.aliases import GroupAliasService
from pulsegate.service.audit import SecurityAuditLog
from pulsegate.service.challenges import ChallengeService
from pulsegate.service.collaborators import (
    AccountClient,
    GraphQLAccountClient,
    MessagingChannel,
    UnattachedMessagingChannel,
)
from pulsegate.service.crypto import AesGcmCrypto, build_code_hasher
from pulsegate.service.fingerprint import DeviceFingerprintAnalyzer
from pulsegate.service.guard import AuthorizationGuard
from pulsegate.service.linking import AccountLinkingService
from pulsegate.service.notifications import AuthEventNotifier
from pulsegate.service.rbac import RbacAuthority, parse_custom_roles
from pulsegate.service.resilience import BreakerConfig, BreakerRegistry, RateLimiter
from pulsegate.service.second_factor import SecondFactorService
from pulsegate.service.sessions import SessionStore
from pulsegate.storage.memory import MemoryStore
from pulsegate.storage.redis_cache import RedisStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    if parsed.username:
        netloc = f"{parsed.username}:***@{netloc}"
    else:
        netloc = f":***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(
        self,
        *,
        messaging: Optional[MessagingChannel] = None,
        accounts: Optional[AccountClient] = None,
    ):
        self.settings = get_settings()
        self.settings.validate_secrets()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        self.store = self._build_store()

        settings = self.settings
        self.crypto = AesGcmCrypto(
            settings.encryption_key, settings.encryption_salt, settings.hash_salt
        )
        self.rbac = RbacAuthority(custom_roles=parse_custom_roles(settings.custom_roles))
        self.audit = SecurityAuditLog(self.store, self.crypto, settings)
        self.aliases = GroupAliasService(self.store, self.crypto, settings)
        self.sessions = SessionStore(
            self.store, self.crypto, settings, alias_resolver=self.aliases
        )
        self.challenges = ChallengeService(
            self.store,
            self.crypto,
            settings,
            hasher=build_code_hasher(fast=settings.test_mode),
        )
        self.second_factor = SecondFactorService(
            self.store, self.crypto, settings, audit=self.audit
        )
        self.fingerprints = DeviceFingerprintAnalyzer()
        self.rate_limiter = RateLimiter(self.store)
        self.breakers = BreakerRegistry(
            BreakerConfig(
                failure_threshold=settings.breaker_failure_threshold,
                reset_timeout=settings.breaker_reset_timeout_seconds,
                call_timeout=settings.breaker_call_timeout_seconds,
            )
        )
        self.notifier = AuthEventNotifier(self.store, settings)
        self.guard = AuthorizationGuard(
            self.sessions,
            self.rbac,
            self.rate_limiter,
            self.audit,
            settings,
            second_factor=self.second_factor,
        )
        self.messaging: MessagingChannel = messaging or UnattachedMessagingChannel()
        self.accounts: AccountClient = accounts or GraphQLAccountClient(
            settings.account_api_url,
            api_token=settings.account_api_token,
            timeout=settings.breaker_call_timeout_seconds,
        )
        self.linking = self._build_linking()

        logger.info(
            "runtime_initialized",
            store_type=type(self.store).__name__,
            roles=len(self.rbac.roles()),
            account_api_configured=bool(settings.account_api_url),
        )

    def _build_store(self):
        if self.settings.use_memory_store:
            return MemoryStore()
        redis_error: Exception | None = None
        try:
            store = RedisStore(
                self.settings.redis_url, socket_timeout=self.settings.redis_socket_timeout
            )
            store.verify_connection()
            return store
        except Exception as exc:
            redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for sessions, challenges, rate limits and the audit log; "
                "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from redis_error

        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error),
            message=f"Running without Redis under {fallback_mode}; all trust state is in-memory only.",
            mode=fallback_mode,
        )
        return MemoryStore()

    def _build_linking(self) -> AccountLinkingService:
        return AccountLinkingService(
            sessions=self.sessions,
            challenges=self.challenges,
            second_factor=self.second_factor,
            audit=self.audit,
            rate_limiter=self.rate_limiter,
            breakers=self.breakers,
            messaging=self.messaging,
            accounts=self.accounts,
            crypto=self.crypto,
            settings=self.settings,
            notifier=self.notifier,
            aliases=self.aliases,
        )

    def attach_collaborators(
        self,
        *,
        messaging: Optional[MessagingChannel] = None,
        accounts: Optional[AccountClient] = None,
    ) -> None:
        """Swap in the chat transport or account client once they are connected."""
        if messaging is not None:
            self.messaging = messaging
        if accounts is not None:
            self.accounts = accounts
        self.linking = self._build_linking()
        logger.info(
            "collaborators_attached",
            messaging=type(self.messaging).__name__,
            accounts=type(self.accounts).__name__,
        )

    async def close(self) -> None:
        await self.store.close()
        close_accounts = getattr(self.accounts, "close", None)
        if close_accounts is not None:
            await close_accounts()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and isinstance(runtime.store, RedisStore):
            try:
                loop = asyncio.get_running_loop()
                loop.create_task(runtime.store.close())
            except RuntimeError:
                asyncio.run(runtime.store.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime

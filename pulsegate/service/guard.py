from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, TypeVar

from pulsegate.config import Settings
from pulsegate.logging import get_logger
from pulsegate.service.audit import SecurityAuditLog
from pulsegate.service.errors import (
    ConfigurationError,
    RateLimited,
    SecondFactorRequired,
    Unauthenticated,
    Unauthorized,
)
from pulsegate.service.rbac import Logic, Permission, PermissionCheck, RbacAuthority
from pulsegate.service.resilience import RateLimiter, RateLimitResult
from pulsegate.service.second_factor import SecondFactorService
from pulsegate.service.sessions import SessionStore
from pulsegate.storage.common import Clock, utc_now
from pulsegate.storage.models import EventType, Session

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class OperationPolicy:
    permissions: Tuple[Permission, ...] = ()
    logic: Logic = Logic.AND
    rate_limit: Optional[int] = None
    window_seconds: Optional[int] = None
    requires_second_factor: bool = False

    def checks(self) -> list:
        if not self.permissions:
            return []
        return [PermissionCheck(tuple(p.value for p in self.permissions), self.logic)]


# Every protected operation and what it needs; rate limits default to settings
OPERATION_POLICIES: Dict[str, OperationPolicy] = {
    "account.view": OperationPolicy((Permission.ACCOUNT_VIEW,)),
    "payment.send": OperationPolicy(
        (Permission.PAYMENT_SEND,), rate_limit=10, window_seconds=60, requires_second_factor=True
    ),
    "second_factor.manage": OperationPolicy(rate_limit=5, window_seconds=300),
    "alias.manage": OperationPolicy((Permission.ACCOUNT_VIEW,), rate_limit=5, window_seconds=300),
    "user.view": OperationPolicy((Permission.USER_VIEW,)),
    "user.edit": OperationPolicy((Permission.USER_EDIT,), requires_second_factor=True),
    "session.view": OperationPolicy((Permission.SESSION_VIEW,)),
    "session.delete": OperationPolicy((Permission.SESSION_DELETE,)),
    "channel.manage": OperationPolicy((Permission.CHANNEL_MANAGE,)),
    "announcement.send": OperationPolicy(
        (Permission.ANNOUNCEMENT_SEND, Permission.ANNOUNCEMENT_SCHEDULE),
        logic=Logic.OR,
        rate_limit=5,
        window_seconds=3600,
    ),
    "audit.view": OperationPolicy((Permission.SYSTEM_LOGS_VIEW,)),
    "audit.export": OperationPolicy(
        (Permission.SYSTEM_LOGS_VIEW, Permission.USER_VIEW), rate_limit=5, window_seconds=300
    ),
    "audit.analyze": OperationPolicy((Permission.SYSTEM_LOGS_VIEW,), rate_limit=10),
    "system.health": OperationPolicy((Permission.SYSTEM_HEALTH_VIEW,)),
    "system.config": OperationPolicy(
        (Permission.SYSTEM_CONFIG_EDIT,), requires_second_factor=True
    ),
    "command.execute": OperationPolicy(
        (Permission.COMMAND_EXECUTE,), requires_second_factor=True
    ),
}


@dataclass
class RequestContext:
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    device_id: Optional[str] = None


@dataclass
class AuthorizationDecision:
    granted: bool
    operation: str
    reason: str
    session: Optional[Session] = None
    role: Optional[str] = None
    rate_limit: Optional[RateLimitResult] = None
    audit_event_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)


class AuthorizationGuard:
    """Session -> permission -> second factor -> rate limit, in that order.

    Stops at the first failing check and records exactly one audit event per
    decision. ``authorize`` returns the decision; ``enforce`` raises the
    matching service error with a generic message.
    """

    def __init__(
        self,
        sessions: SessionStore,
        rbac: RbacAuthority,
        rate_limiter: RateLimiter,
        audit: SecurityAuditLog,
        settings: Settings,
        *,
        second_factor: Optional[SecondFactorService] = None,
        policies: Optional[Dict[str, OperationPolicy]] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.sessions = sessions
        self.rbac = rbac
        self.rate_limiter = rate_limiter
        self.audit = audit
        self.settings = settings
        self.second_factor = second_factor
        self.policies = dict(OPERATION_POLICIES if policies is None else policies)
        self._clock = clock or utc_now

    def policy_for(self, operation: str) -> OperationPolicy:
        policy = self.policies.get(operation)
        if policy is None:
            raise ConfigurationError(f"no authorization policy declared for {operation!r}")
        return policy

    def role_for(self, session: Session) -> str:
        role = session.metadata.get("role") if session.metadata else None
        if role:
            return str(role)
        if session.linked_phone_number in self.settings.admin_phones:
            return "admin"
        return self.settings.default_role

    async def _second_factor_satisfied(
        self, session: Session, context: RequestContext
    ) -> bool:
        if session.second_factor_valid(self._clock()):
            return True
        if self.second_factor is not None and context.device_id and session.account_id:
            return await self.second_factor.is_device_trusted(
                session.account_id, context.device_id
            )
        return False

    async def _decide(
        self,
        event_type: EventType,
        decision: AuthorizationDecision,
        session_id: Optional[str],
        context: RequestContext,
    ) -> AuthorizationDecision:
        session = decision.session
        event = await self.audit.record(
            event_type,
            user_id=session.account_id if session else None,
            session_id=session_id,
            ip_address=context.ip_address,
            user_agent=context.user_agent,
            details={
                "operation": decision.operation,
                "reason": decision.reason,
                "role": decision.role,
                **decision.details,
            },
        )
        decision.audit_event_id = event.id
        return decision

    async def authorize(
        self,
        session_id: Optional[str],
        operation: str,
        context: Optional[RequestContext] = None,
    ) -> AuthorizationDecision:
        policy = self.policy_for(operation)
        context = context or RequestContext()

        session = await self.sessions.get(session_id) if session_id else None
        if session is None:
            return await self._decide(
                EventType.SESSION_INVALID,
                AuthorizationDecision(False, operation, "invalid_session"),
                session_id,
                context,
            )

        role = self.role_for(session)
        if not self.rbac.check(role, policy.checks()):
            return await self._decide(
                EventType.PERMISSION_DENIED,
                AuthorizationDecision(
                    False,
                    operation,
                    "permission_denied",
                    session=session,
                    role=role,
                    details={"required": [p.value for p in policy.permissions]},
                ),
                session_id,
                context,
            )

        if policy.requires_second_factor and not await self._second_factor_satisfied(
            session, context
        ):
            return await self._decide(
                EventType.SECOND_FACTOR_REQUIRED,
                AuthorizationDecision(
                    False, operation, "second_factor_required", session=session, role=role
                ),
                session_id,
                context,
            )

        identity = session.account_id or session.session_id
        result = await self.rate_limiter.allow(
            identity,
            operation,
            policy.rate_limit if policy.rate_limit is not None else self.settings.rate_limit_max,
            policy.window_seconds or self.settings.rate_limit_window_seconds,
        )
        if not result.allowed:
            return await self._decide(
                EventType.RATE_LIMIT_EXCEEDED,
                AuthorizationDecision(
                    False,
                    operation,
                    "rate_limited",
                    session=session,
                    role=role,
                    rate_limit=result,
                    details={"retry_after": result.retry_after},
                ),
                session_id,
                context,
            )

        return await self._decide(
            EventType.ACCESS_GRANTED,
            AuthorizationDecision(
                True, operation, "granted", session=session, role=role, rate_limit=result
            ),
            session_id,
            context,
        )

    async def enforce(
        self,
        session_id: Optional[str],
        operation: str,
        context: Optional[RequestContext] = None,
    ) -> AuthorizationDecision:
        decision = await self.authorize(session_id, operation, context)
        if decision.granted:
            return decision
        logger.info("authorization_denied", operation=operation, reason=decision.reason)
        if decision.reason == "invalid_session":
            raise Unauthenticated("invalid or expired session")
        if decision.reason == "permission_denied":
            raise Unauthorized("insufficient permissions")
        if decision.reason == "second_factor_required":
            raise SecondFactorRequired("second factor verification required")
        retry_after = decision.rate_limit.retry_after if decision.rate_limit else 0
        raise RateLimited("rate limit exceeded", retry_after=retry_after)


def with_authorization(
    guard: AuthorizationGuard,
    operation: str,
    fn: Callable[..., Awaitable[T]],
) -> Callable[..., Awaitable[T]]:
    """Wrap ``fn(session, *args)`` so it only runs for authorized sessions.

    The wrapped callable takes ``session_id`` first and an optional
    ``context`` keyword; the policy is resolved immediately so an undeclared
    operation fails at wiring time.
    """
    guard.policy_for(operation)

    async def guarded(
        session_id: Optional[str],
        *args: Any,
        context: Optional[RequestContext] = None,
        **kwargs: Any,
    ) -> T:
        decision = await guard.enforce(session_id, operation, context)
        return await fn(decision.session, *args, **kwargs)

    guarded.__name__ = getattr(fn, "__name__", operation)
    guarded.__wrapped__ = fn  # type: ignore[attr-defined]
    return guarded

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional

from pulsegate.config import Settings
from pulsegate.logging import get_logger
from pulsegate.service.aliases import GroupAliasService
from pulsegate.service.audit import SecurityAuditLog
from pulsegate.service.challenges import ChallengeService
from pulsegate.service.collaborators import AccountClient, MessagingChannel
from pulsegate.service.crypto import CryptoProvider
from pulsegate.service.errors import (
    ChallengeInvalid,
    RateLimited,
    Unauthenticated,
    ValidationError,
)
from pulsegate.service.guard import RequestContext
from pulsegate.service.notifications import AuthEventNotifier
from pulsegate.service.resilience import BreakerRegistry, RateLimiter, with_circuit_breaker
from pulsegate.service.second_factor import SecondFactorService
from pulsegate.service.sessions import SessionStore
from pulsegate.storage.models import EventType, Session

logger = get_logger(__name__)

_PHONE_DIGITS = re.compile(r"^\d{8,15}$")

GENERIC_LINK_FAILURE = "unable to verify this account"
GENERIC_CODE_FAILURE = "invalid or expired code"


def normalize_phone(phone_number: str) -> str:
    digits = re.sub(r"[\s\-().]", "", phone_number or "").lstrip("+")
    if not _PHONE_DIGITS.match(digits):
        raise ValidationError("phone number must contain 8 to 15 digits")
    return "+" + digits


@dataclass
class LinkInitiation:
    session_id: str
    code_sent: bool
    already_linked: bool = False


class AccountLinkingService:
    """Phone link, one-time code, and second-factor step-up for chat identities.

    Account-service and messaging calls go through circuit breakers. Delivery
    failures are logged and never abort the flow; every failure the user sees
    carries a generic message.
    """

    def __init__(
        self,
        *,
        sessions: SessionStore,
        challenges: ChallengeService,
        second_factor: SecondFactorService,
        audit: SecurityAuditLog,
        rate_limiter: RateLimiter,
        breakers: BreakerRegistry,
        messaging: MessagingChannel,
        accounts: AccountClient,
        crypto: CryptoProvider,
        settings: Settings,
        notifier: Optional[AuthEventNotifier] = None,
        aliases: Optional[GroupAliasService] = None,
    ) -> None:
        self.sessions = sessions
        self.challenges = challenges
        self.second_factor = second_factor
        self.audit = audit
        self.rate_limiter = rate_limiter
        self.messaging = messaging
        self.crypto = crypto
        self.settings = settings
        self.notifier = notifier
        self.aliases = aliases
        self._account_exists = with_circuit_breaker(
            breakers, "account.verify_exists", accounts.verify_account_exists
        )
        self._account_user_id = with_circuit_breaker(
            breakers, "account.get_user_id", accounts.get_user_id
        )
        self._send_message = with_circuit_breaker(
            breakers, "messaging.send", messaging.send_message
        )

    def phone_identity(self, phone: str) -> str:
        """Direct chat identity owned by ``phone``; one-time codes only go here."""
        return phone.lstrip("+") + self.settings.direct_chat_suffix

    def _subject(self, external_identity: str) -> str:
        return "identity:" + self.crypto.hash(external_identity)[:16]

    async def _throttle(
        self, external_identity: str, operation: str, context: RequestContext
    ) -> None:
        result = await self.rate_limiter.allow(
            self.crypto.hash(external_identity),
            operation,
            self.settings.auth_rate_limit_max,
            self.settings.auth_rate_limit_window_seconds,
        )
        if result.allowed:
            return
        await self.audit.record(
            EventType.RATE_LIMIT_EXCEEDED,
            user_id=self._subject(external_identity),
            ip_address=context.ip_address,
            user_agent=context.user_agent,
            details={"operation": operation, "retry_after": result.retry_after},
        )
        raise RateLimited("too many attempts, try again later", retry_after=result.retry_after)

    async def _deliver(self, identity: str, text: str) -> bool:
        if not self.messaging.is_ready():
            logger.warning("message_channel_not_ready")
            return False
        try:
            await self._send_message(identity, text)
        except Exception as exc:
            logger.warning("message_delivery_failed", error=str(exc))
            return False
        return True

    async def _notify(self, event: str, **payload) -> None:
        if self.notifier is not None:
            await self.notifier.publish(event, payload)

    async def _fail(
        self,
        reason: str,
        context: RequestContext,
        *,
        session_id: Optional[str] = None,
        user_id: Optional[str] = None,
        error: type = ChallengeInvalid,
        message: str = GENERIC_CODE_FAILURE,
    ) -> None:
        await self.audit.record(
            EventType.LOGIN_FAILURE,
            user_id=user_id,
            session_id=session_id,
            ip_address=context.ip_address,
            user_agent=context.user_agent,
            details={"reason": reason},
        )
        raise error(message)

    async def initiate(
        self,
        external_identity: str,
        phone_number: str,
        context: Optional[RequestContext] = None,
    ) -> LinkInitiation:
        context = context or RequestContext()
        phone = normalize_phone(phone_number)
        await self._throttle(external_identity, "link.initiate", context)
        subject = self._subject(external_identity)
        await self.audit.record(
            EventType.LOGIN_ATTEMPT,
            user_id=subject,
            ip_address=context.ip_address,
            user_agent=context.user_agent,
        )

        session = await self.sessions.get_by_external_identity(external_identity)
        if session is not None and session.verified and session.linked_phone_number == phone:
            return LinkInitiation(session.session_id, code_sent=False, already_linked=True)

        if not await self._account_exists(phone):
            await self._fail(
                "account_not_found",
                context,
                user_id=subject,
                error=Unauthenticated,
                message=GENERIC_LINK_FAILURE,
            )

        if session is None:
            session = await self.sessions.create(external_identity, phone)
            await self.audit.record(
                EventType.SESSION_CREATED,
                user_id=subject,
                session_id=session.session_id,
                ip_address=context.ip_address,
                user_agent=context.user_agent,
            )
        else:
            session = await self.sessions.update(
                session.session_id, linked_phone_number=phone, verified=False, account_id=None
            ) or session

        code = await self.challenges.issue(phone, session.session_id)
        minutes = max(1, self.settings.otp_ttl_seconds // 60)
        sent = await self._deliver(
            self.phone_identity(phone),
            f"Your verification code is {code}. It expires in {minutes} minutes.",
        )
        logger.info("link_initiated", session_id=session.session_id, code_sent=sent)
        return LinkInitiation(session.session_id, code_sent=sent)

    async def verify(
        self, session_id: str, code: str, context: Optional[RequestContext] = None
    ) -> Session:
        context = context or RequestContext()
        session = await self.sessions.get(session_id)
        if session is None:
            await self._fail("session_missing", context, session_id=session_id)
        await self._throttle(session.external_identity, "link.verify", context)
        subject = self._subject(session.external_identity)

        if not await self.challenges.verify(session_id, code):
            await self._fail("code_mismatch", context, session_id=session_id, user_id=subject)

        account_id = await self._account_user_id(session.linked_phone_number)
        if not account_id:
            await self._fail(
                "account_lookup_failed",
                context,
                session_id=session_id,
                user_id=subject,
                error=Unauthenticated,
                message=GENERIC_LINK_FAILURE,
            )

        linked = await self.sessions.update(session_id, account_id=account_id, verified=True)
        # The phone code only stands in for a second factor on accounts without an authenticator
        if linked is not None and not await self.second_factor.is_enabled(account_id):
            linked = await self.sessions.set_second_factor_verified(session_id, True)
        if linked is None:
            raise Unauthenticated("invalid or expired session")
        await self.audit.record(
            EventType.LOGIN_SUCCESS,
            user_id=account_id,
            session_id=session_id,
            ip_address=context.ip_address,
            user_agent=context.user_agent,
        )
        await self._notify("session_linked", session_id=session_id, account_id=account_id)
        logger.info("link_verified", session_id=session_id)
        return linked

    async def _linked_session(self, session_id: str) -> Session:
        session = await self.sessions.get(session_id)
        if session is None or not session.verified or not session.account_id:
            raise Unauthenticated("invalid or expired session")
        return session

    async def request_second_factor(
        self, session_id: str, context: Optional[RequestContext] = None
    ) -> str:
        """Start a step-up; returns ``"totp"`` or ``"otp"`` for the method to use."""
        context = context or RequestContext()
        session = await self._linked_session(session_id)
        if await self.second_factor.is_enabled(session.account_id):
            return "totp"
        await self._throttle(session.external_identity, "mfa.request", context)
        code = await self.challenges.issue(session.linked_phone_number, session_id)
        await self._deliver(
            self.phone_identity(session.linked_phone_number),
            f"Your security code is {code}. Do not share it.",
        )
        return "otp"

    async def verify_second_factor(
        self,
        session_id: str,
        code: str,
        context: Optional[RequestContext] = None,
        *,
        trust_device: bool = False,
        device_name: Optional[str] = None,
    ) -> Session:
        context = context or RequestContext()
        session = await self._linked_session(session_id)
        await self._throttle(session.external_identity, "mfa.verify", context)
        account_id = session.account_id

        if await self.second_factor.is_enabled(account_id):
            verified = await self.second_factor.verify(account_id, code)
        else:
            verified = await self.challenges.verify(session_id, code)
            await self.audit.record(
                EventType.TOTP_VERIFIED if verified else EventType.TOTP_FAILED,
                user_id=account_id,
                session_id=session_id,
                ip_address=context.ip_address,
                user_agent=context.user_agent,
                details={"method": "otp"},
            )
        if not verified:
            raise ChallengeInvalid(GENERIC_CODE_FAILURE)

        updated = await self.sessions.set_second_factor_verified(session_id, True)
        if updated is None:
            raise Unauthenticated("invalid or expired session")
        if trust_device and context.device_id:
            await self.second_factor.register_trusted_device(
                account_id, context.device_id, device_name or "Unknown device"
            )
        await self._notify("second_factor_verified", session_id=session_id)
        return updated

    async def record_consent(
        self, session_id: str, given: bool, context: Optional[RequestContext] = None
    ) -> Session:
        context = context or RequestContext()
        session = await self.sessions.set_consent(session_id, given)
        if session is None:
            raise Unauthenticated("invalid or expired session")
        await self.audit.record(
            EventType.DATA_MODIFICATION,
            user_id=session.account_id,
            session_id=session_id,
            ip_address=context.ip_address,
            details={"consent_given": given},
        )
        return session

    async def unlink(self, session_id: str, context: Optional[RequestContext] = None) -> bool:
        context = context or RequestContext()
        session = await self.sessions.get(session_id)
        if session is None:
            raise Unauthenticated("invalid or expired session")
        removed = await self.sessions.delete(session_id)
        await self.audit.record(
            EventType.SESSION_REVOKED,
            user_id=session.account_id,
            session_id=session_id,
            ip_address=context.ip_address,
            user_agent=context.user_agent,
            details={"initiator": "user"},
        )
        await self._notify("session_unlinked", session_id=session_id)
        return removed

    def _alias_service(self) -> GroupAliasService:
        if self.aliases is None:
            raise Unauthenticated("group aliases are not enabled")
        return self.aliases

    async def issue_alias_code(
        self, session_id: str, context: Optional[RequestContext] = None
    ) -> str:
        """Give a linked direct chat a short code to post from a group."""
        context = context or RequestContext()
        aliases = self._alias_service()
        session = await self._linked_session(session_id)
        if aliases.is_alias(session.external_identity):
            raise ValidationError("link codes are issued from a direct chat")
        await self._throttle(session.external_identity, "alias.issue", context)
        code = await aliases.issue_link_code(session.external_identity)
        await self.audit.record(
            EventType.DATA_MODIFICATION,
            user_id=session.account_id,
            session_id=session_id,
            ip_address=context.ip_address,
            user_agent=context.user_agent,
            details={"action": "alias_code_issued"},
        )
        return code

    async def redeem_alias_code(
        self, alias: str, code: str, context: Optional[RequestContext] = None
    ) -> Session:
        """Map a group alias onto the direct chat that issued ``code``."""
        context = context or RequestContext()
        aliases = self._alias_service()
        if not aliases.is_alias(alias):
            raise ValidationError("identity is not a group alias")
        await self._throttle(alias, "alias.redeem", context)
        try:
            await aliases.redeem_link_code(code, alias)
        except ChallengeInvalid:
            await self._fail("alias_code_invalid", context, user_id=self._subject(alias))
        session = await self.sessions.get_by_external_identity(alias)
        if session is None or not session.verified:
            await aliases.unlink(alias)
            raise Unauthenticated("invalid or expired session")
        await self.audit.record(
            EventType.DATA_MODIFICATION,
            user_id=session.account_id,
            session_id=session.session_id,
            ip_address=context.ip_address,
            user_agent=context.user_agent,
            details={"action": "alias_linked", "alias": self._subject(alias)},
        )
        await self._notify("alias_linked", session_id=session.session_id)
        return session

    async def unlink_alias(
        self, session_id: str, alias: str, context: Optional[RequestContext] = None
    ) -> bool:
        """Drop ``alias`` if it points at this session's chat identity."""
        context = context or RequestContext()
        aliases = self._alias_service()
        session = await self._linked_session(session_id)
        if await aliases.resolve(alias) != session.external_identity:
            return False
        removed = await aliases.unlink(alias)
        if removed:
            await self.audit.record(
                EventType.DATA_MODIFICATION,
                user_id=session.account_id,
                session_id=session_id,
                ip_address=context.ip_address,
                user_agent=context.user_agent,
                details={"action": "alias_unlinked", "alias": self._subject(alias)},
            )
        return removed

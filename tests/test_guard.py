"""Tests for the authorization guard in front of protected operations."""

import pytest

from pulsegate.service.audit import EventFilter
from pulsegate.service.errors import (
    ConfigurationError,
    RateLimited,
    SecondFactorRequired,
    Unauthenticated,
    Unauthorized,
)
from pulsegate.service.guard import (
    AuthorizationGuard,
    OperationPolicy,
    RequestContext,
    with_authorization,
)
from pulsegate.storage.models import EventType


@pytest.fixture
def guard(sessions, rbac, rate_limiter, audit, settings, second_factor, clock):
    return AuthorizationGuard(
        sessions, rbac, rate_limiter, audit, settings, second_factor=second_factor, clock=clock
    )


async def _session(sessions, role=None, account_id="acct-1", phone="+15550001111"):
    session = await sessions.create("ext-" + account_id, phone, account_id=account_id)
    if role:
        session = await sessions.update(session.session_id, metadata={"role": role})
    return session


class TestDecisions:
    """Each decision stops at the first failing check and is audited once."""

    async def test_missing_session(self, guard, audit):
        decision = await guard.authorize("nope", "account.view", RequestContext("10.0.0.1"))

        assert decision.granted is False
        assert decision.reason == "invalid_session"
        events = await audit.query()
        assert [e.type for e in events] == [EventType.SESSION_INVALID]
        assert events[0].ip_address == "10.0.0.1"
        assert decision.audit_event_id == events[0].id

    async def test_permission_denied(self, guard, sessions, audit):
        session = await _session(sessions)

        decision = await guard.authorize(session.session_id, "user.view")

        assert decision.reason == "permission_denied"
        assert decision.role == "user"
        events = await audit.query()
        assert [e.type for e in events] == [EventType.PERMISSION_DENIED]
        assert events[0].details["required"] == ["user:view"]
        assert events[0].user_id == "acct-1"

    async def test_granted(self, guard, sessions, audit):
        session = await _session(sessions, role="admin")

        decision = await guard.authorize(session.session_id, "user.view")

        assert decision.granted is True
        assert decision.rate_limit.allowed is True
        assert [e.type for e in await audit.query()] == [EventType.ACCESS_GRANTED]

    async def test_second_factor_required(self, guard, sessions, audit):
        session = await _session(sessions, role="admin")

        decision = await guard.authorize(session.session_id, "user.edit")

        assert decision.reason == "second_factor_required"
        assert [e.type for e in await audit.query()] == [EventType.SECOND_FACTOR_REQUIRED]

    async def test_recent_second_factor_satisfies(self, guard, sessions):
        session = await _session(sessions, role="admin")
        await sessions.set_second_factor_verified(session.session_id, True)

        assert (await guard.authorize(session.session_id, "user.edit")).granted is True

    async def test_expired_second_factor_window(self, guard, sessions, clock, settings):
        session = await _session(sessions, role="admin")
        await sessions.set_second_factor_verified(session.session_id, True)
        clock.advance(settings.mfa_window_seconds)

        decision = await guard.authorize(session.session_id, "user.edit")
        assert decision.reason == "second_factor_required"

    async def test_trusted_device_satisfies(self, guard, sessions, second_factor):
        session = await _session(sessions, role="admin")
        await second_factor.register_trusted_device("acct-1", "dev-1", "Laptop")

        trusted = await guard.authorize(
            session.session_id, "user.edit", RequestContext(device_id="dev-1")
        )
        untrusted = await guard.authorize(
            session.session_id, "user.edit", RequestContext(device_id="dev-2")
        )

        assert trusted.granted is True
        assert untrusted.reason == "second_factor_required"

    async def test_rate_limited_after_policy_limit(self, guard, sessions, audit):
        session = await _session(sessions)

        for _ in range(5):
            assert (await guard.authorize(session.session_id, "second_factor.manage")).granted

        decision = await guard.authorize(session.session_id, "second_factor.manage")

        assert decision.reason == "rate_limited"
        assert decision.rate_limit.retry_after == 300
        denied = await audit.query(EventFilter(types=[EventType.RATE_LIMIT_EXCEEDED]))
        assert len(denied) == 1
        assert len(await audit.query()) == 6

    async def test_denied_permission_does_not_consume_rate_limit(
        self, guard, sessions, store
    ):
        session = await _session(sessions)
        await guard.authorize(session.session_id, "user.view")
        assert await store.keys("rate-limit:*") == []


class TestRoles:
    async def test_admin_phone_numbers(self, sessions, rbac, rate_limiter, audit, settings):
        admin_settings = settings.model_copy(update={"admin_phone_numbers": "15550009999"})
        guard = AuthorizationGuard(sessions, rbac, rate_limiter, audit, admin_settings)
        session = await _session(sessions, phone="+15550009999")

        assert guard.role_for(session) == "admin"
        assert (await guard.authorize(session.session_id, "user.view")).granted

    async def test_metadata_role_wins(self, guard, sessions):
        session = await _session(sessions, role="moderator")
        assert guard.role_for(session) == "moderator"

    async def test_default_role(self, guard, sessions):
        assert guard.role_for(await _session(sessions)) == "user"


class TestEnforce:
    async def test_exceptions_per_reason(self, guard, sessions):
        user = await _session(sessions)
        admin = await _session(sessions, role="admin", account_id="acct-2")

        with pytest.raises(Unauthenticated):
            await guard.enforce(None, "account.view")
        with pytest.raises(Unauthorized):
            await guard.enforce(user.session_id, "user.view")
        with pytest.raises(SecondFactorRequired):
            await guard.enforce(admin.session_id, "user.edit")

    async def test_rate_limited_carries_retry_after(self, guard, sessions):
        session = await _session(sessions)
        for _ in range(5):
            await guard.enforce(session.session_id, "second_factor.manage")

        with pytest.raises(RateLimited) as exc_info:
            await guard.enforce(session.session_id, "second_factor.manage")
        assert exc_info.value.retry_after == 300

    async def test_undeclared_operation(self, guard):
        with pytest.raises(ConfigurationError):
            await guard.authorize("anything", "launch.missiles")

    async def test_custom_policies(self, sessions, rbac, rate_limiter, audit, settings):
        guard = AuthorizationGuard(
            sessions,
            rbac,
            rate_limiter,
            audit,
            settings,
            policies={"ping": OperationPolicy(rate_limit=1, window_seconds=60)},
        )
        session = await _session(sessions)

        assert (await guard.authorize(session.session_id, "ping")).granted
        assert (await guard.authorize(session.session_id, "ping")).reason == "rate_limited"


class TestWrapper:
    async def test_wrapped_call_receives_session(self, guard, sessions):
        calls = []

        async def view_account(session, account):
            calls.append((session.session_id, account))
            return "balance"

        guarded = with_authorization(guard, "account.view", view_account)
        session = await _session(sessions)

        assert await guarded(session.session_id, "checking") == "balance"
        assert calls == [(session.session_id, "checking")]

        with pytest.raises(Unauthenticated):
            await guarded("missing", "checking")
        assert len(calls) == 1

    def test_undeclared_operation_fails_at_wiring(self, guard):
        async def noop(session):
            return None

        with pytest.raises(ConfigurationError):
            with_authorization(guard, "not.declared", noop)

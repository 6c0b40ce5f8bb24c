"""Integration tests for the HTTP surface.

Covers the link flow end to end, the error envelope, guard-backed admin
routes and the health endpoint, all against the in-memory runtime.
"""

import asyncio
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from pulsegate import app as app_module
from pulsegate.service.challenges import ChallengeService
from pulsegate.service.runtime import get_runtime
from pulsegate.storage.models import EventType

CODE = "482913"
PHONE = "+15550001111"


class StubMessaging:
    def __init__(self):
        self.sent = []

    def is_ready(self):
        return True

    async def send_message(self, identity, text):
        self.sent.append((identity, text))


class StubAccounts:
    async def verify_account_exists(self, phone_number):
        return phone_number == PHONE

    async def get_user_id(self, phone_number):
        return "acct-1" if phone_number == PHONE else None


@pytest.fixture
def messaging():
    stub = StubMessaging()
    get_runtime().attach_collaborators(messaging=stub, accounts=StubAccounts())
    return stub


@pytest.fixture
def client(messaging):
    """Create a test client for the API."""
    return TestClient(app_module.app)


@pytest.fixture(autouse=True)
def fixed_code():
    with patch.object(ChallengeService, "_generate_code", return_value=CODE):
        yield


def _bearer(session_id):
    return {"Authorization": f"Bearer {session_id}"}


@pytest.fixture
def linked(client):
    """Link a chat identity through the public endpoints and return its session id."""
    started = client.post(
        "/v1/auth/link", json={"external_identity": "chat-1", "phone_number": PHONE}
    )
    assert started.status_code == 200, started.text
    session_id = started.json()["data"]["session_id"]
    verified = client.post("/v1/auth/link/verify", json={"code": CODE}, headers=_bearer(session_id))
    assert verified.status_code == 200, verified.text
    return session_id


def _session_with_role(role, account_id="acct-admin", second_factor=False):
    runtime = get_runtime()

    async def create():
        session = await runtime.sessions.create("ext-" + account_id, "+15550009999", account_id=account_id)
        if role:
            await runtime.sessions.update(session.session_id, metadata={"role": role})
        if second_factor:
            await runtime.sessions.set_second_factor_verified(session.session_id, True)
        return session.session_id

    return asyncio.run(create())


class TestLinkFlow:
    def test_link_and_verify(self, client, messaging):
        started = client.post(
            "/v1/auth/link", json={"external_identity": "chat-1", "phone_number": PHONE}
        )
        body = started.json()

        assert body["status"] == "ok"
        assert body["data"]["code_sent"] is True
        assert CODE in messaging.sent[0][1]

        session_id = body["data"]["session_id"]
        verified = client.post(
            "/v1/auth/link/verify", json={"code": CODE}, headers=_bearer(session_id)
        )
        data = verified.json()["data"]

        assert data["verified"] is True
        assert data["account_id"] == "acct-1"
        assert data["mfa_verified"] is True
        assert "auth_token" not in data

    def test_wrong_code(self, client):
        started = client.post(
            "/v1/auth/link", json={"external_identity": "chat-1", "phone_number": PHONE}
        )
        session_id = started.json()["data"]["session_id"]

        response = client.post(
            "/v1/auth/link/verify", json={"code": "000000"}, headers=_bearer(session_id)
        )

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "challenge_invalid"

    def test_unknown_account_is_generic(self, client):
        response = client.post(
            "/v1/auth/link", json={"external_identity": "chat-1", "phone_number": "+15550002222"}
        )
        assert response.status_code == 401
        assert response.json()["error"]["message"] == "unable to verify this account"

    def test_consent_and_unlink(self, client, linked):
        consent = client.post("/v1/auth/consent", json={"given": True}, headers=_bearer(linked))
        unlink = client.post("/v1/auth/unlink", headers=_bearer(linked))
        after = client.post("/v1/auth/unlink", headers=_bearer(linked))

        assert consent.json()["data"]["consent_given"] is True
        assert unlink.json()["data"] == {"unlinked": True}
        assert after.status_code == 401


class TestErrorEnvelope:
    def test_missing_bearer(self, client):
        response = client.post(
            "/v1/auth/link/verify", json={"code": CODE}, headers={"X-Request-ID": "req-123"}
        )
        body = response.json()

        assert response.status_code == 401
        assert body["status"] == "error"
        assert body["error"]["code"] == "unauthorized"
        assert body["request_id"] == "req-123"
        assert response.headers["X-Request-ID"] == "req-123"

    def test_validation_error(self, client):
        response = client.post("/v1/auth/link", json={})
        body = response.json()

        assert response.status_code == 400
        assert body["error"]["code"] == "validation_error"
        assert isinstance(body["error"]["details"], list)

    def test_invalid_phone(self, client):
        response = client.post(
            "/v1/auth/link", json={"external_identity": "chat-1", "phone_number": "not a phone"}
        )
        assert response.status_code == 400

    def test_security_headers(self, client):
        response = client.get("/healthz")
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["X-Frame-Options"] == "DENY"
        assert response.headers["Cache-Control"] == "no-store"


class TestGuardedRoutes:
    def test_user_cannot_reach_admin(self, client, linked):
        response = client.get("/v1/admin/sessions", headers=_bearer(linked))
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"

    def test_admin_lists_and_revokes_sessions(self, client, linked):
        admin = _session_with_role("admin")

        listed = client.get("/v1/admin/sessions?linked_only=true", headers=_bearer(admin))
        revoked = client.delete(f"/v1/admin/sessions/{linked}", headers=_bearer(admin))
        missing = client.delete(f"/v1/admin/sessions/{linked}", headers=_bearer(admin))

        assert listed.status_code == 200
        assert listed.headers["X-RateLimit-Limit"] == "20"
        assert linked in {s["session_id"] for s in listed.json()["data"]}
        assert revoked.status_code == 200
        assert missing.status_code == 404

    def test_rate_limit_returns_retry_after(self, client, linked):
        for _ in range(5):
            assert client.get("/v1/auth/devices", headers=_bearer(linked)).status_code == 200

        response = client.get("/v1/auth/devices", headers=_bearer(linked))

        assert response.status_code == 429
        assert response.json()["error"]["code"] == "rate_limited"
        assert int(response.headers["Retry-After"]) > 0

    def test_authenticator_setup_needs_only_a_session(self, client):
        session_id = _session_with_role(None, account_id="acct-9")
        response = client.post("/v1/auth/2fa/setup", json={}, headers=_bearer(session_id))
        assert response.status_code == 200
        assert response.json()["data"]["provisioning_uri"].startswith("otpauth://")

    def test_audit_events_for_admin(self, client, linked):
        admin = _session_with_role("admin")

        response = client.get(
            "/v1/admin/security/events",
            params={"type": EventType.LOGIN_SUCCESS.value},
            headers=_bearer(admin),
        )

        events = response.json()["data"]
        assert response.status_code == 200
        assert [event["type"] for event in events] == ["login_success"]
        single = client.get(f"/v1/admin/security/events/{events[0]['id']}", headers=_bearer(admin))
        assert single.json()["data"]["integrity_hash"] == events[0]["integrity_hash"]

    def test_naive_time_bounds(self, client, linked):
        admin = _session_with_role("admin")

        response = client.get(
            "/v1/admin/security/events",
            params={"start": "2000-01-01T00:00:00", "type": "login_success"},
            headers=_bearer(admin),
        )

        assert response.status_code == 200
        assert len(response.json()["data"]) == 1

    def test_export_is_audited(self, client):
        admin = _session_with_role("admin")

        response = client.get("/v1/admin/security/export?format=csv", headers=_bearer(admin))

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/csv")
        assert "security-events.csv" in response.headers["Content-Disposition"]
        events = client.get(
            "/v1/admin/security/events", params={"type": "bulk_operation"}, headers=_bearer(admin)
        )
        assert len(events.json()["data"]) == 1

    def test_roles_matrix(self, client):
        admin = _session_with_role("admin")
        data = client.get("/v1/admin/roles", headers=_bearer(admin)).json()["data"]

        assert {role["name"] for role in data["roles"]} >= {"admin", "user"}
        assert data["matrix"]["admin"]["session:delete"] is True


class TestGroupAliases:
    def test_alias_flow(self, client, linked):
        issued = client.post("/v1/auth/alias/code", headers=_bearer(linked))
        code = issued.json()["data"]["code"]

        redeemed = client.post("/v1/auth/alias/redeem", json={"alias": "9001@lid", "code": code})
        again = client.post(
            "/v1/auth/link", json={"external_identity": "9001@lid", "phone_number": PHONE}
        )

        assert issued.status_code == 200
        assert redeemed.json()["data"]["session_id"] == linked
        assert again.json()["data"] == {
            "session_id": linked,
            "code_sent": False,
            "already_linked": True,
        }

        removed = client.delete("/v1/auth/alias/9001@lid", headers=_bearer(linked))
        missing = client.delete("/v1/auth/alias/9001@lid", headers=_bearer(linked))
        assert removed.status_code == 200
        assert missing.status_code == 404

    def test_redeem_with_unknown_code(self, client):
        response = client.post(
            "/v1/auth/alias/redeem", json={"alias": "9001@lid", "code": "ZZZZZZ"}
        )
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "challenge_invalid"

    def test_code_requires_a_session(self, client):
        assert client.post("/v1/auth/alias/code").status_code == 401


class TestSecondFactorStatus:
    def test_status_for_linked_account(self, client, linked):
        data = client.get("/v1/auth/2fa/status", headers=_bearer(linked)).json()["data"]

        assert data == {
            "enabled": False,
            "remaining_backup_codes": 0,
            "use_count": 0,
            "last_used_at": None,
        }


class TestRoleAssignment:
    def test_admin_assigns_a_lower_role(self, client, linked):
        admin = _session_with_role("admin", second_factor=True)

        response = client.put(
            f"/v1/admin/sessions/{linked}/role", json={"role": "moderator"}, headers=_bearer(admin)
        )
        changes = client.get(
            "/v1/admin/security/events",
            params={"type": "configuration_change"},
            headers=_bearer(admin),
        ).json()["data"]

        assert response.status_code == 200
        assert response.json()["data"]["role"] == "moderator"
        assert changes[0]["details"] == {"action": "role_assigned", "from": "user", "to": "moderator"}

    def test_cannot_grant_above_own_rank(self, client, linked):
        admin = _session_with_role("admin", second_factor=True)

        response = client.put(
            f"/v1/admin/sessions/{linked}/role",
            json={"role": "super_admin"},
            headers=_bearer(admin),
        )

        assert response.status_code == 403

    def test_needs_a_recent_second_factor(self, client, linked):
        admin = _session_with_role("admin")

        response = client.put(
            f"/v1/admin/sessions/{linked}/role", json={"role": "moderator"}, headers=_bearer(admin)
        )

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "mfa_required"

    def test_unknown_role_and_session(self, client, linked):
        admin = _session_with_role("admin", second_factor=True)

        unknown_role = client.put(
            f"/v1/admin/sessions/{linked}/role", json={"role": "wizard"}, headers=_bearer(admin)
        )
        unknown_session = client.put(
            "/v1/admin/sessions/missing/role", json={"role": "moderator"}, headers=_bearer(admin)
        )

        assert unknown_role.status_code == 400
        assert unknown_session.status_code == 404


class TestHealth:
    def test_healthy(self, client):
        response = client.get("/healthz")
        body = response.json()

        assert response.status_code == 200
        assert body["status"] == "healthy"
        assert body["checks"]["store"]["type"] == "MemoryStore"

    def test_open_breaker_degrades(self, client):
        breaker = get_runtime().breakers.get("messaging.send")
        for _ in range(breaker.config.failure_threshold):
            breaker._on_failure(RuntimeError("down"))

        body = client.get("/healthz").json()

        assert body["status"] == "degraded"
        assert body["checks"]["breakers"]["open"] == ["messaging.send"]

    def test_store_down(self, client):
        async def down():
            raise ConnectionError("unreachable")

        with patch.object(get_runtime().store, "ping", down):
            response = client.get("/healthz")

        assert response.status_code == 503
        assert response.json()["status"] == "unhealthy"

"""Tests for the encrypted session store and its identity index."""

from unittest.mock import AsyncMock, patch

import pytest

from pulsegate.service.aliases import GroupAliasService
from pulsegate.service.errors import DependencyUnavailable
from pulsegate.service.sessions import SessionStore
from pulsegate.storage.errors import StoreError


class TestSessionLifecycle:
    """Creating, reading, expiring and deleting sessions."""

    async def test_create_and_lookup_by_identity(self, sessions, store):
        session = await sessions.create("15550001111@chat", "+15550001111")

        assert len(session.session_id) == 32
        assert session.verified is False
        found = await sessions.get_by_external_identity("15550001111@chat")
        assert found is not None
        assert found.session_id == session.session_id

        raw = await store.get(f"session:{session.session_id}")
        assert "+15550001111" not in raw
        assert "15550001111@chat" not in raw

    async def test_session_with_account_is_verified(self, sessions):
        session = await sessions.create("id@chat", "+15550001111", account_id="acct-1")
        assert session.verified is True
        assert session.account_id == "acct-1"

    async def test_forced_expiry_hides_session(self, sessions, clock, settings):
        """A session past its expiry is gone for both id and identity lookups."""
        session = await sessions.create("X@chat", "+15550001111")
        assert await sessions.get_by_external_identity("X@chat") is not None

        clock.advance(settings.session_ttl_seconds)

        assert await sessions.is_valid(session.session_id) is False
        assert await sessions.get(session.session_id) is None
        assert await sessions.get_by_external_identity("X@chat") is None

    async def test_expired_record_is_evicted_lazily(self, store, crypto, settings, clock):
        """A record that outlives its expiry in the store is removed on read."""
        session_store = SessionStore(store, crypto, settings, clock=clock)
        session = await session_store.create("lazy@chat", "+15550001111")
        await store.expire(f"session:{session.session_id}", 10 * settings.session_ttl_seconds)
        clock.advance(settings.session_ttl_seconds + 1)

        assert await session_store.get(session.session_id) is None
        assert await store.get(f"session:{session.session_id}") is None

    async def test_delete_removes_session_and_index(self, sessions, store, crypto):
        session = await sessions.create("del@chat", "+15550001111")

        assert await sessions.delete(session.session_id) is True
        assert await sessions.get(session.session_id) is None
        assert await store.get(f"identity-index:{crypto.hash('del@chat')}") is None
        assert await sessions.delete(session.session_id) is False

    async def test_delete_keeps_index_pointing_at_newer_session(self, sessions, store, crypto):
        old = await sessions.create("same@chat", "+15550001111")
        new = await sessions.create("same@chat", "+15550001111")

        await sessions.delete(old.session_id)

        index = await store.get(f"identity-index:{crypto.hash('same@chat')}")
        assert index == new.session_id

    async def test_list_sessions_filters_linked(self, sessions, clock):
        await sessions.create("a@chat", "+15550001111")
        clock.advance(1)
        linked = await sessions.create("b@chat", "+15550002222", account_id="acct-2")

        everything = await sessions.list_sessions()
        only_linked = await sessions.list_sessions(linked_only=True)

        assert len(everything) == 2
        assert everything[0].session_id == linked.session_id
        assert [s.session_id for s in only_linked] == [linked.session_id]


class TestSessionUpdates:
    """Field updates, the second factor window and consent."""

    async def test_update_changes_allowed_fields(self, sessions, clock):
        session = await sessions.create("u@chat", "+15550001111")
        clock.advance(5)

        updated = await sessions.update(session.session_id, account_id="acct-9", verified=True)

        assert updated.account_id == "acct-9"
        assert updated.verified is True
        assert updated.last_activity == clock.now
        assert updated.expires_at == session.expires_at

    async def test_update_rejects_owned_fields(self, sessions):
        session = await sessions.create("u@chat", "+15550001111")
        with pytest.raises(ValueError):
            await sessions.update(session.session_id, expires_at=None)

    async def test_update_missing_session_returns_none(self, sessions):
        assert await sessions.update("missing", verified=True) is None

    async def test_update_preserves_remaining_ttl(self, sessions, store, clock, settings):
        session = await sessions.create("ttl@chat", "+15550001111")
        clock.advance(3600)

        await sessions.update(session.session_id, profile_name="Ada")

        remaining = await store.ttl(f"session:{session.session_id}")
        assert remaining == settings.session_ttl_seconds - 3600

    async def test_second_factor_window(self, sessions, clock, settings):
        session = await sessions.create("mfa@chat", "+15550001111")
        assert await sessions.is_second_factor_valid(session.session_id) is False

        await sessions.set_second_factor_verified(session.session_id, True)
        assert await sessions.is_second_factor_valid(session.session_id) is True

        clock.advance(settings.mfa_window_seconds)
        assert await sessions.is_second_factor_valid(session.session_id) is False

    async def test_consent_is_timestamped(self, sessions, clock):
        session = await sessions.create("c@chat", "+15550001111")

        given = await sessions.set_consent(session.session_id, True)
        assert given.consent_given is True
        assert given.consent_at == clock.now

        withdrawn = await sessions.set_consent(session.session_id, False)
        assert withdrawn.consent_given is False
        assert withdrawn.consent_at is None


class TestSessionFailureModes:
    """Store outages and corrupt records fail closed."""

    async def test_create_raises_when_store_down(self, sessions, store):
        with patch.object(store, "set", AsyncMock(side_effect=StoreError("down"))):
            with pytest.raises(DependencyUnavailable):
                await sessions.create("down@chat", "+15550001111")

    async def test_read_failure_reports_absent(self, sessions, store):
        session = await sessions.create("r@chat", "+15550001111")
        with patch.object(store, "get", AsyncMock(side_effect=StoreError("down"))):
            assert await sessions.get(session.session_id) is None
            assert await sessions.is_valid(session.session_id) is False

    async def test_corrupt_record_is_deleted(self, sessions, store):
        session = await sessions.create("bad@chat", "+15550001111")
        await store.set(f"session:{session.session_id}", "not-a-ciphertext")

        assert await sessions.get(session.session_id) is None
        assert await store.get(f"session:{session.session_id}") is None


class TestAliasResolution:
    """Group aliases resolve to the canonical identity's session, one hop only."""

    @pytest.fixture
    def aliases(self, store, crypto, settings):
        return GroupAliasService(store, crypto, settings)

    @pytest.fixture
    def alias_sessions(self, store, crypto, settings, clock, aliases):
        return SessionStore(store, crypto, settings, alias_resolver=aliases, clock=clock)

    async def test_alias_resolves_to_canonical_session(self, alias_sessions, aliases):
        session = await alias_sessions.create("15550001111@chat", "+15550001111")
        code = await aliases.issue_link_code("15550001111@chat")
        await aliases.redeem_link_code(code, "998877@lid")

        found = await alias_sessions.get_by_external_identity("998877@lid")

        assert found is not None
        assert found.session_id == session.session_id

    async def test_alias_of_alias_is_not_followed(self, alias_sessions, aliases, store, crypto):
        await alias_sessions.create("15550001111@chat", "+15550001111")
        first = await aliases.issue_link_code("15550001111@chat")
        await aliases.redeem_link_code(first, "111@lid")
        second = await aliases.issue_link_code("111@lid")
        await aliases.redeem_link_code(second, "222@lid")

        assert await alias_sessions.get_by_external_identity("111@lid") is not None
        assert await alias_sessions.get_by_external_identity("222@lid") is None

    async def test_non_alias_identity_skips_resolver(self, store, crypto, settings, clock):
        resolver = AsyncMock()
        resolver.resolve = AsyncMock(return_value="someone@chat")
        session_store = SessionStore(store, crypto, settings, alias_resolver=resolver, clock=clock)

        assert await session_store.get_by_external_identity("plain@chat") is None
        resolver.resolve.assert_not_called()

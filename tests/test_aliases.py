"""Tests for group alias link codes and resolution."""

import pytest

from pulsegate.service.errors import ChallengeInvalid
from pulsegate.service.sessions import SessionStore


class TestLinkCodes:
    async def test_code_maps_alias_once(self, aliases):
        code = await aliases.issue_link_code("15550001111@chat")

        assert await aliases.redeem_link_code(code.lower(), "9001@lid") == "15550001111@chat"
        with pytest.raises(ChallengeInvalid):
            await aliases.redeem_link_code(code, "9002@lid")

        assert await aliases.resolve("9001@lid") == "15550001111@chat"
        assert await aliases.resolve("9002@lid") is None

    async def test_expired_code(self, aliases, clock, settings):
        code = await aliases.issue_link_code("15550001111@chat")
        clock.advance(settings.alias_link_code_ttl_seconds)

        with pytest.raises(ChallengeInvalid):
            await aliases.redeem_link_code(code, "9001@lid")

    async def test_unknown_code(self, aliases):
        with pytest.raises(ChallengeInvalid):
            await aliases.redeem_link_code("ZZZZZZ", "9001@lid")

    async def test_resolve_refreshes_mapping(self, aliases, store, clock, settings):
        code = await aliases.issue_link_code("15550001111@chat")
        await aliases.redeem_link_code(code, "9001@lid")
        clock.advance(3600)

        await aliases.resolve("9001@lid")

        assert await store.ttl("alias-map:9001@lid") == settings.alias_ttl_seconds

    async def test_unlink(self, aliases):
        code = await aliases.issue_link_code("15550001111@chat")
        await aliases.redeem_link_code(code, "9001@lid")

        assert await aliases.unlink("9001@lid") is True
        assert await aliases.unlink("9001@lid") is False
        assert await aliases.resolve("9001@lid") is None

    def test_alias_suffix(self, aliases):
        assert aliases.is_alias("9001@lid")
        assert not aliases.is_alias("15550001111@chat")


class TestSessionLookupThroughAlias:
    async def test_alias_finds_canonical_session(self, aliases, store, crypto, settings, clock):
        sessions = SessionStore(store, crypto, settings, alias_resolver=aliases, clock=clock)
        session = await sessions.create("15550001111@chat", "+15550001111", account_id="acct-1")
        code = await aliases.issue_link_code("15550001111@chat")
        await aliases.redeem_link_code(code, "9001@lid")

        found = await sessions.get_by_external_identity("9001@lid")

        assert found.session_id == session.session_id

"""Tests for single-use one-time codes."""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from pulsegate.service.challenges import ChallengeService
from pulsegate.service.errors import DependencyUnavailable
from pulsegate.storage.errors import StoreError


class TestChallengeIssue:
    async def test_code_has_configured_length(self, challenges, settings):
        code = await challenges.issue("+15550001111", "sess-1")
        assert len(code) == settings.otp_length
        assert code.isdigit()

    async def test_only_hash_is_stored(self, challenges, store):
        code = await challenges.issue("+15550001111", "sess-1")
        raw = await store.get("otp:sess-1")
        assert raw is not None
        assert code not in raw
        assert await challenges.has_pending("sess-1") is True

    async def test_reissue_replaces_previous_code(self, challenges):
        with patch.object(ChallengeService, "_generate_code", side_effect=["111111", "222222"]):
            await challenges.issue("+15550001111", "sess-1")
            await challenges.issue("+15550001111", "sess-1")

        assert await challenges.verify("sess-1", "111111") is False
        assert await challenges.verify("sess-1", "222222") is True

    async def test_issue_fails_closed_when_store_down(self, challenges, store):
        with patch.object(store, "set", AsyncMock(side_effect=StoreError("down"))):
            with pytest.raises(DependencyUnavailable):
                await challenges.issue("+15550001111", "sess-1")


class TestChallengeVerify:
    async def test_code_is_single_use(self, challenges):
        """Wrong code keeps the record; the right one works exactly once."""
        with patch.object(ChallengeService, "_generate_code", return_value="482913"):
            await challenges.issue("+15550001111", "S")

        assert await challenges.verify("S", "000000") is False
        assert await challenges.has_pending("S") is True
        assert await challenges.verify("S", "482913") is True
        assert await challenges.verify("S", "482913") is False
        assert await challenges.has_pending("S") is False

    async def test_expired_code_is_rejected(self, challenges, clock, settings):
        with patch.object(ChallengeService, "_generate_code", return_value="482913"):
            await challenges.issue("+15550001111", "S")

        clock.advance(settings.otp_ttl_seconds)

        assert await challenges.verify("S", "482913") is False

    async def test_unknown_session_is_rejected(self, challenges):
        assert await challenges.verify("nope", "123456") is False

    async def test_concurrent_verifications_consume_once(self, challenges):
        with patch.object(ChallengeService, "_generate_code", return_value="482913"):
            await challenges.issue("+15550001111", "S")

        results = await asyncio.gather(
            challenges.verify("S", "482913"), challenges.verify("S", "482913")
        )

        assert sorted(results) == [False, True]

    async def test_consume_failure_is_rejection(self, challenges, store):
        with patch.object(ChallengeService, "_generate_code", return_value="482913"):
            await challenges.issue("+15550001111", "S")

        with patch.object(store, "delete", AsyncMock(side_effect=StoreError("down"))):
            assert await challenges.verify("S", "482913") is False

    async def test_read_failure_is_rejection(self, challenges, store):
        with patch.object(store, "get", AsyncMock(side_effect=StoreError("down"))):
            assert await challenges.verify("S", "482913") is False

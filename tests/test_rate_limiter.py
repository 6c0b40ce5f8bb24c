"""Tests for the fixed-window rate limiter."""

from unittest.mock import AsyncMock, patch

from pulsegate.storage.errors import StoreError


class TestFixedWindow:
    async def test_limit_plus_one_is_denied(self, rate_limiter, clock):
        for expected_remaining in (2, 1, 0):
            result = await rate_limiter.allow("+15550001111", "link", 3, 60)
            assert result.allowed is True
            assert result.remaining == expected_remaining

        clock.advance(20)
        denied = await rate_limiter.allow("+15550001111", "link", 3, 60)

        assert denied.allowed is False
        assert denied.count == 4
        assert denied.retry_after == 40

    async def test_window_expiry_resets_counter(self, rate_limiter, clock):
        for _ in range(4):
            await rate_limiter.allow("+15550001111", "link", 3, 60)

        clock.advance(60)
        result = await rate_limiter.allow("+15550001111", "link", 3, 60)

        assert result.allowed is True
        assert result.count == 1

    async def test_counters_are_scoped(self, rate_limiter):
        for _ in range(3):
            await rate_limiter.allow("a", "link", 3, 60)

        assert (await rate_limiter.allow("b", "link", 3, 60)).allowed is True
        assert (await rate_limiter.allow("a", "mfa", 3, 60)).allowed is True
        assert (await rate_limiter.allow("a", "link", 3, 60)).allowed is False

    async def test_reset_clears_counter(self, rate_limiter):
        for _ in range(4):
            await rate_limiter.allow("a", "link", 3, 60)
        await rate_limiter.reset("a", "link")
        assert (await rate_limiter.allow("a", "link", 3, 60)).allowed is True


class TestConfigurationEdges:
    async def test_non_positive_limit_disables_limiting(self, rate_limiter, store):
        result = await rate_limiter.allow("a", "link", 0, 60)
        assert result.allowed is True
        assert await store.keys("rate-limit:*") == []

    async def test_invalid_window_falls_back(self, rate_limiter, store):
        with patch("pulsegate.service.resilience.logger") as mock_logger:
            await rate_limiter.allow("a", "link", 3, 0)

        mock_logger.warning.assert_called_once()
        assert mock_logger.warning.call_args[0][0] == "rate_limit_invalid_window"
        assert await store.ttl("rate-limit:a:link") == 60

    async def test_store_failure_fails_open(self, rate_limiter, store):
        with patch.object(store, "incr", AsyncMock(side_effect=StoreError("down"))):
            result = await rate_limiter.allow("a", "link", 1, 60)
        assert result.allowed is True


class TestHeaders:
    async def test_allowed_headers(self, rate_limiter):
        result = await rate_limiter.allow("a", "link", 3, 60)
        assert result.headers() == {"X-RateLimit-Limit": "3", "X-RateLimit-Remaining": "2"}

    async def test_denied_headers_carry_retry_after(self, rate_limiter):
        await rate_limiter.allow("a", "link", 1, 60)
        denied = await rate_limiter.allow("a", "link", 1, 60)
        assert denied.headers()["Retry-After"] == "60"
        assert denied.headers()["X-RateLimit-Remaining"] == "0"

"""Tests for rate limit validation in runtime.py.

Rate limits use a token bucket in the ephemeral store. Invalid
window_seconds should be logged and default to 60 seconds.
"""
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from authflow.service.runtime import Runtime, check_rate_limit


class TestCheckRateLimit:
    """Tests for the check_rate_limit function."""

    @pytest.fixture
    def mock_runtime(self):
        runtime = MagicMock(spec=Runtime)
        runtime.cache = AsyncMock()
        runtime.cache.check_rate_limit = AsyncMock(return_value=True)
        return runtime

    async def test_zero_limit_always_passes(self, mock_runtime):
        """Rate limit of 0 or negative always passes without touching the store."""
        assert await check_rate_limit(mock_runtime, "login:203.0.113.7", 0, 60) is True
        assert await check_rate_limit(mock_runtime, "login:203.0.113.7", -1, 60) is True
        mock_runtime.cache.check_rate_limit.assert_not_called()

    async def test_invalid_window_logs_warning_and_defaults(self, mock_runtime):
        with patch("authflow.service.runtime.logger") as mock_logger:
            await check_rate_limit(mock_runtime, "login:203.0.113.7", 10, 0)

            mock_logger.warning.assert_called_once()
            call_args = mock_logger.warning.call_args
            assert call_args[0][0] == "rate_limit_invalid_window"
            assert call_args[1]["window_seconds"] == 0
        mock_runtime.cache.check_rate_limit.assert_called_once_with(
            "login:203.0.113.7", 10, 60, return_remaining=False
        )

    async def test_valid_window_no_warning(self, mock_runtime):
        with patch("authflow.service.runtime.logger") as mock_logger:
            await check_rate_limit(mock_runtime, "login:203.0.113.7", 10, 60)
            mock_logger.warning.assert_not_called()

    async def test_remaining_is_passed_through(self, mock_runtime):
        mock_runtime.cache.check_rate_limit = AsyncMock(return_value=(False, 0, 7))
        result = await check_rate_limit(
            mock_runtime, "check-email:203.0.113.7", 10, 60, return_remaining=True
        )
        assert result == (False, 0, 7)


class TestRateLimitIntegration:
    """Integration tests for rate limiting with an in-memory runtime."""

    async def test_rate_limit_with_memory_runtime(self, runtime):
        for _ in range(5):
            assert await check_rate_limit(runtime, "signup:198.51.100.2", 5, 60) is True
        assert await check_rate_limit(runtime, "signup:198.51.100.2", 5, 60) is False

    async def test_different_keys_independent(self, runtime):
        for _ in range(3):
            await check_rate_limit(runtime, "login:198.51.100.2", 3, 60)
        assert await check_rate_limit(runtime, "login:198.51.100.3", 3, 60) is True
        assert await check_rate_limit(runtime, "login:198.51.100.2", 3, 60) is False

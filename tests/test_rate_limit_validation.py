"""Tests for the token-bucket rate limiter in runtime.py.

Without Redis the limiter keeps per-key buckets in process. Invalid
window_seconds should be logged and default to 60 seconds.
"""
import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest


class TestCheckRateLimit:
    """Tests for the check_rate_limit function."""

    @pytest.fixture
    def mock_runtime(self):
        """Create a mock runtime with no Redis cache."""
        from portalauth.service.runtime import Runtime

        runtime = MagicMock(spec=Runtime)
        runtime.cache = None
        runtime._local_rate_limits = {}
        runtime._local_rate_limit_pruned_at = datetime.now(timezone.utc)
        runtime._local_rate_limit_lock = asyncio.Lock()
        return runtime

    @pytest.fixture
    def mock_runtime_with_cache(self):
        """Create a mock runtime with Redis cache."""
        from portalauth.service.runtime import Runtime

        runtime = MagicMock(spec=Runtime)
        runtime.cache = AsyncMock()
        runtime.cache.check_rate_limit = AsyncMock(return_value=True)
        return runtime

    async def test_zero_limit_always_passes(self, mock_runtime):
        from portalauth.service.runtime import check_rate_limit

        assert await check_rate_limit(mock_runtime, "test_key", 0, 60) is True
        assert await check_rate_limit(mock_runtime, "test_key", -1, 60) is True

    async def test_invalid_window_logs_warning(self, mock_runtime):
        from portalauth.service.runtime import check_rate_limit

        with patch("portalauth.service.runtime.logger") as mock_logger:
            await check_rate_limit(mock_runtime, "test_key", 10, 0)

            mock_logger.warning.assert_called_once()
            call_args = mock_logger.warning.call_args
            assert call_args[0][0] == "rate_limit_invalid_window"
            assert call_args[1]["window_seconds"] == 0

    async def test_valid_window_no_warning(self, mock_runtime):
        from portalauth.service.runtime import check_rate_limit

        with patch("portalauth.service.runtime.logger") as mock_logger:
            await check_rate_limit(mock_runtime, "test_key", 10, 60)

            mock_logger.warning.assert_not_called()

    async def test_sixth_attempt_in_window_is_refused(self, mock_runtime):
        from portalauth.service.runtime import check_rate_limit

        for i in range(5):
            assert await check_rate_limit(mock_runtime, "login:alice", 5, 900) is True, i
        assert await check_rate_limit(mock_runtime, "login:alice", 5, 900) is False

    async def test_return_remaining_reports_budget_and_reset(self, mock_runtime):
        from portalauth.service.runtime import check_rate_limit

        allowed, remaining, reset = await check_rate_limit(
            mock_runtime, "k", 2, 60, return_remaining=True
        )
        assert (allowed, remaining, reset) == (True, 1, 0)

        await check_rate_limit(mock_runtime, "k", 2, 60)
        allowed, remaining, reset = await check_rate_limit(
            mock_runtime, "k", 2, 60, return_remaining=True
        )
        assert allowed is False
        assert remaining == 0
        assert 0 < reset <= 30

    async def test_different_keys_independent(self, mock_runtime):
        from portalauth.service.runtime import check_rate_limit

        for _ in range(3):
            await check_rate_limit(mock_runtime, "key1", 3, 60)

        assert await check_rate_limit(mock_runtime, "key2", 3, 60) is True
        assert await check_rate_limit(mock_runtime, "key1", 3, 60) is False

    async def test_uses_redis_when_available(self, mock_runtime_with_cache):
        from portalauth.service.runtime import check_rate_limit

        await check_rate_limit(mock_runtime_with_cache, "test_key", 10, 60)

        mock_runtime_with_cache.cache.check_rate_limit.assert_called_once_with(
            "test_key", 10, 60, return_remaining=False, cost=1
        )

    async def test_bucket_refills_over_time(self, mock_runtime):
        from portalauth.service.runtime import check_rate_limit

        for _ in range(2):
            await check_rate_limit(mock_runtime, "test_key", 2, 1)
        assert await check_rate_limit(mock_runtime, "test_key", 2, 1) is False

        # Backdate the bucket as if the window had passed
        tokens, _, _ = mock_runtime._local_rate_limits["test_key"]
        expired = datetime.now(timezone.utc) - timedelta(seconds=2)
        mock_runtime._local_rate_limits["test_key"] = (tokens, expired, expired)

        assert await check_rate_limit(mock_runtime, "test_key", 2, 1) is True

    async def test_refilled_buckets_are_pruned(self, mock_runtime):
        from portalauth.service.runtime import LOCAL_BUCKET_PRUNE_INTERVAL, check_rate_limit

        for i in range(50):
            await check_rate_limit(mock_runtime, f"login:user{i}", 5, 60)
        await check_rate_limit(mock_runtime, "login:busy", 5, 60)
        assert len(mock_runtime._local_rate_limits) == 51

        # every bucket but the busy one refilled long ago
        past = datetime.now(timezone.utc) - timedelta(minutes=10)
        for key, (tokens, _, _) in list(mock_runtime._local_rate_limits.items()):
            if key != "login:busy":
                mock_runtime._local_rate_limits[key] = (tokens, past, past)
        mock_runtime._local_rate_limit_pruned_at = past - LOCAL_BUCKET_PRUNE_INTERVAL

        assert await check_rate_limit(mock_runtime, "login:busy", 5, 60) is True

        assert set(mock_runtime._local_rate_limits) == {"login:busy"}
        tokens, _, _ = mock_runtime._local_rate_limits["login:busy"]
        assert tokens < 4

    async def test_prune_waits_for_interval(self, mock_runtime):
        from portalauth.service.runtime import check_rate_limit

        await check_rate_limit(mock_runtime, "a", 5, 60)
        past = datetime.now(timezone.utc) - timedelta(minutes=10)
        mock_runtime._local_rate_limits["a"] = (5.0, past, past)

        await check_rate_limit(mock_runtime, "b", 5, 60)

        assert "a" in mock_runtime._local_rate_limits


class TestRateLimitIntegration:
    """Rate limiting against the real runtime's in-process buckets."""

    async def test_concurrent_rate_limit_calls(self):
        from portalauth.service.runtime import check_rate_limit, get_runtime

        runtime = get_runtime()
        key = f"test_concurrent_{datetime.now(timezone.utc).timestamp()}"
        limit = 10
        results = []

        async def make_request():
            results.append(await check_rate_limit(runtime, key, limit, 60))

        await asyncio.gather(*[make_request() for _ in range(15)])

        assert results.count(True) == limit
        assert results.count(False) == 5

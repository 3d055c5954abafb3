from __future__ import annotations

import hashlib
import json
import time
from typing import Any, Dict, Optional, Tuple, Union

import redis.asyncio as aioredis


class RedisCache:
    """Thin Redis wrapper for rate limits, token denylists and 2FA state."""

    # Lua token bucket script: atomic refill + consume
    _TOKEN_BUCKET_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local refill_rate = tonumber(ARGV[2])
local capacity = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])

local data = redis.call('HMGET', key, 'tokens', 'ts')
local tokens = tonumber(data[1])
local last = tonumber(data[2])

if tokens == nil or last == nil then
  tokens = capacity
  last = now
end

local delta = math.max(0, now - last)
tokens = math.min(capacity, tokens + delta * refill_rate)

if tokens < cost then
  redis.call('HMSET', key, 'tokens', tokens, 'ts', now)
  local reset_after = math.ceil((cost - tokens) / refill_rate)
  redis.call('EXPIRE', key, math.max(reset_after, 1))
  return {0, tokens, reset_after}
end

tokens = tokens - cost
redis.call('HMSET', key, 'tokens', tokens, 'ts', now)
local ttl = math.ceil(capacity / refill_rate)
redis.call('EXPIRE', key, math.max(ttl, 1))
return {1, tokens, 0}
"""

    # Record a failed second-factor attempt and trip the lockout atomically.
    # The window is fixed from the first failure; later failures do not extend it.
    _MFA_ATTEMPT_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 1 then
    return {1, -1}
end

local attempts = redis.call('INCR', KEYS[2])
if attempts == 1 then
    redis.call('EXPIRE', KEYS[2], ARGV[2])
end

local max_attempts = tonumber(ARGV[1])
if attempts >= max_attempts then
    redis.call('SET', KEYS[1], '1', 'EX', ARGV[2])
    redis.call('DEL', KEYS[2])
    return {1, attempts}
end

return {0, attempts}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(self._TOKEN_BUCKET_SCRIPT)
        self._mfa_attempt = self.client.register_script(self._MFA_ATTEMPT_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        from redis import Redis

        # Short-lived sync client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        """Hash rate-limit subjects so user input cannot inject delimiters."""

        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"rate:{digest}"

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        """Check rate limit using a Redis-backed token bucket."""

        safe_key = self._normalize_rate_key(key)
        refill_rate = float(limit) / float(window_seconds)
        allowed, tokens, reset_after = await self._token_bucket(
            keys=[safe_key],
            args=[time.time(), refill_rate, limit, max(1, cost)],
        )

        allowed_bool = bool(int(allowed))
        remaining = max(0, int(tokens))
        reset_seconds = int(reset_after) if reset_after else 0
        if return_remaining:
            return (allowed_bool, remaining, reset_seconds)
        return allowed_bool

    # token revocation
    async def mark_refresh_revoked(self, jti: str, ttl_seconds: int) -> None:
        await self.client.set(
            f"auth:refresh:revoked:{jti}", "1", ex=max(1, int(ttl_seconds))
        )

    async def is_refresh_revoked(self, jti: str) -> bool:
        return bool(await self.client.exists(f"auth:refresh:revoked:{jti}"))

    async def denylist_access_token(self, jti: str, ttl_seconds: int) -> None:
        """Add an access token JTI to the denylist until it would expire anyway."""
        if ttl_seconds > 0:
            await self.client.set(
                f"auth:access:denylist:{jti}", "1", ex=int(ttl_seconds)
            )

    async def is_access_token_denylisted(self, jti: str) -> bool:
        return bool(await self.client.exists(f"auth:access:denylist:{jti}"))

    # login challenges
    async def set_two_factor_challenge(
        self, token_hash: str, payload: Dict[str, Any], ttl_seconds: int
    ) -> None:
        await self.client.set(
            f"auth:2fa:challenge:{token_hash}", json.dumps(payload), ex=ttl_seconds
        )

    async def pop_two_factor_challenge(self, token_hash: str) -> Optional[Dict[str, Any]]:
        """Atomically read and delete a challenge so it can be redeemed once."""
        cached = await self.client.getdel(f"auth:2fa:challenge:{token_hash}")
        return self._loads(cached)

    # pending enrollment
    async def set_pending_enrollment(
        self, user_id: int, encrypted_payload: str, ttl_seconds: int
    ) -> None:
        await self.client.set(
            f"auth:2fa:pending:{user_id}", encrypted_payload, ex=ttl_seconds
        )

    async def get_pending_enrollment(self, user_id: int) -> Optional[str]:
        return await self.client.get(f"auth:2fa:pending:{user_id}")

    async def delete_pending_enrollment(self, user_id: int) -> None:
        await self.client.delete(f"auth:2fa:pending:{user_id}")

    # attempt lockout
    async def check_mfa_lockout(self, user_id: int) -> bool:
        return bool(await self.client.exists(f"mfa:lockout:{user_id}"))

    async def atomic_mfa_attempt(
        self, user_id: int, max_attempts: int = 5, lockout_seconds: int = 300
    ) -> tuple[bool, int]:
        """Record a failed attempt; returns (is_now_locked_out, attempts)."""
        result = await self._mfa_attempt(
            keys=[f"mfa:lockout:{user_id}", f"mfa:attempts:{user_id}"],
            args=[max_attempts, lockout_seconds],
        )
        return (bool(int(result[0])), int(result[1]))

    async def clear_mfa_attempts(self, user_id: int) -> None:
        await self.client.delete(f"mfa:attempts:{user_id}")

    async def close(self) -> None:
        """Close the connection pool when shutting down or resetting runtime."""
        await self.client.aclose()

    @staticmethod
    def _loads(cached: Optional[str]) -> Optional[Dict[str, Any]]:
        if cached is None:
            return None
        try:
            data = json.loads(cached)
        except (json.JSONDecodeError, TypeError):
            return None
        return data if isinstance(data, dict) else None

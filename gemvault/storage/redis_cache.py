from __future__ import annotations

import hashlib
import json
import time
from typing import Any, Dict, Optional, Tuple, Union

import redis.asyncio as aioredis
from redis import Redis

# Atomic refill + consume
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

# KEYS: lockout, attempts. ARGV: max_attempts, lockout_seconds
_MFA_ATTEMPT_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 1 then
    return {1, -1}
end
local attempts = redis.call('INCR', KEYS[2])
redis.call('EXPIRE', KEYS[2], ARGV[2])
local max_attempts = tonumber(ARGV[1])
if attempts >= max_attempts then
    redis.call('SET', KEYS[1], '1', 'EX', ARGV[2])
    redis.call('DEL', KEYS[2])
    return {1, attempts}
end
return {0, attempts}
"""


def _normalize_rate_key(key: str) -> str:
    """Hash rate keys so emails never appear in Redis key names."""
    return f"rate:{hashlib.sha256(key.encode()).hexdigest()}"


def _pending_mfa_key(account_id: str) -> str:
    return f"mfa:pending:{account_id}"


def _decode_pending(raw: Optional[str]) -> Optional[Dict[str, Any]]:
    if raw is None:
        return None
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return None
    return data if isinstance(data, dict) else None


def _rate_result(
    raw: Any, return_remaining: bool
) -> Union[bool, Tuple[bool, int, int]]:
    allowed, tokens, reset_after = raw
    allowed_bool = bool(int(allowed))
    if return_remaining:
        return (allowed_bool, max(0, int(float(tokens))), int(reset_after or 0))
    return allowed_bool


class RedisCache:
    """Redis-backed ephemeral state: rate limits, pending MFA enrollment, lockouts."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(_TOKEN_BUCKET_SCRIPT)
        self._mfa_attempt = self.client.register_script(_MFA_ATTEMPT_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # A short-lived sync client keeps the async client off a temporary loop.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        refill_rate = float(limit) / float(window_seconds)
        raw = await self._token_bucket(
            keys=[_normalize_rate_key(key)],
            args=[time.time(), refill_rate, limit, max(1, cost)],
        )
        return _rate_result(raw, return_remaining)

    async def set_pending_mfa(
        self, account_id: str, payload: Dict[str, Any], ttl_seconds: int
    ) -> None:
        await self.client.set(
            _pending_mfa_key(account_id), json.dumps(payload), ex=max(1, int(ttl_seconds))
        )

    async def get_pending_mfa(self, account_id: str) -> Optional[Dict[str, Any]]:
        return _decode_pending(await self.client.get(_pending_mfa_key(account_id)))

    async def pop_pending_mfa(self, account_id: str) -> Optional[Dict[str, Any]]:
        """Atomically read and discard a pending enrollment."""
        return _decode_pending(await self.client.getdel(_pending_mfa_key(account_id)))

    async def check_mfa_lockout(self, account_id: str) -> bool:
        return bool(await self.client.exists(f"mfa:lockout:{account_id}"))

    async def atomic_mfa_attempt(
        self, account_id: str, max_attempts: int = 5, lockout_seconds: int = 300
    ) -> tuple[bool, int]:
        """Record a failed attempt and trigger lockout in one round trip.

        Returns:
            Tuple of (is_now_locked_out, current_attempts); attempts is -1 when
            the account was already locked.
        """
        result = await self._mfa_attempt(
            keys=[f"mfa:lockout:{account_id}", f"mfa:attempts:{account_id}"],
            args=[max_attempts, lockout_seconds],
        )
        return (bool(int(result[0])), int(result[1]))

    async def clear_mfa_attempts(self, account_id: str) -> None:
        await self.client.delete(f"mfa:attempts:{account_id}")

    async def close(self) -> None:
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous client internally to avoid event loop binding issues in
    pytest, but exposes the same awaitable surface as RedisCache.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self._sync_client.register_script(_TOKEN_BUCKET_SCRIPT)
        self._mfa_attempt = self._sync_client.register_script(_MFA_ATTEMPT_SCRIPT)

    def verify_connection(self) -> None:
        self._sync_client.ping()

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        refill_rate = float(limit) / float(window_seconds)
        raw = self._token_bucket(
            keys=[_normalize_rate_key(key)],
            args=[time.time(), refill_rate, limit, max(1, cost)],
        )
        return _rate_result(raw, return_remaining)

    async def set_pending_mfa(
        self, account_id: str, payload: Dict[str, Any], ttl_seconds: int
    ) -> None:
        self._sync_client.set(
            _pending_mfa_key(account_id), json.dumps(payload), ex=max(1, int(ttl_seconds))
        )

    async def get_pending_mfa(self, account_id: str) -> Optional[Dict[str, Any]]:
        return _decode_pending(self._sync_client.get(_pending_mfa_key(account_id)))

    async def pop_pending_mfa(self, account_id: str) -> Optional[Dict[str, Any]]:
        return _decode_pending(self._sync_client.getdel(_pending_mfa_key(account_id)))

    async def check_mfa_lockout(self, account_id: str) -> bool:
        return bool(self._sync_client.exists(f"mfa:lockout:{account_id}"))

    async def atomic_mfa_attempt(
        self, account_id: str, max_attempts: int = 5, lockout_seconds: int = 300
    ) -> tuple[bool, int]:
        result = self._mfa_attempt(
            keys=[f"mfa:lockout:{account_id}", f"mfa:attempts:{account_id}"],
            args=[max_attempts, lockout_seconds],
        )
        return (bool(int(result[0])), int(result[1]))

    async def clear_mfa_attempts(self, account_id: str) -> None:
        self._sync_client.delete(f"mfa:attempts:{account_id}")

    async def close(self) -> None:
        self._sync_client.close()


__all__ = ["RedisCache", "SyncRedisCache"]

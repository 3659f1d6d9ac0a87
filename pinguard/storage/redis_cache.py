from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper for session pointers, PIN lockout counters and denylists."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Atomic increment-then-check for the PIN lockout state machine. The
    # rolling window restarts only once it has elapsed and no lock is active.
    _PIN_FAILURE_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local max_attempts = tonumber(ARGV[2])
local window = tonumber(ARGV[3])
local base = tonumber(ARGV[4])
local max_mult = tonumber(ARGV[5])
local retention = tonumber(ARGV[6])

local data = redis.call('HMGET', key, 'count', 'window_start', 'locked_until')
local count = tonumber(data[1]) or 0
local window_start = tonumber(data[2]) or now
local locked_until = tonumber(data[3]) or 0

if locked_until <= now and (now - window_start) >= window then
  count = 0
  window_start = now
end

count = count + 1
if count >= max_attempts then
  local excess = count - max_attempts + 1
  local mult = math.min(2 ^ (excess - 1), max_mult)
  locked_until = now + base * mult
end

redis.call('HSET', key, 'count', count, 'window_start', window_start,
           'last_attempt', now, 'locked_until', locked_until)
redis.call('EXPIRE', key, retention)
return {count, tostring(window_start), tostring(locked_until)}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._pin_failure = self.client.register_script(self._PIN_FAILURE_SCRIPT)

    @staticmethod
    def _ttl_seconds(expires_at: datetime) -> int:
        """Compute a TTL from an absolute expiry, clamped to at least one second."""

        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        else:
            expires_at = expires_at.astimezone(timezone.utc)
        return max(1, int((expires_at - datetime.now(timezone.utc)).total_seconds()))

    @staticmethod
    def _attempt_from_hash(raw: Dict[str, str]) -> Optional[Dict[str, float]]:
        if not raw:
            return None
        return {
            "count": int(float(raw.get("count", 0))),
            "window_start": float(raw.get("window_start", 0)),
            "last_attempt": float(raw.get("last_attempt", 0)),
            "locked_until": float(raw.get("locked_until", 0)),
        }

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""

        # Short-lived sync client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def close(self) -> None:
        await self.client.close()
        await self.client.connection_pool.disconnect()

    # sessions -----------------------------------------------------------

    async def cache_session(
        self, session_id: str, user_id: str, expires_at: datetime
    ) -> None:
        ttl = self._ttl_seconds(expires_at)
        pipe = self.client.pipeline()
        pipe.set(f"auth:session:{session_id}", user_id, ex=ttl)
        pipe.sadd(f"auth:user_sessions:{user_id}", session_id)
        pipe.expire(f"auth:user_sessions:{user_id}", ttl)
        await pipe.execute()

    async def get_session_user(self, session_id: str) -> Optional[str]:
        return await self.client.get(f"auth:session:{session_id}")

    async def revoke_session(self, session_id: str, user_id: Optional[str] = None) -> None:
        pipe = self.client.pipeline()
        pipe.delete(f"auth:session:{session_id}")
        if user_id:
            pipe.srem(f"auth:user_sessions:{user_id}", session_id)
        await pipe.execute()

    # PIN lockout --------------------------------------------------------

    async def atomic_pin_failure(
        self,
        key: str,
        *,
        now: float,
        max_attempts: int,
        window_seconds: int,
        base_lock_seconds: int,
        max_multiplier: int,
        retention_seconds: int,
    ) -> tuple[int, float, float]:
        """Record one failed attempt and return ``(count, window_start, locked_until)``."""

        count, window_start, locked_until = await self._pin_failure(
            keys=[f"pin:attempts:{key}"],
            args=[
                now,
                max_attempts,
                window_seconds,
                base_lock_seconds,
                max_multiplier,
                retention_seconds,
            ],
        )
        return int(count), float(window_start), float(locked_until)

    async def get_pin_attempts(self, key: str) -> Optional[Dict[str, float]]:
        return self._attempt_from_hash(await self.client.hgetall(f"pin:attempts:{key}"))

    async def clear_pin_attempts(self, key: str) -> None:
        await self.client.delete(f"pin:attempts:{key}")

    # token denylist -----------------------------------------------------

    async def mark_token_revoked(self, jti: str, ttl_seconds: int) -> None:
        await self.client.set(f"auth:token:revoked:{jti}", "1", ex=max(1, ttl_seconds))

    async def is_token_revoked(self, jti: str) -> bool:
        return bool(await self.client.exists(f"auth:token:revoked:{jti}"))

    # biometric challenges -----------------------------------------------

    async def set_biometric_challenge(
        self, challenge: str, payload: Dict[str, Any], ttl_seconds: int
    ) -> None:
        await self.client.set(
            f"auth:biometric:{challenge}", json.dumps(payload), ex=max(1, ttl_seconds)
        )

    async def pop_biometric_challenge(self, challenge: str) -> Optional[Dict[str, Any]]:
        """Atomically get and delete a challenge so it can be answered once."""

        cached = await self.client.getdel(f"auth:biometric:{challenge}")
        if cached is None:
            return None
        try:
            return json.loads(cached)
        except (json.JSONDecodeError, TypeError):
            return None


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous client internally to avoid event loop binding issues in
    pytest, but exposes async methods so callers await it like RedisCache.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._pin_failure = self._sync_client.register_script(
            RedisCache._PIN_FAILURE_SCRIPT
        )

    def verify_connection(self) -> None:
        self._sync_client.ping()

    async def close(self) -> None:
        self._sync_client.close()

    async def cache_session(
        self, session_id: str, user_id: str, expires_at: datetime
    ) -> None:
        ttl = RedisCache._ttl_seconds(expires_at)
        pipe = self._sync_client.pipeline()
        pipe.set(f"auth:session:{session_id}", user_id, ex=ttl)
        pipe.sadd(f"auth:user_sessions:{user_id}", session_id)
        pipe.expire(f"auth:user_sessions:{user_id}", ttl)
        pipe.execute()

    async def get_session_user(self, session_id: str) -> Optional[str]:
        return self._sync_client.get(f"auth:session:{session_id}")

    async def revoke_session(self, session_id: str, user_id: Optional[str] = None) -> None:
        pipe = self._sync_client.pipeline()
        pipe.delete(f"auth:session:{session_id}")
        if user_id:
            pipe.srem(f"auth:user_sessions:{user_id}", session_id)
        pipe.execute()

    async def atomic_pin_failure(
        self,
        key: str,
        *,
        now: float,
        max_attempts: int,
        window_seconds: int,
        base_lock_seconds: int,
        max_multiplier: int,
        retention_seconds: int,
    ) -> tuple[int, float, float]:
        count, window_start, locked_until = self._pin_failure(
            keys=[f"pin:attempts:{key}"],
            args=[
                now,
                max_attempts,
                window_seconds,
                base_lock_seconds,
                max_multiplier,
                retention_seconds,
            ],
        )
        return int(count), float(window_start), float(locked_until)

    async def get_pin_attempts(self, key: str) -> Optional[Dict[str, float]]:
        return RedisCache._attempt_from_hash(
            self._sync_client.hgetall(f"pin:attempts:{key}")
        )

    async def clear_pin_attempts(self, key: str) -> None:
        self._sync_client.delete(f"pin:attempts:{key}")

    async def mark_token_revoked(self, jti: str, ttl_seconds: int) -> None:
        self._sync_client.set(f"auth:token:revoked:{jti}", "1", ex=max(1, ttl_seconds))

    async def is_token_revoked(self, jti: str) -> bool:
        return bool(self._sync_client.exists(f"auth:token:revoked:{jti}"))

    async def set_biometric_challenge(
        self, challenge: str, payload: Dict[str, Any], ttl_seconds: int
    ) -> None:
        self._sync_client.set(
            f"auth:biometric:{challenge}", json.dumps(payload), ex=max(1, ttl_seconds)
        )

    async def pop_biometric_challenge(self, challenge: str) -> Optional[Dict[str, Any]]:
        cached = self._sync_client.getdel(f"auth:biometric:{challenge}")
        if cached is None:
            return None
        try:
            return json.loads(cached)
        except (json.JSONDecodeError, TypeError):
            return None

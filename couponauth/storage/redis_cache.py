from __future__ import annotations

import json
from typing import Any, Dict, List, Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Redis-backed shared state for rate-limit buckets, lockouts and refresh tokens.

    Every read-modify-write runs as a Lua script so concurrent requests on
    different workers observe a single serialized history per key.
    """

    backend = "redis"

    # Atomic refill + consume. The caller supplies `now` so all workers agree
    # on one clock source.
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
local idle_ttl = math.max(math.ceil(capacity / refill_rate), 1)

if tokens < cost then
  redis.call('HSET', key, 'tokens', tostring(tokens), 'ts', tostring(now))
  redis.call('EXPIRE', key, idle_ttl)
  local retry_after = math.ceil((cost - tokens) / refill_rate)
  return {0, math.floor(tokens), retry_after}
end

tokens = tokens - cost
redis.call('HSET', key, 'tokens', tostring(tokens), 'ts', tostring(now))
redis.call('EXPIRE', key, idle_ttl)
return {1, math.floor(tokens), 0}
"""

    # Record one failed login. While locked the counter is frozen; an expired
    # lock is reset before counting the new failure.
    _LOCKOUT_FAILURE_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local max_attempts = tonumber(ARGV[2])
local lockout_seconds = tonumber(ARGV[3])

local data = redis.call('HMGET', key, 'failed_attempts', 'locked_until')
local attempts = tonumber(data[1]) or 0
local locked_until = tonumber(data[2])

if locked_until ~= nil then
  if now < locked_until then
    return {attempts, tostring(locked_until), 0}
  end
  attempts = 0
  redis.call('HDEL', key, 'locked_until')
end

attempts = attempts + 1
redis.call('HSET', key, 'failed_attempts', attempts, 'last_failed_at', tostring(now))
-- Counters below the threshold lapse after one lockout window without failures
redis.call('EXPIRE', key, math.max(math.ceil(lockout_seconds), 1))
if attempts >= max_attempts then
  locked_until = now + lockout_seconds
  redis.call('HSET', key, 'locked_until', tostring(locked_until))
  return {attempts, tostring(locked_until), 1}
end
return {attempts, '', 0}
"""

    _LOCKOUT_EXPIRE_SCRIPT = """
local locked_until = tonumber(redis.call('HGET', KEYS[1], 'locked_until'))
if locked_until ~= nil and tonumber(ARGV[1]) >= locked_until then
  redis.call('DEL', KEYS[1])
  return 1
end
return 0
"""

    # Upsert a refresh record; a digest moving to another email leaves that
    # email's owner set.
    _REFRESH_PUT_SCRIPT = """
local previous = redis.call('GET', KEYS[1])
if previous then
  local ok, decoded = pcall(cjson.decode, previous)
  if ok and type(decoded) == 'table' and decoded['email'] and decoded['email'] ~= ARGV[2] then
    redis.call('SREM', ARGV[4] .. decoded['email'], ARGV[5])
  end
end
redis.call('SET', KEYS[1], ARGV[1], 'EX', tonumber(ARGV[3]))
redis.call('SADD', KEYS[2], ARGV[5])
redis.call('EXPIRE', KEYS[2], tonumber(ARGV[3]))
return 1
"""

    # Delete the records listed in an owner set that still belong to it.
    _REFRESH_DELETE_OWNER_SCRIPT = """
local digests = redis.call('SMEMBERS', KEYS[1])
local removed = 0
for _, digest in ipairs(digests) do
  local key = ARGV[1] .. digest
  local raw = redis.call('GET', key)
  if raw then
    local ok, decoded = pcall(cjson.decode, raw)
    if ok and type(decoded) == 'table' and decoded['email'] == ARGV[2] then
      redis.call('DEL', key)
      removed = removed + 1
    end
  end
end
redis.call('DEL', KEYS[1])
return removed
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0, namespace: str = "couponauth"):
        self.redis_url = redis_url
        self.namespace = namespace
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(self._TOKEN_BUCKET_SCRIPT)
        self._lockout_failure = self.client.register_script(self._LOCKOUT_FAILURE_SCRIPT)
        self._lockout_expire = self.client.register_script(self._LOCKOUT_EXPIRE_SCRIPT)
        self._refresh_put = self.client.register_script(self._REFRESH_PUT_SCRIPT)
        self._refresh_delete_owner = self.client.register_script(self._REFRESH_DELETE_OWNER_SCRIPT)

    def _key(self, *parts: str) -> str:
        return ":".join((self.namespace, *parts))

    @staticmethod
    def _ttl_seconds(ttl: float) -> int:
        """Clamp to at least one second; Redis rejects zero or negative TTLs."""
        return max(1, int(ttl + 0.999))

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Use a short-lived synchronous client to avoid binding the async client to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()

    # =========================================================================
    # Rate limit buckets
    # =========================================================================

    async def consume_rate_token(
        self,
        key: str,
        capacity: int,
        window_seconds: float,
        *,
        now: float,
        cost: int = 1,
    ) -> Tuple[bool, int, int]:
        """Consume from the bucket at `key`.

        Returns:
            (allowed, remaining_tokens, retry_after_seconds)
        """
        refill_rate = float(capacity) / float(window_seconds)
        allowed, remaining, retry_after = await self._token_bucket(
            keys=[self._key("ratelimit", key)],
            args=[now, refill_rate, capacity, max(1, cost)],
        )
        return bool(int(allowed)), max(0, int(remaining)), int(retry_after or 0)

    # =========================================================================
    # Lockout state
    # =========================================================================

    async def get_lockout(self, key: str) -> Optional[Dict[str, Any]]:
        data = await self.client.hgetall(self._key("lockout", key))
        return data or None

    async def record_lockout_failure(
        self, key: str, max_attempts: int, lockout_seconds: float, *, now: float
    ) -> Dict[str, Any]:
        """Count one failure.

        Returns the resulting state plus `newly_locked`, true only for the
        failure that crossed the threshold.
        """
        attempts, locked_until, newly_locked = await self._lockout_failure(
            keys=[self._key("lockout", key)],
            args=[now, max_attempts, lockout_seconds],
        )
        return {
            "failed_attempts": int(attempts),
            "locked_until": float(locked_until) if locked_until else None,
            "newly_locked": bool(int(newly_locked)),
        }

    async def clear_expired_lockout(self, key: str, *, now: float) -> bool:
        cleared = await self._lockout_expire(keys=[self._key("lockout", key)], args=[now])
        return bool(int(cleared))

    async def delete_lockout(self, key: str) -> bool:
        return bool(await self.client.delete(self._key("lockout", key)))

    # =========================================================================
    # Refresh tokens
    # =========================================================================

    async def put_refresh_token(
        self, digest: str, record: Dict[str, Any], ttl_seconds: float
    ) -> None:
        await self._refresh_put(
            keys=[self._key("refresh", digest), self._key("refresh_owner", record["email"])],
            args=[
                json.dumps(record),
                record["email"],
                self._ttl_seconds(ttl_seconds),
                self._key("refresh_owner", ""),
                digest,
            ],
        )

    async def get_refresh_token(self, digest: str) -> Optional[Dict[str, Any]]:
        cached = await self.client.get(self._key("refresh", digest))
        if not cached:
            return None
        try:
            return json.loads(cached)
        except (json.JSONDecodeError, TypeError):
            return None

    async def delete_refresh_token(self, digest: str) -> bool:
        record = await self.get_refresh_token(digest)
        pipe = self.client.pipeline()
        pipe.delete(self._key("refresh", digest))
        if record and record.get("email"):
            pipe.srem(self._key("refresh_owner", record["email"]), digest)
        results = await pipe.execute()
        return bool(results[0])

    async def delete_identity_refresh_tokens(self, email: str) -> int:
        removed = await self._refresh_delete_owner(
            keys=[self._key("refresh_owner", email)],
            args=[self._key("refresh", ""), email],
        )
        return int(removed or 0)

    async def list_refresh_tokens(self) -> List[Tuple[str, Dict[str, Any]]]:
        prefix = self._key("refresh", "")
        keys = [key async for key in self.client.scan_iter(match=f"{prefix}*")]
        if not keys:
            return []
        values = await self.client.mget(keys)
        entries: List[Tuple[str, Dict[str, Any]]] = []
        for key, raw in zip(keys, values):
            if not raw:
                continue
            try:
                entries.append((key[len(prefix):], json.loads(raw)))
            except (json.JSONDecodeError, TypeError):
                continue
        return entries

    async def purge_idle(self, *, now: float) -> int:
        """Redis evicts idle buckets and expired entries natively via EXPIRE."""
        return 0

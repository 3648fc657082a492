from __future__ import annotations

import hashlib
import json
import time
from datetime import datetime, timezone
from typing import Optional, Tuple, Union

import redis.asyncio as aioredis
from redis import Redis

RATE_KEY_PREFIX = "flamingo:rate:"
OAUTH_STATE_PREFIX = "flamingo:oauth_state:"

# KEYS[1] bucket hash; ARGV now, capacity, window seconds, cost.
# Returns {allowed, remaining tokens, seconds until cost is affordable}.
_CONSUME_BUCKET = """
local now = tonumber(ARGV[1])
local capacity = tonumber(ARGV[2])
local window = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])
local rate = capacity / window

local level = tonumber(redis.call('HGET', KEYS[1], 'level'))
local seen = tonumber(redis.call('HGET', KEYS[1], 'seen'))
if level == nil or seen == nil then
  level = capacity
  seen = now
end
level = math.min(capacity, level + math.max(0, now - seen) * rate)

local allowed = 0
local wait = 0
if level >= cost then
  level = level - cost
  allowed = 1
else
  wait = math.ceil((cost - level) / rate)
end

redis.call('HSET', KEYS[1], 'level', tostring(level), 'seen', tostring(now))
redis.call('EXPIRE', KEYS[1], math.max(1, math.ceil(window)))
return {allowed, math.floor(level), wait}
"""


def _utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class RedisCache:
    """Redis-backed rate limit buckets and Google sign-in state."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._consume_bucket = self.client.register_script(_CONSUME_BUCKET)

    def verify_connection(self) -> None:
        """Ping synchronously; raises when Redis is unreachable."""
        # a throwaway sync client keeps the async pool off the startup loop
        probe = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            probe.ping()
        finally:
            probe.close()

    @staticmethod
    def rate_key(subject: str) -> str:
        return RATE_KEY_PREFIX + hashlib.sha256(subject.encode()).hexdigest()

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        allowed, remaining, wait = await self._consume_bucket(
            keys=[self.rate_key(key)],
            args=[time.time(), limit, window_seconds, max(1, cost)],
        )
        allowed = bool(int(allowed))
        if return_remaining:
            return (allowed, max(0, int(remaining)), int(wait or 0))
        return allowed

    async def set_oauth_state(
        self, state: str, provider: str, expires_at: datetime
    ) -> None:
        expires_at = _utc(expires_at)
        ttl = max(1, int((expires_at - datetime.now(timezone.utc)).total_seconds()))
        payload = json.dumps({"provider": provider, "expires_at": expires_at.isoformat()})
        await self.client.set(OAUTH_STATE_PREFIX + state, payload, ex=ttl)

    async def pop_oauth_state(self, state: str) -> Optional[tuple[str, datetime]]:
        """Read and delete in one round trip so a state is never accepted twice."""
        raw = await self.client.getdel(OAUTH_STATE_PREFIX + state)
        if not raw:
            return None
        try:
            payload = json.loads(raw)
            return payload["provider"], datetime.fromisoformat(payload["expires_at"])
        except (ValueError, KeyError, TypeError):
            return None

    async def close(self) -> None:
        await self.client.aclose()

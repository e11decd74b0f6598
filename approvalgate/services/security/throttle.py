from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
import math
import time
from typing import Callable, Protocol

from redis.asyncio import Redis

from approvalgate.core.config import get_settings


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ThrottleDecision:
    allowed: bool
    retry_after_ms: int
    remaining: float | None = None
    degraded: bool = False

    @property
    def retry_after_seconds(self) -> int:
        return max(1, int(math.ceil(self.retry_after_ms / 1000.0)))


class BurstThrottle(Protocol):
    async def check(self, address: str) -> ThrottleDecision: ...


_TOKEN_BUCKET_LUA = r"""
local now_ms = tonumber(ARGV[1])
local rate = tonumber(ARGV[2])
local burst = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])
local ttl = tonumber(ARGV[5])

local data = redis.call("HMGET", KEYS[1], "tokens", "ts")
local tokens = tonumber(data[1])
local ts = tonumber(data[2])
if tokens == nil then
  tokens = burst
  ts = now_ms
end
if now_ms < ts then
  ts = now_ms
end
tokens = math.min(burst, tokens + ((now_ms - ts) / 1000.0) * rate)

local retry = 0
if tokens < cost then
  if rate <= 0 then
    retry = 1000
  else
    retry = math.ceil(((cost - tokens) / rate) * 1000)
  end
end

local allowed = tokens >= cost
if allowed then
  tokens = tokens - cost
end

redis.call("HMSET", KEYS[1], "tokens", tokens, "ts", now_ms)
redis.call("EXPIRE", KEYS[1], ttl)

return {allowed and 1 or 0, tostring(tokens), retry}
"""


_redis_pool: Redis | None = None
_redis_loop: asyncio.AbstractEventLoop | None = None
_redis_lock = asyncio.Lock()


def _ttl_seconds(rate: float, burst: int) -> int:
    # Expire idle buckets after a conservative refill window.
    if rate <= 0:
        return max(1, burst)
    return max(1, int(math.ceil((burst / rate) * 2)))


async def _get_redis() -> Redis:
    # Cache Redis connections per event loop to avoid reconnecting per request.
    global _redis_pool, _redis_loop
    current_loop = asyncio.get_running_loop()
    if _redis_pool is not None and _redis_loop == current_loop:
        return _redis_pool
    if _redis_pool is not None and _redis_loop != current_loop:
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            settings = get_settings()
            _redis_pool = Redis.from_url(
                settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
            _redis_loop = current_loop
    return _redis_pool


class RedisBurstThrottle:
    """Per-address token bucket evaluated atomically in Redis.

    Burst throttling sits below the warned tier: it answers RETRY_AFTER and
    never touches the durable failure count.
    """

    def __init__(self, *, time_provider: Callable[[], float] | None = None) -> None:
        self._time_provider = time_provider or time.time

    async def check(self, address: str) -> ThrottleDecision:
        settings = get_settings()
        if not settings.burst_limit_enabled:
            return ThrottleDecision(allowed=True, retry_after_ms=0)

        rate = float(settings.burst_rps)
        burst = int(settings.burst_capacity)
        bucket = f"{settings.burst_redis_prefix}:addr:{address}"
        now_ms = int(self._time_provider() * 1000)
        try:
            redis = await _get_redis()
            result = await redis.eval(
                _TOKEN_BUCKET_LUA,
                1,
                bucket,
                now_ms,
                rate,
                burst,
                1,
                _ttl_seconds(rate, burst),
            )
        except Exception as exc:  # noqa: BLE001 - guard against Redis connectivity failures
            if settings.burst_fail_mode.lower() == "closed":
                logger.warning("burst_throttle_unavailable address=%s fail_mode=closed", address, exc_info=exc)
                return ThrottleDecision(allowed=False, retry_after_ms=60_000, degraded=True)
            logger.warning("burst_throttle_degraded address=%s fail_mode=open", address)
            return ThrottleDecision(allowed=True, retry_after_ms=0, degraded=True)

        return ThrottleDecision(
            allowed=int(result[0]) == 1,
            remaining=float(result[1]),
            retry_after_ms=int(float(result[2])),
        )


_throttle: RedisBurstThrottle | None = None


def get_burst_throttle() -> RedisBurstThrottle:
    global _throttle
    if _throttle is None:
        _throttle = RedisBurstThrottle()
    return _throttle


def reset_throttle_state() -> None:
    # Reset cached Redis connections for deterministic test setup.
    global _throttle, _redis_pool, _redis_loop
    _throttle = None
    _redis_pool = None
    _redis_loop = None

from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
import math
import time
from typing import Callable

from fastapi import Response
from redis.asyncio import Redis
from redis.exceptions import RedisError

from chatgate.core.config import get_settings
from chatgate.core.errors import IntegrationUnavailableError, RateLimited
from chatgate.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

ROUTE_CLASS_CHAT = "chat"
ROUTE_CLASS_TRIAL = "trial"
ROUTE_CLASS_MUTATION = "mutation"


@dataclass(frozen=True)
class BucketConfig:
    # Sustained rate plus burst capacity.
    rps: float
    burst: int


@dataclass(frozen=True)
class RouteLimitConfig:
    # User and workspace buckets are checked together.
    user: BucketConfig
    workspace: BucketConfig


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    route_class: str
    scope: str | None
    retry_after_ms: int
    user_remaining: float | None = None
    workspace_remaining: float | None = None


_TOKEN_BUCKET_LUA = r"""
local now_ms = tonumber(ARGV[1])
local user_rate = tonumber(ARGV[2])
local user_burst = tonumber(ARGV[3])
local user_ttl = tonumber(ARGV[4])
local ws_rate = tonumber(ARGV[5])
local ws_burst = tonumber(ARGV[6])
local ws_ttl = tonumber(ARGV[7])
local cost = 1

local function get_tokens(key, rate, burst)
  local data = redis.call("HMGET", key, "tokens", "ts")
  local tokens = tonumber(data[1])
  local ts = tonumber(data[2])
  if tokens == nil then
    tokens = burst
    ts = now_ms
  end
  if now_ms < ts then
    ts = now_ms
  end
  local delta = (now_ms - ts) / 1000.0
  return math.min(burst, tokens + delta * rate)
end

local function retry_after_ms(tokens, rate)
  if tokens >= cost then
    return 0
  end
  if rate <= 0 then
    return 1000
  end
  return math.ceil(((cost - tokens) / rate) * 1000)
end

local user_tokens = get_tokens(KEYS[1], user_rate, user_burst)
local ws_tokens = get_tokens(KEYS[2], ws_rate, ws_burst)

local user_allowed = user_tokens >= cost
local ws_allowed = ws_tokens >= cost
local allowed = user_allowed and ws_allowed

local user_retry = retry_after_ms(user_tokens, user_rate)
local ws_retry = retry_after_ms(ws_tokens, ws_rate)

if allowed then
  user_tokens = user_tokens - cost
  ws_tokens = ws_tokens - cost
end

redis.call("HSET", KEYS[1], "tokens", user_tokens, "ts", now_ms)
redis.call("HSET", KEYS[2], "tokens", ws_tokens, "ts", now_ms)
redis.call("EXPIRE", KEYS[1], user_ttl)
redis.call("EXPIRE", KEYS[2], ws_ttl)

return {allowed and 1 or 0, user_allowed and 1 or 0, tostring(user_tokens), user_retry, ws_allowed and 1 or 0, tostring(ws_tokens), ws_retry}
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
    # Cache Redis connections to avoid reconnecting per request.
    global _redis_pool, _redis_loop
    current_loop = asyncio.get_running_loop()
    if _redis_pool is not None and _redis_loop == current_loop:
        return _redis_pool
    if _redis_pool is not None and _redis_loop != current_loop:
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            settings = get_settings()
            _redis_pool = Redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
            _redis_loop = current_loop
    return _redis_pool


class RateLimiter:
    """Shared token buckets in Redis; no per-process counters."""

    def __init__(
        self,
        *,
        redis: Redis | None = None,
        time_provider: Callable[[], float] | None = None,
    ) -> None:
        self._redis = redis
        # Allow injecting time for deterministic tests.
        self._time_provider = time_provider or time.time

    async def check(
        self,
        *,
        user_id: str,
        workspace_id: str,
        route_class: str,
        limits: RouteLimitConfig,
    ) -> RateLimitDecision:
        prefix = get_settings().rl_redis_prefix
        user_bucket = f"{prefix}:user:{user_id}:{route_class}"
        workspace_bucket = f"{prefix}:workspace:{workspace_id}:{route_class}"
        now_ms = int(self._time_provider() * 1000)

        redis = self._redis or await _get_redis()
        result = await redis.eval(
            _TOKEN_BUCKET_LUA,
            2,
            user_bucket,
            workspace_bucket,
            now_ms,
            limits.user.rps,
            limits.user.burst,
            _ttl_seconds(limits.user.rps, limits.user.burst),
            limits.workspace.rps,
            limits.workspace.burst,
            _ttl_seconds(limits.workspace.rps, limits.workspace.burst),
        )

        allowed = int(result[0]) == 1
        user_allowed = int(result[1]) == 1
        user_tokens = float(result[2])
        user_retry = int(float(result[3]))
        workspace_allowed = int(result[4]) == 1
        workspace_tokens = float(result[5])
        workspace_retry = int(float(result[6]))

        if allowed:
            return RateLimitDecision(
                allowed=True,
                route_class=route_class,
                scope=None,
                retry_after_ms=0,
                user_remaining=user_tokens,
                workspace_remaining=workspace_tokens,
            )

        scope, retry_after_ms = "user", user_retry
        if user_allowed and not workspace_allowed:
            scope, retry_after_ms = "workspace", workspace_retry
        elif not user_allowed and not workspace_allowed and workspace_retry > user_retry:
            scope, retry_after_ms = "workspace", workspace_retry
        return RateLimitDecision(
            allowed=False,
            route_class=route_class,
            scope=scope,
            retry_after_ms=retry_after_ms,
            user_remaining=user_tokens,
            workspace_remaining=workspace_tokens,
        )


_rate_limiter: RateLimiter | None = None


def get_rate_limiter() -> RateLimiter:
    global _rate_limiter
    if _rate_limiter is None:
        _rate_limiter = RateLimiter()
    return _rate_limiter


def set_rate_limiter(limiter: RateLimiter | None) -> None:
    # Swap or reset the limiter (and its Redis connection) in tests.
    global _rate_limiter, _redis_pool, _redis_loop
    _rate_limiter = limiter
    _redis_pool = None
    _redis_loop = None


def limits_for_route(route_class: str) -> RouteLimitConfig:
    settings = get_settings()
    if route_class == ROUTE_CLASS_CHAT:
        return RouteLimitConfig(
            user=BucketConfig(settings.rl_user_chat_rps, settings.rl_user_chat_burst),
            workspace=BucketConfig(settings.rl_workspace_chat_rps, settings.rl_workspace_chat_burst),
        )
    if route_class == ROUTE_CLASS_TRIAL:
        return RouteLimitConfig(
            user=BucketConfig(settings.rl_user_trial_rps, settings.rl_user_trial_burst),
            workspace=BucketConfig(settings.rl_workspace_trial_rps, settings.rl_workspace_trial_burst),
        )
    return RouteLimitConfig(
        user=BucketConfig(settings.rl_user_mutation_rps, settings.rl_user_mutation_burst),
        workspace=BucketConfig(
            settings.rl_workspace_mutation_rps, settings.rl_workspace_mutation_burst
        ),
    )


async def enforce_rate_limit(
    *,
    response: Response,
    user_id: str,
    workspace_id: str,
    route_class: str,
) -> None:
    """Consume one token from the user and workspace buckets or raise ``RateLimited``.

    Redis outages follow ``rl_fail_mode``: ``open`` lets the request through
    and marks the response degraded, ``closed`` answers 503.
    """
    settings = get_settings()
    if not settings.rate_limit_enabled:
        return
    try:
        decision = await get_rate_limiter().check(
            user_id=user_id,
            workspace_id=workspace_id,
            route_class=route_class,
            limits=limits_for_route(route_class),
        )
    except (RedisError, OSError) as exc:
        if settings.rl_fail_mode.lower() == "closed":
            raise IntegrationUnavailableError("Rate limiting unavailable") from exc
        logger.warning("rate_limit_degraded route_class=%s", route_class, exc_info=exc)
        response.headers["X-RateLimit-Status"] = "degraded"
        return

    if not decision.allowed:
        increment_counter(f"rate_limited_total.{route_class}")
        logger.info(
            "rate_limited user_id=%s workspace_id=%s route_class=%s scope=%s",
            user_id,
            workspace_id,
            route_class,
            decision.scope,
        )
        raise RateLimited(
            retry_after_ms=decision.retry_after_ms,
            details={
                "scope": decision.scope,
                "route_class": route_class,
                "retry_after_ms": decision.retry_after_ms,
            },
        )
    if decision.user_remaining is not None:
        response.headers["X-RateLimit-Remaining"] = str(int(decision.user_remaining))

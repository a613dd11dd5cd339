from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from redis.asyncio import Redis
from redis.exceptions import RedisError
from sqlalchemy.exc import DBAPIError, OperationalError

from chatgate.core.config import get_settings
from chatgate.core.errors import IntegrationUnavailableError
from chatgate.services.telemetry import increment_counter, set_gauge


logger = logging.getLogger(__name__)


TransientException = (TimeoutError, OSError, OperationalError)


_redis_pool: Redis | None = None
_redis_loop: asyncio.AbstractEventLoop | None = None
_redis_lock = asyncio.Lock()


async def get_resilience_redis() -> Redis | None:
    # Reuse a shared Redis connection for breaker coordination.
    settings = get_settings()
    if not settings.cb_redis_enabled:
        return None
    try:
        current_loop = asyncio.get_running_loop()
    except RuntimeError:
        return None
    global _redis_pool, _redis_loop
    if _redis_pool is not None and _redis_loop == current_loop:
        return _redis_pool
    if _redis_pool is not None and _redis_loop != current_loop:
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            try:
                _redis_pool = Redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
                _redis_loop = current_loop
            except (RedisError, ValueError) as exc:
                logger.warning("resilience_redis_unavailable", exc_info=exc)
                return None
    return _redis_pool


def is_transient(exc: BaseException) -> bool:
    # Retry only transient network, timeout and datastore connectivity failures.
    if isinstance(exc, TransientException):
        return True
    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return True
    # Service errors wrapping a datastore failure keep the original as __cause__.
    cause = exc.__cause__
    if cause is not None and cause is not exc and isinstance(cause, Exception):
        return is_transient(cause)
    status = getattr(exc, "status_code", None)
    if isinstance(status, int) and status >= 500:
        return True
    return False


@dataclass(frozen=True)
class RetryPolicy:
    # Centralize retry behavior for deterministic policy changes.
    timeout_ms: int
    max_attempts: int
    backoff_ms: int


def default_retry_policy() -> RetryPolicy:
    settings = get_settings()
    return RetryPolicy(
        timeout_ms=settings.ext_call_timeout_ms,
        max_attempts=settings.ext_retry_max_attempts,
        backoff_ms=settings.ext_retry_backoff_ms,
    )


async def retry_async(
    func: Callable[[], Awaitable[Any]],
    *,
    policy: RetryPolicy | None = None,
    retryable: Callable[[Exception], bool] | None = None,
    label: str = "call",
) -> Any:
    """Run ``func`` with a per-attempt timeout and jittered exponential backoff.

    Only failures accepted by ``retryable`` (default: :func:`is_transient`) are
    retried; anything else propagates on the first attempt. ``func`` must be
    safe to call again, which for datastore writes means idempotent statements.
    """
    policy = policy or default_retry_policy()
    retryable = retryable or is_transient
    attempt = 1
    while True:
        try:
            return await asyncio.wait_for(func(), timeout=policy.timeout_ms / 1000.0)
        except Exception as exc:  # noqa: BLE001 - caller handles non-transient failures
            if attempt >= max(policy.max_attempts, 1) or not retryable(exc):
                raise
            # Track retry volume so operators can detect retry storms.
            increment_counter("retries_total")
            logger.info("retrying label=%s attempt=%s error=%s", label, attempt, type(exc).__name__)
            jitter = random.uniform(0.5, 1.5)
            sleep_s = (policy.backoff_ms / 1000.0) * (2 ** (attempt - 1)) * jitter
            await asyncio.sleep(sleep_s)
            attempt += 1


@dataclass(frozen=True)
class CircuitBreakerConfig:
    # Store thresholds in settings so operators can tune without code changes.
    failure_threshold: int
    open_seconds: int
    half_open_trials: int


@dataclass
class CircuitBreakerState:
    state: str
    failures: int
    opened_at: float | None
    half_open_trials: int


class CircuitBreaker:
    """Closed/open/half-open breaker with state shared through Redis.

    When Redis is absent or erroring, the breaker keeps working on its
    process-local state instead of failing the guarded call.
    """

    def __init__(
        self,
        name: str,
        *,
        redis: Redis | None = None,
        config: CircuitBreakerConfig | None = None,
        time_source: Callable[[], float] | None = None,
    ) -> None:
        settings = get_settings()
        self._name = name
        self._redis = redis
        self._config = config or CircuitBreakerConfig(
            failure_threshold=settings.cb_failure_threshold,
            open_seconds=settings.cb_open_seconds,
            half_open_trials=settings.cb_half_open_trials,
        )
        # Wall clock keeps opened_at comparable across instances sharing Redis.
        self._time = time_source or time.time
        self._local_state = CircuitBreakerState("closed", 0, None, 0)

    @property
    def name(self) -> str:
        return self._name

    def _key(self) -> str:
        return f"{get_settings().cb_redis_prefix}:{self._name}"

    async def _load(self) -> CircuitBreakerState:
        if self._redis is None:
            return self._local_state
        try:
            raw = await self._redis.hgetall(self._key())
        except RedisError as exc:
            logger.warning("circuit_breaker_redis_read_failed name=%s", self._name, exc_info=exc)
            return self._local_state
        if not raw:
            return self._local_state
        return CircuitBreakerState(
            raw.get("state", "closed"),
            int(raw.get("failures", 0)),
            float(raw["opened_at"]) if raw.get("opened_at") else None,
            int(raw.get("half_open_trials", 0)),
        )

    async def _save(self, state: CircuitBreakerState) -> None:
        self._local_state = state
        if self._redis is None:
            return
        payload = {
            "state": state.state,
            "failures": str(state.failures),
            "opened_at": str(state.opened_at or ""),
            "half_open_trials": str(state.half_open_trials),
        }
        try:
            await self._redis.hset(self._key(), mapping=payload)
            await self._redis.expire(self._key(), max(self._config.open_seconds * 4, 60))
        except RedisError as exc:
            logger.warning("circuit_breaker_redis_write_failed name=%s", self._name, exc_info=exc)

    def _transition(self, state: CircuitBreakerState, target: str) -> CircuitBreakerState:
        if state.state != target:
            logger.warning(
                "circuit_breaker_transition name=%s from=%s to=%s", self._name, state.state, target
            )
            increment_counter(f"circuit_breaker_transition_total.{self._name}.{target}")
            set_gauge(
                f"circuit_breaker_state.{self._name}",
                {"closed": 0.0, "half_open": 0.5, "open": 1.0}.get(target, 0.0),
            )
        return CircuitBreakerState(target, 0, self._time() if target == "open" else None, 0)

    async def current_state(self) -> str:
        return (await self._load()).state

    async def before_call(self) -> None:
        # Decide whether calls are allowed and update half-open counters.
        state = await self._load()
        if state.state == "open":
            elapsed = self._time() - (state.opened_at or 0.0)
            if state.opened_at is not None and elapsed >= self._config.open_seconds:
                state = self._transition(state, "half_open")
            else:
                raise IntegrationUnavailableError(f"{self._name} is temporarily unavailable")
        if state.state == "half_open":
            if state.half_open_trials >= self._config.half_open_trials:
                raise IntegrationUnavailableError(f"{self._name} is temporarily unavailable")
            state.half_open_trials += 1
        await self._save(state)

    async def record_success(self) -> None:
        state = await self._load()
        if state.state != "closed":
            state = self._transition(state, "closed")
        else:
            state.failures = 0
        await self._save(state)

    async def record_failure(self) -> None:
        state = await self._load()
        if state.state == "half_open":
            await self._save(self._transition(state, "open"))
            return
        failures = state.failures + 1
        if failures >= self._config.failure_threshold:
            state = self._transition(state, "open")
        else:
            state.failures = failures
        await self._save(state)

    async def call(
        self,
        func: Callable[[], Awaitable[Any]],
        *,
        policy: RetryPolicy | None = None,
        retryable: Callable[[Exception], bool] | None = None,
    ) -> Any:
        # Retries run inside one breaker slot; only the final outcome is recorded.
        await self.before_call()
        try:
            result = await retry_async(func, policy=policy, retryable=retryable, label=self._name)
        except Exception:
            await self.record_failure()
            raise
        await self.record_success()
        return result

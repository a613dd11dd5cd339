from __future__ import annotations

import pytest
from fastapi import Response
from redis.exceptions import ConnectionError as RedisConnectionError

from chatgate.apps.api.rate_limit import (
    ROUTE_CLASS_CHAT,
    ROUTE_CLASS_TRIAL,
    RateLimitDecision,
    enforce_rate_limit,
    limits_for_route,
    set_rate_limiter,
)
from chatgate.core.config import get_settings
from chatgate.core.errors import IntegrationUnavailableError, RateLimited
from chatgate.services.telemetry import counters_snapshot


class _StubLimiter:
    def __init__(self, decision: RateLimitDecision | None = None, error: Exception | None = None) -> None:
        self._decision = decision
        self._error = error
        self.calls: list[dict] = []

    async def check(self, **kwargs) -> RateLimitDecision:
        self.calls.append(kwargs)
        if self._error is not None:
            raise self._error
        return self._decision


@pytest.fixture
def rate_limiting_on(monkeypatch):
    monkeypatch.setenv("RATE_LIMIT_ENABLED", "true")
    get_settings.cache_clear()
    yield
    set_rate_limiter(None)


@pytest.mark.asyncio
async def test_disabled_limiter_is_not_consulted() -> None:
    limiter = _StubLimiter(error=AssertionError("should not be called"))
    set_rate_limiter(limiter)
    try:
        await enforce_rate_limit(
            response=Response(), user_id="u1", workspace_id="w1", route_class=ROUTE_CLASS_CHAT
        )
    finally:
        set_rate_limiter(None)
    assert limiter.calls == []


@pytest.mark.asyncio
async def test_denied_request_raises_with_retry_headers(rate_limiting_on) -> None:
    set_rate_limiter(
        _StubLimiter(
            RateLimitDecision(
                allowed=False, route_class=ROUTE_CLASS_CHAT, scope="workspace", retry_after_ms=1500
            )
        )
    )
    with pytest.raises(RateLimited) as excinfo:
        await enforce_rate_limit(
            response=Response(), user_id="u1", workspace_id="w1", route_class=ROUTE_CLASS_CHAT
        )
    assert excinfo.value.status_code == 429
    assert excinfo.value.headers["Retry-After"] == "2"
    assert excinfo.value.details["scope"] == "workspace"
    assert counters_snapshot()["rate_limited_total.chat"] == 1


@pytest.mark.asyncio
async def test_allowed_request_reports_remaining(rate_limiting_on) -> None:
    limiter = _StubLimiter(
        RateLimitDecision(
            allowed=True,
            route_class=ROUTE_CLASS_TRIAL,
            scope=None,
            retry_after_ms=0,
            user_remaining=2.4,
            workspace_remaining=2.0,
        )
    )
    set_rate_limiter(limiter)
    response = Response()
    await enforce_rate_limit(
        response=response, user_id="u1", workspace_id="w1", route_class=ROUTE_CLASS_TRIAL
    )
    assert response.headers["X-RateLimit-Remaining"] == "2"
    assert limiter.calls[0]["limits"] == limits_for_route(ROUTE_CLASS_TRIAL)


@pytest.mark.asyncio
async def test_redis_outage_fails_open_by_default(rate_limiting_on) -> None:
    set_rate_limiter(_StubLimiter(error=RedisConnectionError("down")))
    response = Response()
    await enforce_rate_limit(
        response=response, user_id="u1", workspace_id="w1", route_class=ROUTE_CLASS_CHAT
    )
    assert response.headers["X-RateLimit-Status"] == "degraded"


@pytest.mark.asyncio
async def test_redis_outage_can_fail_closed(rate_limiting_on, monkeypatch) -> None:
    monkeypatch.setenv("RL_FAIL_MODE", "closed")
    get_settings.cache_clear()
    set_rate_limiter(_StubLimiter(error=RedisConnectionError("down")))
    with pytest.raises(IntegrationUnavailableError):
        await enforce_rate_limit(
            response=Response(), user_id="u1", workspace_id="w1", route_class=ROUTE_CLASS_CHAT
        )

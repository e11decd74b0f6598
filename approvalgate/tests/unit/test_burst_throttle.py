from __future__ import annotations

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from approvalgate.core.config import get_settings
from approvalgate.services.security import throttle


class _FakeRedis:
    def __init__(self, result: list[object] | None = None, error: Exception | None = None) -> None:
        self.result = result
        self.error = error
        self.keys: list[str] = []

    async def eval(self, script: str, numkeys: int, key: str, *args: object) -> list[object]:
        self.keys.append(key)
        if self.error is not None:
            raise self.error
        return self.result or []


def _use_redis(monkeypatch: pytest.MonkeyPatch, fake: _FakeRedis) -> None:
    async def _get_redis() -> _FakeRedis:
        return fake

    monkeypatch.setattr(throttle, "_get_redis", _get_redis)


def _enable_burst(monkeypatch: pytest.MonkeyPatch, *, fail_mode: str = "open") -> None:
    monkeypatch.setenv("BURST_LIMIT_ENABLED", "true")
    monkeypatch.setenv("BURST_FAIL_MODE", fail_mode)
    get_settings.cache_clear()


def test_idle_bucket_ttl() -> None:
    assert throttle._ttl_seconds(0.5, 10) == 40
    assert throttle._ttl_seconds(0, 10) == 10


def test_retry_after_seconds_rounds_up() -> None:
    assert throttle.ThrottleDecision(allowed=False, retry_after_ms=4_100).retry_after_seconds == 5
    assert throttle.ThrottleDecision(allowed=False, retry_after_ms=0).retry_after_seconds == 1


@pytest.mark.asyncio
async def test_disabled_throttle_never_touches_redis(monkeypatch: pytest.MonkeyPatch) -> None:
    fake = _FakeRedis(error=AssertionError("redis should not be called"))
    _use_redis(monkeypatch, fake)
    decision = await throttle.RedisBurstThrottle().check("198.51.100.1")
    assert decision.allowed
    assert fake.keys == []


@pytest.mark.asyncio
async def test_bucket_denial_reports_retry(monkeypatch: pytest.MonkeyPatch) -> None:
    _enable_burst(monkeypatch)
    fake = _FakeRedis(result=[0, "0.2", 4_800])
    _use_redis(monkeypatch, fake)
    decision = await throttle.RedisBurstThrottle(time_provider=lambda: 1_000.0).check("198.51.100.1")
    assert not decision.allowed
    assert decision.retry_after_seconds == 5
    assert decision.remaining == pytest.approx(0.2)
    assert fake.keys == ["approvalgate:burst:addr:198.51.100.1"]


@pytest.mark.asyncio
async def test_redis_outage_fails_open_by_default(monkeypatch: pytest.MonkeyPatch) -> None:
    _enable_burst(monkeypatch)
    _use_redis(monkeypatch, _FakeRedis(error=RedisConnectionError("down")))
    decision = await throttle.RedisBurstThrottle().check("198.51.100.1")
    assert decision.allowed
    assert decision.degraded


@pytest.mark.asyncio
async def test_redis_outage_fails_closed_when_configured(monkeypatch: pytest.MonkeyPatch) -> None:
    _enable_burst(monkeypatch, fail_mode="closed")
    _use_redis(monkeypatch, _FakeRedis(error=RedisConnectionError("down")))
    decision = await throttle.RedisBurstThrottle().check("198.51.100.1")
    assert not decision.allowed
    assert decision.degraded
    assert decision.retry_after_seconds == 60

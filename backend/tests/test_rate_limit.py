"""
Tests for rate limiting helpers and the per-IP request limit.
"""
import pytest

import main
from services_rate_limit import FixedWindowRateLimiter, MinIntervalGate


class TestFixedWindow:
    def test_limit_resets_each_minute(self):
        limiter = FixedWindowRateLimiter()
        assert limiter.allow("ip:a", 2, now_s=0)
        assert limiter.allow("ip:a", 2, now_s=10)
        assert not limiter.allow("ip:a", 2, now_s=20)
        assert limiter.allow("ip:b", 2, now_s=20)
        assert limiter.allow("ip:a", 2, now_s=61)

    def test_zero_disables(self):
        limiter = FixedWindowRateLimiter()
        assert all(limiter.allow("ip:a", 0) for _ in range(100))

    def test_middleware_returns_429(self, client, monkeypatch):
        monkeypatch.setattr(main, "RATE_LIMIT_PER_IP_PER_MIN", 2)
        headers = {"x-forwarded-for": "203.0.113.9"}
        assert client.get("/", headers=headers).status_code == 200
        assert client.get("/", headers=headers).status_code == 200
        response = client.get("/", headers=headers)
        assert response.status_code == 429
        assert response.json()["detail"] == "Rate limited"


class TestMinIntervalGate:
    @pytest.mark.asyncio
    async def test_waits_only_when_too_soon(self):
        now = [0.0]
        slept = []

        async def sleep(seconds):
            slept.append(seconds)
            now[0] += seconds

        gate = MinIntervalGate(0.5, clock=lambda: now[0], sleep=sleep)
        await gate.wait()
        await gate.wait()
        now[0] += 2.0
        await gate.wait()

        assert slept == [pytest.approx(0.5)]

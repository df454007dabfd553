# tests/test_rate_limiter.py
"""Tests for pixelgate/infra/rate_limiter.py — GCRA admission control."""
from __future__ import annotations

import pytest

from pixelgate.infra.rate_limiter import GCRARateLimiter


class FakeClock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


class TestGCRARateLimiter:
    def test_burst_then_reject(self, clock):
        limiter = GCRARateLimiter(rate=2, burst=3, clock=clock)
        results = [limiter.allow() for _ in range(4)]
        assert [r.allowed for r in results] == [True, True, True, False]

    def test_refills_at_rate(self, clock):
        limiter = GCRARateLimiter(rate=2, burst=3, clock=clock)
        for _ in range(3):
            assert limiter.allow().allowed
        assert not limiter.allow().allowed

        # One second at 2 req/s frees two slots
        clock.now = 1.0
        assert limiter.allow().allowed
        assert limiter.allow().allowed
        assert not limiter.allow().allowed

    def test_remaining_counts_down(self, clock):
        limiter = GCRARateLimiter(rate=2, burst=3, clock=clock)
        assert [limiter.allow().remaining for _ in range(3)] == [2, 1, 0]

    def test_rejection_headers(self, clock):
        limiter = GCRARateLimiter(rate=2, burst=3, clock=clock)
        for _ in range(3):
            limiter.allow()
        result = limiter.allow()

        headers = result.headers()
        assert headers["X-RateLimit-Limit"] == "3"
        assert headers["X-RateLimit-Remaining"] == "0"
        assert headers["Retry-After"] == "1"

    def test_admitted_request_has_no_retry_after(self, clock):
        limiter = GCRARateLimiter(rate=1, burst=2, clock=clock)
        headers = limiter.allow().headers()
        assert "Retry-After" not in headers
        assert headers["X-RateLimit-Limit"] == "2"

    def test_burst_below_one_is_one(self, clock):
        limiter = GCRARateLimiter(rate=1, burst=0, clock=clock)
        assert limiter.allow().allowed
        assert not limiter.allow().allowed

    def test_idle_period_refills_to_burst_only(self, clock):
        limiter = GCRARateLimiter(rate=1, burst=2, clock=clock)
        assert limiter.allow().allowed

        clock.now = 100.0
        results = [limiter.allow().allowed for _ in range(3)]
        assert results == [True, True, False]

    def test_rejects_non_positive_rate(self):
        with pytest.raises(ValueError):
            GCRARateLimiter(rate=0, burst=1)

"""Token bucket rate limiter tests."""

import pytest
from fastapi import Response

from couponauth.service.metrics import AuthMetrics
from couponauth.service.rate_limit import (
    Allowed,
    EndpointClass,
    RateLimiter,
    Rejected,
    classify_path,
    resolve_client_address,
)
from couponauth.storage.memory import MemoryCache


@pytest.fixture
def limiter(clock):
    # 0.5 tokens/second on the auth class keeps retry arithmetic exact
    return RateLimiter(
        MemoryCache(),
        auth_capacity=4,
        general_capacity=10,
        window_seconds=8,
        clock=clock,
        metrics=AuthMetrics(),
    )


class TestTokenBucket:
    async def test_capacity_requests_pass_then_reject(self, limiter):
        for expected_remaining in (3, 2, 1, 0):
            decision = await limiter.check_and_consume("10.0.0.1", EndpointClass.AUTH)
            assert decision == Allowed(limit=4, remaining=expected_remaining)

        decision = await limiter.check_and_consume("10.0.0.1", EndpointClass.AUTH)
        assert isinstance(decision, Rejected)
        assert decision.limit == 4
        assert decision.retry_after_seconds == 2

    async def test_other_address_unaffected(self, limiter):
        for _ in range(5):
            await limiter.check_and_consume("10.0.0.1", EndpointClass.AUTH)

        decision = await limiter.check_and_consume("10.0.0.2", EndpointClass.AUTH)
        assert isinstance(decision, Allowed)

    async def test_endpoint_classes_have_separate_buckets(self, limiter):
        for _ in range(5):
            await limiter.check_and_consume("10.0.0.1", EndpointClass.AUTH)

        decision = await limiter.check_and_consume("10.0.0.1", EndpointClass.GENERAL)
        assert decision == Allowed(limit=10, remaining=9)

    async def test_bucket_refills_over_time(self, limiter, clock):
        for _ in range(4):
            await limiter.check_and_consume("10.0.0.1", EndpointClass.AUTH)
        assert isinstance(await limiter.check_and_consume("10.0.0.1", EndpointClass.AUTH), Rejected)

        clock.advance(2)
        assert isinstance(await limiter.check_and_consume("10.0.0.1", EndpointClass.AUTH), Allowed)
        assert isinstance(await limiter.check_and_consume("10.0.0.1", EndpointClass.AUTH), Rejected)

    async def test_rejections_are_counted(self, limiter):
        for _ in range(6):
            await limiter.check_and_consume("10.0.0.1", EndpointClass.AUTH)

        assert limiter.metrics.value("couponauth_rate_limit_rejections_total", "auth") == 2

    async def test_disabled_limiter_always_allows(self, clock):
        limiter = RateLimiter(MemoryCache(), enabled=False, auth_capacity=1, clock=clock)
        for _ in range(10):
            decision = await limiter.check_and_consume("10.0.0.1", EndpointClass.AUTH)
            assert decision == Allowed(limit=1, remaining=1)


class TestHeaders:
    def test_allowed_headers(self):
        response = Response()
        Allowed(limit=5, remaining=3).apply_headers(response)

        assert response.headers["X-RateLimit-Limit"] == "5"
        assert response.headers["X-RateLimit-Remaining"] == "3"

    def test_rejected_headers(self):
        response = Response()
        Rejected(limit=5, retry_after_seconds=12).apply_headers(response)

        assert response.headers["X-RateLimit-Remaining"] == "0"
        assert response.headers["X-RateLimit-Retry-After-Seconds"] == "12"
        assert response.headers["Retry-After"] == "12"


class TestClientResolution:
    def test_forwarded_header_used_when_trusted(self):
        address = resolve_client_address(
            " 203.0.113.9 , 10.0.0.1", "10.0.0.1", trust_proxy_headers=True
        )
        assert address == "203.0.113.9"

    def test_forwarded_header_ignored_when_untrusted(self):
        address = resolve_client_address("203.0.113.9", "10.0.0.1", trust_proxy_headers=False)
        assert address == "10.0.0.1"

    def test_empty_forwarded_header_falls_back_to_peer(self):
        assert resolve_client_address(" , x", "10.0.0.1", trust_proxy_headers=True) == "10.0.0.1"

    def test_missing_peer_is_unknown(self):
        assert resolve_client_address(None, None, trust_proxy_headers=True) == "unknown"

    def test_classify_path(self):
        assert classify_path("/api/v1/auth/login") is EndpointClass.AUTH
        assert classify_path("/api/v1/admin/companies/a@b.com/unlock") is EndpointClass.GENERAL
        assert classify_path("/api/v1/authority") is EndpointClass.GENERAL

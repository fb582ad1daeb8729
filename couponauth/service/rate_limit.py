from __future__ import annotations

import hashlib
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Protocol, Union

from couponauth.logging import get_logger

logger = get_logger(__name__)

AUTH_PATH_PREFIX = "/api/v1/auth/"
UNKNOWN_CLIENT = "unknown"


class RateLimitCache(Protocol):
    async def consume_rate_token(
        self,
        key: str,
        capacity: int,
        window_seconds: float,
        *,
        now: float,
        cost: int = 1,
    ) -> tuple[bool, int, int]: ...


class EndpointClass(str, Enum):
    AUTH = "auth"
    GENERAL = "general"


@dataclass(frozen=True)
class Allowed:
    limit: int
    remaining: int

    def apply_headers(self, response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))


@dataclass(frozen=True)
class Rejected:
    limit: int
    retry_after_seconds: int

    def apply_headers(self, response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = "0"
        response.headers["X-RateLimit-Retry-After-Seconds"] = str(self.retry_after_seconds)
        response.headers["Retry-After"] = str(self.retry_after_seconds)


RateLimitDecision = Union[Allowed, Rejected]


def classify_path(path: str, auth_prefix: str = AUTH_PATH_PREFIX) -> EndpointClass:
    return EndpointClass.AUTH if path.startswith(auth_prefix) else EndpointClass.GENERAL


def resolve_client_address(
    forwarded_for: Optional[str],
    peer: Optional[str],
    *,
    trust_proxy_headers: bool,
) -> str:
    """First X-Forwarded-For hop when proxies are trusted, else the peer address.

    The header is client-controlled; only trust it when a reverse proxy
    overwrites it before requests reach the service.
    """
    if trust_proxy_headers and forwarded_for:
        first = forwarded_for.split(",", 1)[0].strip()
        if first:
            return first
    return peer or UNKNOWN_CLIENT


class RateLimiter:
    """Token bucket per (client address, endpoint class).

    Each bucket holds up to `capacity` tokens and refills continuously at
    capacity / window_seconds. A request that finds less than one token is
    rejected without being debited.
    """

    def __init__(
        self,
        cache: RateLimitCache,
        *,
        enabled: bool = True,
        auth_capacity: int = 5,
        general_capacity: int = 100,
        window_seconds: float = 60,
        clock: Callable[[], float] = time.time,
        metrics=None,
    ) -> None:
        if auth_capacity <= 0 or general_capacity <= 0 or window_seconds <= 0:
            raise ValueError("rate limit capacities and window must be positive")
        self.cache = cache
        self.enabled = enabled
        self.capacities = {
            EndpointClass.AUTH: int(auth_capacity),
            EndpointClass.GENERAL: int(general_capacity),
        }
        self.window_seconds = float(window_seconds)
        self._clock = clock
        self.metrics = metrics

    def capacity_for(self, endpoint_class: EndpointClass) -> int:
        return self.capacities[EndpointClass(endpoint_class)]

    @staticmethod
    def _bucket_key(client_address: str, endpoint_class: EndpointClass) -> str:
        # Hash the address so arbitrary header values cannot inject delimiters
        digest = hashlib.sha256(client_address.encode()).hexdigest()
        return f"{EndpointClass(endpoint_class).value}:{digest}"

    async def check_and_consume(
        self, client_address: str, endpoint_class: EndpointClass
    ) -> RateLimitDecision:
        endpoint_class = EndpointClass(endpoint_class)
        capacity = self.capacity_for(endpoint_class)
        if not self.enabled:
            return Allowed(limit=capacity, remaining=capacity)

        allowed, remaining, retry_after = await self.cache.consume_rate_token(
            self._bucket_key(client_address, endpoint_class),
            capacity,
            self.window_seconds,
            now=self._clock(),
        )
        if allowed:
            return Allowed(limit=capacity, remaining=remaining)

        retry_after = max(1, retry_after)
        logger.warning(
            "rate_limit_exceeded",
            client_address=client_address,
            endpoint_class=endpoint_class.value,
            retry_after_seconds=retry_after,
        )
        if self.metrics is not None:
            self.metrics.record_rate_limit_rejection(endpoint_class)
        return Rejected(limit=capacity, retry_after_seconds=retry_after)

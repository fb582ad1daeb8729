from __future__ import annotations

import asyncio
import threading
import time
from typing import Dict, Optional, Union
from urllib.parse import urlparse, urlunparse

from couponauth.config import get_settings, reset_settings_cache
from couponauth.logging import get_logger
from couponauth.service.auth import AdminIdentity, AuthService
from couponauth.service.lockout import LockoutManager
from couponauth.service.metrics import AuthMetrics
from couponauth.service.passwords import CredentialVerifier
from couponauth.service.rate_limit import RateLimiter
from couponauth.service.refresh_registry import RefreshTokenRegistry
from couponauth.service.tokens import TokenCodec
from couponauth.storage.memory import MemoryAccountStore, MemoryCache, load_account_seed
from couponauth.storage.models import Role
from couponauth.storage.redis_cache import RedisCache

logger = get_logger(__name__)

Cache = Union[RedisCache, MemoryCache]


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask password in URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse((
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            ))
        return url
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        self.cache: Cache = self._build_cache()
        self.metrics = AuthMetrics()

        self.accounts: Dict[Role, MemoryAccountStore] = {
            Role.COMPANY: MemoryAccountStore(Role.COMPANY),
            Role.CUSTOMER: MemoryAccountStore(Role.CUSTOMER),
        }
        if self.settings.account_seed_path:
            for role, records in load_account_seed(self.settings.account_seed_path).items():
                for record in records:
                    self.accounts[role].add(record)

        self.codec = TokenCodec(
            self.settings.jwt_secret,
            issuer=self.settings.jwt_issuer,
            access_ttl_seconds=self.settings.access_token_ttl_minutes * 60,
            refresh_ttl_seconds=self.settings.refresh_token_ttl_minutes * 60,
        )
        self.refresh_registry = RefreshTokenRegistry(self.cache)
        self.lockout = LockoutManager(
            self.cache,
            max_attempts=self.settings.lockout_max_attempts,
            lockout_seconds=self.settings.lockout_duration_minutes * 60,
            admin_lockout_enabled=self.settings.lockout_admin_enabled,
            metrics=self.metrics,
        )
        self.rate_limiter = RateLimiter(
            self.cache,
            enabled=self.settings.rate_limit_enabled,
            auth_capacity=self.settings.rate_limit_auth_requests,
            general_capacity=self.settings.rate_limit_general_requests,
            window_seconds=self.settings.rate_limit_window_seconds,
            metrics=self.metrics,
        )
        self.verifier = CredentialVerifier()
        if not self.settings.admin_password_hash:
            logger.warning(
                "admin_password_hash_missing",
                message="ADMIN_PASSWORD_HASH is unset; administrator login is disabled",
            )
        self.auth = AuthService(
            self.codec,
            self.refresh_registry,
            self.lockout,
            accounts=self.accounts,
            verifier=self.verifier,
            admin=AdminIdentity(
                email=self.settings.admin_email,
                password_hash=self.settings.admin_password_hash,
            ),
            metrics=self.metrics,
        )

        logger.info(
            "runtime_initialized",
            cache_backend=self.cache.backend,
            rate_limit_enabled=self.settings.rate_limit_enabled,
            lockout_admin_enabled=self.settings.lockout_admin_enabled,
            companies=len(self.accounts[Role.COMPANY]),
            customers=len(self.accounts[Role.CUSTOMER]),
        )

    def _build_cache(self) -> Cache:
        if self.settings.use_memory_store:
            logger.info("runtime_cache_initialized", cache_backend="memory")
            return MemoryCache()

        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                logger.info("runtime_cache_initialized", cache_backend="redis")
                return cache
            except Exception as exc:
                redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for refresh tokens, lockouts and rate limits; "
                "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from redis_error

        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message=(
                f"Running without Redis under {fallback_mode}; refresh tokens, lockouts "
                "and rate limits are process-local."
            ),
            mode=fallback_mode,
        )
        return MemoryCache()

    async def cleanup_expired(self, now: Optional[float] = None) -> int:
        """Purge expired refresh tokens and idle in-memory state."""
        removed = await self.refresh_registry.cleanup_expired()
        purged = await self.cache.purge_idle(now=now if now is not None else time.time())
        if removed or purged:
            logger.debug("runtime_cleanup", refresh_tokens=removed, idle_entries=purged)
        return removed + purged

    async def close(self) -> None:
        await self.cache.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking:
    - First check without lock (fast path for existing runtime)
    - Second check with lock to prevent race condition during creation
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and isinstance(runtime.cache, RedisCache):
            try:
                loop = asyncio.get_running_loop()
                loop.create_task(runtime.cache.close())
            except RuntimeError:
                asyncio.run(runtime.cache.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime

from __future__ import annotations

import hashlib
import time
from typing import Callable, Optional, Protocol

from couponauth.logging import get_logger
from couponauth.storage.models import RefreshTokenEntry, Role

logger = get_logger(__name__)


class RefreshTokenCache(Protocol):
    async def put_refresh_token(self, digest: str, record: dict, ttl_seconds: float) -> None: ...

    async def get_refresh_token(self, digest: str) -> Optional[dict]: ...

    async def delete_refresh_token(self, digest: str) -> bool: ...

    async def delete_identity_refresh_tokens(self, email: str) -> int: ...

    async def list_refresh_tokens(self) -> list[tuple[str, dict]]: ...


def _digest(token: str) -> str:
    # Raw tokens never become cache keys
    return hashlib.sha256(token.encode()).hexdigest()


class RefreshTokenRegistry:
    """Tracks which refresh tokens are currently live.

    Entries are keyed by a digest of the token string. Expiry is enforced
    lazily on lookup and in bulk by `cleanup_expired`, which the app runs on
    a timer; the cache's own TTL handling is a backstop, not the source of
    truth.
    """

    def __init__(
        self, cache: RefreshTokenCache, *, clock: Callable[[], float] = time.time
    ) -> None:
        self.cache = cache
        self._clock = clock

    async def store(self, token: str, email: str, role: Role, expires_at: float) -> None:
        entry = RefreshTokenEntry(email=email, role=Role(role), expires_at=float(expires_at))
        ttl = max(1.0, entry.expires_at - self._clock())
        await self.cache.put_refresh_token(_digest(token), entry.to_dict(), ttl)

    async def is_valid(self, token: Optional[str]) -> bool:
        if not token:
            return False
        digest = _digest(token)
        record = await self.cache.get_refresh_token(digest)
        if record is None:
            return False
        if float(record.get("expires_at", 0)) <= self._clock():
            await self.cache.delete_refresh_token(digest)
            logger.debug("refresh_token_expired_on_lookup")
            return False
        return True

    async def metadata_of(self, token: Optional[str]) -> Optional[RefreshTokenEntry]:
        if not token:
            return None
        record = await self.cache.get_refresh_token(_digest(token))
        if record is None:
            return None
        try:
            return RefreshTokenEntry.from_dict(record)
        except (KeyError, ValueError):
            logger.warning("refresh_token_record_corrupt")
            return None

    async def invalidate(self, token: Optional[str]) -> bool:
        """Idempotent; returns whether a live entry was removed."""
        if not token:
            return False
        return await self.cache.delete_refresh_token(_digest(token))

    async def invalidate_all_for_identity(self, email: str) -> int:
        removed = await self.cache.delete_identity_refresh_tokens(email)
        logger.info("refresh_tokens_revoked_for_identity", email=email, count=removed)
        return removed

    async def cleanup_expired(self) -> int:
        now = self._clock()
        removed = 0
        for digest, record in await self.cache.list_refresh_tokens():
            try:
                expires_at = float(record.get("expires_at", 0))
            except (TypeError, ValueError):
                expires_at = 0.0
            if expires_at <= now and await self.cache.delete_refresh_token(digest):
                removed += 1
        if removed:
            logger.info("refresh_tokens_cleaned", removed=removed)
        return removed

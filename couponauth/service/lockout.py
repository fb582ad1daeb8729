from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Protocol

from couponauth.logging import get_logger
from couponauth.storage.models import LockoutState, Role

logger = get_logger(__name__)


class LockoutCache(Protocol):
    async def get_lockout(self, key: str) -> Optional[dict]: ...

    async def record_lockout_failure(
        self, key: str, max_attempts: int, lockout_seconds: float, *, now: float
    ) -> dict: ...

    async def clear_expired_lockout(self, key: str, *, now: float) -> bool: ...

    async def delete_lockout(self, key: str) -> bool: ...


class LockState(str, Enum):
    OPEN = "open"
    LOCKED = "locked"


@dataclass
class LockoutStatus:
    email: str
    role: Role
    state: LockState
    failed_attempts: int = 0
    locked_until: Optional[float] = None
    last_failed_at: Optional[float] = None

    @property
    def locked(self) -> bool:
        return self.state is LockState.LOCKED


def _lockout_key(email: str, role: Role) -> str:
    return f"{Role(role).value}:{email.strip().lower()}"


class LockoutManager:
    """Consecutive failed-login tracking per (email, role).

    State machine per key: OPEN counts failures; reaching `max_attempts`
    moves to LOCKED until `now + lockout_seconds`. While LOCKED the counter
    is frozen. Once the window passes the key returns to OPEN with a zero
    counter. A successful login or an administrative unlock clears the key.
    """

    def __init__(
        self,
        cache: LockoutCache,
        *,
        max_attempts: int = 5,
        lockout_seconds: float = 30 * 60,
        admin_lockout_enabled: bool = True,
        clock: Callable[[], float] = time.time,
        metrics=None,
    ) -> None:
        if max_attempts <= 0 or lockout_seconds <= 0:
            raise ValueError("lockout threshold and duration must be positive")
        self.cache = cache
        self.max_attempts = max_attempts
        self.lockout_seconds = float(lockout_seconds)
        self.admin_lockout_enabled = admin_lockout_enabled
        self._clock = clock
        self.metrics = metrics

    def applies_to(self, role: Role) -> bool:
        return Role(role) is not Role.ADMIN or self.admin_lockout_enabled

    def _status(self, email: str, role: Role, state: LockoutState) -> LockoutStatus:
        now = self._clock()
        locked = state.locked_until is not None and now < state.locked_until
        return LockoutStatus(
            email=email.strip().lower(),
            role=Role(role),
            state=LockState.LOCKED if locked else LockState.OPEN,
            failed_attempts=state.failed_attempts,
            locked_until=state.locked_until if locked else None,
            last_failed_at=state.last_failed_at,
        )

    async def check(self, email: str, role: Role) -> LockoutStatus:
        """Current state; an expired lock is cleared and reported OPEN."""
        if not self.applies_to(role):
            return LockoutStatus(email=email.strip().lower(), role=Role(role), state=LockState.OPEN)
        key = _lockout_key(email, role)
        if await self.cache.clear_expired_lockout(key, now=self._clock()):
            logger.info("account_lockout_expired", email=email, role=Role(role).value)
        state = LockoutState.from_dict(await self.cache.get_lockout(key))
        return self._status(email, role, state)

    async def record_failure(self, email: str, role: Role) -> LockoutStatus:
        if not self.applies_to(role):
            return LockoutStatus(email=email.strip().lower(), role=Role(role), state=LockState.OPEN)
        now = self._clock()
        raw = await self.cache.record_lockout_failure(
            _lockout_key(email, role), self.max_attempts, self.lockout_seconds, now=now
        )
        state = LockoutState.from_dict(raw)
        status = self._status(email, role, state)
        if raw.get("newly_locked"):
            logger.warning(
                "account_locked",
                email=email,
                role=Role(role).value,
                failed_attempts=state.failed_attempts,
                locked_until=state.locked_until,
            )
            if self.metrics is not None:
                self.metrics.record_lockout(Role(role))
        else:
            logger.info(
                "login_failure_recorded",
                email=email,
                role=Role(role).value,
                failed_attempts=state.failed_attempts,
                remaining=max(0, self.max_attempts - state.failed_attempts),
            )
        return status

    async def record_success(self, email: str, role: Role) -> None:
        if not self.applies_to(role):
            return
        await self.cache.delete_lockout(_lockout_key(email, role))

    async def unlock(self, email: str, role: Role) -> bool:
        """Force OPEN regardless of the lock window. Returns whether any state existed."""
        existed = await self.cache.delete_lockout(_lockout_key(email, role))
        if existed:
            logger.info("account_unlocked", email=email, role=Role(role).value)
            if self.metrics is not None:
                self.metrics.record_unlock(Role(role))
        return existed

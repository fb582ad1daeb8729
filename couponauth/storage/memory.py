from __future__ import annotations

import contextlib
import json
import math
import threading
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple

from couponauth.logging import get_logger
from couponauth.storage.models import AccountRecord, Role

logger = get_logger(__name__)


class _LockStripes:
    """Fixed pool of locks selected by key hash.

    Unrelated keys rarely share a lock, so one hot key does not serialize
    traffic for every other key.
    """

    def __init__(self, count: int = 64) -> None:
        self._locks = [threading.Lock() for _ in range(count)]

    def _index(self, key: str) -> int:
        return hash(key) % len(self._locks)

    @contextlib.contextmanager
    def hold(self, *keys: str) -> Iterator[None]:
        # Acquire in index order so multi-key callers cannot deadlock
        indexes = sorted({self._index(key) for key in keys})
        with contextlib.ExitStack() as stack:
            for idx in indexes:
                stack.enter_context(self._locks[idx])
            yield


class MemoryCache:
    """In-process stand-in for RedisCache.

    Same async surface, safe from threads and event-loop tasks alike. Nothing
    here reads the wall clock: callers pass `now`, and expiry of refresh
    records is decided by the registry from the record's own `expires_at`.
    """

    backend = "memory"

    def __init__(self, *, stripes: int = 64) -> None:
        self._stripes = _LockStripes(stripes)
        self._buckets: Dict[str, Tuple[float, float]] = {}
        self._bucket_windows: Dict[str, float] = {}
        self._lockouts: Dict[str, Dict[str, Any]] = {}
        self._lockout_expiry: Dict[str, float] = {}
        self._refresh: Dict[str, Dict[str, Any]] = {}
        self._refresh_owners: Dict[str, set[str]] = {}

    def verify_connection(self) -> None:
        return None

    async def close(self) -> None:
        return None

    # Rate limit buckets

    async def consume_rate_token(
        self,
        key: str,
        capacity: int,
        window_seconds: float,
        *,
        now: float,
        cost: int = 1,
    ) -> Tuple[bool, int, int]:
        refill_rate = float(capacity) / float(window_seconds)
        bucket_key = f"ratelimit:{key}"
        with self._stripes.hold(bucket_key):
            tokens, last = self._buckets.get(bucket_key, (float(capacity), now))
            elapsed = max(0.0, now - last)
            tokens = min(float(capacity), tokens + elapsed * refill_rate)
            self._bucket_windows[bucket_key] = float(window_seconds)
            if tokens < cost:
                self._buckets[bucket_key] = (tokens, now)
                retry_after = math.ceil((cost - tokens) / refill_rate)
                return False, int(tokens), retry_after
            tokens -= cost
            self._buckets[bucket_key] = (tokens, now)
            return True, int(tokens), 0

    # Lockout state

    async def get_lockout(self, key: str) -> Optional[Dict[str, Any]]:
        lock_key = f"lockout:{key}"
        with self._stripes.hold(lock_key):
            state = self._lockouts.get(lock_key)
            return dict(state) if state else None

    async def record_lockout_failure(
        self, key: str, max_attempts: int, lockout_seconds: float, *, now: float
    ) -> Dict[str, Any]:
        lock_key = f"lockout:{key}"
        with self._stripes.hold(lock_key):
            if self._lockout_lapsed(lock_key, now):
                self._drop_lockout(lock_key)
            state = self._lockouts.get(lock_key) or {"failed_attempts": 0, "locked_until": None}
            locked_until = state.get("locked_until")
            if locked_until is not None:
                if now < locked_until:
                    return {**state, "newly_locked": False}
                state = {"failed_attempts": 0, "locked_until": None}
            attempts = int(state["failed_attempts"]) + 1
            state = {"failed_attempts": attempts, "locked_until": None, "last_failed_at": now}
            if attempts >= max_attempts:
                state["locked_until"] = now + lockout_seconds
            self._lockouts[lock_key] = state
            # Counters below the threshold lapse after one lockout window without failures
            self._lockout_expiry[lock_key] = now + max(float(lockout_seconds), 1.0)
            return {**state, "newly_locked": state["locked_until"] is not None}

    def _lockout_lapsed(self, lock_key: str, now: float) -> bool:
        expiry = self._lockout_expiry.get(lock_key)
        return expiry is not None and now >= expiry

    def _drop_lockout(self, lock_key: str) -> bool:
        self._lockout_expiry.pop(lock_key, None)
        return self._lockouts.pop(lock_key, None) is not None

    async def clear_expired_lockout(self, key: str, *, now: float) -> bool:
        lock_key = f"lockout:{key}"
        with self._stripes.hold(lock_key):
            state = self._lockouts.get(lock_key)
            locked_until = state.get("locked_until") if state else None
            if locked_until is not None and now >= locked_until:
                return self._drop_lockout(lock_key)
            if self._lockout_lapsed(lock_key, now):
                # Stale counter; Redis would already have evicted it
                self._drop_lockout(lock_key)
            return False

    async def delete_lockout(self, key: str) -> bool:
        lock_key = f"lockout:{key}"
        with self._stripes.hold(lock_key):
            return self._drop_lockout(lock_key)

    # Refresh tokens

    async def put_refresh_token(
        self, digest: str, record: Dict[str, Any], ttl_seconds: float
    ) -> None:
        token_key = f"refresh:{digest}"
        owner_key = f"refresh_owner:{record['email']}"
        with self._stripes.hold(token_key, owner_key):
            previous = self._refresh.get(digest)
            if previous and previous.get("email") != record["email"]:
                self._refresh_owners.get(previous["email"], set()).discard(digest)
            self._refresh[digest] = dict(record)
            self._refresh_owners.setdefault(record["email"], set()).add(digest)

    async def get_refresh_token(self, digest: str) -> Optional[Dict[str, Any]]:
        with self._stripes.hold(f"refresh:{digest}"):
            record = self._refresh.get(digest)
            return dict(record) if record else None

    async def delete_refresh_token(self, digest: str) -> bool:
        token_key = f"refresh:{digest}"
        with self._stripes.hold(token_key):
            record = self._refresh.get(digest)
        if not record:
            return False
        owner_key = f"refresh_owner:{record['email']}"
        with self._stripes.hold(token_key, owner_key):
            removed = self._refresh.pop(digest, None)
            owners = self._refresh_owners.get(record["email"])
            if owners is not None:
                owners.discard(digest)
                if not owners:
                    self._refresh_owners.pop(record["email"], None)
            return removed is not None

    async def delete_identity_refresh_tokens(self, email: str) -> int:
        owner_key = f"refresh_owner:{email}"
        with self._stripes.hold(owner_key):
            digests = list(self._refresh_owners.get(email, ()))
        removed = 0
        for digest in digests:
            with self._stripes.hold(f"refresh:{digest}", owner_key):
                record = self._refresh.get(digest)
                if record and record.get("email") == email:
                    del self._refresh[digest]
                    removed += 1
                owners = self._refresh_owners.get(email)
                if owners is not None:
                    owners.discard(digest)
                    if not owners:
                        self._refresh_owners.pop(email, None)
        return removed

    async def list_refresh_tokens(self) -> List[Tuple[str, Dict[str, Any]]]:
        # Snapshot without stripes; dict copy is atomic under the GIL
        return [(digest, dict(record)) for digest, record in list(self._refresh.items())]

    async def purge_idle(self, *, now: float) -> int:
        """Drop full buckets and lapsed lockouts that Redis would have expired."""
        purged = 0
        for bucket_key in list(self._buckets.keys()):
            with self._stripes.hold(bucket_key):
                entry = self._buckets.get(bucket_key)
                window = self._bucket_windows.get(bucket_key)
                if entry is None or window is None:
                    continue
                if now - entry[1] >= window:
                    del self._buckets[bucket_key]
                    self._bucket_windows.pop(bucket_key, None)
                    purged += 1
        for lock_key in list(self._lockouts.keys()):
            with self._stripes.hold(lock_key):
                state = self._lockouts.get(lock_key)
                locked_until = state.get("locked_until") if state else None
                lapsed_lock = locked_until is not None and now >= locked_until
                if (lapsed_lock or self._lockout_lapsed(lock_key, now)) and self._drop_lockout(lock_key):
                    purged += 1
        return purged


class MemoryAccountStore:
    """Company or customer account lookup held in process memory."""

    def __init__(self, role: Role, accounts: Optional[List[AccountRecord]] = None) -> None:
        self.role = role
        self._lock = threading.Lock()
        self._accounts: Dict[str, AccountRecord] = {}
        for account in accounts or []:
            self.add(account)

    def add(self, account: AccountRecord) -> AccountRecord:
        with self._lock:
            self._accounts[account.email.strip().lower()] = account
        return account

    def remove(self, email: str) -> bool:
        with self._lock:
            return self._accounts.pop(email.strip().lower(), None) is not None

    def find_by_email(self, email: str) -> Optional[AccountRecord]:
        with self._lock:
            return self._accounts.get(email.strip().lower())

    def __len__(self) -> int:
        with self._lock:
            return len(self._accounts)


def load_account_seed(path: str) -> Dict[Role, List[AccountRecord]]:
    """Read a JSON list of accounts grouped by role.

    Expected shape::

        {"company": [{"id": 1, "email": "...", "name": "...", "password_hash": "..."}],
         "customer": [...]}
    """
    raw = json.loads(Path(path).read_text())
    seeded: Dict[Role, List[AccountRecord]] = {}
    for role_name, rows in raw.items():
        role = Role.parse(role_name)
        if role is None or role is Role.ADMIN:
            logger.warning("account_seed_role_skipped", role=role_name)
            continue
        seeded[role] = [
            AccountRecord(
                id=int(row["id"]),
                email=row["email"].strip().lower(),
                display_name=row.get("name") or row["email"],
                password_hash=row["password_hash"],
            )
            for row in rows
        ]
    logger.info(
        "account_seed_loaded",
        path=path,
        counts={role.value: len(rows) for role, rows in seeded.items()},
    )
    return seeded

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Mapping, Optional, Protocol

from couponauth.logging import get_logger
from couponauth.service.errors import (
    AccountLockedError,
    ConfigurationError,
    InvalidCredentialsError,
    InvalidRefreshTokenError,
    NotFoundError,
    RoleNotFoundError,
)
from couponauth.service.lockout import LockoutManager, LockoutStatus
from couponauth.service.metrics import AuthMetrics
from couponauth.service.passwords import CredentialVerifier
from couponauth.service.refresh_registry import RefreshTokenRegistry
from couponauth.service.tokens import TokenCodec, TokenKind
from couponauth.storage.models import AccountRecord, Role

logger = get_logger(__name__)


class AccountStore(Protocol):
    def find_by_email(self, email: str) -> Optional[AccountRecord]: ...


@dataclass(frozen=True)
class AdminIdentity:
    email: str
    password_hash: Optional[str]
    user_id: int = 1
    display_name: str = "Administrator"


@dataclass
class PrincipalInfo:
    user_id: int
    email: str
    role: Role
    display_name: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "email": self.email,
            "client_type": self.role.value,
            "name": self.display_name,
        }


@dataclass
class AuthResult:
    access_token: str
    refresh_token: str
    principal: PrincipalInfo
    access_expires_at: float
    token_type: str = field(default="bearer")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": self.token_type,
            "expires_at": datetime.fromtimestamp(
                self.access_expires_at, tz=timezone.utc
            ).isoformat(),
            "user_info": self.principal.to_dict(),
        }


def _normalize_email(email: Optional[str]) -> str:
    return (email or "").strip().lower()


class AuthService:
    """Login and refresh-token rotation for admin, company and customer clients.

    Login consults the lockout manager before touching credentials, mints an
    access/refresh pair on success and records the refresh token. Refresh is
    single use: the presented token is retired once its replacement is live.
    """

    def __init__(
        self,
        codec: TokenCodec,
        registry: RefreshTokenRegistry,
        lockout: LockoutManager,
        *,
        accounts: Mapping[Role, AccountStore],
        verifier: CredentialVerifier,
        admin: AdminIdentity,
        metrics: Optional[AuthMetrics] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.codec = codec
        self.registry = registry
        self.lockout = lockout
        self.accounts = dict(accounts)
        self.verifier = verifier
        self.admin = admin
        self.metrics = metrics
        self._clock = clock
        self.logger = logger

    def _record_login(self, role: Role | str, outcome: str) -> None:
        if self.metrics is not None:
            self.metrics.record_login(role, outcome)

    def _parse_role(self, role_name: Optional[str]) -> Role:
        role = Role.parse(role_name)
        if role is None:
            raise RoleNotFoundError(role_name)
        return role

    def _account_store(self, role: Role) -> AccountStore:
        store = self.accounts.get(role)
        if store is None:
            raise ConfigurationError(f"no account store configured for {role.value}")
        return store

    # Login

    async def login(self, email: str, password: str, role_name: str) -> AuthResult:
        try:
            role = self._parse_role(role_name)
        except RoleNotFoundError:
            self._record_login("unknown", "role_not_found")
            self.logger.info("login_role_not_found", role=role_name)
            raise
        email = _normalize_email(email)

        status = await self.lockout.check(email, role)
        if status.locked:
            self._record_login(role, "locked")
            self.logger.warning(
                "login_rejected_locked",
                email=email,
                role=role.value,
                locked_until=status.locked_until,
            )
            raise AccountLockedError(email, status.locked_until, now=self._clock())

        principal = self._verify_credentials(email, password or "", role)
        if principal is None:
            await self.lockout.record_failure(email, role)
            self._record_login(role, "invalid_credentials")
            self.logger.info("login_failed", email=email, role=role.value)
            raise InvalidCredentialsError()

        await self.lockout.record_success(email, role)
        result = await self._issue(principal)
        self._record_login(role, "success")
        self.logger.info(
            "login_succeeded", email=email, role=role.value, user_id=principal.user_id
        )
        return result

    def _verify_credentials(
        self, email: str, password: str, role: Role
    ) -> Optional[PrincipalInfo]:
        if role is Role.ADMIN:
            if email != self.admin.email or not self.admin.password_hash:
                self.verifier.burn(password)
                return None
            if not self.verifier.verify(password, self.admin.password_hash):
                return None
            return self._admin_principal()

        # Lookup errors propagate unchanged
        account = self._account_store(role).find_by_email(email)
        if account is None:
            self.verifier.burn(password)
            return None
        if not self.verifier.verify(password, account.password_hash):
            return None
        return self._principal_from_account(account, role)

    def _admin_principal(self) -> PrincipalInfo:
        return PrincipalInfo(
            user_id=self.admin.user_id,
            email=self.admin.email,
            role=Role.ADMIN,
            display_name=self.admin.display_name,
        )

    @staticmethod
    def _principal_from_account(account: AccountRecord, role: Role) -> PrincipalInfo:
        return PrincipalInfo(
            user_id=account.id,
            email=_normalize_email(account.email),
            role=role,
            display_name=account.display_name,
        )

    def _resolve_principal(self, email: str, role: Role) -> Optional[PrincipalInfo]:
        if role is Role.ADMIN:
            return self._admin_principal() if email == self.admin.email else None
        account = self._account_store(role).find_by_email(email)
        if account is None:
            return None
        return self._principal_from_account(account, role)

    async def _issue(self, principal: PrincipalInfo) -> AuthResult:
        access_token = self.codec.issue_access_token(
            principal.email, principal.role, principal.user_id
        )
        access_expires_at = self.codec.expiry_of(TokenKind.ACCESS)
        refresh_token = self.codec.issue_refresh_token(principal.email)
        await self.registry.store(
            refresh_token,
            principal.email,
            principal.role,
            self._clock() + self.codec.refresh_ttl_seconds,
        )
        return AuthResult(
            access_token=access_token,
            refresh_token=refresh_token,
            principal=principal,
            access_expires_at=access_expires_at,
        )

    # Refresh

    async def refresh(self, refresh_token: str) -> AuthResult:
        """Rotate a refresh token.

        Never-issued, expired and already-rotated tokens all fail the same
        way. The presented token is claimed by deleting it before anything
        is minted; only the request whose delete removed the entry proceeds,
        so concurrent rotations of one token yield a single winner and the
        winner's replacement is never touched by the losers.
        """
        claims = self.codec.decode(refresh_token)
        if (
            claims is None
            or claims.kind is not TokenKind.REFRESH
            or not await self.registry.is_valid(refresh_token)
        ):
            self._reject_refresh("invalid_or_expired")
        entry = await self.registry.metadata_of(refresh_token)
        if entry is None:
            self._reject_refresh("invalid_or_expired")
        if not await self.registry.invalidate(refresh_token):
            self._reject_refresh("concurrent_rotation")

        principal = self._resolve_principal(entry.email, entry.role)
        if principal is None:
            if self.metrics is not None:
                self.metrics.record_refresh("account_missing")
            self.logger.warning(
                "refresh_account_missing", email=entry.email, role=entry.role.value
            )
            raise NotFoundError("account not found")

        result = await self._issue(principal)
        if self.metrics is not None:
            self.metrics.record_refresh("success")
        self.logger.info(
            "refresh_rotated", email=principal.email, role=principal.role.value
        )
        return result

    def _reject_refresh(self, reason: str) -> None:
        if self.metrics is not None:
            self.metrics.record_refresh("invalid")
        self.logger.info("refresh_rejected", reason=reason)
        raise InvalidRefreshTokenError()

    # Request authentication

    def verify_request_token(self, token: Optional[str]) -> Optional[PrincipalInfo]:
        claims = self.codec.decode(token)
        if claims is None or claims.kind is not TokenKind.ACCESS:
            return None
        if claims.role is Role.ADMIN:
            display_name = self.admin.display_name
        else:
            display_name = claims.subject
        return PrincipalInfo(
            user_id=claims.user_id,
            email=claims.subject,
            role=claims.role,
            display_name=display_name,
        )

    def authenticate(self, authorization: Optional[str]) -> Optional[PrincipalInfo]:
        return self.verify_request_token(self._extract_bearer(authorization))

    @staticmethod
    def _extract_bearer(header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        lower = header.lower()
        if not lower.startswith("bearer "):
            return None
        return header.split(" ", 1)[1].strip() or None

    # Administration

    async def unlock(self, email: str, role_name: str) -> bool:
        role = self._parse_role(role_name)
        return await self.lockout.unlock(_normalize_email(email), role)

    async def lockout_status(self, email: str, role_name: str) -> LockoutStatus:
        role = self._parse_role(role_name)
        return await self.lockout.check(_normalize_email(email), role)

    async def logout(self, refresh_token: str) -> bool:
        return await self.registry.invalidate(refresh_token)

    async def logout_all(self, email: str) -> int:
        return await self.registry.invalidate_all_for_identity(_normalize_email(email))

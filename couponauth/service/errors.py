from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code rendered into the response envelope:
    - validation_error (400)
    - role_not_found (400)
    - unauthorized / invalid_credentials / invalid_or_expired (401)
    - forbidden / account_locked (403)
    - not_found (404)
    - rate_limited (429)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(self, retry_after_seconds: int, *, limit: Optional[int] = None) -> None:
        super().__init__(
            f"Rate limit exceeded. Try again in {retry_after_seconds} seconds.",
            detail={"retry_after_seconds": retry_after_seconds, "limit": limit},
        )
        self.retry_after_seconds = retry_after_seconds
        self.limit = limit


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class ConfigurationError(ServerError):
    """Service cannot operate with the supplied configuration."""


class LoginFailure(ServiceError):
    """Expected, user-facing rejection of a login attempt."""

    kind: str = ""


class RoleNotFoundError(LoginFailure):
    status_code = 400
    error_code = "role_not_found"
    kind = "role_not_found"

    def __init__(self, role: Optional[str] = None) -> None:
        super().__init__("unknown client type")
        self.role = role


class InvalidCredentialsError(LoginFailure):
    status_code = 401
    error_code = "invalid_credentials"
    kind = "invalid_credentials"

    def __init__(self) -> None:
        super().__init__("invalid credentials")


class AccountLockedError(LoginFailure):
    """Raised while an (email, role) pair is inside its lockout window.

    Carries the unlock time so clients can present a countdown.
    """

    status_code = 403
    error_code = "account_locked"
    kind = "account_locked"

    def __init__(self, email: str, locked_until: float, *, now: Optional[float] = None) -> None:
        until = datetime.fromtimestamp(locked_until, tz=timezone.utc)
        detail = {"locked_until": until.isoformat()}
        if now is not None:
            detail["retry_after_seconds"] = max(0, math.ceil(locked_until - now))
        super().__init__(
            f"Account is locked until {until.strftime('%Y-%m-%d %H:%M:%S')} UTC. "
            "Too many failed login attempts.",
            detail=detail,
        )
        self.email = email
        self.locked_until = locked_until


class RefreshFailure(ServiceError):
    kind: str = ""


class InvalidRefreshTokenError(RefreshFailure):
    """Covers never-issued, expired and already-rotated tokens alike."""

    status_code = 401
    error_code = "invalid_or_expired"
    kind = "invalid_or_expired"

    def __init__(self) -> None:
        super().__init__("invalid or expired refresh token")


__all__ = [
    "ServiceError",
    "NotFoundError",
    "RateLimitedError",
    "ServerError",
    "ConfigurationError",
    "LoginFailure",
    "RoleNotFoundError",
    "InvalidCredentialsError",
    "AccountLockedError",
    "RefreshFailure",
    "InvalidRefreshTokenError",
]

from __future__ import annotations

from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Dict, Optional


class Role(str, Enum):
    """Client types that can authenticate against the coupon backend."""

    ADMIN = "admin"
    COMPANY = "company"
    CUSTOMER = "customer"

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional["Role"]:
        """Case-insensitive lookup; returns None for unknown or empty input."""
        if not value or not isinstance(value, str):
            return None
        try:
            return cls(value.strip().lower())
        except ValueError:
            return None


@dataclass
class AccountRecord:
    id: int
    email: str
    display_name: str
    password_hash: str


@dataclass
class RefreshTokenEntry:
    email: str
    role: Role
    expires_at: float

    def to_dict(self) -> Dict[str, Any]:
        return {"email": self.email, "role": self.role.value, "expires_at": self.expires_at}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RefreshTokenEntry":
        return cls(
            email=data["email"],
            role=Role(data["role"]),
            expires_at=float(data["expires_at"]),
        )


@dataclass
class LockoutState:
    failed_attempts: int = 0
    locked_until: Optional[float] = None
    last_failed_at: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "LockoutState":
        if not data:
            return cls()
        locked_until = data.get("locked_until")
        last_failed_at = data.get("last_failed_at")
        return cls(
            failed_attempts=int(data.get("failed_attempts") or 0),
            locked_until=float(locked_until) if locked_until not in (None, "") else None,
            last_failed_at=float(last_failed_at) if last_failed_at not in (None, "") else None,
        )

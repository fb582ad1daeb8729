from __future__ import annotations

from typing import Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from couponauth.logging import get_logger

logger = get_logger(__name__)


class CredentialVerifier:
    """argon2id hashing and verification of account passwords."""

    def __init__(self, hasher: Optional[PasswordHasher] = None) -> None:
        self._pwd_hasher = hasher or PasswordHasher(type=Type.ID)
        # Verified against when the account does not exist so both paths cost the same
        self._dummy_hash = self._pwd_hasher.hash("couponauth-dummy-password")

    def hash(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def verify(self, password: str, stored_hash: Optional[str]) -> bool:
        if not stored_hash:
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unusable")
            return False

    def burn(self, password: str) -> bool:
        """Run a full verification against a throwaway hash; always False."""
        self.verify(password, self._dummy_hash)
        return False

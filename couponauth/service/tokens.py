from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

from couponauth.config import MIN_JWT_SECRET_LENGTH
from couponauth.logging import get_logger
from couponauth.service.errors import ConfigurationError
from couponauth.storage.models import Role

logger = get_logger(__name__)

_HEADER = {"alg": "HS256", "typ": "JWT"}


class TokenKind(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"


@dataclass(frozen=True)
class TokenClaims:
    subject: str
    kind: TokenKind
    issued_at: int
    expires_at: int
    role: Optional[Role] = None
    user_id: Optional[int] = None


class TokenCodec:
    """Mint and verify compact HS256 tokens.

    Access tokens carry subject, role, numeric user id and kind. Refresh tokens
    carry only the subject and kind; the role is recovered from the refresh
    registry. Issue time has one-second granularity, so two tokens minted for
    the same inputs within the same second are identical strings.
    """

    def __init__(
        self,
        secret: str,
        *,
        issuer: str = "couponauth",
        access_ttl_seconds: int = 3600,
        refresh_ttl_seconds: int = 86400,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not isinstance(secret, str) or len(secret) < MIN_JWT_SECRET_LENGTH:
            raise ConfigurationError(
                f"JWT secret must be at least {MIN_JWT_SECRET_LENGTH} characters"
            )
        if access_ttl_seconds <= 0 or refresh_ttl_seconds <= 0:
            raise ConfigurationError("token lifetimes must be positive")
        self._key = secret.encode()
        self.issuer = issuer
        self.access_ttl_seconds = int(access_ttl_seconds)
        self.refresh_ttl_seconds = int(refresh_ttl_seconds)
        self._clock = clock

    def _now(self) -> int:
        return int(self._clock())

    # Issuance

    def issue_access_token(self, email: str, role: Role, user_id: int) -> str:
        now = self._now()
        return self._encode(
            {
                "iss": self.issuer,
                "sub": email,
                "role": Role(role).value,
                "uid": int(user_id),
                "type": TokenKind.ACCESS.value,
                "iat": now,
                "exp": now + self.access_ttl_seconds,
            }
        )

    def issue_refresh_token(self, email: str) -> str:
        now = self._now()
        return self._encode(
            {
                "iss": self.issuer,
                "sub": email,
                "type": TokenKind.REFRESH.value,
                "iat": now,
                "exp": now + self.refresh_ttl_seconds,
            }
        )

    def expiry_of(self, kind: TokenKind) -> int:
        """Absolute expiry a token of `kind` minted right now would carry."""
        ttl = self.access_ttl_seconds if kind is TokenKind.ACCESS else self.refresh_ttl_seconds
        return self._now() + ttl

    # Verification

    def verify(self, token: Any) -> bool:
        """True only for a well-formed, correctly signed, unexpired token. Never raises."""
        return self.decode(token) is not None

    def decode(self, token: Any) -> Optional[TokenClaims]:
        try:
            payload = self._decode_payload(token)
            if payload is None:
                return None
            return self._claims_from_payload(payload)
        except Exception as exc:  # verify() never raises
            logger.warning("token_decode_failed", error_type=type(exc).__name__)
            return None

    def subject_of(self, token: str) -> Optional[str]:
        claims = self.decode(token)
        return claims.subject if claims else None

    def role_of(self, token: str) -> Optional[Role]:
        claims = self.decode(token)
        return claims.role if claims else None

    def user_id_of(self, token: str) -> Optional[int]:
        claims = self.decode(token)
        return claims.user_id if claims else None

    def kind_of(self, token: str) -> Optional[TokenKind]:
        claims = self.decode(token)
        return claims.kind if claims else None

    # Encoding helpers

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._key, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode(self, payload: dict[str, Any]) -> str:
        header_enc = self._encode_segment(
            json.dumps(_HEADER, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_payload(self, token: Any) -> Optional[dict[str, Any]]:
        if not token or not isinstance(token, str):
            return None
        parts = token.split(".")
        if len(parts) != 3:
            return None
        header_b64, payload_b64, sig_b64 = parts

        # Reject anything but HS256 to prevent algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, binascii.Error):
            logger.debug("token_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "token_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            logger.debug("token_signature_mismatch")
            return None

        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, binascii.Error) as exc:
            logger.warning("token_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.issuer:
            return None
        exp = payload.get("exp")
        if isinstance(exp, bool) or not isinstance(exp, (int, float)):
            return None
        if exp <= self._clock():
            logger.debug("token_expired", exp=exp)
            return None
        return payload

    @staticmethod
    def _claims_from_payload(payload: dict[str, Any]) -> Optional[TokenClaims]:
        subject = payload.get("sub")
        if not isinstance(subject, str) or not subject:
            return None
        try:
            kind = TokenKind(payload.get("type"))
        except ValueError:
            return None
        role: Optional[Role] = None
        user_id: Optional[int] = None
        if kind is TokenKind.ACCESS:
            role = Role.parse(payload.get("role"))
            uid = payload.get("uid")
            if role is None or isinstance(uid, bool) or not isinstance(uid, int):
                return None
            user_id = uid
        iat = payload.get("iat")
        return TokenClaims(
            subject=subject,
            kind=kind,
            issued_at=int(iat) if isinstance(iat, (int, float)) else 0,
            expires_at=int(payload["exp"]),
            role=role,
            user_id=user_id,
        )

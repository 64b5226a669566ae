from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

from storefront.config import Settings
from storefront.logging import get_logger
from storefront.storage.models import Role

logger = get_logger(__name__)

ACCESS_TOKEN = "access"
REFRESH_TOKEN = "refresh"
_TOKEN_TYPES = (ACCESS_TOKEN, REFRESH_TOKEN)


@dataclass(frozen=True)
class TokenClaims:
    """Signed payload of every bearer token.

    Claims are never mutated; a new token is always a new object with a new
    ``token_id``. ``expires_at`` stays ``None`` until the codec signs it.
    """

    token_id: str
    issued_at: int
    subject_id: str
    email: str
    role: Role
    expires_at: Optional[int] = None
    token_type: str = ACCESS_TOKEN

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "jti": self.token_id,
            "iat": self.issued_at,
            "sub": self.subject_id,
            "email": self.email,
            "role": self.role.value,
            "typ": self.token_type,
        }
        if self.expires_at is not None:
            payload["exp"] = self.expires_at
        return payload

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "TokenClaims":
        """Build claims from a decoded payload; raises KeyError/ValueError/TypeError."""
        exp = payload.get("exp")
        token_type = payload.get("typ", ACCESS_TOKEN)
        if token_type not in _TOKEN_TYPES:
            raise ValueError(f"unknown token type {token_type!r}")
        return cls(
            token_id=str(payload["jti"]),
            issued_at=int(payload["iat"]),
            subject_id=str(payload["sub"]),
            email=str(payload["email"]),
            role=Role(payload["role"]),
            expires_at=int(exp) if exp is not None else None,
            token_type=token_type,
        )


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    access_claims: TokenClaims
    refresh_claims: TokenClaims


class TokenCodec:
    """HS256 compact JWT signing and verification.

    ``decode`` never raises for untrusted input and does not check expiry, so
    expired tokens can still be read for revocation bookkeeping.
    """

    _HEADER = {"alg": "HS256", "typ": "JWT"}

    def __init__(self, settings: Settings, *, clock: Callable[[], float] = time.time) -> None:
        self.settings = settings
        self._clock = clock
        self._key = settings.jwt_secret.encode()

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _signature(self, signing_input: str) -> str:
        digest = hmac.new(self._key, signing_input.encode(), hashlib.sha256).digest()
        return self._encode_segment(digest)

    def sign(self, claims: TokenClaims, ttl_seconds: int) -> str:
        expires_at = int(self._clock()) + int(ttl_seconds)
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            **claims.to_payload(),
            "exp": expires_at,
        }
        header_enc = self._encode_segment(
            json.dumps(self._HEADER, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._signature(signing_input)}"

    def decode(self, token: Optional[str]) -> Optional[TokenClaims]:
        if not isinstance(token, str):
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Reject anything but HS256 to rule out algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            return None

        expected_sig = self._signature(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            return None
        try:
            return TokenClaims.from_payload(payload)
        except (KeyError, ValueError, TypeError) as exc:
            logger.warning("jwt_claims_invalid", error=str(exc))
            return None

from __future__ import annotations

import dataclasses
import time
import uuid
from typing import Callable, Optional

from storefront.config import Settings
from storefront.logging import get_logger
from storefront.service.denylist import TokenDenylist
from storefront.service.errors import InvalidTokenError
from storefront.service.tokens import (
    ACCESS_TOKEN,
    REFRESH_TOKEN,
    TokenClaims,
    TokenCodec,
    TokenPair,
)
from storefront.storage.models import User

logger = get_logger(__name__)


class TokenManager:
    """The only place tokens are created or judged valid."""

    def __init__(
        self,
        settings: Settings,
        codec: TokenCodec,
        denylist: TokenDenylist,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.codec = codec
        self.denylist = denylist
        self.access_ttl_seconds = settings.access_token_ttl_seconds
        self.refresh_ttl_seconds = settings.refresh_token_ttl_seconds
        self._clock = clock

    def now(self) -> int:
        return int(self._clock())

    def new_claims(self, user: User) -> TokenClaims:
        return TokenClaims(
            token_id=str(uuid.uuid4()),
            issued_at=self.now(),
            subject_id=user.id,
            email=user.email,
            role=user.role,
        )

    def issue_pair(self, claims: TokenClaims) -> TokenPair:
        """Sign an access/refresh pair from one set of base claims.

        The access token keeps the caller's ``token_id``; the refresh token gets
        a fresh one so the two can be denylisted independently.
        """
        access_claims = dataclasses.replace(
            claims, token_type=ACCESS_TOKEN, expires_at=None
        )
        refresh_claims = dataclasses.replace(
            claims, token_id=str(uuid.uuid4()), token_type=REFRESH_TOKEN, expires_at=None
        )
        access_token = self.codec.sign(access_claims, self.access_ttl_seconds)
        refresh_token = self.codec.sign(refresh_claims, self.refresh_ttl_seconds)
        logger.info(
            "token_pair_issued",
            subject_id=claims.subject_id,
            access_token_id=access_claims.token_id,
            refresh_token_id=refresh_claims.token_id,
        )
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            access_claims=self.codec.decode(access_token),
            refresh_claims=self.codec.decode(refresh_token),
        )

    def decode_unexpired(self, token: str) -> TokenClaims:
        """Signature and expiry only; denylist state is not consulted."""
        claims = self.codec.decode(token)
        if claims is None or claims.expires_at is None:
            raise InvalidTokenError()
        if self.now() > claims.expires_at:
            raise InvalidTokenError("token expired")
        return claims

    async def validate(self, token: str, *, token_type: Optional[str] = None) -> TokenClaims:
        claims = self.decode_unexpired(token)
        if token_type is not None and claims.token_type != token_type:
            raise InvalidTokenError(f"expected {token_type} token")
        if await self.denylist.is_denylisted(claims):
            raise InvalidTokenError("token revoked")
        if await self.denylist.is_invalidated_by_password_change(claims):
            raise InvalidTokenError("token invalidated by password change")
        return claims

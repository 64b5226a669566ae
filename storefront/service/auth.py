from __future__ import annotations

import asyncio
import base64
import os
import uuid
from dataclasses import dataclass
from typing import Optional

from storefront.config import Settings
from storefront.logging import get_logger
from storefront.service.denylist import DenylistReason
from storefront.service.email import MailDispatcher, MailJob
from storefront.service.errors import (
    DenylistWriteError,
    ForbiddenError,
    InvalidCredentialsError,
    InvalidTokenError,
    NotFoundError,
    TokenAlreadyDenylistedError,
)
from storefront.service.token_manager import TokenManager
from storefront.service.tokens import ACCESS_TOKEN, REFRESH_TOKEN, TokenClaims, TokenPair
from storefront.service.users import UserService
from storefront.storage.models import Registration, User


@dataclass(frozen=True)
class AuthResult:
    user: User
    tokens: TokenPair


class AuthService:
    """Sign-in, sign-up and the token lifecycle around them.

    Token states as seen from here: issued, active, denylisted (signed out,
    revoked or superseded by a password change) and expired. Every failure is
    raised as a typed ``ServiceError``; nothing is retried here.
    """

    def __init__(
        self,
        settings: Settings,
        users: UserService,
        tokens: TokenManager,
        mail: MailDispatcher,
    ) -> None:
        self.settings = settings
        self.users = users
        self.tokens = tokens
        self.mail = mail
        self.logger = get_logger(__name__)

    @property
    def denylist(self):
        return self.tokens.denylist

    @staticmethod
    def extract_bearer(header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        scheme, _, token = header.strip().partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return None
        return token.strip()

    async def authenticate(self, authorization: Optional[str]) -> TokenClaims:
        token = self.extract_bearer(authorization)
        if not token:
            raise InvalidTokenError("missing bearer token")
        return await self.tokens.validate(token, token_type=ACCESS_TOKEN)

    async def sign_in(self, email: str, password: str) -> AuthResult:
        user = await self.users.verify_credentials(email, password)
        pair = self.tokens.issue_pair(self.tokens.new_claims(user))
        self.logger.info("auth_sign_in_succeeded", user_id=user.id)
        return AuthResult(user=user, tokens=pair)

    async def sign_up(self, registration: Registration) -> AuthResult:
        if not self.settings.allow_signup:
            raise ForbiddenError("sign-up is disabled")
        user = await self.users.create(registration)
        pair = self.tokens.issue_pair(self.tokens.new_claims(user))
        self.logger.info("auth_sign_up_succeeded", user_id=user.id)
        try:
            await self.mail.send(
                user.email,
                f"Welcome to {self.settings.email_from_name}",
                "welcome",
                {"first_name": user.first_name},
            )
        except Exception as exc:
            # Welcome mail is best effort
            self.logger.warning(
                "welcome_email_dispatch_failed",
                user_id=user.id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
        return AuthResult(user=user, tokens=pair)

    async def sign_out(self, access_token: str) -> None:
        """Denylist one access token; a second sign-out with the same token fails."""
        claims = self.tokens.decode_unexpired(access_token)
        if claims.token_type != ACCESS_TOKEN:
            raise InvalidTokenError(f"expected {ACCESS_TOKEN} token")
        try:
            written = await self.denylist.denylist(
                claims, DenylistReason.SIGNED_OUT, exclusive=True
            )
        except TokenAlreadyDenylistedError as exc:
            raise InvalidTokenError("token already signed out") from exc
        if not written:
            raise DenylistWriteError()
        self.logger.info("auth_signed_out", user_id=claims.subject_id, token_id=claims.token_id)

    async def revoke_tokens(
        self, claims: TokenClaims, access_token: str, refresh_token: str
    ) -> TokenPair:
        """Revoke an access/refresh pair and issue a replacement pair.

        Both tokens are validated before anything is written, so revoking an
        already revoked token fails with ``InvalidTokenError``. The two writes
        are exclusive and run concurrently: when a concurrent call with the same
        pair got there first this call fails with ``InvalidTokenError`` too. If
        only one write is acknowledged it stays in place and the call fails with
        ``DenylistWriteError``.
        """
        access_claims, refresh_claims = await asyncio.gather(
            self.tokens.validate(access_token, token_type=ACCESS_TOKEN),
            self.tokens.validate(refresh_token, token_type=REFRESH_TOKEN),
        )
        subjects = {claims.subject_id, access_claims.subject_id, refresh_claims.subject_id}
        if len(subjects) != 1:
            self.logger.warning("auth_revoke_subject_mismatch", user_id=claims.subject_id)
            raise InvalidTokenError("tokens belong to different subjects")

        results = await asyncio.gather(
            self.denylist.denylist(access_claims, DenylistReason.REVOKED, exclusive=True),
            self.denylist.denylist(refresh_claims, DenylistReason.REVOKED, exclusive=True),
            return_exceptions=True,
        )
        replayed = [r for r in results if isinstance(r, TokenAlreadyDenylistedError)]
        if replayed:
            self.logger.warning("auth_revoke_replayed", user_id=claims.subject_id)
            raise InvalidTokenError("token already revoked") from replayed[0]
        for result in results:
            if isinstance(result, BaseException):
                raise result
        access_ok, refresh_ok = results
        if not (access_ok and refresh_ok):
            self.logger.error(
                "auth_revoke_partial",
                user_id=claims.subject_id,
                access_revoked=access_ok,
                refresh_revoked=refresh_ok,
            )
            raise DenylistWriteError()

        user = self.users.get(claims.subject_id)
        pair = self.tokens.issue_pair(self.tokens.new_claims(user))
        self.logger.info("auth_tokens_revoked", user_id=user.id)
        return pair

    async def change_password(
        self, user_id: str, email: str, current_password: str, new_password: str
    ) -> None:
        user = await self.users.verify_credentials(email, current_password)
        if user.id != user_id:
            self.logger.warning("auth_change_password_wrong_account", user_id=user_id)
            raise InvalidCredentialsError()
        await self.users.update_password(user.id, new_password)
        await self._invalidate_issued_tokens(user)
        self.logger.info("auth_password_changed", user_id=user.id)

    async def forgot_password(self, email: str) -> MailJob:
        user = self.users.find_by_email(email)
        if not user:
            raise NotFoundError("user not found")
        new_password = self._generate_password()
        await self.users.update_password(user.id, new_password)
        if self.settings.forgot_password_revokes_tokens:
            await self._invalidate_issued_tokens(user)
        job = await self.mail.send(
            user.email,
            f"Your new {self.settings.email_from_name} password",
            "forgot-password",
            {"first_name": user.first_name, "password": new_password},
        )
        self.logger.info("auth_password_reset", user_id=user.id, job_id=job.id)
        return job

    async def _invalidate_issued_tokens(self, user: User) -> None:
        """Record a password change so tokens issued before now stop validating.

        The marker lives as long as a refresh token, which is the longest any
        token issued before the change can remain otherwise valid.
        """
        now = self.tokens.now()
        marker = TokenClaims(
            token_id=str(uuid.uuid4()),
            issued_at=now,
            subject_id=user.id,
            email=user.email,
            role=user.role,
            expires_at=now + self.tokens.refresh_ttl_seconds,
        )
        if not await self.denylist.denylist(marker, DenylistReason.CHANGED_PASSWORD):
            raise DenylistWriteError(
                "password updated but issued tokens could not be invalidated"
            )

    @staticmethod
    def _generate_password() -> str:
        return base64.urlsafe_b64encode(os.urandom(12)).decode().rstrip("=")

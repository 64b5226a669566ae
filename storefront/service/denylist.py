from __future__ import annotations

import time
from enum import Enum
from typing import Callable, Optional, Protocol, Sequence, Tuple

from storefront.config import Settings
from storefront.logging import get_logger
from storefront.service.errors import TokenAlreadyDenylistedError
from storefront.service.tokens import TokenClaims

logger = get_logger(__name__)

KEY_PREFIX = "BlackListedToken"


class DenylistReason(str, Enum):
    SIGNED_OUT = "SIGNED_OUT"
    REVOKED = "REVOKED"
    CHANGED_PASSWORD = "CHANGED_PASSWORD"


class DenylistCache(Protocol):
    async def set_with_ttl(
        self, key: str, value: str, ttl_seconds: int, *, nx: bool = False
    ) -> bool: ...

    async def get(self, key: str) -> Optional[str]: ...

    async def mget(self, keys: Sequence[str]) -> list[Optional[str]]: ...

    async def scan(
        self, cursor: int = 0, *, match: Optional[str] = None, count: Optional[int] = None
    ) -> Tuple[int, list[str]]: ...


class TokenDenylist:
    """Revocation records in a TTL key-value store.

    Keys are ``BlackListedToken_{subject}_{token_id}_{issued_at}`` and hold the
    reason. Each entry expires a safety margin after the token it guards, so
    nothing is ever deleted explicitly.

    Password changes are recorded as a synthetic entry whose ``issued_at`` is
    the change time; any token issued before the newest such entry for its
    subject is invalid.
    """

    def __init__(
        self,
        cache: DenylistCache,
        settings: Settings,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.cache = cache
        self.margin_seconds = settings.denylist_ttl_margin_seconds
        self.scan_count = settings.denylist_scan_count
        self.password_change_reason_only = settings.denylist_password_change_reason_only
        self._clock = clock

    @staticmethod
    def key_for(subject_id: str, token_id: str = "*", issued_at: int | str = "*") -> str:
        return f"{KEY_PREFIX}_{subject_id}_{token_id}_{issued_at}"

    @staticmethod
    def parse_key(key: str) -> Optional[Tuple[str, str, int]]:
        """Split a denylist key into (subject, token_id, issued_at)."""
        prefix = f"{KEY_PREFIX}_"
        if not key.startswith(prefix):
            return None
        parts = key[len(prefix):].rsplit("_", 2)
        if len(parts) != 3:
            return None
        subject_id, token_id, issued_at = parts
        try:
            return subject_id, token_id, int(issued_at)
        except ValueError:
            return None

    async def denylist(
        self, claims: TokenClaims, reason: DenylistReason, *, exclusive: bool = False
    ) -> bool:
        """Record ``claims`` as denylisted; False when the store refused the write.

        An ``exclusive`` write is a single SET NX, so of two concurrent callers
        only one succeeds; the other gets ``TokenAlreadyDenylistedError``.
        """
        if claims.expires_at is None:
            logger.warning("denylist_missing_expiry", token_id=claims.token_id)
            return False
        ttl = int(claims.expires_at - self._clock()) + self.margin_seconds
        if ttl <= 0:
            # Past expiry plus margin the codec already rejects the token
            logger.info("denylist_token_long_expired", token_id=claims.token_id)
            return False
        key = self.key_for(claims.subject_id, claims.token_id, claims.issued_at)
        acknowledged = await self.cache.set_with_ttl(key, reason.value, ttl, nx=exclusive)
        if not acknowledged and exclusive and await self.cache.get(key) is not None:
            logger.warning(
                "token_already_denylisted",
                subject_id=claims.subject_id,
                token_id=claims.token_id,
                reason=reason.value,
            )
            raise TokenAlreadyDenylistedError()
        if acknowledged:
            logger.info(
                "token_denylisted",
                subject_id=claims.subject_id,
                token_id=claims.token_id,
                reason=reason.value,
                ttl_seconds=ttl,
            )
        else:
            logger.error(
                "denylist_write_failed",
                subject_id=claims.subject_id,
                token_id=claims.token_id,
                reason=reason.value,
            )
        return bool(acknowledged)

    async def is_denylisted(self, claims: TokenClaims) -> bool:
        if not claims.subject_id or not claims.token_id or claims.issued_at is None:
            return False
        key = self.key_for(claims.subject_id, claims.token_id, claims.issued_at)
        return await self.cache.get(key) is not None

    async def _scan_subject(self, subject_id: str) -> list[str]:
        pattern = self.key_for(subject_id)
        keys: list[str] = []
        cursor = 0
        while True:
            cursor, page = await self.cache.scan(cursor, match=pattern, count=self.scan_count)
            keys.extend(page)
            if cursor == 0:
                break
        return keys

    async def last_password_change(self, subject_id: str) -> Optional[int]:
        """Newest ``issued_at`` among the subject's password-change entries."""
        keys = []
        for key in await self._scan_subject(subject_id):
            parsed = self.parse_key(key)
            # The glob also matches subjects that merely share this prefix
            if parsed and parsed[0] == subject_id:
                keys.append((key, parsed[2]))
        if not keys:
            return None
        values = await self.cache.mget([key for key, _ in keys])
        latest: Optional[int] = None
        for (_, issued_at), value in zip(keys, values):
            if value is None:
                continue
            if (
                self.password_change_reason_only
                and value != DenylistReason.CHANGED_PASSWORD.value
            ):
                continue
            if latest is None or issued_at > latest:
                latest = issued_at
        return latest

    async def is_invalidated_by_password_change(self, claims: TokenClaims) -> bool:
        if not claims.subject_id or claims.issued_at is None:
            return False
        latest = await self.last_password_change(claims.subject_id)
        return latest is not None and latest > claims.issued_at

from __future__ import annotations

import contextlib
import fnmatch
import itertools
import threading
import time
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from storefront.logging import get_logger
from storefront.storage.errors import StoreUnavailable

logger = get_logger(__name__)


class RedisCache:
    """Thin Redis wrapper for the token denylist.

    Only the primitives the denylist needs are exposed: TTL writes, point
    reads and cursor scans. Connection and protocol errors surface as
    ``StoreUnavailable``.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before serving requests."""
        # A short-lived sync client keeps the async pool unbound from the startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @contextlib.asynccontextmanager
    async def _guard(self, operation: str):
        try:
            yield
        except RedisError as exc:
            logger.error(
                "redis_operation_failed",
                operation=operation,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise StoreUnavailable("token store unavailable", backend="redis") from exc

    async def set_with_ttl(
        self, key: str, value: str, ttl_seconds: int, *, nx: bool = False
    ) -> bool:
        """Write ``key`` with a TTL.

        With ``nx`` an existing key is left untouched and False is returned.
        """
        async with self._guard("set"):
            # SET NX answers None when the key already exists
            result = await self.client.set(key, value, ex=int(ttl_seconds), nx=nx)
        return bool(result)

    async def get(self, key: str) -> Optional[str]:
        async with self._guard("get"):
            return await self.client.get(key)

    async def mget(self, keys: Sequence[str]) -> List[Optional[str]]:
        if not keys:
            return []
        async with self._guard("mget"):
            return await self.client.mget(list(keys))

    async def scan(
        self, cursor: int = 0, *, match: Optional[str] = None, count: Optional[int] = None
    ) -> Tuple[int, List[str]]:
        async with self._guard("scan"):
            next_cursor, keys = await self.client.scan(cursor=cursor, match=match, count=count)
        return int(next_cursor), list(keys)

    async def close(self) -> None:
        """Close the connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()


class MemoryCache:
    """Process-local stand-in for ``RedisCache``.

    Used under TEST_MODE or ALLOW_REDIS_FALLBACK_DEV. Expiry is evaluated
    against an injectable clock so TTL behavior can be tested without sleeping.
    ``scan`` pages through keys in insertion order using the insertion sequence
    as cursor, so keys that exist for the whole scan are always returned.
    """

    DEFAULT_SCAN_COUNT = 10

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        # key -> (value, expires_at, insertion sequence)
        self._entries: Dict[str, Tuple[str, float, int]] = {}
        self._seq = itertools.count(1)
        self._lock = threading.Lock()

    def verify_connection(self) -> None:
        return None

    def _live(self, key: str, now: float) -> Optional[str]:
        entry = self._entries.get(key)
        if entry is None or entry[1] <= now:
            return None
        return entry[0]

    def _purge_expired(self, now: float) -> None:
        for key in [k for k, entry in self._entries.items() if entry[1] <= now]:
            del self._entries[key]

    async def set_with_ttl(
        self, key: str, value: str, ttl_seconds: int, *, nx: bool = False
    ) -> bool:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        with self._lock:
            now = self._clock()
            self._purge_expired(now)
            existing = self._entries.get(key)
            if nx and existing is not None:
                return False
            seq = existing[2] if existing else next(self._seq)
            self._entries[key] = (value, now + ttl_seconds, seq)
        return True

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._live(key, self._clock())

    async def mget(self, keys: Sequence[str]) -> List[Optional[str]]:
        with self._lock:
            now = self._clock()
            return [self._live(key, now) for key in keys]

    async def scan(
        self, cursor: int = 0, *, match: Optional[str] = None, count: Optional[int] = None
    ) -> Tuple[int, List[str]]:
        page_size = count or self.DEFAULT_SCAN_COUNT
        with self._lock:
            now = self._clock()
            remaining = sorted(
                (entry[2], key)
                for key, entry in self._entries.items()
                if entry[2] >= cursor
            )
            page = remaining[:page_size]
            next_cursor = remaining[page_size][0] if len(remaining) > page_size else 0
            keys = [
                key
                for _, key in page
                if self._live(key, now) is not None
                and (match is None or fnmatch.fnmatchcase(key, match))
            ]
        return next_cursor, keys

    async def close(self) -> None:
        with self._lock:
            self._entries.clear()

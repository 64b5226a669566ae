from __future__ import annotations

import asyncio
import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from storefront.config import get_settings, reset_settings_cache
from storefront.logging import get_logger
from storefront.service.auth import AuthService
from storefront.service.carts import CartService
from storefront.service.denylist import TokenDenylist
from storefront.service.email import EmailService, MailDispatcher
from storefront.service.token_manager import TokenManager
from storefront.service.tokens import TokenCodec
from storefront.service.users import UserService
from storefront.storage.memory import MemoryStore
from storefront.storage.postgres import PostgresStore
from storefront.storage.redis_cache import MemoryCache, RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with ``***`` for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        port = parsed.port
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if port:
        netloc = f"{netloc}:{port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore(
                    fs_root=None if self.settings.test_mode else self.settings.shared_fs_root
                )
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Union[RedisCache, MemoryCache]
        redis_error: Exception | None = None
        cache: RedisCache | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
            except Exception as exc:
                redis_error = exc
                cache = None

        if cache is not None:
            self.cache = cache
        else:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for the token denylist; start Redis or set "
                    "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for a local fallback."
                ) from redis_error
            fallback_mode = (
                "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            )
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; revocations are "
                    "process-local and lost on restart."
                ),
                mode=fallback_mode,
            )
            self.cache = MemoryCache()

        self.codec = TokenCodec(self.settings)
        self.denylist = TokenDenylist(self.cache, self.settings)
        self.tokens = TokenManager(self.settings, self.codec, self.denylist)
        self.carts = CartService(self.store)
        self.users = UserService(self.store, self.carts)
        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            base_url=self.settings.app_base_url,
        )
        self.mail = MailDispatcher(self.email, inline=self.settings.test_mode)
        self.auth = AuthService(self.settings, self.users, self.tokens, self.mail)

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=isinstance(self.cache, RedisCache),
            email_configured=self.email.is_configured,
        )

    async def close(self) -> None:
        await self.mail.drain()
        await self.cache.close()
        pool = getattr(self.store, "pool", None)
        if pool is not None:
            pool.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking: the fast path skips the lock once the
    runtime exists.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and isinstance(runtime.cache, RedisCache):
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                asyncio.run(runtime.cache.close())
            else:
                loop.create_task(runtime.cache.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime

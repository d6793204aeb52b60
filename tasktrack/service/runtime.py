from __future__ import annotations

import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from tasktrack.config import Settings, get_settings, reset_settings_cache
from tasktrack.logging import get_logger
from tasktrack.service.auth import AuthService
from tasktrack.service.cache import CacheAside
from tasktrack.service.todos import TodoService
from tasktrack.service.tokens import TokenService
from tasktrack.storage.memory import MemoryStore
from tasktrack.storage.memory_cache import MemoryCache
from tasktrack.storage.postgres import PostgresStore
from tasktrack.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password of a connection URL for logging.

    ``redis://:hunter2@localhost:6379`` becomes ``redis://:***@localhost:6379``.
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if not parsed.password:
            return url
        netloc = parsed.hostname or ""
        if parsed.port:
            netloc = f"{netloc}:{parsed.port}"
        netloc = f"{parsed.username or ''}:***@{netloc}"
        return urlunparse(parsed._replace(netloc=netloc))
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore(
                    fs_root=self.settings.shared_fs_root,
                    secret_key=self.settings.jwt_secret,
                )
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url,
                    min_size=self.settings.db_pool_min_size,
                    max_size=self.settings.db_pool_max_size,
                    timeout_seconds=self.settings.database_timeout_seconds,
                )
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)

        self.cache_backend: Union[RedisCache, MemoryCache] = self._build_cache_backend()
        self.cache = CacheAside(
            self.cache_backend,
            timeout_seconds=self.settings.cache_operation_timeout_seconds,
        )
        self.tokens = TokenService(self.cache_backend, self.settings)
        self.auth = AuthService(self.store, self.cache, self.tokens, self.settings)
        self.todos = TodoService(self.store, self.cache, self.settings)
        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=isinstance(self.cache_backend, RedisCache),
        )

    def _build_cache_backend(self) -> Union[RedisCache, MemoryCache]:
        redis_error: Exception | None = None
        if self.settings.redis_url:
            cache = RedisCache(
                self.settings.redis_url,
                socket_timeout=self.settings.cache_operation_timeout_seconds,
                operation_timeout=self.settings.cache_operation_timeout_seconds,
            )
            try:
                cache.verify_connection()
                return cache
            except Exception as exc:
                redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for refresh tokens and caching; start Redis or set "
                "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for the in-memory fallback."
            ) from redis_error

        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message=(
                f"Running without Redis under {fallback_mode}; refresh tokens and "
                "cached lookups live in this process only."
            ),
            mode=fallback_mode,
        )
        return MemoryCache()

    async def close(self) -> None:
        await self.cache_backend.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()
        logger.info("runtime_closed")


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the runtime singleton from a freshly read environment."""
    global runtime
    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime

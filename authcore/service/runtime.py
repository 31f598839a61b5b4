from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from authcore.config import Settings, get_settings, reset_settings_cache
from authcore.logging import get_logger
from authcore.service.auth import TokenLifecycleManager
from authcore.service.cleanup_worker import CleanupScheduler
from authcore.service.clock import Clock, SystemClock
from authcore.service.identity import AccountService
from authcore.service.tokens import TokenCodec, TokenSettings
from authcore.storage.memory import MemoryStore
from authcore.storage.postgres import PostgresStore
from authcore.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a connection URL with ``***``."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if not parsed.password:
            return url
        netloc = parsed.hostname or ""
        if parsed.port:
            netloc = f"{netloc}:{parsed.port}"
        if parsed.username:
            netloc = f"{parsed.username}:***@{netloc}"
        else:
            netloc = f":***@{netloc}"
        return urlunparse(
            (
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            )
        )
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Wires the store, cache, codec and lifecycle services together once."""

    def __init__(
        self, settings: Optional[Settings] = None, *, clock: Optional[Clock] = None
    ):
        self.settings = settings or get_settings()
        self.clock = clock or SystemClock()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store = (
                MemoryStore(fs_root=self.settings.state_dir)
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

        try:
            self.cache = self._init_cache()
        except Exception:
            self._close_store()
            raise

        self.token_settings = TokenSettings.from_settings(self.settings)
        self.codec = TokenCodec(self.token_settings, clock=self.clock)
        self.accounts = AccountService(
            self.store,
            self.cache,
            clock=self.clock,
            profile_ttl_seconds=self.settings.user_cache_ttl_minutes * 60,
        )
        self.tokens = TokenLifecycleManager(
            self.store, self.accounts, self.codec, clock=self.clock
        )
        self.cleanup = CleanupScheduler(
            self.tokens,
            interval_seconds=self.settings.cleanup_interval_hours * 60 * 60,
            retry_delay_seconds=self.settings.cleanup_retry_minutes * 60,
            clock=self.clock,
        )

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=self.cache is not None,
            access_token_ttl_minutes=self.settings.access_token_ttl_minutes,
            refresh_token_ttl_days=self.settings.refresh_token_ttl_days,
            cleanup_enabled=self.settings.cleanup_enabled,
        )

    def _init_cache(self) -> RedisCache | SyncRedisCache | None:
        cache: RedisCache | SyncRedisCache | None = None
        redis_error: Exception | None = None
        default_ttl = self.settings.cache_default_ttl_minutes * 60
        if self.settings.redis_url:
            try:
                # Sync client in test mode avoids binding to a pytest event loop
                if self.settings.test_mode:
                    candidate = SyncRedisCache(
                        self.settings.redis_url, default_ttl_seconds=default_ttl
                    )
                else:
                    candidate = RedisCache(
                        self.settings.redis_url, default_ttl_seconds=default_ttl
                    )
                candidate.verify_connection()
                cache = candidate
            except Exception as exc:
                redis_error = exc

        if cache is None:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for the profile cache; start Redis or set "
                    "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true to run without it."
                ) from redis_error
            fallback_mode = (
                "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            )
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                mode=fallback_mode,
            )
        return cache

    async def start_background(self) -> None:
        if self.settings.cleanup_enabled:
            await self.cleanup.start()

    async def close(self) -> None:
        await self.cleanup.stop()
        if self.cache is not None:
            await self.cache.close()
        self._close_store()

    def _close_store(self) -> None:
        if isinstance(self.store, PostgresStore):
            self.store.close()
            logger.info("runtime_store_closed")


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton.

    Double-checked: the lock is only taken while no runtime exists yet.
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
        if runtime is not None and runtime.cache is not None:
            try:
                if isinstance(runtime.cache, SyncRedisCache):
                    runtime.cache.client.close()
                else:
                    try:
                        loop = asyncio.get_running_loop()
                        loop.create_task(runtime.cache.close())
                    except RuntimeError:
                        asyncio.run(runtime.cache.close())
            except Exception as exc:
                logger.debug("runtime_cache_close_failed", error=str(exc))

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime

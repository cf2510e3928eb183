from __future__ import annotations

import asyncio
import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from tokenguard.config import Settings, get_settings, reset_settings_cache
from tokenguard.logging import get_logger
from tokenguard.service.gate import AuthenticationGate
from tokenguard.service.lockout import LockoutGuard
from tokenguard.service.revocation import RevocationStore
from tokenguard.service.sessions import SessionRegistry
from tokenguard.service.sweeper import CleanupSweeper
from tokenguard.service.tiers import ProvisioningWarnings
from tokenguard.storage.local_cache import ExpiringSet, LocalCache
from tokenguard.storage.memory import MemoryStore
from tokenguard.storage.postgres import PostgresStore
from tokenguard.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse((
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            ))
        return url
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds the process-wide token services and their storage tiers."""

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
                MemoryStore(self.settings.memory_store_path)
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url,
                    min_size=self.settings.db_pool_min_size,
                    max_size=self.settings.db_pool_max_size,
                    timeout_seconds=self.settings.durable_timeout_seconds,
                )
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

        self.local_cache: Optional[LocalCache] = None
        self.cache = self._build_cache()

        self.provisioning = ProvisioningWarnings()
        self.fast_set = ExpiringSet()
        timeout = self.settings.durable_timeout_seconds
        self.revocation = RevocationStore(
            self.store,
            self.cache,
            fast_set=self.fast_set,
            default_ttl_ms=self.settings.revocation_ttl_ms,
            durable_timeout=timeout,
            provisioning=self.provisioning,
        )
        self.lockout = LockoutGuard(
            self.store,
            self.cache,
            threshold=self.settings.lockout_threshold,
            lockout_duration_ms=self.settings.lockout_duration_ms,
            durable_timeout=timeout,
            provisioning=self.provisioning,
        )
        self.sessions = SessionRegistry(
            self.store,
            session_lifetime_ms=self.settings.session_lifetime_ms,
            durable_timeout=timeout,
            provisioning=self.provisioning,
        )
        self.sweeper = CleanupSweeper(
            self.revocation,
            lockout=self.lockout,
            local_cache=self.local_cache,
            interval_seconds=self.settings.sweeper_interval_seconds,
            high_water=self.settings.sweeper_high_water,
            target_size=self.settings.sweeper_target_size,
        )
        self.gate = AuthenticationGate(self.revocation, self.lockout, self.sessions)

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=self.local_cache is None,
            lockout_threshold=self.settings.lockout_threshold,
            lockout_duration_ms=self.settings.lockout_duration_ms,
        )

    def _build_cache(self):
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client in test mode avoids binding to a per-test event loop
                if self.settings.test_mode:
                    cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                return cache
            except Exception as exc:
                redis_error = exc

        if (
            self.settings.redis_url
            and not self.settings.test_mode
            and not self.settings.allow_redis_fallback_dev
        ):
            raise RuntimeError(
                "Redis is unreachable; start Redis, unset REDIS_URL, or set "
                "ALLOW_REDIS_FALLBACK_DEV=true for a process-local cache."
            ) from redis_error

        if redis_error is not None:
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error),
                message="Revocations and attempt counters are cached per process only.",
            )
        self.local_cache = LocalCache(self.settings.local_cache_max_entries)
        return self.local_cache

    async def start(self) -> None:
        await self.sweeper.start()

    async def close(self) -> None:
        await self.sweeper.stop()
        await self.cache.close()
        await asyncio.to_thread(self.store.close)
        logger.info("runtime_closed")


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking:
    - First check without lock (fast path for existing runtime)
    - Second check with lock to prevent race condition during creation
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
        if runtime is not None and isinstance(runtime.cache, SyncRedisCache):
            runtime.cache.client.close()

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime

"""Per-identity failed-login counting and temporary lockout.

The cache counter is authoritative for the attempt count; the durable row
mirrors it for cross-process visibility and is the only place carrying the
real ``locked_until``. Concurrent failures may push the count past the
threshold before every caller sees the lock; the lock is never moved earlier.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional, Tuple

from tokenguard.logging import get_logger
from tokenguard.service.hashing import is_well_formed
from tokenguard.service.tiers import (
    DEFAULT_DURABLE_TIMEOUT,
    CacheBackend,
    DurableStore,
    ProvisioningWarnings,
    cache_call,
    call_durable,
    log_storage_failure,
)
from tokenguard.storage.common import remaining_ms, utcnow
from tokenguard.storage.errors import StorageError
from tokenguard.storage.local_cache import ExpiringSet, LocalCache
from tokenguard.storage.models import LockoutRecord

logger = get_logger(__name__)

DEFAULT_THRESHOLD = 5
DEFAULT_LOCKOUT_DURATION_MS = 30 * 60 * 1000
ATTEMPTS_KEY_PREFIX = "failed_attempts:"


@dataclass
class AttemptResult:
    locked: bool
    attempts_remaining: int
    locked_until: Optional[datetime] = None
    failed_attempts: int = 0
    error: Optional[str] = None


@dataclass
class LockoutStatus:
    locked: bool
    lockout_until: Optional[datetime] = None


def normalize_identity(identity) -> Optional[str]:
    if not is_well_formed(identity):
        return None
    return identity.strip().lower()


class LockoutGuard:
    def __init__(
        self,
        store: DurableStore,
        cache: Optional[CacheBackend] = None,
        *,
        threshold: int = DEFAULT_THRESHOLD,
        lockout_duration_ms: int = DEFAULT_LOCKOUT_DURATION_MS,
        durable_timeout: float = DEFAULT_DURABLE_TIMEOUT,
        clock: Optional[Callable[[], datetime]] = None,
        provisioning: Optional[ProvisioningWarnings] = None,
    ) -> None:
        if threshold < 1:
            raise ValueError("threshold must be at least 1")
        if lockout_duration_ms <= 0:
            raise ValueError("lockout_duration_ms must be positive")
        self.store = store
        self.cache = cache if cache is not None else LocalCache()
        self.threshold = threshold
        self.lockout_duration_ms = lockout_duration_ms
        self.durable_timeout = durable_timeout
        self._now = clock or utcnow
        self.provisioning = provisioning or ProvisioningWarnings()
        # Locks this process has seen; trusted only while the durable store is
        # unreachable or the cache counter still agrees
        self.local_locks = ExpiringSet(clock=self._now)

    @property
    def lockout_duration(self) -> timedelta:
        return timedelta(milliseconds=self.lockout_duration_ms)

    async def _load(self, identity: str, op: str) -> Tuple[Optional[LockoutRecord], bool]:
        """Fetch the durable row; the flag is False when the store could not answer."""
        try:
            record = await call_durable(
                self.store.get_lockout, identity, timeout=self.durable_timeout
            )
            return record, True
        except StorageError as exc:
            log_storage_failure(exc, op, self.provisioning, identity=identity)
            return None, False
        except Exception as exc:
            logger.error(
                "lockout_load_failed",
                op=op,
                error=str(exc),
                error_type=type(exc).__name__,
                identity=identity,
            )
            return None, False

    async def _local_lock(self, identity: str, reachable: bool) -> Optional[datetime]:
        """Return the memoized lock expiry for ``identity``, if still valid.

        While the durable store answers without an active lock, the memo only
        stands if the cache counter still holds the identity at the threshold;
        otherwise the lock was cleared by another process and the memo is dropped.
        """
        local_until = self.local_locks.expiry(identity)
        if local_until is None or not reachable:
            return local_until
        if await self._cached_count(identity) >= self.threshold:
            return local_until
        self.local_locks.discard(identity)
        return None

    async def _cached_count(self, identity: str) -> int:
        raw = await cache_call("get", lambda: self.cache.get(ATTEMPTS_KEY_PREFIX + identity))
        try:
            return int(raw) if raw is not None else 0
        except (TypeError, ValueError):
            return 0

    async def record_failed_attempt(
        self, identity: str, source: str = "unknown"
    ) -> AttemptResult:
        """Count one failed login for ``identity`` and lock it at the threshold.

        An identity that is already locked is returned as-is: the counter is
        not incremented and ``locked_until`` is not extended.
        """
        key = normalize_identity(identity)
        if key is None:
            return AttemptResult(
                locked=False,
                attempts_remaining=self.threshold,
                error="invalid_identity",
            )
        source = source if is_well_formed(source) else "unknown"
        now = self._now()

        existing, reachable = await self._load(key, "record_failed_attempt")
        if existing is not None and existing.is_locked(now):
            self.local_locks.add(key, existing.locked_until)
            return AttemptResult(
                locked=True,
                attempts_remaining=0,
                locked_until=existing.locked_until,
                failed_attempts=existing.failed_attempts,
            )

        local_until = await self._local_lock(key, reachable)
        if local_until is not None:
            return AttemptResult(
                locked=True,
                attempts_remaining=0,
                locked_until=local_until,
                failed_attempts=self.threshold,
            )

        count = await self._increment(key, existing, now)
        locked = count >= self.threshold
        locked_until = now + self.lockout_duration if locked else None

        record = LockoutRecord(
            identity=key,
            failed_attempts=count,
            locked_until=locked_until,
            last_attempt_source=source,
            last_attempt_at=now,
        )
        try:
            stored = await call_durable(
                self.store.save_lockout, record, timeout=self.durable_timeout
            )
            if stored is not None and stored.is_locked(now):
                locked = True
                locked_until = stored.locked_until
        except StorageError as exc:
            log_storage_failure(exc, "record_failed_attempt", self.provisioning, identity=key)
        except Exception as exc:
            logger.error(
                "lockout_persist_failed",
                error=str(exc),
                error_type=type(exc).__name__,
                identity=key,
            )

        if locked:
            self.local_locks.add(key, locked_until)
            logger.warning(
                "account_locked",
                identity=key,
                failed_attempts=count,
                locked_until=locked_until.isoformat(),
                source=source,
            )
        else:
            logger.info("failed_login_recorded", identity=key, failed_attempts=count)
        return AttemptResult(
            locked=locked,
            attempts_remaining=max(0, self.threshold - count),
            locked_until=locked_until,
            failed_attempts=count,
        )

    async def _increment(
        self, identity: str, existing: Optional[LockoutRecord], now: datetime
    ) -> int:
        cache_key = ATTEMPTS_KEY_PREFIX + identity
        window_end = None
        carried = 0
        if existing is not None and existing.failed_attempts > 0:
            window_end = existing.last_attempt_at + self.lockout_duration
            lock_expired = existing.locked_until is not None and existing.locked_until <= now
            if window_end > now and not lock_expired:
                carried = existing.failed_attempts

        count = await cache_call(
            "incr", lambda: self.cache.incr(cache_key, self.lockout_duration_ms)
        )
        if count is None:
            return carried + 1
        count = int(count)
        if count == 1 and carried:
            # Cache was empty (restart or eviction): resume from the durable count
            count = carried + 1
            await cache_call(
                "set",
                lambda: self.cache.set(
                    cache_key, str(count), max(1, remaining_ms(window_end, now))
                ),
            )
        return count

    async def is_account_locked(self, identity: str) -> LockoutStatus:
        key = normalize_identity(identity)
        if key is None:
            return LockoutStatus(locked=False)
        now = self._now()
        count = await self._cached_count(key)
        record, reachable = await self._load(key, "is_account_locked")

        if reachable:
            if record is not None and record.is_locked(now):
                self.local_locks.add(key, record.locked_until)
                return LockoutStatus(locked=True, lockout_until=record.locked_until)
            if count >= self.threshold:
                return LockoutStatus(locked=True, lockout_until=self._estimate(key, now))
            self.local_locks.discard(key)
            return LockoutStatus(locked=False)

        local_until = self.local_locks.expiry(key)
        if local_until is not None:
            return LockoutStatus(locked=True, lockout_until=local_until)
        if count >= self.threshold:
            return LockoutStatus(locked=True, lockout_until=now + self.lockout_duration)
        return LockoutStatus(locked=False)

    def _estimate(self, identity: str, now: datetime) -> datetime:
        return self.local_locks.expiry(identity) or now + self.lockout_duration

    async def clear_failed_attempts(self, identity: str) -> bool:
        """Forget all failed attempts and any lock for ``identity``.

        Returns False when the identity is malformed or the durable row could
        not be deleted; the cache and local state are cleared regardless.
        """
        key = normalize_identity(identity)
        if key is None:
            return False
        self.local_locks.discard(key)
        await cache_call("delete", lambda: self.cache.delete(ATTEMPTS_KEY_PREFIX + key))
        try:
            await call_durable(self.store.delete_lockout, key, timeout=self.durable_timeout)
        except StorageError as exc:
            log_storage_failure(exc, "clear_failed_attempts", self.provisioning, identity=key)
            return False
        except Exception as exc:
            logger.error(
                "lockout_clear_failed",
                error=str(exc),
                error_type=type(exc).__name__,
                identity=key,
            )
            return False
        logger.info("failed_attempts_cleared", identity=key)
        return True

"""Revocation of individual credentials and of whole identities.

Lookups walk three tiers: the in-process fast set, the cache, then the
durable store. A hit backfills the faster tiers. Failure handling:

* credential checks fail open on transient, unprovisioned and malformed
  storage failures, and fail closed (revoked) on anything unexpected;
* identity checks fail open on every failure.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from tokenguard.logging import credential_fingerprint, get_logger
from tokenguard.service.hashing import hash_credential, is_well_formed
from tokenguard.service.tiers import (
    DEFAULT_DURABLE_TIMEOUT,
    CacheBackend,
    DurableStore,
    ProvisioningWarnings,
    cache_call,
    call_durable,
    log_storage_failure,
)
from tokenguard.storage.common import parse_timestamp, remaining_ms, serialize_timestamp, utcnow
from tokenguard.storage.errors import StorageError, StorageErrorKind
from tokenguard.storage.local_cache import ExpiringSet, LocalCache
from tokenguard.storage.models import RevokedCredential, RevokedIdentity

logger = get_logger(__name__)

DEFAULT_REVOCATION_TTL_MS = 30 * 24 * 60 * 60 * 1000
CREDENTIAL_KEY_PREFIX = "revoked_credential:"
IDENTITY_KEY_PREFIX = "revoked_identity:"


@dataclass
class RevocationResult:
    success: bool
    error: Optional[str] = None
    persisted: bool = False


class RevocationStore:
    """Records revoked credentials and identities and answers revocation checks."""

    def __init__(
        self,
        store: DurableStore,
        cache: Optional[CacheBackend] = None,
        *,
        fast_set: Optional[ExpiringSet] = None,
        default_ttl_ms: int = DEFAULT_REVOCATION_TTL_MS,
        durable_timeout: float = DEFAULT_DURABLE_TIMEOUT,
        clock: Optional[Callable[[], datetime]] = None,
        provisioning: Optional[ProvisioningWarnings] = None,
    ) -> None:
        if default_ttl_ms <= 0:
            raise ValueError("default_ttl_ms must be positive")
        self.store = store
        self._now = clock or utcnow
        self.cache = cache if cache is not None else LocalCache()
        self.fast_set = fast_set if fast_set is not None else ExpiringSet(clock=self._now)
        self.default_ttl_ms = default_ttl_ms
        self.durable_timeout = durable_timeout
        self.provisioning = provisioning or ProvisioningWarnings()

    def _resolve_ttl(self, ttl_ms: Optional[int]) -> Optional[int]:
        if ttl_ms is None:
            return self.default_ttl_ms
        if isinstance(ttl_ms, bool) or not isinstance(ttl_ms, int) or ttl_ms <= 0:
            return None
        return ttl_ms

    async def revoke_credential(
        self,
        credential: str,
        ttl_ms: Optional[int] = None,
        owner_identity: Optional[str] = None,
        reason: str = "logout",
    ) -> RevocationResult:
        """Revoke a single credential until ``now + ttl_ms``.

        The fast set and cache are updated before the durable write, so a
        failed write still protects this process. Storage failures are logged
        and reported through ``persisted``; they are never raised.
        """
        if not is_well_formed(credential):
            return RevocationResult(success=False, error="invalid_credential")
        ttl = self._resolve_ttl(ttl_ms)
        if ttl is None:
            return RevocationResult(success=False, error="invalid_ttl")
        if owner_identity is not None and not is_well_formed(owner_identity):
            owner_identity = None

        now = self._now()
        expires_at = now + timedelta(milliseconds=ttl)
        digest = hash_credential(credential)
        self.fast_set.add(credential, expires_at)
        await cache_call(
            "set",
            lambda: self.cache.set(
                CREDENTIAL_KEY_PREFIX + digest, serialize_timestamp(expires_at), ttl
            ),
        )

        record = RevokedCredential(
            credential_hash=digest,
            owner_identity=owner_identity,
            expires_at=expires_at,
            reason=reason or "logout",
            revoked_at=now,
        )
        try:
            await call_durable(
                self.store.save_revoked_credential, record, timeout=self.durable_timeout
            )
        except StorageError as exc:
            log_storage_failure(
                exc,
                "revoke_credential",
                self.provisioning,
                credential_fingerprint=credential_fingerprint(digest),
            )
            return RevocationResult(success=True, error=exc.kind.value, persisted=False)
        except Exception as exc:
            logger.error(
                "revoke_credential_failed",
                error=str(exc),
                error_type=type(exc).__name__,
                credential_fingerprint=credential_fingerprint(digest),
            )
            return RevocationResult(
                success=True, error=StorageErrorKind.UNEXPECTED.value, persisted=False
            )

        logger.info(
            "credential_revoked",
            credential_fingerprint=credential_fingerprint(digest),
            reason=record.reason,
            ttl_ms=ttl,
        )
        return RevocationResult(success=True, persisted=True)

    async def is_credential_revoked(self, credential: str) -> bool:
        if not is_well_formed(credential):
            return False
        try:
            return await self._lookup_credential(credential)
        except Exception as exc:
            # Unknown failure on a security predicate: deny
            logger.error(
                "credential_revocation_check_failed",
                error=str(exc),
                error_type=type(exc).__name__,
                fail_closed=True,
            )
            return True

    async def _lookup_credential(self, credential: str) -> bool:
        if self.fast_set.contains(credential):
            return True

        now = self._now()
        digest = hash_credential(credential)
        key = CREDENTIAL_KEY_PREFIX + digest
        cached = await cache_call("get", lambda: self.cache.get(key))
        if cached:
            expires_at = _parse_cached_expiry(cached)
            if expires_at is None or expires_at > now:
                if expires_at is not None:
                    self.fast_set.add(credential, expires_at)
                return True

        try:
            record = await call_durable(
                self.store.find_revoked_credential,
                digest,
                now,
                timeout=self.durable_timeout,
            )
        except StorageError as exc:
            if exc.kind is StorageErrorKind.UNEXPECTED:
                raise
            log_storage_failure(
                exc,
                "is_credential_revoked",
                self.provisioning,
                credential_fingerprint=credential_fingerprint(digest),
            )
            return False

        if record is None or not record.is_active(now):
            return False
        self.fast_set.add(credential, record.expires_at)
        await cache_call(
            "set",
            lambda: self.cache.set(
                key,
                serialize_timestamp(record.expires_at),
                remaining_ms(record.expires_at, now),
            ),
        )
        return True

    async def revoke_identity(
        self,
        identity: str,
        ttl_ms: Optional[int] = None,
        reason: str = "deactivation",
    ) -> RevocationResult:
        """Revoke every credential of ``identity`` until ``now + ttl_ms``.

        The durable row is upserted, so a repeated revocation replaces the
        previous expiry.
        """
        if not is_well_formed(identity):
            return RevocationResult(success=False, error="invalid_identity")
        ttl = self._resolve_ttl(ttl_ms)
        if ttl is None:
            return RevocationResult(success=False, error="invalid_ttl")

        now = self._now()
        expires_at = now + timedelta(milliseconds=ttl)
        await cache_call(
            "set",
            lambda: self.cache.set(
                IDENTITY_KEY_PREFIX + identity, serialize_timestamp(expires_at), ttl
            ),
        )
        record = RevokedIdentity(
            identity=identity,
            expires_at=expires_at,
            reason=reason or "deactivation",
            revoked_at=now,
        )
        try:
            await call_durable(
                self.store.save_revoked_identity, record, timeout=self.durable_timeout
            )
        except StorageError as exc:
            log_storage_failure(exc, "revoke_identity", self.provisioning, identity=identity)
            return RevocationResult(success=True, error=exc.kind.value, persisted=False)
        except Exception as exc:
            logger.error(
                "revoke_identity_failed",
                error=str(exc),
                error_type=type(exc).__name__,
                identity=identity,
            )
            return RevocationResult(
                success=True, error=StorageErrorKind.UNEXPECTED.value, persisted=False
            )

        logger.info("identity_revoked", identity=identity, reason=record.reason, ttl_ms=ttl)
        return RevocationResult(success=True, persisted=True)

    async def is_identity_revoked(self, identity: str) -> bool:
        if not is_well_formed(identity):
            return False
        try:
            return await self._lookup_identity(identity)
        except Exception as exc:
            logger.error(
                "identity_revocation_check_failed",
                error=str(exc),
                error_type=type(exc).__name__,
                identity=identity,
                fail_closed=False,
            )
            return False

    async def _lookup_identity(self, identity: str) -> bool:
        now = self._now()
        key = IDENTITY_KEY_PREFIX + identity
        cached = await cache_call("get", lambda: self.cache.get(key))
        if cached:
            expires_at = _parse_cached_expiry(cached)
            if expires_at is None or expires_at > now:
                return True

        try:
            record = await call_durable(
                self.store.find_revoked_identity,
                identity,
                now,
                timeout=self.durable_timeout,
            )
        except StorageError as exc:
            log_storage_failure(
                exc, "is_identity_revoked", self.provisioning, identity=identity
            )
            return False

        if record is None or not record.is_active(now):
            return False
        await cache_call(
            "set",
            lambda: self.cache.set(
                key,
                serialize_timestamp(record.expires_at),
                remaining_ms(record.expires_at, now),
            ),
        )
        return True

    def forget_local(self) -> None:
        """Drop the in-process fast set; the cache and durable tiers still answer."""
        self.fast_set.clear()


def _parse_cached_expiry(raw: str) -> Optional[datetime]:
    try:
        return parse_timestamp(raw)
    except (TypeError, ValueError):
        return None

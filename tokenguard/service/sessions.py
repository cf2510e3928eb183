from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional

from tokenguard.logging import credential_fingerprint, get_logger
from tokenguard.service.hashing import hash_credential, is_well_formed
from tokenguard.service.tiers import (
    DEFAULT_DURABLE_TIMEOUT,
    DurableStore,
    ProvisioningWarnings,
    call_durable,
    log_storage_failure,
)
from tokenguard.storage.common import utcnow
from tokenguard.storage.errors import StorageError, StorageErrorKind
from tokenguard.storage.models import Session

logger = get_logger(__name__)

DEFAULT_SESSION_LIFETIME_MS = 30 * 24 * 60 * 60 * 1000

_SESSION_ERRORS = {
    StorageErrorKind.NOT_PROVISIONED: "not_provisioned",
    StorageErrorKind.TRANSIENT: "storage_unavailable",
    StorageErrorKind.MALFORMED: "storage_error",
    StorageErrorKind.UNEXPECTED: "storage_error",
}


@dataclass
class SessionResult:
    success: bool
    session_id: Optional[str] = None
    error: Optional[str] = None


class SessionRegistry:
    """Tracks one session per successful login for listing and revocation.

    Session tracking is advisory: failures are logged and reported through
    return values, never raised to the login path.
    """

    def __init__(
        self,
        store: DurableStore,
        *,
        session_lifetime_ms: int = DEFAULT_SESSION_LIFETIME_MS,
        durable_timeout: float = DEFAULT_DURABLE_TIMEOUT,
        clock: Optional[Callable[[], datetime]] = None,
        provisioning: Optional[ProvisioningWarnings] = None,
    ) -> None:
        if session_lifetime_ms <= 0:
            raise ValueError("session_lifetime_ms must be positive")
        self.store = store
        self.session_lifetime_ms = session_lifetime_ms
        self.durable_timeout = durable_timeout
        self._now = clock or utcnow
        self.provisioning = provisioning or ProvisioningWarnings()

    async def create_session(
        self,
        identity: str,
        credential: str,
        source_address: str = "unknown",
        client_descriptor: str = "unknown",
    ) -> SessionResult:
        if not is_well_formed(identity) or not is_well_formed(credential):
            return SessionResult(success=False, error="invalid_input")
        session = Session.new(
            identity,
            hash_credential(credential),
            now=self._now(),
            lifetime_ms=self.session_lifetime_ms,
            source_address=source_address if is_well_formed(source_address) else "unknown",
            client_descriptor=(
                client_descriptor if is_well_formed(client_descriptor) else "unknown"
            ),
        )
        try:
            await call_durable(
                self.store.create_session, session, timeout=self.durable_timeout
            )
        except StorageError as exc:
            log_storage_failure(exc, "create_session", self.provisioning, identity=identity)
            return SessionResult(success=False, error=_SESSION_ERRORS[exc.kind])
        except Exception as exc:
            logger.error(
                "session_create_failed",
                error=str(exc),
                error_type=type(exc).__name__,
                identity=identity,
            )
            return SessionResult(success=False, error="storage_error")
        logger.info(
            "session_created",
            session_id=session.id,
            identity=identity,
            credential_fingerprint=credential_fingerprint(session.credential_hash),
        )
        return SessionResult(success=True, session_id=session.id)

    async def list_sessions(self, identity: str) -> List[Session]:
        """Live sessions for ``identity``, most recently active first."""
        if not is_well_formed(identity):
            return []
        try:
            sessions = await call_durable(
                self.store.list_sessions,
                identity,
                self._now(),
                timeout=self.durable_timeout,
            )
        except StorageError as exc:
            log_storage_failure(exc, "list_sessions", self.provisioning, identity=identity)
            return []
        except Exception as exc:
            _log_unexpected("list_sessions", exc, identity)
            return []
        return sorted(sessions, key=lambda s: s.last_activity_at, reverse=True)

    async def revoke_session(self, session_id: str, identity: str) -> bool:
        """Delete a session only if it belongs to ``identity``."""
        if not is_well_formed(session_id) or not is_well_formed(identity):
            return False
        try:
            removed = await call_durable(
                self.store.delete_session,
                session_id,
                identity,
                timeout=self.durable_timeout,
            )
        except StorageError as exc:
            log_storage_failure(exc, "revoke_session", self.provisioning, identity=identity)
            return False
        except Exception as exc:
            _log_unexpected("revoke_session", exc, identity)
            return False
        if removed:
            logger.info("session_revoked", session_id=session_id, identity=identity)
        return bool(removed)

    async def revoke_all_sessions(self, identity: str) -> int:
        if not is_well_formed(identity):
            return 0
        try:
            removed = await call_durable(
                self.store.delete_identity_sessions,
                identity,
                timeout=self.durable_timeout,
            )
        except StorageError as exc:
            log_storage_failure(
                exc, "revoke_all_sessions", self.provisioning, identity=identity
            )
            return 0
        except Exception as exc:
            _log_unexpected("revoke_all_sessions", exc, identity)
            return 0
        logger.info("sessions_revoked", identity=identity, count=removed)
        return removed

    async def revoke_other_sessions(self, identity: str, current_credential: str) -> int:
        """Delete every session of ``identity`` except the one for ``current_credential``."""
        if not is_well_formed(identity) or not is_well_formed(current_credential):
            return 0
        try:
            removed = await call_durable(
                self.store.delete_identity_sessions,
                identity,
                except_credential_hash=hash_credential(current_credential),
                timeout=self.durable_timeout,
            )
        except StorageError as exc:
            log_storage_failure(
                exc, "revoke_other_sessions", self.provisioning, identity=identity
            )
            return 0
        except Exception as exc:
            _log_unexpected("revoke_other_sessions", exc, identity)
            return 0
        logger.info("other_sessions_revoked", identity=identity, count=removed)
        return removed

    async def touch(self, credential: str) -> None:
        if not is_well_formed(credential):
            return
        try:
            await call_durable(
                self.store.touch_session,
                hash_credential(credential),
                self._now(),
                timeout=self.durable_timeout,
            )
        except Exception as exc:
            # Activity tracking is telemetry, not a gate
            logger.debug(
                "session_touch_failed",
                error=str(exc),
                error_type=type(exc).__name__,
            )


def _log_unexpected(op: str, exc: Exception, identity: str) -> None:
    logger.error(
        "session_operation_failed",
        op=op,
        error=str(exc),
        error_type=type(exc).__name__,
        identity=identity,
    )

"""Authentication gate composing revocation, lockout and session tracking.

Credential parsing and signature checks happen before this gate; it receives
the parsed claims and decides whether the credential may still be used.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from tokenguard.logging import auth_context, credential_fingerprint, get_logger
from tokenguard.service.errors import (
    AccountLockedError,
    AuthenticationError,
    CredentialRevokedError,
)
from tokenguard.service.hashing import hash_credential, is_well_formed
from tokenguard.service.lockout import AttemptResult, LockoutGuard
from tokenguard.service.revocation import RevocationResult, RevocationStore
from tokenguard.service.sessions import SessionRegistry, SessionResult
from tokenguard.storage.common import ensure_utc, utcnow

logger = get_logger(__name__)


@dataclass
class CredentialClaims:
    identity: str
    role: str
    expires_at: datetime


@dataclass
class AuthContext:
    identity: str
    role: str


class AuthenticationGate:
    def __init__(
        self,
        revocation: RevocationStore,
        lockout: LockoutGuard,
        sessions: SessionRegistry,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.revocation = revocation
        self.lockout = lockout
        self.sessions = sessions
        self._now = clock or utcnow

    async def authorize(
        self, credential: str, claims: Optional[CredentialClaims]
    ) -> AuthContext:
        """Admit a structurally valid, unexpired and unrevoked credential.

        Raises:
            AuthenticationError: credential missing, malformed or expired.
            CredentialRevokedError: the credential or its identity was revoked.
        """
        if not is_well_formed(credential):
            raise AuthenticationError("missing or malformed credential")
        if claims is None or not is_well_formed(claims.identity):
            raise AuthenticationError("credential has no identity claim")
        if ensure_utc(claims.expires_at) <= self._now():
            raise AuthenticationError("credential expired")

        if await self.revocation.is_credential_revoked(credential):
            logger.info(
                "credential_rejected_revoked",
                credential_fingerprint=credential_fingerprint(hash_credential(credential)),
            )
            raise CredentialRevokedError("credential has been revoked")
        if await self.revocation.is_identity_revoked(claims.identity):
            logger.info("credential_rejected_identity_revoked", identity=claims.identity)
            raise CredentialRevokedError(
                "all credentials for this account have been revoked"
            )

        await self.sessions.touch(credential)
        return AuthContext(identity=claims.identity, role=claims.role)

    async def check_login_allowed(self, identity: str) -> None:
        status = await self.lockout.is_account_locked(identity)
        if status.locked:
            raise AccountLockedError(
                "too many failed attempts; try again later",
                detail={
                    "lockout_until": status.lockout_until.isoformat()
                    if status.lockout_until
                    else None
                },
            )

    async def record_login_failure(
        self, identity: str, source: str = "unknown"
    ) -> AttemptResult:
        # Same path for unknown identities and wrong passwords
        with auth_context("login_failure", source=source):
            return await self.lockout.record_failed_attempt(identity, source)

    async def complete_login(
        self,
        identity: str,
        credential: str,
        source_address: str = "unknown",
        client_descriptor: str = "unknown",
    ) -> SessionResult:
        """Finish a login whose password check succeeded.

        An active lock still rejects the login. Session tracking failures are
        returned, not raised.
        """
        with auth_context("login", source=source_address):
            await self.check_login_allowed(identity)
            await self.lockout.clear_failed_attempts(identity)
            result = await self.sessions.create_session(
                identity, credential, source_address, client_descriptor
            )
            if not result.success:
                logger.warning(
                    "login_session_untracked", identity=identity, error=result.error
                )
            return result

    async def logout(
        self,
        credential: str,
        identity: Optional[str] = None,
        *,
        revoke_all: bool = False,
        reason: str = "logout",
    ) -> RevocationResult:
        with auth_context("logout", revoke_all=revoke_all):
            result = await self.revocation.revoke_credential(
                credential, owner_identity=identity, reason=reason
            )
            if revoke_all and is_well_formed(identity):
                await self.revocation.revoke_identity(identity, reason=reason)
                await self.sessions.revoke_all_sessions(identity)
            return result

    async def revoke_identity_everywhere(
        self,
        identity: str,
        reason: str = "deactivation",
        ttl_ms: Optional[int] = None,
    ) -> RevocationResult:
        """Invalidate every credential, session and lockout for ``identity``."""
        with auth_context("revoke_identity", reason=reason):
            result = await self.revocation.revoke_identity(identity, ttl_ms, reason)
            if result.success:
                await self.sessions.revoke_all_sessions(identity)
                await self.lockout.clear_failed_attempts(identity)
            return result

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from tokenguard.storage.common import after_ms, generate_uuid, serialize_timestamp


@dataclass
class RevokedCredential:
    credential_hash: str
    expires_at: datetime
    reason: str = "logout"
    owner_identity: Optional[str] = None
    revoked_at: Optional[datetime] = None

    def is_active(self, now: datetime) -> bool:
        return self.expires_at > now


@dataclass
class RevokedIdentity:
    identity: str
    expires_at: datetime
    reason: str = "deactivation"
    revoked_at: Optional[datetime] = None

    def is_active(self, now: datetime) -> bool:
        return self.expires_at > now


@dataclass
class LockoutRecord:
    identity: str
    failed_attempts: int
    last_attempt_source: str
    last_attempt_at: datetime
    locked_until: Optional[datetime] = None

    def is_locked(self, now: datetime) -> bool:
        return self.locked_until is not None and self.locked_until > now


@dataclass
class Session:
    id: str
    identity: str
    credential_hash: str
    source_address: str
    client_descriptor: str
    created_at: datetime
    last_activity_at: datetime
    expires_at: datetime

    @classmethod
    def new(
        cls,
        identity: str,
        credential_hash: str,
        *,
        now: datetime,
        lifetime_ms: int,
        source_address: str = "unknown",
        client_descriptor: str = "unknown",
    ) -> "Session":
        return cls(
            id=generate_uuid(),
            identity=identity,
            credential_hash=credential_hash,
            source_address=source_address,
            client_descriptor=client_descriptor,
            created_at=now,
            last_activity_at=now,
            expires_at=after_ms(now, lifetime_ms),
        )

    def to_public_dict(self) -> Dict[str, Any]:
        """Session view safe to hand to clients; the credential digest is omitted."""
        return {
            "id": self.id,
            "identity": self.identity,
            "source_address": self.source_address,
            "client_descriptor": self.client_descriptor,
            "created_at": serialize_timestamp(self.created_at),
            "last_activity_at": serialize_timestamp(self.last_activity_at),
            "expires_at": serialize_timestamp(self.expires_at),
        }

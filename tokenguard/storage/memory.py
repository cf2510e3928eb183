from __future__ import annotations

import json
import threading
from dataclasses import replace
from pathlib import Path
from typing import Dict, List, Optional

from tokenguard.logging import get_logger
from tokenguard.storage.common import parse_timestamp, serialize_timestamp
from tokenguard.storage.errors import ConstraintViolation
from tokenguard.storage.models import (
    LockoutRecord,
    RevokedCredential,
    RevokedIdentity,
    Session,
)


class MemoryStore:
    """In-memory durable store for tests and single-process development.

    When ``state_path`` is given, every mutation is snapshotted to a JSON file
    and reloaded on construction so revocations survive a restart.
    """

    def __init__(self, state_path: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.revoked_credentials: Dict[str, RevokedCredential] = {}
        self.revoked_identities: Dict[str, RevokedIdentity] = {}
        self.lockouts: Dict[str, LockoutRecord] = {}
        self.sessions: Dict[str, Session] = {}
        # RLock so nested helpers can re-acquire within the same thread
        self._data_lock = threading.RLock()
        self.state_path = Path(state_path) if state_path else None
        if self.state_path is not None:
            self.state_path.parent.mkdir(parents=True, exist_ok=True)
            self._load_state()

    # revoked credentials
    def save_revoked_credential(self, record: RevokedCredential) -> RevokedCredential:
        if not record.credential_hash:
            raise ConstraintViolation(
                "credential_hash is required", table="revoked_credentials"
            )
        with self._data_lock:
            self.revoked_credentials[record.credential_hash] = record
            self._persist_state()
            return record

    def find_revoked_credential(
        self, credential_hash: str, now
    ) -> Optional[RevokedCredential]:
        with self._data_lock:
            record = self.revoked_credentials.get(credential_hash)
        if record and record.is_active(now):
            return record
        return None

    # revoked identities
    def save_revoked_identity(self, record: RevokedIdentity) -> RevokedIdentity:
        if not record.identity:
            raise ConstraintViolation("identity is required", table="revoked_identities")
        with self._data_lock:
            self.revoked_identities[record.identity] = record
            self._persist_state()
            return record

    def find_revoked_identity(self, identity: str, now) -> Optional[RevokedIdentity]:
        with self._data_lock:
            record = self.revoked_identities.get(identity)
        if record and record.is_active(now):
            return record
        return None

    # lockouts
    def get_lockout(self, identity: str) -> Optional[LockoutRecord]:
        with self._data_lock:
            return self.lockouts.get(identity)

    def save_lockout(self, record: LockoutRecord) -> LockoutRecord:
        if record.failed_attempts < 0:
            raise ConstraintViolation(
                "failed_attempts must be non-negative", table="account_lockouts"
            )
        with self._data_lock:
            existing = self.lockouts.get(record.identity)
            locked_until = record.locked_until
            if existing and existing.locked_until:
                if locked_until is None or existing.locked_until > locked_until:
                    locked_until = existing.locked_until
            stored = LockoutRecord(
                identity=record.identity,
                failed_attempts=record.failed_attempts,
                last_attempt_source=record.last_attempt_source,
                last_attempt_at=record.last_attempt_at,
                locked_until=locked_until,
            )
            self.lockouts[record.identity] = stored
            self._persist_state()
            return stored

    def delete_lockout(self, identity: str) -> bool:
        with self._data_lock:
            removed = self.lockouts.pop(identity, None) is not None
            if removed:
                self._persist_state()
            return removed

    # sessions
    def create_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.id in self.sessions:
                raise ConstraintViolation(
                    "session id already exists",
                    {"session_id": session.id},
                    table="user_sessions",
                )
            self.sessions[session.id] = session
            self._persist_state()
            return session

    def list_sessions(self, identity: str, now) -> List[Session]:
        with self._data_lock:
            sessions = [
                replace(sess)
                for sess in self.sessions.values()
                if sess.identity == identity and sess.expires_at > now
            ]
        sessions.sort(key=lambda s: s.last_activity_at, reverse=True)
        return sessions

    def delete_session(self, session_id: str, identity: str) -> bool:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or sess.identity != identity:
                return False
            del self.sessions[session_id]
            self._persist_state()
            return True

    def delete_identity_sessions(
        self, identity: str, *, except_credential_hash: str | None = None
    ) -> int:
        with self._data_lock:
            doomed = [
                sid
                for sid, sess in self.sessions.items()
                if sess.identity == identity
                and (
                    except_credential_hash is None
                    or sess.credential_hash != except_credential_hash
                )
            ]
            for sid in doomed:
                del self.sessions[sid]
            if doomed:
                self._persist_state()
            return len(doomed)

    def touch_session(self, credential_hash: str, at) -> int:
        touched = 0
        with self._data_lock:
            for sess in self.sessions.values():
                if sess.credential_hash == credential_hash:
                    sess.last_activity_at = at
                    touched += 1
            if touched:
                self._persist_state()
        return touched

    # retention
    def purge_expired(self, now) -> Dict[str, int]:
        with self._data_lock:
            counts = {
                "revoked_credentials": self._purge(
                    self.revoked_credentials, lambda r: r.expires_at <= now
                ),
                "revoked_identities": self._purge(
                    self.revoked_identities, lambda r: r.expires_at <= now
                ),
                "user_sessions": self._purge(
                    self.sessions, lambda s: s.expires_at <= now
                ),
            }
            if any(counts.values()):
                self._persist_state()
        return counts

    @staticmethod
    def _purge(table: dict, expired) -> int:
        stale = [key for key, row in table.items() if expired(row)]
        for key in stale:
            del table[key]
        return len(stale)

    def verify_schema(self) -> List[str]:
        return []

    def ensure_schema(self) -> None:
        return None

    def close(self) -> None:
        return None

    # persistence
    def _persist_state(self) -> None:
        if self.state_path is None:
            return
        state = {
            "revoked_credentials": [
                {
                    "credential_hash": r.credential_hash,
                    "owner_identity": r.owner_identity,
                    "expires_at": serialize_timestamp(r.expires_at),
                    "reason": r.reason,
                    "revoked_at": serialize_timestamp(r.revoked_at),
                }
                for r in self.revoked_credentials.values()
            ],
            "revoked_identities": [
                {
                    "identity": r.identity,
                    "expires_at": serialize_timestamp(r.expires_at),
                    "reason": r.reason,
                    "revoked_at": serialize_timestamp(r.revoked_at),
                }
                for r in self.revoked_identities.values()
            ],
            "lockouts": [
                {
                    "identity": r.identity,
                    "failed_attempts": r.failed_attempts,
                    "locked_until": serialize_timestamp(r.locked_until),
                    "last_attempt_source": r.last_attempt_source,
                    "last_attempt_at": serialize_timestamp(r.last_attempt_at),
                }
                for r in self.lockouts.values()
            ],
            "sessions": [
                {
                    "id": s.id,
                    "identity": s.identity,
                    "credential_hash": s.credential_hash,
                    "source_address": s.source_address,
                    "client_descriptor": s.client_descriptor,
                    "created_at": serialize_timestamp(s.created_at),
                    "last_activity_at": serialize_timestamp(s.last_activity_at),
                    "expires_at": serialize_timestamp(s.expires_at),
                }
                for s in self.sessions.values()
            ],
        }
        tmp_path = self.state_path.with_suffix(".tmp")
        try:
            tmp_path.write_text(json.dumps(state, indent=2))
            tmp_path.replace(self.state_path)
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        # Read directly instead of exists() to avoid a TOCTOU race
        try:
            data = json.loads(self.state_path.read_text())
        except FileNotFoundError:
            return False
        self.revoked_credentials = {
            r["credential_hash"]: RevokedCredential(
                credential_hash=r["credential_hash"],
                owner_identity=r.get("owner_identity"),
                expires_at=parse_timestamp(r["expires_at"]),
                reason=r.get("reason", "logout"),
                revoked_at=parse_timestamp(r.get("revoked_at")),
            )
            for r in data.get("revoked_credentials", [])
        }
        self.revoked_identities = {
            r["identity"]: RevokedIdentity(
                identity=r["identity"],
                expires_at=parse_timestamp(r["expires_at"]),
                reason=r.get("reason", "deactivation"),
                revoked_at=parse_timestamp(r.get("revoked_at")),
            )
            for r in data.get("revoked_identities", [])
        }
        self.lockouts = {
            r["identity"]: LockoutRecord(
                identity=r["identity"],
                failed_attempts=int(r.get("failed_attempts", 0)),
                locked_until=parse_timestamp(r.get("locked_until")),
                last_attempt_source=r.get("last_attempt_source", "unknown"),
                last_attempt_at=parse_timestamp(r["last_attempt_at"]),
            )
            for r in data.get("lockouts", [])
        }
        self.sessions = {
            s["id"]: Session(
                id=s["id"],
                identity=s["identity"],
                credential_hash=s["credential_hash"],
                source_address=s.get("source_address", "unknown"),
                client_descriptor=s.get("client_descriptor", "unknown"),
                created_at=parse_timestamp(s["created_at"]),
                last_activity_at=parse_timestamp(s["last_activity_at"]),
                expires_at=parse_timestamp(s["expires_at"]),
            )
            for s in data.get("sessions", [])
        }
        self.logger.info(
            "memory_store_state_loaded",
            revoked_credentials=len(self.revoked_credentials),
            sessions=len(self.sessions),
        )
        return True

from __future__ import annotations

import contextlib
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from tokenguard.logging import get_logger
from tokenguard.storage.common import parse_timestamp, safe_row_value
from tokenguard.storage.errors import (
    ConstraintViolation,
    StorageError,
    StorageErrorKind,
)
from tokenguard.storage.models import (
    LockoutRecord,
    RevokedCredential,
    RevokedIdentity,
    Session,
)

REQUIRED_TABLES = (
    "revoked_credentials",
    "revoked_identities",
    "account_lockouts",
    "user_sessions",
)

SCHEMA_DDL = """
CREATE TABLE IF NOT EXISTS revoked_credentials (
    credential_hash TEXT PRIMARY KEY,
    owner_identity TEXT NULL,
    expires_at TIMESTAMPTZ NOT NULL,
    reason TEXT NOT NULL,
    revoked_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE INDEX IF NOT EXISTS revoked_credentials_expires_idx
    ON revoked_credentials (expires_at);

CREATE TABLE IF NOT EXISTS revoked_identities (
    identity TEXT PRIMARY KEY,
    expires_at TIMESTAMPTZ NOT NULL,
    reason TEXT NOT NULL,
    revoked_at TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS account_lockouts (
    identity TEXT PRIMARY KEY,
    failed_attempts INTEGER NOT NULL CHECK (failed_attempts >= 0),
    locked_until TIMESTAMPTZ NULL,
    last_attempt_source TEXT NOT NULL,
    last_attempt_at TIMESTAMPTZ NOT NULL
);

CREATE TABLE IF NOT EXISTS user_sessions (
    id UUID PRIMARY KEY,
    identity TEXT NOT NULL,
    credential_hash TEXT NOT NULL,
    source_address TEXT NOT NULL,
    client_descriptor TEXT NOT NULL,
    created_at TIMESTAMPTZ NOT NULL,
    last_activity_at TIMESTAMPTZ NOT NULL,
    expires_at TIMESTAMPTZ NOT NULL
);
CREATE INDEX IF NOT EXISTS user_sessions_identity_activity_idx
    ON user_sessions (identity, last_activity_at DESC);
CREATE INDEX IF NOT EXISTS user_sessions_credential_idx
    ON user_sessions (credential_hash);
"""


class PostgresStore:
    """Postgres-backed durable store for revocations, lockouts and sessions."""

    def __init__(
        self,
        dsn: str,
        *,
        min_size: int = 1,
        max_size: int = 10,
        timeout_seconds: float = 5.0,
    ) -> None:
        self.dsn = dsn
        self.timeout_seconds = timeout_seconds
        self.logger = get_logger(__name__)
        statement_timeout_ms = max(1, int(timeout_seconds * 1000))
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            timeout=timeout_seconds,
            open=True,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "connect_timeout": max(1, int(timeout_seconds)),
                "options": f"-c statement_timeout={statement_timeout_ms}",
            },
        )
        missing = self.verify_schema()
        if missing:
            self.logger.warning(
                "postgres_schema_incomplete",
                missing_tables=missing,
                message="Run scripts/manage_tokens.py provision-schema to create them.",
            )

    def _connect(self):
        return self.pool.connection()

    @contextlib.contextmanager
    def _translate(self, table: str, op: str) -> Iterator[None]:
        """Convert driver failures into classified ``StorageError``s."""
        try:
            yield
        except StorageError:
            raise
        except errors.UndefinedTable as exc:
            raise StorageError(
                f"{table} table not provisioned",
                StorageErrorKind.NOT_PROVISIONED,
                table=table,
                detail={"op": op},
            ) from exc
        except PoolTimeout as exc:
            raise StorageError(
                "connection pool exhausted",
                StorageErrorKind.TRANSIENT,
                table=table,
                detail={"op": op},
            ) from exc
        except (psycopg.OperationalError, psycopg.InterfaceError) as exc:
            # QueryCanceled (statement_timeout) is an OperationalError subclass
            raise StorageError(
                str(exc) or type(exc).__name__,
                StorageErrorKind.TRANSIENT,
                table=table,
                detail={"op": op},
            ) from exc
        except psycopg.IntegrityError as exc:
            raise ConstraintViolation(
                f"{table} constraint violated",
                {"op": op, "error": type(exc).__name__},
                table=table,
            ) from exc
        except psycopg.DataError as exc:
            raise StorageError(
                str(exc) or type(exc).__name__,
                StorageErrorKind.MALFORMED,
                table=table,
                detail={"op": op},
            ) from exc
        except psycopg.Error as exc:
            raise StorageError(
                str(exc) or type(exc).__name__,
                StorageErrorKind.UNEXPECTED,
                table=table,
                detail={"op": op},
            ) from exc

    def ensure_schema(self) -> None:
        """Create the token tables and indexes if they are missing."""
        with self._translate("schema", "ensure_schema"), self._connect() as conn:
            conn.execute(SCHEMA_DDL)
        self.logger.info("postgres_schema_ensured", tables=list(REQUIRED_TABLES))

    def verify_schema(self) -> List[str]:
        """Return required tables that do not exist yet."""
        missing: List[str] = []
        with self._translate("schema", "verify_schema"), self._connect() as conn:
            for table in REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not safe_row_value(row, "oid"):
                    missing.append(table)
        return missing

    def close(self) -> None:
        self.pool.close()

    # revoked credentials
    def save_revoked_credential(self, record: RevokedCredential) -> RevokedCredential:
        with self._translate("revoked_credentials", "save"), self._connect() as conn:
            conn.execute(
                """
                INSERT INTO revoked_credentials (credential_hash, owner_identity, expires_at, reason, revoked_at)
                VALUES (%s, %s, %s, %s, COALESCE(%s, now()))
                ON CONFLICT (credential_hash) DO UPDATE
                SET owner_identity = EXCLUDED.owner_identity,
                    expires_at = EXCLUDED.expires_at,
                    reason = EXCLUDED.reason,
                    revoked_at = EXCLUDED.revoked_at
                """,
                (
                    record.credential_hash,
                    record.owner_identity,
                    record.expires_at,
                    record.reason,
                    record.revoked_at,
                ),
            )
        return record

    def find_revoked_credential(
        self, credential_hash: str, now: datetime
    ) -> Optional[RevokedCredential]:
        with self._translate("revoked_credentials", "find"), self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM revoked_credentials
                WHERE credential_hash = %s AND expires_at > %s
                LIMIT 1
                """,
                (credential_hash, now),
            ).fetchone()
        if not row:
            return None
        return self._revoked_credential_from_row(row)

    # revoked identities
    def save_revoked_identity(self, record: RevokedIdentity) -> RevokedIdentity:
        with self._translate("revoked_identities", "save"), self._connect() as conn:
            conn.execute(
                """
                INSERT INTO revoked_identities (identity, expires_at, reason, revoked_at)
                VALUES (%s, %s, %s, COALESCE(%s, now()))
                ON CONFLICT (identity) DO UPDATE
                SET expires_at = EXCLUDED.expires_at,
                    reason = EXCLUDED.reason,
                    revoked_at = EXCLUDED.revoked_at
                """,
                (record.identity, record.expires_at, record.reason, record.revoked_at),
            )
        return record

    def find_revoked_identity(
        self, identity: str, now: datetime
    ) -> Optional[RevokedIdentity]:
        with self._translate("revoked_identities", "find"), self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM revoked_identities
                WHERE identity = %s AND expires_at > %s
                LIMIT 1
                """,
                (identity, now),
            ).fetchone()
        if not row:
            return None
        return RevokedIdentity(
            identity=row["identity"],
            expires_at=parse_timestamp(row["expires_at"]),
            reason=row.get("reason", "deactivation"),
            revoked_at=parse_timestamp(row.get("revoked_at")),
        )

    # lockouts
    def get_lockout(self, identity: str) -> Optional[LockoutRecord]:
        with self._translate("account_lockouts", "get"), self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account_lockouts WHERE identity = %s", (identity,)
            ).fetchone()
        if not row:
            return None
        return self._lockout_from_row(row)

    def save_lockout(self, record: LockoutRecord) -> LockoutRecord:
        # GREATEST ignores NULLs, so an existing lock is never moved earlier or cleared
        with self._translate("account_lockouts", "save"), self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO account_lockouts (identity, failed_attempts, locked_until, last_attempt_source, last_attempt_at)
                VALUES (%s, %s, %s, %s, %s)
                ON CONFLICT (identity) DO UPDATE
                SET failed_attempts = EXCLUDED.failed_attempts,
                    locked_until = GREATEST(account_lockouts.locked_until, EXCLUDED.locked_until),
                    last_attempt_source = EXCLUDED.last_attempt_source,
                    last_attempt_at = EXCLUDED.last_attempt_at
                RETURNING *
                """,
                (
                    record.identity,
                    record.failed_attempts,
                    record.locked_until,
                    record.last_attempt_source,
                    record.last_attempt_at,
                ),
            ).fetchone()
        if not row:
            return record
        return self._lockout_from_row(row)

    def delete_lockout(self, identity: str) -> bool:
        with self._translate("account_lockouts", "delete"), self._connect() as conn:
            result = conn.execute(
                "DELETE FROM account_lockouts WHERE identity = %s", (identity,)
            )
            return result.rowcount > 0

    # sessions
    def create_session(self, session: Session) -> Session:
        with self._translate("user_sessions", "create"), self._connect() as conn:
            conn.execute(
                """
                INSERT INTO user_sessions (id, identity, credential_hash, source_address, client_descriptor, created_at, last_activity_at, expires_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    session.id,
                    session.identity,
                    session.credential_hash,
                    session.source_address,
                    session.client_descriptor,
                    session.created_at,
                    session.last_activity_at,
                    session.expires_at,
                ),
            )
        return session

    def list_sessions(self, identity: str, now: datetime) -> List[Session]:
        with self._translate("user_sessions", "list"), self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM user_sessions
                WHERE identity = %s AND expires_at > %s
                ORDER BY last_activity_at DESC
                """,
                (identity, now),
            ).fetchall()
        return [self._session_from_row(row) for row in rows]

    def delete_session(self, session_id: str, identity: str) -> bool:
        with self._translate("user_sessions", "delete"), self._connect() as conn:
            result = conn.execute(
                "DELETE FROM user_sessions WHERE id = %s AND identity = %s",
                (session_id, identity),
            )
            return result.rowcount > 0

    def delete_identity_sessions(
        self, identity: str, *, except_credential_hash: str | None = None
    ) -> int:
        with self._translate("user_sessions", "delete_all"), self._connect() as conn:
            if except_credential_hash is None:
                result = conn.execute(
                    "DELETE FROM user_sessions WHERE identity = %s", (identity,)
                )
            else:
                result = conn.execute(
                    "DELETE FROM user_sessions WHERE identity = %s AND credential_hash <> %s",
                    (identity, except_credential_hash),
                )
            return result.rowcount

    def touch_session(self, credential_hash: str, at: datetime) -> int:
        with self._translate("user_sessions", "touch"), self._connect() as conn:
            result = conn.execute(
                "UPDATE user_sessions SET last_activity_at = %s WHERE credential_hash = %s",
                (at, credential_hash),
            )
            return result.rowcount

    # retention
    def purge_expired(self, now: datetime) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for table in ("revoked_credentials", "revoked_identities", "user_sessions"):
            with self._translate(table, "purge"), self._connect() as conn:
                # Table names come from the fixed tuple above
                result = conn.execute(
                    f"DELETE FROM {table} WHERE expires_at <= %s", (now,)
                )
                counts[table] = result.rowcount
        self.logger.info("postgres_purge_expired", **counts)
        return counts

    # row mapping
    @staticmethod
    def _revoked_credential_from_row(row: Dict[str, Any]) -> RevokedCredential:
        return RevokedCredential(
            credential_hash=row["credential_hash"],
            owner_identity=row.get("owner_identity"),
            expires_at=parse_timestamp(row["expires_at"]),
            reason=row.get("reason", "logout"),
            revoked_at=parse_timestamp(row.get("revoked_at")),
        )

    @staticmethod
    def _lockout_from_row(row: Dict[str, Any]) -> LockoutRecord:
        return LockoutRecord(
            identity=row["identity"],
            failed_attempts=int(row.get("failed_attempts") or 0),
            locked_until=parse_timestamp(row.get("locked_until")),
            last_attempt_source=row.get("last_attempt_source") or "unknown",
            last_attempt_at=parse_timestamp(row["last_attempt_at"]),
        )

    @staticmethod
    def _session_from_row(row: Dict[str, Any]) -> Session:
        return Session(
            id=str(row["id"]),
            identity=row["identity"],
            credential_hash=row["credential_hash"],
            source_address=row.get("source_address") or "unknown",
            client_descriptor=row.get("client_descriptor") or "unknown",
            created_at=parse_timestamp(row["created_at"]),
            last_activity_at=parse_timestamp(row["last_activity_at"]),
            expires_at=parse_timestamp(row["expires_at"]),
        )

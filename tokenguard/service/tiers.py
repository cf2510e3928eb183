"""Storage tier contracts shared by the token services.

Durable stores are synchronous (blocking driver I/O) and are always reached
through ``call_durable`` so every call is bounded and runs off the event loop.
Cache backends are async and best-effort.
"""

from __future__ import annotations

import asyncio
import threading
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Protocol, Set, TypeVar

from tokenguard.logging import get_logger
from tokenguard.storage.errors import StorageError, StorageErrorKind, classify_exception
from tokenguard.storage.models import (
    LockoutRecord,
    RevokedCredential,
    RevokedIdentity,
    Session,
)

logger = get_logger(__name__)

T = TypeVar("T")

DEFAULT_DURABLE_TIMEOUT = 5.0


class DurableStore(Protocol):
    def save_revoked_credential(self, record: RevokedCredential) -> RevokedCredential: ...

    def find_revoked_credential(
        self, credential_hash: str, now: datetime
    ) -> Optional[RevokedCredential]: ...

    def save_revoked_identity(self, record: RevokedIdentity) -> RevokedIdentity: ...

    def find_revoked_identity(
        self, identity: str, now: datetime
    ) -> Optional[RevokedIdentity]: ...

    def get_lockout(self, identity: str) -> Optional[LockoutRecord]: ...

    def save_lockout(self, record: LockoutRecord) -> LockoutRecord: ...

    def delete_lockout(self, identity: str) -> bool: ...

    def create_session(self, session: Session) -> Session: ...

    def list_sessions(self, identity: str, now: datetime) -> List[Session]: ...

    def delete_session(self, session_id: str, identity: str) -> bool: ...

    def delete_identity_sessions(
        self, identity: str, *, except_credential_hash: Optional[str] = None
    ) -> int: ...

    def touch_session(self, credential_hash: str, at: datetime) -> int: ...

    def purge_expired(self, now: datetime) -> Dict[str, int]: ...


class CacheBackend(Protocol):
    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str, ttl_ms: int) -> None: ...

    async def delete(self, *keys: str) -> int: ...

    async def incr(self, key: str, ttl_ms: int) -> int: ...

    async def clear(self) -> None: ...


async def call_durable(
    func: Callable[..., T],
    *args: Any,
    timeout: float = DEFAULT_DURABLE_TIMEOUT,
    **kwargs: Any,
) -> T:
    """Run a blocking durable-store call in a worker thread with a deadline.

    Timeouts and OS-level connection failures become ``StorageError(TRANSIENT)``.
    ``StorageError`` passes through; anything else propagates unchanged.
    """
    try:
        return await asyncio.wait_for(
            asyncio.to_thread(func, *args, **kwargs), timeout
        )
    except StorageError:
        raise
    except (asyncio.TimeoutError, TimeoutError) as exc:
        raise StorageError(
            f"durable call timed out after {timeout}s",
            StorageErrorKind.TRANSIENT,
            detail={"op": getattr(func, "__name__", "unknown")},
        ) from exc
    except Exception as exc:
        if classify_exception(exc) is not StorageErrorKind.TRANSIENT:
            raise
        raise StorageError(
            str(exc) or type(exc).__name__,
            StorageErrorKind.TRANSIENT,
            detail={"op": getattr(func, "__name__", "unknown")},
        ) from exc


class ProvisioningWarnings:
    """Emit the "table not provisioned" warning once per table per process."""

    def __init__(self) -> None:
        self._seen: Set[str] = set()
        self._lock = threading.Lock()

    def warn(self, exc: StorageError, op: str) -> bool:
        table = exc.table or op
        with self._lock:
            if table in self._seen:
                return False
            self._seen.add(table)
        logger.warning(
            "storage_not_provisioned",
            table=table,
            op=op,
            message="Feature inactive until the table is created.",
        )
        return True

    def reset(self) -> None:
        with self._lock:
            self._seen.clear()


def log_storage_failure(
    exc: StorageError, op: str, provisioning: ProvisioningWarnings, **context: Any
) -> None:
    """Log a classified storage failure at the level its kind calls for."""
    if exc.kind is StorageErrorKind.NOT_PROVISIONED:
        provisioning.warn(exc, op)
    elif exc.kind is StorageErrorKind.TRANSIENT:
        logger.warning(
            "durable_store_transient", op=op, error=exc.message, **context
        )
    else:
        logger.error(
            "durable_store_error",
            op=op,
            error_kind=exc.kind.value,
            error=exc.message,
            **context,
        )


async def cache_call(
    op: str, coro_factory: Callable[[], Any], default: Any = None
) -> Any:
    """Await a cache operation, treating any failure as a miss."""
    try:
        return await coro_factory()
    except Exception as exc:
        logger.warning(
            "cache_operation_failed",
            op=op,
            error=str(exc),
            error_type=type(exc).__name__,
        )
        return default

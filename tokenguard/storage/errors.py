from __future__ import annotations

import asyncio
import socket
from enum import Enum
from typing import Any, Dict, Optional


class StorageErrorKind(str, Enum):
    """Closed set of storage failure classes the services switch over."""

    NOT_PROVISIONED = "not_provisioned"
    TRANSIENT = "transient"
    MALFORMED = "malformed"
    UNEXPECTED = "unexpected"


class StorageError(Exception):
    """Raised by storage adapters with a classified failure kind."""

    def __init__(
        self,
        message: str,
        kind: StorageErrorKind = StorageErrorKind.UNEXPECTED,
        *,
        table: Optional[str] = None,
        detail: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.kind = kind
        self.table = table
        self.detail = detail or {}

    def __repr__(self) -> str:
        return f"StorageError({self.kind.value}: {self.message})"


class ConstraintViolation(StorageError):
    """Raised when a storage-layer uniqueness, check or FK constraint is violated."""

    def __init__(
        self,
        message: str,
        detail: Optional[Dict[str, Any]] = None,
        *,
        table: Optional[str] = None,
    ):
        super().__init__(
            message, StorageErrorKind.MALFORMED, table=table, detail=detail
        )


def classify_exception(exc: BaseException) -> StorageErrorKind:
    """Map a generic Python failure onto a storage error kind."""
    if isinstance(exc, StorageError):
        return exc.kind
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, socket.gaierror)):
        return StorageErrorKind.TRANSIENT
    if isinstance(exc, (ConnectionError, OSError)):
        return StorageErrorKind.TRANSIENT
    if isinstance(exc, (ValueError, TypeError)):
        return StorageErrorKind.MALFORMED
    return StorageErrorKind.UNEXPECTED


__all__ = [
    "StorageErrorKind",
    "StorageError",
    "ConstraintViolation",
    "classify_exception",
]

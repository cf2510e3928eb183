from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for authentication-gate exceptions.

    Each exception class defines both an HTTP-style ``status_code`` and a
    stable ``error_code`` so callers can map it onto their transport:
    - unauthorized (401)
    - credential_revoked (401)
    - account_locked (423)
    """

    status_code: int = 400
    error_code: str = "bad_request"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class CredentialRevokedError(AuthenticationError):
    """Credential or its identity has been revoked (401)."""
    error_code = "credential_revoked"


class AccountLockedError(ServiceError):
    """Too many failed attempts; identity is temporarily locked (423)."""
    status_code = 423
    error_code = "account_locked"


__all__ = [
    "ServiceError",
    "AuthenticationError",
    "CredentialRevokedError",
    "AccountLockedError",
]

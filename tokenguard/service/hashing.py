from __future__ import annotations

import hashlib
from typing import Any


def is_well_formed(value: Any) -> bool:
    """True for a non-empty string that is not only whitespace."""
    return isinstance(value, str) and bool(value.strip())


def hash_credential(credential: str) -> str:
    """SHA-256 hex digest of a credential; the only form ever persisted."""
    if not isinstance(credential, str):
        raise TypeError("credential must be a string")
    return hashlib.sha256(credential.encode("utf-8")).hexdigest()

from __future__ import annotations

import logging
import os
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Dict, Iterator, Optional

import structlog

from tokenguard.service.hashing import hash_credential

# Correlation ID shared by every line of one authorization, login or logout
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

FINGERPRINT_LENGTH = 12

# Raw bearer material: logged only as a digest fingerprint
_CREDENTIAL_KEYS = ("credential", "token", "authorization")
# Never logged in any form
_SECRET_KEYS = ("password", "secret")
# Personal data: partially masked
_PERSONAL_KEYS = ("email",)
_SAFE_SUFFIXES = ("_fingerprint", "_hash", "_kind", "_count")


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Set or generate the correlation ID for the current task."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


@contextmanager
def auth_context(operation: str, **fields: Any) -> Iterator[str]:
    """Tag log lines emitted inside the block with ``auth_op`` and ``fields``.

    A correlation ID already set by the caller is kept; otherwise one is
    generated for the block and cleared on exit.
    """
    existing = correlation_id_var.get()
    token = None if existing else correlation_id_var.set(str(uuid.uuid4()))
    bound = {key: value for key, value in fields.items() if value is not None}
    try:
        with structlog.contextvars.bound_contextvars(auth_op=operation, **bound):
            yield correlation_id_var.get()
    finally:
        if token is not None:
            correlation_id_var.reset(token)


def credential_fingerprint(digest: Optional[str]) -> Optional[str]:
    """Short, non-reversible reference to a credential digest for log lines."""
    if not digest:
        return None
    return digest[:FINGERPRINT_LENGTH]


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict.setdefault("correlation_id", cid)
    return event_dict


def _mask(value: str) -> str:
    if len(value) > 4:
        return value[:2] + "***" + value[-2:]
    return "***"


def _redact_secrets(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Replace raw credentials, secrets and personal data before rendering."""
    for key in list(event_dict.keys()):
        lower_key = key.lower()
        value = event_dict[key]
        if lower_key.endswith(_SAFE_SUFFIXES) or not isinstance(value, str):
            continue
        if any(marker in lower_key for marker in _SECRET_KEYS):
            event_dict[key] = "[redacted]"
        elif any(marker in lower_key for marker in _CREDENTIAL_KEYS):
            event_dict[key] = "sha256:" + credential_fingerprint(hash_credential(value))
        elif any(marker in lower_key for marker in _PERSONAL_KEYS):
            event_dict[key] = _mask(value)
    return event_dict


def _configure_structlog(
    log_level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Configure structlog processors and rendering.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        json_output: If True, output JSON; if False, output human-readable
        development_mode: If True, use pretty console output
    """
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        _redact_secrets,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if development_mode or not json_output:
        renderer = [structlog.dev.ConsoleRenderer(colors=True)]
    else:
        renderer = [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]

    structlog.configure(
        processors=shared_processors + renderer,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


_configure_structlog(
    log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    json_output=_env_flag("LOG_JSON", "true"),
    development_mode=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)

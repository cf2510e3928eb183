#!/usr/bin/env python3
"""Operator commands for revocations, lockouts and sessions.

Usage:
    python scripts/manage_tokens.py provision-schema
    python scripts/manage_tokens.py revoke-identity user-42 --reason password_change
    python scripts/manage_tokens.py clear-lockout alice@example.com
    python scripts/manage_tokens.py list-sessions user-42
    python scripts/manage_tokens.py purge-expired

Environment Variables:
    DATABASE_URL: PostgreSQL connection string (uses memory store if not set)
    REDIS_URL: Shared cache (optional)
"""
from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
from pathlib import Path
from typing import List, Optional

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def provision_schema(runtime) -> dict:
    runtime.store.ensure_schema()
    missing = runtime.store.verify_schema()
    return {"status": "ok" if not missing else "incomplete", "missing_tables": missing}


async def revoke_identity(
    runtime, identity: str, reason: str, ttl_ms: Optional[int]
) -> dict:
    result = await runtime.gate.revoke_identity_everywhere(
        identity, reason=reason, ttl_ms=ttl_ms
    )
    return {
        "identity": identity,
        "success": result.success,
        "persisted": result.persisted,
        "error": result.error,
    }


async def clear_lockout(runtime, identity: str) -> dict:
    cleared = await runtime.lockout.clear_failed_attempts(identity)
    return {"identity": identity, "cleared": cleared}


async def list_sessions(runtime, identity: str) -> dict:
    sessions = await runtime.sessions.list_sessions(identity)
    return {
        "identity": identity,
        "sessions": [sess.to_public_dict() for sess in sessions],
    }


def purge_expired(runtime) -> dict:
    from tokenguard.storage.common import utcnow

    return runtime.store.purge_expired(utcnow())


async def run_command(args: argparse.Namespace) -> dict:
    # Import here to avoid loading config before env vars are set
    from tokenguard.logging import set_correlation_id
    from tokenguard.service.runtime import get_runtime

    set_correlation_id()
    runtime = get_runtime()
    try:
        if args.command == "provision-schema":
            return provision_schema(runtime)
        if args.command == "revoke-identity":
            return await revoke_identity(runtime, args.identity, args.reason, args.ttl_ms)
        if args.command == "clear-lockout":
            return await clear_lockout(runtime, args.identity)
        if args.command == "list-sessions":
            return await list_sessions(runtime, args.identity)
        if args.command == "purge-expired":
            return purge_expired(runtime)
        raise ValueError(f"unknown command: {args.command}")
    finally:
        await runtime.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Manage credential revocations, lockouts and sessions",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("provision-schema", help="Create the token tables if missing")

    revoke = sub.add_parser(
        "revoke-identity",
        help="Revoke every credential and session of an identity",
    )
    revoke.add_argument("identity")
    revoke.add_argument("--reason", default="deactivation")
    revoke.add_argument(
        "--ttl-ms",
        type=int,
        default=None,
        help="Revocation lifetime in milliseconds (defaults to REVOCATION_TTL_MS)",
    )

    clear = sub.add_parser("clear-lockout", help="Reset failed login attempts")
    clear.add_argument("identity")

    sessions = sub.add_parser("list-sessions", help="Show live sessions of an identity")
    sessions.add_argument("identity")

    sub.add_parser("purge-expired", help="Delete expired revocations and sessions")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    if getattr(args, "ttl_ms", None) is not None and args.ttl_ms <= 0:
        print("Error: --ttl-ms must be positive")
        return 1

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(run_command(args))
    except Exception as e:
        print(f"Error: {e}")
        return 1
    print(json.dumps(result, indent=2, default=str))
    return 0


if __name__ == "__main__":
    sys.exit(main())

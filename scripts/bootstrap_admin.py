#!/usr/bin/env python3
"""Provision an admin account for a fresh deployment.

Usage:
    ADMIN_USERNAME=admin ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=... python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --username admin --email admin@example.com --password ...

Environment Variables:
    ADMIN_USERNAME / ADMIN_EMAIL / ADMIN_PASSWORD: account to create or promote
    DATABASE_URL: PostgreSQL connection string (required unless --dry-run)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def bootstrap_admin(
    username: str, email: str, password: str, dry_run: bool = False, runtime=None
) -> dict:
    """Create the account as an admin, or promote it if the username exists.

    A caller-supplied runtime is left open; one built here is closed on exit.
    """
    from taroauth.config import get_settings
    from taroauth.service.auth import _validate_registration
    from taroauth.service.runtime import Runtime
    from taroauth.storage.postgres import PostgresStore

    _validate_registration(username, email, password, password)
    owned = runtime is None
    if owned:
        runtime = Runtime(get_settings(), cache=None)
        if isinstance(runtime.store, PostgresStore):
            await runtime.store.open()
    try:
        await runtime.store.ensure_schema()
        existing = await runtime.store.get_user_by_username(username)
        if existing and existing.is_admin:
            return {"user_id": existing.id, "status": "already_admin"}
        if dry_run:
            return {"user_id": existing.id if existing else None, "status": "dry_run"}
        if existing:
            await runtime.auth.set_flags(existing.id, is_admin=True, is_active=True)
            return {"user_id": existing.id, "status": "promoted"}
        user = await runtime.store.create_user(
            username, email, runtime.auth.hash_password(password), is_admin=True
        )
        return {"user_id": user.id, "status": "created"}
    finally:
        if owned:
            await runtime.store.close()


def main():
    parser = argparse.ArgumentParser(
        description="Provision an admin account",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--username", default=os.environ.get("ADMIN_USERNAME"))
    parser.add_argument("--email", default=os.environ.get("ADMIN_EMAIL"))
    parser.add_argument("--password", default=os.environ.get("ADMIN_PASSWORD"))
    parser.add_argument("--dry-run", action="store_true")
    args = parser.parse_args()

    missing = [name for name in ("username", "email", "password") if not getattr(args, name)]
    if missing:
        print(f"Error: missing {', '.join(missing)} (flags or ADMIN_* env vars)")
        sys.exit(1)
    if not os.environ.get("DATABASE_URL") and not args.dry_run:
        print("Error: DATABASE_URL is required")
        sys.exit(1)
    if args.dry_run and not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"

    try:
        result = asyncio.run(
            bootstrap_admin(args.username, args.email.lower(), args.password, args.dry_run)
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)
    print(f"{result['status']}: {args.username} (id: {result['user_id']})")


if __name__ == "__main__":
    main()

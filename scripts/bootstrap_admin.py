#!/usr/bin/env python3
"""Create the first local admin account.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD='Secure-Password-1' python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --email admin@example.com --password 'Secure-Password-1' --name Admin

Environment Variables:
    ADMIN_EMAIL: Email for the admin account
    ADMIN_PASSWORD: Password for the admin account
    DATABASE_URL: Platform Postgres DSN (without it the memory store is used,
        persisted only when STATE_DIR is set)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

ADMIN_ROLE = "admin"


def validate_password(password: str) -> bool:
    """At least 12 characters drawn from 3+ character classes."""
    if len(password) < 12:
        return False
    classes = [
        any(c.isupper() for c in password),
        any(c.islower() for c in password),
        any(c.isdigit() for c in password),
        any(not c.isalnum() for c in password),
    ]
    return sum(classes) >= 3


async def bootstrap_admin(email: str, password: str, name: str = "", dry_run: bool = False) -> dict:
    # imported late so env defaults below apply before settings load
    from portalcore.service.runtime import get_runtime

    runtime = get_runtime()
    existing = runtime.store.get_account_by_email(email)

    if existing:
        if existing.is_federated:
            raise RuntimeError(f"{email} is a federated account and cannot hold a local password")
        if ADMIN_ROLE in runtime.store.get_account_roles(existing.id):
            print(f"Account {email} is already an admin (id: {existing.id})")
            return {"account_id": existing.id, "email": email, "status": "already_admin"}
        if dry_run:
            print(f"[DRY RUN] Would grant admin to existing account {email}")
            return {"account_id": existing.id, "email": email, "status": "dry_run"}
        runtime.store.grant_role(existing.id, ADMIN_ROLE)
        print(f"Granted admin to existing account {email} (id: {existing.id})")
        return {"account_id": existing.id, "email": email, "status": "promoted"}

    if dry_run:
        print(f"[DRY RUN] Would create admin account: {email}")
        return {"account_id": None, "email": email, "status": "dry_run"}

    account = await runtime.auth.create_account(email, name, password)
    runtime.store.grant_role(account.id, ADMIN_ROLE)
    print(f"Created admin account: {email} (id: {account.id})")
    return {"account_id": account.id, "email": email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin account for the portal core",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--email", default=os.environ.get("ADMIN_EMAIL"), help="Admin email (or ADMIN_EMAIL)")
    parser.add_argument(
        "--password", default=os.environ.get("ADMIN_PASSWORD"), help="Admin password (or ADMIN_PASSWORD)"
    )
    parser.add_argument("--name", default=os.environ.get("ADMIN_NAME", ""), help="Display name")
    parser.add_argument("--dry-run", action="store_true", help="Show what would be done without changes")
    args = parser.parse_args()

    if not args.email:
        print("Error: --email or ADMIN_EMAIL environment variable required")
        sys.exit(1)
    if not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        sys.exit(1)
    if not validate_password(args.password):
        print("Error: Password must be at least 12 characters with 3+ character classes")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL or STATE_DIR for persistence)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(bootstrap_admin(args.email, args.password, args.name, args.dry_run))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin account created.")
        print(f"  Email: {result['email']}")
        print(f"  Account ID: {result['account_id']}")
    elif result["status"] == "promoted":
        print("\nExisting account promoted to admin.")
    elif result["status"] == "already_admin":
        print("\nNo changes needed.")


if __name__ == "__main__":
    main()

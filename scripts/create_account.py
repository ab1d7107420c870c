#!/usr/bin/env python3
"""Create an account from the command line.

Usage:
    # Using environment variables:
    ACCOUNT_USERNAME=alice ACCOUNT_EMAIL=alice@example.com ACCOUNT_PASSWORD=... python scripts/create_account.py

    # Or with command line args:
    python scripts/create_account.py --username alice --email alice@example.com --password ...

Environment Variables:
    ACCOUNT_USERNAME / ACCOUNT_EMAIL / ACCOUNT_PASSWORD: account fields
    DATABASE_URL: PostgreSQL connection string (uses the memory store if not set)
    JWT_ACCESS_SECRET / JWT_REFRESH_SECRET: signing keys (ephemeral if not set)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys


async def create_account(
    username: str, email: str, password: str, dry_run: bool = False
) -> dict:
    """Register an account through the auth service.

    Returns:
        dict with account_id, email and status ('created', 'exists' or 'dry_run')
    """
    # Import here so env defaults are applied before settings load
    from gatehouse.service.errors import ConflictError
    from gatehouse.service.runtime import get_runtime
    from gatehouse.storage.models import RegisterInput

    runtime = get_runtime()

    existing = runtime.store.get_account_by_email(email)
    if existing:
        print(f"Account {email} already exists (id: {existing.id})")
        return {"account_id": existing.id, "email": email, "status": "exists"}

    if dry_run:
        print(f"[DRY RUN] Would create account: {username} <{email}>")
        return {"account_id": None, "email": email, "status": "dry_run"}

    try:
        account, tokens = await runtime.auth.register(
            RegisterInput(username=username, email=email, password=password)
        )
    except ConflictError as exc:
        print(f"Error: {exc.message}")
        return {"account_id": None, "email": email, "status": "conflict"}

    print(f"Created account: {username} <{email}> (id: {account.id})")
    return {
        "account_id": account.id,
        "email": email,
        "status": "created",
        "access_token": tokens.access_token,
    }


def main():
    parser = argparse.ArgumentParser(
        description="Create a gatehouse account",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--username",
        default=os.environ.get("ACCOUNT_USERNAME"),
        help="Username, 1-32 characters (or set ACCOUNT_USERNAME)",
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ACCOUNT_EMAIL"),
        help="Email (or set ACCOUNT_EMAIL)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("ACCOUNT_PASSWORD"),
        help="Password (or set ACCOUNT_PASSWORD)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    for name in ("username", "email", "password"):
        if not getattr(args, name):
            print(f"Error: --{name} or ACCOUNT_{name.upper()} environment variable required")
            sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("TEST_MODE", "true")
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    try:
        result = asyncio.run(
            create_account(args.username, args.email, args.password, args.dry_run)
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAccount created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  Account ID: {result['account_id']}")
    elif result["status"] == "conflict":
        sys.exit(1)


if __name__ == "__main__":
    main()

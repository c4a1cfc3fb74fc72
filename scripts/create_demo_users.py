#!/usr/bin/env python3
"""Seed verified demo accounts for local development.

Usage:
    # Default demo accounts (alice@example.com, bob@example.com):
    DEMO_PASSWORD=ChangeMe123 python scripts/create_demo_users.py

    # Specific accounts:
    python scripts/create_demo_users.py --email carol@example.com --email dan@example.com --password ChangeMe123

Environment Variables:
    DEMO_PASSWORD: Password shared by the seeded accounts
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)

Accounts are written straight to the account store already verified, so no
verification email is queued.
"""
from __future__ import annotations

import argparse
import os
import secrets
import sys

DEFAULT_DEMO_USERS = [
    ("alice@example.com", "Alice", "Demo"),
    ("bob@example.com", "Bob", "Demo"),
]


def seed_users(accounts: list[tuple[str, str, str]], password: str, dry_run: bool = False) -> list[dict]:
    """Create each account unless it exists.

    Returns:
        list of dicts with user_id, email, and status ('created', 'exists' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from gatehouse.service.runtime import get_runtime

    runtime = get_runtime()
    results = []
    for email, first_name, last_name in accounts:
        email = email.strip().lower()
        existing = runtime.store.get_user_by_email(email)
        if existing:
            print(f"User {email} already exists (id: {existing.id})")
            results.append({"user_id": existing.id, "email": email, "status": "exists"})
            continue
        if dry_run:
            print(f"[DRY RUN] Would create verified user: {email}")
            results.append({"user_id": None, "email": email, "status": "dry_run"})
            continue
        user = runtime.store.create_user(
            email,
            runtime.hasher.hash(password),
            first_name=first_name,
            last_name=last_name,
            is_verified=True,
        )
        print(f"Created verified user: {email} (id: {user.id})")
        results.append({"user_id": user.id, "email": email, "status": "created"})
    return results


def main():
    parser = argparse.ArgumentParser(
        description="Seed verified demo accounts for Gatehouse",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        action="append",
        help="Account email; repeat for several accounts (defaults to the demo set)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("DEMO_PASSWORD"),
        help="Password for every seeded account (or set DEMO_PASSWORD env var)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.password:
        print("Error: --password or DEMO_PASSWORD environment variable required")
        sys.exit(1)

    if not 8 <= len(args.password) <= 128:
        print("Error: Password must be between 8 and 128 characters")
        sys.exit(1)

    if args.email:
        accounts = [(email, email.split("@", 1)[0].title(), "Demo") for email in args.email]
    else:
        accounts = DEFAULT_DEMO_USERS

    # Throwaway signing secrets are enough for seeding; tokens are never issued here
    os.environ.setdefault("JWT_SECRET", secrets.token_urlsafe(48))
    os.environ.setdefault("REFRESH_JWT_SECRET", secrets.token_urlsafe(48))

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
    os.environ.setdefault("DISPATCH_BACKEND", "memory")

    try:
        results = seed_users(accounts, args.password, args.dry_run)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    created = sum(1 for result in results if result["status"] == "created")
    print(f"\n{created} account(s) created, {len(results) - created} skipped.")


if __name__ == "__main__":
    main()

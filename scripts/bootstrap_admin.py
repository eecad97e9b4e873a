#!/usr/bin/env python3
"""Create or promote the first marketplace administrator.

Usage:
    # Password from an argument:
    python scripts/bootstrap_admin.py --email admin@example.com --password 'S3curePassword'

    # Password from stdin:
    printf '%s' "$ADMIN_PASSWORD" | python scripts/bootstrap_admin.py --email admin@example.com --password-stdin

    # Generated password (printed once):
    python scripts/bootstrap_admin.py --email admin@example.com

An existing account is granted the admin role, activated and marked verified;
its password is left untouched.

Environment Variables:
    ADMIN_EMAIL: Email for the admin account
    ADMIN_PASSWORD: Password for the admin account
    DATABASE_URL: PostgreSQL connection string (uses a persisted memory store if not set)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import secrets
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def validate_password(password: str) -> bool:
    """8-128 characters with upper-case, lower-case and a digit."""
    if not 8 <= len(password) <= 128:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    return has_upper and has_lower and has_digit


def generate_password() -> str:
    while True:
        candidate = secrets.token_urlsafe(18)
        if validate_password(candidate):
            return candidate


async def bootstrap_admin(email: str, password: str, dry_run: bool = False) -> dict:
    """Create or promote an admin account.

    Returns:
        dict with user_id, email, and status ('created', 'promoted', 'already_admin' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from gemvault.service.rbac import ADMIN_ROLE
    from gemvault.service.runtime import get_runtime
    from gemvault.storage.common import normalize_email
    from gemvault.storage.models import AccountStatus

    runtime = get_runtime()
    email = normalize_email(email)
    existing = runtime.store.get_account_by_email(email)

    if existing:
        is_admin = runtime.rbac.is_admin(existing.id)
        if is_admin and existing.status == AccountStatus.ACTIVE and existing.email_verified:
            print(f"Account {email} is already an active admin (id: {existing.id})")
            return {"user_id": existing.id, "email": email, "status": "already_admin"}

        if dry_run:
            print(f"[DRY RUN] Would promote existing account {email} to admin")
            return {"user_id": existing.id, "email": email, "status": "dry_run"}

        with runtime.store.transaction():
            if not is_admin:
                runtime.roles.assign_role(existing.id, ADMIN_ROLE)
            runtime.store.set_account_status(
                existing.id, AccountStatus.ACTIVE, email_verified=True
            )
        print(f"Promoted existing account {email} to admin (id: {existing.id})")
        return {"user_id": existing.id, "email": email, "status": "promoted"}

    if dry_run:
        print(f"[DRY RUN] Would create admin account: {email}")
        return {"user_id": None, "email": email, "status": "dry_run"}

    password_hash = await runtime.auth._hash_password(password)
    with runtime.store.transaction():
        account = runtime.store.create_account(email, password_hash)
        runtime.roles.assign_role(account.id, ADMIN_ROLE)
        runtime.store.set_account_status(account.id, AccountStatus.ACTIVE, email_verified=True)

    print(f"Created admin account: {email} (id: {account.id})")
    return {"user_id": account.id, "email": email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin account for GemVault",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ADMIN_EMAIL"),
        help="Admin email (or set ADMIN_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("ADMIN_PASSWORD"),
        help="Admin password (or set ADMIN_PASSWORD env var)",
    )
    parser.add_argument(
        "--password-stdin",
        action="store_true",
        help="Read the password from stdin",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or ADMIN_EMAIL environment variable required")
        sys.exit(1)

    generated = False
    password = args.password
    if args.password_stdin:
        password = sys.stdin.readline().rstrip("\n")
    if not password:
        password = generate_password()
        generated = True

    if not validate_password(password):
        print("Error: Password must be 8-128 characters with upper-case, lower-case and a digit")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("MEMORY_STORE_PERSIST", "true")
        print("Note: Using persisted in-memory store (set DATABASE_URL for PostgreSQL)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(bootstrap_admin(args.email, password, args.dry_run))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin account created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
        if generated:
            print(f"  Password: {password}")
    elif result["status"] == "promoted":
        print("\nExisting account promoted to admin!")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - account is already an admin.")


if __name__ == "__main__":
    main()

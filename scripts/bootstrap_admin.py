#!/usr/bin/env python3
"""Bootstrap an administrator account for initial setup.

Usage:
    # Using environment variables:
    ADMIN_USERNAME=admin ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD='Secure#Pass123' python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --username admin --email admin@example.com --password 'Secure#Pass123'

Environment Variables:
    ADMIN_USERNAME: Username for the admin account (defaults to the email local part)
    ADMIN_EMAIL: Email for the admin account
    ADMIN_PASSWORD: Password for the admin account (must satisfy the password policy)
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def bootstrap_admin(username: str, email: str, password: str, dry_run: bool = False) -> dict:
    """Create an active, verified admin account.

    Returns:
        dict with account_id, email, and status ('created', 'exists', 'dry_run'
        or 'weak_password')
    """
    # Import here to avoid loading config before env vars are set
    from procauth.service.runtime import get_runtime
    from procauth.storage.models import AccountStatus, utcnow

    runtime = get_runtime()
    credentials = runtime.auth.credentials

    existing = runtime.store.get_account_by_email(email) or runtime.store.get_account_by_login(
        username
    )
    if existing:
        print(f"Account {existing.email} already exists (id: {existing.id}, roles: {existing.roles})")
        return {"account_id": existing.id, "email": existing.email, "status": "exists"}

    report = credentials.assess_strength(password)
    if not report.valid:
        print(f"Password rejected: {', '.join(report.violations)}")
        return {"account_id": None, "email": email, "status": "weak_password"}

    if dry_run:
        print(f"[DRY RUN] Would create admin account: {username} <{email}>")
        return {"account_id": None, "email": email, "status": "dry_run"}

    account = runtime.store.create_account(
        username,
        email,
        credentials.hash(password),
        status=AccountStatus.ACTIVE,
        roles=["admin"],
    )
    runtime.store.mark_email_verified(account.id, utcnow())

    print(f"Created admin account: {account.username} <{account.email}> (id: {account.id})")
    return {"account_id": account.id, "email": account.email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin account for procauth",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--username",
        default=os.environ.get("ADMIN_USERNAME"),
        help="Admin username (or set ADMIN_USERNAME env var)",
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
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or ADMIN_EMAIL environment variable required")
        sys.exit(1)

    if not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        sys.exit(1)

    username = args.username or args.email.split("@", 1)[0]

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/procauth-bootstrap"

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store persisted under SHARED_FS_ROOT")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = bootstrap_admin(username, args.email, args.password, args.dry_run)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "weak_password":
        sys.exit(1)
    if result["status"] == "created":
        print("\nAdmin account created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  Account ID: {result['account_id']}")
    elif result["status"] == "exists":
        print("\nNo changes made.")


if __name__ == "__main__":
    main()

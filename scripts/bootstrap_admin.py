#!/usr/bin/env python3
"""Create the first admin account.

Usage:
    # Using environment variables:
    ADMIN_USERNAME=root ADMIN_PASSWORD='SecurePassword123!' python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --name "Root" --username root --password 'SecurePassword123!'

Environment Variables:
    ADMIN_NAME: Display name for the admin (defaults to the username)
    ADMIN_USERNAME: Username for the admin
    ADMIN_PASSWORD: Password for the admin
    DATABASE_URL: PostgreSQL connection string (uses memory store if not set)

Only works while no admin exists; later admins are registered by an
authenticated admin through POST /v1/admins/register.
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def bootstrap_admin(name: str, username: str, password: str, dry_run: bool = False) -> dict:
    """Create the first admin.

    Returns:
        dict with admin_id, username, status ('created', 'exists' or 'dry_run')
        and, when created, an admin token
    """
    # Import here to avoid loading config before env vars are set
    from tokengate.service.runtime import get_runtime

    runtime = get_runtime()

    if not runtime.admins.registration_open():
        print("An admin already exists; register further admins through the API")
        return {"admin_id": None, "username": username, "status": "exists"}

    if dry_run:
        print(f"[DRY RUN] Would create admin: {username}")
        return {"admin_id": None, "username": username, "status": "dry_run"}

    admin = runtime.admins.register(
        name=name,
        username=username,
        password=password,
        confirm_password=password,
    )
    print(f"Created admin: {username} (id: {admin.id})")
    return {
        "admin_id": admin.id,
        "username": username,
        "status": "created",
        "token": runtime.admins.issue_token(admin),
    }


def main():
    parser = argparse.ArgumentParser(
        description="Create the first Tokengate admin",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--name", default=os.environ.get("ADMIN_NAME"))
    parser.add_argument(
        "--username",
        default=os.environ.get("ADMIN_USERNAME"),
        help="Admin username (or set ADMIN_USERNAME env var)",
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

    if not args.username:
        print("Error: --username or ADMIN_USERNAME environment variable required")
        sys.exit(1)

    if not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    from tokengate.service.errors import ServiceError

    try:
        result = bootstrap_admin(args.name or args.username, args.username, args.password, args.dry_run)
    except ServiceError as e:
        print(f"Error: {e.message}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin created successfully!")
        print(f"  Username: {result['username']}")
        print(f"  Admin ID: {result['admin_id']}")
        print(f"  Token: {result['token'][:50]}...")


if __name__ == "__main__":
    main()

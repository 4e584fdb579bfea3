#!/usr/bin/env python3
"""Create a panel account from the command line.

Usage:
    # Using environment variables:
    ACCOUNT_USERNAME=ops ACCOUNT_EMAIL=ops@example.com ACCOUNT_PASSWORD=secret1 python scripts/create_account.py

    # Or with command line args:
    python scripts/create_account.py --username ops --email ops@example.com --password secret1

    # Enrol two-factor straight away and print the provisioning URI:
    python scripts/create_account.py --username ops --email ops@example.com --password secret1 --enable-2fa

Environment Variables:
    ACCOUNT_USERNAME, ACCOUNT_EMAIL, ACCOUNT_PASSWORD: credentials for the new account
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def create_account(
    username: str,
    email: str,
    password: str,
    *,
    enable_2fa: bool = False,
    dry_run: bool = False,
) -> dict:
    """Create the account unless the email is already registered.

    Returns:
        dict with account_id, email, status ('created', 'exists' or 'dry_run')
        and, when requested, the two-factor provisioning URI
    """
    # Import here to avoid loading config before env vars are set
    from hostpanel.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        existing = runtime.store.get_account_by_email(email)
        if existing:
            print(f"Account {email} already exists (id: {existing.id})")
            return {"account_id": existing.id, "email": existing.email, "status": "exists"}

        if dry_run:
            print(f"[DRY RUN] Would create account: {username} <{email}>")
            return {"account_id": None, "email": email, "status": "dry_run"}

        account = await runtime.accounts.create_account(username, email, password)
        result = {
            "account_id": account.id,
            "email": account.email,
            "status": "created",
            "api_key": account.api_key,
        }
        if enable_2fa:
            enrollment = runtime.two_factor.begin_enrollment(account.id)
            result["provisioning_uri"] = enrollment.provisioning_uri
        return result
    finally:
        await runtime.close()


def main():
    parser = argparse.ArgumentParser(
        description="Create a hosting panel account",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--username",
        default=os.environ.get("ACCOUNT_USERNAME"),
        help="Account username (or set ACCOUNT_USERNAME env var)",
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ACCOUNT_EMAIL"),
        help="Account email (or set ACCOUNT_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("ACCOUNT_PASSWORD"),
        help="Account password (or set ACCOUNT_PASSWORD env var)",
    )
    parser.add_argument(
        "--enable-2fa",
        action="store_true",
        help="Start two-factor enrollment and print the provisioning URI",
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
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    try:
        result = asyncio.run(
            create_account(
                args.username,
                args.email,
                args.password,
                enable_2fa=args.enable_2fa,
                dry_run=args.dry_run,
            )
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAccount created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  Account ID: {result['account_id']}")
        print(f"  API key: {result['api_key']}")
        if result.get("provisioning_uri"):
            print(f"  Two-factor URI (confirm with a code to enable): {result['provisioning_uri']}")
    elif result["status"] == "exists":
        print("\nNo changes made - account already exists.")


if __name__ == "__main__":
    main()

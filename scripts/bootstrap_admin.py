#!/usr/bin/env python3
"""Create an Admin account, or promote an existing account to Admin.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD='Secret1!' python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --email admin@example.com --password 'Secret1!' \
        --first-name Site --last-name Admin

Environment Variables:
    ADMIN_EMAIL: Email for the admin account
    ADMIN_PASSWORD: Password for the admin account
    DATABASE_URL: PostgreSQL connection string (memory store when unset)
    JWT_SECRET: Signing secret (a throwaway one is generated when unset)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import secrets
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

ADMIN_ROLE = "Admin"


async def bootstrap_admin(
    email: str,
    password: str,
    first_name: str,
    last_name: str,
    dry_run: bool = False,
) -> dict:
    """Create or promote the admin account.

    Returns:
        dict with user_id, email and status ('created', 'promoted',
        'already_admin' or 'dry_run')
    """
    # deferred so the environment is settled before settings load
    from realtyauth.service.runtime import get_runtime

    runtime = get_runtime()
    existing = runtime.store.get_user_by_email(email)

    if existing:
        if existing.role == ADMIN_ROLE:
            print(f"User {email} already exists as admin (id: {existing.id})")
            return {"user_id": existing.id, "email": email, "status": "already_admin"}
        if dry_run:
            print(f"[DRY RUN] Would promote existing user {email} to admin")
            return {"user_id": existing.id, "email": email, "status": "dry_run"}
        await runtime.auth.set_user_role(existing.id, ADMIN_ROLE)
        print(f"Promoted existing user {email} to admin (id: {existing.id})")
        return {"user_id": existing.id, "email": email, "status": "promoted"}

    if dry_run:
        print(f"[DRY RUN] Would create admin user: {email}")
        return {"user_id": None, "email": email, "status": "dry_run"}

    result = await runtime.auth.register(
        email, password, first_name, last_name, role=ADMIN_ROLE
    )
    print(f"Created admin user: {email} (id: {result.user.id})")
    return {
        "user_id": result.user.id,
        "email": email,
        "status": "created",
        "access_token": result.access_token,
    }


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin account for the real estate auth API",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--email", default=os.environ.get("ADMIN_EMAIL"))
    parser.add_argument("--password", default=os.environ.get("ADMIN_PASSWORD"))
    parser.add_argument("--first-name", default="Site")
    parser.add_argument("--last-name", default="Admin")
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

    from realtyauth.api.schemas import _validate_email, _validate_password_strength

    try:
        email = _validate_email(args.email)
        _validate_password_strength(args.password)
    except ValueError as exc:
        print(f"Error: {exc}")
        sys.exit(1)

    if not os.environ.get("JWT_SECRET"):
        os.environ["JWT_SECRET"] = secrets.token_urlsafe(48)
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    from realtyauth.service.errors import ServiceError
    from realtyauth.storage.errors import StoreUnavailable

    try:
        result = asyncio.run(
            bootstrap_admin(
                email, args.password, args.first_name, args.last_name, args.dry_run
            )
        )
    except (ServiceError, StoreUnavailable) as exc:
        print(f"Error: {exc}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin user created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")


if __name__ == "__main__":
    main()

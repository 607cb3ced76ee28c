#!/usr/bin/env python3
"""Create or promote a verified ADMIN/SUPERADMIN identity.

The identity is marked verified so its owner can log in straight away with
the normal email OTP flow.

Usage:
    ADMIN_EMAIL=admin@example.com DATABASE_URL=postgresql://... python scripts/bootstrap_admin.py
    python scripts/bootstrap_admin.py --email root@example.com --role SUPERADMIN --state-dir ./state

Environment Variables:
    ADMIN_EMAIL: Email for the admin identity
    DATABASE_URL: PostgreSQL connection string (uses the memory store if not set)
    STATE_DIR: Snapshot directory for the memory store (required without DATABASE_URL)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def bootstrap_admin(
    email: str, role: str = "ADMIN", name: str | None = None, dry_run: bool = False
) -> dict:
    """Create or promote an identity to ``role``.

    Returns:
        dict with identity_id, email, role and status
        ('created', 'promoted', 'already_admin' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from otpgate.service.auth import normalize_email, parse_role
    from otpgate.service.runtime import get_runtime

    target_role = parse_role(role)
    if target_role is None or not target_role.is_elevated:
        raise ValueError("role must be ADMIN or SUPERADMIN")
    email = normalize_email(email)

    runtime = get_runtime()
    existing = runtime.store.get_identity_by_email(email)

    if existing:
        if existing.role == target_role and existing.is_verified:
            print(f"{email} already holds {target_role.value} (id: {existing.id})")
            return {
                "identity_id": existing.id,
                "email": email,
                "role": target_role.value,
                "status": "already_admin",
            }
        if dry_run:
            print(f"[DRY RUN] Would promote {email} to {target_role.value}")
            return {"identity_id": existing.id, "email": email, "role": target_role.value, "status": "dry_run"}

        runtime.store.update_profile(existing.id, role=target_role)
        runtime.store.mark_verified(existing.id)
        # outstanding refresh tokens still carry the old role
        runtime.store.set_refresh_token(existing.id, None)
        print(f"Promoted {email} to {target_role.value} (id: {existing.id})")
        return {
            "identity_id": existing.id,
            "email": email,
            "role": target_role.value,
            "status": "promoted",
        }

    if dry_run:
        print(f"[DRY RUN] Would create {target_role.value} identity: {email}")
        return {"identity_id": None, "email": email, "role": target_role.value, "status": "dry_run"}

    identity = runtime.store.create_identity(
        email, name, role=target_role, is_verified=True
    )
    print(f"Created {target_role.value} identity: {email} (id: {identity.id})")
    return {
        "identity_id": identity.id,
        "email": email,
        "role": target_role.value,
        "status": "created",
    }


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an ADMIN or SUPERADMIN identity for otpgate",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ADMIN_EMAIL"),
        help="Admin email (or set ADMIN_EMAIL env var)",
    )
    parser.add_argument(
        "--role",
        default="ADMIN",
        choices=["ADMIN", "SUPERADMIN"],
        help="Role to grant (default: ADMIN)",
    )
    parser.add_argument("--name", default=None, help="Display name for a new identity")
    parser.add_argument(
        "--state-dir",
        default=os.environ.get("STATE_DIR"),
        help="Memory store snapshot directory (or set STATE_DIR env var)",
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

    if os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "false"
    elif args.state_dir:
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ["STATE_DIR"] = args.state_dir
    else:
        print("Error: set DATABASE_URL, or --state-dir/STATE_DIR for the memory store")
        sys.exit(1)

    # the script never issues tokens, so throwaway secrets are enough
    if not os.environ.get("JWT_ACCESS_SECRET") or not os.environ.get("JWT_REFRESH_SECRET"):
        os.environ.setdefault("TEST_MODE", "true")

    try:
        result = bootstrap_admin(args.email, args.role, args.name, args.dry_run)
    except (ValueError, RuntimeError) as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nIdentity created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  Identity ID: {result['identity_id']}")
        print(f"  Role: {result['role']}")
    elif result["status"] == "promoted":
        print(f"\nExisting identity promoted to {result['role']}!")
    elif result["status"] == "already_admin":
        print("\nNo changes needed.")


if __name__ == "__main__":
    main()

#!/usr/bin/env python3
"""Grant (or remove) the admin role on a subject at the identity provider.

The subject's existing sessions are revoked so the new claims take effect on
its next login.

Usage:
    IDENTITY_PROVIDER_URL=https://idp.internal python scripts/grant_admin.py --subject-id abc123
    python scripts/grant_admin.py --subject-id abc123 --revoke

Environment Variables:
    IDENTITY_PROVIDER_URL, IDENTITY_PROVIDER_API_KEY: provider endpoint and key
    REDIS_URL: session store whose generation floor is advanced
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


async def grant_admin(subject_id: str, *, revoke: bool = False, dry_run: bool = False) -> dict:
    # Import here so env defaults set in main() apply to settings
    from authgate.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        subject = await runtime.auth.get_profile(subject_id)
        current = subject.claims.to_payload()
        if revoke:
            current.pop("role", None)
        else:
            current["role"] = ADMIN_ROLE

        if subject.claims.role == current.get("role"):
            return {"subject_id": subject_id, "status": "unchanged"}
        if dry_run:
            return {"subject_id": subject_id, "status": "dry_run", "claims": current}

        claims = await runtime.auth.set_claims(subject_id, current)
        return {"subject_id": subject_id, "status": "updated", "claims": claims.to_payload()}
    finally:
        await runtime.close()


def main():
    parser = argparse.ArgumentParser(
        description="Grant the admin role to an authgate subject",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--subject-id",
        default=os.environ.get("ADMIN_SUBJECT_ID"),
        help="Subject id at the identity provider (or set ADMIN_SUBJECT_ID)",
    )
    parser.add_argument("--revoke", action="store_true", help="Remove the admin role instead")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args()

    if not args.subject_id:
        print("Error: --subject-id or ADMIN_SUBJECT_ID environment variable required")
        sys.exit(1)

    # Claims changes do not mint tokens; a throwaway key is enough to start the runtime
    if not os.environ.get("JWT_SECRET") and not os.environ.get("JWT_SECRET_FILE"):
        import secrets

        os.environ["JWT_SECRET"] = secrets.token_urlsafe(48)

    try:
        result = asyncio.run(grant_admin(args.subject_id, revoke=args.revoke, dry_run=args.dry_run))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    print(f"{result['status']}: {result['subject_id']}")
    if result.get("claims") is not None:
        print(f"  claims: {result['claims']}")


if __name__ == "__main__":
    main()

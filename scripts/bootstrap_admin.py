#!/usr/bin/env python3
"""Install the default role/permission/module catalog and ensure a super-admin exists.

Examples:
    python scripts/bootstrap_admin.py --email ops@example.com --password 'Str0ngPassphrase'
    ADMIN_EMAIL=ops@example.com ADMIN_PASSWORD='Str0ngPassphrase' python scripts/bootstrap_admin.py --dry-run

An existing identity with the given email is promoted rather than recreated.
Without DATABASE_URL the run uses a throwaway in-memory store, which is only
useful for checking the password against the policy.
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def bootstrap_admin(email: str, password: str, dry_run: bool = False) -> dict:
    """Seed the catalog, then create or promote ``email`` to super-admin.

    ``status`` in the returned dict is one of created, promoted,
    already_admin or dry_run.
    """
    # settings are read on first runtime access, after main() filled the environment
    from warden.service.policy import SUPER_ADMIN_ROLE
    from warden.service.rate_limit import normalize_email
    from warden.service.runtime import get_runtime
    from warden.service.seed import seed_defaults

    runtime = get_runtime()
    email = normalize_email(email)

    if dry_run:
        existing = runtime.store.get_identity_by_email(email)
        action = "promote existing identity" if existing else "create identity"
        print(f"[DRY RUN] Would seed the catalog and {action} {email} as {SUPER_ADMIN_ROLE}")
        return {"identity_id": existing.id if existing else None, "email": email, "status": "dry_run"}

    seed_defaults(runtime.store)
    existing = runtime.store.get_identity_by_email(email)

    if existing:
        if runtime.rbac.has_role(existing.id, SUPER_ADMIN_ROLE):
            print(f"Identity {email} is already a super-admin (id: {existing.id})")
            return {"identity_id": existing.id, "email": email, "status": "already_admin"}
        runtime.rbac.assign_role(existing.id, SUPER_ADMIN_ROLE, allow_system=True)
        runtime.audit.log_admin_action(
            None, "super_admin_promoted", resource_type="identity", resource_id=existing.id
        )
        print(f"Promoted existing identity {email} to super-admin (id: {existing.id})")
        return {"identity_id": existing.id, "email": email, "status": "promoted"}

    identity = runtime.auth.signup(email, password, display_name="Administrator")
    runtime.rbac.assign_role(identity.id, SUPER_ADMIN_ROLE, allow_system=True)
    runtime.audit.log_admin_action(
        None, "super_admin_created", resource_type="identity", resource_id=identity.id
    )
    print(f"Created super-admin: {email} (id: {identity.id})")
    return {"identity_id": identity.id, "email": email, "status": "created"}


def _parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Seed the Warden catalog and create or promote a super-admin",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--email", default=os.environ.get("ADMIN_EMAIL"), help="defaults to $ADMIN_EMAIL")
    parser.add_argument(
        "--password", default=os.environ.get("ADMIN_PASSWORD"), help="defaults to $ADMIN_PASSWORD"
    )
    parser.add_argument("--dry-run", action="store_true", help="report the planned change and exit")
    return parser.parse_args(argv)


def _prepare_environment() -> None:
    """Fill in the settings a one-off CLI run can do without."""
    if "JWT_SECRET" not in os.environ:
        import secrets

        os.environ["JWT_SECRET"] = secrets.token_urlsafe(48)
    os.environ.setdefault("SHARED_FS_ROOT", "/tmp/warden-bootstrap")
    os.environ.setdefault("TEST_MODE", "true")
    if "DATABASE_URL" not in os.environ:
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: DATABASE_URL is unset; changes live only in this process's memory store")


def main(argv=None) -> int:
    args = _parse_args(argv)
    missing = [flag for flag, value in (("--email", args.email), ("--password", args.password)) if not value]
    if missing:
        print(f"Error: {' and '.join(missing)} required (or ADMIN_EMAIL / ADMIN_PASSWORD)")
        return 1

    from warden.service.auth import password_policy_violations

    problems = password_policy_violations(args.password)
    if problems:
        print("Error: password must contain " + ", ".join(problems))
        return 1

    _prepare_environment()
    try:
        result = bootstrap_admin(args.email, args.password, args.dry_run)
    except Exception as exc:
        print(f"Error: {exc}")
        return 1

    summaries = {
        "created": "Super-admin created.",
        "promoted": "Existing identity promoted to super-admin.",
        "already_admin": "Nothing to do; identity is already a super-admin.",
    }
    if result["status"] in summaries:
        print(f"\n{summaries[result['status']]}\n  email: {result['email']}\n  id:    {result['identity_id']}")
    return 0


if __name__ == "__main__":
    sys.exit(main())

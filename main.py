#!/usr/bin/env python3
"""
TravelAuth -- Administrative command line.

Usage:
  python main.py seed-tenant acme
  python main.py grant-role acme alice ROLE_ADMIN
  python main.py purge

seed-tenant creates the default permission and role catalogue for a tenant
(registration does this lazily; seeding up front lets an operator create the
first administrator before anyone signs up). grant-role is how that first
administrator is made. purge deletes expired refresh and one-time tokens.

Environment variables:
  DATABASE_URL  SQLAlchemy URL of the credential store (see core/config.py).
  SECRET_KEY    Required unless DEBUG=true.
"""

import argparse
import sys

from auth.errors import AuthError
from auth.notifications import NotificationQueue
from auth.service import build_auth_service
from auth.store import create_store_engine
from auth.tenant import normalize_tenant
from core.config import get_settings


def _seed_tenant(service, tenant_id: str) -> int:
    service.rbac.ensure_default_catalogue(tenant_id)
    roles = service.rbac.list_roles(tenant_id)
    print(f"Tenant '{tenant_id}': {len(roles)} roles, {len(service.rbac.list_permissions(tenant_id))} permissions.")
    for role in roles:
        print(f"  {role.name:<24} {'active' if role.is_active else 'inactive'}")
    return 0


def _grant_role(service, tenant_id: str, username: str, role_name: str) -> int:
    user = service.users.get_by_username(tenant_id, username)
    if user is None:
        print(f"  [!] No user '{username}' in tenant '{tenant_id}'.")
        return 1
    role = service.rbac.get_role_by_name(tenant_id, role_name)
    if role is None:
        print(f"  [!] No role '{role_name}' in tenant '{tenant_id}'. Run seed-tenant first?")
        return 1
    service.rbac.assign_role(user.id, role.id)
    print(f"Granted {role_name} to {username} in tenant '{tenant_id}'.")
    print("  Takes effect on the user's next login or token refresh.")
    return 0


def _purge(service) -> int:
    print(f"Purged {service.purge_expired()} expired tokens.")
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="travelauth",
        description="TravelAuth administrative commands.",
        epilog=__doc__,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    seed = sub.add_parser("seed-tenant", help="Create the default roles and permissions for a tenant")
    seed.add_argument("tenant", help="Tenant identifier, e.g. 'acme'")

    grant = sub.add_parser("grant-role", help="Assign a role to an existing user")
    grant.add_argument("tenant", help="Tenant identifier")
    grant.add_argument("username", help="Username within the tenant")
    grant.add_argument("role", help="Role name, e.g. ROLE_ADMIN")

    sub.add_parser("purge", help="Delete expired refresh and one-time tokens")

    args = parser.parse_args()

    settings = get_settings()
    engine = create_store_engine(settings.database_url)
    service = build_auth_service(engine, settings, NotificationQueue())
    try:
        if args.command == "seed-tenant":
            code = _seed_tenant(service, normalize_tenant(args.tenant))
        elif args.command == "grant-role":
            code = _grant_role(service, normalize_tenant(args.tenant), args.username, args.role.upper())
        else:
            code = _purge(service)
    except AuthError as exc:
        print(f"  [!] {exc.message}")
        code = 1
    finally:
        engine.dispose()
    sys.exit(code)


if __name__ == "__main__":
    main()

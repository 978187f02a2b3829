"""
auth/rbac.py -- Role/permission persistence and permission checks.

Two halves:

  RBACStore -- SQLAlchemy Core repository for roles, permissions and the two
      join collections (role_permissions, user_roles). Every join row carries
      tenant_id and every write checks that both parents share it, so a role
      can never hold another tenant's permission and a user can never hold
      another tenant's role.

  effective_permissions() / has_permission() -- pure functions over the claim
      snapshot embedded in an access token. They never read the database.
      Role or permission changes therefore become visible only when a new
      access token is issued (login or refresh). That staleness window is
      bounded by ACCESS_TOKEN_EXPIRE_SECONDS and is the price of per-request
      authorization with zero store round-trips.

grants_for_user() is the single place where the live database is consulted
to build that snapshot: union over the user's active roles of each role's
active permissions.

Layer rule: no imports from api/ or gateway/.
"""

from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from auth.errors import DuplicatePermission, DuplicateRole, NotFound, TenantMismatch
from auth.models import AccessClaims, Grants, Identity, Permission, Role
from auth.store import now_iso, permissions, role_permissions, roles, user_roles, users

logger = logging.getLogger("travelauth.rbac")

# ---------------------------------------------------------------------------
# Default catalogue seeded into every tenant on first use
# ---------------------------------------------------------------------------

RESOURCES = ("USER", "TRAVEL", "BOOKING", "PAYMENT", "ANALYTICS", "RBAC")
ACTIONS = ("READ", "CREATE", "UPDATE", "DELETE")

ROLE_ADMIN = "ROLE_ADMIN"
ROLE_USER = "ROLE_USER"
ROLE_MODERATOR = "ROLE_MODERATOR"
ROLE_TRAVEL_AGENT = "ROLE_TRAVEL_AGENT"
ROLE_CUSTOMER_SERVICE = "ROLE_CUSTOMER_SERVICE"

DEFAULT_ROLES: dict[str, tuple[str, tuple[str, ...]]] = {
    ROLE_ADMIN: (
        "Full access to every resource in the tenant",
        tuple(f"{r}:{a}" for r in RESOURCES for a in ACTIONS),
    ),
    ROLE_USER: (
        "Registered traveller",
        ("USER:READ", "TRAVEL:READ", "BOOKING:READ", "BOOKING:CREATE"),
    ),
    ROLE_MODERATOR: (
        "Moderates user accounts and content",
        ("USER:READ", "USER:UPDATE", "TRAVEL:READ", "TRAVEL:UPDATE", "BOOKING:READ"),
    ),
    ROLE_TRAVEL_AGENT: (
        "Manages travel packages and bookings",
        (
            "TRAVEL:READ",
            "TRAVEL:CREATE",
            "TRAVEL:UPDATE",
            "BOOKING:READ",
            "BOOKING:CREATE",
            "BOOKING:UPDATE",
            "PAYMENT:READ",
        ),
    ),
    ROLE_CUSTOMER_SERVICE: (
        "Supports customers with bookings and payments",
        ("USER:READ", "BOOKING:READ", "BOOKING:UPDATE", "PAYMENT:READ", "PAYMENT:UPDATE"),
    ),
}


def permission_name(resource: str, action: str) -> str:
    """Default tenant-unique label for a permission, e.g. BOOKING_READ."""
    return f"{resource}_{action}"


# ---------------------------------------------------------------------------
# Claim-snapshot checks (no database access)
# ---------------------------------------------------------------------------


def effective_permissions(claims: AccessClaims | Identity) -> frozenset[str]:
    """Return the resource:action set granted by the token snapshot."""
    return claims.permissions


def has_permission(claims: AccessClaims | Identity, resource: str, action: str) -> bool:
    return f"{resource.upper()}:{action.upper()}" in claims.permissions


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class RBACStore:
    """Repository for roles, permissions and their tenant-scoped relationships."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    # ------------------------------------------------------------------
    # Roles
    # ------------------------------------------------------------------

    def create_role(self, role: Role) -> int:
        stamp = now_iso()
        try:
            with self.engine.begin() as conn:
                result = conn.execute(
                    roles.insert().values(
                        tenant_id=role.tenant_id,
                        name=role.name,
                        description=role.description,
                        is_active=1 if role.is_active else 0,
                        created_at=stamp,
                        updated_at=stamp,
                    )
                )
                return result.inserted_primary_key[0]
        except IntegrityError as exc:
            raise DuplicateRole() from exc

    def get_role(self, role_id: int) -> Role | None:
        with self.engine.connect() as conn:
            row = conn.execute(roles.select().where(roles.c.id == role_id)).fetchone()
        return _row_to_role(row) if row is not None else None

    def get_role_by_name(self, tenant_id: str, name: str) -> Role | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                roles.select().where((roles.c.tenant_id == tenant_id) & (roles.c.name == name))
            ).fetchone()
        return _row_to_role(row) if row is not None else None

    def list_roles(self, tenant_id: str) -> list[Role]:
        with self.engine.connect() as conn:
            rows = conn.execute(roles.select().where(roles.c.tenant_id == tenant_id).order_by(roles.c.name)).fetchall()
        return [_row_to_role(r) for r in rows]

    def set_role_active(self, role_id: int, is_active: bool) -> Role:
        with self.engine.begin() as conn:
            result = conn.execute(
                roles.update().where(roles.c.id == role_id).values(is_active=1 if is_active else 0, updated_at=now_iso())
            )
        if result.rowcount == 0:
            raise NotFound("Role not found.")
        return self.get_role(role_id)

    # ------------------------------------------------------------------
    # Permissions
    # ------------------------------------------------------------------

    def create_permission(self, permission: Permission) -> int:
        stamp = now_iso()
        try:
            with self.engine.begin() as conn:
                result = conn.execute(
                    permissions.insert().values(
                        tenant_id=permission.tenant_id,
                        name=permission.name,
                        description=permission.description,
                        resource=permission.resource.upper(),
                        action=permission.action.upper(),
                        is_active=1 if permission.is_active else 0,
                        created_at=stamp,
                        updated_at=stamp,
                    )
                )
                return result.inserted_primary_key[0]
        except IntegrityError as exc:
            raise DuplicatePermission() from exc

    def get_permission(self, permission_id: int) -> Permission | None:
        with self.engine.connect() as conn:
            row = conn.execute(permissions.select().where(permissions.c.id == permission_id)).fetchone()
        return _row_to_permission(row) if row is not None else None

    def get_permission_by_name(self, tenant_id: str, name: str) -> Permission | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                permissions.select().where((permissions.c.tenant_id == tenant_id) & (permissions.c.name == name))
            ).fetchone()
        return _row_to_permission(row) if row is not None else None

    def list_permissions(self, tenant_id: str) -> list[Permission]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                permissions.select().where(permissions.c.tenant_id == tenant_id).order_by(permissions.c.name)
            ).fetchall()
        return [_row_to_permission(r) for r in rows]

    def set_permission_active(self, permission_id: int, is_active: bool) -> Permission:
        with self.engine.begin() as conn:
            result = conn.execute(
                permissions.update()
                .where(permissions.c.id == permission_id)
                .values(is_active=1 if is_active else 0, updated_at=now_iso())
            )
        if result.rowcount == 0:
            raise NotFound("Permission not found.")
        return self.get_permission(permission_id)

    def role_permissions(self, role_id: int) -> list[Permission]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                permissions.select()
                .join_from(permissions, role_permissions, role_permissions.c.permission_id == permissions.c.id)
                .where(role_permissions.c.role_id == role_id)
                .order_by(permissions.c.name)
            ).fetchall()
        return [_row_to_permission(r) for r in rows]

    # ------------------------------------------------------------------
    # Relationships (tenant checked at write time)
    # ------------------------------------------------------------------

    def grant_permission(self, role_id: int, permission_id: int) -> None:
        """Attach a permission to a role. Idempotent. Both must share a tenant."""
        with self.engine.begin() as conn:
            role_tenant = conn.execute(select(roles.c.tenant_id).where(roles.c.id == role_id)).scalar()
            perm_tenant = conn.execute(select(permissions.c.tenant_id).where(permissions.c.id == permission_id)).scalar()
            if role_tenant is None or perm_tenant is None:
                raise NotFound("Role or permission not found.")
            if role_tenant != perm_tenant:
                raise TenantMismatch()
            exists = conn.execute(
                select(role_permissions.c.role_id).where(
                    (role_permissions.c.role_id == role_id) & (role_permissions.c.permission_id == permission_id)
                )
            ).first()
            if exists is None:
                conn.execute(
                    role_permissions.insert().values(role_id=role_id, permission_id=permission_id, tenant_id=role_tenant)
                )

    def revoke_permission(self, role_id: int, permission_id: int) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(
                role_permissions.delete().where(
                    (role_permissions.c.role_id == role_id) & (role_permissions.c.permission_id == permission_id)
                )
            )
        return result.rowcount > 0

    def assign_role(self, user_id: int, role_id: int) -> None:
        """Give a user a role. Idempotent. Both must share a tenant."""
        with self.engine.begin() as conn:
            user_tenant = conn.execute(select(users.c.tenant_id).where(users.c.id == user_id)).scalar()
            role_tenant = conn.execute(select(roles.c.tenant_id).where(roles.c.id == role_id)).scalar()
            if user_tenant is None or role_tenant is None:
                raise NotFound("User or role not found.")
            if user_tenant != role_tenant:
                raise TenantMismatch()
            exists = conn.execute(
                select(user_roles.c.user_id).where((user_roles.c.user_id == user_id) & (user_roles.c.role_id == role_id))
            ).first()
            if exists is None:
                conn.execute(user_roles.insert().values(user_id=user_id, role_id=role_id, tenant_id=user_tenant))

    def unassign_role(self, user_id: int, role_id: int) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(
                user_roles.delete().where((user_roles.c.user_id == user_id) & (user_roles.c.role_id == role_id))
            )
        return result.rowcount > 0

    def user_role_names(self, user_id: int) -> list[str]:
        """All role names held by the user, active or not."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(roles.c.name)
                .join_from(roles, user_roles, user_roles.c.role_id == roles.c.id)
                .where(user_roles.c.user_id == user_id)
                .order_by(roles.c.name)
            ).fetchall()
        return [r.name for r in rows]

    def grants_for_user(self, user_id: int) -> Grants:
        """Build the token snapshot: active roles and their active permissions.

        The tenant_id equality in the joins is redundant with the write-time
        checks; it keeps a corrupted join row from leaking grants across tenants.
        """
        with self.engine.connect() as conn:
            role_rows = conn.execute(
                select(roles.c.name)
                .join_from(roles, user_roles, user_roles.c.role_id == roles.c.id)
                .where(
                    (user_roles.c.user_id == user_id)
                    & (roles.c.is_active == 1)
                    & (user_roles.c.tenant_id == roles.c.tenant_id)
                )
            ).fetchall()
            perm_rows = conn.execute(
                select(permissions.c.resource, permissions.c.action)
                .join_from(permissions, role_permissions, role_permissions.c.permission_id == permissions.c.id)
                .join(roles, roles.c.id == role_permissions.c.role_id)
                .join(user_roles, user_roles.c.role_id == roles.c.id)
                .where(
                    (user_roles.c.user_id == user_id)
                    & (roles.c.is_active == 1)
                    & (permissions.c.is_active == 1)
                    & (permissions.c.tenant_id == roles.c.tenant_id)
                    & (user_roles.c.tenant_id == roles.c.tenant_id)
                )
            ).fetchall()
        role_names = tuple(sorted({r.name for r in role_rows}))
        perm_names = tuple(sorted({f"{r.resource}:{r.action}" for r in perm_rows}))
        return Grants(roles=role_names, permissions=perm_names)

    # ------------------------------------------------------------------
    # Seeding
    # ------------------------------------------------------------------

    def ensure_default_catalogue(self, tenant_id: str) -> None:
        """Create the default permissions and roles for a tenant if missing.

        Called on every registration, so a tenant whose default roles all
        exist costs a single query. Each role is inserted together with its
        grants in one transaction: a role row never exists without them. A
        concurrent seeder losing a unique-constraint race re-reads the
        winner's rows.
        """
        existing_roles = self._role_names(tenant_id)
        if existing_roles.issuperset(DEFAULT_ROLES):
            return

        perm_ids = self._seed_permissions(tenant_id)
        for role_name, (description, granted) in DEFAULT_ROLES.items():
            if role_name in existing_roles:
                continue
            stamp = now_iso()
            try:
                with self.engine.begin() as conn:
                    role_id = conn.execute(
                        roles.insert().values(
                            tenant_id=tenant_id,
                            name=role_name,
                            description=description,
                            is_active=1,
                            created_at=stamp,
                            updated_at=stamp,
                        )
                    ).inserted_primary_key[0]
                    conn.execute(
                        role_permissions.insert(),
                        [
                            {
                                "role_id": role_id,
                                "permission_id": perm_ids[permission_name(*full_name.split(":"))],
                                "tenant_id": tenant_id,
                            }
                            for full_name in granted
                        ],
                    )
            except IntegrityError:
                logger.debug("Default role %s already seeded in tenant %s", role_name, tenant_id)

    def _role_names(self, tenant_id: str) -> set[str]:
        with self.engine.connect() as conn:
            rows = conn.execute(select(roles.c.name).where(roles.c.tenant_id == tenant_id)).fetchall()
        return {r.name for r in rows}

    def _permission_ids(self, tenant_id: str) -> dict[str, int]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(permissions.c.name, permissions.c.id).where(permissions.c.tenant_id == tenant_id)
            ).fetchall()
        return {r.name: r.id for r in rows}

    def _seed_permissions(self, tenant_id: str) -> dict[str, int]:
        """Insert any missing default permissions in one transaction; return name -> id."""
        perm_ids = self._permission_ids(tenant_id)
        missing = [
            (resource, action)
            for resource in RESOURCES
            for action in ACTIONS
            if permission_name(resource, action) not in perm_ids
        ]
        if not missing:
            return perm_ids
        stamp = now_iso()
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    permissions.insert(),
                    [
                        {
                            "tenant_id": tenant_id,
                            "name": permission_name(resource, action),
                            "description": None,
                            "resource": resource,
                            "action": action,
                            "is_active": 1,
                            "created_at": stamp,
                            "updated_at": stamp,
                        }
                        for resource, action in missing
                    ],
                )
        except IntegrityError:
            logger.debug("Default permissions already seeded in tenant %s", tenant_id)
        return self._permission_ids(tenant_id)


# ---------------------------------------------------------------------------
# Row mappers
# ---------------------------------------------------------------------------


def _row_to_role(row) -> Role:
    return Role(
        id=row.id,
        tenant_id=row.tenant_id,
        name=row.name,
        description=row.description,
        is_active=bool(row.is_active),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _row_to_permission(row) -> Permission:
    return Permission(
        id=row.id,
        tenant_id=row.tenant_id,
        name=row.name,
        description=row.description,
        resource=row.resource,
        action=row.action,
        is_active=bool(row.is_active),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )

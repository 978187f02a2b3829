"""
auth/models.py -- Domain dataclasses for authentication and RBAC entities.

Pattern: Data class (pure data container, near-zero logic). Dataclasses own
domain shape; stores, services and routes do the work.

Every tenant-scoped record carries tenant_id. Relationships between users,
roles and permissions are kept as explicit join rows (see auth/rbac.py), not
as nested object graphs, so the dataclasses below never hold references to
each other.

Layer rule: no imports from api/ or gateway/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime


@dataclass
class User:
    """A registered identity, owned by exactly one tenant.

    username and email are unique within tenant_id, not globally: the same
    username may exist in two tenants as two unrelated accounts.

    Users are never physically deleted. Deactivation flips is_active so the
    audit trail (created_at, last_login_at) survives.
    """

    tenant_id: str
    username: str
    email: str
    hashed_password: str
    id: int | None = None
    first_name: str | None = None
    last_name: str | None = None
    phone_number: str | None = None
    profile_picture_url: str | None = None
    preferred_language: str | None = None
    timezone: str | None = None
    is_email_verified: bool = False
    is_active: bool = True
    last_login_at: str | None = None
    created_at: str | None = None
    updated_at: str | None = None

    @property
    def full_name(self) -> str:
        return " ".join(p for p in (self.first_name, self.last_name) if p)


@dataclass
class Role:
    tenant_id: str
    name: str  # unique within tenant, e.g. "ROLE_ADMIN"
    id: int | None = None
    description: str | None = None
    is_active: bool = True
    created_at: str | None = None
    updated_at: str | None = None


@dataclass
class Permission:
    """A (resource, action) grant such as BOOKING:READ.

    name is the tenant-unique label (defaults to RESOURCE_ACTION); full_name is
    the deterministic resource:action string used in tokens and checks.
    """

    tenant_id: str
    name: str
    resource: str
    action: str
    id: int | None = None
    description: str | None = None
    is_active: bool = True
    created_at: str | None = None
    updated_at: str | None = None

    @property
    def full_name(self) -> str:
        return f"{self.resource}:{self.action}"


@dataclass(frozen=True)
class Grants:
    """Active role names and their active permission full-names for one user."""

    roles: tuple[str, ...] = ()
    permissions: tuple[str, ...] = ()


@dataclass
class RefreshTokenRecord:
    """Revocation-store row for one refresh token id (jti)."""

    token_id: str
    user_id: int
    tenant_id: str
    expires_at: datetime
    revoked: bool = False
    revoked_at: str | None = None
    replaced_by: str | None = None
    created_at: str | None = None


@dataclass
class OneTimeToken:
    """Single-use verification or password-reset token. Only the hash is persisted."""

    token_hash: str
    purpose: str  # "verify_email" | "reset_password"
    user_id: int
    tenant_id: str
    expires_at: datetime
    used_at: str | None = None
    created_at: str | None = None


@dataclass(frozen=True)
class AccessClaims:
    """Decoded, verified access-token claims.

    roles and permissions are the snapshot taken at issuance time. They are
    not re-derived per request.
    """

    user_id: int
    tenant_id: str
    roles: frozenset[str]
    permissions: frozenset[str]
    token_id: str
    issued_at: datetime
    expires_at: datetime


@dataclass(frozen=True)
class Identity:
    """Verified caller identity as seen by a downstream service.

    Rebuilt from the headers the edge filter injects. tenant_id is the tenant
    the token was issued for and is the one authorization decisions use;
    request_tenant is what the edge resolved from the request (header or host).
    """

    user_id: int
    tenant_id: str
    request_tenant: str
    roles: frozenset[str]
    permissions: frozenset[str]


@dataclass(frozen=True)
class IssuedToken:
    token: str
    token_id: str
    expires_at: datetime


@dataclass(frozen=True)
class TokenPair:
    access: IssuedToken
    refresh: IssuedToken

    @property
    def expires_in(self) -> int:
        """Seconds until the access token expires, measured now."""
        return max(0, int((self.access.expires_at - datetime.now(self.access.expires_at.tzinfo)).total_seconds()))


@dataclass
class AuthResult:
    user: User
    tokens: TokenPair
    roles: list[str] = field(default_factory=list)

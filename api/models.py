"""
API request and response models for TravelAuth REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

JSON field names are camelCase on the wire (accessToken, firstName, ...).
_CamelModel sets the alias generator once; populate_by_name lets Python code
construct models with snake_case keyword arguments.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from auth.models import Permission, Role, TokenPair, User

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

USERNAME_PATTERN = r"^[A-Za-z0-9_.-]{3,50}$"
# Deliberately loose: one @, no whitespace, a dot in the domain. Deliverability
# is proven by the verification email, not by a regex.
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"
NAME_PATTERN = r"^[A-Z][A-Z0-9_]{1,49}$"


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Auth -- request models
# ---------------------------------------------------------------------------


class RegisterRequest(_CamelModel):
    """Request body for POST /api/v1/auth/register."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, str_strip_whitespace=True)

    username: str = Field(pattern=USERNAME_PATTERN)
    email: str = Field(max_length=255, pattern=EMAIL_PATTERN)
    # Upper bound keeps bcrypt input under its 72-byte truncation point in the
    # common case; the strength policy enforces the exact byte limit.
    password: str = Field(min_length=1, max_length=255)
    first_name: Optional[str] = Field(default=None, max_length=100)
    last_name: Optional[str] = Field(default=None, max_length=100)
    phone_number: Optional[str] = Field(default=None, max_length=32)
    preferred_language: Optional[str] = Field(default=None, max_length=16)
    timezone: Optional[str] = Field(default=None, max_length=64)

    def profile(self) -> dict:
        return self.model_dump(include={"first_name", "last_name", "phone_number", "preferred_language", "timezone"})


class LoginRequest(_CamelModel):
    """Request body for POST /api/v1/auth/login. username accepts an email too."""

    username: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=255)


class ProfileUpdate(_CamelModel):
    """Request body for PATCH /api/v1/auth/me. Omitted fields are left unchanged."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, str_strip_whitespace=True)

    first_name: Optional[str] = Field(default=None, max_length=100)
    last_name: Optional[str] = Field(default=None, max_length=100)
    phone_number: Optional[str] = Field(default=None, max_length=32)
    profile_picture_url: Optional[str] = Field(default=None, max_length=2048)
    preferred_language: Optional[str] = Field(default=None, max_length=16)
    timezone: Optional[str] = Field(default=None, max_length=64)


class ChangePasswordRequest(_CamelModel):
    current_password: str = Field(min_length=1, max_length=255)
    new_password: str = Field(min_length=1, max_length=255)


# ---------------------------------------------------------------------------
# Auth -- response models
# ---------------------------------------------------------------------------


class UserResponse(_CamelModel):
    id: int
    username: str
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    full_name: str = ""
    phone_number: Optional[str] = None
    profile_picture_url: Optional[str] = None
    is_email_verified: bool
    preferred_language: Optional[str] = None
    timezone: Optional[str] = None
    last_login_at: Optional[str] = None
    roles: list[str] = Field(default_factory=list)
    created_at: str

    @classmethod
    def from_user(cls, user: User, roles: list[str]) -> "UserResponse":
        """Factory Method -- the mapping lives beside the output model, not in routes."""
        return cls(
            id=user.id,
            username=user.username,
            email=user.email,
            first_name=user.first_name,
            last_name=user.last_name,
            full_name=user.full_name,
            phone_number=user.phone_number,
            profile_picture_url=user.profile_picture_url,
            is_email_verified=user.is_email_verified,
            preferred_language=user.preferred_language,
            timezone=user.timezone,
            last_login_at=user.last_login_at,
            roles=sorted(roles),
            created_at=user.created_at or "",
        )


class AuthResponse(_CamelModel):
    """Token envelope returned by register, login and refresh.

    user and tenant_id are omitted (null) on refresh, which only rotates tokens.
    """

    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_in: int
    user: Optional[UserResponse] = None
    tenant_id: Optional[str] = None

    @classmethod
    def from_tokens(
        cls, tokens: TokenPair, user: Optional[UserResponse] = None, tenant_id: Optional[str] = None
    ) -> "AuthResponse":
        return cls(
            access_token=tokens.access.token,
            refresh_token=tokens.refresh.token,
            expires_in=tokens.expires_in,
            user=user,
            tenant_id=tenant_id,
        )


class PermissionsResponse(_CamelModel):
    """Response for GET /api/v1/auth/permissions -- the caller's token snapshot."""

    user_id: int
    tenant_id: str
    roles: list[str]
    permissions: list[str]


class MessageResponse(BaseModel):
    message: str


# ---------------------------------------------------------------------------
# RBAC
# ---------------------------------------------------------------------------


class RoleCreate(_CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, str_strip_whitespace=True)

    name: str = Field(pattern=NAME_PATTERN)
    description: Optional[str] = Field(default=None, max_length=255)


class ActivePatch(_CamelModel):
    """Request body for PATCH on roles and permissions."""

    is_active: bool


class PermissionCreate(_CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, str_strip_whitespace=True)

    resource: str = Field(min_length=1, max_length=50)
    action: str = Field(min_length=1, max_length=50)
    name: Optional[str] = Field(default=None, max_length=100)
    description: Optional[str] = Field(default=None, max_length=255)

    @field_validator("resource", "action")
    @classmethod
    def upper_token(cls, value: str) -> str:
        value = value.upper()
        if not value.replace("_", "").isalnum():
            raise ValueError("must be letters, digits or underscores")
        return value


class PermissionResponse(_CamelModel):
    id: int
    name: str
    resource: str
    action: str
    full_name: str
    description: Optional[str] = None
    is_active: bool

    @classmethod
    def from_permission(cls, permission: Permission) -> "PermissionResponse":
        return cls(
            id=permission.id,
            name=permission.name,
            resource=permission.resource,
            action=permission.action,
            full_name=permission.full_name,
            description=permission.description,
            is_active=permission.is_active,
        )


class RoleResponse(_CamelModel):
    id: int
    name: str
    description: Optional[str] = None
    is_active: bool
    permissions: list[str] = Field(default_factory=list)

    @classmethod
    def from_role(cls, role: Role, permissions: list[Permission]) -> "RoleResponse":
        return cls(
            id=role.id,
            name=role.name,
            description=role.description,
            is_active=role.is_active,
            permissions=sorted(p.full_name for p in permissions),
        )


# ---------------------------------------------------------------------------
# Errors and health
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)

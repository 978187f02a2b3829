"""
api/routes/v1/auth.py -- Authentication and account REST endpoints.

Routes:
  POST  /api/v1/auth/register             -- create account, returns token pair
  POST  /api/v1/auth/login                -- username/email + password, returns token pair
  POST  /api/v1/auth/refresh              -- ?refreshToken=..., rotated token pair
  POST  /api/v1/auth/logout               -- ?refreshToken=..., revokes it; always 200
  POST  /api/v1/auth/verify-email         -- ?token=..., single use
  POST  /api/v1/auth/resend-verification  -- ?email=..., always 200
  POST  /api/v1/auth/forgot-password      -- ?email=..., always 200
  POST  /api/v1/auth/reset-password       -- ?token=...&newPassword=...
  GET   /api/v1/auth/me                   -- current user (requires auth)
  PATCH /api/v1/auth/me                   -- update profile (requires auth)
  POST  /api/v1/auth/change-password      -- requires auth; ends other sessions
  GET   /api/v1/auth/permissions          -- token role/permission snapshot (requires auth)

Auth policy:
  The first eight routes are listed in api.main.PUBLIC_PATHS and bypass the
  edge filter; their tenant comes from request_tenant() (header, host, default).
  The rest are protected by the edge and read identity via get_identity().

Security:
  POST /login, /register and /forgot-password are rate-limited per IP.
  Cache-Control: no-store on every response that carries tokens.
  Domain errors (auth.errors.AuthError) are raised, not caught here; the
  handler in api/main.py renders them with their stable error code.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request, Response

from api.limiter import limiter
from api.models import (
    AuthResponse,
    ChangePasswordRequest,
    LoginRequest,
    MessageResponse,
    PermissionsResponse,
    ProfileUpdate,
    RegisterRequest,
    UserResponse,
)
from auth.dependencies import get_auth_service, get_identity, request_tenant
from auth.models import Identity
from auth.rbac import effective_permissions
from auth.service import AuthService
from core.config import get_settings

router = APIRouter()

_settings = get_settings()


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@limiter.limit("10/minute")
@router.post("/auth/register", response_model=AuthResponse)
def register(
    request: Request,
    response: Response,
    body: RegisterRequest,
    tenant_id: str = Depends(request_tenant),
    service: AuthService = Depends(get_auth_service),
) -> AuthResponse:
    """Create an account in the resolved tenant and sign the user in.

    A verification email is queued in the background; the account is usable
    immediately unless REQUIRE_VERIFIED_EMAIL is set.
    """
    result = service.register(body.username, body.email, body.password, tenant_id, body.profile())
    response.headers["Cache-Control"] = "no-store"
    return AuthResponse.from_tokens(result.tokens, UserResponse.from_user(result.user, result.roles), tenant_id)


@limiter.limit(_settings.login_rate_limit)  # brute-force mitigation
@router.post("/auth/login", response_model=AuthResponse)
def login(
    request: Request,
    response: Response,
    body: LoginRequest,
    tenant_id: str = Depends(request_tenant),
    service: AuthService = Depends(get_auth_service),
) -> AuthResponse:
    """Authenticate with username (or email) and password.

    Wrong username and wrong password yield the same "invalid_credentials"
    error and take the same bcrypt time.
    """
    result = service.login(body.username, body.password, tenant_id)
    response.headers["Cache-Control"] = "no-store"
    return AuthResponse.from_tokens(result.tokens, UserResponse.from_user(result.user, result.roles), tenant_id)


@router.post("/auth/refresh", response_model=AuthResponse)
def refresh(
    response: Response,
    refresh_token: str = Query(alias="refreshToken", min_length=1),
    service: AuthService = Depends(get_auth_service),
) -> AuthResponse:
    """Rotate a refresh token. The presented token is dead after this call."""
    tokens = service.refresh(refresh_token)
    response.headers["Cache-Control"] = "no-store"
    return AuthResponse.from_tokens(tokens)


@router.post("/auth/logout")
def logout(
    refresh_token: str = Query(alias="refreshToken", min_length=1),
    service: AuthService = Depends(get_auth_service),
) -> Response:
    """Revoke the refresh token. Idempotent: 200 even if it was already revoked."""
    service.logout(refresh_token)
    return Response(status_code=200)


@router.post("/auth/verify-email", response_model=MessageResponse)
def verify_email(
    token: str = Query(min_length=1),
    service: AuthService = Depends(get_auth_service),
) -> MessageResponse:
    service.verify_email(token)
    return MessageResponse(message="Email verified.")


@router.post("/auth/resend-verification", response_model=MessageResponse)
def resend_verification(
    email: str = Query(min_length=1, max_length=255),
    tenant_id: str = Depends(request_tenant),
    service: AuthService = Depends(get_auth_service),
) -> MessageResponse:
    service.resend_verification(email, tenant_id)
    return MessageResponse(message="If the account exists and is unverified, a new email has been sent.")


@limiter.limit("5/minute")
@router.post("/auth/forgot-password", response_model=MessageResponse)
def forgot_password(
    request: Request,
    email: str = Query(min_length=1, max_length=255),
    tenant_id: str = Depends(request_tenant),
    service: AuthService = Depends(get_auth_service),
) -> MessageResponse:
    """Always answers the same way whether or not the account exists."""
    service.forgot_password(email, tenant_id)
    return MessageResponse(message="If the account exists, a reset email has been sent.")


@router.post("/auth/reset-password", response_model=MessageResponse)
def reset_password(
    token: str = Query(min_length=1),
    new_password: str = Query(alias="newPassword", min_length=1, max_length=255),
    service: AuthService = Depends(get_auth_service),
) -> MessageResponse:
    """Set a new password. Every refresh token of the user is revoked."""
    service.reset_password(token, new_password)
    return MessageResponse(message="Password has been reset.")


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=UserResponse)
def me(
    identity: Identity = Depends(get_identity),
    service: AuthService = Depends(get_auth_service),
) -> UserResponse:
    """Profile of the caller. roles are the token snapshot, not a live read."""
    user = service.get_user(identity.user_id, identity.tenant_id)
    return UserResponse.from_user(user, list(identity.roles))


@router.patch("/auth/me", response_model=UserResponse)
def update_me(
    body: ProfileUpdate,
    identity: Identity = Depends(get_identity),
    service: AuthService = Depends(get_auth_service),
) -> UserResponse:
    user = service.update_profile(identity.user_id, identity.tenant_id, **body.model_dump(exclude_unset=True))
    return UserResponse.from_user(user, list(identity.roles))


@router.post("/auth/change-password", response_model=MessageResponse)
def change_password(
    body: ChangePasswordRequest,
    identity: Identity = Depends(get_identity),
    service: AuthService = Depends(get_auth_service),
) -> MessageResponse:
    service.change_password(identity.user_id, identity.tenant_id, body.current_password, body.new_password)
    return MessageResponse(message="Password changed. Other sessions have been signed out.")


@router.get("/auth/permissions", response_model=PermissionsResponse)
async def my_permissions(identity: Identity = Depends(get_identity)) -> PermissionsResponse:
    return PermissionsResponse(
        user_id=identity.user_id,
        tenant_id=identity.tenant_id,
        roles=sorted(identity.roles),
        permissions=sorted(effective_permissions(identity)),
    )

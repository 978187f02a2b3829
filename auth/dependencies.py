"""
auth/dependencies.py -- FastAPI Depends() helpers for downstream services.

Downstream routes never see the bearer token. They read the identity the edge
filter (gateway/edge.py) injected into trusted request headers:

  X-User-ID           -- token subject
  X-User-Roles        -- comma-separated role snapshot
  X-User-Permissions  -- comma-separated resource:action snapshot
  X-Auth-Tenant-ID    -- tenant the token was issued for
  X-Tenant-ID         -- tenant the edge resolved for this request

get_identity() rebuilds an Identity from those headers and raises HTTP 401 if
they are absent -- a protected route must never run without a resolved
identity. require_permission() layers a 403 on top. Checks use
the token snapshot (auth.rbac.has_permission); there is no database read.

request_tenant() is for public routes (register, login, forgot-password) that
run before any token exists and resolve the tenant straight from the request.

Layer rule: auth/dependencies.py may import from fastapi (for
Depends/HTTPException/Request) because this module is part of the FastAPI
dependency injection system. No imports from api/ or gateway/.
"""

from __future__ import annotations

from collections.abc import Callable

from fastapi import Depends, HTTPException, Request

from auth.models import Identity
from auth.rbac import has_permission
from auth.service import AuthService
from auth.tenant import resolve_tenant
from core.config import get_settings

_UNAUTHORIZED = {"code": "unauthorized", "message": "Authentication required."}


def _split(value: str | None) -> frozenset[str]:
    if not value:
        return frozenset()
    return frozenset(part for part in value.split(",") if part)


def get_auth_service(request: Request) -> AuthService:
    return request.app.state.auth


def request_tenant(request: Request) -> str:
    """Resolve the tenant for a request that carries no token yet."""
    settings = get_settings()
    return resolve_tenant(request.headers, default=settings.default_tenant, header_name=settings.tenant_header)


def get_identity(request: Request) -> Identity:
    """Return the caller's verified identity. Raises HTTP 401 if the edge injected none.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(identity: Identity = Depends(get_identity)): ...
    """
    settings = get_settings()
    user_id = request.headers.get("x-user-id", "")
    tenant_id = request.headers.get("x-auth-tenant-id", "")
    if not user_id.isdigit() or not tenant_id:
        raise HTTPException(status_code=401, detail=_UNAUTHORIZED)
    return Identity(
        user_id=int(user_id),
        tenant_id=tenant_id,
        request_tenant=request.headers.get(settings.tenant_header) or tenant_id,
        roles=_split(request.headers.get("x-user-roles")),
        permissions=_split(request.headers.get("x-user-permissions")),
    )


def require_permission(resource: str, action: str) -> Callable[..., Identity]:
    """Build a dependency that demands resource:action in the token snapshot.

    Use as a FastAPI dependency:
        @router.post("/rbac/roles")
        async def route(identity: Identity = Depends(require_permission("RBAC", "CREATE"))): ...
    """

    def dependency(identity: Identity = Depends(get_identity)) -> Identity:
        if not has_permission(identity, resource, action):
            raise HTTPException(
                status_code=403,
                detail={"code": "forbidden", "message": f"Permission {resource}:{action} required."},
            )
        return identity

    return dependency

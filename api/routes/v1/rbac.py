"""
api/routes/v1/rbac.py -- Role and permission administration endpoints.

Routes (all tenant-scoped to the caller's token tenant):
  GET    /api/v1/rbac/roles                          -- RBAC:READ
  POST   /api/v1/rbac/roles                          -- RBAC:CREATE
  PATCH  /api/v1/rbac/roles/{role_id}                -- RBAC:UPDATE (activate/deactivate)
  GET    /api/v1/rbac/permissions                    -- RBAC:READ
  POST   /api/v1/rbac/permissions                    -- RBAC:CREATE
  PATCH  /api/v1/rbac/permissions/{permission_id}    -- RBAC:UPDATE
  PUT    /api/v1/rbac/roles/{role_id}/permissions/{permission_id}  -- RBAC:UPDATE
  DELETE /api/v1/rbac/roles/{role_id}/permissions/{permission_id}  -- RBAC:UPDATE
  PUT    /api/v1/rbac/users/{user_id}/roles/{role_id}              -- RBAC:UPDATE
  DELETE /api/v1/rbac/users/{user_id}/roles/{role_id}              -- RBAC:UPDATE
  POST   /api/v1/rbac/users/{user_id}/deactivate                   -- USER:DELETE

IDOR guard: every id in the path is loaded and checked against the caller's
tenant; an id from another tenant answers 404, exactly like a missing one.

Changes here do not alter tokens already issued. Affected users see them on
their next login or refresh.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response

from api.models import ActivePatch, PermissionCreate, PermissionResponse, RoleCreate, RoleResponse, UserResponse
from auth.dependencies import get_auth_service, require_permission
from auth.errors import NotFound
from auth.models import Identity, Permission, Role
from auth.rbac import RBACStore, permission_name
from auth.service import AuthService

router = APIRouter()


def _rbac(request: Request) -> RBACStore:
    return request.app.state.auth.rbac


def _tenant_role(rbac: RBACStore, role_id: int, tenant_id: str) -> Role:
    role = rbac.get_role(role_id)
    if role is None or role.tenant_id != tenant_id:
        raise NotFound("Role not found.")
    return role


def _tenant_permission(rbac: RBACStore, permission_id: int, tenant_id: str) -> Permission:
    permission = rbac.get_permission(permission_id)
    if permission is None or permission.tenant_id != tenant_id:
        raise NotFound("Permission not found.")
    return permission


# ---------------------------------------------------------------------------
# Roles
# ---------------------------------------------------------------------------


@router.get("/rbac/roles", response_model=list[RoleResponse])
def list_roles(
    request: Request,
    identity: Identity = Depends(require_permission("RBAC", "READ")),
) -> list[RoleResponse]:
    rbac = _rbac(request)
    return [RoleResponse.from_role(r, rbac.role_permissions(r.id)) for r in rbac.list_roles(identity.tenant_id)]


@router.post("/rbac/roles", response_model=RoleResponse, status_code=201)
def create_role(
    request: Request,
    body: RoleCreate,
    identity: Identity = Depends(require_permission("RBAC", "CREATE")),
) -> RoleResponse:
    rbac = _rbac(request)
    role_id = rbac.create_role(Role(tenant_id=identity.tenant_id, name=body.name, description=body.description))
    return RoleResponse.from_role(rbac.get_role(role_id), [])


@router.patch("/rbac/roles/{role_id}", response_model=RoleResponse)
def update_role(
    request: Request,
    role_id: int,
    body: ActivePatch,
    identity: Identity = Depends(require_permission("RBAC", "UPDATE")),
) -> RoleResponse:
    rbac = _rbac(request)
    _tenant_role(rbac, role_id, identity.tenant_id)
    role = rbac.set_role_active(role_id, body.is_active)
    return RoleResponse.from_role(role, rbac.role_permissions(role_id))


# ---------------------------------------------------------------------------
# Permissions
# ---------------------------------------------------------------------------


@router.get("/rbac/permissions", response_model=list[PermissionResponse])
def list_permissions(
    request: Request,
    identity: Identity = Depends(require_permission("RBAC", "READ")),
) -> list[PermissionResponse]:
    return [PermissionResponse.from_permission(p) for p in _rbac(request).list_permissions(identity.tenant_id)]


@router.post("/rbac/permissions", response_model=PermissionResponse, status_code=201)
def create_permission(
    request: Request,
    body: PermissionCreate,
    identity: Identity = Depends(require_permission("RBAC", "CREATE")),
) -> PermissionResponse:
    rbac = _rbac(request)
    permission_id = rbac.create_permission(
        Permission(
            tenant_id=identity.tenant_id,
            name=body.name or permission_name(body.resource, body.action),
            resource=body.resource,
            action=body.action,
            description=body.description,
        )
    )
    return PermissionResponse.from_permission(rbac.get_permission(permission_id))


@router.patch("/rbac/permissions/{permission_id}", response_model=PermissionResponse)
def update_permission(
    request: Request,
    permission_id: int,
    body: ActivePatch,
    identity: Identity = Depends(require_permission("RBAC", "UPDATE")),
) -> PermissionResponse:
    rbac = _rbac(request)
    _tenant_permission(rbac, permission_id, identity.tenant_id)
    return PermissionResponse.from_permission(rbac.set_permission_active(permission_id, body.is_active))


# ---------------------------------------------------------------------------
# Relationships
# ---------------------------------------------------------------------------


@router.put("/rbac/roles/{role_id}/permissions/{permission_id}", response_model=RoleResponse)
def grant_permission(
    request: Request,
    role_id: int,
    permission_id: int,
    identity: Identity = Depends(require_permission("RBAC", "UPDATE")),
) -> RoleResponse:
    rbac = _rbac(request)
    role = _tenant_role(rbac, role_id, identity.tenant_id)
    _tenant_permission(rbac, permission_id, identity.tenant_id)
    rbac.grant_permission(role_id, permission_id)
    return RoleResponse.from_role(role, rbac.role_permissions(role_id))


@router.delete("/rbac/roles/{role_id}/permissions/{permission_id}", status_code=204)
def revoke_permission(
    request: Request,
    role_id: int,
    permission_id: int,
    identity: Identity = Depends(require_permission("RBAC", "UPDATE")),
) -> Response:
    rbac = _rbac(request)
    _tenant_role(rbac, role_id, identity.tenant_id)
    if not rbac.revoke_permission(role_id, permission_id):
        raise NotFound("Permission is not granted to this role.")
    return Response(status_code=204)


@router.put("/rbac/users/{user_id}/roles/{role_id}", response_model=UserResponse)
def assign_role(
    request: Request,
    user_id: int,
    role_id: int,
    identity: Identity = Depends(require_permission("RBAC", "UPDATE")),
    service: AuthService = Depends(get_auth_service),
) -> UserResponse:
    rbac = _rbac(request)
    user = service.get_user(user_id, identity.tenant_id)
    _tenant_role(rbac, role_id, identity.tenant_id)
    rbac.assign_role(user_id, role_id)
    return UserResponse.from_user(user, rbac.user_role_names(user_id))


@router.delete("/rbac/users/{user_id}/roles/{role_id}", status_code=204)
def unassign_role(
    request: Request,
    user_id: int,
    role_id: int,
    identity: Identity = Depends(require_permission("RBAC", "UPDATE")),
    service: AuthService = Depends(get_auth_service),
) -> Response:
    service.get_user(user_id, identity.tenant_id)
    if not _rbac(request).unassign_role(user_id, role_id):
        raise NotFound("User does not hold this role.")
    return Response(status_code=204)


@router.post("/rbac/users/{user_id}/deactivate", response_model=UserResponse)
def deactivate_user(
    request: Request,
    user_id: int,
    identity: Identity = Depends(require_permission("USER", "DELETE")),
    service: AuthService = Depends(get_auth_service),
) -> UserResponse:
    """Soft-deactivate an account and revoke all of its refresh tokens."""
    user = service.set_active(user_id, identity.tenant_id, False)
    return UserResponse.from_user(user, _rbac(request).user_role_names(user_id))

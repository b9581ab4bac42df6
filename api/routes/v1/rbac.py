"""
api/routes/v1/rbac.py -- RBAC administration endpoints.

Routes:
  PUT    /api/v1/tenants/{tenant_id}/users/{user_id}/roles/{role_code}         -- assign role
  DELETE /api/v1/tenants/{tenant_id}/users/{user_id}/roles/{role_code}         -- unassign role
  PUT    /api/v1/tenants/{tenant_id}/users/{user_id}/permissions/{code}        -- direct grant/deny
  DELETE /api/v1/tenants/{tenant_id}/users/{user_id}/permissions/{code}        -- clear direct override
  PUT    /api/v1/tenants/{tenant_id}/roles/{role_code}/permissions/{code}      -- tenant role override
  DELETE /api/v1/tenants/{tenant_id}/roles/{role_code}/permissions/{code}      -- clear tenant override
  PUT    /api/v1/roles/{role_code}/permissions                                 -- replace role defaults
  POST   /api/v1/users/{user_id}/suspend                                       -- suspend a principal

Every write goes through PermissionResolver, which pushes the matching cache
invalidation, so the change is visible on the caller's very next request.

Tenant-scoped paths check the permission in the tenant named by the path
(require_tenant_permission -> TenantGuard). The target user must also live in
that tenant; otherwise the response is the same 404 as a foreign tenant.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Path, Request

from api.models import (
    PERMISSION_CODE_PATTERN,
    ChangeResponse,
    OverrideRequest,
    PrincipalResponse,
    RolePermissionsRequest,
    TenantOverrideRequest,
)
from auth.dependencies import AuthContext, require_operator, require_permission, require_tenant_permission
from auth.errors import CrossTenantAccessError
from auth.gateway import AuthGateway
from auth.permissions import PermissionResolver
from auth.schema import guarded
from auth.store import ReferenceNotFound

# Auth policy:
# - user role assignment / direct overrides:  USER_ASSIGN_ROLES in the path tenant
# - tenant role overrides:                    SETTINGS_EDIT in the path tenant
# - role default permissions:                 platform operator only
# - suspend:                                  USER_EDIT in the caller's tenant + TenantGuard on the target
router = APIRouter()


def _resolver(request: Request) -> PermissionResolver:
    return request.app.state.resolver


def _not_found(exc: ReferenceNotFound) -> HTTPException:
    return HTTPException(status_code=404, detail={"code": "not_found", "message": str(exc)})


def _require_member(resolver: PermissionResolver, user_id: int, tenant_id: int) -> None:
    with guarded("load principal"):
        target = resolver.store.get_user(user_id)
    if target is None or target.tenant_id != tenant_id:
        raise CrossTenantAccessError()


# ---------------------------------------------------------------------------
# Role assignment
# ---------------------------------------------------------------------------


@router.put("/tenants/{tenant_id}/users/{user_id}/roles/{role_code}", response_model=ChangeResponse)
def assign_role(
    request: Request,
    tenant_id: int,
    user_id: int,
    role_code: str = Path(pattern=PERMISSION_CODE_PATTERN),
    ctx: AuthContext = Depends(require_tenant_permission("USER_ASSIGN_ROLES")),
) -> ChangeResponse:
    resolver = _resolver(request)
    _require_member(resolver, user_id, tenant_id)
    try:
        with guarded("assign role"):
            changed = resolver.assign_role(user_id, tenant_id, role_code)
    except ReferenceNotFound as exc:
        raise _not_found(exc) from exc
    return ChangeResponse(changed=changed)


@router.delete("/tenants/{tenant_id}/users/{user_id}/roles/{role_code}", response_model=ChangeResponse)
def unassign_role(
    request: Request,
    tenant_id: int,
    user_id: int,
    role_code: str = Path(pattern=PERMISSION_CODE_PATTERN),
    ctx: AuthContext = Depends(require_tenant_permission("USER_ASSIGN_ROLES")),
) -> ChangeResponse:
    resolver = _resolver(request)
    _require_member(resolver, user_id, tenant_id)
    try:
        with guarded("unassign role"):
            changed = resolver.unassign_role(user_id, tenant_id, role_code)
    except ReferenceNotFound as exc:
        raise _not_found(exc) from exc
    return ChangeResponse(changed=changed)


# ---------------------------------------------------------------------------
# Direct grants and denials
# ---------------------------------------------------------------------------


@router.put("/tenants/{tenant_id}/users/{user_id}/permissions/{code}", response_model=ChangeResponse)
def set_direct_override(
    request: Request,
    tenant_id: int,
    user_id: int,
    body: OverrideRequest,
    code: str = Path(pattern=PERMISSION_CODE_PATTERN),
    ctx: AuthContext = Depends(require_tenant_permission("USER_ASSIGN_ROLES")),
) -> ChangeResponse:
    """Grant (allowed=true) or deny (allowed=false) one code to one user in one tenant."""
    resolver = _resolver(request)
    _require_member(resolver, user_id, tenant_id)
    try:
        with guarded("set direct override"):
            resolver.set_direct_override(user_id, tenant_id, code, body.allowed)
    except ReferenceNotFound as exc:
        raise _not_found(exc) from exc
    return ChangeResponse(changed=True)


@router.delete("/tenants/{tenant_id}/users/{user_id}/permissions/{code}", response_model=ChangeResponse)
def clear_direct_override(
    request: Request,
    tenant_id: int,
    user_id: int,
    code: str = Path(pattern=PERMISSION_CODE_PATTERN),
    ctx: AuthContext = Depends(require_tenant_permission("USER_ASSIGN_ROLES")),
) -> ChangeResponse:
    resolver = _resolver(request)
    _require_member(resolver, user_id, tenant_id)
    try:
        with guarded("clear direct override"):
            changed = resolver.clear_direct_override(user_id, tenant_id, code)
    except ReferenceNotFound as exc:
        raise _not_found(exc) from exc
    return ChangeResponse(changed=changed)


# ---------------------------------------------------------------------------
# Tenant role overrides
# ---------------------------------------------------------------------------


@router.put("/tenants/{tenant_id}/roles/{role_code}/permissions/{code}", response_model=ChangeResponse)
def set_tenant_override(
    request: Request,
    tenant_id: int,
    body: TenantOverrideRequest,
    role_code: str = Path(pattern=PERMISSION_CODE_PATTERN),
    code: str = Path(pattern=PERMISSION_CODE_PATTERN),
    ctx: AuthContext = Depends(require_tenant_permission("SETTINGS_EDIT")),
) -> ChangeResponse:
    """Switch a role's default code off (enabled=false) or back on inside one tenant.

    An override can only disable: enabling a code the role does not grant
    adds nothing.
    """
    resolver = _resolver(request)
    try:
        with guarded("set tenant override"):
            resolver.set_tenant_override(tenant_id, role_code, code, body.enabled)
    except ReferenceNotFound as exc:
        raise _not_found(exc) from exc
    return ChangeResponse(changed=True)


@router.delete("/tenants/{tenant_id}/roles/{role_code}/permissions/{code}", response_model=ChangeResponse)
def clear_tenant_override(
    request: Request,
    tenant_id: int,
    role_code: str = Path(pattern=PERMISSION_CODE_PATTERN),
    code: str = Path(pattern=PERMISSION_CODE_PATTERN),
    ctx: AuthContext = Depends(require_tenant_permission("SETTINGS_EDIT")),
) -> ChangeResponse:
    resolver = _resolver(request)
    try:
        with guarded("clear tenant override"):
            changed = resolver.clear_tenant_override(tenant_id, role_code, code)
    except ReferenceNotFound as exc:
        raise _not_found(exc) from exc
    return ChangeResponse(changed=changed)


# ---------------------------------------------------------------------------
# Role defaults (platform-wide)
# ---------------------------------------------------------------------------


@router.put("/roles/{role_code}/permissions", response_model=ChangeResponse)
def set_role_permissions(
    request: Request,
    body: RolePermissionsRequest,
    role_code: str = Path(pattern=PERMISSION_CODE_PATTERN),
    ctx: AuthContext = Depends(require_operator),
) -> ChangeResponse:
    """Replace a role's default permission set. Invalidates every cached resolution."""
    resolver = _resolver(request)
    try:
        with guarded("set role permissions"):
            resolver.set_role_permissions(role_code, body.codes)
    except ReferenceNotFound as exc:
        raise _not_found(exc) from exc
    return ChangeResponse(changed=True)


# ---------------------------------------------------------------------------
# Principal lifecycle
# ---------------------------------------------------------------------------


@router.post("/users/{user_id}/suspend", response_model=PrincipalResponse)
def suspend_user(
    request: Request,
    user_id: int,
    ctx: AuthContext = Depends(require_permission("USER_EDIT")),
) -> PrincipalResponse:
    """Suspend a principal: status, sessions, refresh tokens and cached permissions."""
    gateway: AuthGateway = request.app.state.gateway
    target = gateway.suspend_principal(ctx.principal, user_id)
    return PrincipalResponse(
        user_id=target.id,
        username=target.username,
        kind=target.kind,
        status=target.status,
        tenant_id=target.tenant_id,
        auth_method=ctx.method,
    )

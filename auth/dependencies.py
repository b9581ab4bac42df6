"""
auth/dependencies.py -- FastAPI Depends() helpers: the request-side auth middleware.

Two credential carriers are checked in priority order:
  1. Authorization: Bearer <access token>  -- API and mobile clients.
  2. Session cookie (SESSION_COOKIE_NAME)  -- browser clients.

Both converge on an AuthContext: the freshly loaded principal (status must be
active on every request), the tenant the credential is bound to, and the
session or claims it came from.

Session-authenticated POST/PUT/PATCH/DELETE requests must also carry
X-CSRF-Token matching the session's anti-forgery token. Bearer requests are
exempt: browsers never attach an Authorization header on their own.

get_auth_context() raises the auth error taxonomy; api/main.py renders it.
require_permission(code) and require_tenant_permission(code) stack the
PermissionResolver check on top. The latter reads {tenant_id} from the path
and goes through TenantGuard, so a foreign tenant answers 404.

Layer rule: no imports from api/ or web/.
  auth/dependencies.py may import from fastapi (for Depends/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

from fastapi import Depends, Request

from auth.errors import NotAuthenticated, PermissionDenied
from auth.gateway import AuthGateway
from auth.models import Claims, Session, User
from auth.permissions import PermissionResolver
from auth.sessions import SessionManager

TOKEN = "token"
SESSION = "session"

ANTI_FORGERY_HEADER = "X-CSRF-Token"
_MUTATING_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})


@dataclass
class AuthContext:
    principal: User
    tenant_id: int | None
    method: str
    session: Session | None = None
    claims: Claims | None = None


def bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:].strip() or None
    return None


def get_auth_context(request: Request) -> AuthContext:
    """Require authentication. Raises a TokenError subclass (401) otherwise.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(ctx: AuthContext = Depends(get_auth_context)): ...
    """
    gateway: AuthGateway = request.app.state.gateway

    token = bearer_token(request)
    if token:
        user, claims = gateway.principal_for_access_token(token)
        ctx = AuthContext(principal=user, tenant_id=claims.tid, method=TOKEN, claims=claims)
    else:
        session_id = request.cookies.get(request.app.state.settings.session_cookie_name)
        if not session_id:
            raise NotAuthenticated()
        user, session = gateway.principal_for_session(session_id)
        if request.method in _MUTATING_METHODS:
            SessionManager.verify_anti_forgery(session, request.headers.get(ANTI_FORGERY_HEADER))
        ctx = AuthContext(principal=user, tenant_id=session.tenant_id, method=SESSION, session=session)

    request.state.principal_id = user.id
    return ctx


def require_permission(code: str) -> Callable[..., AuthContext]:
    """Require `code` in the tenant the credential is bound to.

    Use as a FastAPI dependency:
        @router.get("/sales")
        def route(ctx: AuthContext = Depends(require_permission("SALE_VIEW"))): ...
    """

    def dependency(request: Request, ctx: AuthContext = Depends(get_auth_context)) -> AuthContext:
        resolver: PermissionResolver = request.app.state.resolver
        if not resolver.has_permission(ctx.principal, ctx.tenant_id, code):
            raise PermissionDenied(code)
        return ctx

    return dependency


def require_tenant_permission(code: str) -> Callable[..., AuthContext]:
    """Require `code` in the tenant named by the {tenant_id} path parameter."""

    def dependency(request: Request, tenant_id: int, ctx: AuthContext = Depends(get_auth_context)) -> AuthContext:
        resolver: PermissionResolver = request.app.state.resolver
        if not resolver.has_permission(ctx.principal, tenant_id, code):
            raise PermissionDenied(code)
        return ctx

    return dependency


def require_operator(ctx: AuthContext = Depends(get_auth_context)) -> AuthContext:
    if not ctx.principal.is_platform_operator:
        raise PermissionDenied("platform operator required")
    return ctx

"""
api/routes/v1/auth.py -- Token-path authentication endpoints.

Routes:
  POST /api/v1/auth/login        -- credentials -> access/refresh pair
  POST /api/v1/auth/refresh      -- rotate a refresh token; old one is consumed
  POST /api/v1/auth/logout       -- revoke the presented token's whole family; 204
  GET  /api/v1/auth/me           -- current principal (requires auth)
  GET  /api/v1/auth/permissions  -- effective permission codes (requires auth)

Security:
  POST /login and POST /refresh are rate-limited per client address (slowapi).
  Credential and token failures raise the auth error taxonomy; api/main.py
  renders them uniformly (401 invalid_credentials / invalid_token).
  Cache-Control: no-store on every response that carries a token.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse

from api.limiter import limiter, login_rate_limit
from api.models import PermissionsResponse, PrincipalResponse, RefreshRequest, TokenLoginRequest, TokenPairResponse
from auth.dependencies import AuthContext, get_auth_context
from auth.gateway import AuthGateway
from auth.models import TokenPair
from auth.permissions import PermissionResolver

# Auth policy:
# - POST /api/v1/auth/login:        public -- login endpoint must be unauthenticated
# - POST /api/v1/auth/refresh:      public -- the refresh token is the credential
# - POST /api/v1/auth/logout:       public -- the refresh token is the credential
# - GET  /api/v1/auth/me:           requires auth (get_auth_context)
# - GET  /api/v1/auth/permissions:  requires auth (get_auth_context)
router = APIRouter()


def _client_address(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def _token_response(pair: TokenPair) -> JSONResponse:
    body = TokenPairResponse(
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        token_type="bearer",  # noqa: S106 # nosec B106 -- OAuth token type, not a password
        expires_in=pair.expires_in,
    )
    resp = JSONResponse(status_code=200, content=body.model_dump(by_alias=True))
    resp.headers["Cache-Control"] = "no-store"
    return resp


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/login", response_model=TokenPairResponse)
@limiter.limit(login_rate_limit)
def login(request: Request, body: TokenLoginRequest) -> JSONResponse:
    """Authenticate and issue a token pair that starts a new refresh family.

    A platform operator may name tenantId to act in that tenant; anyone else
    naming a foreign tenant gets the same 404 as any cross-tenant access.
    """
    gateway: AuthGateway = request.app.state.gateway
    pair = gateway.login_token(
        body.identity,
        body.secret,
        _client_address(request),
        device_id=body.device_id,
        tenant_id=body.tenant_id,
        user_agent=request.headers.get("User-Agent"),
    )
    return _token_response(pair)


@router.post("/auth/refresh", response_model=TokenPairResponse)
@limiter.limit(login_rate_limit)
def refresh(request: Request, body: RefreshRequest) -> JSONResponse:
    """Exchange a refresh token for a new pair. The presented token is consumed."""
    gateway: AuthGateway = request.app.state.gateway
    return _token_response(gateway.refresh(body.refresh_token))


@router.post("/auth/logout", status_code=204)
def logout(request: Request, body: RefreshRequest) -> Response:
    """Revoke every refresh token in the presented token's family.

    Expired refresh tokens are accepted so a client can always log out.
    """
    gateway: AuthGateway = request.app.state.gateway
    gateway.logout_token(body.refresh_token)
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=PrincipalResponse)
def me(ctx: AuthContext = Depends(get_auth_context)) -> PrincipalResponse:
    """Return identity information for the currently authenticated principal."""
    principal = ctx.principal
    return PrincipalResponse(
        user_id=principal.id,
        username=principal.username,
        kind=principal.kind,
        status=principal.status,
        tenant_id=ctx.tenant_id,
        auth_method=ctx.method,
    )


@router.get("/auth/permissions", response_model=PermissionsResponse)
def permissions(request: Request, ctx: AuthContext = Depends(get_auth_context)) -> PermissionsResponse:
    """Sorted effective permission codes in the caller's tenant."""
    resolver: PermissionResolver = request.app.state.resolver
    return PermissionsResponse(
        tenant_id=ctx.tenant_id,
        permissions=resolver.effective_codes(ctx.principal, ctx.tenant_id),
    )

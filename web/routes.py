"""
web/routes.py -- Browser session routes.

These routes serve the session path of the auth core. They share app.state
with the API routes (same gateway, session manager and settings) but speak
in cookies instead of bearer tokens.

Routes:
  POST /auth/login    -- credentials -> session cookie + anti-forgery token
  POST /auth/logout   -- destroy the session, delete the cookie (X-CSRF-Token required)
  GET  /auth/session  -- current principal for the session cookie

Cookie: HttpOnly, SameSite=Strict, Secure when SECURE_COOKIES is set, and
Path=/. The value is the raw session identifier; the server stores only its
SHA-256 digest.

Fixation: a login that arrives carrying a session cookie destroys that
session first. The identifier set on success is always freshly minted.

Layer rule: no imports from api/. asgi.py joins the two layers.
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from auth.dependencies import SESSION, AuthContext, get_auth_context
from auth.gateway import AuthGateway
from core.config import Settings

logger = logging.getLogger("tenantauth.web")

router = APIRouter()


class SessionLoginRequest(BaseModel):
    """Request body for POST /auth/login."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, str_strip_whitespace=True)

    identity: str = Field(min_length=1, max_length=150)
    secret: str = Field(min_length=1, max_length=1024)
    tenant_id: Optional[int] = None


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def _set_session_cookie(response: Response, settings: Settings, session_id: str) -> None:
    response.set_cookie(
        key=settings.session_cookie_name,
        value=session_id,
        max_age=settings.session_absolute_timeout_seconds,
        path="/",
        httponly=True,
        samesite="strict",
        secure=settings.secure_cookies,
    )


def _clear_session_cookie(response: Response, settings: Settings) -> None:
    response.delete_cookie(
        key=settings.session_cookie_name,
        path="/",
        httponly=True,
        samesite="strict",
        secure=settings.secure_cookies,
    )


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------


@router.post("/auth/login")
def login(request: Request, body: SessionLoginRequest) -> JSONResponse:
    """Authenticate and start a browser session.

    Returns the anti-forgery token the page must echo in X-CSRF-Token on every
    state-mutating request, and the idle timeout in seconds.
    """
    gateway: AuthGateway = request.app.state.gateway
    settings: Settings = request.app.state.settings
    _, session = gateway.login_session(
        body.identity,
        body.secret,
        request.client.host if request.client else "unknown",
        tenant_id=body.tenant_id,
        previous_session_id=request.cookies.get(settings.session_cookie_name),
        user_agent=request.headers.get("User-Agent"),
    )
    resp = JSONResponse(
        status_code=200,
        content={
            "antiForgeryToken": session.anti_forgery_token,
            "idleTimeout": settings.session_idle_timeout_seconds,
        },
    )
    _set_session_cookie(resp, settings, session.id)
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.post("/auth/logout", status_code=204)
def logout(request: Request, ctx: AuthContext = Depends(get_auth_context)) -> Response:
    """Destroy the current session and delete its cookie.

    A bearer-authenticated caller has no session here; the call is a no-op
    and token clients should use POST /api/v1/auth/logout instead.
    """
    gateway: AuthGateway = request.app.state.gateway
    settings: Settings = request.app.state.settings
    if ctx.method == SESSION and ctx.session is not None:
        gateway.logout_session(ctx.session.id)
        logger.info("Session logout: principal %s", ctx.principal.id)
    resp = Response(status_code=204)
    _clear_session_cookie(resp, settings)
    return resp


@router.get("/auth/session")
def current_session(request: Request, ctx: AuthContext = Depends(get_auth_context)) -> JSONResponse:
    """Describe the caller. Each call also renews the session's idle timer."""
    settings: Settings = request.app.state.settings
    content = {
        "userId": ctx.principal.id,
        "username": ctx.principal.username,
        "kind": ctx.principal.kind,
        "tenantId": ctx.tenant_id,
        "authMethod": ctx.method,
        "idleTimeout": settings.session_idle_timeout_seconds,
    }
    if ctx.session is not None:
        content["antiForgeryToken"] = ctx.session.anti_forgery_token
    resp = JSONResponse(status_code=200, content=content)
    resp.headers["Cache-Control"] = "no-store"
    return resp

"""
api/main.py -- FastAPI application entry point for tenantauth.

Serves the token-path auth endpoints and the RBAC administration API. The
browser session routes (web/routes.py) are mounted on the same app by asgi.py.

Run with:  uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan builds every auth component once (engine, stores, hasher pool,
permission cache, gateway) and tears them down symmetrically. A background
task runs the delete-only maintenance sweep on SWEEP_INTERVAL_SECONDS.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from api.routes.v1.rbac import router as rbac_router
from auth.errors import AuthError
from auth.gateway import AuthGateway
from auth.lockout import AttemptStore, LockoutGuard
from auth.maintenance import sweep
from auth.passwords import PasswordHasher
from auth.permissions import PermissionResolver
from auth.revocation import RevocationStore
from auth.schema import build_engine, create_schema
from auth.sessions import SessionManager
from auth.store import AuthStore
from auth.tenancy import TenantGuard
from auth.tokens import TokenService
from cache.store import PermissionCache
from core.clock import utcnow
from core.config import Settings, get_settings

VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("tenantauth.api")

# ---------------------------------------------------------------------------
# Component wiring
# ---------------------------------------------------------------------------


def build_components(app: FastAPI, settings: Settings, clock=utcnow, hasher: PasswordHasher | None = None) -> None:
    """Construct every auth component and attach it to app.state.

    Shared by the lifespan and by tests, which pass a fake clock, an
    in-memory database URL and a low-cost hasher.
    """
    engine = build_engine(settings.database_url, timeout=settings.db_timeout_seconds)
    create_schema(engine)

    store = AuthStore(engine, clock=clock)
    cache = PermissionCache(
        ttl=settings.permission_cache_ttl_seconds,
        namespace=settings.cache_namespace,
        clock=clock,
    )
    tenant_guard = TenantGuard()
    resolver = PermissionResolver(store, cache, tenant_guard)
    hasher = hasher or PasswordHasher.from_settings(settings)
    lockout = LockoutGuard.from_settings(AttemptStore(engine), settings, clock=clock)
    revocations = RevocationStore(engine, clock=clock)
    tokens = TokenService.from_settings(settings, revocations, clock=clock)
    sessions = SessionManager.from_settings(engine, settings, clock=clock)

    app.state.settings = settings
    app.state.engine = engine
    app.state.store = store
    app.state.cache = cache
    app.state.resolver = resolver
    app.state.hasher = hasher
    app.state.lockout = lockout
    app.state.revocations = revocations
    app.state.tokens = tokens
    app.state.sessions = sessions
    app.state.gateway = AuthGateway(store, hasher, lockout, tokens, sessions, resolver, tenant_guard)


def close_components(app: FastAPI) -> None:
    app.state.hasher.close()
    app.state.cache.close()
    app.state.engine.dispose()


def run_maintenance(state, retention_days: int) -> dict[str, int]:
    return sweep(state.revocations, state.lockout, state.sessions, state.cache, retention_days)


# ---------------------------------------------------------------------------
# Background maintenance task
# ---------------------------------------------------------------------------


async def _sweep_loop(app: FastAPI) -> None:
    """Run the maintenance sweep every SWEEP_INTERVAL_SECONDS.

    The sweep itself is blocking database work, so it runs in a worker
    thread. A failing sweep is logged and retried on the next tick.
    CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and unwinds the coroutine cleanly.
    """
    settings: Settings = app.state.settings
    while True:
        await asyncio.sleep(settings.sweep_interval_seconds)
        try:
            await asyncio.to_thread(run_maintenance, app.state, settings.login_attempt_retention_days)
        except Exception:
            logger.exception("Maintenance sweep failed")


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Everything before yield runs on startup; everything after yield runs on
    shutdown. Settings are validated first so a missing SECRET_KEY or PEPPER
    stops the process before any socket is opened.
    """
    settings = get_settings()
    logger.info("tenantauth API starting up (debug=%s)", settings.debug)
    build_components(app, settings)
    logger.info(
        "Auth initialized (has_users=%s, cache namespace=%s)",
        app.state.store.has_users(),
        settings.cache_namespace,
    )
    app.state.sweep_task = asyncio.create_task(_sweep_loop(app))

    yield

    app.state.sweep_task.cancel()
    close_components(app)
    logger.info("tenantauth API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="tenantauth API",
    description="Dual-mode authentication (sessions and bearer tokens) with tenant-scoped RBAC.",
    version=VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Register in the order you want the request to encounter them:
# TrustedHost -> CORS -> SlowAPI.
# ---------------------------------------------------------------------------

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=["localhost", "127.0.0.1", "*.localhost"],
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost", "http://localhost:3000", "http://127.0.0.1"],
    allow_methods=["GET", "POST", "PUT", "DELETE"],
    allow_headers=["Content-Type", "Authorization", "X-CSRF-Token"],
    allow_credentials=True,
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter

# ---------------------------------------------------------------------------
# Request logging middleware
# ---------------------------------------------------------------------------


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(rbac_router, prefix="/api/v1", tags=["RBAC"])
# Session routes are mounted by asgi.py, not here.
# api/ and web/ are independent layers -- only the top-level asgi.py imports both.


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Render the auth taxonomy with its public face only.

    The precise internal code is logged; the client sees the coarse
    public_code so it cannot tell a wrong password from an unknown account,
    a revoked token from a forged one, or another tenant's data from
    nothing at all.
    """
    logger.info(
        "%s %s -> %d %s (%s)",
        request.method,
        request.url.path,
        exc.status_code,
        exc.public_code,
        exc.code,
    )
    response = JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(code=exc.public_code, message=exc.public_message),
        ).model_dump(),
    )
    response.headers["Cache-Control"] = "no-store"
    if exc.status_code == 401:
        response.headers["WWW-Authenticate"] = "Bearer"
    return response


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded.

    Retry-After tells clients exactly how many seconds to wait before retrying.
    """
    retry_after = int(getattr(exc, "retry_after", 60))
    response = JSONResponse(
        status_code=429,
        content=ErrorResponse(
            error=ErrorDetail(
                code="rate_limited",
                message="Too many requests.",
                detail=str(exc.detail),
            )
        ).model_dump(),
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or path params fail validation.

    Only field locations and messages are echoed; submitted values (which may
    be passwords or tokens) are not.
    """
    errors = ["{}: {}".format(".".join(str(p) for p in e.get("loc", ())), e.get("msg", "")) for e in exc.errors()]
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            error=ErrorDetail(
                code="validation_error",
                message="Request validation failed.",
                detail="; ".join(errors),
            )
        ).model_dump(),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    When detail is already a structured dict, use it directly as the error
    field rather than stringifying it.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
        )
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=f"http_{exc.status_code}",
                message=str(exc.detail),
            )
        ).model_dump(),
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception is written to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error=ErrorDetail(
                code="internal_error",
                message="An unexpected error occurred.",
            )
        ).model_dump(),
    )


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state. No rate limit applied.
# ---------------------------------------------------------------------------


def _database_status(request: Request) -> str:
    try:
        with request.app.state.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except SQLAlchemyError:
        logger.warning("Health check: database unreachable")
        return "unavailable"
    return "ok"


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
def health(request: Request) -> JSONResponse:
    """Return liveness, version and per-component status. 503 when degraded."""
    components = {
        "database": _database_status(request),
        "permission_cache": "ok",
    }
    degraded = any(v != "ok" for v in components.values())
    body = HealthResponse(status="degraded" if degraded else "ok", version=VERSION, components=components)
    return JSONResponse(status_code=503 if degraded else 200, content=body.model_dump())

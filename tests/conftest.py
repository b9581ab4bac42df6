"""
tests/conftest.py -- Shared test fixtures for tenantauth unit and integration tests.

This module provides:
  - FakeClock: injectable clock for time travel without sleeping
  - engine/store/...: isolated in-memory SQLite components for unit tests
  - fast_hasher: PasswordHasher with tiny Argon2 costs (unit speed only)
  - make_user / make_role: factories for principals and roles with grants
  - app_env: the real FastAPI app (with session routes) wired to test components
  - limiter reset between tests so slowapi counters never leak across tests

Design: Named shared-memory SQLite URIs (not plain :memory:) are used for the
app because TestClient runs route handlers in a thread pool and the pool
hands each thread its own connection. The named URI format
(file:name?mode=memory&cache=shared&uri=true) shares one in-memory instance
across all connections in the same process.

The DEBUG env var must be set before any core/auth import so get_settings()
auto-generates secrets in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import asyncio
import itertools
import os
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

# CRITICAL: Set DEBUG before any auth/core import so get_settings() can
# auto-generate SECRET_KEY and PEPPER in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app, build_components, close_components
from auth.lockout import AttemptStore, LockoutGuard
from auth.models import Permission, PrincipalKind, Role, User
from auth.passwords import PasswordHasher
from auth.permissions import PermissionResolver
from auth.revocation import RevocationStore
from auth.schema import build_engine, create_schema
from auth.sessions import SessionManager
from auth.store import AuthStore
from auth.tenancy import TenantGuard
from auth.tokens import TokenService
from cache.store import PermissionCache
from core.config import Settings

TEST_SECRET_KEY = "k" * 48
TEST_PEPPER = "p" * 48

_db_counter = itertools.count()


# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------


class FakeClock:
    """Callable clock that only moves when a test says so."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 5, 9, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


# ---------------------------------------------------------------------------
# Unit-level components
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def engine():
    """Plain in-memory SQLite (StaticPool: one shared connection)."""
    eng = build_engine("sqlite://")
    create_schema(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def fast_hasher() -> Generator[PasswordHasher, None, None]:
    """Argon2id with minimal costs. Production floors are enforced by Settings, not here."""
    hasher = PasswordHasher(TEST_PEPPER, memory_cost=1024, time_cost=1, parallelism=1, salt_len=16, workers=2)
    yield hasher
    hasher.close()


@pytest.fixture
def store(engine, clock) -> AuthStore:
    return AuthStore(engine, clock=clock)


@pytest.fixture
def cache(clock) -> PermissionCache:
    return PermissionCache(ttl=900, namespace="test", clock=clock)


@pytest.fixture
def resolver(store, cache) -> PermissionResolver:
    return PermissionResolver(store, cache, TenantGuard())


@pytest.fixture
def revocations(engine, clock) -> RevocationStore:
    return RevocationStore(engine, clock=clock)


@pytest.fixture
def tokens(revocations, clock) -> TokenService:
    return TokenService(TEST_SECRET_KEY, revocations, clock=clock)


@pytest.fixture
def sessions(engine, clock) -> SessionManager:
    return SessionManager(engine, idle_timeout_seconds=1800, absolute_timeout_seconds=43200, clock=clock)


@pytest.fixture
def lockout(engine, clock) -> LockoutGuard:
    return LockoutGuard(AttemptStore(engine), threshold=5, window_seconds=900, source_threshold=50, clock=clock)


PASSWORD = "correct horse battery"


def _create_user(
    store: AuthStore,
    hasher: PasswordHasher,
    username: str,
    password: str = PASSWORD,
    kind: str = PrincipalKind.tenant_staff.value,
    tenant_id: int | None = 1,
) -> User:
    if kind == PrincipalKind.platform_operator.value:
        tenant_id = None
    uid = store.create_user(
        User(username=username, kind=kind, tenant_id=tenant_id, credential_hash=hasher.hash(password))
    )
    return store.get_user(uid)


def _create_role(store: AuthStore, code: str, grants: tuple[str, ...]) -> None:
    for perm in grants:
        if store.get_permission(perm) is None:
            store.create_permission(Permission(code=perm, name=perm.title(), module="test"))
    store.create_role(Role(code=code, name=code.title()))
    store.set_role_permissions(code, grants)


@pytest.fixture
def make_user(store, fast_hasher):
    """Factory: make_user("alice", tenant_id=1) -> active User as loaded from the store."""

    def factory(username: str, password: str = PASSWORD, **kwargs) -> User:
        return _create_user(store, fast_hasher, username, password, **kwargs)

    return factory


@pytest.fixture
def make_role(store):
    """Factory: make_role("CLERK", ("SALE_VIEW",)) creates the role and any missing codes."""

    def factory(code: str, grants: tuple[str, ...] = ()) -> None:
        _create_role(store, code, grants)

    return factory


# ---------------------------------------------------------------------------
# App-level fixtures
# ---------------------------------------------------------------------------


@dataclass
class AppEnv:
    client: TestClient
    clock: FakeClock
    hasher: PasswordHasher

    @property
    def state(self):
        return self.client.app.state

    @property
    def store(self) -> AuthStore:
        return self.client.app.state.store

    def user(self, username: str, password: str = PASSWORD, **kwargs) -> User:
        return _create_user(self.store, self.hasher, username, password, **kwargs)

    def role(self, code: str, grants: tuple[str, ...] = ()) -> None:
        _create_role(self.store, code, grants)

    def token_login(self, username: str, password: str = PASSWORD, **extra) -> dict:
        resp = self.client.post("/api/v1/auth/login", json={"identity": username, "secret": password, **extra})
        assert resp.status_code == 200, resp.text
        return resp.json()

    def bearer(self, username: str, password: str = PASSWORD, **extra) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.token_login(username, password, **extra)['accessToken']}"}


def _patch_lifespan(settings: Settings, clock: FakeClock, hasher: PasswordHasher):
    """Return an async context manager that replaces the real lifespan.

    Builds the real component graph against the test settings, the fake
    clock and the low-cost hasher. The sweep task is a long-sleeping
    coroutine so shutdown still has a real asyncio.Task to cancel.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        build_components(app, settings, clock=clock, hasher=hasher)
        app.state.sweep_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.sweep_task.cancel()
        close_components(app)

    return test_lifespan


def _app_settings() -> Settings:
    return Settings(
        debug=False,
        secret_key=TEST_SECRET_KEY,
        pepper=TEST_PEPPER,
        database_url=f"sqlite:///file:test_tenantauth_{next(_db_counter)}?mode=memory&cache=shared&uri=true",
    )


@pytest.fixture
def app_env() -> Generator[AppEnv, None, None]:
    """Yield an AppEnv around a TestClient on the assembled app (API + session routes).

    Each test gets its own shared-memory database, clock and hasher.
    """
    import asgi  # noqa: F401 -- mounts web routes onto api.main.app once

    clock = FakeClock()
    hasher = PasswordHasher(TEST_PEPPER, memory_cost=1024, time_cost=1, parallelism=1, salt_len=16, workers=2)
    app.router.lifespan_context = _patch_lifespan(_app_settings(), clock, hasher)
    with TestClient(app, base_url="http://localhost", raise_server_exceptions=True) as client:
        yield AppEnv(client=client, clock=clock, hasher=hasher)


@pytest.fixture(autouse=True)
def _reset_rate_limits() -> None:
    limiter.reset()

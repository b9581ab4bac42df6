"""
auth/schema.py -- SQLAlchemy Core schema and engine factory for the auth core.

One MetaData holds every table the auth core owns. Each store module
(store.py, revocation.py, lockout.py, sessions.py) imports its tables from
here and receives the Engine by injection, so a process builds exactly one
engine at startup and disposes it at shutdown.

Timestamps that SQL compares (expiry, activity, throttle windows) are stored
as UTC epoch seconds in Float columns: ordering is numeric and independent of
string formatting.

Security:
  All queries in the auth core use bound parameters. No f-strings in SQL.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy import (
    Boolean,
    Column,
    Float,
    ForeignKey,
    Integer,
    MetaData,
    PrimaryKeyConstraint,
    String,
    Table,
    Text,
    create_engine,
    event,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import StaticPool

from auth.errors import AuthBackendError

logger = logging.getLogger("tenantauth.auth.schema")

metadata = MetaData()

# ---------------------------------------------------------------------------
# Principals
# ---------------------------------------------------------------------------

users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("tenant_id", Integer, index=True),  # NULL only for platform operators
    Column("username", String(100), nullable=False, unique=True),
    Column("email", String(255)),
    Column("credential_hash", Text),
    Column("kind", String(30), nullable=False),
    Column("status", String(20), nullable=False, server_default="pending"),
    Column("failed_attempt_count", Integer, nullable=False, server_default="0"),
    Column("last_authenticated_at", Float),
    Column("created_at", Float, nullable=False),
)

# ---------------------------------------------------------------------------
# RBAC reference data
# ---------------------------------------------------------------------------

roles = Table(
    "roles",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("code", String(50), nullable=False, unique=True),
    Column("name", String(100), nullable=False),
    Column("description", Text),
    Column("is_system", Boolean, nullable=False, server_default="0"),
)

permissions = Table(
    "permissions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("code", String(50), nullable=False, unique=True),
    Column("name", String(100), nullable=False),
    Column("description", Text),
    Column("module", String(50), nullable=False, index=True),
)

role_permissions = Table(
    "role_permissions",
    metadata,
    Column("role_id", Integer, ForeignKey("roles.id", ondelete="CASCADE"), nullable=False),
    Column("permission_id", Integer, ForeignKey("permissions.id", ondelete="CASCADE"), nullable=False),
    PrimaryKeyConstraint("role_id", "permission_id"),
)

user_roles = Table(
    "user_roles",
    metadata,
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("role_id", Integer, ForeignKey("roles.id", ondelete="CASCADE"), nullable=False),
    Column("tenant_id", Integer, nullable=False),
    PrimaryKeyConstraint("user_id", "role_id", "tenant_id"),
)

tenant_role_overrides = Table(
    "tenant_role_overrides",
    metadata,
    Column("tenant_id", Integer, nullable=False),
    Column("role_id", Integer, ForeignKey("roles.id", ondelete="CASCADE"), nullable=False),
    Column("permission_id", Integer, ForeignKey("permissions.id", ondelete="CASCADE"), nullable=False),
    Column("is_enabled", Boolean, nullable=False, server_default="1"),
    PrimaryKeyConstraint("tenant_id", "role_id", "permission_id"),
)

user_permission_overrides = Table(
    "user_permission_overrides",
    metadata,
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("tenant_id", Integer, nullable=False),
    Column("permission_id", Integer, ForeignKey("permissions.id", ondelete="CASCADE"), nullable=False),
    Column("allowed", Boolean, nullable=False),  # True = grant, False = deny (deny wins)
    PrimaryKeyConstraint("user_id", "tenant_id", "permission_id"),
)

# ---------------------------------------------------------------------------
# Refresh tokens, login attempts, throttle counters, sessions
# ---------------------------------------------------------------------------

refresh_tokens = Table(
    "refresh_tokens",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("jti", String(64), nullable=False, unique=True),
    Column("principal_id", Integer, nullable=False, index=True),
    Column("tenant_id", Integer),
    Column("device_id", String(128)),
    Column("family_id", String(64), nullable=False, index=True),
    Column("revoked", Boolean, nullable=False, server_default="0"),
    Column("expires_at", Float, nullable=False, index=True),
    Column("created_at", Float, nullable=False),
)

login_attempts = Table(
    "login_attempts",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("identity", String(255), nullable=False, index=True),
    Column("source_address", String(45), nullable=False, index=True),
    Column("user_agent", Text),
    Column("attempted_at", Float, nullable=False, index=True),
    Column("success", Boolean, nullable=False),
    Column("failure_reason", String(50)),
)

auth_throttle = Table(
    "auth_throttle",
    metadata,
    Column("scope", String(16), nullable=False),  # "identity" or "source"
    Column("key", String(255), nullable=False),
    Column("window_start", Float, nullable=False),
    Column("failures", Integer, nullable=False),
    Column("locked_until", Float),
    PrimaryKeyConstraint("scope", "key"),
)

sessions = Table(
    "sessions",
    metadata,
    Column("id_hash", String(64), primary_key=True),  # SHA-256 hex of the raw session id
    Column("principal_id", Integer, nullable=False, index=True),
    Column("tenant_id", Integer),
    Column("kind", String(30), nullable=False),
    Column("anti_forgery_token", String(128), nullable=False),
    Column("created_at", Float, nullable=False),
    Column("last_activity_at", Float, nullable=False),
)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers proceed while a writer holds the lock.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def build_engine(db_url: str, timeout: float = 5.0) -> Engine:
    """Create the process-wide Engine.

    timeout bounds every wait on the database: SQLite's busy timeout, or the
    pool checkout timeout for server databases. A call that cannot get its
    lock in time raises, and auth callers turn that into AuthBackendError.

    Plain in-memory SQLite URLs get a StaticPool so every checkout sees the
    same database (tests and throwaway CLI runs).
    """
    connect_args: dict = {}
    engine_kwargs: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
        connect_args["timeout"] = timeout
        if db_url in ("sqlite://", "sqlite:///:memory:"):
            engine_kwargs["poolclass"] = StaticPool
    else:
        engine_kwargs["pool_timeout"] = timeout
        engine_kwargs["pool_pre_ping"] = True
    engine = create_engine(db_url, connect_args=connect_args, **engine_kwargs)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_wal_mode)
    return engine


def create_schema(engine: Engine) -> None:
    """Create every auth table that does not exist yet. Idempotent."""
    metadata.create_all(engine)


@contextmanager
def guarded(operation: str) -> Iterator[None]:
    """Translate persistence failures into AuthBackendError.

    Used by the services around every store call on the request path so an
    unreachable or locked database surfaces as a 503 and never as a grant.
    """
    try:
        yield
    except SQLAlchemyError as exc:
        logger.error("Persistence failure during %s: %s", operation, exc.__class__.__name__)
        raise AuthBackendError(operation) from exc

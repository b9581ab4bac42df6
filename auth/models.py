"""
auth/models.py -- Domain dataclasses for authentication and RBAC entities.

Pattern: Data class (pure data container, zero logic beyond tiny predicates).
Dataclasses own domain shape; stores, services and routes do the work.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class PrincipalKind(str, Enum):
    platform_operator = "platform_operator"
    tenant_owner = "tenant_owner"
    tenant_staff = "tenant_staff"
    tenant_member = "tenant_member"


class PrincipalStatus(str, Enum):
    pending = "pending"
    active = "active"
    locked = "locked"
    suspended = "suspended"
    inactive = "inactive"


@dataclass
class User:
    """A principal: an identity that can authenticate.

    tenant_id is None only for platform operators; every other kind belongs
    to exactly one tenant. The store rejects violations at insert time.

    credential_hash is the encoded PasswordHasher output (Argon2id, or a
    legacy bcrypt hash awaiting upgrade). It never leaves the auth package.
    """

    username: str
    kind: str
    id: int | None = None
    tenant_id: int | None = None
    email: str | None = None
    credential_hash: str | None = None
    status: str = PrincipalStatus.active.value
    failed_attempt_count: int = 0
    last_authenticated_at: datetime | None = None
    created_at: datetime | None = None

    @property
    def is_platform_operator(self) -> bool:
        return self.kind == PrincipalKind.platform_operator.value

    @property
    def is_active(self) -> bool:
        return self.status == PrincipalStatus.active.value


@dataclass
class Role:
    """Reusable, tenant-agnostic bundle of permissions. Assignment is tenant-scoped."""

    code: str
    name: str
    id: int | None = None
    description: str | None = None
    is_system: bool = False


@dataclass
class Permission:
    """Atomic capability. code is RESOURCE_ACTION shaped and immutable once stored."""

    code: str
    name: str
    module: str
    id: int | None = None
    description: str | None = None


@dataclass
class RefreshTokenRecord:
    """Server-side record of an issued refresh token, keyed by its jti.

    family_id links every token descended (by rotation) from one login, so
    logging out a device can revoke the whole chain in one statement.
    """

    jti: str
    principal_id: int
    expires_at: datetime
    family_id: str
    tenant_id: int | None = None
    device_id: str | None = None
    revoked: bool = False
    created_at: datetime | None = None


@dataclass
class LoginAttempt:
    """Append-only audit row. Never mutated; pruned by retention policy."""

    identity: str
    source_address: str
    attempted_at: datetime
    success: bool
    failure_reason: str | None = None
    user_agent: str | None = None
    id: int | None = None


@dataclass
class Session:
    """Server-held browser session state.

    id is the raw opaque identifier as presented by the client. Storage only
    ever sees its SHA-256 digest, so a leaked sessions table cannot be
    replayed as cookies.
    """

    id: str
    principal_id: int
    kind: str
    anti_forgery_token: str
    created_at: datetime
    last_activity_at: datetime
    tenant_id: int | None = None


@dataclass(frozen=True)
class Claims:
    """Decoded and verified JWT claim set. One schema for access and refresh tokens."""

    sub: str
    tid: int | None
    kind: str
    dev: str | None
    jti: str
    exp: int
    typ: str
    iat: int | None = None

    @property
    def principal_id(self) -> int:
        return int(self.sub)


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int  # access token lifetime in seconds
    refresh_jti: str

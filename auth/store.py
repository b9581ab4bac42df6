"""
auth/store.py -- SQLAlchemy Core repository for principals and RBAC data.

Pattern: Repository + Data Mapper. AuthStore is the repository; the _row_to_*
functions are the mappers. Services and routes never touch SQL directly.

Covers users, roles, permissions, role -> permission defaults, tenant-scoped
role assignments, tenant role overrides and per-user direct grants/denials.
Refresh tokens, login attempts and sessions live in their own stores
(revocation.py, lockout.py, sessions.py) on the same Engine.

Security:
  All queries use bound parameters. No f-strings in SQL.
  Usernames are case-folded on write and on lookup so "Alice" and "alice"
  cannot become two accounts.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass

from sqlalchemy import and_, delete, func, insert, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from auth.models import Permission, PrincipalKind, Role, User
from auth.schema import (
    permissions,
    role_permissions,
    roles,
    tenant_role_overrides,
    user_permission_overrides,
    user_roles,
    users,
)
from core.clock import Clock, from_epoch, to_epoch, utcnow

PERMISSION_CODE_RE = re.compile(r"^[A-Z][A-Z0-9_]{2,49}$")


class ReferenceNotFound(LookupError):
    """A role or permission code named by the caller does not exist."""


@dataclass(frozen=True)
class RoleGrant:
    """One role assigned to a (principal, tenant) pair, as the resolver sees it.

    granted  -- the role's default permission codes.
    disabled -- codes the tenant has switched off for this role.
    """

    role_code: str
    granted: frozenset[str]
    disabled: frozenset[str]


class AuthStore:
    """Repository for principals and RBAC reference data.

    Usage:
        engine = build_engine("sqlite:///tenantauth.db")
        create_schema(engine)
        store = AuthStore(engine)
        uid = store.create_user(User(username="alice", kind="tenant_staff", tenant_id=1))
    """

    def __init__(self, engine: Engine, clock: Clock = utcnow) -> None:
        self.engine = engine
        self._clock = clock

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def has_users(self) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(select(func.count()).select_from(users)).scalar()
        return (result or 0) > 0

    def create_user(self, user: User) -> int:
        """Insert a new principal and return its id.

        Raises ValueError if a tenant-bound kind has no tenant_id, and
        sqlalchemy.exc.IntegrityError if the username already exists.
        """
        if user.kind not in {k.value for k in PrincipalKind}:
            raise ValueError(f"Unknown principal kind: {user.kind!r}")
        if user.kind != PrincipalKind.platform_operator.value and user.tenant_id is None:
            raise ValueError(f"Principal kind {user.kind!r} requires a tenant_id")
        with self.engine.connect() as conn:
            result = conn.execute(
                insert(users).values(
                    tenant_id=user.tenant_id,
                    username=user.username.strip().lower(),
                    email=user.email,
                    credential_hash=user.credential_hash,
                    kind=user.kind,
                    status=user.status,
                    failed_attempt_count=0,
                    created_at=to_epoch(self._clock()),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_user(self, user_id: int) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(select(users).where(users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_user_by_username(self, username: str) -> User | None:
        """Case-insensitive lookup (usernames are stored case-folded)."""
        with self.engine.connect() as conn:
            row = conn.execute(select(users).where(users.c.username == username.strip().lower())).fetchone()
        return _row_to_user(row) if row is not None else None

    def set_status(self, user_id: int, status: str) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(update(users).where(users.c.id == user_id).values(status=status))
            conn.commit()
        return result.rowcount > 0

    def update_credential_hash(self, user_id: int, credential_hash: str) -> None:
        with self.engine.connect() as conn:
            conn.execute(update(users).where(users.c.id == user_id).values(credential_hash=credential_hash))
            conn.commit()

    def increment_failed_attempts(self, user_id: int) -> None:
        """Atomic in-database increment; never read-then-write."""
        with self.engine.connect() as conn:
            conn.execute(
                update(users)
                .where(users.c.id == user_id)
                .values(failed_attempt_count=users.c.failed_attempt_count + 1)
            )
            conn.commit()

    def record_login_success(self, user_id: int) -> None:
        """Reset the failure counter and stamp last_authenticated_at."""
        with self.engine.connect() as conn:
            conn.execute(
                update(users)
                .where(users.c.id == user_id)
                .values(failed_attempt_count=0, last_authenticated_at=to_epoch(self._clock()))
            )
            conn.commit()

    # ------------------------------------------------------------------
    # Roles and permissions
    # ------------------------------------------------------------------

    def create_role(self, role: Role) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                insert(roles).values(
                    code=role.code,
                    name=role.name,
                    description=role.description,
                    is_system=role.is_system,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_role(self, code: str) -> Role | None:
        with self.engine.connect() as conn:
            row = conn.execute(select(roles).where(roles.c.code == code)).fetchone()
        return _row_to_role(row) if row is not None else None

    def list_roles(self) -> list[Role]:
        with self.engine.connect() as conn:
            rows = conn.execute(select(roles).order_by(roles.c.code)).fetchall()
        return [_row_to_role(r) for r in rows]

    def delete_role(self, code: str) -> bool:
        """Delete a custom role with its assignments, defaults and overrides.

        System roles cannot be deleted: raises ValueError.
        """
        role = self.get_role(code)
        if role is None:
            return False
        if role.is_system:
            raise ValueError(f"System role {code!r} cannot be deleted")
        with self.engine.begin() as conn:
            conn.execute(delete(role_permissions).where(role_permissions.c.role_id == role.id))
            conn.execute(delete(user_roles).where(user_roles.c.role_id == role.id))
            conn.execute(delete(tenant_role_overrides).where(tenant_role_overrides.c.role_id == role.id))
            conn.execute(delete(roles).where(roles.c.id == role.id))
        return True

    def create_permission(self, permission: Permission) -> int:
        """Insert a permission definition. Codes are validated and never updated afterwards."""
        if not PERMISSION_CODE_RE.match(permission.code):
            raise ValueError(f"Invalid permission code: {permission.code!r}")
        with self.engine.connect() as conn:
            result = conn.execute(
                insert(permissions).values(
                    code=permission.code,
                    name=permission.name,
                    description=permission.description,
                    module=permission.module,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_permission(self, code: str) -> Permission | None:
        with self.engine.connect() as conn:
            row = conn.execute(select(permissions).where(permissions.c.code == code)).fetchone()
        return _row_to_permission(row) if row is not None else None

    def list_permission_codes(self) -> list[str]:
        with self.engine.connect() as conn:
            rows = conn.execute(select(permissions.c.code).order_by(permissions.c.code)).fetchall()
        return [r.code for r in rows]

    def get_role_permission_codes(self, role_code: str) -> set[str]:
        stmt = (
            select(permissions.c.code)
            .select_from(
                role_permissions.join(roles, roles.c.id == role_permissions.c.role_id).join(
                    permissions, permissions.c.id == role_permissions.c.permission_id
                )
            )
            .where(roles.c.code == role_code)
        )
        with self.engine.connect() as conn:
            return {r.code for r in conn.execute(stmt).fetchall()}

    def set_role_permissions(self, role_code: str, codes: Iterable[str]) -> None:
        """Replace a role's default permission set in one transaction."""
        codes = set(codes)
        with self.engine.begin() as conn:
            role_id = self._require_role_id(conn, role_code)
            permission_ids = self._require_permission_ids(conn, codes)
            conn.execute(delete(role_permissions).where(role_permissions.c.role_id == role_id))
            if permission_ids:
                conn.execute(
                    insert(role_permissions),
                    [{"role_id": role_id, "permission_id": pid} for pid in permission_ids],
                )

    # ------------------------------------------------------------------
    # Role assignments (tenant-scoped)
    # ------------------------------------------------------------------

    def assign_role(self, user_id: int, role_code: str, tenant_id: int) -> bool:
        """Assign a role within a tenant. Returns False if it was already assigned."""
        try:
            with self.engine.begin() as conn:
                role_id = self._require_role_id(conn, role_code)
                conn.execute(insert(user_roles).values(user_id=user_id, role_id=role_id, tenant_id=tenant_id))
        except IntegrityError:
            return False
        return True

    def unassign_role(self, user_id: int, role_code: str, tenant_id: int) -> bool:
        with self.engine.begin() as conn:
            role_id = self._require_role_id(conn, role_code)
            result = conn.execute(
                delete(user_roles).where(
                    and_(
                        user_roles.c.user_id == user_id,
                        user_roles.c.role_id == role_id,
                        user_roles.c.tenant_id == tenant_id,
                    )
                )
            )
        return result.rowcount > 0

    def get_role_grants(self, user_id: int, tenant_id: int) -> list[RoleGrant]:
        """Return every role held by (user, tenant) with its defaults and tenant-disabled codes.

        Roles come back ordered by code so resolution is deterministic.
        """
        assigned = (
            select(roles.c.id, roles.c.code)
            .select_from(user_roles.join(roles, roles.c.id == user_roles.c.role_id))
            .where(and_(user_roles.c.user_id == user_id, user_roles.c.tenant_id == tenant_id))
            .order_by(roles.c.code)
        )
        with self.engine.connect() as conn:
            role_rows = conn.execute(assigned).fetchall()
            if not role_rows:
                return []
            role_ids = [r.id for r in role_rows]
            default_rows = conn.execute(
                select(role_permissions.c.role_id, permissions.c.code)
                .select_from(
                    role_permissions.join(permissions, permissions.c.id == role_permissions.c.permission_id)
                )
                .where(role_permissions.c.role_id.in_(role_ids))
            ).fetchall()
            disabled_rows = conn.execute(
                select(tenant_role_overrides.c.role_id, permissions.c.code)
                .select_from(
                    tenant_role_overrides.join(
                        permissions, permissions.c.id == tenant_role_overrides.c.permission_id
                    )
                )
                .where(
                    and_(
                        tenant_role_overrides.c.tenant_id == tenant_id,
                        tenant_role_overrides.c.role_id.in_(role_ids),
                        tenant_role_overrides.c.is_enabled.is_(False),
                    )
                )
            ).fetchall()

        granted: dict[int, set[str]] = {rid: set() for rid in role_ids}
        disabled: dict[int, set[str]] = {rid: set() for rid in role_ids}
        for row in default_rows:
            granted[row.role_id].add(row.code)
        for row in disabled_rows:
            disabled[row.role_id].add(row.code)
        return [
            RoleGrant(role_code=r.code, granted=frozenset(granted[r.id]), disabled=frozenset(disabled[r.id]))
            for r in role_rows
        ]

    # ------------------------------------------------------------------
    # Direct grants / denials
    # ------------------------------------------------------------------

    def get_direct_overrides(self, user_id: int, tenant_id: int) -> dict[str, bool]:
        """Return {permission_code: allowed} for one (user, tenant) pair."""
        stmt = (
            select(permissions.c.code, user_permission_overrides.c.allowed)
            .select_from(
                user_permission_overrides.join(
                    permissions, permissions.c.id == user_permission_overrides.c.permission_id
                )
            )
            .where(
                and_(
                    user_permission_overrides.c.user_id == user_id,
                    user_permission_overrides.c.tenant_id == tenant_id,
                )
            )
        )
        with self.engine.connect() as conn:
            return {r.code: bool(r.allowed) for r in conn.execute(stmt).fetchall()}

    def set_direct_override(self, user_id: int, tenant_id: int, code: str, allowed: bool) -> None:
        with self.engine.begin() as conn:
            (permission_id,) = self._require_permission_ids(conn, {code})
            key = and_(
                user_permission_overrides.c.user_id == user_id,
                user_permission_overrides.c.tenant_id == tenant_id,
                user_permission_overrides.c.permission_id == permission_id,
            )
            conn.execute(delete(user_permission_overrides).where(key))
            conn.execute(
                insert(user_permission_overrides).values(
                    user_id=user_id, tenant_id=tenant_id, permission_id=permission_id, allowed=allowed
                )
            )

    def clear_direct_override(self, user_id: int, tenant_id: int, code: str) -> bool:
        with self.engine.begin() as conn:
            (permission_id,) = self._require_permission_ids(conn, {code})
            result = conn.execute(
                delete(user_permission_overrides).where(
                    and_(
                        user_permission_overrides.c.user_id == user_id,
                        user_permission_overrides.c.tenant_id == tenant_id,
                        user_permission_overrides.c.permission_id == permission_id,
                    )
                )
            )
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Tenant role overrides (can only disable)
    # ------------------------------------------------------------------

    def set_tenant_override(self, tenant_id: int, role_code: str, code: str, enabled: bool) -> None:
        with self.engine.begin() as conn:
            role_id = self._require_role_id(conn, role_code)
            (permission_id,) = self._require_permission_ids(conn, {code})
            key = and_(
                tenant_role_overrides.c.tenant_id == tenant_id,
                tenant_role_overrides.c.role_id == role_id,
                tenant_role_overrides.c.permission_id == permission_id,
            )
            conn.execute(delete(tenant_role_overrides).where(key))
            conn.execute(
                insert(tenant_role_overrides).values(
                    tenant_id=tenant_id, role_id=role_id, permission_id=permission_id, is_enabled=enabled
                )
            )

    def clear_tenant_override(self, tenant_id: int, role_code: str, code: str) -> bool:
        with self.engine.begin() as conn:
            role_id = self._require_role_id(conn, role_code)
            (permission_id,) = self._require_permission_ids(conn, {code})
            result = conn.execute(
                delete(tenant_role_overrides).where(
                    and_(
                        tenant_role_overrides.c.tenant_id == tenant_id,
                        tenant_role_overrides.c.role_id == role_id,
                        tenant_role_overrides.c.permission_id == permission_id,
                    )
                )
            )
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Lookups shared by the writers above
    # ------------------------------------------------------------------

    @staticmethod
    def _require_role_id(conn, role_code: str) -> int:
        role_id = conn.execute(select(roles.c.id).where(roles.c.code == role_code)).scalar()
        if role_id is None:
            raise ReferenceNotFound(f"Unknown role: {role_code!r}")
        return role_id

    @staticmethod
    def _require_permission_ids(conn, codes: set[str]) -> list[int]:
        if not codes:
            return []
        rows = conn.execute(select(permissions.c.id, permissions.c.code).where(permissions.c.code.in_(codes))).fetchall()
        missing = codes - {r.code for r in rows}
        if missing:
            raise ReferenceNotFound(f"Unknown permission(s): {sorted(missing)!r}")
        return [r.id for r in rows]


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        tenant_id=row.tenant_id,
        username=row.username,
        email=row.email,
        credential_hash=row.credential_hash,
        kind=row.kind,
        status=row.status,
        failed_attempt_count=row.failed_attempt_count,
        last_authenticated_at=from_epoch(row.last_authenticated_at),
        created_at=from_epoch(row.created_at),
    )


def _row_to_role(row) -> Role:
    return Role(
        id=row.id,
        code=row.code,
        name=row.name,
        description=row.description,
        is_system=bool(row.is_system),
    )


def _row_to_permission(row) -> Permission:
    return Permission(
        id=row.id,
        code=row.code,
        name=row.name,
        module=row.module,
        description=row.description,
    )

"""
auth/permissions.py -- Effective permission resolution for (principal, tenant).

Resolution order -- first match wins:

  1. platform operator                      -> GRANT (nothing else consulted)
  2. direct denial for (user, tenant, code) -> DENY  (beats every role)
  3. direct grant  for (user, tenant, code) -> GRANT
  4. any assigned role whose defaults contain the code and whose tenant
     override has not disabled it           -> GRANT
  5. otherwise                              -> DENY  (default deny)

Each layer answers with a Decision (GRANT, DENY or INHERIT); INHERIT means
"no opinion, ask the next layer". The ordered walk lives in one place,
EffectivePermissions.decide(), and the cached object is the fully loaded
input of that walk, so a cache hit and a cache miss run identical logic.

Administrative writes go through this module too: every mutation pushes an
invalidation into the PermissionCache for exactly the entries it can affect.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum

from auth.models import User
from auth.schema import guarded
from auth.store import AuthStore, RoleGrant
from auth.tenancy import TenantGuard
from cache.store import PermissionCache

logger = logging.getLogger("tenantauth.auth.permissions")


class Decision(str, Enum):
    GRANT = "grant"
    DENY = "deny"
    INHERIT = "inherit"


@dataclass(frozen=True)
class EffectivePermissions:
    """Loaded resolution inputs for one (principal, tenant) pair."""

    principal_id: int
    tenant_id: int | None
    direct: Mapping[str, bool] = field(default_factory=dict)
    roles: tuple[RoleGrant, ...] = ()

    def direct_decision(self, code: str) -> Decision:
        if code not in self.direct:
            return Decision.INHERIT
        return Decision.GRANT if self.direct[code] else Decision.DENY

    def role_decision(self, code: str) -> Decision:
        for grant in self.roles:
            if code not in grant.granted:
                continue
            if code in grant.disabled:
                # This tenant switched the code off for this role; another role may still grant it.
                continue
            return Decision.GRANT
        return Decision.INHERIT

    def decide(self, code: str) -> Decision:
        for decision in (self.direct_decision(code), self.role_decision(code)):
            if decision is not Decision.INHERIT:
                return decision
        return Decision.DENY

    def codes(self) -> frozenset[str]:
        """Every code that decides to GRANT."""
        candidates = set(self.direct)
        for grant in self.roles:
            candidates |= grant.granted
        return frozenset(c for c in candidates if self.decide(c) is Decision.GRANT)


class PermissionResolver:
    """Answers has_permission() and owns every write that can change the answer.

    Usage:
        resolver = PermissionResolver(store, PermissionCache(ttl=900), TenantGuard())
        resolver.has_permission(user, tenant_id, "SALE_VIEW")
        resolver.set_direct_override(user.id, tenant_id, "SALE_VIEW", allowed=False)
    """

    def __init__(self, store: AuthStore, cache: PermissionCache, tenant_guard: TenantGuard) -> None:
        self.store = store
        self.cache = cache
        self.tenant_guard = tenant_guard

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def has_permission(self, principal: User, tenant_id: int | None, permission_code: str) -> bool:
        """Apply the ordered algorithm. Raises CrossTenantAccessError for foreign tenants.

        Persistence failures raise AuthBackendError; they never grant.
        """
        self.tenant_guard.assert_scope(principal, tenant_id)
        if principal.is_platform_operator:
            return True
        resolved = self.resolve(principal, tenant_id)
        return resolved.decide(permission_code) is Decision.GRANT

    def effective_codes(self, principal: User, tenant_id: int | None) -> list[str]:
        """Sorted granted codes; every defined code for a platform operator."""
        self.tenant_guard.assert_scope(principal, tenant_id)
        if principal.is_platform_operator:
            with guarded("list permission codes"):
                return self.store.list_permission_codes()
        return sorted(self.resolve(principal, tenant_id).codes())

    def resolve(self, principal: User, tenant_id: int | None) -> EffectivePermissions:
        cached = self.cache.get(principal.id, tenant_id)
        if cached is not None:
            return cached
        generation = self.cache.generation()
        if tenant_id is None:
            # Tenant-bound grants need a tenant; only operators act without one.
            resolved = EffectivePermissions(principal_id=principal.id, tenant_id=None)
        else:
            with guarded("resolve permissions"):
                resolved = EffectivePermissions(
                    principal_id=principal.id,
                    tenant_id=tenant_id,
                    direct=self.store.get_direct_overrides(principal.id, tenant_id),
                    roles=tuple(self.store.get_role_grants(principal.id, tenant_id)),
                )
        self.cache.set(principal.id, tenant_id, resolved, generation)
        return resolved

    # ------------------------------------------------------------------
    # Writes (each pushes its invalidation)
    # ------------------------------------------------------------------

    def assign_role(self, user_id: int, tenant_id: int, role_code: str) -> bool:
        changed = self.store.assign_role(user_id, role_code, tenant_id)
        self.cache.invalidate(user_id, tenant_id)
        logger.info("Role %s assigned to principal %s in tenant %s", role_code, user_id, tenant_id)
        return changed

    def unassign_role(self, user_id: int, tenant_id: int, role_code: str) -> bool:
        changed = self.store.unassign_role(user_id, role_code, tenant_id)
        self.cache.invalidate(user_id, tenant_id)
        logger.info("Role %s removed from principal %s in tenant %s", role_code, user_id, tenant_id)
        return changed

    def set_direct_override(self, user_id: int, tenant_id: int, code: str, allowed: bool) -> None:
        self.store.set_direct_override(user_id, tenant_id, code, allowed)
        self.cache.invalidate(user_id, tenant_id)
        logger.info(
            "Direct %s of %s for principal %s in tenant %s",
            "grant" if allowed else "denial",
            code,
            user_id,
            tenant_id,
        )

    def clear_direct_override(self, user_id: int, tenant_id: int, code: str) -> bool:
        changed = self.store.clear_direct_override(user_id, tenant_id, code)
        self.cache.invalidate(user_id, tenant_id)
        return changed

    def set_tenant_override(self, tenant_id: int, role_code: str, code: str, enabled: bool) -> None:
        self.store.set_tenant_override(tenant_id, role_code, code, enabled)
        self.cache.invalidate_tenant(tenant_id)
        logger.info("Tenant %s set %s for role %s to enabled=%s", tenant_id, code, role_code, enabled)

    def clear_tenant_override(self, tenant_id: int, role_code: str, code: str) -> bool:
        changed = self.store.clear_tenant_override(tenant_id, role_code, code)
        self.cache.invalidate_tenant(tenant_id)
        return changed

    def set_role_permissions(self, role_code: str, codes: Iterable[str]) -> None:
        self.store.set_role_permissions(role_code, codes)
        self.cache.clear()
        logger.info("Default permissions replaced for role %s", role_code)

    def delete_role(self, role_code: str) -> bool:
        changed = self.store.delete_role(role_code)
        if changed:
            self.cache.clear()
            logger.info("Role %s deleted", role_code)
        return changed

    def forget_principal(self, user_id: int) -> None:
        self.cache.invalidate_principal(user_id)

"""
auth/tenancy.py -- The single choke point for tenant isolation.

Every tenant-scoped operation calls TenantGuard.assert_scope() (directly, or
through scope() for SQLAlchemy selects, or via PermissionResolver) before it
touches data. The rule is deliberately tiny:

  platform operators may act in any tenant;
  everyone else may act only in principal.tenant_id.

A violation raises CrossTenantAccessError, which the HTTP edge renders as a
plain 404 -- a caller probing another tenant's ids learns nothing about
whether those ids exist.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

import logging

from sqlalchemy import ColumnElement, Select

from auth.errors import CrossTenantAccessError
from auth.models import User

logger = logging.getLogger("tenantauth.auth.tenancy")


class TenantGuard:
    def assert_scope(self, principal: User, requested_tenant_id: int | None) -> None:
        if principal.is_platform_operator:
            return
        if principal.tenant_id is None or principal.tenant_id != requested_tenant_id:
            logger.warning(
                "Cross-tenant access blocked: principal %s (tenant %s) -> tenant %s",
                principal.id,
                principal.tenant_id,
                requested_tenant_id,
            )
            raise CrossTenantAccessError()

    def scope(self, statement: Select, tenant_column: ColumnElement, principal: User, tenant_id: int) -> Select:
        """Assert scope, then filter `statement` to rows of `tenant_id`.

        Usage:
            stmt = guard.scope(select(orders), orders.c.tenant_id, principal, tenant_id)
        """
        self.assert_scope(principal, tenant_id)
        return statement.where(tenant_column == tenant_id)

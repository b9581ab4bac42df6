"""
API request and response models for the tenantauth REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Wire format is camelCase (accessToken, deviceId, ...). Python attributes stay
snake_case: every model derives aliases with to_camel and accepts either form
on input (populate_by_name).
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

# Mirrors auth.store.PERMISSION_CODE_RE; validated here so bad codes 422 at the edge.
PERMISSION_CODE_PATTERN = r"^[A-Z][A-Z0-9_]{2,49}$"


class _Wire(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class TokenLoginRequest(_Wire):
    """Request body for POST /api/v1/auth/login."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, str_strip_whitespace=True)

    identity: str = Field(min_length=1, max_length=150)
    secret: str = Field(min_length=1, max_length=1024)
    device_id: Optional[str] = Field(default=None, max_length=128)
    tenant_id: Optional[int] = None


class RefreshRequest(_Wire):
    """Request body for POST /api/v1/auth/refresh and /api/v1/auth/logout."""

    refresh_token: str = Field(min_length=1, max_length=4096)


class OverrideRequest(_Wire):
    """Body for direct grant/denial: allowed=False denies even if a role grants."""

    allowed: bool


class TenantOverrideRequest(_Wire):
    """Body for a tenant role override. enabled=False switches the code off for the role."""

    enabled: bool = False


class RolePermissionsRequest(_Wire):
    codes: list[str] = Field(default_factory=list, max_length=200)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class TokenPairResponse(_Wire):
    """Response for the token login and refresh endpoints."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int


class PrincipalResponse(_Wire):
    """Identity of the authenticated caller (GET /api/v1/auth/me)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    user_id: int
    username: str
    kind: str
    status: str
    tenant_id: Optional[int] = None
    auth_method: str


class PermissionsResponse(_Wire):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    tenant_id: Optional[int] = None
    permissions: list[str]


class ChangeResponse(_Wire):
    """Result of an RBAC administration write. changed=False means it was already so."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    changed: bool


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
    components: dict[str, str] = Field(default_factory=dict)

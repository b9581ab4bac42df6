"""
auth/errors.py -- Authentication / authorization error taxonomy.

Every class carries two faces:

  code            -- the precise internal cause. Logged, never sent to clients.
  public_code,
  public_message,
  status_code     -- what the client sees. Deliberately coarse.

All credential failures look identical to the client ("invalid_credentials"),
as do all token and session failures ("invalid_token"). An attacker cannot
tell a wrong password from an unknown account, nor a revoked token from a
forged one. Cross-tenant access renders exactly like a missing resource
(404 "not_found") so the existence of another tenant's data is never
confirmed.

Infrastructure failures raise AuthBackendError (503). They are never
converted into a grant: every caller fails closed.
"""

from __future__ import annotations


class AuthError(Exception):
    code = "auth_error"
    status_code = 401
    public_code = "invalid_credentials"
    public_message = "Invalid credentials."

    def __init__(self, detail: str | None = None) -> None:
        super().__init__(detail or self.code)
        self.detail = detail


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------


class CredentialError(AuthError):
    pass


class InvalidCredentials(CredentialError):
    code = "invalid_credentials"


class AccountLocked(CredentialError):
    code = "account_locked"


class AccountSuspended(CredentialError):
    code = "account_suspended"


class CorruptCredentialError(CredentialError):
    """Stored credential hash could not be parsed. Treated as a failed verify."""

    code = "corrupt_credential"


# ---------------------------------------------------------------------------
# Tokens and sessions
# ---------------------------------------------------------------------------


class TokenError(AuthError):
    public_code = "invalid_token"
    public_message = "Invalid or expired session or token."


class TokenExpired(TokenError):
    code = "token_expired"


class TokenRevoked(TokenError):
    code = "token_revoked"


class InvalidSignature(TokenError):
    code = "invalid_signature"


class MalformedToken(TokenError):
    code = "malformed_token"


class SessionExpired(TokenError):
    code = "session_expired"


class NotAuthenticated(TokenError):
    """No bearer token and no session cookie on a protected request."""

    code = "not_authenticated"


# ---------------------------------------------------------------------------
# Authorization
# ---------------------------------------------------------------------------


class PermissionDenied(AuthError):
    code = "permission_denied"
    status_code = 403
    public_code = "forbidden"
    public_message = "You do not have permission to perform this action."


class AntiForgeryError(PermissionDenied):
    code = "anti_forgery_mismatch"


class CrossTenantAccessError(AuthError):
    code = "cross_tenant_access"
    status_code = 404
    public_code = "not_found"
    public_message = "Resource not found."


# ---------------------------------------------------------------------------
# Throttling and infrastructure
# ---------------------------------------------------------------------------


class RateLimited(AuthError):
    code = "rate_limited"
    status_code = 429
    public_code = "rate_limited"
    public_message = "Too many requests."


class AuthBackendError(AuthError):
    code = "backend_unavailable"
    status_code = 503
    public_code = "service_unavailable"
    public_message = "Authentication is temporarily unavailable."

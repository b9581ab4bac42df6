"""
auth/gateway.py -- Credential entry point for both authentication paths.

  Session path:  login_session() -> (User, Session)   browser clients
  Token path:    login_token()   -> TokenPair          API / mobile clients

Both paths share authenticate(), which is the only place a password is
checked. The order of checks is fixed:

  1. source throttled?      -> RateLimited       (no hashing)
  2. identity locked?       -> AccountLocked     (no hashing)
  3. reserve an attempt     -> AccountLocked     (no hashing, limit reached)
  4. unknown identity       -> dummy verify, InvalidCredentials
  5. verify the secret      -> InvalidCredentials / CorruptCredentialError
  6. status != active       -> AccountLocked / AccountSuspended
  7. success                -> reset counters, stamp login, rehash if needed

Step 3 counts the attempt before any hashing, so parallel guesses cannot all
pass step 2 and reach the hasher. A failed rehash in step 7 is logged and
skipped; the login stands.

Every outcome, success or failure, is recorded through LockoutGuard with a
precise failure_reason for the audit trail. What the caller sees is decided
by the error class (see auth/errors.py): all credential failures look alike.

Persistence failures on this path surface as AuthBackendError (fail closed).

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

import logging

from sqlalchemy.exc import SQLAlchemyError

from auth.errors import (
    AccountLocked,
    AccountSuspended,
    AuthBackendError,
    CorruptCredentialError,
    CrossTenantAccessError,
    InvalidCredentials,
    RateLimited,
    SessionExpired,
    TokenRevoked,
)
from auth.lockout import LockoutGuard
from auth.models import Claims, PrincipalStatus, Session, TokenPair, User
from auth.passwords import PasswordHasher
from auth.permissions import PermissionResolver
from auth.schema import guarded
from auth.sessions import SessionManager
from auth.store import AuthStore
from auth.tenancy import TenantGuard
from auth.tokens import TokenService

logger = logging.getLogger("tenantauth.auth.gateway")

UNKNOWN_IDENTITY = "UNKNOWN_IDENTITY"
WRONG_PASSWORD = "WRONG_PASSWORD"
CORRUPT_CREDENTIAL = "CORRUPT_CREDENTIAL"
ACCOUNT_LOCKED = "ACCOUNT_LOCKED"
ACCOUNT_SUSPENDED = "ACCOUNT_SUSPENDED"
RATE_LIMITED = "RATE_LIMITED"


class AuthGateway:
    """Wires the auth components into login, refresh, logout and request resolution.

    Usage:
        gateway = AuthGateway(store, hasher, lockout, tokens, sessions, resolver, TenantGuard())
        pair = gateway.login_token("alice", "s3cret", "203.0.113.9", device_id="ios-1")
        user, claims = gateway.principal_for_access_token(pair.access_token)
    """

    def __init__(
        self,
        store: AuthStore,
        hasher: PasswordHasher,
        lockout: LockoutGuard,
        tokens: TokenService,
        sessions: SessionManager,
        resolver: PermissionResolver,
        tenant_guard: TenantGuard,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.lockout = lockout
        self.tokens = tokens
        self.sessions = sessions
        self.resolver = resolver
        self.tenant_guard = tenant_guard

    # ------------------------------------------------------------------
    # Credential check (shared by both paths)
    # ------------------------------------------------------------------

    def authenticate(
        self,
        identity: str,
        secret: str,
        source_address: str,
        user_agent: str | None = None,
    ) -> User:
        with guarded("authenticate"):
            return self._authenticate(identity, secret, source_address, user_agent)

    def _authenticate(self, identity: str, secret: str, source_address: str, user_agent: str | None) -> User:
        def record(success: bool, reason: str | None = None, reserved: bool = True) -> None:
            self.lockout.record_attempt(identity, source_address, success, reason, user_agent, reserved=reserved)

        if self.lockout.is_throttled(source_address):
            record(False, RATE_LIMITED, reserved=False)
            logger.warning("Login refused: source %s throttled", source_address)
            raise RateLimited()
        if self.lockout.is_locked(identity):
            record(False, ACCOUNT_LOCKED, reserved=False)
            logger.info("Login refused: identity locked")
            raise AccountLocked()
        if not self.lockout.reserve(identity):
            record(False, ACCOUNT_LOCKED)
            logger.info("Login refused: attempt limit reached for identity")
            raise AccountLocked()

        user = self.store.get_user_by_username(identity)
        if user is None or not user.credential_hash:
            self.hasher.verify_dummy(secret)
            record(False, UNKNOWN_IDENTITY)
            logger.info("Login failed: %s", UNKNOWN_IDENTITY)
            raise InvalidCredentials()

        try:
            matched = self.hasher.verify(secret, user.credential_hash)
        except CorruptCredentialError:
            record(False, CORRUPT_CREDENTIAL)
            logger.error("Stored credential for principal %s could not be parsed", user.id)
            raise
        if not matched:
            record(False, WRONG_PASSWORD)
            self.store.increment_failed_attempts(user.id)
            logger.info("Login failed: %s (principal %s)", WRONG_PASSWORD, user.id)
            raise InvalidCredentials()

        if user.status == PrincipalStatus.locked.value:
            record(False, ACCOUNT_LOCKED)
            logger.info("Login refused: principal %s administratively locked", user.id)
            raise AccountLocked()
        if not user.is_active:
            record(False, ACCOUNT_SUSPENDED)
            logger.info("Login refused: principal %s has status %s", user.id, user.status)
            raise AccountSuspended()

        record(True)
        self.store.record_login_success(user.id)
        self._upgrade_hash(user, secret)
        return user

    def _upgrade_hash(self, user: User, secret: str) -> None:
        """Re-hash with current parameters; a failure keeps the old hash and the login stands."""
        if not self.hasher.needs_rehash(user.credential_hash):
            return
        try:
            self.store.update_credential_hash(user.id, self.hasher.hash(secret))
        except (AuthBackendError, SQLAlchemyError):
            logger.warning("Credential hash upgrade skipped for principal %s", user.id, exc_info=True)
            return
        logger.info("Credential hash upgraded for principal %s", user.id)

    def select_tenant(self, principal: User, requested_tenant_id: int | None) -> int | None:
        """Tenant the new session or token is bound to.

        Without a request the principal's own tenant is used. Naming a
        tenant goes through TenantGuard, so only operators can pick freely.
        """
        if requested_tenant_id is None:
            return principal.tenant_id
        self.tenant_guard.assert_scope(principal, requested_tenant_id)
        return requested_tenant_id

    # ------------------------------------------------------------------
    # Session path
    # ------------------------------------------------------------------

    def login_session(
        self,
        identity: str,
        secret: str,
        source_address: str,
        *,
        tenant_id: int | None = None,
        previous_session_id: str | None = None,
        user_agent: str | None = None,
    ) -> tuple[User, Session]:
        if previous_session_id:
            # Never upgrade an identifier the client arrived with.
            with guarded("destroy previous session"):
                self.sessions.destroy(previous_session_id)
        user = self.authenticate(identity, secret, source_address, user_agent)
        bound_tenant = self.select_tenant(user, tenant_id)
        with guarded("create session"):
            session = self.sessions.create(user, bound_tenant)
        logger.info("Session login: principal %s tenant %s", user.id, bound_tenant)
        return user, session

    def principal_for_session(self, session_id: str) -> tuple[User, Session]:
        with guarded("resolve session"):
            session = self.sessions.touch(session_id)
            user = self.store.get_user(session.principal_id)
        if user is None or not user.is_active:
            logger.info("Session rejected: principal %s is not active", session.principal_id)
            with guarded("destroy session"):
                self.sessions.destroy(session_id)
            raise SessionExpired("principal not active")
        return user, session

    def logout_session(self, session_id: str) -> bool:
        with guarded("destroy session"):
            return self.sessions.destroy(session_id)

    # ------------------------------------------------------------------
    # Token path
    # ------------------------------------------------------------------

    def login_token(
        self,
        identity: str,
        secret: str,
        source_address: str,
        *,
        device_id: str | None = None,
        tenant_id: int | None = None,
        user_agent: str | None = None,
    ) -> TokenPair:
        user = self.authenticate(identity, secret, source_address, user_agent)
        bound_tenant = self.select_tenant(user, tenant_id)
        with guarded("issue tokens"):
            pair = self.tokens.issue(user, bound_tenant, device_id)
        logger.info("Token login: principal %s tenant %s device %s", user.id, bound_tenant, device_id)
        return pair

    def principal_for_access_token(self, token: str) -> tuple[User, Claims]:
        claims = self.tokens.verify_access(token)
        with guarded("load principal"):
            user = self.store.get_user(claims.principal_id)
        if user is None or not user.is_active:
            logger.info("Access token rejected: principal %s is not active", claims.sub)
            raise TokenRevoked("principal not active")
        return user, claims

    def refresh(self, refresh_token: str) -> TokenPair:
        with guarded("refresh"):
            claims = self.tokens.verify_refresh(refresh_token)
            user = self.store.get_user(claims.principal_id)
            if user is None or not user.is_active:
                logger.info("Refresh rejected: principal %s is not active", claims.sub)
                raise TokenRevoked()
            return self.tokens.rotate(refresh_token, user)

    def logout_token(self, refresh_token: str) -> int:
        with guarded("revoke token family"):
            return self.tokens.revoke(refresh_token)

    # ------------------------------------------------------------------
    # Principal lifecycle
    # ------------------------------------------------------------------

    def suspend_principal(self, actor: User, user_id: int) -> User:
        """Suspend a principal and cut every credential they hold.

        The target must be visible to the actor: a foreign tenant's
        principal, or a missing one, reads as CrossTenantAccessError.
        """
        with guarded("suspend principal"):
            target = self.store.get_user(user_id)
            if target is None:
                raise CrossTenantAccessError()
            if target.is_platform_operator and not actor.is_platform_operator:
                raise CrossTenantAccessError()
            if not target.is_platform_operator:
                self.tenant_guard.assert_scope(actor, target.tenant_id)
            self.store.set_status(user_id, PrincipalStatus.suspended.value)
            sessions = self.sessions.destroy_all_for_principal(user_id)
            tokens = self.tokens.revoke_all(user_id)
        self.resolver.forget_principal(user_id)
        logger.warning(
            "Principal %s suspended by %s: %d sessions destroyed, %d refresh tokens revoked",
            user_id,
            actor.id,
            sessions,
            tokens,
        )
        target.status = PrincipalStatus.suspended.value
        return target

